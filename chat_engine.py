"""
Turn orchestration: streaming responses and the tool-call continuation loop.

A turn starts with one user message and ends when the model produces a
response with no tool call in it. In between the engine alternates between
two states:

    AWAITING_MODEL  stream a response, materializing text messages as they
                    arrive
    AWAITING_TOOL   a tool-use block just closed: run the tool and append the
                    tool_use/tool_result pair before the stream resumes

Once a stream that ran tools ends, the model is asked again with the whole
history. The turn lands in FLUSHED when a stream closes without a tool call.
The number of tool rounds per turn is capped by ``max_tool_depth``.
"""

import inspect
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Protocol

import orjson as json
from anthropic import AsyncAnthropic
from opentelemetry import trace

from chat_errors import MaxToolCallDepthExceeded, ToolInputParseError
from chat_types import (
    DEFAULT_SYSTEM_PROMPT,
    ChatSession,
    ConversationMessage,
    Role,
    ToolResultBlock,
    ToolUseBlock,
)
from server_manager import ServerManager, format_tool_result_content

log = logging.getLogger("mcpchat")
tracer = trace.get_tracer("mcpchat")

DEFAULT_MAX_TOKENS = 4096
DEFAULT_MAX_TOOL_DEPTH = 25


class TokenKind(str, Enum):
    TEXT = "text"
    TOOL_CALL = "tool_call"
    TOOL_INPUT = "tool_input"
    TOOL_RESULT = "tool_result"


# Receives every streamed fragment; may be a plain function or a coroutine function
TokenSink = Callable[[str, TokenKind], Any]
ToolRunner = Callable[[ToolUseBlock], Awaitable[None]]


class TurnState(Enum):
    AWAITING_MODEL = "awaiting_model"
    AWAITING_TOOL = "awaiting_tool"
    FLUSHED = "flushed"


class CompletionService(Protocol):
    def stream(self, *, model: str, messages: List[Dict[str, Any]], tools: List[Dict[str, Any]],
               system: Optional[str], max_tokens: int,
               temperature: Optional[float] = None) -> AsyncIterator[Any]:
        ...


class AnthropicCompletionService:
    """Streams raw Messages API events from Anthropic."""

    def __init__(self, api_key: Optional[str] = None, client: Optional[AsyncAnthropic] = None):
        self.client = client or AsyncAnthropic(api_key=api_key)

    async def stream(self, *, model, messages, tools, system, max_tokens, temperature=None):
        request: Dict[str, Any] = {
            "model": model,
            "max_tokens": max_tokens,
            "messages": messages,
            "stream": True,
        }
        if tools:
            request["tools"] = tools
        if system:
            request["system"] = system
        if temperature is not None:
            request["temperature"] = temperature
        response_stream = await self.client.messages.create(**request)
        async for event in response_stream:
            yield event


async def _emit(sink: Optional[TokenSink], token: str, kind: TokenKind) -> None:
    if sink is None or not token:
        return
    result = sink(token, kind)
    if inspect.isawaitable(result):
        await result


def parse_tool_input(tool_name: str, raw_input: str) -> Dict[str, Any]:
    """Parse accumulated ``input_json`` fragments into the tool arguments.

    Raises:
        ToolInputParseError: The fragments are not a JSON object.
    """
    if not raw_input.strip():
        return {}
    try:
        parsed = json.loads(raw_input)
    except json.JSONDecodeError as e:
        raise ToolInputParseError(tool_name, raw_input, e) from e
    if not isinstance(parsed, dict):
        raise ToolInputParseError(tool_name, raw_input)
    return parsed


class StreamProcessor:
    """Materializes one response stream into conversation messages.

    Text is appended to ``history`` as assistant messages, split wherever a
    tool-use block begins. Tool-use blocks are not appended here: each closed
    block is handed to ``run_tool`` before any later event is processed, so
    whatever it appends lands ahead of text streamed after the block. Closed
    blocks also collect in ``tool_calls``.
    """

    def __init__(self, history: List[ConversationMessage], sink: Optional[TokenSink] = None,
                 run_tool: Optional[ToolRunner] = None):
        self.history = history
        self.sink = sink
        self.run_tool = run_tool
        self.tool_calls: List[ToolUseBlock] = []
        self.text_parts: List[str] = []
        self._text = ""
        self._active_block: Optional[str] = None
        self._tool: Optional[ToolUseBlock] = None
        self._tool_input = ""

    def _flush_text(self) -> None:
        if self._text:
            self.history.append(ConversationMessage.text(Role.ASSISTANT, self._text))
            self.text_parts.append(self._text)
            self._text = ""

    async def feed(self, event: Any) -> None:
        event_type = getattr(event, "type", None)

        if event_type == "content_block_start":
            block = event.content_block
            self._active_block = block.type
            if block.type == "text":
                self._text += getattr(block, "text", "") or ""
            elif block.type == "tool_use":
                # Text before a tool call is its own message
                self._flush_text()
                self._tool = ToolUseBlock(id=block.id, name=block.name, input={})
                self._tool_input = ""
                await _emit(self.sink, f"\n[Tool Call] {block.name}\n", TokenKind.TOOL_CALL)

        elif event_type == "content_block_delta":
            delta = event.delta
            if delta.type == "text_delta":
                self._text += delta.text
                await _emit(self.sink, delta.text, TokenKind.TEXT)
            elif delta.type == "input_json_delta" and self._tool is not None:
                self._tool_input += delta.partial_json
                await _emit(self.sink, delta.partial_json, TokenKind.TOOL_INPUT)

        elif event_type == "content_block_stop":
            if self._active_block == "tool_use" and self._tool is not None:
                await self._close_tool_block()
            self._active_block = None

    async def _close_tool_block(self) -> None:
        tool = self._tool
        self._tool = None
        try:
            tool.input = parse_tool_input(tool.name, self._tool_input)
        except ToolInputParseError as e:
            log.warning(f"{e}; calling it without arguments")
            tool.input = {}
        self._tool_input = ""
        self._flush_text()
        if self.run_tool is not None:
            await self.run_tool(tool)
        self.tool_calls.append(tool)

    def finish(self) -> None:
        """Flush text still buffered when the stream ends."""
        if self._tool is not None:
            log.warning(f"Stream ended inside tool block '{self._tool.name}'; discarding it")
            self._tool = None
        self._flush_text()


@dataclass
class TurnResult:
    text: str = ""
    tool_calls: List[ToolUseBlock] = field(default_factory=list)
    requests: int = 0
    latency_ms: float = 0.0


class ChatEngine:
    """Runs conversation turns against a completion service and MCP servers."""

    def __init__(self, completion_service: CompletionService, server_manager: ServerManager,
                 max_tokens: int = DEFAULT_MAX_TOKENS, max_tool_depth: int = DEFAULT_MAX_TOOL_DEPTH,
                 temperature: Optional[float] = None):
        self.completion_service = completion_service
        self.server_manager = server_manager
        self.max_tokens = max_tokens
        self.max_tool_depth = max_tool_depth
        self.temperature = temperature

    async def _stream_response(self, session: ChatSession, processor: StreamProcessor) -> None:
        events = self.completion_service.stream(
            model=session.settings.model,
            # Extra keys carried over from a chat file are not part of the API schema
            messages=[{"role": m["role"], "content": m["content"]} for m in session.messages_as_dicts()],
            tools=self.server_manager.format_tools_for_anthropic(),
            system=session.settings.system_prompt or DEFAULT_SYSTEM_PROMPT,
            max_tokens=self.max_tokens,
            temperature=self.temperature,
        )
        async for event in events:
            await processor.feed(event)
        processor.finish()

    async def _run_tool(self, session: ChatSession, tool_call: ToolUseBlock, sink: Optional[TokenSink]) -> None:
        log.info(f"Calling tool {tool_call.name} with {tool_call.input}")
        result = await self.server_manager.call_tool(tool_call.name, tool_call.input)
        content = format_tool_result_content(result)
        is_error = bool(getattr(result, "isError", False))

        session.messages.append(ConversationMessage.blocks(Role.ASSISTANT, [tool_call]))
        session.messages.append(ConversationMessage.blocks(
            Role.USER, [ToolResultBlock(tool_use_id=tool_call.id, content=content, is_error=is_error)]
        ))
        rendered = json.dumps(content, option=json.OPT_INDENT_2).decode("utf-8")
        await _emit(sink, f"\nResult: {rendered}\n", TokenKind.TOOL_RESULT)

    async def run_turn(self, session: ChatSession, user_input: str,
                       on_token: Optional[TokenSink] = None) -> TurnResult:
        """Send ``user_input`` and follow tool calls until the model settles.

        The session's messages are mutated in place. Errors from the
        completion service or a tool propagate; whatever was appended before
        the failure stays in the history.

        Raises:
            ToolInvocationError: A tool provider failed.
            MaxToolCallDepthExceeded: More than ``max_tool_depth`` tool rounds.
        """
        start_time = time.time()
        result = TurnResult()
        session.messages.append(ConversationMessage.text(Role.USER, user_input))

        with tracer.start_as_current_span("process_query", attributes={
            "model": session.settings.model,
            "query_length": len(user_input),
            "conversation_length": len(session.messages),
        }) as span:
            state = TurnState.AWAITING_MODEL
            depth = 0
            text_parts: List[str] = []

            while state is not TurnState.FLUSHED:
                processor = StreamProcessor(session.messages, on_token)

                async def run_tool(tool_call: ToolUseBlock) -> None:
                    nonlocal depth, state
                    # The first tool of a response opens a new round
                    if not processor.tool_calls:
                        depth += 1
                        if depth > self.max_tool_depth:
                            span.set_status(trace.StatusCode.ERROR, "max tool depth exceeded")
                            raise MaxToolCallDepthExceeded(self.max_tool_depth)
                    state = TurnState.AWAITING_TOOL
                    await self._run_tool(session, tool_call, on_token)
                    result.tool_calls.append(tool_call)
                    state = TurnState.AWAITING_MODEL

                processor.run_tool = run_tool
                await self._stream_response(session, processor)
                result.requests += 1
                text_parts.extend(processor.text_parts)
                if not processor.tool_calls:
                    state = TurnState.FLUSHED

            result.text = "\n".join(text_parts)
            result.latency_ms = (time.time() - start_time) * 1000
            span.set_status(trace.StatusCode.OK)
            span.add_event("query_complete", {
                "latency_ms": result.latency_ms,
                "tools_used": len(result.tool_calls),
            })
        return result
