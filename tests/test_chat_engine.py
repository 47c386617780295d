"""Tests for the streaming processor and the tool-call loop."""
import pytest

from chat_engine import (
    ChatEngine,
    StreamProcessor,
    TokenKind,
    parse_tool_input,
)
from chat_errors import MaxToolCallDepthExceeded, ToolInputParseError, ToolInvocationError
from chat_types import (
    DEFAULT_SYSTEM_PROMPT,
    ChatSession,
    ChatSettings,
    Role,
    ToolResultBlock,
    ToolUseBlock,
)
from server_manager import ServerManager

from fakes import (
    FakeCompletionService,
    FakeServer,
    block_stop,
    connection_factory_for,
    echo_tool,
    json_delta,
    message_stop,
    text_delta,
    text_response,
    text_result,
    text_start,
    tool_response,
    tool_start,
)


def make_session():
    return ChatSession(id="chat-1-1000.json", title="Chat 1", settings=ChatSettings(model="test-model"))


async def make_engine(service, tools=None, **kwargs):
    server = FakeServer(tools=tools or {})
    manager = ServerManager(connection_factory_for({"npx fake": server}))
    if tools:
        await manager.connect("npx fake")
    return ChatEngine(service, manager, **kwargs), server


class TestParseToolInput:
    """Tests for parse_tool_input."""

    def test_empty_buffer_is_empty_object(self):
        assert parse_tool_input("echo", "") == {}

    def test_valid_object(self):
        assert parse_tool_input("echo", '{"text": "hi"}') == {"text": "hi"}

    def test_malformed(self):
        with pytest.raises(ToolInputParseError):
            parse_tool_input("echo", '{"text": ')

    def test_non_object(self):
        with pytest.raises(ToolInputParseError):
            parse_tool_input("echo", "[1, 2]")


class TestStreamProcessor:
    """Tests for StreamProcessor."""

    @pytest.mark.asyncio
    async def test_text_before_tool_is_flushed_first(self):
        history = []
        tokens = []
        processor = StreamProcessor(history, lambda token, kind: tokens.append((token, kind)))

        for event in [text_start(), text_delta("Let me "), text_delta("check"), block_stop(),
                      tool_start("toolu_1", "echo"), json_delta('{"text"'), json_delta(': "hi"}'), block_stop()]:
            await processor.feed(event)
        processor.finish()

        assert [m.to_dict() for m in history] == [{"role": "assistant", "content": "Let me check"}]
        assert processor.tool_calls == [ToolUseBlock(id="toolu_1", name="echo", input={"text": "hi"})]
        assert tokens == [
            ("Let me ", TokenKind.TEXT),
            ("check", TokenKind.TEXT),
            ("\n[Tool Call] echo\n", TokenKind.TOOL_CALL),
            ('{"text"', TokenKind.TOOL_INPUT),
            (': "hi"}', TokenKind.TOOL_INPUT),
        ]

    @pytest.mark.asyncio
    async def test_malformed_tool_input_degrades_to_empty_object(self):
        processor = StreamProcessor([])
        for event in [tool_start("toolu_1", "echo"), json_delta('{"text": '), block_stop()]:
            await processor.feed(event)
        assert processor.tool_calls[0].input == {}

    @pytest.mark.asyncio
    async def test_tool_runs_when_its_block_closes(self):
        history = []
        order = []

        async def run_tool(tool_call):
            order.append(("tool", tool_call.id, [m.content for m in history]))

        processor = StreamProcessor(history, lambda token, kind: order.append(("token", token)), run_tool)
        for event in [text_start(), text_delta("A"), block_stop(),
                      tool_start("toolu_1", "echo"), json_delta("{}"), block_stop(),
                      text_start(), text_delta("B"), block_stop()]:
            await processor.feed(event)
        processor.finish()

        assert order == [
            ("token", "A"),
            ("token", "\n[Tool Call] echo\n"),
            ("token", "{}"),
            ("tool", "toolu_1", ["A"]),
            ("token", "B"),
        ]
        assert [m.content for m in history] == ["A", "B"]

    @pytest.mark.asyncio
    async def test_unfinished_tool_block_is_dropped(self):
        history = []
        processor = StreamProcessor(history)
        for event in [text_start(), text_delta("partial"), block_stop(), tool_start("toolu_1", "echo")]:
            await processor.feed(event)
        processor.finish()
        assert processor.tool_calls == []
        assert [m.content for m in history] == ["partial"]


class TestChatEngine:
    """Tests for ChatEngine.run_turn."""

    @pytest.mark.asyncio
    async def test_text_only_turn(self):
        service = FakeCompletionService(text_response("Hi ", "there"))
        engine, _ = await make_engine(service)
        session = make_session()
        tokens = []

        result = await engine.run_turn(session, "hello", lambda token, kind: tokens.append(token))

        assert session.messages_as_dicts() == [
            {"role": "user", "content": "hello"},
            {"role": "assistant", "content": "Hi there"},
        ]
        assert tokens == ["Hi ", "there"]
        assert result.text == "Hi there"
        assert result.requests == 1
        request = service.requests[0]
        assert request["model"] == "test-model"
        assert request["system"] == DEFAULT_SYSTEM_PROMPT
        assert request["max_tokens"] == 4096
        assert request["tools"] == []
        assert request["messages"] == [{"role": "user", "content": "hello"}]

    @pytest.mark.asyncio
    async def test_custom_system_prompt(self):
        service = FakeCompletionService(text_response("ok"))
        engine, _ = await make_engine(service)
        session = make_session()
        session.settings.system_prompt = "Be terse."

        await engine.run_turn(session, "hello")

        assert service.requests[0]["system"] == "Be terse."

    @pytest.mark.asyncio
    async def test_tool_call_then_continuation(self):
        service = FakeCompletionService(
            tool_response("toolu_1", "echo", '{"text":', ' "hi"}', lead_text="Let me check"),
            text_response("Done"),
        )
        engine, server = await make_engine(service, tools={"echo": echo_tool})
        session = make_session()
        tokens = []

        result = await engine.run_turn(session, "echo hi", lambda token, kind: tokens.append((token, kind)))

        assert session.messages_as_dicts() == [
            {"role": "user", "content": "echo hi"},
            {"role": "assistant", "content": "Let me check"},
            {"role": "assistant", "content": [
                {"type": "tool_use", "id": "toolu_1", "name": "echo", "input": {"text": "hi"}},
            ]},
            {"role": "user", "content": [
                {"type": "tool_result", "tool_use_id": "toolu_1",
                 "content": [{"type": "text", "text": "echo: hi"}]},
            ]},
            {"role": "assistant", "content": "Done"},
        ]
        assert server.calls == [("echo", {"text": "hi"})]
        assert result.requests == 2
        assert [call.name for call in result.tool_calls] == ["echo"]

        # The continuation carries the whole history and the catalog
        second = service.requests[1]
        assert len(second["messages"]) == 4
        assert second["tools"][0]["name"] == "echo"

        kinds = [kind for _, kind in tokens]
        assert kinds.index(TokenKind.TOOL_CALL) < kinds.index(TokenKind.TOOL_RESULT)
        assert tokens[-1] == ("Done", TokenKind.TEXT)

    @pytest.mark.asyncio
    async def test_text_after_tool_block_follows_its_result(self):
        service = FakeCompletionService(
            [text_start(), text_delta("A"), block_stop(),
             tool_start("toolu_1", "echo"), json_delta("{}"), block_stop(),
             text_start(), text_delta("B"), block_stop(), message_stop()],
            text_response("done"),
        )
        engine, _ = await make_engine(service, tools={"echo": echo_tool})
        session = make_session()

        await engine.run_turn(session, "go")

        shapes = [m.content if m.is_text else type(m.content[0]).__name__ for m in session.messages]
        assert shapes == ["go", "A", "ToolUseBlock", "ToolResultBlock", "B", "done"]
        assert len(service.requests) == 2
        assert len(service.requests[1]["messages"]) == 5

    @pytest.mark.asyncio
    async def test_tools_in_one_response_are_one_round(self):
        service = FakeCompletionService(
            tool_response("toolu_1", "echo", '{"text": "a"}')[:-1] + tool_response("toolu_2", "echo", '{"text": "b"}'),
            text_response("both done"),
        )
        engine, server = await make_engine(service, tools={"echo": echo_tool}, max_tool_depth=1)
        session = make_session()

        result = await engine.run_turn(session, "go")

        assert server.calls == [("echo", {"text": "a"}), ("echo", {"text": "b"})]
        assert result.requests == 2
        assert result.text == "both done"

    @pytest.mark.asyncio
    async def test_tool_result_follows_its_tool_use(self):
        service = FakeCompletionService(
            tool_response("toolu_1", "echo", '{}'),
            tool_response("toolu_2", "echo", '{"text": "again"}'),
            text_response("finished"),
        )
        engine, _ = await make_engine(service, tools={"echo": echo_tool})
        session = make_session()

        await engine.run_turn(session, "go")

        seen_tool_uses = set()
        for message in session.messages:
            if message.is_text:
                continue
            for block in message.content:
                if isinstance(block, ToolUseBlock):
                    seen_tool_uses.add(block.id)
                elif isinstance(block, ToolResultBlock):
                    assert block.tool_use_id in seen_tool_uses

    @pytest.mark.asyncio
    async def test_malformed_input_calls_tool_without_arguments(self):
        service = FakeCompletionService(
            tool_response("toolu_1", "echo", '{"text": '),
            text_response("ok"),
        )
        engine, server = await make_engine(service, tools={"echo": echo_tool})

        await engine.run_turn(make_session(), "go")

        assert server.calls == [("echo", {})]

    @pytest.mark.asyncio
    async def test_error_result_is_recorded_and_loop_continues(self):
        service = FakeCompletionService(
            tool_response("toolu_1", "fail", "{}"),
            text_response("The tool failed"),
        )
        engine, _ = await make_engine(service, tools={"fail": lambda args: text_result("bad input", is_error=True)})
        session = make_session()

        result = await engine.run_turn(session, "go")

        tool_result = session.messages[2].content[0]
        assert isinstance(tool_result, ToolResultBlock)
        assert tool_result.is_error is True
        assert session.messages[2].to_dict()["content"][0]["is_error"] is True
        assert result.text == "The tool failed"

    @pytest.mark.asyncio
    async def test_tool_exception_aborts_turn(self):
        def explode(args):
            raise RuntimeError("provider down")

        service = FakeCompletionService(tool_response("toolu_1", "explode", "{}"))
        engine, _ = await make_engine(service, tools={"explode": explode})
        session = make_session()

        with pytest.raises(ToolInvocationError):
            await engine.run_turn(session, "go")

        # No tool_use without a matching result is left behind
        assert [m.role for m in session.messages] == [Role.USER]

    @pytest.mark.asyncio
    async def test_depth_limit(self):
        service = FakeCompletionService(
            tool_response("toolu_1", "echo", "{}"),
            tool_response("toolu_2", "echo", "{}"),
            tool_response("toolu_3", "echo", "{}"),
        )
        engine, server = await make_engine(service, tools={"echo": echo_tool}, max_tool_depth=2)

        with pytest.raises(MaxToolCallDepthExceeded) as exc_info:
            await engine.run_turn(make_session(), "loop forever")

        assert exc_info.value.max_depth == 2
        assert len(server.calls) == 2
        assert len(service.requests) == 3

    @pytest.mark.asyncio
    async def test_async_token_sink(self):
        service = FakeCompletionService(text_response("a", "b"))
        engine, _ = await make_engine(service)
        received = []

        async def sink(token, kind):
            received.append(token)

        await engine.run_turn(make_session(), "hi", sink)

        assert received == ["a", "b"]

    @pytest.mark.asyncio
    async def test_completion_error_keeps_user_message(self):
        service = FakeCompletionService(RuntimeError("api down"))
        engine, _ = await make_engine(service)
        session = make_session()

        with pytest.raises(RuntimeError):
            await engine.run_turn(session, "hello")

        assert session.messages_as_dicts() == [{"role": "user", "content": "hello"}]
