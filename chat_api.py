"""
HTTP API over saved chats.

Routes:
    GET  /api/chats                     saved chats, newest first
    GET  /api/chat?chatId=              one chat with its messages
    POST /api/chat/create               allocate a new chat file
    PUT  /api/chat/settings?chatId=     partial settings update
    POST /api/chat/message?chatId=      run one turn, streamed as Server-Sent Events

The message route streams ``{"type": "token"}`` events while the turn runs,
then one ``{"type": "complete"}`` event with the saved chat, or one
``{"type": "error"}`` event if the turn failed.
"""

import asyncio
import logging
from typing import Any, AsyncIterator, Callable, Dict, Optional

import orjson as json
from fastapi import FastAPI, Query
from fastapi.responses import JSONResponse, StreamingResponse

from chat_engine import AnthropicCompletionService, TokenKind
from chat_errors import PersistenceError
from chat_store import ChatStore, chat_timestamp, is_chat_id, iso_from_ms
from chat_types import ChatSession
from mcp_chat import Config, MCPChatClient, stderr_console

log = logging.getLogger("mcpchat")

INVALID_CHAT_ID = "chatId must be a chat file name"
MESSAGE_ERROR = "Failed to process message. Please check your server settings."

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",  # Disable nginx buffering
}


def _format_sse_event(data: Dict[str, Any]) -> bytes:
    """Format data as a Server-Sent Event."""
    return b"data: " + json.dumps(data) + b"\n\n"


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


def _chat_payload(session: ChatSession) -> Dict[str, Any]:
    return {
        "id": session.id,
        "title": session.title,
        "messages": session.messages_as_dicts(),
        "settings": {**session.extra_settings, **session.settings.to_dict()},
    }


async def message_stream(client_factory: Callable[[], MCPChatClient], store: ChatStore,
                         chat_id: str, content: str) -> AsyncIterator[bytes]:
    """Run one turn for ``chat_id`` and yield it as Server-Sent Events.

    The turn runs in its own task, which opens and closes the chat's servers.
    Closing the generator early cancels that task and waits for it.
    """
    turn: Optional[asyncio.Task] = None
    try:
        client = client_factory()
        queue: asyncio.Queue = asyncio.Queue()

        async def on_token(token: str, kind: TokenKind) -> None:
            await queue.put(token)

        async def run_turn() -> None:
            try:
                session = await client.load_chat(chat_id, echo_history=False, disable_server_reconnect=True)
                servers = list(session.settings.servers or [])
                if servers:
                    connected = await client.connect_to_servers(servers)
                    if len(connected) < len(servers):
                        log.warning("Resetting MCP client without servers. Please fix the server string in chat settings.")
                        await client.server_manager.close()
                await client.process_query_stream(content, on_token)
                await client.save_chat()
            finally:
                try:
                    await client.cleanup()
                except Exception as e:
                    log.warning(f"Error cleaning up MCP client: {e}")
                await queue.put(None)

        turn = asyncio.create_task(run_turn())
        while True:
            token = await queue.get()
            if token is None:
                break
            yield _format_sse_event({"type": "token", "content": token})
        await turn

        saved = await store.load(chat_id)
        yield _format_sse_event({"type": "complete", "data": _chat_payload(saved)})
    except Exception as e:
        log.error(f"Error in MCP client operations: {e}")
        yield _format_sse_event({"type": "error", "error": MESSAGE_ERROR})
    finally:
        if turn is not None and not turn.done():
            turn.cancel()
            try:
                await turn
            except asyncio.CancelledError:
                log.info(f"Message stream for {chat_id} closed before its turn finished")
            except Exception as e:
                log.warning(f"Message turn for {chat_id} failed while closing: {e}")


def create_app(config: Config, client_factory: Optional[Callable[[], MCPChatClient]] = None,
               store: Optional[ChatStore] = None) -> FastAPI:
    """Build the API app.

    ``client_factory`` makes a fresh chat client for each message request; by
    default it shares one Anthropic completion service across requests.
    """
    store = store or ChatStore(config.chats_dir)

    if client_factory is None:
        completion_service = AnthropicCompletionService(api_key=config.require_api_key())

        def client_factory() -> MCPChatClient:
            return MCPChatClient(config, completion_service=completion_service, store=store,
                                 output_console=stderr_console)

    app = FastAPI(title="MCP Chat API")

    @app.get("/api/chats")
    async def get_chats():
        try:
            chats = await store.list_chats()
        except OSError as e:
            log.error(f"Error fetching chats: {e}")
            return _error(500, "Failed to fetch chats")
        return [chat.to_dict() for chat in chats]

    @app.get("/api/chat")
    async def get_chat(chat_id: Optional[str] = Query(default=None, alias="chatId")):
        if not chat_id:
            return _error(400, "chatId query parameter is required")
        if not is_chat_id(chat_id):
            return _error(400, INVALID_CHAT_ID)
        try:
            session = await store.load(chat_id)
        except PersistenceError as e:
            log.error(f"Error loading chat: {e}")
            return _error(500, "Failed to load chat")
        payload = _chat_payload(session)
        payload["settings"] = {"title": session.title, **payload["settings"]}
        return payload

    @app.post("/api/chat/create")
    async def create_chat():
        try:
            session = await store.create(config.default_model)
        except PersistenceError as e:
            log.error(f"Error creating chat: {e}")
            return _error(500, "Failed to create chat")
        return {
            "id": session.id,
            "title": session.title,
            "model": session.settings.model,
            "lastModified": iso_from_ms(chat_timestamp(session.id)),
            "messageCount": 0,
        }

    @app.put("/api/chat/settings")
    async def put_settings(chat_id: Optional[str] = Query(default=None, alias="chatId"),
                           new_settings: Optional[Dict[str, Any]] = None):
        if not chat_id:
            return _error(400, "chatId is required")
        if not is_chat_id(chat_id):
            return _error(400, INVALID_CHAT_ID)
        try:
            return await store.update_settings(chat_id, new_settings or {})
        except PersistenceError as e:
            log.error(f"Error updating chat settings: {e}")
            return _error(500, "Failed to update chat settings")

    @app.post("/api/chat/message")
    async def post_message(chat_id: Optional[str] = Query(default=None, alias="chatId"),
                           body: Optional[Dict[str, Any]] = None):
        if not chat_id:
            return _error(400, "chatId query parameter is required")
        if not is_chat_id(chat_id):
            return _error(400, INVALID_CHAT_ID)
        content = (body or {}).get("content")
        if not content or not isinstance(content, str):
            return _error(400, "content is required in request body")
        try:
            await store.load(chat_id)
        except PersistenceError as e:
            log.error(f"Error in message handler: {e}")
            return _error(500, "Internal server error")

        return StreamingResponse(
            message_stream(client_factory, store, chat_id, content),
            media_type="text/event-stream",
            headers=SSE_HEADERS,
        )

    return app
