"""
Ownership of MCP tool-provider connections.

``ServerConnection`` holds at most one live stdio transport for a server slot
and always tears the previous one down before opening a new one.
``ServerManager`` keeps one connection per launch string, merges their tool
catalogs into the list advertised to the model, and routes tool calls back
to the server that owns each tool.
"""

import errno
import functools
import logging
import time
from contextlib import AsyncExitStack
from typing import Any, Callable, Dict, List, Optional

from mcp import ClientSession, StdioServerParameters
from mcp.client.stdio import stdio_client
from mcp.shared.exceptions import McpError
from opentelemetry import trace

from chat_errors import (
    MCPChatError,
    ServerConnectionError,
    ServerNotFoundError,
    ServerPermissionError,
    ToolInvocationError,
    UnknownToolError,
)
from chat_types import ToolCatalogEntry
from server_launch import resolve_server_spec

log = logging.getLogger("mcpchat")
tracer = trace.get_tracer("mcpchat")


def _iter_causes(error: BaseException):
    """Yield an error and everything nested in it (exception groups, __cause__)."""
    seen = set()
    stack = [error]
    while stack:
        current = stack.pop()
        if current is None or id(current) in seen:
            continue
        seen.add(id(current))
        yield current
        stack.extend(getattr(current, "exceptions", ()) or ())
        stack.append(current.__cause__)


def classify_connection_error(spec: str, error: BaseException) -> ServerConnectionError:
    """Map a spawn or handshake failure onto the connection error taxonomy."""
    for cause in _iter_causes(error):
        code = getattr(cause, "errno", None)
        if isinstance(cause, FileNotFoundError) or code == errno.ENOENT:
            return ServerNotFoundError(spec, "Error: The script path was not found.")
        if isinstance(cause, PermissionError) or code == errno.EACCES:
            return ServerPermissionError(spec, "Error: Permission denied.")
    return ServerConnectionError(spec, f"Details: {error}")


def format_tool_result_content(result: Any) -> List[Dict[str, Any]]:
    """Convert MCP ``CallToolResult.content`` into Messages API tool_result blocks."""
    blocks: List[Dict[str, Any]] = []
    for item in getattr(result, "content", None) or []:
        item_type = getattr(item, "type", None)
        if item_type == "text":
            blocks.append({"type": "text", "text": item.text})
        elif item_type == "image":
            blocks.append({
                "type": "image",
                "source": {"type": "base64", "media_type": item.mimeType, "data": item.data},
            })
        else:
            dumped = item.model_dump_json(exclude_none=True) if hasattr(item, "model_dump_json") else str(item)
            blocks.append({"type": "text", "text": dumped})
    return blocks


def with_tool_error_handling(func):
    """Decorator turning provider failures into ToolInvocationError."""
    @functools.wraps(func)
    async def wrapper(self, tool_name, *args, **kwargs):
        try:
            return await func(self, tool_name, *args, **kwargs)
        except MCPChatError:
            raise
        except McpError as e:
            log.error(f"MCP error executing {tool_name}: {e}")
            raise ToolInvocationError(tool_name, e) from e
        except Exception as e:
            log.error(f"Unexpected error executing {tool_name}: {e}")
            raise ToolInvocationError(tool_name, e) from e
    return wrapper


class ServerConnection:
    """A single server slot owning zero or one live transport.

    ``transport_factory`` and ``session_factory`` default to the MCP SDK's
    ``stdio_client`` and ``ClientSession``; both must return async context
    managers.
    """

    def __init__(self, name: str = "", transport_factory: Callable = stdio_client,
                 session_factory: Callable = ClientSession):
        self.name = name
        self.spec: Optional[str] = None
        self.session: Optional[Any] = None
        self.tools: List[ToolCatalogEntry] = []
        self._transport_factory = transport_factory
        self._session_factory = session_factory
        self._exit_stack: Optional[AsyncExitStack] = None

    @property
    def is_connected(self) -> bool:
        return self._exit_stack is not None and self.session is not None

    async def connect(self, spec: str) -> List[ToolCatalogEntry]:
        """Open a transport for ``spec``, handshake and fetch the tool catalog.

        Any transport already held by this slot is closed first. On failure the
        new transport is released and a classified ServerConnectionError is
        raised so the caller can carry on without this server.
        """
        if self._exit_stack is not None:
            try:
                await self.close()
            except Exception as e:
                log.warning(f"Error closing previous transport for {self.name or self.spec}: {e}")

        slot_name = self.name or spec
        start_time = time.time()
        with tracer.start_as_current_span("connect_server", attributes={"server.spec": spec}) as span:
            exit_stack = AsyncExitStack()
            try:
                server_command = resolve_server_spec(spec)
                log.info(f"Starting server process for {slot_name}: {server_command}")
                params = StdioServerParameters(command=server_command.command, args=server_command.args)

                self._exit_stack = exit_stack
                read_stream, write_stream = await exit_stack.enter_async_context(self._transport_factory(params))
                session = await exit_stack.enter_async_context(self._session_factory(read_stream, write_stream))
                await session.initialize()
                tool_response = await session.list_tools()
            except Exception as e:
                await self._discard(exit_stack)
                connection_error = classify_connection_error(spec, e)
                log.error(f'Failed to connect to MCP server "{spec}".')
                log.error(connection_error.detail)
                span.set_status(trace.StatusCode.ERROR, str(connection_error))
                raise connection_error from e

            self.spec = spec
            self.session = session
            self.tools = [
                ToolCatalogEntry(
                    name=tool.name,
                    description=tool.description or "",
                    input_schema=tool.inputSchema,
                    server=slot_name,
                )
                for tool in tool_response.tools
            ]
            connection_time = (time.time() - start_time) * 1000
            span.set_status(trace.StatusCode.OK)
            log.info(f"Connected to server {slot_name} in {connection_time:.2f}ms with tools: {[t.name for t in self.tools]}")
            return self.tools

    @with_tool_error_handling
    async def call_tool(self, tool_name: str, arguments: Optional[Dict[str, Any]] = None) -> Any:
        if not self.is_connected:
            raise UnknownToolError(tool_name)
        return await self.session.call_tool(tool_name, arguments or {})

    async def _discard(self, exit_stack: AsyncExitStack) -> None:
        self._exit_stack = None
        self.session = None
        self.tools = []
        try:
            await exit_stack.aclose()
        except Exception as e:
            log.debug(f"Error releasing failed transport: {e}")

    async def close(self) -> None:
        """Release the transport and terminate the server process."""
        exit_stack, self._exit_stack = self._exit_stack, None
        self.session = None
        self.tools = []
        if exit_stack is not None:
            log.debug(f"Closing transport for {self.name or self.spec}")
            await exit_stack.aclose()

    async def __aenter__(self) -> "ServerConnection":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()


class ServerManager:
    """All server slots of one chat session and their merged tool catalog."""

    def __init__(self, connection_factory: Callable[[str], ServerConnection] = None):
        self._connection_factory = connection_factory or (lambda name: ServerConnection(name=name))
        self.connections: Dict[str, ServerConnection] = {}
        self._tool_routes: Dict[str, ServerConnection] = {}

    @property
    def tools(self) -> List[ToolCatalogEntry]:
        return self._catalog()

    @property
    def connected_specs(self) -> List[str]:
        return [spec for spec, connection in self.connections.items() if connection.is_connected]

    def format_tools_for_anthropic(self) -> List[Dict[str, Any]]:
        return [tool.to_tool_param() for tool in self._catalog()]

    def _catalog(self) -> List[ToolCatalogEntry]:
        seen = set()
        catalog = []
        for connection in self.connections.values():
            for tool in connection.tools:
                if tool.name in seen:
                    continue
                seen.add(tool.name)
                catalog.append(tool)
        return catalog

    def _rebuild_routes(self) -> None:
        self._tool_routes = {}
        for connection in self.connections.values():
            for tool in connection.tools:
                if tool.name in self._tool_routes:
                    log.warning(f"Tool '{tool.name}' from {connection.name} shadowed by {self._tool_routes[tool.name].name}")
                    continue
                self._tool_routes[tool.name] = connection

    async def connect(self, spec: str) -> List[ToolCatalogEntry]:
        """Connect (or reconnect) the slot for ``spec``."""
        connection = self.connections.get(spec)
        if connection is None:
            connection = self._connection_factory(spec)
            self.connections[spec] = connection
        try:
            return await connection.connect(spec)
        finally:
            self._rebuild_routes()

    async def connect_all(self, specs: List[str]) -> List[str]:
        """Connect every spec, warning about and skipping the ones that fail.

        Returns:
            The specs that failed to connect.
        """
        failed = []
        for spec in specs:
            try:
                await self.connect(spec)
            except ServerConnectionError as e:
                log.warning(f"Failed to connect to server {spec}: {e}")
                failed.append(spec)
        return failed

    @with_tool_error_handling
    async def call_tool(self, tool_name: str, arguments: Optional[Dict[str, Any]] = None) -> Any:
        connection = self._tool_routes.get(tool_name)
        if connection is None:
            raise UnknownToolError(tool_name)
        return await connection.session.call_tool(tool_name, arguments or {})

    async def close(self) -> None:
        """Close every slot; errors are logged so the remaining slots still close."""
        for spec, connection in list(self.connections.items()):
            try:
                await connection.close()
            except Exception as e:
                log.error(f"Error closing server {spec}: {e}")
        self.connections.clear()
        self._tool_routes = {}
