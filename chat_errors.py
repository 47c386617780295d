"""
Exception hierarchy for MCP Chat.

Connection and tool-input errors are handled close to where they happen and
turned into warnings or degraded continuations. Persistence, tool-invocation
and depth errors travel up to the turn boundary, where they are reported to
the user. Startup errors end the process.
"""

from typing import Optional


class MCPChatError(Exception):
    """Base class for every error raised by MCP Chat."""


class StartupError(MCPChatError):
    """Missing credential or unsupported platform; fatal before any session work."""


class UnsupportedScriptError(MCPChatError, ValueError):
    """A server launch string that no resolution rule accepts."""

    def __init__(self, spec: str):
        self.spec = spec
        super().__init__("Server script must be a .js or .py file")


class ServerConnectionError(MCPChatError):
    """Spawning or handshaking with a tool-provider process failed."""

    reason = "generic"

    def __init__(self, spec: str, detail: str):
        self.spec = spec
        self.detail = detail
        super().__init__(f'Failed to connect to MCP server "{spec}". {detail}')


class ServerNotFoundError(ServerConnectionError):
    reason = "not_found"


class ServerPermissionError(ServerConnectionError):
    reason = "permission_denied"


class ToolInputParseError(MCPChatError):
    """Streamed tool arguments did not concatenate into a JSON object."""

    def __init__(self, tool_name: str, raw_input: str, cause: Optional[Exception] = None):
        self.tool_name = tool_name
        self.raw_input = raw_input
        message = f"Could not parse arguments for tool '{tool_name}'"
        if cause is not None:
            message += f": {cause}"
        super().__init__(message)


class ToolInvocationError(MCPChatError):
    """The tool provider raised while executing a tool."""

    def __init__(self, tool_name: str, cause: Exception):
        self.tool_name = tool_name
        super().__init__(f"Tool '{tool_name}' failed: {cause}")


class UnknownToolError(ToolInvocationError):
    """The model asked for a tool no connected server exposes."""

    def __init__(self, tool_name: str):
        self.tool_name = tool_name
        MCPChatError.__init__(self, f"Tool '{tool_name}' is not provided by any connected server")


class PersistenceError(MCPChatError):
    """Reading or writing a chat file failed."""

    def __init__(self, path, cause: Exception):
        self.path = path
        super().__init__(f"Chat file error for {path}: {cause}")


class MaxToolCallDepthExceeded(MCPChatError):
    """A single turn chained more tool calls than the configured maximum."""

    def __init__(self, max_depth: int):
        self.max_depth = max_depth
        super().__init__(f"Exceeded the maximum of {max_depth} chained tool calls in one turn")
