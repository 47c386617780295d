"""
Launch-string handling for MCP tool-provider processes.

A server is described by a single free-form string such as
``npx -y @modelcontextprotocol/server-filesystem /tmp`` or
``uv run server.py --port 3000``. ``resolve_server_spec`` turns that string
into the executable and argument list handed to the stdio transport. The
Claude desktop config reader flattens ``mcpServers`` entries into the same
string form so both sources go through one resolver.
"""

import logging
import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

import orjson as json

from chat_errors import StartupError, UnsupportedScriptError

log = logging.getLogger("mcpchat")

# Launchers whose remaining tokens are passed through untouched
PASSTHROUGH_LAUNCHERS = ("npx", "uvx", "docker")
JS_LAUNCHERS = ("node", "bun")
DEFAULT_JS_RUNTIME = "node"


@dataclass
class ServerCommand:
    command: str
    args: List[str] = field(default_factory=list)

    def __str__(self) -> str:
        return " ".join([self.command, *self.args])


def python_launcher(platform: Optional[str] = None) -> str:
    """Name of the Python interpreter to spawn on this platform."""
    platform = platform or sys.platform
    return "python" if platform == "win32" else "python3"


def resolve_server_spec(spec: str, platform: Optional[str] = None,
                        js_runtime: str = DEFAULT_JS_RUNTIME) -> ServerCommand:
    """Resolve a server launch string into a command and its arguments.

    Rules are tried in order and the first match wins:

    1. ``npx``, ``uvx`` or ``docker`` as the first token: that token is the
       command and every other token is an argument.
    2. A ``.py`` script: ``uv`` as the first token keeps ``uv`` as the command,
       otherwise the platform Python launcher runs the tokens after the first.
    3. A ``.js`` script: ``node`` or ``bun`` as the first token is the command,
       otherwise the JavaScript runtime runs the script path as its only
       argument.
    4. Anything else raises ``UnsupportedScriptError``.

    Args:
        spec: The raw launch string.
        platform: ``sys.platform`` value to resolve for; defaults to the running one.
        js_runtime: Executable used for bare ``.js`` paths.

    Returns:
        The resolved ServerCommand.
    """
    tokens = spec.split()
    if not tokens:
        raise UnsupportedScriptError(spec)

    head, rest = tokens[0], tokens[1:]

    if head in PASSTHROUGH_LAUNCHERS:
        return ServerCommand(command=head, args=rest)

    if any(token.endswith(".py") for token in tokens):
        if head == "uv":
            return ServerCommand(command="uv", args=rest)
        # A lone script path is the only argument; otherwise the leading path is dropped
        return ServerCommand(command=python_launcher(platform), args=rest if rest else [head])

    if any(token.endswith(".js") for token in tokens):
        if head in JS_LAUNCHERS:
            return ServerCommand(command=head, args=rest)
        script = next(token for token in tokens if token.endswith(".js"))
        return ServerCommand(command=js_runtime, args=[script])

    raise UnsupportedScriptError(spec)


def get_default_config_path(platform: Optional[str] = None) -> Path:
    """Location of claude_desktop_config.json for the given platform.

    Raises:
        StartupError: On platforms the desktop app does not ship for.
    """
    platform = platform or sys.platform
    if platform == "darwin":
        return Path.home() / "Library" / "Application Support" / "Claude" / "claude_desktop_config.json"
    if platform == "win32":
        appdata = os.environ.get("APPDATA", "")
        return Path(appdata) / "Claude" / "claude_desktop_config.json"
    raise StartupError(f"Unsupported platform: {platform}")


def parse_config_file(config_path) -> List[str]:
    """Flatten the ``mcpServers`` map of a desktop config into launch strings.

    Unreadable files, invalid JSON and a missing ``mcpServers`` key are logged
    and produce an empty list rather than an error.
    """
    try:
        with open(config_path, "rb") as f:
            desktop_config = json.loads(f.read())
    except FileNotFoundError:
        log.error(f"Claude desktop config not found: {config_path}")
        return []
    except OSError as e:
        log.error(f"Error reading Claude desktop config {config_path}: {e}")
        return []
    except json.JSONDecodeError as e:
        log.error(f"Invalid JSON in Claude desktop config {config_path}: {e}")
        return []

    mcp_servers = desktop_config.get("mcpServers") if isinstance(desktop_config, dict) else None
    if not isinstance(mcp_servers, dict):
        log.warning(f"No 'mcpServers' entries found in {config_path}")
        return []

    specs = []
    for server_name, server_data in mcp_servers.items():
        if not isinstance(server_data, dict) or "command" not in server_data:
            log.warning(f"Skipping server '{server_name}': missing 'command' field")
            continue
        args = [str(arg) for arg in server_data.get("args", [])]
        specs.append(" ".join([server_data["command"], *args]))
        log.debug(f"Imported server '{server_name}' from desktop config: {specs[-1]}")
    return specs
