#!/usr/bin/env python3

# /// script
# dependencies = [
#     "anthropic>=0.15.0",
#     "mcp>=1.0.0",
#     "typer>=0.9.0",
#     "rich>=13.6.0",
#     "httpx>=0.25.0",
#     "pyyaml>=6.0.1",
#     "python-dotenv>=1.0.0",
#     "orjson>=3.9.0",
#     "colorama>=0.4.6",
#     "typing-extensions>=4.8.0",
#     "opentelemetry-api>=1.19.0",
#     "opentelemetry-sdk>=1.19.0",
#     "aiofiles>=23.2.0",
#     "fastapi>=0.100.0",
#     "uvicorn>=0.23.0"
# ]
# ///

"""
MCP Chat: a command-line chat client for testing MCP servers with Claude.

Commands:
    mcp-chat chat   interactive chat (or a one-shot prompt with --prompt)
    mcp-chat chats  list saved chats
    mcp-chat serve  run the HTTP API

State lives under ~/.mcpchat (override with MCPCHAT_HOME): config.yaml, the
command history file and one JSON file per chat in chats/.
"""

import asyncio
import logging
import os
import platform
import re
import sys
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import aiofiles
import anthropic
import colorama
import httpx
import orjson as json
import typer
import yaml
from dotenv import load_dotenv
from opentelemetry import trace
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter
from rich.console import Console
from rich.logging import RichHandler
from rich.markdown import Markdown
from rich.prompt import Prompt
from rich.table import Table
from rich.theme import Theme
from typing_extensions import Annotated

from chat_engine import (
    DEFAULT_MAX_TOKENS,
    DEFAULT_MAX_TOOL_DEPTH,
    AnthropicCompletionService,
    ChatEngine,
    CompletionService,
    TokenKind,
    TurnResult,
)
from chat_errors import (
    MaxToolCallDepthExceeded,
    PersistenceError,
    ServerConnectionError,
    StartupError,
    ToolInvocationError,
)
from chat_store import ChatStore
from chat_types import DEFAULT_MODEL, ChatSession, Role, ToolUseBlock
from server_launch import get_default_config_path, parse_config_file
from server_manager import ServerManager

app = typer.Typer(help="🔌 MCP Chat: test MCP servers and agents with Claude")

custom_theme = Theme({
    "info": "cyan",
    "success": "green bold",
    "warning": "yellow bold",
    "error": "red bold",
    "server": "blue",
    "tool": "green",
    "tool.input": "green dim",
    "tool.result": "blue",
    "prompt": "yellow",
    "model": "bright_blue",
})

console = Console(theme=custom_theme)
stderr_console = Console(theme=custom_theme, stderr=True, highlight=False)

logging.basicConfig(
    level=logging.INFO,
    format="%(message)s",
    datefmt="[%X]",
    handlers=[RichHandler(rich_tracebacks=True, markup=True, console=stderr_console)]
)
log = logging.getLogger("mcpchat")

DEFAULT_HISTORY_SIZE = 1000
DEFAULT_HISTORY_COUNT = 20
HISTORY_ARGS_PATTERN = re.compile(r"^(-n\s+)?(-?\d+)$")

CONFIG_TYPES = {
    'default_model': str,
    'max_tokens': int,
    'max_tool_depth': int,
    'temperature': float,
    'chats_dir': str,
    'history_size': int,
    'enable_tracing': bool,
}

TOKEN_STYLES = {
    TokenKind.TEXT: None,
    TokenKind.TOOL_CALL: "tool",
    TokenKind.TOOL_INPUT: "tool.input",
    TokenKind.TOOL_RESULT: "tool.result",
}


def mcpchat_home() -> Path:
    return Path(os.environ.get("MCPCHAT_HOME") or Path.home() / ".mcpchat").expanduser()


class Config:
    """Application settings from ``config.yaml`` plus the environment."""

    def __init__(self, home: Optional[Path] = None):
        # Load environment variables from .env file
        load_dotenv()
        self.home = Path(home) if home else mcpchat_home()
        self.config_file = self.home / "config.yaml"
        self.history_file = self.home / "history"
        self.api_key: Optional[str] = os.environ.get("ANTHROPIC_API_KEY")
        self.default_model: str = DEFAULT_MODEL
        self.max_tokens: int = DEFAULT_MAX_TOKENS
        self.max_tool_depth: int = DEFAULT_MAX_TOOL_DEPTH
        self.temperature: Optional[float] = None
        self.chats_dir: str = str(self.home / "chats")
        self.history_size: int = DEFAULT_HISTORY_SIZE
        self.enable_tracing: bool = False

        self.load()

    def _prepare_config_data(self) -> Dict[str, Any]:
        """Prepare configuration data for saving"""
        return {
            'default_model': self.default_model,
            'max_tokens': self.max_tokens,
            'max_tool_depth': self.max_tool_depth,
            'temperature': self.temperature,
            'chats_dir': self.chats_dir,
            'history_size': self.history_size,
            'enable_tracing': self.enable_tracing,
        }

    def load(self):
        """Load configuration from file, writing the defaults when it is missing"""
        if not self.config_file.exists():
            self.save()
            return

        try:
            with open(self.config_file, 'r') as f:
                config_data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            log.error(f"Error loading config file {self.config_file}: {e}")
            return

        if not isinstance(config_data, dict):
            log.error(f"Config file {self.config_file} must hold a mapping, using defaults")
            return

        for key, value in config_data.items():
            if key not in CONFIG_TYPES:
                log.warning(f"Ignoring unknown config key '{key}' in {self.config_file}")
                continue
            try:
                setattr(self, key, self._coerce(key, value))
            except (TypeError, ValueError):
                log.warning(f"Ignoring invalid value {value!r} for config key '{key}' in {self.config_file}")

    @staticmethod
    def _coerce(key: str, value: Any) -> Any:
        """Convert a YAML value to the type ``key`` holds, raising on a mismatch"""
        expected = CONFIG_TYPES[key]
        if key == 'temperature' and value is None:
            return None
        if expected is bool:
            if not isinstance(value, bool):
                raise TypeError(f"{key} must be true or false")
            return value
        if expected is str:
            if not isinstance(value, str) or not value:
                raise TypeError(f"{key} must be a non-empty string")
            return value
        if isinstance(value, bool):
            raise TypeError(f"{key} must be a number")
        converted = expected(value)
        if expected is int and converted < 1:
            raise ValueError(f"{key} must be positive")
        return converted

    def save(self):
        """Save configuration to file"""
        try:
            self.home.mkdir(parents=True, exist_ok=True)
            with open(self.config_file, 'w') as f:
                yaml.safe_dump(self._prepare_config_data(), f, sort_keys=False)
        except (OSError, yaml.YAMLError) as e:
            log.error(f"Error saving config file {self.config_file}: {e}")

    def require_api_key(self) -> str:
        if not self.api_key:
            raise StartupError("ANTHROPIC_API_KEY is not set")
        return self.api_key


def configure_tracing(config: Config) -> None:
    trace_provider = TracerProvider()
    if config.enable_tracing:
        trace_provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))
    trace.set_tracer_provider(trace_provider)


class CommandHistory:
    """Line-oriented record of what the user typed, newest last."""

    def __init__(self, path: Path, max_entries: int = DEFAULT_HISTORY_SIZE):
        self.path = Path(path)
        self.max_entries = max_entries
        self.entries: List[str] = []

    async def load(self) -> None:
        try:
            async with aiofiles.open(self.path, "r") as f:
                content = await f.read()
        except FileNotFoundError:
            self.entries = []
            return
        except OSError as e:
            log.error(f"Error reading history file {self.path}: {e}")
            self.entries = []
            return
        self.entries = [line for line in content.split("\n") if line][-self.max_entries:]

    def add(self, command: str) -> None:
        self.entries.append(command)
        if len(self.entries) > self.max_entries:
            self.entries = self.entries[-self.max_entries:]

    async def save(self) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            async with aiofiles.open(self.path, "w") as f:
                await f.write("\n".join(self.entries) + "\n")
        except OSError as e:
            log.error(f"Failed to save history: {e}")

    def tail(self, count: int):
        """The last ``count`` entries and the index the slice starts at."""
        start = max(0, len(self.entries) - count)
        return start, self.entries[start:]


class MCPChatClient:
    """One chat session bound to its servers, its file and the model."""

    def __init__(self, config: Config, completion_service: Optional[CompletionService] = None,
                 store: Optional[ChatStore] = None, server_manager: Optional[ServerManager] = None,
                 model: Optional[str] = None, system_prompt: Optional[str] = None,
                 output_console: Optional[Console] = None,
                 ask: Optional[Callable[[], str]] = None):
        self.config = config
        self.console = output_console or console
        self.store = store or ChatStore(config.chats_dir)
        self.server_manager = server_manager or ServerManager()
        if completion_service is None:
            completion_service = AnthropicCompletionService(api_key=config.require_api_key())
        self.engine = ChatEngine(
            completion_service,
            self.server_manager,
            max_tokens=config.max_tokens,
            max_tool_depth=config.max_tool_depth,
            temperature=config.temperature,
        )
        self.history = CommandHistory(config.history_file, config.history_size)
        self.model_override = model
        self.system_prompt = system_prompt
        self.session: Optional[ChatSession] = None
        self._ask = ask or (lambda: Prompt.ask("\n[prompt]>[/]", console=self.console))

    def safe_print(self, *args, **kwargs):
        self.console.print(*args, **kwargs)

    def _ensure_session(self) -> ChatSession:
        if self.session is None:
            session = self.store.new_session(self.model_override or self.config.default_model)
            session.settings.servers = self.server_manager.connected_specs
            if self.system_prompt:
                session.settings.system_prompt = self.system_prompt
            self.session = session
        return self.session

    async def connect_to_servers(self, specs: List[str]) -> List[str]:
        """Connect each server, warning about the ones that fail.

        Returns:
            The specs that connected.
        """
        connected = []
        for spec in specs:
            try:
                tools = await self.server_manager.connect(spec)
            except ServerConnectionError as e:
                self.safe_print(f"[warning]Failed to connect to server {spec}[/]")
                log.debug(f"Connection failure for {spec}: {e}")
                continue
            self.safe_print(f"[success]Connected to server with tools:[/] {[tool.name for tool in tools]}")
            connected.append(spec)

        if self.session is not None:
            servers = list(self.session.settings.servers or [])
            servers.extend(spec for spec in connected if spec not in servers)
            self.session.settings.servers = servers
        return connected

    def handle_special_command(self, message: str) -> bool:
        """Handle ``quit``, ``exit`` and ``history``.

        Returns:
            True if the message was a special command and must not be sent.
        """
        trimmed = message.strip().lower()
        if trimmed in ("quit", "exit"):
            return True
        if not trimmed.startswith("history"):
            return False

        args = trimmed[len("history"):].strip()
        count = DEFAULT_HISTORY_COUNT
        if args:
            match = HISTORY_ARGS_PATTERN.match(args)
            if not match:
                self.safe_print("Usage: history [N] or history -n N", markup=False)
                return True
            count = int(match.group(2))
            if count <= 0:
                self.safe_print("Error: N must be a positive integer for history command.", markup=False)
                return True

        start, entries = self.history.tail(count)
        for index, command in enumerate(entries):
            self.safe_print(f"{start + index + 1}  {command}", markup=False, highlight=False)
        return True

    def print_history(self, session: ChatSession) -> None:
        self.safe_print("\n[bold]Previous messages:[/]")
        for message in session.messages:
            if message.role == Role.USER:
                if message.is_text:
                    self.safe_print(f"\n> {message.content}", markup=False, highlight=False)
            elif message.is_text:
                self.safe_print(Markdown(message.content))
            else:
                for block in message.content:
                    if isinstance(block, ToolUseBlock):
                        arguments = json.dumps(block.input, option=json.OPT_INDENT_2).decode("utf-8")
                        self.safe_print(f"\n[Tool Call] {block.name}", style="tool", markup=False)
                        self.safe_print(f"Arguments: {arguments}", style="tool", markup=False)
        self.safe_print("\n--- Continuing chat ---\n")

    async def load_chat(self, chat_ref: str, echo_history: bool = True,
                        disable_server_reconnect: bool = False) -> ChatSession:
        """Resume a saved chat, reconnecting the servers it lists.

        Raises:
            PersistenceError: The chat file could not be read.
        """
        try:
            session = await self.store.load(chat_ref)
        except PersistenceError as e:
            self.safe_print(f"[error]Failed to load chat file:[/] {e}")
            raise

        if self.model_override:
            session.settings.model = self.model_override
        if self.system_prompt:
            session.settings.system_prompt = self.system_prompt
        self.session = session

        if not disable_server_reconnect and session.settings.servers:
            already_connected = set(self.server_manager.connected_specs)
            await self.connect_to_servers(
                [spec for spec in session.settings.servers if spec not in already_connected]
            )

        if echo_history:
            self.print_history(session)
        return session

    async def save_chat(self) -> Path:
        """Write the session, allocating its file on the first save."""
        session = self._ensure_session()
        return await self.store.save(session)

    def _print_token(self, token: str, kind: TokenKind) -> None:
        self.console.print(token, end="", style=TOKEN_STYLES.get(kind),
                           markup=False, highlight=False, soft_wrap=True)

    async def process_query_stream(self, query: str, on_token=None) -> TurnResult:
        session = self._ensure_session()
        return await self.engine.run_turn(session, query, on_token or self._print_token)

    async def chat_loop(self) -> None:
        """Read queries until ``exit``/``quit``, saving the chat after each turn."""
        await self.history.load()

        self.safe_print("\n[success]Welcome to MCP Chat Interactive![/]")
        self.safe_print("See connected server(s) with tools above.")
        self.safe_print("Commands:")
        self.safe_print("  exit, quit - Close the chat")
        self.safe_print(f"  history [N] - View last N commands (default {DEFAULT_HISTORY_COUNT})")

        while True:
            try:
                message = self._ask()
            except (EOFError, KeyboardInterrupt):
                self.safe_print("\n[warning]Exiting...[/]")
                break

            if self.handle_special_command(message):
                if message.strip().lower() in ("quit", "exit"):
                    break
                continue

            if not message.strip():
                continue

            # History is written before the query runs so a crash keeps it
            self.history.add(message)
            await self.history.save()

            try:
                await self.process_query_stream(message)
            except (ToolInvocationError, MaxToolCallDepthExceeded) as e:
                self.safe_print(f"\n[error]Error:[/] {e}")
            except (anthropic.APIError, httpx.RequestError) as e:
                self.safe_print(f"\n[error]Error ({type(e).__name__}):[/] {e}")
            self.safe_print("\n")

            try:
                await self.save_chat()
            except PersistenceError as e:
                self.safe_print(f"[error]Failed to save chat file:[/] {e}")

    async def run_prompt(self, prompt: str, chat_ref: Optional[str] = None) -> TurnResult:
        """Answer one prompt, optionally continuing a saved chat, and save."""
        if chat_ref:
            await self.load_chat(chat_ref, echo_history=False)
        result = await self.process_query_stream(prompt)
        self.safe_print()
        await self.save_chat()
        return result

    async def cleanup(self) -> None:
        await self.server_manager.close()


def collect_server_specs(servers: Optional[List[str]], config_path: Optional[str]) -> List[str]:
    """Servers from ``--server`` flags, else from a Claude desktop config."""
    if servers:
        return list(servers)
    if config_path:
        return parse_config_file(config_path)
    try:
        default_path = get_default_config_path()
    except StartupError as e:
        log.debug(f"No default desktop config: {e}")
        return []
    if default_path.exists():
        return parse_config_file(default_path)
    return []


# Add a callback for when no command is specified
@app.callback(invoke_without_command=True)
def main_callback(ctx: typer.Context):
    """Generic MCP client for testing and evaluating MCP servers and agents."""
    if ctx.invoked_subcommand is None:
        console.print("\n[bold green]MCP Chat[/]")
        console.print("\n[bold]Commands:[/]")
        console.print("  [info]chat[/]              Start an interactive chat session")
        console.print("  [info]chat --prompt TEXT[/] Run a single prompt and exit")
        console.print("  [info]chats[/]             List saved chats")
        console.print("  [info]serve[/]             Run the HTTP API\n")


@app.command()
def chat(
    server: Annotated[List[str], typer.Option("--server", "-s", help="MCP server command to run (repeatable)")] = None,
    config: Annotated[str, typer.Option("--config", "-c", help="Path to claude_desktop_config.json")] = None,
    model: Annotated[str, typer.Option("--model", "-m", help="Model to chat with")] = None,
    prompt: Annotated[str, typer.Option("--prompt", "-p", help="Run a single prompt and exit")] = None,
    chat_file: Annotated[str, typer.Option("--chat", "-f", help="Chat id or file to resume")] = None,
    system: Annotated[str, typer.Option("--system", help="System prompt for new chats")] = None,
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Enable verbose logging")] = False,
):
    """Chat with Claude using the tools of one or more MCP servers"""
    if verbose:
        logging.getLogger("mcpchat").setLevel(logging.DEBUG)

    asyncio.run(main_async(server, config, model, prompt, chat_file, system))


async def main_async(server, config_path, model, prompt, chat_file, system_prompt):
    """Main async entry point"""
    client = None
    try:
        config = Config()
        configure_tracing(config)
        client = MCPChatClient(config, model=model, system_prompt=system_prompt)

        specs = collect_server_specs(server, config_path)
        if specs:
            await client.connect_to_servers(specs)
        else:
            console.print("[warning]No mcp server specified. Starting chat loop without server.[/]")

        if prompt:
            console.print(f"Running prompt: {prompt}")
            await client.run_prompt(prompt, chat_file)
        else:
            if chat_file:
                await client.load_chat(chat_file)
            await client.chat_loop()

    except StartupError as e:
        stderr_console.print(f"[error]Error:[/] {e}")
        sys.exit(1)
    except Exception as e:
        stderr_console.print(f"[error]Error:[/] {e}")
        log.debug("Unhandled error", exc_info=True)
        sys.exit(1)
    finally:
        if client is not None:
            try:
                await client.cleanup()
            except Exception as close_error:
                log.error(f"Error during cleanup: {close_error}")


@app.command()
def chats():
    """List saved chats, newest first"""
    asyncio.run(chats_async())


async def chats_async():
    config = Config()
    saved = await ChatStore(config.chats_dir).list_chats()
    if not saved:
        console.print("[warning]No saved chats[/]")
        return

    table = Table(title="Saved Chats")
    table.add_column("ID", style="info")
    table.add_column("Title")
    table.add_column("Model", style="model")
    table.add_column("Messages", justify="right")
    table.add_column("Last Modified")
    for item in saved:
        table.add_row(item.id, item.title, item.model or "", str(item.message_count), item.last_modified)
    console.print(table)


@app.command()
def serve(
    host: Annotated[str, typer.Option("--host", help="Interface to bind")] = "127.0.0.1",
    port: Annotated[int, typer.Option("--port", help="Port to listen on")] = 3000,
):
    """Serve the chat HTTP API"""
    import uvicorn

    from chat_api import create_app

    try:
        config = Config()
        configure_tracing(config)
        config.require_api_key()
    except StartupError as e:
        stderr_console.print(f"[error]Error:[/] {e}")
        sys.exit(1)

    console.print(f"[success]Serving MCP Chat API on http://{host}:{port}[/]")
    uvicorn.run(create_app(config), host=host, port=port, log_level="info")


def main():
    # Initialize colorama for Windows terminals
    if platform.system() == "Windows":
        colorama.init(convert=True)
    app()


if __name__ == "__main__":
    main()
