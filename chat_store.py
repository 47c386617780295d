"""
Durable chat sessions.

Each chat lives in its own JSON file, ``chat-<index>-<epoch-ms>.json``, holding
the title, the chat settings and the full message history. Saves always
rewrite the whole file through a temporary file and ``os.replace``; there is no
locking, so one writer per file is assumed.
"""

import logging
import os
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import aiofiles
import orjson as json

from chat_errors import PersistenceError
from chat_types import (
    DEFAULT_MODEL,
    ChatListItem,
    ChatSession,
    ChatSettings,
    ConversationMessage,
)

log = logging.getLogger("mcpchat")

CHAT_FILE_PREFIX = "chat-"
CHAT_FILE_SUFFIX = ".json"
_MODELLED_SETTINGS = ("model", "systemPrompt", "servers")


def dump_json(data: Any) -> bytes:
    return json.dumps(data, option=json.OPT_INDENT_2)


def is_chat_file(name: str) -> bool:
    return name.startswith(CHAT_FILE_PREFIX) and name.endswith(CHAT_FILE_SUFFIX)


def chat_timestamp(chat_id: str) -> Optional[int]:
    """Epoch milliseconds embedded in a chat file name, if there is one."""
    try:
        return int(chat_id[:-len(CHAT_FILE_SUFFIX)].split("-")[2])
    except (IndexError, ValueError):
        return None


def is_chat_id(name: str) -> bool:
    """A bare chat file name, with no directory part."""
    return is_chat_file(name) and "/" not in name and "\\" not in name


def iso_from_ms(timestamp_ms: float) -> str:
    moment = datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def display_time(timestamp_ms: float) -> str:
    """Local time as ``1/2/2025, 3:04:05 PM``, the form used in default titles."""
    moment = datetime.fromtimestamp(timestamp_ms / 1000)
    hour = moment.hour % 12 or 12
    meridiem = "AM" if moment.hour < 12 else "PM"
    return f"{moment.month}/{moment.day}/{moment.year}, {hour}:{moment:%M:%S} {meridiem}"


class ChatStore:
    """Create, load, list and save chat files under ``chats_dir``."""

    def __init__(self, chats_dir: Union[str, Path]):
        self.chats_dir = Path(chats_dir).expanduser()

    def ensure_directory(self) -> None:
        self.chats_dir.mkdir(parents=True, exist_ok=True)

    def resolve(self, chat_ref: Union[str, Path]) -> Path:
        """Path for a chat id (a bare file name) or an explicit path."""
        chat_ref = str(chat_ref)
        candidate = Path(chat_ref)
        if candidate.name != chat_ref or candidate.is_absolute():
            return candidate.expanduser()
        return self.chats_dir / chat_ref

    def path_for(self, session: ChatSession) -> Path:
        if session.path:
            return Path(session.path)
        return self.chats_dir / session.id

    def _chat_file_names(self) -> List[str]:
        if not self.chats_dir.exists():
            return []
        return [name for name in os.listdir(self.chats_dir) if is_chat_file(name)]

    def new_session(self, model: Optional[str] = None) -> ChatSession:
        """Allocate an identifier and default title without touching disk."""
        self.ensure_directory()
        index = len(self._chat_file_names()) + 1
        timestamp = int(time.time() * 1000)
        chat_id = f"{CHAT_FILE_PREFIX}{index}-{timestamp}{CHAT_FILE_SUFFIX}"
        return ChatSession(
            id=chat_id,
            title=f"Chat {index} - {display_time(timestamp)}",
            settings=ChatSettings(model=model or DEFAULT_MODEL),
        )

    async def create(self, model: Optional[str] = None) -> ChatSession:
        """Allocate a new chat and write its empty file immediately."""
        session = self.new_session(model)
        await self._write(self.path_for(session), session.to_dict())
        log.info(f"Created chat {session.id}")
        return session

    async def _read(self, path: Path) -> Any:
        try:
            async with aiofiles.open(path, "rb") as f:
                content = await f.read()
            return json.loads(content)
        except (OSError, json.JSONDecodeError) as e:
            log.error(f"Failed to load chat file {path}: {e}")
            raise PersistenceError(path, e) from e

    async def _write(self, path: Path, data: Dict[str, Any]) -> None:
        tmp_path = path.with_name(f".{path.name}.tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            async with aiofiles.open(tmp_path, "wb") as f:
                await f.write(dump_json(data))
            os.replace(tmp_path, path)
        except (OSError, TypeError) as e:
            log.error(f"Failed to save chat file {path}: {e}")
            if tmp_path.exists():
                tmp_path.unlink()
            raise PersistenceError(path, e) from e

    async def load(self, chat_ref: Union[str, Path]) -> ChatSession:
        """Read a chat file by id or path.

        Files written by older clients that hold only a message array are
        accepted; they get a title from the file name and default settings.

        Raises:
            PersistenceError: The file could not be read or parsed.
        """
        path = self.resolve(chat_ref)
        data = await self._read(path)

        if isinstance(data, list):
            data = {"title": path.stem, "settings": None, "messages": data}
        if not isinstance(data, dict):
            raise PersistenceError(path, ValueError("chat file is not a JSON object"))

        raw_settings = data.get("settings") or {}
        try:
            messages = [ConversationMessage.from_dict(message) for message in data.get("messages", [])]
        except (KeyError, ValueError, TypeError, AttributeError) as e:
            log.error(f"Malformed message in chat file {path}: {e}")
            raise PersistenceError(path, e) from e

        session = ChatSession(
            id=path.name,
            title=data.get("title") or path.stem,
            settings=ChatSettings.from_dict(raw_settings),
            messages=messages,
            extra_settings={k: v for k, v in raw_settings.items() if k not in _MODELLED_SETTINGS},
        )
        if path.parent.resolve() != self.chats_dir.resolve():
            session.path = str(path)
        return session

    async def save(self, session: ChatSession) -> Path:
        """Merge settings over what is on disk and rewrite the whole file."""
        path = self.path_for(session)
        existing_settings: Dict[str, Any] = {}
        if path.exists():
            try:
                existing = await self._read(path)
                if isinstance(existing, dict) and isinstance(existing.get("settings"), dict):
                    existing_settings = existing["settings"]
            except PersistenceError:
                log.warning(f"Existing chat file {path} is unreadable, overwriting its settings")

        merged_settings = {**existing_settings, **session.extra_settings, **session.settings.to_dict()}
        data = {
            "title": session.title,
            "settings": merged_settings,
            "messages": session.messages_as_dicts(),
        }
        await self._write(path, data)
        log.debug(f"Saved chat {session.id} ({len(session.messages)} messages) to {path}")
        return path

    async def list_chats(self) -> List[ChatListItem]:
        """Every chat file in the directory, newest first."""
        chats = []
        for name in self._chat_file_names():
            path = self.chats_dir / name
            try:
                data = await self._read(path)
            except PersistenceError:
                log.warning(f"Skipping unreadable chat file {name}")
                continue
            if isinstance(data, list):
                data = {"title": path.stem, "messages": data}
            settings = data.get("settings") or {}
            timestamp = chat_timestamp(name)
            if timestamp is None:
                timestamp = path.stat().st_mtime * 1000
            chats.append(ChatListItem(
                id=name,
                title=data.get("title") or path.stem,
                model=settings.get("model"),
                last_modified=iso_from_ms(timestamp),
                message_count=len(data.get("messages", [])),
            ))
        chats.sort(key=lambda chat: chat.last_modified, reverse=True)
        return chats

    async def update_settings(self, chat_id: str, values: Dict[str, Any]) -> Dict[str, Any]:
        """Apply a partial settings update; a ``title`` key renames the chat."""
        path = self.resolve(chat_id)
        data = await self._read(path)
        values = dict(values)
        if "title" in values:
            data["title"] = values.pop("title")
        data["settings"] = {**(data.get("settings") or {}), **values}
        await self._write(path, data)
        return {"title": data.get("title"), **data["settings"]}
