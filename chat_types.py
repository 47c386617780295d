"""
Conversation data model shared by the engine, the store and the HTTP API.

Message content is a tagged variant: a plain string, or a list of typed
blocks. Blocks we do not recognise are kept as ``RawBlock`` so a chat file
written by another client survives a load/save cycle unchanged.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Union

DEFAULT_MODEL = "claude-3-7-sonnet-20250219"
DEFAULT_SYSTEM_PROMPT = """
You are a generic AI agent assistant.
You are given tools via MCP servers to assist with tasks.
Use the tools as needed to complete the user's tasks.
If you need help, ask the user for more information.
If you are asked to retrieve logs, please only tail the last 100 lines of the logs.
"""


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


@dataclass
class TextBlock:
    text: str

    def to_dict(self) -> Dict[str, Any]:
        return {"type": "text", "text": self.text}


@dataclass
class ToolUseBlock:
    id: str
    name: str
    input: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"type": "tool_use", "id": self.id, "name": self.name, "input": self.input}


@dataclass
class ToolResultBlock:
    tool_use_id: str
    content: Any
    is_error: bool = False

    def to_dict(self) -> Dict[str, Any]:
        data = {"type": "tool_result", "tool_use_id": self.tool_use_id, "content": self.content}
        if self.is_error:
            data["is_error"] = True
        return data


@dataclass
class RawBlock:
    """Any block shape not modelled above, stored verbatim."""
    data: Dict[str, Any]

    def to_dict(self) -> Dict[str, Any]:
        return self.data


ContentBlock = Union[TextBlock, ToolUseBlock, ToolResultBlock, RawBlock]

_BLOCK_KEYS = {
    "text": {"type", "text"},
    "tool_use": {"type", "id", "name", "input"},
    "tool_result": {"type", "tool_use_id", "content", "is_error"},
}


def block_from_dict(data: Dict[str, Any]) -> ContentBlock:
    """Build a typed block, falling back to RawBlock for anything unusual."""
    block_type = data.get("type")
    known_keys = _BLOCK_KEYS.get(block_type)
    if known_keys is None or not set(data) <= known_keys:
        return RawBlock(data)
    # Key order must match to_dict() or the file would not round-trip byte for byte
    if list(data) != list(_canonical_order(block_type, data)):
        return RawBlock(data)
    if block_type == "text":
        return TextBlock(text=data["text"])
    if block_type == "tool_use":
        return ToolUseBlock(id=data["id"], name=data["name"], input=data["input"])
    if "is_error" in data and data["is_error"] is not True:
        return RawBlock(data)
    return ToolResultBlock(
        tool_use_id=data["tool_use_id"],
        content=data["content"],
        is_error=bool(data.get("is_error", False)),
    )


def _canonical_order(block_type: str, data: Dict[str, Any]) -> List[str]:
    order = {
        "text": ["type", "text"],
        "tool_use": ["type", "id", "name", "input"],
        "tool_result": ["type", "tool_use_id", "content", "is_error"],
    }[block_type]
    return [key for key in order if key in data]


@dataclass
class ConversationMessage:
    role: Role
    content: Union[str, List[ContentBlock]]
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def text(cls, role: Role, text: str) -> "ConversationMessage":
        return cls(role=role, content=text)

    @classmethod
    def blocks(cls, role: Role, blocks: List[ContentBlock]) -> "ConversationMessage":
        return cls(role=role, content=list(blocks))

    @property
    def is_text(self) -> bool:
        return isinstance(self.content, str)

    def to_dict(self) -> Dict[str, Any]:
        if isinstance(self.content, str):
            content: Any = self.content
        else:
            content = [block.to_dict() for block in self.content]
        return {"role": self.role.value, "content": content, **self.extra}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConversationMessage":
        content = data.get("content", "")
        role = Role(data["role"])
        extra = {key: value for key, value in data.items() if key not in ("role", "content")}
        if isinstance(content, str):
            return cls(role=role, content=content, extra=extra)
        return cls(role=role, content=[block_from_dict(block) for block in content], extra=extra)


@dataclass
class ChatSettings:
    model: str = DEFAULT_MODEL
    system_prompt: Optional[str] = None
    servers: Optional[List[str]] = None

    def to_dict(self) -> Dict[str, Any]:
        """Serialize with the camelCase keys used on disk, omitting unset fields."""
        data: Dict[str, Any] = {"model": self.model}
        if self.system_prompt is not None:
            data["systemPrompt"] = self.system_prompt
        if self.servers is not None:
            data["servers"] = list(self.servers)
        return data

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ChatSettings":
        if not data:
            return cls(model=DEFAULT_MODEL, servers=[])
        return cls(
            model=data.get("model") or DEFAULT_MODEL,
            system_prompt=data.get("systemPrompt"),
            servers=data.get("servers"),
        )


@dataclass
class ToolCatalogEntry:
    name: str
    description: str
    input_schema: Dict[str, Any]
    server: str = ""

    def to_tool_param(self) -> Dict[str, Any]:
        """Shape expected by the Messages API ``tools`` parameter."""
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.input_schema,
        }


@dataclass
class ChatSession:
    id: str
    title: str
    settings: ChatSettings = field(default_factory=ChatSettings)
    messages: List[ConversationMessage] = field(default_factory=list)
    # Settings keys found on disk that this client does not model
    extra_settings: Dict[str, Any] = field(default_factory=dict)
    # File the session was loaded from, when it lives outside the chats directory
    path: Optional[str] = None

    def messages_as_dicts(self) -> List[Dict[str, Any]]:
        return [message.to_dict() for message in self.messages]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "title": self.title,
            "settings": {**self.extra_settings, **self.settings.to_dict()},
            "messages": self.messages_as_dicts(),
        }


@dataclass
class ChatListItem:
    id: str
    title: str
    model: Optional[str]
    last_modified: str
    message_count: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "model": self.model,
            "lastModified": self.last_modified,
            "messageCount": self.message_count,
        }
