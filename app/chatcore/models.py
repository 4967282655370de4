"""
Canonical data shapes, shared truth for typing/validation between layers.

Typical contents:
- Role, ChatModel (catalog shown in the UI).
- Message (id, role, content, session_id, created_at).
- Session (id, title, created_at, last_message_at).
- LLMSettings (model, temperature, max_tokens) for one completion call.

Only `Message.content` and `Session.last_message_at` change after creation.
Serialization helpers keep the on-disk JSON shape in one place.

Testing: Title truncation and to_dict/from_dict round trips.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
import uuid

MAX_MESSAGE_CHARS = 32000
TITLE_MAX_CHARS = 50
TITLE_ELLIPSIS = "..."


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


def _parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"

    @property
    def display_name(self) -> str:
        return {
            Role.USER: "You",
            Role.ASSISTANT: "Assistant",
            Role.SYSTEM: "System",
        }[self]


class ChatModel(str, Enum):
    GPT_4O = "gpt-4o"
    GPT_4O_MINI = "gpt-4o-mini"
    O1_MINI = "o1-mini"

    @property
    def display_name(self) -> str:
        return _MODEL_INFO[self][0]

    @property
    def description(self) -> str:
        return _MODEL_INFO[self][1]


_MODEL_INFO = {
    ChatModel.GPT_4O: ("GPT-4o", "Most capable model, best for complex tasks"),
    ChatModel.GPT_4O_MINI: ("GPT-4o Mini", "Fast and efficient, great for most tasks"),
    ChatModel.O1_MINI: ("o1 Mini", "Advanced reasoning model for complex problems"),
}


@dataclass
class LLMSettings:
    model: str = ChatModel.GPT_4O_MINI.value
    temperature: float = 0.7
    max_tokens: Optional[int] = None


@dataclass
class Message:
    role: Role
    content: str
    session_id: str
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utc_now)

    @property
    def is_valid(self) -> bool:
        """Non-blank and within the character ceiling."""
        return bool(self.content.strip()) and len(self.content) <= MAX_MESSAGE_CHARS

    @property
    def word_count(self) -> int:
        return len(self.content.split())

    def to_api(self) -> dict[str, str]:
        return {"role": self.role.value, "content": self.content}

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "role": self.role.value,
            "content": self.content,
            "session_id": self.session_id,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Message":
        return cls(
            id=str(data["id"]),
            role=Role(data["role"]),
            content=str(data.get("content") or ""),
            session_id=str(data["session_id"]),
            created_at=_parse_timestamp(data["created_at"]),
        )


@dataclass
class Session:
    title: str
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utc_now)
    last_message_at: datetime = field(default_factory=utc_now)

    @staticmethod
    def generate_title(first_message: str, max_chars: int = TITLE_MAX_CHARS) -> str:
        """
        Short label from the first user message.
        Whitespace is collapsed. Longer text is cut at the last space that
        still leaves room for the ellipsis, so words are never split unless a
        single word fills the whole window.
        """
        text = " ".join((first_message or "").split())
        if len(text) <= max_chars:
            return text

        # one extra char so a space right at the limit counts as a boundary
        window = text[: max_chars - len(TITLE_ELLIPSIS) + 1]
        cut = window.rfind(" ")
        head = window[:cut] if cut > 0 else window[:-1]
        return head.rstrip() + TITLE_ELLIPSIS

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "created_at": self.created_at.isoformat(),
            "last_message_at": self.last_message_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Session":
        return cls(
            id=str(data["id"]),
            title=str(data.get("title") or ""),
            created_at=_parse_timestamp(data["created_at"]),
            last_message_at=_parse_timestamp(data["last_message_at"]),
        )


@dataclass(frozen=True)
class StoreEvent:
    kind: str
    session_id: Optional[str] = None


@dataclass(frozen=True)
class ControllerEvent:
    kind: str
    message: str = ""
