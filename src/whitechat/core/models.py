from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum

from ..config import DEFAULT_TITLE


class Role(StrEnum):
    USER = "user"
    ASSISTANT = "assistant"


@dataclass(frozen=True)
class Conversation:
    id: str
    owner_id: str
    created_at: datetime
    updated_at: datetime
    title: str = DEFAULT_TITLE

    @property
    def has_default_title(self) -> bool:
        return self.title == DEFAULT_TITLE


@dataclass(frozen=True)
class Message:
    id: str
    conversation_id: str
    role: Role
    content: str
    created_at: datetime

    def as_turn(self) -> dict:
        """Reduce to the {role, content} shape sent to the completion endpoint."""
        return {"role": str(self.role), "content": self.content}


def conversation_sort_key(conv: Conversation) -> tuple:
    return (conv.updated_at, conv.created_at, conv.id)


def sort_conversations(conversations) -> list[Conversation]:
    """Dedupe by id (first wins) and order newest-updated first."""
    seen: dict[str, Conversation] = {}
    for conv in conversations:
        seen.setdefault(conv.id, conv)
    return sorted(seen.values(), key=conversation_sort_key, reverse=True)


def sort_messages(messages) -> list[Message]:
    """Dedupe by id (first wins) and order by created_at, keeping arrival order on ties."""
    seen: dict[str, Message] = {}
    for msg in messages:
        seen.setdefault(msg.id, msg)
    return sorted(seen.values(), key=lambda m: m.created_at)
