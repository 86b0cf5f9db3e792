from pydantic import BaseModel

from ..core.models import Conversation, Message
from ..core.store import StoreState


class SendRequest(BaseModel):
    message: str


class ConversationOut(BaseModel):
    id: str
    title: str
    created_at: str
    updated_at: str

    @classmethod
    def from_conversation(cls, conv: Conversation) -> "ConversationOut":
        return cls(
            id=conv.id,
            title=conv.title,
            created_at=conv.created_at.isoformat(),
            updated_at=conv.updated_at.isoformat(),
        )


class MessageOut(BaseModel):
    id: str
    conversation_id: str
    role: str
    content: str
    created_at: str

    @classmethod
    def from_message(cls, msg: Message) -> "MessageOut":
        return cls(
            id=msg.id,
            conversation_id=msg.conversation_id,
            role=str(msg.role),
            content=msg.content,
            created_at=msg.created_at.isoformat(),
        )


class ErrorOut(BaseModel):
    kind: str
    message: str


class StateOut(BaseModel):
    conversations: list[ConversationOut]
    active_id: str | None
    active_messages: list[MessageOut]
    pending: bool
    last_error: ErrorOut | None
    degraded: bool

    @classmethod
    def from_state(cls, state: StoreState) -> "StateOut":
        error = state.last_error
        return cls(
            conversations=[ConversationOut.from_conversation(c) for c in state.conversations],
            active_id=state.active_id,
            active_messages=[MessageOut.from_message(m) for m in state.active_messages],
            pending=state.pending,
            last_error=ErrorOut(kind=str(error.kind), message=error.message) if error else None,
            degraded=state.degraded,
        )


class SendOut(BaseModel):
    result: str
    state: StateOut
