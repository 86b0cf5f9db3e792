import logging
from collections.abc import Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import StrEnum

from ..agent.prompts import SYSTEM_DIRECTIVE
from .errors import CompletionError, PersistenceError, StoreError, SubscriptionError, WhiteChatError
from .ids import MonotonicClock, new_id
from .models import Conversation, Message, Role, sort_conversations, sort_messages
from .selector import next_active_id
from .titles import derive_title

logger = logging.getLogger(__name__)


class SendResult(StrEnum):
    SENT = "sent"
    # user message saved, no reply
    REPLY_FAILED = "reply_failed"
    # user message saved, reply generated but not saved
    REPLY_NOT_SAVED = "reply_not_saved"
    # nothing saved, state rolled back
    NOT_SAVED = "not_saved"
    # empty text or a send already in flight
    IGNORED = "ignored"


@dataclass(frozen=True)
class StoreState:
    """Read-only projection handed to the presentation layer."""

    conversations: tuple[Conversation, ...]
    active_id: str | None
    active_messages: tuple[Message, ...]
    pending: bool
    last_error: StoreError | None
    degraded: bool = False

    @property
    def active_conversation(self) -> Conversation | None:
        for conv in self.conversations:
            if conv.id == self.active_id:
                return conv
        return None


@dataclass
class _Mutation:
    """What one optimistic change touched, enough to undo it."""

    # conversation id -> record before the change (None when the change added it)
    conversations_before: dict[str, Conversation | None] = field(default_factory=dict)
    added_messages: list[Message] = field(default_factory=list)
    selection_before: tuple[str | None, list[Message]] | None = None
    selected_id: str | None = None


class ConversationStore:
    """In-memory view of one user's conversations, kept in sync with a remote store.

    All state lives on one event loop. Local mutations are applied
    optimistically inside ``_optimistic()`` and undone when the remote write
    raises PersistenceError. Remote snapshots replace the local lists
    wholesale, except that records touched by a mutation still in flight are
    kept until the remote side catches up.
    """

    def __init__(
        self,
        remote,
        completion,
        owner_id: str,
        *,
        clock: Callable[[], datetime] | None = None,
        id_factory: Callable[[], str] = new_id,
        system_directive: str = SYSTEM_DIRECTIVE,
    ) -> None:
        self._remote = remote
        self._completion = completion
        self._owner_id = owner_id
        self._clock = clock or MonotonicClock()
        self._new_id = id_factory
        self._system_directive = system_directive

        self._conversations: list[Conversation] = []
        self._active_id: str | None = None
        self._active_messages: list[Message] = []
        self._pending = False
        self._last_error: StoreError | None = None
        self._degraded = False

        self._inflight: list[_Mutation] = []
        self._listeners: list[Callable[[StoreState], None]] = []
        self._conversations_sub = None
        self._messages_sub = None
        self._messages_generation = 0

    # --- Read-only projections ---

    @property
    def owner_id(self) -> str:
        return self._owner_id

    @property
    def state(self) -> StoreState:
        return StoreState(
            conversations=tuple(self._conversations),
            active_id=self._active_id,
            active_messages=tuple(self._active_messages),
            pending=self._pending,
            last_error=self._last_error,
            degraded=self._degraded,
        )

    @property
    def conversations(self) -> tuple[Conversation, ...]:
        return tuple(self._conversations)

    @property
    def active_id(self) -> str | None:
        return self._active_id

    @property
    def active_conversation(self) -> Conversation | None:
        return self._find_conversation(self._active_id)

    @property
    def active_messages(self) -> tuple[Message, ...]:
        return tuple(self._active_messages)

    @property
    def pending(self) -> bool:
        return self._pending

    @property
    def last_error(self) -> StoreError | None:
        return self._last_error

    @property
    def degraded(self) -> bool:
        return self._degraded

    def add_listener(self, callback: Callable[[StoreState], None]) -> Callable[[], None]:
        """Call ``callback`` with the new state after every change. Returns a remover."""
        self._listeners.append(callback)

        def remove() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return remove

    # --- Lifecycle ---

    async def start(self) -> None:
        """Subscribe to the owner's conversations and wait for the first snapshots."""
        self._subscribe_conversations()
        await self._conversations_sub.ready()
        await self.messages_ready()

    async def resubscribe(self) -> None:
        """Re-establish both change streams, e.g. after a SubscriptionError."""
        if self._conversations_sub is not None:
            self._conversations_sub.unsubscribe()
        self._subscribe_conversations()
        self._subscribe_messages(self._active_id)
        await self._conversations_sub.ready()
        await self.messages_ready()

    async def messages_ready(self) -> None:
        """Wait for the first snapshot of the active message stream, following switches."""
        waited = None
        while self._messages_sub is not None and self._messages_sub is not waited:
            waited = self._messages_sub
            await waited.ready()

    def close(self) -> None:
        if self._conversations_sub is not None:
            self._conversations_sub.unsubscribe()
            self._conversations_sub = None
        if self._messages_sub is not None:
            self._messages_sub.unsubscribe()
            self._messages_sub = None
        self._listeners.clear()

    # --- Operations ---

    async def create_conversation(self) -> Conversation | None:
        """Create a conversation, make it active, and persist it.

        Returns None when the remote create fails; the previous selection is
        restored in that case.
        """
        try:
            async with self._optimistic() as mutation:
                conv = self._new_conversation()
                self._put_conversation(mutation, conv)
                self._select(mutation, conv.id)
                self._emit()
                await self._remote.create_conversation(
                    conv.id, self._owner_id, conv.title, created_at=conv.created_at
                )
        except PersistenceError as e:
            self._fail(e)
            self._emit()
            return None

        self._last_error = None
        self._emit()
        return conv

    async def send_message(self, text: str) -> SendResult:
        """Send a user message and fetch the assistant's reply.

        The user message is persisted before the completion request goes out.
        Re-entrant calls while a send is pending are ignored, not queued.
        """
        content = text.strip()
        if not content or self._pending:
            return SendResult.IGNORED

        self._pending = True
        self._emit()
        try:
            return await self._send(content)
        finally:
            self._pending = False
            self._emit()

    def select_conversation(self, conversation_id: str) -> bool:
        if self._find_conversation(conversation_id) is None:
            logger.warning("Ignoring selection of unknown conversation %s", conversation_id)
            return False
        self._last_error = None
        if conversation_id != self._active_id:
            self._activate(conversation_id)
        self._emit()
        return True

    # --- Send steps ---

    async def _send(self, content: str) -> SendResult:
        # History and the first-message check need the loaded message list
        await self.messages_ready()
        try:
            async with self._optimistic() as mutation:
                conv, created = self._resolve_target(mutation)
                history = [m.as_turn() for m in self._active_messages]
                is_first_user_message = not any(
                    m.role is Role.USER for m in self._active_messages
                )

                user_msg = Message(
                    id=self._new_id(),
                    conversation_id=conv.id,
                    role=Role.USER,
                    content=content,
                    created_at=self._clock(),
                )
                self._add_message(mutation, user_msg)

                title = None
                if is_first_user_message and conv.has_default_title:
                    title = derive_title(content)
                updated = replace(
                    conv, updated_at=self._touch(conv), title=title or conv.title
                )
                self._put_conversation(mutation, updated)
                self._emit()

                if created:
                    await self._remote.create_conversation(
                        conv.id, self._owner_id, conv.title, created_at=conv.created_at
                    )
                await self._remote.append_message(
                    conv.id, user_msg.id, user_msg.role, user_msg.content,
                    created_at=user_msg.created_at,
                )
                await self._remote.update_conversation_meta(
                    conv.id, updated_at=updated.updated_at, title=title
                )
        except PersistenceError as e:
            self._fail(e)
            return SendResult.NOT_SAVED

        history.append(user_msg.as_turn())
        try:
            reply = await self._completion.complete(self._system_directive, history)
        except CompletionError as e:
            self._fail(e)
            return SendResult.REPLY_FAILED

        try:
            async with self._optimistic() as mutation:
                assistant_msg = Message(
                    id=self._new_id(),
                    conversation_id=conv.id,
                    role=Role.ASSISTANT,
                    content=reply,
                    created_at=self._clock(),
                )
                self._add_message(mutation, assistant_msg)
                current = self._find_conversation(conv.id)
                if current is not None:
                    updated_at = self._touch(current)
                    self._put_conversation(mutation, replace(current, updated_at=updated_at))
                else:
                    updated_at = self._clock()
                self._emit()

                await self._remote.append_message(
                    conv.id, assistant_msg.id, assistant_msg.role, assistant_msg.content,
                    created_at=assistant_msg.created_at,
                )
                await self._remote.update_conversation_meta(conv.id, updated_at=updated_at)
        except PersistenceError as e:
            self._fail(e)
            return SendResult.REPLY_NOT_SAVED

        self._last_error = None
        return SendResult.SENT

    def _resolve_target(self, mutation: _Mutation) -> tuple[Conversation, bool]:
        conv = self._find_conversation(self._active_id)
        if conv is not None:
            return conv, False
        conv = self._new_conversation()
        self._put_conversation(mutation, conv)
        self._select(mutation, conv.id)
        return conv, True

    def _new_conversation(self) -> Conversation:
        now = self._clock()
        return Conversation(
            id=self._new_id(), owner_id=self._owner_id, created_at=now, updated_at=now
        )

    def _touch(self, conv: Conversation) -> datetime:
        return max(self._clock(), conv.updated_at)

    def _fail(self, error: WhiteChatError) -> None:
        logger.warning("%s failure: %s", error.kind, error)
        self._last_error = StoreError.from_exception(error)

    # --- Optimistic mutations ---

    @asynccontextmanager
    async def _optimistic(self):
        mutation = _Mutation()
        self._inflight.append(mutation)
        try:
            yield mutation
        except PersistenceError:
            self._revert(mutation)
            raise
        finally:
            self._inflight.remove(mutation)

    def _put_conversation(self, mutation: _Mutation, conv: Conversation) -> None:
        mutation.conversations_before.setdefault(conv.id, self._find_conversation(conv.id))
        others = [c for c in self._conversations if c.id != conv.id]
        self._conversations = sort_conversations([conv, *others])

    def _add_message(self, mutation: _Mutation, msg: Message) -> None:
        mutation.added_messages.append(msg)
        if msg.conversation_id == self._active_id:
            self._active_messages = sort_messages([*self._active_messages, msg])

    def _select(self, mutation: _Mutation, conversation_id: str) -> None:
        if mutation.selection_before is None:
            mutation.selection_before = (self._active_id, list(self._active_messages))
        mutation.selected_id = conversation_id
        self._activate(conversation_id)

    def _revert(self, mutation: _Mutation) -> None:
        logger.warning(
            "Rolling back optimistic change (%d conversations, %d messages)",
            len(mutation.conversations_before),
            len(mutation.added_messages),
        )
        dropped = {m.id for m in mutation.added_messages}
        if dropped:
            self._active_messages = [m for m in self._active_messages if m.id not in dropped]

        records = {c.id: c for c in self._conversations}
        for cid, before in mutation.conversations_before.items():
            if before is None:
                records.pop(cid, None)
            elif cid in records:
                records[cid] = before
        self._conversations = sort_conversations(records.values())

        if mutation.selection_before is not None and self._active_id == mutation.selected_id:
            previous_id, previous_messages = mutation.selection_before
            self._activate(previous_id, previous_messages)
        self._reselect()
        self._emit()

    # --- Subscriptions and reconciliation ---

    def _subscribe_conversations(self) -> None:
        self._conversations_sub = self._remote.subscribe_conversations(
            self._owner_id, self._on_conversations_snapshot, self._on_subscription_error
        )

    def _subscribe_messages(self, conversation_id: str | None) -> None:
        if self._messages_sub is not None:
            self._messages_sub.unsubscribe()
            self._messages_sub = None
        self._messages_generation += 1
        if conversation_id is None:
            return
        generation = self._messages_generation
        self._messages_sub = self._remote.subscribe_messages(
            conversation_id,
            lambda snapshot: self._on_messages_snapshot(generation, conversation_id, snapshot),
            self._on_subscription_error,
        )

    def _activate(self, conversation_id: str | None, messages=()) -> None:
        self._active_id = conversation_id
        self._active_messages = list(messages)
        self._subscribe_messages(conversation_id)

    def _reselect(self) -> None:
        next_id = next_active_id(self._conversations, self._active_id)
        if next_id != self._active_id:
            self._activate(next_id)

    def _on_conversations_snapshot(self, snapshot: list[Conversation]) -> None:
        records = {c.id: c for c in sort_conversations(snapshot)}
        for mutation in self._inflight:
            for cid in mutation.conversations_before:
                local = self._find_conversation(cid)
                if local is None:
                    continue
                remote = records.get(cid)
                if remote is None or remote.updated_at < local.updated_at:
                    records[cid] = local
        self._conversations = sort_conversations(records.values())
        self._degraded = False
        self._reselect()
        self._emit()

    def _on_messages_snapshot(
        self, generation: int, conversation_id: str, snapshot: list[Message]
    ) -> None:
        if generation != self._messages_generation or conversation_id != self._active_id:
            logger.debug("Dropped stale message snapshot for %s", conversation_id)
            return
        messages = list(snapshot)
        known = {m.id for m in messages}
        for mutation in self._inflight:
            for msg in mutation.added_messages:
                if msg.conversation_id == conversation_id and msg.id not in known:
                    messages.append(msg)
        self._active_messages = sort_messages(messages)
        self._degraded = False
        self._emit()

    def _on_subscription_error(self, error: SubscriptionError) -> None:
        logger.warning("Change stream failed, keeping stale state: %s", error)
        self._degraded = True
        self._last_error = StoreError.from_exception(error)
        self._emit()

    # --- Helpers ---

    def _find_conversation(self, conversation_id: str | None) -> Conversation | None:
        if conversation_id is None:
            return None
        for conv in self._conversations:
            if conv.id == conversation_id:
                return conv
        return None

    def _emit(self) -> None:
        if not self._listeners:
            return
        state = self.state
        for callback in list(self._listeners):
            callback(state)
