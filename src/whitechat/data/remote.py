import asyncio
from collections.abc import Callable
from datetime import datetime
from typing import Protocol

from ..core.errors import SubscriptionError
from ..core.models import Conversation, Message, Role

SnapshotCallback = Callable[[list], None]
ErrorCallback = Callable[[SubscriptionError], None]


class Subscription:
    """Handle for one change stream. Deliveries stop once unsubscribed."""

    def __init__(
        self,
        on_snapshot: SnapshotCallback,
        on_error: ErrorCallback,
        on_close: Callable[["Subscription"], None] | None = None,
    ) -> None:
        self._on_snapshot = on_snapshot
        self._on_error = on_error
        self._on_close = on_close
        self._initial: asyncio.Task | None = None
        self.active = True

    def attach_initial_load(self, task: asyncio.Task) -> None:
        self._initial = task

    def deliver(self, snapshot: list) -> None:
        if self.active:
            self._on_snapshot(snapshot)

    def fail(self, error: SubscriptionError) -> None:
        if self.active:
            self._on_error(error)

    async def ready(self) -> None:
        """Wait until the first snapshot (or error) has been delivered."""
        if self._initial is not None and not self._initial.done():
            try:
                await asyncio.shield(self._initial)
            except asyncio.CancelledError:
                if self.active:
                    raise

    def unsubscribe(self) -> None:
        if not self.active:
            return
        self.active = False
        if self._initial is not None and not self._initial.done():
            self._initial.cancel()
        if self._on_close is not None:
            self._on_close(self)

    cancel = unsubscribe


class RemoteStore(Protocol):
    """Authoritative ordered document service holding conversations and messages.

    Writes raise PersistenceError. Subscriptions deliver complete ordered
    snapshots (never diffs) and report failures through on_error.
    """

    async def create_conversation(
        self,
        conversation_id: str,
        owner_id: str,
        title: str,
        created_at: datetime | None = None,
    ) -> Conversation: ...

    async def append_message(
        self,
        conversation_id: str,
        message_id: str,
        role: Role,
        content: str,
        created_at: datetime | None = None,
    ) -> Message: ...

    async def update_conversation_meta(
        self,
        conversation_id: str,
        *,
        updated_at: datetime,
        title: str | None = None,
    ) -> None: ...

    def subscribe_conversations(
        self, owner_id: str, on_snapshot: SnapshotCallback, on_error: ErrorCallback
    ) -> Subscription: ...

    def subscribe_messages(
        self, conversation_id: str, on_snapshot: SnapshotCallback, on_error: ErrorCallback
    ) -> Subscription: ...
