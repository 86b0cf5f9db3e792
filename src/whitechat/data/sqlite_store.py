import asyncio
import logging
from collections import defaultdict
from datetime import UTC, datetime

import aiosqlite

from ..core.errors import PersistenceError, SubscriptionError
from ..core.models import Conversation, Message, Role
from .remote import ErrorCallback, SnapshotCallback, Subscription

logger = logging.getLogger(__name__)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS conversations (
    id TEXT PRIMARY KEY,
    owner_id TEXT NOT NULL,
    title TEXT NOT NULL DEFAULT 'New conversation',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_conversations_owner ON conversations(owner_id, updated_at);

CREATE TABLE IF NOT EXISTS messages (
    id TEXT PRIMARY KEY,
    conversation_id TEXT NOT NULL REFERENCES conversations(id),
    role TEXT NOT NULL CHECK (role IN ('user', 'assistant')),
    content TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_messages_conversation ON messages(conversation_id, created_at);
"""


def _now() -> datetime:
    return datetime.now(UTC)


def _ts(dt: datetime) -> str:
    # Fixed width so stored timestamps compare correctly as text
    return dt.astimezone(UTC).isoformat(timespec="microseconds")


def _conversation_from_row(row) -> Conversation:
    return Conversation(
        id=row["id"],
        owner_id=row["owner_id"],
        title=row["title"],
        created_at=datetime.fromisoformat(row["created_at"]),
        updated_at=datetime.fromisoformat(row["updated_at"]),
    )


def _message_from_row(row) -> Message:
    return Message(
        id=row["id"],
        conversation_id=row["conversation_id"],
        role=Role(row["role"]),
        content=row["content"],
        created_at=datetime.fromisoformat(row["created_at"]),
    )


def _remover(registry: dict[str, list[Subscription]], key: str):
    def remove(sub: Subscription) -> None:
        subs = registry.get(key)
        if subs is None:
            return
        if sub in subs:
            subs.remove(sub)
        if not subs:
            del registry[key]

    return remove


class SQLiteStore:
    """Remote store adapter backed by a SQLite file.

    Every committed write republishes a full snapshot to the subscribers of
    the affected owner or conversation.
    """

    def __init__(self, path: str) -> None:
        self._path = path
        self._db: aiosqlite.Connection | None = None
        self._conversation_subs: dict[str, list[Subscription]] = defaultdict(list)
        self._message_subs: dict[str, list[Subscription]] = defaultdict(list)

    @property
    def db(self) -> aiosqlite.Connection:
        """Return the database connection, raising if not initialized."""
        if self._db is None:
            raise RuntimeError("SQLiteStore not initialized, call initialize() first")
        return self._db

    async def initialize(self) -> None:
        self._db = await aiosqlite.connect(self._path)
        self._db.row_factory = aiosqlite.Row
        await self._db.execute("PRAGMA foreign_keys = ON")
        await self._db.executescript(SCHEMA_SQL)
        await self._db.commit()

    async def close(self) -> None:
        for subs in (*self._conversation_subs.values(), *self._message_subs.values()):
            for sub in list(subs):
                sub.unsubscribe()
        if self._db:
            await self._db.close()
            self._db = None

    # --- Conversations ---

    async def create_conversation(
        self,
        conversation_id: str,
        owner_id: str,
        title: str,
        created_at: datetime | None = None,
    ) -> Conversation:
        now = created_at or _now()
        try:
            await self.db.execute(
                "INSERT INTO conversations (id, owner_id, title, created_at, updated_at) VALUES (?, ?, ?, ?, ?)",
                (conversation_id, owner_id, title, _ts(now), _ts(now)),
            )
            await self.db.commit()
        except aiosqlite.Error as e:
            raise PersistenceError(f"Could not create conversation {conversation_id}: {e}") from e
        await self._publish_conversations(owner_id)
        return Conversation(
            id=conversation_id, owner_id=owner_id, title=title, created_at=now, updated_at=now
        )

    async def update_conversation_meta(
        self,
        conversation_id: str,
        *,
        updated_at: datetime,
        title: str | None = None,
    ) -> None:
        # Last write wins: an update older than the stored one is dropped.
        try:
            if title is None:
                cursor = await self.db.execute(
                    "UPDATE conversations SET updated_at = ? WHERE id = ? AND updated_at <= ?",
                    (_ts(updated_at), conversation_id, _ts(updated_at)),
                )
            else:
                cursor = await self.db.execute(
                    "UPDATE conversations SET title = ?, updated_at = ? WHERE id = ? AND updated_at <= ?",
                    (title, _ts(updated_at), conversation_id, _ts(updated_at)),
                )
            await self.db.commit()
            conv = await self.get_conversation(conversation_id)
        except aiosqlite.Error as e:
            raise PersistenceError(f"Could not update conversation {conversation_id}: {e}") from e

        if conv is None:
            raise PersistenceError(f"Conversation {conversation_id} does not exist")
        if cursor.rowcount == 0:
            logger.debug("Ignored stale metadata update for %s", conversation_id)
        await self._publish_conversations(conv.owner_id)

    async def list_conversations(self, owner_id: str) -> list[Conversation]:
        cursor = await self.db.execute(
            "SELECT id, owner_id, title, created_at, updated_at FROM conversations "
            "WHERE owner_id = ? ORDER BY updated_at DESC, created_at DESC, id DESC",
            (owner_id,),
        )
        rows = await cursor.fetchall()
        return [_conversation_from_row(r) for r in rows]

    async def get_conversation(self, conversation_id: str) -> Conversation | None:
        cursor = await self.db.execute(
            "SELECT id, owner_id, title, created_at, updated_at FROM conversations WHERE id = ?",
            (conversation_id,),
        )
        row = await cursor.fetchone()
        return _conversation_from_row(row) if row else None

    # --- Messages ---

    async def append_message(
        self,
        conversation_id: str,
        message_id: str,
        role: Role,
        content: str,
        created_at: datetime | None = None,
    ) -> Message:
        now = created_at or _now()
        try:
            await self.db.execute(
                "INSERT INTO messages (id, conversation_id, role, content, created_at) VALUES (?, ?, ?, ?, ?)",
                (message_id, conversation_id, str(role), content, _ts(now)),
            )
            await self.db.commit()
        except aiosqlite.Error as e:
            raise PersistenceError(f"Could not append message {message_id}: {e}") from e
        await self._publish_messages(conversation_id)
        return Message(
            id=message_id,
            conversation_id=conversation_id,
            role=Role(role),
            content=content,
            created_at=now,
        )

    async def get_messages(self, conversation_id: str) -> list[Message]:
        cursor = await self.db.execute(
            "SELECT id, conversation_id, role, content, created_at FROM messages "
            "WHERE conversation_id = ? ORDER BY created_at, rowid",
            (conversation_id,),
        )
        rows = await cursor.fetchall()
        return [_message_from_row(r) for r in rows]

    # --- Change streams ---

    def subscribe_conversations(
        self, owner_id: str, on_snapshot: SnapshotCallback, on_error: ErrorCallback
    ) -> Subscription:
        subs = self._conversation_subs[owner_id]
        sub = Subscription(
            on_snapshot, on_error, on_close=_remover(self._conversation_subs, owner_id)
        )
        subs.append(sub)
        sub.attach_initial_load(
            asyncio.create_task(self._deliver([sub], lambda: self.list_conversations(owner_id)))
        )
        return sub

    def subscribe_messages(
        self, conversation_id: str, on_snapshot: SnapshotCallback, on_error: ErrorCallback
    ) -> Subscription:
        subs = self._message_subs[conversation_id]
        sub = Subscription(
            on_snapshot, on_error, on_close=_remover(self._message_subs, conversation_id)
        )
        subs.append(sub)
        sub.attach_initial_load(
            asyncio.create_task(self._deliver([sub], lambda: self.get_messages(conversation_id)))
        )
        return sub

    async def _publish_conversations(self, owner_id: str) -> None:
        subs = list(self._conversation_subs.get(owner_id, ()))
        if subs:
            await self._deliver(subs, lambda: self.list_conversations(owner_id))

    async def _publish_messages(self, conversation_id: str) -> None:
        subs = list(self._message_subs.get(conversation_id, ()))
        if subs:
            await self._deliver(subs, lambda: self.get_messages(conversation_id))

    async def _deliver(self, subs: list[Subscription], load) -> None:
        try:
            snapshot = await load()
        except (aiosqlite.Error, RuntimeError) as e:
            logger.warning("Snapshot load failed: %s", e)
            for sub in subs:
                sub.fail(SubscriptionError(f"Snapshot load failed: {e}"))
            return
        for sub in subs:
            sub.deliver(list(snapshot))
