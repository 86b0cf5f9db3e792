import asyncio
import logging

from ..core.store import ConversationStore

logger = logging.getLogger(__name__)


class StoreRegistry:
    """One started ConversationStore per owner id, shared by all of that owner's requests."""

    def __init__(self, remote, completion) -> None:
        self._remote = remote
        self._completion = completion
        self._stores: dict[str, ConversationStore] = {}
        self._lock = asyncio.Lock()

    async def get(self, owner_id: str) -> ConversationStore:
        store = self._stores.get(owner_id)
        if store is not None:
            return store
        async with self._lock:
            store = self._stores.get(owner_id)
            if store is None:
                logger.info("Starting conversation store for owner %s", owner_id)
                store = ConversationStore(self._remote, self._completion, owner_id)
                await store.start()
                self._stores[owner_id] = store
        return store

    def close(self) -> None:
        for store in self._stores.values():
            store.close()
        self._stores.clear()
