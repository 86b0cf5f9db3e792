import pytest
import pytest_asyncio

from fakes import OWNER, FakeCompletion, FakeRemoteStore, StepClock
from whitechat.core.store import ConversationStore
from whitechat.data.sqlite_store import SQLiteStore


@pytest_asyncio.fixture
async def sqlite_store(tmp_path):
    store = SQLiteStore(str(tmp_path / "test.db"))
    await store.initialize()
    yield store
    await store.close()


@pytest.fixture
def remote():
    return FakeRemoteStore()


@pytest.fixture
def completion():
    return FakeCompletion()


@pytest.fixture
def clock():
    return StepClock()


@pytest_asyncio.fixture
async def store(remote, completion, clock):
    store = ConversationStore(remote, completion, OWNER, clock=clock)
    await store.start()
    yield store
    store.close()
