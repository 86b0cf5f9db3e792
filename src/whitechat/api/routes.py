import asyncio
import logging
from collections.abc import Callable

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from sse_starlette.sse import EventSourceResponse

from ..core.store import ConversationStore, StoreState
from .models import SendOut, SendRequest, StateOut
from .sse import sse_error, sse_state

logger = logging.getLogger(__name__)
router = APIRouter()


async def get_store(
    request: Request, x_user_id: str | None = Header(default=None)
) -> ConversationStore:
    # Identity is established upstream; the header carries the opaque owner id
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    return await request.app.state.registry.get(x_user_id)


def latest_only(queue: asyncio.Queue) -> Callable[[StoreState], None]:
    """Listener that keeps only the newest state in a one-slot queue."""

    def put(state: StoreState) -> None:
        if queue.full():
            queue.get_nowait()
        queue.put_nowait(state)

    return put


@router.get("/api/state")
async def get_state(store: ConversationStore = Depends(get_store)) -> StateOut:
    return StateOut.from_state(store.state)


@router.post("/api/conversations")
async def create_conversation(store: ConversationStore = Depends(get_store)) -> StateOut:
    await store.create_conversation()
    return StateOut.from_state(store.state)


@router.post("/api/conversations/{conversation_id}/select")
async def select_conversation(
    conversation_id: str, store: ConversationStore = Depends(get_store)
) -> StateOut:
    if not store.select_conversation(conversation_id):
        raise HTTPException(status_code=404, detail="Conversation not found")
    await store.messages_ready()
    return StateOut.from_state(store.state)


@router.post("/api/messages")
async def send_message(req: SendRequest, store: ConversationStore = Depends(get_store)) -> SendOut:
    result = await store.send_message(req.message)
    return SendOut(result=str(result), state=StateOut.from_state(store.state))


@router.post("/api/resubscribe")
async def resubscribe(store: ConversationStore = Depends(get_store)) -> StateOut:
    await store.resubscribe()
    return StateOut.from_state(store.state)


@router.get("/api/events")
async def events(request: Request, store: ConversationStore = Depends(get_store)):
    queue: asyncio.Queue[StoreState] = asyncio.Queue(maxsize=1)
    remove_listener = store.add_listener(latest_only(queue))

    async def event_generator():
        try:
            yield sse_state(StateOut.from_state(store.state))
            while True:
                if await request.is_disconnected():
                    break
                state = await queue.get()
                yield sse_state(StateOut.from_state(state))
        except Exception as e:
            logger.exception("Error in state stream")
            yield sse_error(str(e))
        finally:
            remove_listener()

    return EventSourceResponse(event_generator(), ping=15)
