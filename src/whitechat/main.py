import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from .agent.client import build_completion_client
from .api.registry import StoreRegistry
from .api.routes import router
from .config import DATA_DIR, ROOT_PATH, SQLITE_PATH
from .data.sqlite_store import SQLiteStore

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(name)s %(levelname)s %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    DATA_DIR.mkdir(parents=True, exist_ok=True)

    logger.info("Initializing SQLite store...")
    sqlite_store = SQLiteStore(str(SQLITE_PATH))
    await sqlite_store.initialize()

    logger.info("Initializing completion client...")
    completion_client = build_completion_client()

    app.state.sqlite_store = sqlite_store
    app.state.completion_client = completion_client
    app.state.registry = StoreRegistry(sqlite_store, completion_client)

    logger.info("Startup complete, ready to serve")
    yield

    # Shutdown
    logger.info("Shutting down...")
    app.state.registry.close()
    await completion_client.close()
    await sqlite_store.close()


app = FastAPI(title="WhiteChat", root_path=ROOT_PATH, lifespan=lifespan)
app.include_router(router)
