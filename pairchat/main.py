import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from pairchat.config import get_settings
from pairchat.database.connection import close_mongo_connection
from pairchat.database.stores import build_stores
from pairchat.routers.chat import router as chat_router
from pairchat.routers.conversations import router as conversations_router
from pairchat.utils.logging_config import setup_logging
from pairchat.utils.realtime_bus import close_bus, get_bus


logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):

    settings = get_settings()
    app.state.settings = settings
    setup_logging(settings.log_level)
    bus = await get_bus()
    app.state.stores = await build_stores(settings, bus)
    logger.info("pairchat started (%s) with %s store", settings.environment, app.state.stores.backend)
    try:
        yield
    finally:
        await close_mongo_connection()
        await close_bus()


def create_app() -> FastAPI:
    app = FastAPI(title="pairchat", lifespan=lifespan)

    app.include_router(chat_router)
    app.include_router(conversations_router)

    @app.get("/")
    async def root():
        return {"service": "pairchat", "store": app.state.stores.backend}

    return app


app = create_app()
