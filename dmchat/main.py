import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from dmchat.core.errors import DmChatError
from dmchat.database.connection import close_mongo_connection, connect_to_mongo
from dmchat.routers.chat import router as chat_router
from dmchat.routers.conversations import router as conversations_router
from dmchat.routers.presence import router as presence_router
from dmchat.routers.typing_indicators import router as typing_router
from dmchat.services.core import ChatCore
from dmchat.utils.broker import Broker
from dmchat.utils.logging_config import configure_logging
from dmchat.utils.realtime_bus import close_bus, get_bus


logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):

    configure_logging()
    db = await connect_to_mongo()
    core = ChatCore(db, Broker(bus=await get_bus()))
    await core.start()
    app.state.core = core
    try:
        yield
    finally:
        await core.stop()
        await close_bus()
        await close_mongo_connection()


def create_app(lifespan_handler=lifespan) -> FastAPI:
    app = FastAPI(title="dmchat", lifespan=lifespan_handler)

    app.include_router(chat_router)
    app.include_router(conversations_router)
    app.include_router(presence_router)
    app.include_router(typing_router)

    @app.exception_handler(DmChatError)
    async def dmchat_error_handler(request: Request, exc: DmChatError):
        if exc.status_code >= 500:
            logger.warning("%s %s failed: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.get("/")
    async def root():
        return {"status": "ok"}

    return app


app = create_app()
