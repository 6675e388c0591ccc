from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import asyncio
import logging

from config import REALTIME_BACKEND
from database import init_db
from errors import setup_exception_handlers
from logging_config import setup_logging
from notifications import RabbitDispatcher
from realtime import ConnectionManager, LocalBroadcaster, RedisBroadcaster
from redis_client import close_redis, get_redis
from routes import router
from storage import create_object_store

setup_logging()
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Chat Service API",
    description="Conversations, messages, reactions and attachments with realtime fan-out",
    version="1.0.0"
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

setup_exception_handlers(app)
app.include_router(router)


@app.on_event("startup")
async def startup_event():
    init_db()
    app.state.object_store = create_object_store()
    app.state.dispatcher = RabbitDispatcher()
    app.state.connection_manager = ConnectionManager()
    app.state.relay_task = None

    if REALTIME_BACKEND == "redis":
        broadcaster = RedisBroadcaster(await get_redis(), app.state.connection_manager)
        app.state.relay_task = asyncio.create_task(broadcaster.listen())
    else:
        broadcaster = LocalBroadcaster(app.state.connection_manager)
    app.state.broadcaster = broadcaster
    logger.info("Chat service started with %s realtime backend", REALTIME_BACKEND)


@app.on_event("shutdown")
async def shutdown_event():
    relay_task = getattr(app.state, "relay_task", None)
    if relay_task:
        app.state.broadcaster.stop()
        relay_task.cancel()
        try:
            await relay_task
        except asyncio.CancelledError:
            pass
        except Exception:
            logger.exception("Redis relay task ended with an error")
    await close_redis()


@app.get("/health")
def health_check():
    return {"status": "healthy", "service": "chat-service"}
