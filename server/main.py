"""FastAPI WebSocket server for the 24 game."""

import asyncio
import logging
import os
import uuid
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Optional

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.responses import FileResponse
from fastapi.staticfiles import StaticFiles

from client import GameClient
from config import config
from handlers import ConnectionContext, dispatch
from logging_config import connection_id_var, get_logger, player_id_var, setup_logging
from stores.memory_store import MemoryStore
from stores.redis_store import RedisStore
from stores.sync import SyncStore

# Configure logging based on environment
setup_logging(
    level=config.LOG_LEVEL,
    environment=config.ENVIRONMENT,
)
logger = logging.getLogger(__name__)


# =============================================================================
# Store (initialized in lifespan)
# =============================================================================

_store: Optional[SyncStore] = None
_reaper_task: Optional[asyncio.Task] = None
_clients: dict[str, GameClient] = {}


async def _periodic_session_reaper(store: RedisStore):
    """Fire disconnect writes left behind by gateways that died."""
    while True:
        try:
            await asyncio.sleep(config.REAPER_INTERVAL_SECONDS)
            reaped = await store.reap_expired_sessions()
            if reaped:
                logger.info(f"Reaped {reaped} expired session(s)")
        except asyncio.CancelledError:
            break
        except Exception as e:
            logger.error(f"Session reaper failed: {e}")


async def _init_store() -> SyncStore:
    """Build the replicated store selected by STORE_BACKEND."""
    global _reaper_task
    if config.STORE_BACKEND == "redis":
        store = await RedisStore.connect(
            config.REDIS_URL,
            room_ttl=timedelta(hours=config.ROOM_TTL_HOURS),
            session_ttl=timedelta(seconds=config.SESSION_TTL_SECONDS),
        )
        _reaper_task = asyncio.create_task(_periodic_session_reaper(store))
        logger.info("Session reaper started")
        return store
    if config.STORE_BACKEND != "memory":
        logger.warning(f"Unknown STORE_BACKEND {config.STORE_BACKEND!r}, using memory")
    return MemoryStore()


async def _shutdown_services():
    """Gracefully shut down all services."""
    global _store, _reaper_task
    for client in list(_clients.values()):
        await client.close()
    _clients.clear()

    if _reaper_task:
        _reaper_task.cancel()
        try:
            await _reaper_task
        except asyncio.CancelledError:
            pass
        _reaper_task = None
        logger.info("Session reaper stopped")

    if _store:
        await _store.close()
        _store = None
        logger.info("Room store closed")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for async service initialization."""
    global _store
    try:
        _store = await _init_store()
    except Exception as e:
        logger.error(f"Failed to initialize room store: {e}")
        raise

    from routers.health import set_health_dependencies
    from routers.puzzles import set_store
    set_health_dependencies(store=_store, backend=config.STORE_BACKEND)
    set_store(_store)

    logger.info(f"24 server started (environment={config.ENVIRONMENT}, store={config.STORE_BACKEND})")

    yield

    logger.info("Shutdown initiated...")
    await _shutdown_services()
    logger.info("Shutdown complete")


app = FastAPI(
    title="24 Card Game",
    debug=config.DEBUG,
    version="1.0.0",
    lifespan=lifespan,
)


# =============================================================================
# Routers
# =============================================================================

from routers.health import router as health_router
from routers.puzzles import router as puzzles_router

app.include_router(health_router)
app.include_router(puzzles_router)


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    await websocket.accept()

    if _store is None:
        await websocket.send_json({"type": "error", "message": "Server is starting", "retryable": True})
        await websocket.close(code=1013, reason="Store not ready")
        return

    connection_id = str(uuid.uuid4())
    player_id = websocket.query_params.get("player_id") or connection_id
    connection_id_var.set(connection_id)
    player_id_var.set(player_id)
    log = get_logger(__name__).with_context(connection_id=connection_id, player_id=player_id)
    log.debug("WebSocket connected")

    client = GameClient(
        _store,
        player_id=player_id,
        sink=websocket.send_json,
        session_owner=connection_id,
    )
    ctx = ConnectionContext(
        websocket=websocket,
        connection_id=connection_id,
        player_id=player_id,
        client=client,
    )
    _clients[connection_id] = client

    # Anything still registered when the session ends is an ungraceful exit
    async with _store.session(connection_id):
        try:
            while True:
                data = await websocket.receive_json()
                await dispatch(data, ctx)
        except WebSocketDisconnect:
            log.debug(f"WebSocket disconnected (room={client.room_code})")
        finally:
            _clients.pop(connection_id, None)
            await client.close()


# Serve static files if client directory exists
client_path = os.path.join(os.path.dirname(__file__), "..", "client")
if os.path.exists(client_path):
    @app.get("/")
    async def serve_index():
        return FileResponse(os.path.join(client_path, "index.html"))

    # Mount static files for everything else (JS, CSS, SVG, etc.)
    app.mount("/", StaticFiles(directory=client_path), name="static")


def run():
    """Run the server using uvicorn."""
    import uvicorn

    logger.info(f"Starting 24 server on {config.HOST}:{config.PORT}")
    logger.info(f"Debug mode: {config.DEBUG}")

    uvicorn.run(
        "main:app",
        host=config.HOST,
        port=config.PORT,
        reload=config.DEBUG,
        log_level=config.LOG_LEVEL.lower(),
    )


if __name__ == "__main__":
    run()
