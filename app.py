import asyncio
import json
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import ValidationError

from backend import get_backend
from constants import CORS_ORIGINS, EXPIRY_SWEEP_SECONDS, LOG_FILE, LOG_LEVEL, PERSIST_DEBOUNCE_MS, STORE_BACKEND
from errors import InvalidPayload
from hub import ConnectionHub
from lifecycle import ExpirySweeper
from logging_config import get_logger, setup_logging
from persistence import PersistenceManager, restore_rooms
from routers.rooms import rooms_router
from schemas.rooms import Frame
from service import RoomService
from store import InMemoryRoomStore
from tzmath import utcnow

setup_logging(log_level=LOG_LEVEL, log_file=LOG_FILE)
logger = get_logger(__name__)


def build_backend():
    return get_backend(STORE_BACKEND)


@asynccontextmanager
async def lifespan(app: FastAPI):
    backend = build_backend()
    store = InMemoryRoomStore()
    persistence = PersistenceManager(store, backend, delay=PERSIST_DEBOUNCE_MS / 1000)
    service = RoomService(store, persistence)
    hub = ConnectionHub()

    now = utcnow()
    loop = asyncio.get_running_loop()
    docs = await loop.run_in_executor(None, backend.load, now)
    restored = service.restore(restore_rooms(docs, now))
    expired = service.sweep(now)
    service.drain()
    logger.info(f"Restored {restored} room(s) from {backend.name} backend, {len(expired)} expired on boot")

    async def deliver():
        await hub.deliver(service.drain())

    sweeper = ExpirySweeper(service.sweep, deliver, interval=EXPIRY_SWEEP_SECONDS)
    sweeper.start()

    app.state.backend = backend
    app.state.store = store
    app.state.persistence = persistence
    app.state.service = service
    app.state.hub = hub
    app.state.sweeper = sweeper
    try:
        yield
    finally:
        await sweeper.stop()
        await persistence.close()
        logger.info("Shutdown complete")


app = FastAPI(title="AvailRoom", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(rooms_router)

logger.info("FastAPI application initialized")


def _parse_frame(data: str) -> Frame:
    try:
        return Frame.model_validate(json.loads(data))
    except (json.JSONDecodeError, ValidationError) as e:
        raise InvalidPayload("Frames must be JSON objects with a 'type'") from e


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    """One connection carries commands for at most one (room, member) binding at a time."""
    service: RoomService = websocket.app.state.service
    hub: ConnectionHub = websocket.app.state.hub

    await websocket.accept()
    connection_id = str(uuid.uuid4())
    hub.register(connection_id, websocket)
    logger.info(f"WebSocket connection {connection_id} accepted")

    try:
        while True:
            data = await websocket.receive_text()
            request_id = None
            try:
                frame = _parse_frame(data)
                request_id = frame.request_id
                ack = service.dispatch(connection_id, frame.type, frame.payload)
            except InvalidPayload as e:
                logger.warning(f"Bad frame from connection {connection_id}: {e}")
                ack = e.to_ack()
            except Exception as e:
                logger.error(f"Error handling frame from connection {connection_id}: {e}", exc_info=True)
                ack = {"ok": False, "error": "Server error", "code": "INTERNAL_ERROR"}
            notices = service.drain()

            await websocket.send_text(json.dumps({"type": "ack", "requestId": request_id, "payload": ack}))
            await hub.deliver(notices)
    except WebSocketDisconnect:
        logger.info(f"WebSocket disconnected normally for connection {connection_id}")
    except Exception as e:
        logger.error(f"WebSocket error for connection {connection_id}: {e}", exc_info=True)
    finally:
        hub.unregister(connection_id)
        service.disconnect(connection_id)
        await hub.deliver(service.drain())
