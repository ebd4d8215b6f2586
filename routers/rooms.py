from fastapi import APIRouter, HTTPException, Request

from constants import MAX_MEMBERS
from conflicts import public_room
from errors import RoomNotFound
from logging_config import get_logger
from schemas.rooms import HealthResponse, RoomDetailsResponse

logger = get_logger(__name__)

rooms_router = APIRouter(tags=["rooms"])


@rooms_router.get("/health", response_model=HealthResponse)
async def health(request: Request):
    state = request.app.state
    return HealthResponse(ok=True, rooms=len(state.store), backend=state.backend.name)


@rooms_router.get("/rooms/{code}", response_model=RoomDetailsResponse)
async def get_room_details(code: str, request: Request):
    """
    Public room metadata for the landing page.

    Returns 404 when the room does not exist or has expired; an expired
    room is removed as part of this lookup.
    """
    service = request.app.state.service
    hub = request.app.state.hub
    client_host = request.client.host if request.client else "unknown"
    logger.info(f"Room details request for {code} from {client_host}")

    try:
        room = service.get_room(code)
    except RoomNotFound:
        await hub.deliver(service.drain())
        logger.warning(f"Room details failed: Room {code} not found")
        raise HTTPException(status_code=404, detail="Room not found")

    online_count = sum(1 for member_id in room.members if room.is_online(member_id))
    return RoomDetailsResponse(
        room=public_room(room),
        member_count=len(room.members),
        online_count=online_count,
        is_full=len(room.members) >= MAX_MEMBERS,
    )
