from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class Payload(BaseModel):
    # Clients sometimes send codes and PINs as JSON numbers.
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore",
                              coerce_numbers_to_str=True)


class Frame(BaseModel):
    """One client frame on the socket: ``{"type", "requestId", "payload"}``."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    type: str
    request_id: Optional[Any] = None
    payload: dict = Field(default_factory=dict)


class CreateRoomRequest(Payload):
    title: Optional[str] = None
    creator_name: Optional[str] = None
    pin: Optional[str] = None
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    day_start: Optional[str] = None
    day_end: Optional[str] = None
    slot_minutes: Optional[Any] = None
    time_zone: Optional[str] = None


class EnterRoomRequest(Payload):
    code: str = ""
    name: Optional[str] = None
    pin: Optional[str] = None
    member_id: Optional[str] = None


class RenameRequest(Payload):
    code: str = ""
    member_id: Optional[str] = None
    new_name: Optional[str] = Field(default=None, validation_alias=AliasChoices("newName", "new_name", "name"))


class SetUnavailableRequest(Payload):
    code: str = ""
    member_id: Optional[str] = None
    unavailable: list[Any] = Field(default_factory=list)


class MemberRequest(Payload):
    code: str = ""
    member_id: Optional[str] = None


class UpdateRoomRequest(Payload):
    code: str = ""
    title: Optional[str] = None


class KickRequest(Payload):
    code: str = ""
    target_id: Optional[str] = None


class RoomRequest(Payload):
    code: str = ""


class PublicRoom(BaseModel):
    code: str
    title: str
    startDate: str
    endDate: str
    dayStart: str
    dayEnd: str
    slotMinutes: int
    timeZone: str
    creatorName: str
    createdAt: str
    updatedAt: str
    expiresAt: str


class RoomDetailsResponse(BaseModel):
    room: PublicRoom
    member_count: int
    online_count: int
    is_full: bool


class HealthResponse(BaseModel):
    ok: bool
    rooms: int
    backend: str
