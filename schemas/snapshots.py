from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from constants import (
    DEFAULT_DAY_END,
    DEFAULT_DAY_START,
    DEFAULT_MEMBER_NAME,
    DEFAULT_SLOT_MINUTES,
    DEFAULT_TITLE,
)


class SnapshotModel(BaseModel):
    # Older snapshots may miss fields or carry extra ones; both are tolerated.
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class MemberSnapshot(SnapshotModel):
    id: str
    name: str = DEFAULT_MEMBER_NAME
    joined_at: Optional[str] = None
    last_seen_at: Optional[str] = None
    unavailable: list[str] = Field(default_factory=list)
    confirmed_at: Optional[str] = None
    pin_salt: Optional[str] = None
    pin_hash: Optional[str] = None


class RoomSnapshot(SnapshotModel):
    code: str
    title: str = DEFAULT_TITLE
    creator_name: str = DEFAULT_MEMBER_NAME
    start_date: str
    end_date: str
    day_start: str = DEFAULT_DAY_START
    day_end: str = DEFAULT_DAY_END
    slot_minutes: int = DEFAULT_SLOT_MINUTES
    time_zone: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    expires_at: Optional[str] = None
    owner_member_id: str
    slots: Optional[list[str]] = None
    members: list[MemberSnapshot] = Field(default_factory=list)
