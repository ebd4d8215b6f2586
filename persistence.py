"""Dirty tracking and debounced, best-effort snapshot persistence.

The in-memory store stays authoritative. Commands only mark room codes in
the outbox; a debounced worker later turns them into backend writes. A write
failure puts the batch back and tries again on the next debounce cycle.
"""
import asyncio
from datetime import datetime
from typing import Iterable, List, Optional, Set, Tuple

from pydantic import ValidationError

from constants import DEFAULT_TIME_ZONE
from errors import InvalidTimeZone
from lifecycle import compute_expiry
from logging_config import get_logger
from schemas.snapshots import MemberSnapshot, RoomSnapshot
from slots import generate_slots, is_slot_id, migrate_legacy_key
from store import Member, Room, RoomStore
from tzmath import format_instant, parse_instant, resolve_zone

logger = get_logger(__name__)


def _ts(value: Optional[datetime]) -> Optional[str]:
    return format_instant(value) if value is not None else None


def _parse_ts(value: Optional[str], default: Optional[datetime]) -> Optional[datetime]:
    if not value:
        return default
    try:
        return parse_instant(value)
    except ValueError:
        return default


def room_to_snapshot(room: Room) -> dict:
    return {
        "code": room.code,
        "title": room.title,
        "creatorName": room.creator_name,
        "startDate": room.start_date,
        "endDate": room.end_date,
        "dayStart": room.day_start,
        "dayEnd": room.day_end,
        "slotMinutes": room.slot_minutes,
        "timeZone": room.time_zone,
        "createdAt": _ts(room.created_at),
        "updatedAt": _ts(room.updated_at),
        "expiresAt": _ts(room.expires_at),
        "ownerMemberId": room.owner_member_id,
        "slots": list(room.slots),
        "members": [
            {
                "id": m.id,
                "name": m.name,
                "joinedAt": _ts(m.joined_at),
                "lastSeenAt": _ts(m.last_seen_at),
                "unavailable": sorted(m.unavailable, key=int),
                "confirmedAt": _ts(m.confirmed_at),
                "pinSalt": m.pin_salt,
                "pinHash": m.pin_hash,
            }
            for m in room.members.values()
        ],
    }


def _migrate_unavailable(keys: Iterable[str], time_zone: str) -> Set[str]:
    result = set()
    for key in keys:
        if is_slot_id(key):
            result.add(key)
            continue
        migrated = migrate_legacy_key(key, time_zone)
        if migrated is not None:
            result.add(migrated)
    return result


def _member_from_snapshot(doc: MemberSnapshot, time_zone: str, now: datetime) -> Member:
    joined_at = _parse_ts(doc.joined_at, now)
    return Member(
        id=doc.id,
        name=doc.name,
        pin_salt=doc.pin_salt,
        pin_hash=doc.pin_hash,
        joined_at=joined_at,
        last_seen_at=_parse_ts(doc.last_seen_at, joined_at),
        unavailable=_migrate_unavailable(doc.unavailable, time_zone),
        confirmed_at=_parse_ts(doc.confirmed_at, None),
    )


def room_from_snapshot(raw: dict, now: datetime, default_time_zone: str = DEFAULT_TIME_ZONE) -> Optional[Room]:
    """Rebuild a Room from a stored document, or ``None`` if it is expired.

    Raises ``ValidationError`` / ``InvalidTimeZone`` for unusable documents.
    """
    doc = RoomSnapshot.model_validate(raw)
    time_zone = doc.time_zone or default_time_zone
    resolve_zone(time_zone)

    expires_at = _parse_ts(doc.expires_at, None) or compute_expiry(doc.end_date, time_zone)
    if now >= expires_at:
        return None

    # Stored slots are only kept when every entry is already a slot id.
    if doc.slots and all(is_slot_id(key) for key in doc.slots):
        slots = list(doc.slots)
    else:
        slots = generate_slots(doc.start_date, doc.end_date, doc.day_start, doc.day_end, doc.slot_minutes, time_zone)
    created_at = _parse_ts(doc.created_at, now)
    room = Room(
        code=doc.code,
        title=doc.title,
        creator_name=doc.creator_name,
        start_date=doc.start_date,
        end_date=doc.end_date,
        day_start=doc.day_start,
        day_end=doc.day_end,
        slot_minutes=doc.slot_minutes,
        time_zone=time_zone,
        created_at=created_at,
        updated_at=_parse_ts(doc.updated_at, created_at),
        expires_at=expires_at,
        owner_member_id=doc.owner_member_id,
        slots=slots,
    )
    for member_doc in doc.members:
        member = _member_from_snapshot(member_doc, time_zone, now)
        room.members[member.id] = member
    return room


def restore_rooms(docs: Iterable[dict], now: datetime, default_time_zone: str = DEFAULT_TIME_ZONE) -> List[Room]:
    rooms = []
    for raw in docs:
        code = raw.get("code") if isinstance(raw, dict) else None
        try:
            room = room_from_snapshot(raw, now, default_time_zone)
        except (ValidationError, InvalidTimeZone, ValueError) as e:
            logger.error(f"Skipping unreadable snapshot for room {code}: {e}")
            continue
        if room is None:
            logger.info(f"Discarding expired snapshot for room {code}")
            continue
        rooms.append(room)
    return rooms


class Outbox:
    """Room codes waiting to be written (dirty) or removed (deleted)."""

    def __init__(self):
        self.dirty: Set[str] = set()
        self.deleted: Set[str] = set()

    def __bool__(self) -> bool:
        return bool(self.dirty or self.deleted)

    def mark_dirty(self, code: str):
        self.deleted.discard(code)
        self.dirty.add(code)

    def mark_deleted(self, code: str):
        self.dirty.discard(code)
        self.deleted.add(code)

    def take(self) -> Tuple[Set[str], Set[str]]:
        dirty, deleted = self.dirty, self.deleted
        self.dirty, self.deleted = set(), set()
        return dirty, deleted

    def restore(self, dirty: Set[str], deleted: Set[str]):
        """Put back a failed batch without overriding marks made since."""
        for code in dirty:
            if code not in self.deleted:
                self.dirty.add(code)
        for code in deleted:
            if code not in self.dirty:
                self.deleted.add(code)


class PersistenceManager:
    def __init__(self, store: RoomStore, backend, delay: float = 0.25):
        self.store = store
        self.backend = backend
        self.delay = delay
        self.outbox = Outbox()
        self._timer: Optional[asyncio.TimerHandle] = None
        self._flush_task: Optional[asyncio.Task] = None
        self._idle: Optional[asyncio.Future] = None
        self._in_flight = False
        self._pending = False

    def mark_dirty(self, code: str):
        self.outbox.mark_dirty(code)
        self.schedule()

    def mark_deleted(self, code: str):
        self.outbox.mark_deleted(code)
        self.schedule()

    def schedule(self):
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop (sync callers, tests): the next explicit flush picks it up.
            return
        if self._timer is not None:
            self._timer.cancel()
        self._timer = loop.call_later(self.delay, self._on_timer)

    def _on_timer(self):
        self._timer = None
        self._flush_task = asyncio.ensure_future(self.flush())

    async def flush(self) -> bool:
        """Write out the outbox. Returns False if a write failed or was queued."""
        if self._in_flight:
            self._pending = True
            return False
        self._in_flight = True
        self._idle = asyncio.get_running_loop().create_future()
        try:
            while True:
                self._pending = False
                ok = await self._flush_once()
                if not ok or not self._pending:
                    return ok
        finally:
            self._in_flight = False
            if not self._idle.done():
                self._idle.set_result(None)

    async def _flush_once(self) -> bool:
        dirty, deleted = self.outbox.take()
        if not dirty and not deleted:
            return True

        upserts = []
        for code in sorted(dirty):
            room = self.store.get(code)
            if room is not None:
                upserts.append(room_to_snapshot(room))

        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, self.backend.write_batch, upserts, sorted(deleted))
        except Exception as e:
            logger.error(f"Persisting {len(upserts)} room(s) / deleting {len(deleted)} failed, will retry: {e}",
                         exc_info=True)
            self.outbox.restore(dirty, deleted)
            self.schedule()
            return False

        logger.debug(f"Persisted {len(upserts)} room(s), deleted {len(deleted)}")
        return True

    def _cancel_timer(self):
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    async def close(self):
        """Final flush. Waits for any write already in flight before writing what is left."""
        self._cancel_timer()
        while self._in_flight:
            await asyncio.shield(self._idle)
        await self.flush()
        self._cancel_timer()
