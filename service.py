"""Room commands: validation, mutation of the store, and outgoing notices.

Every public command runs start to finish without awaiting anything, so one
command's transition is never interleaved with another's. Pushes produced by
a command are queued as notices and handed to the transport by ``drain``.
"""
import secrets
from datetime import datetime
from typing import Callable, Iterable, List, Optional, Tuple

from pydantic import ValidationError

import constants
from auth import clamp_text, clean_name, hash_pin, is_valid_pin, new_member_id, verify_pin
from conflicts import build_view, is_owner, public_room
from errors import (
    CannotKickOwner,
    InvalidDate,
    InvalidGranularity,
    InvalidPayload,
    InvalidPin,
    InvalidWindow,
    NameEmpty,
    NameRequired,
    NameTaken,
    RoomError,
    RoomFull,
    RoomNotFound,
    TargetNotFound,
    TitleEmpty,
    Unauthorized,
    UnknownCommand,
    WrongPin,
)
from lifecycle import compute_expiry, is_expired, next_day
from logging_config import get_logger
from persistence import PersistenceManager
from schemas.rooms import (
    CreateRoomRequest,
    EnterRoomRequest,
    KickRequest,
    MemberRequest,
    RenameRequest,
    RoomRequest,
    SetUnavailableRequest,
    UpdateRoomRequest,
)
from slots import generate_slots, is_slot_id, parse_date, parse_time_minutes
from store import Member, Room, RoomStore, Session
from tzmath import format_instant, resolve_zone, utcnow

logger = get_logger(__name__)

Notice = Tuple[str, str, dict]


def _draw_code() -> str:
    return f"{secrets.randbelow(1_000_000):06d}"


class RoomService:
    def __init__(self, store: RoomStore, persistence: PersistenceManager,
                 clock: Callable[[], datetime] = utcnow, draw_code: Callable[[], str] = _draw_code):
        self.store = store
        self.persistence = persistence
        self.clock = clock
        self.draw_code = draw_code
        self._notices: List[Notice] = []

    # ---- notices ---------------------------------------------------------

    def drain(self) -> List[Notice]:
        notices, self._notices = self._notices, []
        return notices

    def _notify(self, connection_ids: Iterable[str], event: str, payload: dict):
        for connection_id in connection_ids:
            self._notices.append((connection_id, event, payload))

    def push_state(self, room: Room):
        for connection_id in room.connection_ids():
            view = build_view(room, self.store.session(connection_id))
            self._notices.append((connection_id, "room:state", view))

    # ---- lookup & lifecycle ----------------------------------------------

    def _get_room(self, code: str, now: datetime) -> Room:
        room = self.store.get(str(code or "").strip())
        if room is None:
            raise RoomNotFound()
        if is_expired(room, now):
            self._expire(room)
            raise RoomNotFound()
        return room

    def _expire(self, room: Room):
        code = room.code
        self._notify(room.connection_ids(), "room:expired", {"ok": True, "code": code})
        self.store.delete(code)
        self.persistence.mark_deleted(code)
        logger.info(f"Room {code} expired (expires_at={format_instant(room.expires_at)})")

    def sweep(self, now: Optional[datetime] = None) -> List[str]:
        now = now or self.clock()
        expired = []
        for room in self.store.rooms():
            if is_expired(room, now):
                self._expire(room)
                expired.append(room.code)
        return expired

    def get_room(self, code: str) -> Room:
        """Room lookup for read-only callers; expires the room eagerly."""
        return self._get_room(code, self.clock())

    def restore(self, rooms: Iterable[Room]) -> int:
        count = 0
        for room in rooms:
            self.store.add(room)
            count += 1
        return count

    # ---- helpers ---------------------------------------------------------

    def _touch(self, room: Room, now: datetime):
        room.updated_at = now
        self.persistence.mark_dirty(room.code)

    def _bind(self, connection_id: str, room: Room, member_id: str) -> Session:
        previous = self.store.unbind(connection_id)
        session = self.store.bind(connection_id, room.code, member_id)
        if previous is not None and previous.code != room.code:
            old_room = self.store.get(previous.code)
            if old_room is not None:
                self.push_state(old_room)
        return session

    def _require_member(self, connection_id: str, code: str, member_id: Optional[str],
                        now: datetime) -> Tuple[Room, Member]:
        room = self._get_room(code, now)
        session = self.store.session(connection_id)
        if session is None or session.code != room.code:
            raise Unauthorized()
        if member_id and member_id != session.member_id:
            raise Unauthorized()
        member = room.members.get(session.member_id)
        if member is None:
            raise Unauthorized()
        return room, member

    def _require_owner(self, connection_id: str, code: str, now: datetime) -> Room:
        room = self._get_room(code, now)
        if not is_owner(room, self.store.session(connection_id)):
            raise Unauthorized()
        return room

    def _allocate_code(self) -> str:
        for _ in range(constants.CODE_ATTEMPTS):
            code = self.draw_code()
            if code not in self.store:
                return code
        # Deterministic fallback: walk forward from the clock until free.
        base = int(self.clock().timestamp() * 1000) % 1_000_000
        for step in range(1_000_000):
            code = f"{(base + step) % 1_000_000:06d}"
            if code not in self.store:
                logger.warning(f"Room code draws exhausted, fell back to {code}")
                return code
        raise RoomFull("No room codes left")

    @staticmethod
    def _check_name_free(room: Room, name: str, member_id: Optional[str]):
        other = room.find_member_by_name(name)
        if other is not None and other.id != member_id:
            raise NameTaken(name)

    # ---- commands --------------------------------------------------------

    def create(self, connection_id: str, title=None, creator_name=None, pin=None, start_date=None,
               end_date=None, day_start=None, day_end=None, slot_minutes=None, time_zone=None) -> dict:
        title = clamp_text(title, constants.TITLE_MAX_LEN) or constants.DEFAULT_TITLE
        creator_name = clean_name(creator_name) or constants.DEFAULT_MEMBER_NAME
        day_start = day_start or constants.DEFAULT_DAY_START
        day_end = day_end or constants.DEFAULT_DAY_END
        time_zone = (time_zone or constants.DEFAULT_TIME_ZONE).strip()

        first = parse_date(start_date)
        last = parse_date(end_date)
        if first is None or last is None:
            raise InvalidDate()
        if first > last:
            raise InvalidDate("Start date cannot be after end date")
        if (last - first).days + 1 > constants.MAX_DAYS:
            raise InvalidDate(f"Date range too long (at most {constants.MAX_DAYS} days)")

        window_start = parse_time_minutes(day_start)
        window_end = parse_time_minutes(day_end)
        if window_start is None or window_end is None or window_start >= window_end:
            raise InvalidWindow()

        try:
            slot_minutes = int(constants.DEFAULT_SLOT_MINUTES if slot_minutes is None else slot_minutes)
        except (TypeError, ValueError):
            raise InvalidGranularity()
        if slot_minutes not in constants.ALLOWED_SLOT_MINUTES:
            raise InvalidGranularity()

        resolve_zone(time_zone)

        if not is_valid_pin(pin):
            raise InvalidPin()

        now = self.clock()
        code = self._allocate_code()
        pin_salt, pin_hash = hash_pin(pin)
        owner = Member(
            id=new_member_id(),
            name=creator_name,
            pin_salt=pin_salt,
            pin_hash=pin_hash,
            joined_at=now,
            last_seen_at=now,
        )
        room = Room(
            code=code,
            title=title,
            creator_name=creator_name,
            start_date=start_date,
            end_date=end_date,
            day_start=day_start,
            day_end=day_end,
            slot_minutes=slot_minutes,
            time_zone=time_zone,
            created_at=now,
            updated_at=now,
            expires_at=compute_expiry(end_date, time_zone),
            owner_member_id=owner.id,
            slots=generate_slots(start_date, end_date, day_start, day_end, slot_minutes, time_zone),
            members={owner.id: owner},
        )
        self.store.add(room)
        self._bind(connection_id, room, owner.id)
        self.persistence.mark_dirty(code)
        logger.info(f"Room {code} created: title={title!r}, {start_date}..{end_date} {day_start}-{day_end} "
                    f"every {slot_minutes}m in {time_zone}, {len(room.slots)} slots")

        self.push_state(room)
        return {
            "ok": True,
            "code": code,
            "memberId": owner.id,
            "isHost": True,
            "expiresAt": format_instant(room.expires_at),
            "expiresOn": next_day(end_date).isoformat(),
            "room": public_room(room),
        }

    def enter(self, connection_id: str, code: str, name=None, pin=None, member_id=None) -> dict:
        now = self.clock()
        room = self._get_room(code, now)
        name = clean_name(name)
        if not is_valid_pin(pin):
            raise InvalidPin()

        member = room.members.get(member_id) if member_id else None
        if member is not None:
            self._verify(member, pin)
            if name and name != member.name:
                self._check_name_free(room, name, member.id)
                logger.info(f"Member {member.id} in room {room.code} renamed on entry: {member.name!r} -> {name!r}")
                member.name = name
        else:
            if not name:
                raise NameRequired()
            member = room.find_member_by_name(name)
            if member is not None:
                self._verify(member, pin)
            else:
                if len(room.members) >= constants.MAX_MEMBERS:
                    raise RoomFull()
                pin_salt, pin_hash = hash_pin(pin)
                member = Member(
                    id=new_member_id(),
                    name=name,
                    pin_salt=pin_salt,
                    pin_hash=pin_hash,
                    joined_at=now,
                    last_seen_at=now,
                )
                room.members[member.id] = member
                logger.info(f"Member {member.id} ({name!r}) joined room {room.code} "
                            f"({len(room.members)}/{constants.MAX_MEMBERS})")

        if not member.pin_hash:
            # Snapshots from before PINs existed: the first PIN claims the member.
            member.pin_salt, member.pin_hash = hash_pin(pin)
        member.last_seen_at = now
        session = self._bind(connection_id, room, member.id)
        self._touch(room, now)
        self.push_state(room)
        return {
            "ok": True,
            "memberId": member.id,
            "isHost": is_owner(room, session),
            "room": public_room(room),
        }

    @staticmethod
    def _verify(member: Member, pin: str):
        # A member without a hash is claimed by enter once every check has passed.
        if member.pin_hash and not verify_pin(pin, member.pin_salt, member.pin_hash):
            raise WrongPin()

    def rename(self, connection_id: str, code: str, member_id=None, new_name=None) -> dict:
        now = self.clock()
        room, member = self._require_member(connection_id, code, member_id, now)
        name = clean_name(new_name)
        if not name:
            raise NameEmpty()
        self._check_name_free(room, name, member.id)
        member.name = name
        member.last_seen_at = now
        self._touch(room, now)
        self.push_state(room)
        return {"ok": True, "name": name}

    def set_unavailable(self, connection_id: str, code: str, member_id=None, unavailable=()) -> dict:
        now = self.clock()
        room, member = self._require_member(connection_id, code, member_id, now)
        cleaned = []
        seen = set()
        for key in unavailable or ():
            if is_slot_id(key) and key not in seen:
                seen.add(key)
                cleaned.append(key)
                if len(cleaned) >= constants.MAX_UNAVAILABLE:
                    break
        member.unavailable = set(cleaned)
        member.confirmed_at = None
        member.last_seen_at = now
        self._touch(room, now)
        self.push_state(room)
        return {"ok": True, "count": len(cleaned)}

    def confirm(self, connection_id: str, code: str, member_id=None) -> dict:
        now = self.clock()
        room, member = self._require_member(connection_id, code, member_id, now)
        member.confirmed_at = now
        member.last_seen_at = now
        self._touch(room, now)
        owner = room.members.get(room.owner_member_id)
        host_name = owner.name if owner is not None else room.creator_name
        self.push_state(room)
        return {"ok": True, "hostName": host_name, "confirmedAt": format_instant(now)}

    def leave(self, connection_id: str, code: str = None) -> dict:
        session = self.store.unbind(connection_id)
        if session is None:
            return {"ok": True}
        self._after_unbind(session)
        logger.info(f"Connection {connection_id} left room {session.code} (member {session.member_id})")
        return {"ok": True}

    def disconnect(self, connection_id: str):
        session = self.store.unbind(connection_id)
        if session is not None:
            self._after_unbind(session)
            logger.info(f"Connection {connection_id} dropped from room {session.code} (member {session.member_id})")

    def _after_unbind(self, session: Session):
        now = self.clock()
        room = self.store.get(session.code)
        if room is None:
            return
        if is_expired(room, now):
            self._expire(room)
            return
        member = room.members.get(session.member_id)
        if member is not None:
            member.last_seen_at = now
            self.persistence.mark_dirty(room.code)
        self.push_state(room)

    def update(self, connection_id: str, code: str, title=None) -> dict:
        now = self.clock()
        room = self._require_owner(connection_id, code, now)
        title = clamp_text(title, constants.TITLE_MAX_LEN)
        if not title:
            raise TitleEmpty()
        room.title = title
        self._touch(room, now)
        self.push_state(room)
        logger.info(f"Room {room.code} title updated to {title!r}")
        return {"ok": True}

    def kick(self, connection_id: str, code: str, target_id=None) -> dict:
        now = self.clock()
        room = self._require_owner(connection_id, code, now)
        if not target_id or target_id not in room.members:
            raise TargetNotFound()
        if target_id == room.owner_member_id:
            raise CannotKickOwner()

        targets = list(room.sockets_by_member.get(target_id, ()))
        self._notify(targets, "room:kicked", {"ok": True, "code": room.code})
        for target_connection in targets:
            self.store.unbind(target_connection)
        del room.members[target_id]
        room.sockets_by_member.pop(target_id, None)

        self._touch(room, now)
        self.push_state(room)
        logger.info(f"Member {target_id} kicked from room {room.code} ({len(targets)} connection(s) detached)")
        return {"ok": True}

    def dissolve(self, connection_id: str, code: str) -> dict:
        now = self.clock()
        room = self._require_owner(connection_id, code, now)
        self._notify(room.connection_ids(), "room:dissolved", {"ok": True, "code": room.code})
        self.store.delete(room.code)
        self.persistence.mark_deleted(room.code)
        logger.info(f"Room {room.code} dissolved by owner")
        return {"ok": True}

    # ---- dispatch --------------------------------------------------------

    COMMANDS = {
        "room:create": (CreateRoomRequest, "create"),
        "room:enter": (EnterRoomRequest, "enter"),
        "member:rename": (RenameRequest, "rename"),
        "member:set_unavailable": (SetUnavailableRequest, "set_unavailable"),
        "member:confirm": (MemberRequest, "confirm"),
        "member:leave": (RoomRequest, "leave"),
        "room:update": (UpdateRoomRequest, "update"),
        "room:kick": (KickRequest, "kick"),
        "room:dissolve": (RoomRequest, "dissolve"),
    }

    def dispatch(self, connection_id: str, command: str, payload) -> dict:
        """Run one command and return its acknowledgment payload."""
        try:
            if command not in self.COMMANDS:
                raise UnknownCommand(f"Unknown command: {command}")
            schema, method = self.COMMANDS[command]
            try:
                request = schema.model_validate(payload or {})
            except ValidationError as e:
                raise InvalidPayload(f"Malformed {command} payload") from e
            ack = getattr(self, method)(connection_id, **request.model_dump())
            logger.debug(f"{command} from {connection_id} ok")
            return ack
        except RoomError as e:
            logger.warning(f"{command} from {connection_id} rejected: {e.code} {e.detail}")
            return e.to_ack()
