"""Conflict aggregation and the per-viewer ``room:state`` payload."""
from typing import Dict, List, Optional

from store import Member, Room, Session
from tzmath import format_instant


def build_conflicts(room: Room) -> Dict[str, List[str]]:
    conflicts: Dict[str, List[str]] = {}
    for member in room.members.values():
        for key in member.unavailable:
            conflicts.setdefault(key, []).append(member.id)
    return conflicts


def serialize_conflicts(conflicts: Dict[str, List[str]], detailed: bool) -> dict:
    if detailed:
        data = {key: list(member_ids) for key, member_ids in conflicts.items()}
    else:
        data = {key: len(member_ids) for key, member_ids in conflicts.items()}
    return {"mode": "detailed" if detailed else "count", "data": data}


def _ts(value) -> Optional[str]:
    return format_instant(value) if value is not None else None


def public_room(room: Room) -> dict:
    return {
        "code": room.code,
        "title": room.title,
        "startDate": room.start_date,
        "endDate": room.end_date,
        "dayStart": room.day_start,
        "dayEnd": room.day_end,
        "slotMinutes": room.slot_minutes,
        "timeZone": room.time_zone,
        "creatorName": room.creator_name,
        "createdAt": _ts(room.created_at),
        "updatedAt": _ts(room.updated_at),
        "expiresAt": _ts(room.expires_at),
    }


def serialize_members(room: Room) -> List[dict]:
    ordered = sorted(
        room.members.values(),
        key=lambda m: (m.id != room.owner_member_id, m.joined_at),
    )
    return [
        {
            "id": m.id,
            "name": m.name,
            "isOwner": m.id == room.owner_member_id,
            "online": room.is_online(m.id),
            "joinedAt": _ts(m.joined_at),
            "lastSeenAt": _ts(m.last_seen_at),
            "confirmedAt": _ts(m.confirmed_at),
        }
        for m in ordered
    ]


def _you(room: Room, member: Optional[Member]) -> Optional[dict]:
    if member is None:
        return None
    return {
        "id": member.id,
        "name": member.name,
        "isOwner": member.id == room.owner_member_id,
        "unavailable": sorted(member.unavailable, key=int),
        "confirmedAt": _ts(member.confirmed_at),
    }


def is_owner(room: Room, session: Optional[Session]) -> bool:
    return bool(
        session is not None
        and session.code == room.code
        and session.member_id == room.owner_member_id
    )


def build_view(room: Room, session: Optional[Session]) -> dict:
    """Snapshot of ``room`` as the holder of ``session`` is allowed to see it.

    Only the owner gets member ids per slot; everyone else gets counts.
    """
    detailed = is_owner(room, session)
    member = None
    if session is not None and session.code == room.code:
        member = room.members.get(session.member_id)

    return {
        "ok": True,
        "room": public_room(room),
        "slots": list(room.slots),
        "members": serialize_members(room),
        "memberCount": len(room.members),
        "you": _you(room, member),
        "conflicts": serialize_conflicts(build_conflicts(room), detailed),
        "isHost": detailed,
    }
