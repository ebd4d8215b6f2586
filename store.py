"""In-memory authoritative state: rooms, their members, and live sessions."""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterator, List, Optional, Set

from logging_config import get_logger

logger = get_logger(__name__)


@dataclass
class Member:
    id: str
    name: str
    pin_salt: Optional[str]
    pin_hash: Optional[str]
    joined_at: datetime
    last_seen_at: datetime
    unavailable: Set[str] = field(default_factory=set)
    confirmed_at: Optional[datetime] = None


@dataclass
class Room:
    code: str
    title: str
    creator_name: str
    start_date: str
    end_date: str
    day_start: str
    day_end: str
    slot_minutes: int
    time_zone: str
    created_at: datetime
    updated_at: datetime
    expires_at: datetime
    owner_member_id: str
    slots: List[str] = field(default_factory=list)
    members: Dict[str, Member] = field(default_factory=dict)
    # member id -> connection ids currently bound to that member
    sockets_by_member: Dict[str, Set[str]] = field(default_factory=dict)

    def is_online(self, member_id: str) -> bool:
        return bool(self.sockets_by_member.get(member_id))

    def find_member_by_name(self, name: str) -> Optional[Member]:
        for member in self.members.values():
            if member.name == name:
                return member
        return None

    def connection_ids(self) -> List[str]:
        return [cid for conns in self.sockets_by_member.values() for cid in conns]


@dataclass(frozen=True)
class Session:
    connection_id: str
    code: str
    member_id: str


class RoomStore(ABC):
    """Storage seam for rooms and sessions.

    Every method is synchronous; a command handler runs all of its reads and
    writes against one store without yielding in between, which keeps a
    single writer per room.
    """

    @abstractmethod
    def add(self, room: Room) -> None: ...

    @abstractmethod
    def get(self, code: str) -> Optional[Room]: ...

    @abstractmethod
    def delete(self, code: str) -> Optional[Room]: ...

    @abstractmethod
    def rooms(self) -> List[Room]: ...

    @abstractmethod
    def bind(self, connection_id: str, code: str, member_id: str) -> Session: ...

    @abstractmethod
    def unbind(self, connection_id: str) -> Optional[Session]: ...

    @abstractmethod
    def session(self, connection_id: str) -> Optional[Session]: ...

    def codes(self) -> List[str]:
        return [room.code for room in self.rooms()]

    def __contains__(self, code: str) -> bool:
        return self.get(code) is not None

    def __len__(self) -> int:
        return len(self.rooms())

    def __iter__(self) -> Iterator[Room]:
        return iter(self.rooms())


class InMemoryRoomStore(RoomStore):
    def __init__(self):
        self._rooms: Dict[str, Room] = {}
        self._sessions: Dict[str, Session] = {}

    def add(self, room: Room) -> None:
        self._rooms[room.code] = room
        logger.debug(f"Room {room.code} added to store ({len(self._rooms)} rooms)")

    def get(self, code: str) -> Optional[Room]:
        return self._rooms.get(code)

    def delete(self, code: str) -> Optional[Room]:
        room = self._rooms.pop(code, None)
        if room is None:
            return None
        for connection_id in room.connection_ids():
            self._sessions.pop(connection_id, None)
        room.sockets_by_member.clear()
        logger.debug(f"Room {code} removed from store ({len(self._rooms)} rooms)")
        return room

    def rooms(self) -> List[Room]:
        return list(self._rooms.values())

    def __len__(self) -> int:
        return len(self._rooms)

    def bind(self, connection_id: str, code: str, member_id: str) -> Session:
        self.unbind(connection_id)
        session = Session(connection_id=connection_id, code=code, member_id=member_id)
        self._sessions[connection_id] = session
        room = self._rooms.get(code)
        if room is not None:
            room.sockets_by_member.setdefault(member_id, set()).add(connection_id)
        return session

    def unbind(self, connection_id: str) -> Optional[Session]:
        session = self._sessions.pop(connection_id, None)
        if session is None:
            return None
        room = self._rooms.get(session.code)
        if room is not None:
            conns = room.sockets_by_member.get(session.member_id)
            if conns is not None:
                conns.discard(connection_id)
                if not conns:
                    del room.sockets_by_member[session.member_id]
        return session

    def session(self, connection_id: str) -> Optional[Session]:
        return self._sessions.get(connection_id)
