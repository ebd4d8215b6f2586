"""
Test configuration: puts the repo root on sys.path and provides a service
wired to an in-memory backend and a controllable clock.
"""

import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

REPO_ROOT = Path(__file__).parent.parent
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from backend import SnapshotBackend  # noqa: E402
from persistence import PersistenceManager  # noqa: E402
from service import RoomService  # noqa: E402
from store import InMemoryRoomStore  # noqa: E402


class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


class MemoryBackend(SnapshotBackend):
    name = "memory"

    def __init__(self, docs=None):
        self.docs = {doc["code"]: doc for doc in (docs or [])}
        self.batches = []
        self.fail = False

    def load(self, now):
        return list(self.docs.values())

    def write_batch(self, upserts, deletes):
        if self.fail:
            raise ConnectionError("backend down")
        upserts = list(upserts)
        deletes = list(deletes)
        self.batches.append((upserts, deletes))
        for snapshot in upserts:
            self.docs[snapshot["code"]] = snapshot
        for code in deletes:
            self.docs.pop(code, None)


@pytest.fixture
def clock():
    return FakeClock(datetime(2025, 1, 5, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def backend():
    return MemoryBackend()


@pytest.fixture
def store():
    return InMemoryRoomStore()


@pytest.fixture
def persistence(store, backend):
    return PersistenceManager(store, backend, delay=0.01)


@pytest.fixture
def service(store, persistence, clock):
    return RoomService(store, persistence, clock=clock)


ROOM_ARGS = {
    "title": "Practice debate",
    "creator_name": "Alice",
    "pin": "1234",
    "start_date": "2025-01-06",
    "end_date": "2025-01-10",
    "day_start": "09:00",
    "day_end": "12:00",
    "slot_minutes": 60,
    "time_zone": "UTC",
}


@pytest.fixture
def room_args():
    return dict(ROOM_ARGS)


@pytest.fixture
def created(service, room_args):
    """A room created by connection ``c-owner``; returns the create ack."""
    return service.create("c-owner", **room_args)
