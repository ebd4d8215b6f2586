"""
Tests for RoomService commands.

Covers:
- room creation validation and code allocation
- entering by new name, existing name + PIN, remembered member id
- rename, set_unavailable, confirm, leave, disconnect
- owner-only update / kick / dissolve
- eager expiry on access and the periodic sweep
- dispatch of raw command payloads
"""

from datetime import datetime, timezone

import pytest

import constants
from errors import (
    CannotKickOwner,
    InvalidDate,
    InvalidGranularity,
    InvalidPin,
    InvalidTimeZone,
    InvalidWindow,
    NameEmpty,
    NameRequired,
    NameTaken,
    RoomFull,
    RoomNotFound,
    TargetNotFound,
    TitleEmpty,
    Unauthorized,
    WrongPin,
)
from service import RoomService


def events_for(notices, connection_id):
    return [event for cid, event, _ in notices if cid == connection_id]


def last_state(notices, connection_id):
    states = [payload for cid, event, payload in notices if cid == connection_id and event == "room:state"]
    return states[-1]


def enter(service, code, connection_id, name, pin="0000", member_id=None):
    return service.enter(connection_id, code, name=name, pin=pin, member_id=member_id)


class TestCreate:
    def test_create_returns_code_member_and_expiry(self, service, store, created):
        assert created["ok"] is True
        assert len(created["code"]) == 6 and created["code"].isdigit()
        assert created["isHost"] is True
        assert created["expiresAt"] == "2025-01-11T00:00:00.000Z"
        assert created["expiresOn"] == "2025-01-11"

        room = store.get(created["code"])
        assert room.owner_member_id == created["memberId"]
        assert room.members[created["memberId"]].name == "Alice"
        assert len(room.slots) == 15
        assert store.session("c-owner").member_id == created["memberId"]

    def test_pin_is_never_stored(self, store, created):
        member = store.get(created["code"]).members[created["memberId"]]
        assert member.pin_hash and member.pin_salt
        assert "1234" not in (member.pin_hash, member.pin_salt)

    def test_create_pushes_owner_state(self, service, created):
        notices = service.drain()
        state = last_state(notices, "c-owner")
        assert state["isHost"] is True
        assert state["conflicts"]["mode"] == "detailed"
        assert state["you"]["id"] == created["memberId"]

    def test_defaults_for_title_and_name(self, service, room_args):
        room_args.update(title="  ", creator_name=None)
        ack = service.create("c1", **room_args)
        assert ack["room"]["title"] == constants.DEFAULT_TITLE
        assert ack["room"]["creatorName"] == constants.DEFAULT_MEMBER_NAME

    def test_title_is_clamped(self, service, room_args):
        room_args["title"] = "x" * 200
        ack = service.create("c1", **room_args)
        assert len(ack["room"]["title"]) == constants.TITLE_MAX_LEN

    @pytest.mark.parametrize("changes,error", [
        ({"start_date": "2025-13-01"}, InvalidDate),
        ({"end_date": None}, InvalidDate),
        ({"start_date": "2025-01-10", "end_date": "2025-01-06"}, InvalidDate),
        ({"start_date": "2025-01-01", "end_date": "2025-01-22"}, InvalidDate),
        ({"day_start": "12:00", "day_end": "12:00"}, InvalidWindow),
        ({"day_start": "13:00", "day_end": "12:00"}, InvalidWindow),
        ({"day_end": "25:00"}, InvalidWindow),
        ({"slot_minutes": 45}, InvalidGranularity),
        ({"slot_minutes": "abc"}, InvalidGranularity),
        ({"time_zone": "Nowhere/Special"}, InvalidTimeZone),
        ({"pin": "123"}, InvalidPin),
        ({"pin": "12a4"}, InvalidPin),
        ({"pin": None}, InvalidPin),
    ])
    def test_validation_errors(self, service, store, room_args, changes, error):
        room_args.update(changes)
        with pytest.raises(error):
            service.create("c1", **room_args)
        assert len(store) == 0
        assert service.drain() == []

    def test_twenty_one_days_allowed(self, service, room_args):
        room_args.update(start_date="2025-01-01", end_date="2025-01-21")
        assert service.create("c1", **room_args)["ok"]

    def test_code_collision_retries(self, store, persistence, clock, room_args):
        draws = iter(["111111", "111111", "222222"])
        service = RoomService(store, persistence, clock=clock, draw_code=lambda: next(draws))
        assert service.create("c1", **room_args)["code"] == "111111"
        assert service.create("c2", **room_args)["code"] == "222222"

    def test_code_fallback_terminates(self, store, persistence, clock, room_args):
        service = RoomService(store, persistence, clock=clock, draw_code=lambda: "123456")
        first = service.create("c1", **room_args)["code"]
        second = service.create("c2", **room_args)["code"]
        assert first == "123456"
        assert second != first and len(second) == 6

    def test_create_marks_room_dirty(self, persistence, created):
        assert created["code"] in persistence.outbox.dirty


class TestEnter:
    def test_new_member(self, service, store, created):
        ack = enter(service, created["code"], "c-bob", "Bob")
        assert ack["ok"] and ack["isHost"] is False
        room = store.get(created["code"])
        assert room.members[ack["memberId"]].name == "Bob"
        assert room.is_online(ack["memberId"])

    def test_unknown_room(self, service):
        with pytest.raises(RoomNotFound):
            enter(service, "000000", "c1", "Bob")

    def test_name_required(self, service, created):
        with pytest.raises(NameRequired):
            enter(service, created["code"], "c1", "   ")

    def test_pin_format(self, service, created):
        with pytest.raises(InvalidPin):
            enter(service, created["code"], "c1", "Bob", pin="12345")

    def test_existing_name_with_right_pin_recovers_member(self, service, created):
        first = enter(service, created["code"], "c1", "Bob", pin="4321")
        again = enter(service, created["code"], "c2", "Bob", pin="4321")
        assert again["memberId"] == first["memberId"]

    def test_existing_name_with_wrong_pin(self, service, created):
        enter(service, created["code"], "c1", "Bob", pin="4321")
        with pytest.raises(WrongPin):
            enter(service, created["code"], "c2", "Bob", pin="1111")

    def test_names_are_case_sensitive(self, service, created):
        first = enter(service, created["code"], "c1", "Bob")
        other = enter(service, created["code"], "c2", "bob")
        assert other["memberId"] != first["memberId"]

    def test_owner_recovers_host_privilege(self, service, created):
        ack = enter(service, created["code"], "c-owner-2", "Alice", pin="1234")
        assert ack["memberId"] == created["memberId"]
        assert ack["isHost"] is True

    def test_remembered_id_renames(self, service, store, created):
        bob = enter(service, created["code"], "c1", "Bob", pin="4321")
        ack = enter(service, created["code"], "c2", "Robert", pin="4321", member_id=bob["memberId"])
        assert ack["memberId"] == bob["memberId"]
        assert store.get(created["code"]).members[bob["memberId"]].name == "Robert"

    def test_remembered_id_rename_collision_fails_whole_command(self, service, store, created):
        bob = enter(service, created["code"], "c1", "Bob", pin="4321")
        with pytest.raises(NameTaken):
            enter(service, created["code"], "c2", "Alice", pin="4321", member_id=bob["memberId"])
        assert store.get(created["code"]).members[bob["memberId"]].name == "Bob"
        assert store.session("c2") is None

    def test_remembered_id_wrong_pin(self, service, created):
        bob = enter(service, created["code"], "c1", "Bob", pin="4321")
        with pytest.raises(WrongPin):
            enter(service, created["code"], "c2", "Bob", pin="0000", member_id=bob["memberId"])

    def test_unknown_remembered_id_falls_back_to_name(self, service, created):
        ack = enter(service, created["code"], "c1", "Bob", member_id="does-not-exist")
        assert ack["ok"]

    def test_room_full(self, service, created, monkeypatch):
        monkeypatch.setattr(constants, "MAX_MEMBERS", 2)
        enter(service, created["code"], "c1", "Bob")
        with pytest.raises(RoomFull):
            enter(service, created["code"], "c2", "Carol")
        # Existing members can still come back.
        assert enter(service, created["code"], "c3", "Bob")["ok"]

    def test_entering_other_room_releases_old_binding(self, service, store, created, room_args):
        other = service.create("c-other", **room_args)
        enter(service, created["code"], "c1", "Bob")
        enter(service, other["code"], "c1", "Bob")
        assert store.session("c1").code == other["code"]
        assert "c1" not in store.get(created["code"]).connection_ids()

    def test_enter_touches_last_seen(self, service, store, created, clock):
        ack = enter(service, created["code"], "c1", "Bob")
        clock.advance(minutes=5)
        enter(service, created["code"], "c2", "Bob")
        assert store.get(created["code"]).members[ack["memberId"]].last_seen_at == clock.now


class TestMemberCommands:
    def test_rename(self, service, store, created):
        bob = enter(service, created["code"], "c1", "Bob")
        assert service.rename("c1", created["code"], member_id=bob["memberId"], new_name="Bobby")["ok"]
        assert store.get(created["code"]).members[bob["memberId"]].name == "Bobby"

    def test_rename_requires_own_session(self, service, created):
        bob = enter(service, created["code"], "c1", "Bob")
        with pytest.raises(Unauthorized):
            service.rename("c-owner", created["code"], member_id=bob["memberId"], new_name="Hacked")
        with pytest.raises(Unauthorized):
            service.rename("c-stranger", created["code"], member_id=bob["memberId"], new_name="Hacked")

    def test_rename_empty_and_taken(self, service, created):
        bob = enter(service, created["code"], "c1", "Bob")
        with pytest.raises(NameEmpty):
            service.rename("c1", created["code"], member_id=bob["memberId"], new_name="  ")
        with pytest.raises(NameTaken):
            service.rename("c1", created["code"], member_id=bob["memberId"], new_name="Alice")

    def test_rename_to_same_name_is_fine(self, service, created):
        bob = enter(service, created["code"], "c1", "Bob")
        assert service.rename("c1", created["code"], member_id=bob["memberId"], new_name="Bob")["ok"]

    def test_set_unavailable_filters_and_replaces(self, service, store, created):
        room = store.get(created["code"])
        s1, s2 = room.slots[0], room.slots[1]
        service.set_unavailable("c-owner", created["code"], unavailable=[s1, s1, "junk", 42, "2025-01-06|09:00", s2])
        assert room.members[created["memberId"]].unavailable == {s1, s2}
        service.set_unavailable("c-owner", created["code"], unavailable=[s2])
        assert room.members[created["memberId"]].unavailable == {s2}

    def test_set_unavailable_is_capped(self, service, store, created, monkeypatch):
        monkeypatch.setattr(constants, "MAX_UNAVAILABLE", 3)
        ack = service.set_unavailable("c-owner", created["code"], unavailable=[str(i) for i in range(10)])
        assert ack["count"] == 3
        assert store.get(created["code"]).members[created["memberId"]].unavailable == {"0", "1", "2"}

    def test_set_unavailable_requires_session(self, service, created):
        with pytest.raises(Unauthorized):
            service.set_unavailable("c-nobody", created["code"], unavailable=[])

    def test_confirm_cycle(self, service, store, created):
        bob = enter(service, created["code"], "c1", "Bob")
        member = store.get(created["code"]).members[bob["memberId"]]
        slot = store.get(created["code"]).slots[0]

        service.set_unavailable("c1", created["code"], member_id=bob["memberId"], unavailable=[slot])
        assert member.confirmed_at is None

        ack = service.confirm("c1", created["code"], member_id=bob["memberId"])
        assert ack["hostName"] == "Alice"
        assert member.confirmed_at is not None

        service.set_unavailable("c1", created["code"], member_id=bob["memberId"], unavailable=[slot])
        assert member.confirmed_at is None

    def test_confirm_reports_renamed_owner(self, service, created):
        service.rename("c-owner", created["code"], new_name="Alicia")
        bob = enter(service, created["code"], "c1", "Bob")
        assert service.confirm("c1", created["code"], member_id=bob["memberId"])["hostName"] == "Alicia"

    def test_leave_keeps_member(self, service, store, created):
        bob = enter(service, created["code"], "c1", "Bob")
        service.drain()
        assert service.leave("c1", created["code"])["ok"]
        room = store.get(created["code"])
        assert bob["memberId"] in room.members
        assert not room.is_online(bob["memberId"])
        assert store.session("c1") is None
        owner_view = last_state(service.drain(), "c-owner")
        bob_row = next(m for m in owner_view["members"] if m["id"] == bob["memberId"])
        assert bob_row["online"] is False

    def test_leave_without_session(self, service):
        assert service.leave("c-nobody")["ok"]

    def test_disconnect_keeps_member_and_touches_last_seen(self, service, store, created, clock):
        bob = enter(service, created["code"], "c1", "Bob")
        clock.advance(minutes=3)
        service.disconnect("c1")
        member = store.get(created["code"]).members[bob["memberId"]]
        assert member.last_seen_at == clock.now
        assert not store.get(created["code"]).is_online(bob["memberId"])


class TestOwnerCommands:
    def test_update_title(self, service, store, created):
        assert service.update("c-owner", created["code"], title="Final round")["ok"]
        assert store.get(created["code"]).title == "Final round"

    def test_update_requires_owner(self, service, created):
        enter(service, created["code"], "c1", "Bob")
        with pytest.raises(Unauthorized):
            service.update("c1", created["code"], title="Mine now")

    def test_update_empty_title(self, service, created):
        with pytest.raises(TitleEmpty):
            service.update("c-owner", created["code"], title=" ")

    def test_kick_detaches_every_connection(self, service, store, created):
        bob = enter(service, created["code"], "c1", "Bob")
        enter(service, created["code"], "c2", "Bob")
        service.drain()

        assert service.kick("c-owner", created["code"], target_id=bob["memberId"])["ok"]
        notices = service.drain()
        assert events_for(notices, "c1") == ["room:kicked"]
        assert events_for(notices, "c2") == ["room:kicked"]
        room = store.get(created["code"])
        assert bob["memberId"] not in room.members
        assert store.session("c1") is None and store.session("c2") is None
        owner_view = last_state(notices, "c-owner")
        assert all(m["id"] != bob["memberId"] for m in owner_view["members"])

    def test_kicked_member_loses_marks(self, service, store, created):
        bob = enter(service, created["code"], "c1", "Bob")
        slot = store.get(created["code"]).slots[0]
        service.set_unavailable("c1", created["code"], unavailable=[slot])
        service.kick("c-owner", created["code"], target_id=bob["memberId"])
        service.drain()
        service.confirm("c-owner", created["code"])
        state = last_state(service.drain(), "c-owner")
        assert slot not in state["conflicts"]["data"]

    def test_cannot_kick_owner(self, service, created):
        with pytest.raises(CannotKickOwner):
            service.kick("c-owner", created["code"], target_id=created["memberId"])

    def test_kick_unknown_target(self, service, created):
        with pytest.raises(TargetNotFound):
            service.kick("c-owner", created["code"], target_id="ghost")

    def test_kick_requires_owner(self, service, created):
        bob = enter(service, created["code"], "c1", "Bob")
        with pytest.raises(Unauthorized):
            service.kick("c1", created["code"], target_id=bob["memberId"])

    def test_dissolve(self, service, store, persistence, created):
        enter(service, created["code"], "c1", "Bob")
        service.drain()
        assert service.dissolve("c-owner", created["code"])["ok"]
        notices = service.drain()
        assert events_for(notices, "c1") == ["room:dissolved"]
        assert events_for(notices, "c-owner") == ["room:dissolved"]
        assert created["code"] not in store
        assert store.session("c1") is None
        assert created["code"] in persistence.outbox.deleted

    def test_dissolve_requires_owner(self, service, store, created):
        enter(service, created["code"], "c1", "Bob")
        with pytest.raises(Unauthorized):
            service.dissolve("c1", created["code"])
        assert created["code"] in store


class TestExpiry:
    def test_access_just_before_and_at_expiry(self, service, store, persistence, clock, created):
        code = created["code"]
        enter(service, code, "c1", "Bob")
        service.drain()

        clock.now = datetime(2025, 1, 10, 23, 59, 59, tzinfo=timezone.utc)
        assert service.get_room(code).code == code

        clock.now = datetime(2025, 1, 11, 0, 0, 0, tzinfo=timezone.utc)
        with pytest.raises(RoomNotFound):
            service.confirm("c1", code)
        assert code not in store
        assert code in persistence.outbox.deleted
        notices = service.drain()
        assert events_for(notices, "c1") == ["room:expired"]
        assert events_for(notices, "c-owner") == ["room:expired"]
        assert all(event != "room:state" for _, event, _ in notices)

    def test_expiry_uses_room_zone(self, service, room_args):
        room_args.update(time_zone="Asia/Tokyo")
        ack = service.create("c1", **room_args)
        assert ack["expiresAt"] == "2025-01-10T15:00:00.000Z"

    def test_sweep_expires_only_due_rooms(self, service, store, clock, room_args):
        early = service.create("c1", **dict(room_args, end_date="2025-01-06"))
        late = service.create("c2", **room_args)
        service.drain()
        clock.now = datetime(2025, 1, 7, 0, 0, tzinfo=timezone.utc)
        assert service.sweep() == [early["code"]]
        assert early["code"] not in store
        assert late["code"] in store
        assert events_for(service.drain(), "c1") == ["room:expired"]

    def test_disconnect_after_expiry(self, service, store, clock, created):
        clock.now = datetime(2025, 2, 1, tzinfo=timezone.utc)
        service.disconnect("c-owner")
        assert created["code"] not in store


class TestDispatch:
    def test_create_and_enter_via_camel_case_payloads(self, service):
        ack = service.dispatch("c1", "room:create", {
            "title": "T", "creatorName": "Alice", "pin": 1234, "startDate": "2025-01-06",
            "endDate": "2025-01-06", "dayStart": "09:00", "dayEnd": "10:00", "slotMinutes": "30",
            "timeZone": "Europe/London",
        })
        assert ack["ok"], ack
        enter_ack = service.dispatch("c2", "room:enter", {"code": ack["code"], "name": "Bob", "pin": 9999})
        assert enter_ack["ok"], enter_ack
        assert enter_ack["isHost"] is False

    def test_rename_accepts_new_name_key(self, service, created):
        ack = service.dispatch("c-owner", "member:rename", {"code": created["code"], "newName": "Al"})
        assert ack == {"ok": True, "name": "Al"}

    def test_errors_become_acks(self, service, created):
        ack = service.dispatch("c1", "room:enter", {"code": created["code"], "name": "Alice", "pin": "9999"})
        assert ack == {"ok": False, "error": "PIN incorrect", "code": "WRONG_PIN"}

    def test_unknown_command(self, service):
        assert service.dispatch("c1", "room:explode", {})["code"] == "UNKNOWN_COMMAND"

    def test_malformed_payload(self, service):
        assert service.dispatch("c1", "member:set_unavailable", {"unavailable": "nope"})["code"] == "INVALID_PAYLOAD"
        assert service.dispatch("c1", "room:enter", ["not", "a", "dict"])["code"] == "INVALID_PAYLOAD"
