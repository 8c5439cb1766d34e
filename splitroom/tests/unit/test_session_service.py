"""
tests/unit/test_session_service.py — LiveSession create / join / leave / end / restore.

Each "device" is a LiveSession with its own InMemoryLocalSessionStore; all
devices share one InMemoryRecordStore, so writes and change notifications
flow between them synchronously.

What this file proves:
  - create retries PIN collisions and gives up after PIN_MAX_ATTEMPTS
  - join follows rejoin → name match → new participant, in that order,
    and only the last path writes
  - a newcomer is put on every existing item
  - locked rooms reject newcomers but not rejoins
  - leave is best effort; end/force-end are gated and clear local state
  - restore renders immediately, then degrades to the initial view on any
    fetch failure (including a store that never answers)
"""

from __future__ import annotations

import random
import threading
import time

import pytest

from splitroom.app.clients.local_session_store import InMemoryLocalSessionStore
from splitroom.app.clients.record_store import InMemoryRecordStore
from splitroom.app.errors import AppError, ErrorCode
from splitroom.app.models.split_record import SplitStatus
from splitroom.app.services.session_service import (
    LiveSession,
    SessionView,
    build_share_url,
    clear_join_param,
    parse_join_pin,
)
from splitroom.app.services.status_service import with_status
from splitroom.config import TestingConfig


class SessionConfig(TestingConfig):
    SHARE_BASE_URL = "https://split.example/"


class ScriptedRandom(random.Random):
    """Hands out the given PINs first; everything else is seeded randomness."""

    def __init__(self, pins=()) -> None:
        super().__init__(0)
        self._pins = list(pins)

    def randrange(self, start, stop=None, step=1):
        if stop is not None and start == 1000 and self._pins:
            return self._pins.pop(0)
        return super().randrange(start, stop, step)


def _device(store, local=None, pins=(), **kwargs) -> LiveSession:
    return LiveSession(
        store,
        local if local is not None else InMemoryLocalSessionStore(),
        config=SessionConfig,
        rng=ScriptedRandom(pins),
        **kwargs,
    )


@pytest.fixture
def store():
    return InMemoryRecordStore()


@pytest.fixture
def hanging_reads(monkeypatch):
    """Makes get_record_by_pin on a store block until the test finishes."""
    release = threading.Event()

    def install(target):
        def hang(pin):
            release.wait(10)
            raise AppError(ErrorCode.STORE_UNAVAILABLE, "late", 503)

        monkeypatch.setattr(target, "get_record_by_pin", hang)

    yield install
    release.set()


@pytest.fixture
def host(store):
    """Hana's device, hosting split 4821 with one 2x Pizza on the bill."""
    session = _device(store, pins=[4821])
    session.add_item("Pizza", "20", quantity=2)
    session.create_split("Hana")
    return session


# ═══════════════════════════════════════════════════════════════════════════
# Deep links
# ═══════════════════════════════════════════════════════════════════════════

class TestDeepLinks:

    def test_parse(self):
        assert parse_join_pin("https://split.example/?join=4821") == "4821"
        assert parse_join_pin("https://split.example/?x=1&join=%204821%20") == "4821"
        assert parse_join_pin("https://split.example/") is None
        assert parse_join_pin("https://split.example/?join=") is None
        assert parse_join_pin(None) is None

    def test_build_replaces_existing_pin(self):
        url = build_share_url("https://split.example/?ref=qr&join=1111", "4821")
        assert parse_join_pin(url) == "4821"
        assert "ref=qr" in url
        assert url.count("join=") == 1

    def test_clear_keeps_other_params(self):
        assert clear_join_param("https://split.example/?ref=qr&join=4821") == "https://split.example/?ref=qr"
        assert clear_join_param("https://split.example/?join=4821") == "https://split.example/"


# ═══════════════════════════════════════════════════════════════════════════
# Create
# ═══════════════════════════════════════════════════════════════════════════

class TestCreate:

    def test_create_publishes_waiting_document(self, host, store):
        assert host.pin == "4821"
        assert host.is_host is True
        assert host.view is SessionView.SPLITTING

        doc = store.get_record_by_pin("4821")
        assert doc["status"] is SplitStatus.WAITING
        assert [u["name"] for u in doc["users"]] == ["Hana"]
        assert doc["host_id"] == host.current_participant["id"]
        assert [i["name"] for i in doc["items"]] == ["Pizza"]

    def test_create_saves_local_session_and_share_link(self, host):
        saved = host.local_store.load()
        assert saved["pin"] == "4821"
        assert saved["is_host"] is True
        assert saved["participant_id"] == host.current_participant["id"]
        assert parse_join_pin(host.location) == "4821"
        assert host.share_url == "https://split.example/?join=4821"

    def test_generated_pins_have_configured_length(self, store):
        session = LiveSession(store, InMemoryLocalSessionStore(), config=SessionConfig, rng=random.Random(3))
        for _ in range(50):
            pin = session.generate_pin()
            assert len(pin) == 4 and pin.isdigit() and pin[0] != "0"

    def test_collision_is_retried(self, store):
        store.create_record("1111", with_status({"items": [], "users": [], "host_id": ""}, "active"))
        session = _device(store, pins=[1111, 2222])

        assert session.create_split("Hana") == "2222"

    def test_gives_up_after_max_attempts(self, store):
        store.create_record("1111", {"items": [], "users": [], "host_id": "", "status": SplitStatus.ACTIVE})
        session = _device(store, pins=[1111] * SessionConfig.PIN_MAX_ATTEMPTS)

        with pytest.raises(AppError) as exc_info:
            session.create_split("Hana")
        assert exc_info.value.code == ErrorCode.PIN_EXHAUSTED
        assert exc_info.value.http_status == 503
        assert session.error
        assert session.pin is None
        assert session.view is SessionView.INITIAL

    def test_collision_during_create_is_retried(self, store):
        class RacyStore(InMemoryRecordStore):
            raced = False

            def create_record(self, pin, document):
                if not self.raced:
                    self.raced = True
                    raise AppError(ErrorCode.PIN_COLLISION, "taken", 409)
                return super().create_record(pin, document)

        racy = RacyStore()
        session = _device(racy, pins=[3333, 4444])
        assert session.create_split("Hana") == "4444"

    def test_cannot_create_twice(self, host):
        with pytest.raises(AppError) as exc_info:
            host.create_split()
        assert exc_info.value.http_status == 409

    def test_manual_split_goes_live(self, store):
        session = _device(store, pins=[5555])
        session.start_manual_split()
        session.add_item("Soda", "3")
        ana = session.add_participant("Ana")
        session.create_split()

        doc = store.get_record_by_pin("5555")
        assert doc["status"] is SplitStatus.WAITING
        assert doc["items"][0]["assigned_to"] == [ana["id"]]


# ═══════════════════════════════════════════════════════════════════════════
# Join
# ═══════════════════════════════════════════════════════════════════════════

class TestJoin:

    def test_newcomer_added_and_assigned_everywhere(self, host, store):
        bob = _device(store)
        me = bob.join_split("4821", "Bob")

        doc = store.get_record_by_pin("4821")
        assert len(doc["users"]) == 2
        assert all(me["id"] in item["assigned_to"] for item in doc["items"])
        assert bob.is_host is False
        assert bob.view is SessionView.SPLITTING

    def test_host_projection_sees_newcomer(self, host, store):
        _device(store).join_split("4821", "Bob")
        assert [u["name"] for u in host.document["users"]] == ["Hana", "Bob"]

    def test_name_match_reuses_participant(self, host, store):
        first = _device(store).join_split("4821", "Bob")
        doc_before = store.get_record_by_pin("4821")

        again = _device(store).join_split("4821", "  bOB ")

        assert again["id"] == first["id"]
        assert store.get_record_by_pin("4821") == doc_before

    def test_name_match_on_host_restores_host_flag(self, host, store):
        other = _device(store)
        other.join_split("4821", "hana")
        assert other.is_host is True

    def test_rejoin_reuses_saved_identity(self, host, store):
        local = InMemoryLocalSessionStore()
        first = _device(store, local).join_split("4821", "Bob")

        reloaded = _device(store, local)
        again = reloaded.join_split("4821", "Robert")

        assert again["id"] == first["id"]
        assert len(store.get_record_by_pin("4821")["users"]) == 2

    def test_rejoin_keeps_assignments(self, host, store):
        local = InMemoryLocalSessionStore()
        bob = _device(store, local)
        me = bob.join_split("4821", "Bob")
        item_id = bob.document["items"][0]["id"]
        bob.update_item_assignment(item_id, me["id"], "remove")

        _device(store, local).join_split("4821", "Bob")
        assert store.get_record_by_pin("4821")["items"][0]["assigned_to"] == []

    def test_store_that_never_answers(self, host, store, hanging_reads):
        bob = _device(store)
        hanging_reads(store)

        started = time.monotonic()
        with pytest.raises(AppError) as exc_info:
            bob.join_split("4821", "Bob")
        elapsed = time.monotonic() - started

        assert exc_info.value.code == ErrorCode.SPLIT_NOT_FOUND
        assert elapsed < SessionConfig.REMOTE_FETCH_TIMEOUT_SECONDS + 2
        assert bob.pin is None
        assert bob.local_store.load() is None

    def test_locked_rejects_newcomer(self, host, store):
        host.start_room()
        host.toggle_lock()

        dave = _device(store)
        with pytest.raises(AppError) as exc_info:
            dave.join_split("4821", "Dave")
        assert exc_info.value.code == ErrorCode.SPLIT_LOCKED
        assert dave.error
        assert dave.view is SessionView.INITIAL

    def test_locked_admits_rejoin(self, host, store):
        local = InMemoryLocalSessionStore()
        me = _device(store, local).join_split("4821", "Bob")
        host.start_room()
        host.toggle_lock()

        assert _device(store, local).join_split("4821", "Bob")["id"] == me["id"]

    def test_invalid_pin_format(self, host, store):
        with pytest.raises(AppError) as exc_info:
            _device(store).join_split("48a1", "Bob")
        assert exc_info.value.code == ErrorCode.INVALID_PIN

    def test_unknown_pin(self, store):
        with pytest.raises(AppError) as exc_info:
            _device(store).join_split("9999", "Bob")
        assert exc_info.value.code == ErrorCode.SPLIT_NOT_FOUND

    def test_ended_pin(self, host, store):
        host.end_split()
        with pytest.raises(AppError) as exc_info:
            _device(store).validate_pin("4821")
        assert exc_info.value.code == ErrorCode.SPLIT_ENDED

    def test_store_failure_reads_as_not_found(self, host, store, monkeypatch):
        def down(pin):
            raise AppError(ErrorCode.STORE_UNAVAILABLE, "down", 503)

        monkeypatch.setattr(store, "get_record_by_pin", down)
        with pytest.raises(AppError) as exc_info:
            _device(store).join_split("4821", "Bob")
        assert exc_info.value.code == ErrorCode.SPLIT_NOT_FOUND

    def test_join_clears_deep_link(self, host, store):
        bob = _device(store, entry_url="https://split.example/?join=4821")
        assert bob.pending_join_pin == "4821"

        bob.join_split("4821", "Bob")
        assert bob.pending_join_pin is None
        assert parse_join_pin(bob.location) is None


# ═══════════════════════════════════════════════════════════════════════════
# Leave
# ═══════════════════════════════════════════════════════════════════════════

class TestLeave:

    def test_leave_removes_participant_everywhere(self, host, store):
        bob = _device(store)
        me = bob.join_split("4821", "Bob")

        bob.leave_split()

        doc = store.get_record_by_pin("4821")
        assert [u["name"] for u in doc["users"]] == ["Hana"]
        assert all(me["id"] not in i["assigned_to"] for i in doc["items"])
        assert bob.local_store.load() is None
        assert bob.pin is None
        assert bob.view is SessionView.INITIAL
        assert all(me["id"] not in i["assigned_to"] for i in host.document["items"])

    def test_leave_after_removal_writes_nothing(self, host, store):
        bob = _device(store)
        me = bob.join_split("4821", "Bob")
        host.remove_participant(me["id"])
        doc_before = store.get_record_by_pin("4821")

        bob.leave_split()

        assert store.get_record_by_pin("4821") == doc_before
        assert bob.view is SessionView.INITIAL

    def test_leave_survives_store_failure(self, host, store, monkeypatch):
        bob = _device(store)
        bob.join_split("4821", "Bob")

        def down(pin):
            raise AppError(ErrorCode.STORE_UNAVAILABLE, "down", 503)

        monkeypatch.setattr(store, "get_record_by_pin", down)
        bob.leave_split()

        assert bob.view is SessionView.INITIAL
        assert bob.local_store.load() is None
        assert store.subscriber_count("4821") == 1  # host only


# ═══════════════════════════════════════════════════════════════════════════
# Status
# ═══════════════════════════════════════════════════════════════════════════

class TestStatusChanges:

    def test_host_start_and_lock_toggle(self, host, store):
        host.start_room()
        assert store.get_record_by_pin("4821")["status"] is SplitStatus.ACTIVE

        assert host.toggle_lock() is SplitStatus.LOCKED
        assert store.get_record_by_pin("4821")["status"] is SplitStatus.LOCKED

        assert host.toggle_lock() is SplitStatus.ACTIVE

    def test_participant_cannot_start(self, host, store):
        bob = _device(store)
        bob.join_split("4821", "Bob")
        with pytest.raises(AppError) as exc_info:
            bob.start_room()
        assert exc_info.value.code == ErrorCode.HOST_ONLY

    def test_locked_room_still_editable(self, host, store):
        bob = _device(store)
        bob.join_split("4821", "Bob")
        host.start_room()
        host.toggle_lock()

        bob.add_item("Soda", "3")
        assert len(store.get_record_by_pin("4821")["items"]) == 2

    def test_host_end(self, host, store):
        host.end_split()

        assert store.get_record_by_pin("4821")["status"] is SplitStatus.ENDED
        assert host.view is SessionView.ENDED
        assert host.local_store.load() is None
        assert parse_join_pin(host.location) is None
        assert host.is_live is False

    def test_participant_needs_force_and_confirmation(self, host, store):
        bob = _device(store)
        bob.join_split("4821", "Bob")

        with pytest.raises(AppError) as exc_info:
            bob.end_split()
        assert exc_info.value.code == ErrorCode.HOST_ONLY

        with pytest.raises(AppError) as exc_info:
            bob.end_split(force=True)
        assert exc_info.value.code == ErrorCode.CONFIRMATION_REQUIRED
        assert exc_info.value.http_status == 428
        assert store.get_record_by_pin("4821")["status"] is SplitStatus.WAITING

    def test_force_end_reaches_everyone(self, host, store):
        bob = _device(store)
        bob.join_split("4821", "Bob")

        bob.end_split(force=True, confirmed=True)

        assert store.get_record_by_pin("4821")["status"] is SplitStatus.ENDED
        assert bob.view is SessionView.ENDED
        assert host.view is SessionView.ENDED
        assert host.local_store.load() is None

    def test_no_edits_after_end(self, host, store):
        bob = _device(store)
        bob.join_split("4821", "Bob")
        bob.end_split(force=True, confirmed=True)

        for action in (host.start_room, host.toggle_lock, lambda: host.add_item("Soda", "1")):
            with pytest.raises(AppError) as exc_info:
                action()
            assert exc_info.value.code == ErrorCode.SPLIT_ENDED

    def test_end_without_split(self, store):
        with pytest.raises(AppError) as exc_info:
            _device(store).end_split()
        assert exc_info.value.code == ErrorCode.NOT_IN_SPLIT


# ═══════════════════════════════════════════════════════════════════════════
# Restore
# ═══════════════════════════════════════════════════════════════════════════

def _saved_bob(host, store) -> InMemoryLocalSessionStore:
    local = InMemoryLocalSessionStore()
    _device(store, local).join_split("4821", "Bob")
    return local


class TestRestore:

    def test_nothing_saved(self, store):
        assert _device(store).restore_on_start() is SessionView.INITIAL

    def test_restores_live_split(self, host, store):
        local = _saved_bob(host, store)
        device = _device(store, local)

        assert device.restore_on_start() is SessionView.SPLITTING
        assert device.pin == "4821"
        assert device.current_participant["name"] == "Bob"
        assert len(device.document["users"]) == 2
        assert device.is_restoring is False

    def test_restored_host_keeps_host_flag(self, host, store):
        device = _device(store, host.local_store)
        device.restore_on_start()
        assert device.is_host is True

    def test_ended_split_shows_ended_view(self, host, store):
        local = _saved_bob(host, store)
        host.end_split()

        device = _device(store, local)
        assert device.restore_on_start() is SessionView.ENDED
        assert local.load() is None
        assert device.status is SplitStatus.ENDED

    def test_missing_split_falls_back(self, store):
        local = InMemoryLocalSessionStore({
            "pin": "7777",
            "participant_id": "p1",
            "participant_name": "Bob",
            "participant_color": "#123456",
            "is_host": False,
        })
        device = _device(store, local)

        assert device.restore_on_start() is SessionView.INITIAL
        assert local.load() is None
        assert device.pin is None

    def test_unreadable_saved_session_purged(self, store):
        local = InMemoryLocalSessionStore.from_raw({"pin": "4821"})
        assert _device(store, local).restore_on_start() is SessionView.INITIAL
        assert local.raw is None

    def test_deep_link_to_other_split_wins(self, host, store):
        local = _saved_bob(host, store)
        device = _device(store, local)

        view = device.restore_on_start("https://split.example/?join=5555")

        assert view is SessionView.INITIAL
        assert device.pending_join_pin == "5555"
        assert local.load() is None

    def test_deep_link_to_same_split_restores(self, host, store):
        local = _saved_bob(host, store)
        device = _device(store, local, entry_url="https://split.example/?join=4821")

        assert device.restore_on_start() is SessionView.SPLITTING
        assert device.pending_join_pin is None

    def test_store_that_never_answers(self, host, store, hanging_reads):
        local = _saved_bob(host, store)
        hanging_reads(store)
        device = _device(store, local)

        started = time.monotonic()
        view = device.restore_on_start()
        elapsed = time.monotonic() - started

        assert view is SessionView.INITIAL
        assert elapsed < SessionConfig.REMOTE_FETCH_TIMEOUT_SECONDS + 2
        assert local.load() is None
        assert device.pin is None

    def test_bounded_read_reports_store_unavailable(self, host, store, hanging_reads):
        hanging_reads(store)
        with pytest.raises(AppError) as exc_info:
            _device(store)._fetch_document("4821")
        assert exc_info.value.code == ErrorCode.STORE_UNAVAILABLE
        assert exc_info.value.http_status == 504


# ═══════════════════════════════════════════════════════════════════════════
# Editing and totals
# ═══════════════════════════════════════════════════════════════════════════

class TestEditing:

    def test_split_and_merge_through_session(self, host, store):
        pizza = host.document["items"][0]["id"]
        host.split_item(pizza)
        assert len(store.get_record_by_pin("4821")["items"]) == 2

        host.merge_split_group(pizza)
        items = store.get_record_by_pin("4821")["items"]
        assert len(items) == 1 and items[0]["quantity"] == 2

    def test_assignment_actions(self, host):
        pizza = host.document["items"][0]["id"]
        me = host.current_participant["id"]

        host.update_item_assignment(pizza, me, "add")
        assert host.document["items"][0]["assigned_to"] == [me]

        host.update_item_assignment(pizza, me, "remove")
        assert host.document["items"][0]["assigned_to"] == []

        with pytest.raises(AppError) as exc_info:
            host.update_item_assignment(pizza, me, "toggle")
        assert exc_info.value.code == ErrorCode.INVALID_FIELD

    def test_totals_after_join(self, host, store):
        _device(store).join_split("4821", "Bob")
        host.assign_everyone()

        totals = host.user_totals()
        assert sum(totals["user_totals"].values()) == totals["grand_total"]
        assert totals["unassigned_total"] == 0
        assert len(host.user_breakdown()) == 2

    def test_receipt_items_loaded(self, host, store):
        from splitroom.app.services.receipt_service import ingest_extracted_items

        host.load_receipt_items(ingest_extracted_items([{"name": "Tea", "price": "4.00"}], "Cafe"))
        items = store.get_record_by_pin("4821")["items"]
        assert items[-1]["name"] == "Tea"
        assert items[-1]["bill_name"] == "Cafe"

    def test_remove_participant_and_item(self, host, store):
        bob = _device(store).join_split("4821", "Bob")
        host.remove_participant(bob["id"])
        host.remove_item(host.document["items"][0]["id"])

        doc = store.get_record_by_pin("4821")
        assert doc["items"] == []
        assert [u["name"] for u in doc["users"]] == ["Hana"]

    def test_reset(self, host, store):
        host.reset()
        assert host.pin is None
        assert host.document["items"] == []
        assert host.local_store.load() is None
        assert store.subscriber_count("4821") == 0
