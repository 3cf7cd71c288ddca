"""
Unit tests for the matching queue service against the in-memory store.
"""
import pytest
import sys
import os
from datetime import timedelta

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from conftest import NOW, make_entry
from peerlink.middleware.error_handling import (
    DuplicateQueueEntry,
    ErrorCode,
    ForbiddenException,
    InvalidAvailabilityWindow,
    InvalidStateTransition,
    NotFoundException,
    ValidationException,
)
from peerlink.services.entities import QueueStatus
from peerlink.services.matching_queue import MatchingQueueService


@pytest.fixture
def service(store, clock):
    return MatchingQueueService(store, clock=clock)


def enter(service, user_id="user-1", start=NOW, hours=1, **kwargs):
    kwargs.setdefault("interests", ["AI", " ml "])
    kwargs.setdefault("roles", ["mentor"])
    return service.enter_queue(user_id, start, start + timedelta(hours=hours), **kwargs)


class TestEnterQueue:
    """Tests for entering the queue."""

    def test_creates_waiting_entry(self, service, store):
        entry = enter(service)
        assert entry.status == QueueStatus.WAITING
        assert entry.constraints.interests == frozenset({"ai", "ml"})
        assert entry.created_at == NOW
        assert store.get_waiting_entry("user-1").id == entry.id

    def test_second_waiting_entry_is_rejected(self, service):
        first = enter(service)
        with pytest.raises(DuplicateQueueEntry) as exc_info:
            enter(service)
        assert exc_info.value.status_code == 409
        assert exc_info.value.details["queue_id"] == first.id

    def test_can_reenter_after_cancel(self, service):
        enter(service)
        service.cancel_queue_entry("user-1")
        assert enter(service).status == QueueStatus.WAITING

    def test_start_in_the_past_is_rejected(self, service):
        with pytest.raises(InvalidAvailabilityWindow) as exc_info:
            enter(service, start=NOW - timedelta(minutes=1))
        assert exc_info.value.code == ErrorCode.INVALID_AVAILABILITY_WINDOW

    def test_start_seconds_in_the_past_is_rejected(self, service, store):
        with pytest.raises(InvalidAvailabilityWindow):
            enter(service, start=NOW - timedelta(seconds=3))
        assert store.get_waiting_entry("user-1") is None

    def test_start_at_now_is_accepted(self, service):
        assert enter(service, start=NOW).is_waiting

    def test_end_must_follow_start(self, service):
        with pytest.raises(InvalidAvailabilityWindow):
            service.enter_queue("user-1", NOW, NOW, interests=["ai"], roles=["peer"])

    def test_naive_datetimes_are_utc(self, service):
        entry = service.enter_queue(
            "user-1", NOW.replace(tzinfo=None), (NOW + timedelta(hours=1)).replace(tzinfo=None),
            interests=["ai"], roles=["peer"]
        )
        assert entry.available_from == NOW

    @pytest.mark.parametrize("field,kwargs", [
        ("interests", {"interests": [" "]}),
        ("roles", {"roles": []}),
    ])
    def test_constraints_required(self, service, field, kwargs):
        with pytest.raises(ValidationException) as exc_info:
            enter(service, **kwargs)
        assert field in exc_info.value.details["field"]

    def test_unknown_org_constraint(self, service):
        with pytest.raises(ValidationException):
            enter(service, org_constraint="same_planet")


class TestCancelQueueEntry:
    """Tests for cancelling queue entries."""

    def test_cancel_waiting_entry(self, service, store):
        entry = enter(service)
        cancelled = service.cancel_queue_entry("user-1", entry.id)
        assert cancelled.status == QueueStatus.CANCELLED
        assert store.get_entry(entry.id).status == QueueStatus.CANCELLED

    def test_cancel_without_entry(self, service):
        with pytest.raises(NotFoundException) as exc_info:
            service.cancel_queue_entry("user-1")
        assert exc_info.value.code == ErrorCode.QUEUE_ENTRY_NOT_FOUND

    def test_cancel_unknown_id(self, service):
        with pytest.raises(NotFoundException):
            service.cancel_queue_entry("user-1", "missing")

    def test_cannot_cancel_someone_elses_entry(self, service):
        entry = enter(service, user_id="owner")
        with pytest.raises(ForbiddenException):
            service.cancel_queue_entry("intruder", entry.id)

    def test_cannot_cancel_matched_entry(self, service, store):
        a = store.insert_entry(make_entry("a"))
        b = store.insert_entry(make_entry("b"))
        store.commit_pair(a, b, "match_a_b_1", NOW)
        with pytest.raises(InvalidStateTransition) as exc_info:
            service.cancel_queue_entry("a", a.id)
        assert exc_info.value.details["current_status"] == "matched"

    def test_lost_race_reports_current_status(self, service, store):
        entry = enter(service)
        original = store.cancel_entry

        def matched_first(entry_id, now):
            other = store.insert_entry(make_entry("other"))
            store.commit_pair(store.get_entry(entry_id), other, "match_other_user-1_1", now)
            return original(entry_id, now)

        store.cancel_entry = matched_first
        with pytest.raises(InvalidStateTransition) as exc_info:
            service.cancel_queue_entry("user-1")
        assert exc_info.value.details["current_status"] == "matched"


class TestQueueStatus:
    """Tests for position and wait estimates."""

    def test_no_entry(self, service):
        view = service.get_queue_status("nobody")
        assert view.entry is None
        assert view.to_dict()["position"] is None

    def test_position_and_wait(self, service, store):
        store.insert_entry(make_entry("early-1", created_at=NOW - timedelta(minutes=30)))
        store.insert_entry(make_entry("early-2", created_at=NOW - timedelta(minutes=20)))
        enter(service)

        view = service.get_queue_status("user-1")
        assert view.position == 3
        assert view.estimated_wait_seconds == 360

    def test_first_in_line(self, service):
        enter(service)
        view = service.get_queue_status("user-1")
        assert view.position == 1
        assert view.estimated_wait_seconds == 120

    def test_terminal_entry_has_no_position(self, service):
        enter(service)
        service.cancel_queue_entry("user-1")
        view = service.get_queue_status("user-1")
        assert view.entry.status == QueueStatus.CANCELLED
        assert view.position is None

    def test_reentry_at_same_instant_reports_waiting_entry(self, service):
        first = enter(service)
        service.cancel_queue_entry("user-1")
        second = enter(service)
        assert first.created_at == second.created_at

        view = service.get_queue_status("user-1")
        assert view.entry.id == second.id
        assert view.entry.status == QueueStatus.WAITING
        assert view.position == 1


class TestActiveAndCleanup:
    """Tests for active entry listing and the expiry sweep."""

    def test_list_active_entries_window(self, service, store):
        store.insert_entry(make_entry("now"))
        store.insert_entry(make_entry(
            "later", available_from=NOW + timedelta(hours=3), available_to=NOW + timedelta(hours=4)
        ))
        active = service.list_active_entries(window=timedelta(hours=1))
        assert [e.user_id for e in active] == ["now"]

    def test_list_active_entries_limit(self, service, store):
        for i in range(5):
            store.insert_entry(make_entry(f"user-{i}", created_at=NOW - timedelta(minutes=10 - i)))
        active = service.list_active_entries(limit=2)
        assert [e.user_id for e in active] == ["user-0", "user-1"]

    def test_cleanup_expires_past_windows_once(self, service, store, clock):
        entry = enter(service)
        clock.advance(hours=2)
        assert service.cleanup_expired_entries() == 1
        assert service.cleanup_expired_entries() == 0
        assert store.get_entry(entry.id).status == QueueStatus.EXPIRED

    def test_cleanup_keeps_open_windows(self, service):
        enter(service)
        assert service.cleanup_expired_entries() == 0

    def test_cleanup_leaves_matched_entries_alone(self, service, store, clock):
        a = store.insert_entry(make_entry("a"))
        b = store.insert_entry(make_entry("b"))
        store.commit_pair(a, b, "match_a_b_1", NOW)
        clock.advance(hours=3)

        assert service.cleanup_expired_entries() == 0
        for entry in (a, b):
            current = store.get_entry(entry.id)
            assert current.status == QueueStatus.MATCHED
            assert current.match_id == "match_a_b_1"

    def test_cleanup_leaves_cancelled_entries_alone(self, service, store, clock):
        entry = enter(service)
        service.cancel_queue_entry("user-1", entry.id)
        clock.advance(hours=3)

        assert service.cleanup_expired_entries() == 0
        assert store.get_entry(entry.id).status == QueueStatus.CANCELLED
