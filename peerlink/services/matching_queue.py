"""
Matching Queue Service.

User-facing queue operations: enter, cancel, poll status, plus the periodic
expiry sweep. Every write goes through the store's conditional transitions;
nothing here triggers scoring or matching.
"""
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional

from peerlink.adapters.base import MatchingStore
from peerlink.middleware.error_handling import (
    ErrorCode,
    ForbiddenException,
    InvalidAvailabilityWindow,
    InvalidStateTransition,
    NotFoundException,
    ValidationException,
)
from peerlink.services.entities import (
    OrgConstraint,
    QueueConstraints,
    QueueEntry,
    QueueStatus,
    ensure_utc,
    utcnow,
)

logger = logging.getLogger(__name__)

# Wait estimate per position ahead, with a floor
WAIT_PER_POSITION = timedelta(minutes=2)
MIN_ESTIMATED_WAIT = timedelta(minutes=1)

DEFAULT_ACTIVE_WINDOW = timedelta(hours=1)
DEFAULT_ACTIVE_LIMIT = 100


@dataclass
class QueueStatusView:
    entry: Optional[QueueEntry]
    position: Optional[int] = None
    estimated_wait_seconds: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entry": self.entry.to_dict() if self.entry else None,
            "position": self.position,
            "estimated_wait_seconds": self.estimated_wait_seconds,
        }


class MatchingQueueService:
    """Queue lifecycle for one store."""

    def __init__(self, store: MatchingStore, clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.clock = clock

    def _validate_window(self, available_from: datetime, available_to: datetime, now: datetime) -> None:
        if available_from < now:
            raise InvalidAvailabilityWindow(
                "Availability window cannot start in the past", field="available_from"
            )
        if available_to <= available_from:
            raise InvalidAvailabilityWindow(
                "Availability end time must be after start time", field="available_to"
            )

    @staticmethod
    def _validate_constraints(constraints: QueueConstraints) -> None:
        if not constraints.interests:
            raise ValidationException("At least one interest is required", field="constraints.interests")
        if not constraints.roles:
            raise ValidationException("At least one role is required", field="constraints.roles")
        allowed = {c.value for c in OrgConstraint}
        if constraints.org_constraint is not None and constraints.org_constraint not in allowed:
            raise ValidationException(
                f"org_constraint must be one of {sorted(allowed)}",
                field="constraints.org_constraint"
            )

    def enter_queue(
        self,
        user_id: str,
        available_from: datetime,
        available_to: datetime,
        interests: Iterable[str] = (),
        roles: Iterable[str] = (),
        org_constraint: Optional[str] = None,
    ) -> QueueEntry:
        """
        Create a waiting entry for the user.

        Raises:
            InvalidAvailabilityWindow: start in the past or end not after start
            ValidationException: no interest, no role or unknown org constraint
            DuplicateQueueEntry: the user already has a waiting entry
        """
        now = self.clock()
        available_from = ensure_utc(available_from)
        available_to = ensure_utc(available_to)

        self._validate_window(available_from, available_to, now)
        constraints = QueueConstraints.build(interests, roles, org_constraint)
        self._validate_constraints(constraints)

        entry = QueueEntry(
            id=str(uuid.uuid4()),
            user_id=user_id,
            available_from=available_from,
            available_to=available_to,
            constraints=constraints,
            status=QueueStatus.WAITING,
            created_at=now,
            updated_at=now,
        )
        # One waiting entry per user is enforced by the store
        stored = self.store.insert_entry(entry)
        logger.info(
            f"User {user_id} entered queue ({stored.id}), window "
            f"{available_from.isoformat()} - {available_to.isoformat()}"
        )
        return stored

    def cancel_queue_entry(self, caller_id: str, queue_id: Optional[str] = None) -> QueueEntry:
        """
        Cancel the caller's entry, or their waiting entry when no id is given.

        Raises:
            NotFoundException: unknown id, or no waiting entry for the caller
            ForbiddenException: the entry belongs to someone else
            InvalidStateTransition: the entry is no longer waiting
        """
        if queue_id is None:
            entry = self.store.get_waiting_entry(caller_id)
            if entry is None:
                raise NotFoundException(
                    "Waiting queue entry", caller_id, code=ErrorCode.QUEUE_ENTRY_NOT_FOUND
                )
        else:
            entry = self.store.get_entry(queue_id)
            if entry is None:
                raise NotFoundException("Queue entry", queue_id, code=ErrorCode.QUEUE_ENTRY_NOT_FOUND)

        if entry.user_id != caller_id:
            logger.warning(f"User {caller_id} tried to cancel queue entry {entry.id} owned by {entry.user_id}")
            raise ForbiddenException(
                "You can only cancel your own queue entry", details={"queue_id": entry.id}
            )

        if entry.status != QueueStatus.WAITING:
            raise InvalidStateTransition(entry.id, entry.status.value, QueueStatus.CANCELLED.value)

        now = self.clock()
        if not self.store.cancel_entry(entry.id, now):
            # Matched or expired between the read and the conditional write
            current = self.store.get_entry(entry.id)
            current_status = current.status.value if current else "unknown"
            raise InvalidStateTransition(entry.id, current_status, QueueStatus.CANCELLED.value)

        logger.info(f"User {caller_id} cancelled queue entry {entry.id}")
        entry.status = QueueStatus.CANCELLED
        entry.updated_at = now
        return entry

    def get_queue_status(self, caller_id: str) -> QueueStatusView:
        """Caller's most recent entry, with position and wait estimate while waiting."""
        entry = self.store.get_latest_entry(caller_id)
        if entry is None:
            return QueueStatusView(entry=None)
        if entry.status != QueueStatus.WAITING:
            return QueueStatusView(entry=entry)

        position = self.store.count_waiting_before(entry.created_at) + 1
        wait = max(MIN_ESTIMATED_WAIT, WAIT_PER_POSITION * position)
        return QueueStatusView(
            entry=entry,
            position=position,
            estimated_wait_seconds=int(wait.total_seconds()),
        )

    def list_active_entries(
        self,
        window: timedelta = DEFAULT_ACTIVE_WINDOW,
        limit: int = DEFAULT_ACTIVE_LIMIT,
    ) -> List[QueueEntry]:
        """Waiting entries becoming available within ``window`` and not yet over, oldest first."""
        now = self.clock()
        horizon = now + window
        active = [
            e for e in self.store.list_waiting_entries()
            if e.available_from <= horizon and e.available_to > now
        ]
        return active[:limit]

    def cleanup_expired_entries(self) -> int:
        """Expire waiting entries past their window. Idempotent."""
        now = self.clock()
        expired = self.store.expire_entries(now)
        if expired:
            logger.info(f"Expired {len(expired)} queue entries")
        return len(expired)
