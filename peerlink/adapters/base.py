"""Storage contract shared by the PostgreSQL and in-memory matching stores."""
from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional

from peerlink.services.entities import MatchAnalyticsRecord, QueueEntry


class MatchingStore(ABC):
    """
    Durable queue entries and analytics records.

    Every status transition is a conditional write that only applies to
    entries still in 'waiting'. Storage failures raise QueueStorageError.
    """

    # Queue entries

    @abstractmethod
    def insert_entry(self, entry: QueueEntry) -> QueueEntry:
        """Insert a waiting entry. Raises DuplicateQueueEntry if the user already has one."""

    @abstractmethod
    def get_entry(self, entry_id: str) -> Optional[QueueEntry]:
        ...

    @abstractmethod
    def get_waiting_entry(self, user_id: str) -> Optional[QueueEntry]:
        ...

    @abstractmethod
    def get_latest_entry(self, user_id: str) -> Optional[QueueEntry]:
        """Most recently created entry of the user, any status."""

    @abstractmethod
    def list_waiting_entries(self, limit: Optional[int] = None) -> List[QueueEntry]:
        """Waiting entries, oldest first."""

    @abstractmethod
    def count_waiting_before(self, created_at: datetime) -> int:
        ...

    @abstractmethod
    def cancel_entry(self, entry_id: str, now: datetime) -> bool:
        """waiting -> cancelled. False when the entry was no longer waiting."""

    @abstractmethod
    def expire_entries(self, now: datetime) -> List[str]:
        """waiting -> expired for every entry with available_to < now. Returns the ids."""

    @abstractmethod
    def commit_pair(
        self,
        entry_a: QueueEntry,
        entry_b: QueueEntry,
        match_id: str,
        now: datetime,
    ) -> None:
        """
        Atomically move both entries waiting -> matched, pointing at each other.

        Raises:
            CommitConflict: either entry was not waiting; nothing was written
        """

    # Analytics

    @abstractmethod
    def insert_analytics(self, records: List[MatchAnalyticsRecord]) -> None:
        """Insert records, skipping (match_id, user_id) pairs that already exist."""

    @abstractmethod
    def get_analytics(self, match_id: str, user_id: Optional[str] = None) -> List[MatchAnalyticsRecord]:
        ...

    @abstractmethod
    def update_analytics(self, record: MatchAnalyticsRecord) -> None:
        ...

    @abstractmethod
    def list_analytics(
        self,
        limit: Optional[int] = None,
        offset: int = 0,
        user_id: Optional[str] = None,
        since: Optional[datetime] = None,
    ) -> List[MatchAnalyticsRecord]:
        """Newest first."""

    @abstractmethod
    def health_check(self) -> bool:
        ...
