"""In-process matching store for local development and tests."""
import logging
import threading
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from peerlink.adapters.base import MatchingStore
from peerlink.middleware.error_handling import CommitConflict, DuplicateQueueEntry
from peerlink.services.entities import MatchAnalyticsRecord, QueueEntry, QueueStatus

logger = logging.getLogger(__name__)


class InMemoryMatchingStore(MatchingStore):
    """
    Dict-backed store. A single lock serializes every write, which gives
    the same compare-and-swap guarantees as the conditional UPDATEs of the
    PostgreSQL store. Entries are copied on the way in and out.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._entries: Dict[str, QueueEntry] = {}
        self._analytics: Dict[Tuple[str, str], MatchAnalyticsRecord] = {}

    def insert_entry(self, entry: QueueEntry) -> QueueEntry:
        with self._lock:
            existing = self._waiting_for(entry.user_id)
            if existing:
                raise DuplicateQueueEntry(entry.user_id, existing.id)
            self._entries[entry.id] = replace(entry)
            return replace(entry)

    def _waiting_for(self, user_id: str) -> Optional[QueueEntry]:
        for entry in self._entries.values():
            if entry.user_id == user_id and entry.status == QueueStatus.WAITING:
                return entry
        return None

    def get_entry(self, entry_id: str) -> Optional[QueueEntry]:
        with self._lock:
            entry = self._entries.get(entry_id)
            return replace(entry) if entry else None

    def get_waiting_entry(self, user_id: str) -> Optional[QueueEntry]:
        with self._lock:
            entry = self._waiting_for(user_id)
            return replace(entry) if entry else None

    def get_latest_entry(self, user_id: str) -> Optional[QueueEntry]:
        with self._lock:
            entries = [e for e in self._entries.values() if e.user_id == user_id]
            if not entries:
                return None
            # Same created_at: the waiting entry wins, then the latest update
            return replace(max(entries, key=lambda e: (e.created_at, e.is_waiting, e.updated_at, e.id)))

    def list_waiting_entries(self, limit: Optional[int] = None) -> List[QueueEntry]:
        with self._lock:
            waiting = sorted(
                (e for e in self._entries.values() if e.status == QueueStatus.WAITING),
                key=lambda e: (e.created_at, e.id)
            )
            if limit is not None:
                waiting = waiting[:limit]
            return [replace(e) for e in waiting]

    def count_waiting_before(self, created_at: datetime) -> int:
        with self._lock:
            return sum(
                1 for e in self._entries.values()
                if e.status == QueueStatus.WAITING and e.created_at < created_at
            )

    def cancel_entry(self, entry_id: str, now: datetime) -> bool:
        with self._lock:
            entry = self._entries.get(entry_id)
            if not entry or entry.status != QueueStatus.WAITING:
                return False
            entry.status = QueueStatus.CANCELLED
            entry.updated_at = now
            return True

    def expire_entries(self, now: datetime) -> List[str]:
        with self._lock:
            expired = []
            for entry in self._entries.values():
                if entry.status == QueueStatus.WAITING and entry.available_to < now:
                    entry.status = QueueStatus.EXPIRED
                    entry.updated_at = now
                    expired.append(entry.id)
            return expired

    def commit_pair(self, entry_a: QueueEntry, entry_b: QueueEntry, match_id: str, now: datetime) -> None:
        with self._lock:
            current = [self._entries.get(entry_a.id), self._entries.get(entry_b.id)]
            stale = [
                expected.id for expected, stored in zip((entry_a, entry_b), current)
                if stored is None or stored.status != QueueStatus.WAITING
            ]
            if stale:
                raise CommitConflict([entry_a.id, entry_b.id], stale)

            stored_a, stored_b = current
            for stored, partner in ((stored_a, stored_b), (stored_b, stored_a)):
                stored.status = QueueStatus.MATCHED
                stored.matched_with = partner.user_id
                stored.match_id = match_id
                stored.updated_at = now

    def insert_analytics(self, records: List[MatchAnalyticsRecord]) -> None:
        with self._lock:
            for record in records:
                self._analytics.setdefault((record.match_id, record.user_id), replace(record))

    def get_analytics(self, match_id: str, user_id: Optional[str] = None) -> List[MatchAnalyticsRecord]:
        with self._lock:
            return [
                replace(r) for (m, u), r in self._analytics.items()
                if m == match_id and (user_id is None or u == user_id)
            ]

    def update_analytics(self, record: MatchAnalyticsRecord) -> None:
        with self._lock:
            self._analytics[(record.match_id, record.user_id)] = replace(record)

    def list_analytics(
        self,
        limit: Optional[int] = None,
        offset: int = 0,
        user_id: Optional[str] = None,
        since: Optional[datetime] = None,
    ) -> List[MatchAnalyticsRecord]:
        with self._lock:
            records = [
                r for r in self._analytics.values()
                if (user_id is None or r.user_id == user_id) and (since is None or r.created_at >= since)
            ]
        records.sort(key=lambda r: (r.created_at, r.id), reverse=True)
        end = None if limit is None else offset + limit
        return [replace(r) for r in records[offset:end]]

    def health_check(self) -> bool:
        return True
