"""PostgreSQL store for the matching queue and match analytics."""
import logging
import os
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional

import psycopg2
import psycopg2.errors
from psycopg2.extras import RealDictCursor, Json
from dotenv import load_dotenv

from peerlink.adapters.base import MatchingStore
from peerlink.middleware.error_handling import CommitConflict, DuplicateQueueEntry, QueueStorageError
from peerlink.services.entities import (
    MatchAnalyticsRecord,
    MatchFeedback,
    MatchOutcome,
    QueueConstraints,
    QueueEntry,
    QueueStatus,
)

load_dotenv()

logger = logging.getLogger(__name__)

QUEUE_COLUMNS = (
    "id, user_id, available_from, available_to, constraints, status, "
    "matched_with, match_id, created_at, updated_at"
)
ANALYTICS_COLUMNS = (
    "id, match_id, user_id, outcome, score, features, weights, "
    "feedback_rating, feedback_comments, created_at, updated_at"
)


def _row_to_entry(row: Dict[str, Any]) -> QueueEntry:
    return QueueEntry(
        id=str(row["id"]),
        user_id=row["user_id"],
        available_from=row["available_from"],
        available_to=row["available_to"],
        constraints=QueueConstraints.from_dict(row["constraints"]),
        status=QueueStatus(row["status"]),
        matched_with=row["matched_with"],
        match_id=row["match_id"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_record(row: Dict[str, Any]) -> MatchAnalyticsRecord:
    feedback = None
    if row["feedback_rating"] is not None or row["feedback_comments"] is not None:
        feedback = MatchFeedback(rating=row["feedback_rating"], comments=row["feedback_comments"])
    return MatchAnalyticsRecord(
        id=str(row["id"]),
        match_id=row["match_id"],
        user_id=row["user_id"],
        outcome=MatchOutcome(row["outcome"]),
        score=float(row["score"]),
        features=dict(row["features"] or {}),
        weights=dict(row["weights"] or {}),
        feedback=feedback,
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class PostgreSQLMatchingStore(MatchingStore):
    """
    Queue and analytics tables in PostgreSQL.

    Status transitions are single conditional UPDATEs (``... AND status =
    'waiting'``), so concurrent writers serialize on the row locks and the
    loser sees a short rowcount instead of overwriting. The partial unique
    index ``uq_matching_queue_waiting_user`` enforces one waiting entry per
    user.
    """

    def __init__(self, database_url: Optional[str] = None):
        self.database_url = database_url or os.getenv('DATABASE_URL')
        if not self.database_url:
            raise ValueError("DATABASE_URL environment variable is required")

    def get_connection(self):
        """Caller is responsible for closing."""
        return psycopg2.connect(self.database_url)

    @contextmanager
    def _transaction(self, operation: str):
        """Yields a RealDictCursor; commits on success, rolls back and closes always."""
        conn = None
        cursor = None
        try:
            conn = self.get_connection()
            cursor = conn.cursor(cursor_factory=RealDictCursor)
            yield cursor
            conn.commit()
        except psycopg2.Error as e:
            if conn:
                conn.rollback()
            logger.error(f"Database error during {operation}: {str(e)}")
            raise QueueStorageError(f"{operation} failed", original_error=e)
        except Exception:
            if conn:
                conn.rollback()
            raise
        finally:
            if cursor:
                cursor.close()
            if conn:
                conn.close()

    # Queue entries

    def insert_entry(self, entry: QueueEntry) -> QueueEntry:
        conn = None
        cursor = None
        try:
            conn = self.get_connection()
            cursor = conn.cursor(cursor_factory=RealDictCursor)
            cursor.execute(
                f"""
                INSERT INTO matching_queue ({QUEUE_COLUMNS})
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                RETURNING {QUEUE_COLUMNS}
                """,
                (
                    entry.id, entry.user_id, entry.available_from, entry.available_to,
                    Json(entry.constraints.to_dict()), entry.status.value,
                    entry.matched_with, entry.match_id, entry.created_at, entry.updated_at,
                )
            )
            row = cursor.fetchone()
            conn.commit()
            logger.info(f"Queue entry {entry.id} created for user {entry.user_id}")
            return _row_to_entry(row)

        except psycopg2.errors.UniqueViolation:
            conn.rollback()
            existing = self.get_waiting_entry(entry.user_id)
            raise DuplicateQueueEntry(entry.user_id, existing.id if existing else None)
        except psycopg2.Error as e:
            if conn:
                conn.rollback()
            logger.error(f"Error inserting queue entry for user {entry.user_id}: {str(e)}")
            raise QueueStorageError("insert queue entry failed", original_error=e)
        finally:
            if cursor:
                cursor.close()
            if conn:
                conn.close()

    def _fetch_entry(self, operation: str, where: str, params: tuple) -> Optional[QueueEntry]:
        with self._transaction(operation) as cursor:
            cursor.execute(
                f"SELECT {QUEUE_COLUMNS} FROM matching_queue WHERE {where} "
                f"ORDER BY created_at DESC, (status = %s) DESC, updated_at DESC, id DESC LIMIT 1",
                params + (QueueStatus.WAITING.value,)
            )
            row = cursor.fetchone()
        return _row_to_entry(row) if row else None

    def get_entry(self, entry_id: str) -> Optional[QueueEntry]:
        return self._fetch_entry("get queue entry", "id = %s", (entry_id,))

    def get_waiting_entry(self, user_id: str) -> Optional[QueueEntry]:
        return self._fetch_entry(
            "get waiting entry", "user_id = %s AND status = %s", (user_id, QueueStatus.WAITING.value)
        )

    def get_latest_entry(self, user_id: str) -> Optional[QueueEntry]:
        return self._fetch_entry("get latest entry", "user_id = %s", (user_id,))

    def list_waiting_entries(self, limit: Optional[int] = None) -> List[QueueEntry]:
        with self._transaction("list waiting entries") as cursor:
            cursor.execute(
                f"""
                SELECT {QUEUE_COLUMNS} FROM matching_queue
                WHERE status = %s
                ORDER BY created_at ASC, id ASC
                LIMIT %s
                """,
                (QueueStatus.WAITING.value, limit)
            )
            rows = cursor.fetchall()
        return [_row_to_entry(r) for r in rows]

    def count_waiting_before(self, created_at: datetime) -> int:
        with self._transaction("count waiting entries") as cursor:
            cursor.execute(
                "SELECT COUNT(*) AS n FROM matching_queue WHERE status = %s AND created_at < %s",
                (QueueStatus.WAITING.value, created_at)
            )
            row = cursor.fetchone()
        return int(row["n"])

    def cancel_entry(self, entry_id: str, now: datetime) -> bool:
        with self._transaction("cancel queue entry") as cursor:
            cursor.execute(
                """
                UPDATE matching_queue
                SET status = %s, updated_at = %s
                WHERE id = %s AND status = %s
                """,
                (QueueStatus.CANCELLED.value, now, entry_id, QueueStatus.WAITING.value)
            )
            return cursor.rowcount == 1

    def expire_entries(self, now: datetime) -> List[str]:
        with self._transaction("expire queue entries") as cursor:
            cursor.execute(
                """
                UPDATE matching_queue
                SET status = %s, updated_at = %s
                WHERE status = %s AND available_to < %s
                RETURNING id
                """,
                (QueueStatus.EXPIRED.value, now, QueueStatus.WAITING.value, now)
            )
            rows = cursor.fetchall()
        return [str(r["id"]) for r in rows]

    def commit_pair(self, entry_a: QueueEntry, entry_b: QueueEntry, match_id: str, now: datetime) -> None:
        conn = None
        cursor = None
        try:
            conn = self.get_connection()
            cursor = conn.cursor(cursor_factory=RealDictCursor)
            cursor.execute(
                """
                UPDATE matching_queue
                SET status = %s,
                    matched_with = CASE WHEN id = %s THEN %s ELSE %s END,
                    match_id = %s,
                    updated_at = %s
                WHERE id IN (%s, %s) AND status = %s
                """,
                (
                    QueueStatus.MATCHED.value,
                    entry_a.id, entry_b.user_id, entry_a.user_id,
                    match_id, now,
                    entry_a.id, entry_b.id, QueueStatus.WAITING.value,
                )
            )
            if cursor.rowcount == 2:
                conn.commit()
                return

            # Partial update: undo it and report which side moved on
            conn.rollback()
            cursor.execute(
                "SELECT id FROM matching_queue WHERE id IN (%s, %s) AND status = %s",
                (entry_a.id, entry_b.id, QueueStatus.WAITING.value)
            )
            still_waiting = {str(r["id"]) for r in cursor.fetchall()}
            conn.rollback()
            stale = [e.id for e in (entry_a, entry_b) if e.id not in still_waiting]
            raise CommitConflict([entry_a.id, entry_b.id], stale)

        except psycopg2.Error as e:
            if conn:
                conn.rollback()
            logger.error(f"Error committing pair {entry_a.id}/{entry_b.id}: {str(e)}")
            raise QueueStorageError("commit pair failed", original_error=e)
        finally:
            if cursor:
                cursor.close()
            if conn:
                conn.close()

    # Analytics

    def insert_analytics(self, records: List[MatchAnalyticsRecord]) -> None:
        if not records:
            return
        with self._transaction("insert match analytics") as cursor:
            for record in records:
                cursor.execute(
                    f"""
                    INSERT INTO match_analytics ({ANALYTICS_COLUMNS})
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    ON CONFLICT (match_id, user_id) DO NOTHING
                    """,
                    (
                        record.id, record.match_id, record.user_id, record.outcome.value,
                        record.score, Json(record.features), Json(record.weights),
                        record.feedback.rating if record.feedback else None,
                        record.feedback.comments if record.feedback else None,
                        record.created_at, record.updated_at,
                    )
                )

    def get_analytics(self, match_id: str, user_id: Optional[str] = None) -> List[MatchAnalyticsRecord]:
        query = f"SELECT {ANALYTICS_COLUMNS} FROM match_analytics WHERE match_id = %s"
        params: list = [match_id]
        if user_id is not None:
            query += " AND user_id = %s"
            params.append(user_id)

        with self._transaction("get match analytics") as cursor:
            cursor.execute(query, tuple(params))
            rows = cursor.fetchall()
        return [_row_to_record(r) for r in rows]

    def update_analytics(self, record: MatchAnalyticsRecord) -> None:
        with self._transaction("update match analytics") as cursor:
            cursor.execute(
                """
                UPDATE match_analytics
                SET outcome = %s, feedback_rating = %s, feedback_comments = %s, updated_at = %s
                WHERE match_id = %s AND user_id = %s
                """,
                (
                    record.outcome.value,
                    record.feedback.rating if record.feedback else None,
                    record.feedback.comments if record.feedback else None,
                    record.updated_at, record.match_id, record.user_id,
                )
            )

    def list_analytics(
        self,
        limit: Optional[int] = None,
        offset: int = 0,
        user_id: Optional[str] = None,
        since: Optional[datetime] = None,
    ) -> List[MatchAnalyticsRecord]:
        clauses = []
        params: list = []
        if user_id is not None:
            clauses.append("user_id = %s")
            params.append(user_id)
        if since is not None:
            clauses.append("created_at >= %s")
            params.append(since)

        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        query = (
            f"SELECT {ANALYTICS_COLUMNS} FROM match_analytics {where} "
            f"ORDER BY created_at DESC, id DESC LIMIT %s OFFSET %s"
        )
        params.extend([limit, offset])

        with self._transaction("list match analytics") as cursor:
            cursor.execute(query, tuple(params))
            rows = cursor.fetchall()
        return [_row_to_record(r) for r in rows]

    def health_check(self) -> bool:
        """Check if PostgreSQL is accessible."""
        conn = None
        cursor = None
        try:
            conn = self.get_connection()
            cursor = conn.cursor()
            cursor.execute("SELECT 1")
            result = cursor.fetchone()
            return result[0] == 1

        except Exception as e:
            logger.error(f"Database health check failed: {str(e)}")
            return False
        finally:
            if cursor:
                cursor.close()
            if conn:
                conn.close()
