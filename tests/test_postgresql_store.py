"""
Unit tests for the PostgreSQL store with a mocked psycopg2 connection.
"""
import pytest
import sys
import os
from unittest.mock import MagicMock, patch

import psycopg2
import psycopg2.errors

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from conftest import NOW, make_entry
from peerlink.adapters.postgresql import PostgreSQLMatchingStore
from peerlink.middleware.error_handling import CommitConflict, DuplicateQueueEntry, QueueStorageError
from peerlink.services.entities import QueueStatus


def entry_row(entry, **overrides):
    row = {
        "id": entry.id,
        "user_id": entry.user_id,
        "available_from": entry.available_from,
        "available_to": entry.available_to,
        "constraints": entry.constraints.to_dict(),
        "status": entry.status.value,
        "matched_with": entry.matched_with,
        "match_id": entry.match_id,
        "created_at": entry.created_at,
        "updated_at": entry.updated_at,
    }
    row.update(overrides)
    return row


@pytest.fixture
def connection():
    conn = MagicMock()
    cursor = MagicMock()
    conn.cursor.return_value = cursor
    with patch('peerlink.adapters.postgresql.psycopg2.connect', return_value=conn):
        yield conn, cursor


@pytest.fixture
def pg_store():
    return PostgreSQLMatchingStore("postgresql://test@localhost/test")


class TestPostgreSQLMatchingStore:
    """Tests for queue transitions and error mapping."""

    def test_requires_database_url(self, monkeypatch):
        monkeypatch.delenv('DATABASE_URL', raising=False)
        with pytest.raises(ValueError):
            PostgreSQLMatchingStore()

    def test_insert_entry(self, pg_store, connection):
        conn, cursor = connection
        entry = make_entry("alice", interests=["ai"], roles=["mentor"])
        cursor.fetchone.return_value = entry_row(entry)

        stored = pg_store.insert_entry(entry)

        assert stored.id == entry.id
        assert stored.constraints.roles == frozenset({"mentor"})
        conn.commit.assert_called_once()
        conn.close.assert_called_once()

    def test_insert_duplicate_waiting_entry(self, pg_store, connection):
        conn, cursor = connection
        entry = make_entry("alice")
        existing = make_entry("alice")
        cursor.execute.side_effect = [psycopg2.errors.UniqueViolation("duplicate key"), None]
        cursor.fetchone.return_value = entry_row(existing)

        with pytest.raises(DuplicateQueueEntry) as exc_info:
            pg_store.insert_entry(entry)
        assert exc_info.value.details["queue_id"] == existing.id
        conn.rollback.assert_called()

    def test_database_error_maps_to_storage_error(self, pg_store, connection):
        conn, cursor = connection
        cursor.execute.side_effect = psycopg2.OperationalError("server closed the connection")

        with pytest.raises(QueueStorageError) as exc_info:
            pg_store.list_waiting_entries()
        assert exc_info.value.status_code == 503
        conn.rollback.assert_called_once()
        conn.close.assert_called_once()

    def test_cancel_entry_is_conditional(self, pg_store, connection):
        conn, cursor = connection
        cursor.rowcount = 0

        assert pg_store.cancel_entry("entry-1", NOW) is False
        sql, params = cursor.execute.call_args[0]
        assert "status = %s" in sql
        assert params[-1] == QueueStatus.WAITING.value

    def test_latest_entry_prefers_waiting_on_timestamp_tie(self, pg_store, connection):
        conn, cursor = connection
        entry = make_entry("alice")
        cursor.fetchone.return_value = entry_row(entry)

        assert pg_store.get_latest_entry("alice").id == entry.id
        sql, params = cursor.execute.call_args[0]
        assert "ORDER BY created_at DESC, (status = %s) DESC, updated_at DESC" in sql
        assert params == ("alice", QueueStatus.WAITING.value)

    def test_expire_entries_returns_ids(self, pg_store, connection):
        conn, cursor = connection
        cursor.fetchall.return_value = [{"id": "e1"}, {"id": "e2"}]

        assert pg_store.expire_entries(NOW) == ["e1", "e2"]
        conn.commit.assert_called_once()
        sql, params = cursor.execute.call_args[0]
        assert "status = %s" in sql
        assert params[0] == QueueStatus.EXPIRED.value
        assert params[2] == QueueStatus.WAITING.value

    def test_commit_pair_success(self, pg_store, connection):
        conn, cursor = connection
        cursor.rowcount = 2
        a, b = make_entry("alice"), make_entry("bob")

        pg_store.commit_pair(a, b, "match_alice_bob_1", NOW)

        conn.commit.assert_called_once()
        conn.rollback.assert_not_called()

    def test_commit_pair_conflict_rolls_back(self, pg_store, connection):
        conn, cursor = connection
        cursor.rowcount = 1
        a, b = make_entry("alice"), make_entry("bob")
        cursor.fetchall.return_value = [{"id": a.id}]

        with pytest.raises(CommitConflict) as exc_info:
            pg_store.commit_pair(a, b, "match_alice_bob_1", NOW)

        assert exc_info.value.stale_entry_ids == [b.id]
        conn.commit.assert_not_called()
        assert conn.rollback.call_count == 2

    def test_commit_pair_database_error(self, pg_store, connection):
        conn, cursor = connection
        cursor.execute.side_effect = psycopg2.OperationalError("timeout")

        with pytest.raises(QueueStorageError):
            pg_store.commit_pair(make_entry("alice"), make_entry("bob"), "m", NOW)

    def test_list_analytics_filters(self, pg_store, connection):
        conn, cursor = connection
        cursor.fetchall.return_value = []

        pg_store.list_analytics(limit=5, offset=10, user_id="alice", since=NOW)

        sql, params = cursor.execute.call_args[0]
        assert "user_id = %s AND created_at >= %s" in sql
        assert params == ("alice", NOW, 5, 10)

    def test_health_check(self, pg_store, connection):
        conn, cursor = connection
        cursor.fetchone.return_value = (1,)
        assert pg_store.health_check() is True

    def test_health_check_failure(self, pg_store):
        with patch('peerlink.adapters.postgresql.psycopg2.connect', side_effect=psycopg2.OperationalError("down")):
            assert pg_store.health_check() is False
