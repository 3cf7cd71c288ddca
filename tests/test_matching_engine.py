"""
Unit tests for the matching cycle engine: collection, sharding, greedy
selection, commit conflicts and concurrent cycles.
"""
import pytest
import sys
import os
import threading
from datetime import timedelta
from unittest.mock import Mock

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from conftest import NOW, FakeProfileReader, make_entry
from peerlink.adapters.memory_store import InMemoryMatchingStore
from peerlink.middleware.error_handling import (
    ErrorCode,
    QueueStorageError,
    UserDataNotFound,
    ValidationException,
)
from peerlink.services.compatibility_scorer import CompatibilityScorer, get_weights
from peerlink.services.entities import QueueConstraints, QueueStatus
from peerlink.services.matching_engine import MatchingEngine, build_match_id, shard_for

CYCLE_EPOCH_MS = int(NOW.timestamp() * 1000)


def minutes_ago(n):
    return NOW - timedelta(minutes=n)


@pytest.fixture
def engine(store, profile_reader, clock):
    return MatchingEngine(
        store, profile_reader, scorer=CompatibilityScorer(get_weights('v1')), clock=clock
    )


def queue(store, reader, user_id, age_minutes=10, **kwargs):
    reader.add(user_id)
    return store.insert_entry(make_entry(user_id, created_at=minutes_ago(age_minutes), **kwargs))


class TestHelpers:
    """Tests for shard assignment and match ids."""

    def test_shard_is_stable_and_in_range(self):
        for user_id in ("alice", "bob", "carol"):
            shard = shard_for(user_id, 4)
            assert 0 <= shard < 4
            assert shard_for(user_id, 4) == shard

    def test_single_shard(self):
        assert shard_for("anyone", 1) == 0

    def test_match_id_is_order_independent(self):
        assert build_match_id("bob", "alice", 123) == "match_alice_bob_123"
        assert build_match_id("alice", "bob", 123) == "match_alice_bob_123"


class TestRunMatchingCycle:
    """Tests for a single cycle against one store."""

    def test_mentor_mentee_scenario(self, engine, store, profile_reader):
        mentor = queue(store, profile_reader, "mentor-1", roles=["mentor"])
        mentee = queue(store, profile_reader, "mentee-1", roles=["mentee"], age_minutes=5)

        result = engine.run_matching_cycle(shard_count=1, min_score=0.6, max_matches=10)

        assert result.total_matches == 1
        detail = result.details[0]
        assert detail.score == pytest.approx(0.75)
        assert detail.match_id == f"match_mentee-1_mentor-1_{CYCLE_EPOCH_MS}"
        assert result.weights_version == 'v1'

        stored_a, stored_b = store.get_entry(mentor.id), store.get_entry(mentee.id)
        assert stored_a.status == stored_b.status == QueueStatus.MATCHED
        assert stored_a.matched_with == "mentee-1"
        assert stored_b.matched_with == "mentor-1"
        assert stored_a.match_id == stored_b.match_id == detail.match_id

    def test_high_threshold_leaves_pair_waiting(self, engine, store, profile_reader):
        mentor = queue(store, profile_reader, "mentor-1", roles=["mentor"])
        mentee = queue(store, profile_reader, "mentee-1", roles=["mentee"])

        result = engine.run_matching_cycle(shard_count=1, min_score=0.95)

        assert result.total_matches == 0
        assert store.get_entry(mentor.id).status == QueueStatus.WAITING
        assert store.get_entry(mentee.id).status == QueueStatus.WAITING

    def test_below_threshold_stays_waiting(self, engine, store, profile_reader):
        a = queue(store, profile_reader, "a", interests=["ai"], roles=["mentor"])
        queue(store, profile_reader, "b", interests=["cooking"], roles=["mentee"])

        result = engine.run_matching_cycle(shard_count=1, min_score=0.6)

        assert result.total_matches == 0
        assert result.pairs_scored == 1
        assert store.get_entry(a.id).status == QueueStatus.WAITING

    def test_excluded_pairs_are_not_scored(self, engine, store, profile_reader):
        queue(store, profile_reader, "a", roles=["mentor"])
        queue(store, profile_reader, "b", roles=["mentor"])

        result = engine.run_matching_cycle(shard_count=1)

        assert result.excluded_pairs == 1
        assert result.pairs_scored == 0
        assert result.total_matches == 0

    def test_each_user_matched_at_most_once(self, engine, store, profile_reader):
        for i in range(5):
            queue(store, profile_reader, f"peer-{i}", age_minutes=20 - i)

        result = engine.run_matching_cycle(shard_count=1, min_score=0.0, max_matches=10)

        users = [u for d in result.details for u in (d.user_a_id, d.user_b_id)]
        assert len(users) == len(set(users))
        assert result.total_matches == 2
        # Ties go to the oldest entries
        assert {result.details[0].user_a_id, result.details[0].user_b_id} == {"peer-0", "peer-1"}

    def test_max_matches_cap(self, engine, store, profile_reader):
        for i in range(6):
            queue(store, profile_reader, f"peer-{i}", age_minutes=20 - i)

        result = engine.run_matching_cycle(shard_count=1, max_matches=1)
        assert result.total_matches == 1

        result = engine.run_matching_cycle(shard_count=1, max_matches=0)
        assert result.total_matches == 0

    def test_cap_spans_shards(self, engine, store, profile_reader):
        for i in range(16):
            queue(store, profile_reader, f"peer-{i}", age_minutes=30 - i)

        result = engine.run_matching_cycle(shard_count=4, max_matches=3)
        assert result.total_matches == 3
        assert result.processed_shards == 4

    def test_pairs_never_cross_shards(self, engine, store, profile_reader):
        for i in range(12):
            queue(store, profile_reader, f"peer-{i}", age_minutes=30 - i)

        result = engine.run_matching_cycle(shard_count=3, max_matches=50)

        for detail in result.details:
            assert shard_for(detail.user_a_id, 3) == shard_for(detail.user_b_id, 3) == detail.shard

    def test_entries_outside_availability_are_ignored(self, engine, store, profile_reader):
        queue(store, profile_reader, "now")
        queue(
            store, profile_reader, "tomorrow",
            available_from=NOW + timedelta(days=1), available_to=NOW + timedelta(days=1, hours=1)
        )

        result = engine.run_matching_cycle(shard_count=1)

        assert result.candidates == 1
        assert result.total_matches == 0

    def test_missing_profile_skips_pair(self, engine, store, profile_reader):
        queue(store, profile_reader, "known")
        store.insert_entry(make_entry("ghost", created_at=minutes_ago(5)))

        result = engine.run_matching_cycle(shard_count=1)

        assert result.skipped_pairs == 1
        assert result.total_matches == 0

    def test_profile_lookup_failure_only_affects_that_user(self, store, clock):
        reader = FakeProfileReader(failing={"broken"})
        for user_id in ("a", "b"):
            reader.add(user_id)
            store.insert_entry(make_entry(user_id))
        store.insert_entry(make_entry("broken"))
        engine = MatchingEngine(store, reader, clock=clock)

        result = engine.run_matching_cycle(shard_count=1)

        assert result.total_matches == 1
        assert result.skipped_pairs == 2

    def test_profiles_are_read_once_per_cycle(self, engine, store, profile_reader):
        for i in range(4):
            queue(store, profile_reader, f"peer-{i}")

        engine.run_matching_cycle(shard_count=1, min_score=1.0)

        assert sorted(profile_reader.calls) == ["peer-0", "peer-1", "peer-2", "peer-3"]

    def test_same_snapshot_gives_same_result(self, profile_reader, clock):
        def run():
            store = InMemoryMatchingStore()
            for i in range(10):
                profile_reader.add(f"peer-{i}")
                entry = make_entry(f"peer-{i}", created_at=minutes_ago(30 - i))
                entry.id = f"entry-{i}"
                store.insert_entry(entry)
            engine = MatchingEngine(store, profile_reader, clock=clock)
            return [d.match_id for d in engine.run_matching_cycle(shard_count=2).details]

        assert run() == run()

    def test_threaded_scoring_matches_serial(self, profile_reader, clock):
        def run(workers):
            store = InMemoryMatchingStore()
            for i in range(12):
                profile_reader.add(f"peer-{i}")
                entry = make_entry(f"peer-{i}", created_at=minutes_ago(30 - i))
                entry.id = f"entry-{i}"
                store.insert_entry(entry)
            engine = MatchingEngine(store, profile_reader, clock=clock, shard_workers=workers)
            return [d.match_id for d in engine.run_matching_cycle(shard_count=4).details]

        assert run(1) == run(4)

    @pytest.mark.parametrize("params", [
        {"shard_count": 0},
        {"min_score": 1.5},
        {"max_matches": -1},
    ])
    def test_invalid_parameters(self, engine, params):
        with pytest.raises(ValidationException) as exc_info:
            engine.run_matching_cycle(**params)
        assert exc_info.value.code == ErrorCode.INVALID_CYCLE_PARAMETERS

    def test_unreadable_queue_aborts_cycle(self, profile_reader, clock):
        store = Mock()
        store.list_waiting_entries.side_effect = RuntimeError("connection refused")
        engine = MatchingEngine(store, profile_reader, clock=clock)

        with pytest.raises(QueueStorageError):
            engine.run_matching_cycle()
        store.commit_pair.assert_not_called()

    def test_empty_queue(self, engine):
        result = engine.run_matching_cycle()
        assert result.total_matches == 0
        assert result.candidates == 0
        assert result.average_score == 0.0


class TestCommitConflicts:
    """Tests for pairs whose entries changed after collection."""

    def test_stale_entry_releases_partner(self, engine, store, profile_reader):
        mentor = queue(store, profile_reader, "mentor", roles=["mentor"], age_minutes=30)
        mentee_old = queue(store, profile_reader, "mentee-old", roles=["mentee"], age_minutes=20)
        mentee_new = queue(store, profile_reader, "mentee-new", roles=["mentee"], age_minutes=10)

        snapshot = store.list_waiting_entries()
        store.cancel_entry(mentee_old.id, NOW)
        store.list_waiting_entries = lambda limit=None: snapshot

        result = engine.run_matching_cycle(shard_count=1)

        assert result.conflicts == 1
        assert result.total_matches == 1
        assert {result.details[0].user_a_id, result.details[0].user_b_id} == {"mentor", "mentee-new"}
        assert store.get_entry(mentor.id).matched_with == "mentee-new"
        assert store.get_entry(mentee_old.id).status == QueueStatus.CANCELLED
        assert store.get_entry(mentee_new.id).status == QueueStatus.MATCHED

    def test_storage_error_on_commit_is_counted(self, profile_reader, clock):
        entries = []
        for user_id in ("a", "b"):
            profile_reader.add(user_id)
            entries.append(make_entry(user_id))
        store = Mock()
        store.list_waiting_entries.return_value = entries
        store.commit_pair.side_effect = QueueStorageError("commit pair failed")
        engine = MatchingEngine(store, profile_reader, clock=clock)

        result = engine.run_matching_cycle(shard_count=1)

        assert result.commit_errors == 1
        assert result.total_matches == 0

    def test_concurrent_cycles_never_double_match(self, store, profile_reader, clock):
        entries = [queue(store, profile_reader, f"peer-{i}", age_minutes=40 - i) for i in range(20)]

        results = []
        barrier = threading.Barrier(3)

        def run():
            engine = MatchingEngine(store, profile_reader, clock=clock)
            barrier.wait()
            results.append(engine.run_matching_cycle(shard_count=2, max_matches=50))

        threads = [threading.Thread(target=run) for _ in range(3)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        matched_users = [u for r in results for d in r.details for u in (d.user_a_id, d.user_b_id)]
        assert len(matched_users) == len(set(matched_users))
        assert len(results) == 3
        stored = [store.get_entry(e.id) for e in entries]
        assert sum(1 for e in stored if e.status == QueueStatus.MATCHED) == len(matched_users)


class TestScoreUsers:
    """Tests for on-demand pair scoring."""

    def test_scores_with_active_weights(self, engine, profile_reader):
        profile_reader.add("a")
        profile_reader.add("b")
        result = engine.score_users(
            "a", "b",
            QueueConstraints.build(["ai"], ["mentor"]),
            QueueConstraints.build(["ai"], ["mentee"]),
        )
        assert result.score == pytest.approx(0.75)

    def test_override_scorer(self, engine, profile_reader):
        profile_reader.add("a")
        profile_reader.add("b")
        result = engine.score_users("a", "b", scorer=CompatibilityScorer(get_weights('v0')))
        assert result.weights_version == 'v0'

    def test_unknown_user(self, engine, profile_reader):
        profile_reader.add("a")
        with pytest.raises(UserDataNotFound) as exc_info:
            engine.score_users("a", "ghost")
        assert exc_info.value.user_id == "ghost"
