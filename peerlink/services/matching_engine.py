"""
Matching Cycle Engine.

One cycle pairs up waiting queue entries:

1. Collect: waiting entries whose availability window contains now
2. Shard: partition by a stable hash of user_id
3. Score: every unordered pair within a shard, minus excluded pairs
4. Select: greedy by score (>= min_score), each user at most once per cycle,
   capped at max_matches across all shards
5. Commit: conditional waiting -> matched per pair; a conflict skips that
   pair only and the non-stale user stays available for later pairs

Profile lookups are memoized for the lifetime of one cycle. Scoring may run
shards on a thread pool; selection and commit always run serially in shard
order so the outcome is reproducible for a given snapshot.
"""
import hashlib
import logging
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Protocol, Set

from peerlink.adapters.base import MatchingStore
from peerlink.middleware.error_handling import (
    CommitConflict,
    ErrorCode,
    QueueStorageError,
    UserDataNotFound,
    ValidationException,
)
from peerlink.services.compatibility_scorer import CompatibilityScorer, ScoringWeights
from peerlink.services.entities import (
    CompatibilityResult,
    QueueConstraints,
    QueueEntry,
    UserScoringData,
    utcnow,
)
from peerlink.utils.logging_config import LogContext, get_log_context

logger = logging.getLogger(__name__)

DEFAULT_SHARD_COUNT = 4
DEFAULT_MIN_SCORE = 0.6
DEFAULT_MAX_MATCHES = 50


class ScoringDataReader(Protocol):
    def get_scoring_data(self, user_id: str) -> Optional[UserScoringData]:
        ...


@dataclass
class CandidatePair:
    entry_a: QueueEntry
    entry_b: QueueEntry
    result: CompatibilityResult
    shard: int

    @property
    def sort_key(self):
        """Score descending, then the older queue entries first."""
        first, second = sorted((self.entry_a, self.entry_b), key=lambda e: (e.created_at, e.id))
        return (-self.result.score, first.created_at, second.created_at, first.id, second.id)


@dataclass
class ShardResult:
    shard: int
    candidates: int = 0
    pairs_scored: int = 0
    excluded_pairs: int = 0
    skipped_pairs: int = 0
    eligible: List[CandidatePair] = field(default_factory=list)


@dataclass
class MatchDetail:
    match_id: str
    user_a_id: str
    user_b_id: str
    queue_entry_a_id: str
    queue_entry_b_id: str
    score: float
    features: Dict[str, float]
    explanation: List[str]
    shard: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "match_id": self.match_id,
            "user_a_id": self.user_a_id,
            "user_b_id": self.user_b_id,
            "queue_entry_a_id": self.queue_entry_a_id,
            "queue_entry_b_id": self.queue_entry_b_id,
            "score": self.score,
            "features": dict(self.features),
            "explanation": list(self.explanation),
            "shard": self.shard,
        }


@dataclass
class CycleResult:
    cycle_id: str
    total_matches: int
    details: List[MatchDetail]
    weights: Dict[str, Any]
    processed_shards: int = 0
    candidates: int = 0
    pairs_scored: int = 0
    excluded_pairs: int = 0
    skipped_pairs: int = 0
    conflicts: int = 0
    commit_errors: int = 0
    average_score: float = 0.0
    processing_time_ms: int = 0

    @property
    def weights_version(self) -> str:
        return self.weights.get("version", "")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cycle_id": self.cycle_id,
            "total_matches": self.total_matches,
            "details": [d.to_dict() for d in self.details],
            "processed_shards": self.processed_shards,
            "candidates": self.candidates,
            "pairs_scored": self.pairs_scored,
            "excluded_pairs": self.excluded_pairs,
            "skipped_pairs": self.skipped_pairs,
            "conflicts": self.conflicts,
            "commit_errors": self.commit_errors,
            "average_score": self.average_score,
            "processing_time_ms": self.processing_time_ms,
            "weights_version": self.weights_version,
            "weights": self.weights,
        }


def shard_for(user_id: str, shard_count: int) -> int:
    """Stable across processes and runs, unlike hash()."""
    digest = hashlib.sha256(user_id.encode("utf-8")).hexdigest()
    return int(digest, 16) % shard_count


def build_match_id(user_a_id: str, user_b_id: str, cycle_epoch_ms: int) -> str:
    first, second = sorted((user_a_id, user_b_id))
    return f"match_{first}_{second}_{cycle_epoch_ms}"


class _ProfileCache:
    """Per-cycle memo of scoring data; failed lookups are remembered as None."""

    def __init__(self, reader: ScoringDataReader):
        self.reader = reader
        self._data: Dict[str, Optional[UserScoringData]] = {}
        self.lookups = 0

    def get(self, user_id: str) -> Optional[UserScoringData]:
        if user_id in self._data:
            return self._data[user_id]

        self.lookups += 1
        try:
            data = self.reader.get_scoring_data(user_id)
        except Exception as e:
            logger.warning(f"[CYCLE] Profile lookup failed for user {user_id}: {str(e)}")
            data = None
        if data is None:
            logger.warning(f"[CYCLE] No scoring data for user {user_id}")
        self._data[user_id] = data
        return data


class MatchingEngine:
    """Runs matching cycles against one store and profile reader."""

    def __init__(
        self,
        store: MatchingStore,
        profile_reader: ScoringDataReader,
        scorer: Optional[CompatibilityScorer] = None,
        clock: Callable[[], datetime] = utcnow,
        shard_workers: int = 1,
    ):
        self.store = store
        self.profile_reader = profile_reader
        self.scorer = scorer or CompatibilityScorer()
        self.clock = clock
        self.shard_workers = max(1, shard_workers)

    @property
    def weights(self) -> ScoringWeights:
        return self.scorer.weights

    @staticmethod
    def _validate_parameters(shard_count: int, min_score: float, max_matches: int) -> None:
        problems = {}
        if isinstance(shard_count, bool) or not isinstance(shard_count, int) or shard_count < 1:
            problems["shard_count"] = "must be an integer >= 1"
        if not 0.0 <= float(min_score) <= 1.0:
            problems["min_score"] = "must be between 0 and 1"
        if isinstance(max_matches, bool) or not isinstance(max_matches, int) or max_matches < 0:
            problems["max_matches"] = "must be an integer >= 0"
        if problems:
            raise ValidationException(
                "Invalid matching cycle parameters",
                details=problems,
                code=ErrorCode.INVALID_CYCLE_PARAMETERS
            )

    def _collect(self, now: datetime) -> List[QueueEntry]:
        try:
            waiting = self.store.list_waiting_entries()
        except QueueStorageError:
            raise
        except Exception as e:
            raise QueueStorageError("could not read the matching queue", original_error=e)

        by_user: Dict[str, QueueEntry] = {}
        for entry in waiting:
            if not entry.is_waiting or not entry.is_available_at(now):
                continue
            # Keep the oldest if the store ever returns two for one user
            current = by_user.get(entry.user_id)
            if current is None or (entry.created_at, entry.id) < (current.created_at, current.id):
                by_user[entry.user_id] = entry
        return sorted(by_user.values(), key=lambda e: (e.created_at, e.id))

    @staticmethod
    def _shard(entries: List[QueueEntry], shard_count: int) -> List[List[QueueEntry]]:
        shards: List[List[QueueEntry]] = [[] for _ in range(shard_count)]
        for entry in entries:
            shards[shard_for(entry.user_id, shard_count)].append(entry)
        return shards

    def _score_shard(
        self,
        shard: int,
        entries: List[QueueEntry],
        min_score: float,
        cache: _ProfileCache,
    ) -> ShardResult:
        result = ShardResult(shard=shard, candidates=len(entries))

        for i, entry_a in enumerate(entries):
            for entry_b in entries[i + 1:]:
                data_a = cache.get(entry_a.user_id)
                data_b = cache.get(entry_b.user_id)
                try:
                    if data_a is not None and data_b is not None and self.scorer.is_excluded(
                        data_a, data_b, entry_a.constraints, entry_b.constraints
                    ):
                        result.excluded_pairs += 1
                        continue
                    scored = self.scorer.score(
                        data_a, data_b, entry_a.constraints, entry_b.constraints,
                        user_a_id=entry_a.user_id, user_b_id=entry_b.user_id
                    )
                except UserDataNotFound as e:
                    logger.debug(f"[SHARD {shard}] Skipping pair {entry_a.user_id}/{entry_b.user_id}: {e.message}")
                    result.skipped_pairs += 1
                    continue

                result.pairs_scored += 1
                if scored.score >= min_score:
                    result.eligible.append(CandidatePair(entry_a, entry_b, scored, shard))

        result.eligible.sort(key=lambda p: p.sort_key)
        logger.info(
            f"[SHARD {shard}] {result.candidates} candidates, {result.pairs_scored} pairs scored, "
            f"{len(result.eligible)} above threshold, {result.skipped_pairs} skipped, "
            f"{result.excluded_pairs} excluded"
        )
        return result

    def _score_all(
        self,
        shards: List[List[QueueEntry]],
        min_score: float,
        cache: _ProfileCache,
    ) -> List[ShardResult]:
        # Shards are disjoint by user, so the cache is never written twice for one key
        if self.shard_workers > 1 and len(shards) > 1:
            context = get_log_context()
            with ThreadPoolExecutor(max_workers=min(self.shard_workers, len(shards))) as executor:
                futures = [
                    executor.submit(self._score_shard_in_context, context, i, entries, min_score, cache)
                    for i, entries in enumerate(shards)
                ]
                return [f.result() for f in futures]
        return [self._score_shard(i, entries, min_score, cache) for i, entries in enumerate(shards)]

    def _score_shard_in_context(self, context, shard, entries, min_score, cache) -> ShardResult:
        with LogContext(**{**context, "shard": shard}):
            return self._score_shard(shard, entries, min_score, cache)

    def _select_and_commit(
        self,
        shard_results: List[ShardResult],
        max_matches: int,
        cycle_epoch_ms: int,
        now: datetime,
        result: CycleResult,
    ) -> None:
        claimed: Set[str] = set()

        for shard_result in shard_results:
            for pair in shard_result.eligible:
                if len(result.details) >= max_matches:
                    logger.info(f"[CYCLE] Reached max_matches={max_matches}")
                    return

                user_a, user_b = pair.entry_a.user_id, pair.entry_b.user_id
                if user_a in claimed or user_b in claimed:
                    continue

                match_id = build_match_id(user_a, user_b, cycle_epoch_ms)
                try:
                    self.store.commit_pair(pair.entry_a, pair.entry_b, match_id, now)
                except CommitConflict as conflict:
                    result.conflicts += 1
                    stale = set(conflict.stale_entry_ids)
                    for entry in (pair.entry_a, pair.entry_b):
                        if entry.id in stale:
                            claimed.add(entry.user_id)
                    logger.info(
                        f"[COMMIT] Conflict on {match_id}: stale entries {sorted(stale)}, "
                        f"other user released"
                    )
                    continue
                except QueueStorageError as e:
                    result.commit_errors += 1
                    logger.error(f"[COMMIT] Storage error committing {match_id}: {e.message}")
                    continue

                claimed.update((user_a, user_b))
                result.details.append(MatchDetail(
                    match_id=match_id,
                    user_a_id=user_a,
                    user_b_id=user_b,
                    queue_entry_a_id=pair.entry_a.id,
                    queue_entry_b_id=pair.entry_b.id,
                    score=pair.result.score,
                    features=pair.result.features,
                    explanation=pair.result.explanation,
                    shard=pair.shard,
                ))
                logger.info(f"[COMMIT] {match_id} committed (score={pair.result.score:.3f})")

    def run_matching_cycle(
        self,
        shard_count: int = DEFAULT_SHARD_COUNT,
        min_score: float = DEFAULT_MIN_SCORE,
        max_matches: int = DEFAULT_MAX_MATCHES,
    ) -> CycleResult:
        """
        Run one matching cycle.

        Raises:
            ValidationException: invalid parameters
            QueueStorageError: the queue could not be read; nothing was written
        """
        self._validate_parameters(shard_count, min_score, max_matches)

        start = time.perf_counter()
        now = self.clock()
        cycle_epoch_ms = int(now.timestamp() * 1000)
        cycle_id = str(uuid.uuid4())

        with LogContext(cycle_id=cycle_id):
            logger.info(
                f"[CYCLE] Starting {cycle_id}: shard_count={shard_count}, "
                f"min_score={min_score}, max_matches={max_matches}, weights={self.weights.version}"
            )
            try:
                entries = self._collect(now)
            except QueueStorageError:
                logger.error(f"[CYCLE] {cycle_id} aborted: queue unreadable", exc_info=True)
                raise

            result = CycleResult(
                cycle_id=cycle_id,
                total_matches=0,
                details=[],
                weights=self.weights.to_dict(),
                processed_shards=shard_count,
                candidates=len(entries),
            )

            cache = _ProfileCache(self.profile_reader)
            shard_results = self._score_all(self._shard(entries, shard_count), float(min_score), cache)
            for shard_result in shard_results:
                result.pairs_scored += shard_result.pairs_scored
                result.excluded_pairs += shard_result.excluded_pairs
                result.skipped_pairs += shard_result.skipped_pairs

            self._select_and_commit(shard_results, max_matches, cycle_epoch_ms, now, result)

            result.total_matches = len(result.details)
            if result.details:
                result.average_score = round(
                    sum(d.score for d in result.details) / result.total_matches, 6
                )
            result.processing_time_ms = int((time.perf_counter() - start) * 1000)

            logger.info(
                f"[CYCLE] Completed {cycle_id}: {result.total_matches} matches from "
                f"{result.candidates} candidates, {result.conflicts} conflicts, "
                f"{result.skipped_pairs} skipped pairs, {cache.lookups} profile lookups, "
                f"{result.processing_time_ms}ms"
            )
            return result

    def score_users(
        self,
        user_a_id: str,
        user_b_id: str,
        constraints_a: Optional[QueueConstraints] = None,
        constraints_b: Optional[QueueConstraints] = None,
        scorer: Optional[CompatibilityScorer] = None,
    ) -> CompatibilityResult:
        """
        On-demand score of two users outside a cycle.

        Raises:
            UserDataNotFound: either user has no scoring data
        """
        scorer = scorer or self.scorer
        cache = _ProfileCache(self.profile_reader)
        return scorer.score(
            cache.get(user_a_id),
            cache.get(user_b_id),
            constraints_a or QueueConstraints(),
            constraints_b or QueueConstraints(),
            user_a_id=user_a_id,
            user_b_id=user_b_id,
        )
