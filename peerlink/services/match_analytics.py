"""
Match Analytics Service.

Outcome records for formed matches (one per participant), user feedback,
and the aggregates built on them. Nothing here feeds back into scoring:
weight optimisation only returns a suggestion.
"""
import logging
import math
import uuid
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence

from peerlink.adapters.base import MatchingStore
from peerlink.middleware.error_handling import (
    ErrorCode,
    ForbiddenException,
    InvalidRating,
    NotFoundException,
    ValidationException,
)
from peerlink.services.entities import (
    FEATURE_NAMES,
    MatchAnalyticsRecord,
    MatchFeedback,
    MatchOutcome,
    utcnow,
)
from peerlink.utils.logging_config import log_performance

logger = logging.getLogger(__name__)

MIN_RATING = 1
MAX_RATING = 5
MAX_HISTORY_LIMIT = 100
TOP_FEATURES = 5
ACCURACY_THRESHOLD = 0.6
MIN_WEIGHT = 0.01
# Feature value at or above which a match counts as strong on that feature
STRONG_FEATURE_THRESHOLD = 0.5


def validate_rating(rating: Any) -> Optional[int]:
    """None passes; anything but an int in [1, 5] raises InvalidRating."""
    if rating is None:
        return None
    if isinstance(rating, bool) or not isinstance(rating, int):
        raise InvalidRating(rating)
    if not MIN_RATING <= rating <= MAX_RATING:
        raise InvalidRating(rating)
    return rating


def pearson(xs: Sequence[float], ys: Sequence[float]) -> float:
    """Pearson correlation, 0.0 when undefined (fewer than 2 points or zero variance)."""
    n = len(xs)
    if n != len(ys) or n < 2:
        return 0.0
    mean_x = sum(xs) / n
    mean_y = sum(ys) / n
    cov = sum((x - mean_x) * (y - mean_y) for x, y in zip(xs, ys))
    var_x = sum((x - mean_x) ** 2 for x in xs)
    var_y = sum((y - mean_y) ** 2 for y in ys)
    denominator = math.sqrt(var_x * var_y)
    return cov / denominator if denominator else 0.0


class MatchAnalyticsService:
    """Records and aggregates match outcomes."""

    def __init__(self, store: MatchingStore, clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.clock = clock

    def record_match(
        self,
        match_id: str,
        user_ids: Sequence[str],
        score: float,
        features: Dict[str, float],
        weights: Dict[str, Any],
    ) -> List[MatchAnalyticsRecord]:
        """One 'accepted' record per participant. Re-recording a match is a no-op."""
        now = self.clock()
        records = [
            MatchAnalyticsRecord(
                id=str(uuid.uuid4()),
                match_id=match_id,
                user_id=user_id,
                outcome=MatchOutcome.ACCEPTED,
                score=score,
                features=dict(features),
                weights=dict(weights),
                created_at=now,
                updated_at=now,
            )
            for user_id in user_ids
        ]
        self.store.insert_analytics(records)
        logger.info(f"Recorded analytics for {match_id} ({len(records)} participants)")
        return records

    def submit_match_feedback(
        self,
        match_id: str,
        caller_id: str,
        outcome: str,
        rating: Any = None,
        comments: Optional[str] = None,
    ) -> MatchAnalyticsRecord:
        """
        Set the caller's outcome and feedback for a match.

        Raises:
            InvalidRating: rating present but not an integer in [1, 5]
            ValidationException: unknown outcome
            NotFoundException: no analytics for the match
            ForbiddenException: caller did not take part in the match
        """
        rating = validate_rating(rating)
        try:
            outcome_value = MatchOutcome(outcome)
        except ValueError:
            raise ValidationException(
                f"Outcome must be one of {[o.value for o in MatchOutcome]}", field="outcome"
            )

        records = self.store.get_analytics(match_id)
        if not records:
            raise NotFoundException("Match", match_id, code=ErrorCode.MATCH_RECORD_NOT_FOUND)

        record = next((r for r in records if r.user_id == caller_id), None)
        if record is None:
            raise ForbiddenException(
                "Only participants can submit feedback for a match", details={"match_id": match_id}
            )

        record.outcome = outcome_value
        if rating is not None or comments is not None:
            record.feedback = MatchFeedback(rating=rating, comments=comments)
        record.updated_at = self.clock()
        self.store.update_analytics(record)

        logger.info(f"Feedback for {match_id} from {caller_id}: outcome={outcome_value.value}, rating={rating}")
        return record

    def get_match_history(
        self,
        limit: int = 20,
        offset: int = 0,
        user_id: Optional[str] = None,
    ) -> List[MatchAnalyticsRecord]:
        """Most recent first."""
        if not 1 <= limit <= MAX_HISTORY_LIMIT:
            raise ValidationException(f"limit must be between 1 and {MAX_HISTORY_LIMIT}", field="limit")
        if offset < 0:
            raise ValidationException("offset must be >= 0", field="offset")
        return self.store.list_analytics(limit=limit, offset=offset, user_id=user_id)

    @staticmethod
    def _top_features(records: List[MatchAnalyticsRecord]) -> List[Dict[str, Any]]:
        rated = [r for r in records if r.feedback and r.feedback.rating is not None]
        ratings = [float(r.feedback.rating) for r in rated]

        ranked = []
        for feature in FEATURE_NAMES:
            values = [r.features.get(feature, 0.0) for r in records]
            if not values:
                continue
            ranked.append({
                "feature": feature,
                "correlation": round(pearson([r.features.get(feature, 0.0) for r in rated], ratings), 4),
                "average_score": round(sum(values) / len(values), 4),
                "count": len(values),
            })
        ranked.sort(key=lambda f: (-f["correlation"], -f["average_score"], f["feature"]))
        return ranked[:TOP_FEATURES]

    def get_matching_stats(self, user_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Aggregate outcomes, over everyone or one user's records.

        success_rate is completed records over all records. top_features
        ranks features by their correlation with feedback ratings, falling
        back to average feature value when too few matches are rated.
        """
        records = self.store.list_analytics(user_id=user_id)
        total = len(records)
        by_outcome = {o: sum(1 for r in records if r.outcome == o) for o in MatchOutcome}
        ratings = [r.feedback.rating for r in records if r.feedback and r.feedback.rating is not None]

        return {
            "total_matches": len({r.match_id for r in records}),
            "total_records": total,
            "accepted_matches": by_outcome[MatchOutcome.ACCEPTED],
            "declined_matches": by_outcome[MatchOutcome.DECLINED],
            "completed_matches": by_outcome[MatchOutcome.COMPLETED],
            "success_rate": by_outcome[MatchOutcome.COMPLETED] / total if total else 0.0,
            "average_rating": sum(ratings) / len(ratings) if ratings else None,
            "top_features": self._top_features(records),
        }

    def get_global_analytics(self, days: int = 7) -> Dict[str, Any]:
        if days < 1:
            raise ValidationException("days must be >= 1", field="days")
        since = self.clock() - timedelta(days=days)
        records = self.store.list_analytics(since=since)
        total = len(records)

        feature_importance = []
        completed_flags = [1.0 if r.outcome == MatchOutcome.COMPLETED else 0.0 for r in records]
        for feature in FEATURE_NAMES:
            values = [r.features.get(feature, 0.0) for r in records]
            if not values:
                continue
            strong = [flag for value, flag in zip(values, completed_flags) if value >= STRONG_FEATURE_THRESHOLD]
            feature_importance.append({
                "feature": feature,
                "average_score": round(sum(values) / len(values), 4),
                "completion_rate": round(sum(strong) / len(strong), 4) if strong else 0.0,
                "correlation": round(pearson(values, completed_flags), 4),
            })
        feature_importance.sort(key=lambda f: (-f["correlation"], f["feature"]))

        daily = defaultdict(list)
        for record in records:
            daily[record.created_at.date().isoformat()].append(record.score)
        trends = [
            {"date": day, "match_count": len(scores), "average_score": round(sum(scores) / len(scores), 4)}
            for day, scores in sorted(daily.items())
        ]

        return {
            "days": days,
            "total_matches": len({r.match_id for r in records}),
            "total_records": total,
            "average_score": round(sum(r.score for r in records) / total, 4) if total else 0.0,
            "completion_rate": round(sum(completed_flags) / total, 4) if total else 0.0,
            "outcome_distribution": {
                o.value: sum(1 for r in records if r.outcome == o) for o in MatchOutcome
            },
            "feature_importance": feature_importance,
            "matching_trends": trends,
        }

    @log_performance("optimize_weights")
    def optimize_weights(self, current_weights: Dict[str, float], min_samples: int = 100) -> Dict[str, Any]:
        """
        Suggest feature weights from decided outcomes (completed or declined).

        Each feature's weight is its correlation with completion, floored at
        0.01 and normalized to sum to 1. The improvement is the change in
        accuracy of "score > 0.6 predicts completion" over the same samples.
        """
        if min_samples < 1:
            raise ValidationException("min_samples must be >= 1", field="min_samples")

        decided = [
            r for r in self.store.list_analytics()
            if r.outcome in (MatchOutcome.COMPLETED, MatchOutcome.DECLINED)
        ]
        if len(decided) < min_samples:
            raise ValidationException(
                f"Insufficient data for optimization. Need at least {min_samples} samples, got {len(decided)}",
                field="min_samples",
                code=ErrorCode.INSUFFICIENT_SAMPLES
            )

        success = [1.0 if r.outcome == MatchOutcome.COMPLETED else 0.0 for r in decided]
        raw = {
            feature: max(MIN_WEIGHT, pearson([r.features.get(feature, 0.0) for r in decided], success))
            for feature in FEATURE_NAMES
        }
        total = sum(raw.values())
        optimized = {feature: weight / total for feature, weight in raw.items()}

        current_total = sum(current_weights.get(f, 0.0) for f in FEATURE_NAMES) or 1.0
        current = {f: current_weights.get(f, 0.0) / current_total for f in FEATURE_NAMES}

        def accuracy(weights: Dict[str, float]) -> float:
            hits = 0
            for record, outcome in zip(decided, success):
                predicted = sum(record.features.get(f, 0.0) * w for f, w in weights.items()) > ACCURACY_THRESHOLD
                hits += predicted == bool(outcome)
            return hits / len(decided)

        improvement = accuracy(optimized) - accuracy(current)
        logger.info(f"Weight optimisation over {len(decided)} samples: improvement={improvement:.4f}")
        return {
            "optimized_weights": {f: round(w, 6) for f, w in optimized.items()},
            "current_weights": current,
            "improvement": round(improvement, 6),
            "sample_size": len(decided),
        }
