"""
End-to-end matching run shared by the scheduled task and the admin route:
expire stale entries, run a cycle, record analytics for every committed
pair, then send one matches-ready webhook.
"""
import logging
from typing import Any, Dict

from peerlink.services.match_analytics import MatchAnalyticsService
from peerlink.services.matching_engine import MatchingEngine
from peerlink.services.matching_queue import MatchingQueueService
from peerlink.services.notification_service import NotificationService
from peerlink.utils.logging_config import log_performance

logger = logging.getLogger(__name__)


@log_performance("matching_cycle")
def process_matching_cycle(
    queue_service: MatchingQueueService,
    engine: MatchingEngine,
    analytics: MatchAnalyticsService,
    notifier: NotificationService,
    shard_count: int,
    min_score: float,
    max_matches: int,
) -> Dict[str, Any]:
    """
    Returns the cycle result dict plus expired_count, analytics_recorded,
    analytics_failed and notification.

    Raises:
        QueueStorageError: the cycle could not read the queue
    """
    expired_count = queue_service.cleanup_expired_entries()

    cycle = engine.run_matching_cycle(
        shard_count=shard_count, min_score=min_score, max_matches=max_matches
    )

    # Matches are already committed; an analytics failure must not lose the rest
    recorded, failed = 0, 0
    for detail in cycle.details:
        try:
            analytics.record_match(
                match_id=detail.match_id,
                user_ids=[detail.user_a_id, detail.user_b_id],
                score=detail.score,
                features=detail.features,
                weights=cycle.weights,
            )
            recorded += 1
        except Exception as e:
            failed += 1
            logger.error(f"[CYCLE] Failed to record analytics for {detail.match_id}: {str(e)}")

    notification: Dict[str, Any] = {"success": True, "skipped": True, "message": "No matches to notify"}
    if cycle.details:
        notification = notifier.send_matches_ready(
            batch_id=cycle.cycle_id,
            match_pairs=[
                {
                    "match_id": d.match_id,
                    "user_a_id": d.user_a_id,
                    "user_b_id": d.user_b_id,
                    "score": d.score,
                }
                for d in cycle.details
            ],
        )

    summary = cycle.to_dict()
    summary.update({
        "expired_count": expired_count,
        "analytics_recorded": recorded,
        "analytics_failed": failed,
        "notification": notification,
    })
    return summary
