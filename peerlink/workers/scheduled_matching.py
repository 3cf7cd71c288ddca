"""
Celery tasks for scheduled matching.

run_matching_cycle fires every MATCHING_CYCLE_INTERVAL_SECONDS: expire
stale entries, run one cycle, record analytics per matched user and send a
single matches-ready webhook. A cycle that cannot read the queue fails the
task; the next beat tick is the retry.
"""
import logging
import os

from peerlink.core.celery import celery_app
from peerlink.core.dependencies import (
    get_analytics_service,
    get_matching_engine,
    get_notification_service,
    get_queue_service,
)
from peerlink.services.matching_runner import process_matching_cycle

logger = logging.getLogger(__name__)


def _cycle_parameters() -> dict:
    return {
        "shard_count": int(os.getenv("MATCHING_SHARD_COUNT", "4")),
        "min_score": float(os.getenv("MATCHING_MIN_SCORE", "0.6")),
        "max_matches": int(os.getenv("MATCHING_MAX_MATCHES", "100")),
    }


@celery_app.task(bind=True, name='run_matching_cycle')
def run_matching_cycle_task(self):
    params = _cycle_parameters()
    task_id = getattr(self.request, 'id', None)
    logger.info("=" * 80)
    logger.info(f"[CYCLE] Scheduled matching cycle starting (task {task_id}): {params}")
    logger.info("=" * 80)

    try:
        summary = process_matching_cycle(
            queue_service=get_queue_service(),
            engine=get_matching_engine(),
            analytics=get_analytics_service(),
            notifier=get_notification_service(),
            **params
        )
    except Exception as e:
        logger.error(f"[CYCLE] Scheduled matching cycle failed: {str(e)}", exc_info=True)
        raise

    logger.info(
        f"[CYCLE] Scheduled matching cycle done: {summary['total_matches']} matches, "
        f"{summary['expired_count']} expired, {summary['conflicts']} conflicts, "
        f"notification_sent={summary['notification'].get('success', False)}"
    )
    summary["success"] = True
    summary["task_id"] = task_id
    return summary


@celery_app.task(bind=True, name='run_queue_maintenance')
def run_queue_maintenance_task(self):
    try:
        expired_count = get_queue_service().cleanup_expired_entries()
    except Exception as e:
        logger.error(f"Queue maintenance failed: {str(e)}", exc_info=True)
        raise

    logger.info(f"Queue maintenance expired {expired_count} entries")
    return {"success": True, "expired_count": expired_count}
