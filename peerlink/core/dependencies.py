"""
Process-wide service instances, built lazily from the environment.

FastAPI routes take these through Depends() so tests can swap them with
app.dependency_overrides; Celery tasks call them directly.
"""
import logging
import os
from functools import lru_cache

from peerlink.adapters.base import MatchingStore
from peerlink.services.compatibility_scorer import CompatibilityScorer
from peerlink.services.match_analytics import MatchAnalyticsService
from peerlink.services.matching_engine import MatchingEngine
from peerlink.services.matching_queue import MatchingQueueService
from peerlink.services.notification_service import NotificationService

logger = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def get_store() -> MatchingStore:
    backend = os.getenv("MATCHING_STORE_BACKEND", "postgres").lower()
    if backend == "memory":
        from peerlink.adapters.memory_store import InMemoryMatchingStore
        logger.warning("Using in-memory matching store; queue state is lost on restart")
        return InMemoryMatchingStore()
    if backend == "postgres":
        from peerlink.adapters.postgresql import PostgreSQLMatchingStore
        return PostgreSQLMatchingStore()
    raise ValueError(f"Unknown MATCHING_STORE_BACKEND '{backend}' (expected postgres or memory)")


@lru_cache(maxsize=1)
def get_profile_reader():
    from peerlink.adapters.dynamodb import ProfileReader
    return ProfileReader()


def get_queue_service() -> MatchingQueueService:
    return MatchingQueueService(get_store())


def get_matching_engine() -> MatchingEngine:
    return MatchingEngine(
        store=get_store(),
        profile_reader=get_profile_reader(),
        scorer=CompatibilityScorer(),
        shard_workers=int(os.getenv("MATCHING_SHARD_WORKERS", "1")),
    )


def get_analytics_service() -> MatchAnalyticsService:
    return MatchAnalyticsService(get_store())


def get_notification_service() -> NotificationService:
    return NotificationService()
