"""
Administrative matching endpoints: on-demand cycles, pair scoring and the
weight profiles in use.
"""
import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor

from fastapi import APIRouter, Depends, Request

from peerlink.core.dependencies import (
    get_analytics_service,
    get_matching_engine,
    get_notification_service,
    get_queue_service,
)
from peerlink.middleware.rate_limit import limit_strict
from peerlink.schemas.matching import CompatibilityRequest, CompatibilityResponse, RunCycleRequest
from peerlink.services.compatibility_scorer import (
    WEIGHT_PROFILES,
    CompatibilityScorer,
    get_weights,
)
from peerlink.services.entities import QueueConstraints
from peerlink.services.match_analytics import MatchAnalyticsService
from peerlink.services.matching_engine import MatchingEngine
from peerlink.services.matching_queue import MatchingQueueService
from peerlink.services.matching_runner import process_matching_cycle
from peerlink.services.notification_service import NotificationService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/matching", tags=["Matching Engine"])

# Cycles are long-running and blocking
_executor = ThreadPoolExecutor(max_workers=2)


def _constraints(model) -> QueueConstraints:
    return QueueConstraints.build(
        model.interests,
        model.roles,
        model.org_constraint.value if model.org_constraint else None,
    )


@router.post("/cycle")
@limit_strict
async def run_matching_cycle(
    request: Request,
    body: RunCycleRequest,
    queue_service: MatchingQueueService = Depends(get_queue_service),
    engine: MatchingEngine = Depends(get_matching_engine),
    analytics: MatchAnalyticsService = Depends(get_analytics_service),
    notifier: NotificationService = Depends(get_notification_service),
):
    """
    Run a matching cycle now, exactly like the scheduled task: expire stale
    entries, match, record analytics and send the matches-ready webhook.
    """
    logger.info(f"[CYCLE] On-demand cycle requested: {body.model_dump()}")
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(
        _executor,
        lambda: process_matching_cycle(
            queue_service=queue_service,
            engine=engine,
            analytics=analytics,
            notifier=notifier,
            shard_count=body.shard_count,
            min_score=body.min_score,
            max_matches=body.max_matches,
        ),
    )


@router.post("/compatibility", response_model=CompatibilityResponse)
def score_compatibility(
    body: CompatibilityRequest,
    engine: MatchingEngine = Depends(get_matching_engine),
):
    """Score two users outside a cycle, optionally under another weight profile."""
    scorer = CompatibilityScorer(get_weights(body.weights_version)) if body.weights_version else None
    result = engine.score_users(
        body.user_a_id,
        body.user_b_id,
        _constraints(body.constraints_a),
        _constraints(body.constraints_b),
        scorer=scorer,
    )
    return result.to_dict()


@router.get("/weights")
def list_weight_profiles():
    return {
        "active": get_weights().to_dict(),
        "versions": {version: w.to_dict() for version, w in sorted(WEIGHT_PROFILES.items())},
    }
