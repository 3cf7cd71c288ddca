"""
Match analytics endpoints: feedback, history, stats and weight suggestions.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request

from peerlink.core.dependencies import get_analytics_service
from peerlink.middleware.auth import get_caller_id, get_optional_caller_id
from peerlink.middleware.error_handling import AppException, ErrorCode
from peerlink.middleware.rate_limit import limit_strict
from peerlink.schemas.matching import (
    AnalyticsRecordModel,
    MatchHistoryResponse,
    OptimizeWeightsRequest,
    SubmitFeedbackRequest,
)
from peerlink.services.compatibility_scorer import get_weights
from peerlink.services.match_analytics import MatchAnalyticsService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/analytics", tags=["Match Analytics"])


def _scope(mine: bool, caller_id: Optional[str]) -> Optional[str]:
    if not mine:
        return None
    if caller_id is None:
        raise AppException(
            code=ErrorCode.UNAUTHORIZED,
            message="X-User-ID header is required for mine=true"
        )
    return caller_id


@router.post("/feedback", response_model=AnalyticsRecordModel)
def submit_feedback(
    body: SubmitFeedbackRequest,
    caller_id: str = Depends(get_caller_id),
    service: MatchAnalyticsService = Depends(get_analytics_service),
):
    feedback = body.feedback
    record = service.submit_match_feedback(
        match_id=body.match_id,
        caller_id=caller_id,
        outcome=body.outcome.value,
        rating=feedback.rating if feedback else None,
        comments=feedback.comments if feedback else None,
    )
    return record.to_dict()


@router.get("/history", response_model=MatchHistoryResponse)
def get_match_history(
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    mine: bool = Query(False, description="Only the caller's records (requires X-User-ID)"),
    caller_id: Optional[str] = Depends(get_optional_caller_id),
    service: MatchAnalyticsService = Depends(get_analytics_service),
):
    """Most recent analytics records first."""
    user_id = _scope(mine, caller_id)
    records = service.get_match_history(limit=limit, offset=offset, user_id=user_id)
    return {"records": [r.to_dict() for r in records], "limit": limit, "offset": offset}


@router.get("/stats")
def get_matching_stats(
    mine: bool = Query(False),
    caller_id: Optional[str] = Depends(get_optional_caller_id),
    service: MatchAnalyticsService = Depends(get_analytics_service),
):
    user_id = _scope(mine, caller_id)
    return service.get_matching_stats(user_id=user_id)


@router.get("/global")
def get_global_analytics(
    days: int = Query(7, ge=1, le=365),
    service: MatchAnalyticsService = Depends(get_analytics_service),
):
    return service.get_global_analytics(days=days)


@router.post("/optimize-weights")
@limit_strict
def optimize_weights(
    request: Request,
    body: OptimizeWeightsRequest,
    service: MatchAnalyticsService = Depends(get_analytics_service),
):
    """Suggest weights from decided outcomes. Nothing is applied."""
    active = get_weights()
    result = service.optimize_weights(active.as_mapping(), min_samples=body.min_samples)
    result["current_version"] = active.version
    return result
