"""
Matching queue endpoints.

The caller is identified by the X-User-ID header forwarded by the gateway.
"""
import logging
from datetime import timedelta

from fastapi import APIRouter, Depends, Query, status

from peerlink.core.dependencies import get_queue_service
from peerlink.middleware.auth import get_caller_id
from peerlink.schemas.matching import (
    ActiveEntriesResponse,
    CancelQueueResponse,
    CleanupResponse,
    EnterQueueRequest,
    EnterQueueResponse,
    QueueStatusResponse,
)
from peerlink.services.matching_queue import MatchingQueueService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/queue", tags=["Matching Queue"])


@router.post("", response_model=EnterQueueResponse, status_code=status.HTTP_201_CREATED)
def enter_queue(
    body: EnterQueueRequest,
    caller_id: str = Depends(get_caller_id),
    service: MatchingQueueService = Depends(get_queue_service),
):
    """Enter the matching queue. One waiting entry per user."""
    constraints = body.constraints
    entry = service.enter_queue(
        user_id=caller_id,
        available_from=body.available_from,
        available_to=body.available_to,
        interests=constraints.interests,
        roles=constraints.roles,
        org_constraint=constraints.org_constraint.value if constraints.org_constraint else None,
    )
    return EnterQueueResponse(queue_id=entry.id, status=entry.status.value)


@router.delete("", response_model=CancelQueueResponse)
def cancel_active_entry(
    caller_id: str = Depends(get_caller_id),
    service: MatchingQueueService = Depends(get_queue_service),
):
    """Cancel the caller's waiting entry."""
    entry = service.cancel_queue_entry(caller_id)
    return CancelQueueResponse(queue_id=entry.id, status=entry.status.value)


@router.get("/status", response_model=QueueStatusResponse)
def get_queue_status(
    caller_id: str = Depends(get_caller_id),
    service: MatchingQueueService = Depends(get_queue_service),
):
    """Caller's most recent queue entry; position and wait estimate while waiting."""
    return service.get_queue_status(caller_id).to_dict()


@router.get("/active", response_model=ActiveEntriesResponse)
def list_active_entries(
    limit: int = Query(100, ge=1, le=500),
    time_window_minutes: int = Query(60, ge=1, le=24 * 60),
    service: MatchingQueueService = Depends(get_queue_service),
):
    entries = service.list_active_entries(window=timedelta(minutes=time_window_minutes), limit=limit)
    return {"entries": [e.to_dict() for e in entries], "count": len(entries)}


@router.post("/cleanup", response_model=CleanupResponse)
def cleanup_expired_entries(service: MatchingQueueService = Depends(get_queue_service)):
    return CleanupResponse(expired_count=service.cleanup_expired_entries())


@router.delete("/{queue_id}", response_model=CancelQueueResponse)
def cancel_queue_entry(
    queue_id: str,
    caller_id: str = Depends(get_caller_id),
    service: MatchingQueueService = Depends(get_queue_service),
):
    """Cancel one of the caller's queue entries by id."""
    entry = service.cancel_queue_entry(caller_id, queue_id)
    return CancelQueueResponse(queue_id=entry.id, status=entry.status.value)
