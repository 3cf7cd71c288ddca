"""
Health check routes.
"""
import logging

from fastapi import APIRouter, Depends

from peerlink.adapters.base import MatchingStore
from peerlink.core.dependencies import get_store
from peerlink.middleware.error_handling import error_tracker
from peerlink.schemas.common import HealthResponse

router = APIRouter()
logger = logging.getLogger(__name__)


def _health(store: MatchingStore) -> HealthResponse:
    store_ok = store.health_check()
    if not store_ok:
        logger.warning("Health check: matching store unavailable")

    return HealthResponse(
        success=store_ok,
        data={
            "status": "healthy" if store_ok else "degraded",
            "store": type(store).__name__,
            "errors": error_tracker.get_stats(),
        },
        message="OK" if store_ok else "Store unavailable"
    )


@router.get("/health", response_model=HealthResponse)
def health_check(store: MatchingStore = Depends(get_store)):
    """Health check endpoint at /health."""
    return _health(store)


@router.get("/api/v1/health", response_model=HealthResponse)
def health_check_v1(store: MatchingStore = Depends(get_store)):
    """Health check endpoint at /api/v1/health."""
    return _health(store)
