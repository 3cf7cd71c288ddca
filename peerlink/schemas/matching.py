"""
Request/response schemas for the queue, matching and analytics routes.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from peerlink.services.entities import MatchOutcome, OrgConstraint

MAX_TERMS = 20
MAX_TERM_LENGTH = 100
MAX_COMMENT_LENGTH = 2000


def _clean_terms(values: List[str]) -> List[str]:
    cleaned = []
    for value in values:
        value = value.strip().lower()
        if not value:
            continue
        if len(value) > MAX_TERM_LENGTH:
            raise ValueError(f"Each value must be at most {MAX_TERM_LENGTH} characters")
        if value not in cleaned:
            cleaned.append(value)
    return cleaned


class QueueConstraintsModel(BaseModel):
    interests: List[str] = Field(default_factory=list, max_length=MAX_TERMS, description="Requested interests")
    roles: List[str] = Field(default_factory=list, max_length=MAX_TERMS, description="Requested roles, e.g. mentor")
    org_constraint: Optional[OrgConstraint] = Field(None, description="same_org or different_org")

    @field_validator('interests', 'roles')
    @classmethod
    def _clean(cls, v: List[str]) -> List[str]:
        return _clean_terms(v)


class EnterQueueRequest(BaseModel):
    """Schema for entering the matching queue."""
    available_from: datetime = Field(..., description="Start of availability (UTC if no offset)")
    available_to: datetime = Field(..., description="End of availability, after available_from")
    constraints: QueueConstraintsModel = Field(default_factory=QueueConstraintsModel)


class EnterQueueResponse(BaseModel):
    success: bool = True
    queue_id: str
    status: str
    message: str = "Entered matching queue"


class QueueEntryModel(BaseModel):
    id: str
    user_id: str
    available_from: datetime
    available_to: datetime
    constraints: Dict[str, Any]
    status: str
    matched_with: Optional[str] = None
    match_id: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class QueueStatusResponse(BaseModel):
    entry: Optional[QueueEntryModel] = None
    position: Optional[int] = None
    estimated_wait_seconds: Optional[int] = None


class CancelQueueResponse(BaseModel):
    success: bool = True
    queue_id: str
    status: str


class ActiveEntriesResponse(BaseModel):
    entries: List[QueueEntryModel]
    count: int


class CleanupResponse(BaseModel):
    expired_count: int


class RunCycleRequest(BaseModel):
    """Schema for an on-demand matching cycle."""
    shard_count: int = Field(4, ge=1, le=64)
    min_score: float = Field(0.6, ge=0.0, le=1.0)
    max_matches: int = Field(50, ge=0, le=1000)


class CompatibilityRequest(BaseModel):
    user_a_id: str = Field(..., min_length=1)
    user_b_id: str = Field(..., min_length=1)
    constraints_a: QueueConstraintsModel = Field(default_factory=QueueConstraintsModel)
    constraints_b: QueueConstraintsModel = Field(default_factory=QueueConstraintsModel)
    weights_version: Optional[str] = Field(None, description="Registered weight profile, defaults to the active one")


class CompatibilityResponse(BaseModel):
    score: float
    features: Dict[str, float]
    explanation: List[str]
    weights_version: str


class FeedbackModel(BaseModel):
    # Range checked by the service so the error carries its own code
    rating: Optional[int] = Field(None, description="Integer 1-5")
    comments: Optional[str] = Field(None, max_length=MAX_COMMENT_LENGTH)


class SubmitFeedbackRequest(BaseModel):
    """Schema for match outcome feedback."""
    match_id: str = Field(..., min_length=1)
    outcome: MatchOutcome
    feedback: Optional[FeedbackModel] = None

    @field_validator('feedback', mode='before')
    @classmethod
    def _reject_non_integer_rating(cls, v):
        # Keep 4.5 or "5" from being coerced into an int silently
        if isinstance(v, dict):
            rating = v.get('rating')
            if rating is not None and (isinstance(rating, bool) or not isinstance(rating, int)):
                raise ValueError("rating must be an integer between 1 and 5")
        return v


class AnalyticsRecordModel(BaseModel):
    id: str
    match_id: str
    user_id: str
    outcome: str
    score: float
    features: Dict[str, float]
    weights: Dict[str, Any]
    feedback: Optional[Dict[str, Any]] = None
    created_at: datetime
    updated_at: datetime


class MatchHistoryResponse(BaseModel):
    records: List[AnalyticsRecordModel]
    limit: int
    offset: int


class OptimizeWeightsRequest(BaseModel):
    min_samples: int = Field(100, ge=1, le=100000)
