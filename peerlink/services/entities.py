"""
Domain entities for the matching subsystem.

QueueEntry and MatchAnalyticsRecord are persisted by a store adapter;
UserScoringData and CompatibilityResult only live for the duration of a
matching cycle.
"""
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional


class QueueStatus(str, Enum):
    """Queue entry lifecycle. Only WAITING is non-terminal."""
    WAITING = "waiting"
    MATCHED = "matched"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class MatchOutcome(str, Enum):
    ACCEPTED = "accepted"
    DECLINED = "declined"
    COMPLETED = "completed"


class OrgConstraint(str, Enum):
    SAME_ORG = "same_org"
    DIFFERENT_ORG = "different_org"


FEATURE_NAMES = (
    "interest_overlap",
    "role_complementarity",
    "experience_gap",
    "industry_match",
    "timezone_compatibility",
    "org_constraint_match",
    "language_overlap",
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Naive datetimes are taken to be UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class QueueConstraints:
    """What a user asks for when entering the queue."""
    interests: FrozenSet[str] = frozenset()
    roles: FrozenSet[str] = frozenset()
    org_constraint: Optional[str] = None

    @classmethod
    def build(cls, interests=None, roles=None, org_constraint=None) -> 'QueueConstraints':
        """Trim and lower-case free-text values, dropping blanks."""
        def clean(values):
            return frozenset(v.strip().lower() for v in (values or []) if v and v.strip())

        org = org_constraint.strip().lower() if org_constraint and org_constraint.strip() else None
        return cls(interests=clean(interests), roles=clean(roles), org_constraint=org)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "interests": sorted(self.interests),
            "roles": sorted(self.roles),
            "org_constraint": self.org_constraint,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'QueueConstraints':
        data = data or {}
        return cls(
            interests=frozenset(data.get("interests") or []),
            roles=frozenset(data.get("roles") or []),
            org_constraint=data.get("org_constraint"),
        )


@dataclass
class QueueEntry:
    """One user's request to be matched."""
    id: str
    user_id: str
    available_from: datetime
    available_to: datetime
    constraints: QueueConstraints
    status: QueueStatus = QueueStatus.WAITING
    matched_with: Optional[str] = None
    match_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_waiting(self) -> bool:
        return self.status == QueueStatus.WAITING

    def is_available_at(self, now: datetime) -> bool:
        return self.available_from <= now <= self.available_to

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "available_from": self.available_from.isoformat(),
            "available_to": self.available_to.isoformat(),
            "constraints": self.constraints.to_dict(),
            "status": self.status.value,
            "matched_with": self.matched_with,
            "match_id": self.match_id,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass
class UserScoringData:
    """
    Profile and interest attributes of one user, as read from the
    profile/interest reader. Every field is optional; the scorer falls
    back to a neutral value where data is missing.
    """
    user_id: str
    interests: FrozenSet[str] = frozenset()
    role: Optional[str] = None
    experience_level: Optional[str] = None
    industry: Optional[str] = None
    company: Optional[str] = None
    organization_id: Optional[str] = None
    timezone_offset_hours: Optional[float] = None
    languages: FrozenSet[str] = frozenset()


@dataclass
class CompatibilityResult:
    score: float
    features: Dict[str, float]
    explanation: List[str]
    weights_version: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class MatchFeedback:
    rating: Optional[int] = None
    comments: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"rating": self.rating, "comments": self.comments}


@dataclass
class MatchAnalyticsRecord:
    """Outcome record for one user of one match."""
    id: str
    match_id: str
    user_id: str
    outcome: MatchOutcome
    score: float
    features: Dict[str, float]
    weights: Dict[str, Any]
    feedback: Optional[MatchFeedback] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "match_id": self.match_id,
            "user_id": self.user_id,
            "outcome": self.outcome.value,
            "score": self.score,
            "features": dict(self.features),
            "weights": dict(self.weights),
            "feedback": self.feedback.to_dict() if self.feedback else None,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }
