"""
Compatibility Scorer.

Pure pairwise scoring of two queued users. Seven features are computed from
the users' profile/interest data and the constraints they entered the queue
with; each lies in [0, 1] and the final score is their weighted mean under a
named, versioned weight profile.

Missing profile data never fails a feature, it yields a neutral 0.5. Only a
user whose data could not be resolved at all raises UserDataNotFound.
"""
import os
import logging
from dataclasses import dataclass
from typing import Dict, FrozenSet, Iterable, List, Optional

from peerlink.middleware.error_handling import ErrorCode, UserDataNotFound, ValidationException
from peerlink.services.entities import (
    FEATURE_NAMES,
    CompatibilityResult,
    OrgConstraint,
    QueueConstraints,
    UserScoringData,
)

logger = logging.getLogger(__name__)

NEUTRAL = 0.5


@dataclass(frozen=True)
class ScoringWeights:
    """A named, versioned weight profile. Weights need not sum to 1."""
    name: str
    version: str
    interest_overlap: float
    role_complementarity: float
    experience_gap: float
    industry_match: float
    timezone_compatibility: float
    org_constraint_match: float
    language_overlap: float

    def as_mapping(self) -> Dict[str, float]:
        return {feature: getattr(self, feature) for feature in FEATURE_NAMES}

    @property
    def total(self) -> float:
        return sum(self.as_mapping().values())

    def to_dict(self) -> Dict[str, object]:
        return {"name": self.name, "version": self.version, "weights": self.as_mapping()}


WEIGHT_PROFILES: Dict[str, ScoringWeights] = {
    "v0": ScoringWeights(
        name="legacy-balanced",
        version="v0",
        interest_overlap=0.25,
        role_complementarity=0.05,
        experience_gap=0.15,
        industry_match=0.10,
        timezone_compatibility=0.10,
        org_constraint_match=0.05,
        language_overlap=0.10,
    ),
    "v1": ScoringWeights(
        name="interest-first",
        version="v1",
        interest_overlap=0.30,
        role_complementarity=0.15,
        experience_gap=0.15,
        industry_match=0.10,
        timezone_compatibility=0.10,
        org_constraint_match=0.05,
        language_overlap=0.15,
    ),
}

DEFAULT_WEIGHTS_VERSION = "v1"


def get_weights(version: Optional[str] = None) -> ScoringWeights:
    """Resolve a weight profile, defaulting to SCORING_WEIGHTS_VERSION."""
    version = version or os.getenv("SCORING_WEIGHTS_VERSION", DEFAULT_WEIGHTS_VERSION)
    try:
        return WEIGHT_PROFILES[version]
    except KeyError:
        raise ValidationException(
            f"Unknown scoring weights version '{version}'",
            field="weights_version",
            details={"available_versions": sorted(WEIGHT_PROFILES)},
            code=ErrorCode.UNKNOWN_WEIGHTS_VERSION
        )


# Symmetric closure is taken below; listing one direction is enough.
_COMPLEMENTARY_PAIRS = {
    ("mentor", "mentee"),
    ("mentor", "junior"),
    ("mentee", "senior"),
    ("founder", "investor"),
    ("founder", "advisor"),
    ("investor", "entrepreneur"),
    ("technical", "business"),
    ("technical", "product"),
    ("business", "engineering"),
    ("peer", "peer"),
}
COMPLEMENTARY_ROLES = _COMPLEMENTARY_PAIRS | {(b, a) for a, b in _COMPLEMENTARY_PAIRS}

# Roles that only make sense paired with their counterpart
EXCLUSIVE_ROLES = frozenset({"mentor", "mentee"})

EXPERIENCE_LEVELS = {
    "entry": 1,
    "junior": 2,
    "mid": 3,
    "senior": 4,
    "lead": 5,
    "executive": 6,
}
_MAX_EXPERIENCE_GAP = max(EXPERIENCE_LEVELS.values()) - min(EXPERIENCE_LEVELS.values())

RELATED_INDUSTRIES = {
    "technology": ("software", "engineering", "data", "ai", "ml"),
    "business": ("marketing", "sales", "finance", "consulting"),
    "design": ("ux", "ui", "product", "creative"),
}


def _lower_set(values: Iterable[str]) -> FrozenSet[str]:
    return frozenset(v.strip().lower() for v in values if v and v.strip())


def _jaccard(a: FrozenSet[str], b: FrozenSet[str]) -> float:
    union = a | b
    return len(a & b) / len(union) if union else 0.0


def interest_overlap(
    user_a: UserScoringData,
    user_b: UserScoringData,
    constraints_a: QueueConstraints,
    constraints_b: QueueConstraints,
) -> float:
    """
    Blend of three overlaps, each only counted when both sides have data:

    - requested: interests present in both constraint lists (weight 0.5),
      relative to the shorter list
    - cross: each user's declared interests against what the counterpart
      asked for (weight 0.3), Jaccard averaged over both directions
    - declared: Jaccard of both users' declared interests (weight 0.2)

    Weights are renormalized over the terms that apply; no data scores 0.
    """
    requested_a = _lower_set(constraints_a.interests)
    requested_b = _lower_set(constraints_b.interests)
    declared_a = _lower_set(user_a.interests)
    declared_b = _lower_set(user_b.interests)

    terms = []
    if requested_a and requested_b:
        shared = len(requested_a & requested_b)
        terms.append((0.5, shared / min(len(requested_a), len(requested_b))))

    cross = [
        _jaccard(declared, requested)
        for declared, requested in ((declared_a, requested_b), (declared_b, requested_a))
        if declared and requested
    ]
    if cross:
        terms.append((0.3, sum(cross) / len(cross)))

    if declared_a and declared_b:
        terms.append((0.2, _jaccard(declared_a, declared_b)))

    if not terms:
        return 0.0
    total_weight = sum(w for w, _ in terms)
    return min(1.0, sum(w * v for w, v in terms) / total_weight)


def _effective_roles(user: UserScoringData, constraints: QueueConstraints) -> FrozenSet[str]:
    roles = _lower_set(constraints.roles)
    if not roles and user.role:
        roles = _lower_set([user.role])
    return roles


def role_complementarity(roles_a: FrozenSet[str], roles_b: FrozenSet[str]) -> float:
    """1.0 complementary, 0.5 unrelated or unknown, 0.2 same non-complementary role."""
    if not roles_a or not roles_b:
        return NEUTRAL
    if any((a, b) in COMPLEMENTARY_ROLES for a in roles_a for b in roles_b):
        return 1.0
    if roles_a & roles_b:
        return 0.2
    return NEUTRAL


def experience_gap(level_a: Optional[str], level_b: Optional[str]) -> float:
    """Decreases linearly from 1.0 (same level) to 0.0 (entry vs executive)."""
    if not level_a or not level_b:
        return NEUTRAL
    rank_a = EXPERIENCE_LEVELS.get(level_a.strip().lower())
    rank_b = EXPERIENCE_LEVELS.get(level_b.strip().lower())
    if rank_a is None or rank_b is None:
        return NEUTRAL
    return 1.0 - abs(rank_a - rank_b) / _MAX_EXPERIENCE_GAP


def industry_match(
    industry_a: Optional[str],
    industry_b: Optional[str],
    company_a: Optional[str] = None,
    company_b: Optional[str] = None,
) -> float:
    if not industry_a or not industry_b:
        return NEUTRAL

    industry_a, industry_b = industry_a.strip().lower(), industry_b.strip().lower()
    if industry_a == industry_b:
        return 1.0

    if company_a and company_b and company_a.strip().lower() == company_b.strip().lower():
        return 0.9

    for keywords in RELATED_INDUSTRIES.values():
        if any(k in industry_a for k in keywords) and any(k in industry_b for k in keywords):
            return 0.8

    return 0.3


def timezone_compatibility(offset_a: Optional[float], offset_b: Optional[float]) -> float:
    """1.0 at the same offset down to 0.0 twelve hours apart (wrapping)."""
    if offset_a is None or offset_b is None:
        return NEUTRAL
    gap = abs(offset_a - offset_b) % 24
    gap = min(gap, 24 - gap)
    return max(0.0, 1.0 - gap / 12)


def org_constraint_match(
    org_a: Optional[str],
    org_b: Optional[str],
    constraint_a: Optional[str],
    constraint_b: Optional[str],
) -> float:
    """
    1.0 when every stated org constraint is satisfied (or none is stated),
    0.0 when any is violated, 0.5 when a constraint exists but either
    organization is unknown.
    """
    constraints = {c for c in (constraint_a, constraint_b) if c}
    if not constraints:
        return 1.0
    if not org_a or not org_b:
        return NEUTRAL

    same_org = org_a == org_b
    for constraint in constraints:
        if constraint == OrgConstraint.SAME_ORG.value and not same_org:
            return 0.0
        if constraint == OrgConstraint.DIFFERENT_ORG.value and same_org:
            return 0.0
    return 1.0


def language_overlap(languages_a: Iterable[str], languages_b: Iterable[str]) -> float:
    languages_a, languages_b = _lower_set(languages_a), _lower_set(languages_b)
    if not languages_a or not languages_b:
        return NEUTRAL
    return len(languages_a & languages_b) / max(len(languages_a), len(languages_b))


def explain(features: Dict[str, float]) -> List[str]:
    explanation = []

    if features["interest_overlap"] > 0.7:
        explanation.append("Strong interest alignment")
    elif features["interest_overlap"] > 0.4:
        explanation.append("Some shared interests")

    if features["role_complementarity"] == 1.0:
        explanation.append("Complementary professional roles")

    if features["experience_gap"] > 0.7:
        explanation.append("Similar experience levels")

    if features["language_overlap"] > 0.8:
        explanation.append("Strong language compatibility")

    if features["timezone_compatibility"] >= 0.75:
        explanation.append("Compatible time zones")

    if not explanation:
        explanation.append("Basic compatibility based on available data")
    return explanation


class CompatibilityScorer:
    """Scores pairs of users under one weight profile."""

    def __init__(self, weights: Optional[ScoringWeights] = None):
        self.weights = weights or get_weights()

    def is_excluded(
        self,
        user_a: UserScoringData,
        user_b: UserScoringData,
        constraints_a: QueueConstraints,
        constraints_b: QueueConstraints,
    ) -> bool:
        """
        Pairs that are never worth scoring: the same user twice, a violated
        org constraint, or both users holding the same single exclusive role
        (two mentors, two mentees).
        """
        if user_a.user_id == user_b.user_id:
            return True

        if org_constraint_match(
            user_a.organization_id, user_b.organization_id,
            constraints_a.org_constraint, constraints_b.org_constraint
        ) == 0.0:
            return True

        roles_a = _effective_roles(user_a, constraints_a)
        roles_b = _effective_roles(user_b, constraints_b)
        return len(roles_a) == 1 and roles_a == roles_b and roles_a <= EXCLUSIVE_ROLES

    def compute_features(
        self,
        user_a: UserScoringData,
        user_b: UserScoringData,
        constraints_a: QueueConstraints,
        constraints_b: QueueConstraints,
    ) -> Dict[str, float]:
        return {
            "interest_overlap": interest_overlap(user_a, user_b, constraints_a, constraints_b),
            "role_complementarity": role_complementarity(
                _effective_roles(user_a, constraints_a), _effective_roles(user_b, constraints_b)
            ),
            "experience_gap": experience_gap(user_a.experience_level, user_b.experience_level),
            "industry_match": industry_match(
                user_a.industry, user_b.industry, user_a.company, user_b.company
            ),
            "timezone_compatibility": timezone_compatibility(
                user_a.timezone_offset_hours, user_b.timezone_offset_hours
            ),
            "org_constraint_match": org_constraint_match(
                user_a.organization_id, user_b.organization_id,
                constraints_a.org_constraint, constraints_b.org_constraint
            ),
            "language_overlap": language_overlap(user_a.languages, user_b.languages),
        }

    def score(
        self,
        user_a: Optional[UserScoringData],
        user_b: Optional[UserScoringData],
        constraints_a: QueueConstraints,
        constraints_b: QueueConstraints,
        user_a_id: Optional[str] = None,
        user_b_id: Optional[str] = None,
    ) -> CompatibilityResult:
        """
        Score one pair.

        Raises:
            UserDataNotFound: when either user's data is None
        """
        if user_a is None:
            raise UserDataNotFound(user_a_id or "unknown")
        if user_b is None:
            raise UserDataNotFound(user_b_id or "unknown")

        features = self.compute_features(user_a, user_b, constraints_a, constraints_b)
        weights = self.weights.as_mapping()
        total_weight = self.weights.total

        raw = sum(features[f] * weights[f] for f in FEATURE_NAMES) / total_weight if total_weight > 0 else 0.0
        score = max(0.0, min(1.0, raw))

        return CompatibilityResult(
            score=round(score, 6),
            features={f: round(v, 6) for f, v in features.items()},
            explanation=explain(features),
            weights_version=self.weights.version,
        )
