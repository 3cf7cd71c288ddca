"""DynamoDB adapter for the read-only profile and interest data used in scoring."""
import logging
import os
from datetime import datetime, timezone
from typing import Dict, Any, Optional, List
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dotenv import load_dotenv
from pynamodb.attributes import UnicodeAttribute, ListAttribute, UTCDateTimeAttribute
from pynamodb.models import Model

from peerlink.services.entities import UserScoringData

load_dotenv()

logger = logging.getLogger(__name__)


class UserProfile(Model):
    """Profile attributes maintained by the profile service."""

    class Meta:
        table_name = os.getenv('DYNAMO_PROFILE_TABLE_NAME', 'user_profiles')
        region = os.getenv('AWS_DEFAULT_REGION') or os.getenv('AWS_REGION', 'us-east-1')
        # LocalStack in development
        host = os.getenv('DYNAMODB_ENDPOINT_URL') or os.getenv('AWS_ENDPOINT_URL')
        aws_access_key_id = os.getenv('AWS_ACCESS_KEY_ID')
        aws_secret_access_key = os.getenv('AWS_SECRET_ACCESS_KEY')

    user_id = UnicodeAttribute(hash_key=True)
    role = UnicodeAttribute(null=True)
    experience_level = UnicodeAttribute(null=True)
    industry = UnicodeAttribute(null=True)
    company = UnicodeAttribute(null=True)
    organization_id = UnicodeAttribute(null=True)
    timezone = UnicodeAttribute(null=True)  # IANA name or "+05:30"
    languages = ListAttribute(of=UnicodeAttribute, default=list)
    updated_at = UTCDateTimeAttribute(null=True)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "role": self.role,
            "experience_level": self.experience_level,
            "industry": self.industry,
            "company": self.company,
            "organization_id": self.organization_id,
            "timezone": self.timezone,
            "languages": list(self.languages or []),
        }


class UserInterests(Model):
    """Declared interests, one item per user."""

    class Meta:
        table_name = os.getenv('DYNAMO_INTERESTS_TABLE_NAME', 'user_interests')
        region = os.getenv('AWS_DEFAULT_REGION') or os.getenv('AWS_REGION', 'us-east-1')
        host = os.getenv('DYNAMODB_ENDPOINT_URL') or os.getenv('AWS_ENDPOINT_URL')
        aws_access_key_id = os.getenv('AWS_ACCESS_KEY_ID')
        aws_secret_access_key = os.getenv('AWS_SECRET_ACCESS_KEY')

    user_id = UnicodeAttribute(hash_key=True)
    interests = ListAttribute(of=UnicodeAttribute, default=list)
    updated_at = UTCDateTimeAttribute(null=True)


def timezone_to_offset_hours(tz_name: Optional[str], at: Optional[datetime] = None) -> Optional[float]:
    """
    UTC offset in hours for an IANA zone ("Europe/Berlin") or a fixed
    offset ("+05:30", "-3"). None when unknown.
    """
    if not tz_name:
        return None
    tz_name = tz_name.strip()

    if tz_name[0] in "+-":
        sign = -1 if tz_name[0] == "-" else 1
        hours, _, minutes = tz_name[1:].partition(":")
        try:
            return sign * (int(hours) + int(minutes or 0) / 60)
        except ValueError:
            logger.warning(f"Unparseable timezone offset '{tz_name}'")
            return None

    try:
        zone = ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning(f"Unknown timezone '{tz_name}'")
        return None
    offset = (at or datetime.now(timezone.utc)).astimezone(zone).utcoffset()
    return offset.total_seconds() / 3600 if offset is not None else None


class ProfileReader:
    """
    Read-only view over the profile and interest tables.

    Missing items return None / empty; DynamoDB errors propagate so the
    caller can scope the failure to a single user.
    """

    def __init__(self, profile_model=UserProfile, interests_model=UserInterests):
        self.profile_model = profile_model
        self.interests_model = interests_model

    def get_profile(self, user_id: str) -> Optional[Dict[str, Any]]:
        try:
            return self.profile_model.get(user_id).to_dict()
        except self.profile_model.DoesNotExist:
            logger.info(f"No profile found for user {user_id}")
            return None

    def get_interests(self, user_id: str) -> List[str]:
        try:
            item = self.interests_model.get(user_id)
        except self.interests_model.DoesNotExist:
            return []
        return list(item.interests or [])

    def get_scoring_data(self, user_id: str) -> Optional[UserScoringData]:
        """
        Profile plus interests as scorer input. None when the user has no
        profile at all.

        Raises:
            PynamoDBException: on DynamoDB failures
        """
        profile = self.get_profile(user_id)
        if profile is None:
            return None

        interests = self.get_interests(user_id)
        return UserScoringData(
            user_id=user_id,
            interests=frozenset(i.strip().lower() for i in interests if i and i.strip()),
            role=profile.get("role"),
            experience_level=profile.get("experience_level"),
            industry=profile.get("industry"),
            company=profile.get("company"),
            organization_id=profile.get("organization_id"),
            timezone_offset_hours=timezone_to_offset_hours(profile.get("timezone")),
            languages=frozenset(l.strip().lower() for l in profile.get("languages") or [] if l),
        )

