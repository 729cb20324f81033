from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class SpamCheckKind(str, Enum):
    FOLLOW = "follow"
    MESSAGE = "message"
    PROFILE_UPDATE = "profile_update"
    WORKOUT_POST = "workout_post"


class SuggestedAction(str, Enum):
    BLOCK = "block"
    CAPTCHA = "captcha"
    RATE_LIMIT = "rate_limit"
    SHADOW_BAN = "shadow_ban"
    WARN = "warn"


class SpamReason(str, Enum):
    MASS_FOLLOWING = "mass_following"
    INAPPROPRIATE_CONTENT = "inappropriate_content"
    HARASSMENT = "harassment"
    FAKE_ACCOUNT = "fake_account"
    OTHER = "other"


class SpamCheckAction(BaseModel):
    """An action to score, with the data its heuristics need.

    Attributes:
        kind: What kind of action is being checked
        target_id: Target user for follow checks
        content: Text for message and profile update checks
    """

    model_config = ConfigDict(frozen=True)

    kind: SpamCheckKind
    target_id: str | None = None
    content: str = ""

    @classmethod
    def follow(cls, target_id: str) -> "SpamCheckAction":
        return cls(kind=SpamCheckKind.FOLLOW, target_id=target_id)

    @classmethod
    def message(cls, content: str) -> "SpamCheckAction":
        return cls(kind=SpamCheckKind.MESSAGE, content=content)

    @classmethod
    def profile_update(cls, content: str) -> "SpamCheckAction":
        return cls(kind=SpamCheckKind.PROFILE_UPDATE, content=content)

    @classmethod
    def workout_post(cls) -> "SpamCheckAction":
        return cls(kind=SpamCheckKind.WORKOUT_POST)


class SpamCheckResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    is_spam: bool
    confidence: float = Field(ge=0, le=1)
    reason: str | None = None
    suggested_action: SuggestedAction | None = None


class SpamScore(BaseModel):
    """Accumulated abuse signal for a user; never negative."""

    model_config = ConfigDict(frozen=True)

    user_id: str
    score: float = Field(0.0, ge=0)
    last_updated: datetime | None = None
