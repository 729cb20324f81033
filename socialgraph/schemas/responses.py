from pydantic import BaseModel, ConfigDict, Field

from socialgraph.models.relationship import RelationshipStatus
from socialgraph.models.spam import SpamReason


class HealthCheckResponseSchema(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: bool


class RelationshipStatusResponseSchema(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str
    status: RelationshipStatus


class SocialCountsResponseSchema(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str
    follower_count: int
    following_count: int


class UserIdListResponseSchema(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_ids: list[str]


class SpamScoreResponseSchema(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str
    score: float


class FollowRequestCreateSchema(BaseModel):
    """Body of a follow request.

    Attributes:
        message: Optional note shown to the requested user
    """

    message: str | None = Field(None, max_length=500)


class FollowRequestResponseSchema(BaseModel):
    accept: bool


class SpamReportSchema(BaseModel):
    reason: SpamReason = SpamReason.OTHER
