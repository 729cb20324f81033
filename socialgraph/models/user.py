import re
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator

USER_ID_PATTERN = re.compile(r"^[A-Za-z0-9_\-.]{1,128}$")


def is_valid_user_id(value: object) -> bool:
    return isinstance(value, str) and bool(USER_ID_PATTERN.match(value))


class UserProfile(BaseModel):
    """Public profile of a user as returned by the remote store.

    Attributes:
        user_id: Unique identifier for the user
        username: Unique username for the user
        display_name: User's display name
        is_private: Whether follows must go through a follow request
        bio: User's biography if set
        follower_count: Number of followers
        following_count: Number of users being followed
        created_at: When the account was created
    """

    model_config = ConfigDict(frozen=True)

    user_id: str
    username: str
    display_name: str = ""
    is_private: bool = False
    bio: str | None = None
    follower_count: int = Field(0, ge=0)
    following_count: int = Field(0, ge=0)
    created_at: datetime | None = None

    @field_validator("user_id")
    def validate_user_id(cls, v: str) -> str:
        if not is_valid_user_id(v):
            raise ValueError("Malformed user identifier")
        return v


class UserPage(BaseModel):
    """One page of a follower or following list.

    Attributes:
        users: Profiles on this page
        next_cursor: Pass back as ``cursor`` for the next page; None on the last page
    """

    model_config = ConfigDict(frozen=True)

    users: list[UserProfile] = Field(default_factory=list)
    next_cursor: str | None = None
