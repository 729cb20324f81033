from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class RelationshipState(str, Enum):
    """Stored state of a directed edge.

    Attributes:
        ACTIVE: Follower follows the other user
        BLOCKED: Follower blocks the other user
        MUTED: Follower muted the other user without following them
    """

    ACTIVE = "active"
    BLOCKED = "blocked"
    MUTED = "muted"


class RelationshipStatus(str, Enum):
    """Derived view of how one user relates to another."""

    FOLLOWING = "following"
    NOT_FOLLOWING = "not_following"
    BLOCKED = "blocked"
    MUTED = "muted"
    PENDING = "pending"
    MUTUAL_FOLLOW = "mutual"


class Direction(str, Enum):
    """Which side of a user's edges to fetch.

    Attributes:
        OUTGOING: Edges where the user is the follower
        INCOMING: Edges where the user is being followed
    """

    OUTGOING = "outgoing"
    INCOMING = "incoming"


def make_relationship_id(follower_id: str, following_id: str) -> str:
    return f"{follower_id}_follows_{following_id}"


class Relationship(BaseModel):
    """A directed follow, block or mute edge between two users.

    Attributes:
        id: Deterministic identifier derived from the ordered pair
        follower_id: ID of the user the edge starts from
        following_id: ID of the user the edge points to
        status: Stored state of the edge
        notifications_enabled: Whether the follower gets activity notifications
        created_at: When the edge was created
    """

    model_config = ConfigDict(frozen=True)

    id: str
    follower_id: str
    following_id: str
    status: RelationshipState = RelationshipState.ACTIVE
    notifications_enabled: bool = True
    created_at: datetime | None = None

    @classmethod
    def create(
        cls,
        follower_id: str,
        following_id: str,
        status: RelationshipState = RelationshipState.ACTIVE,
        notifications_enabled: bool = True,
        created_at: datetime | None = None,
    ) -> "Relationship":
        return cls(
            id=make_relationship_id(follower_id, following_id),
            follower_id=follower_id,
            following_id=following_id,
            status=status,
            notifications_enabled=notifications_enabled,
            created_at=created_at,
        )

    @property
    def pair(self) -> tuple[str, str]:
        return (self.follower_id, self.following_id)


class RelationshipPage(BaseModel):
    """One page of relationships returned by the remote store.

    Attributes:
        relationships: Edges on this page
        next_cursor: Cursor for the next page, or None on the last page
    """

    model_config = ConfigDict(frozen=True)

    relationships: list[Relationship] = Field(default_factory=list)
    next_cursor: str | None = None
