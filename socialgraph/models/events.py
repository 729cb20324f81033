from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict

from socialgraph.models.relationship import Relationship


class RelationshipChangeKind(str, Enum):
    ADDED = "added"
    REMOVED = "removed"
    BLOCKED = "blocked"
    UNBLOCKED = "unblocked"
    MUTED = "muted"
    UNMUTED = "unmuted"


class SocialInteractionType(str, Enum):
    FOLLOW = "follow"
    UNFOLLOW = "unfollow"
    LIKE = "like"
    UNLIKE = "unlike"
    COMMENT = "comment"
    DELETE_COMMENT = "delete_comment"
    SHARE = "share"
    BLOCK = "block"
    UNBLOCK = "unblock"


class RelationshipChangeEvent(BaseModel):
    """A change to the directed edge ``follower_id -> following_id``.

    ``sequence`` is assigned when the event is published and grows with
    publish order. Delivery is at-least-once, so consumers should apply
    events idempotently.

    Attributes:
        kind: What happened to the edge
        follower_id: User the edge starts from
        following_id: User the edge points to
        relationship: Edge after the change, or None once removed
        occurred_at: When the change was applied
        sequence: Publish order assigned by the fan-out
    """

    model_config = ConfigDict(frozen=True)

    kind: RelationshipChangeKind
    follower_id: str
    following_id: str
    relationship: Relationship | None = None
    occurred_at: datetime
    sequence: int = 0

    @property
    def key(self) -> tuple[str, str]:
        return (self.follower_id, self.following_id)


class SocialInteractionEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: SocialInteractionType
    user_id: str
    target_id: str
    occurred_at: datetime
    sequence: int = 0

    @property
    def key(self) -> tuple[str, str, str]:
        return (self.type.value, self.user_id, self.target_id)
