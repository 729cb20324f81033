from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class FollowRequestStatus(str, Enum):
    """Status of a follow request.

    Attributes:
        PENDING: Request is waiting for response
        ACCEPTED: Request was accepted
        REJECTED: Request was rejected or withdrawn
        EXPIRED: Request was not answered before it expired
    """

    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    EXPIRED = "expired"


class FollowRequest(BaseModel):
    """Model representing a follow request for private accounts.

    Only ``PENDING`` requests can change status; the other states are
    terminal.

    Attributes:
        id: Unique identifier of the request
        requester_id: ID of the user requesting to follow
        target_id: ID of the user being requested to follow
        status: Current status of the request
        created_at: When the request was created
        expires_at: When a pending request lapses
        message: Optional note from the requester
    """

    model_config = ConfigDict(frozen=True)

    id: str
    requester_id: str
    target_id: str
    status: FollowRequestStatus = FollowRequestStatus.PENDING
    created_at: datetime
    expires_at: datetime
    message: str | None = Field(None, max_length=500)

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at

    def is_open(self, now: datetime) -> bool:
        return self.status == FollowRequestStatus.PENDING and not self.is_expired(now)
