from datetime import datetime

from pydantic import BaseModel, ConfigDict


class FeedItem(BaseModel):
    """An entry in a user's activity feed.

    Attributes:
        item_id: Unique identifier of the feed item
        user_id: Author of the activity
        kind: Activity type, e.g. "workout" or "achievement"
        summary: Short text shown in the feed
        created_at: When the activity happened
    """

    model_config = ConfigDict(frozen=True)

    item_id: str
    user_id: str
    kind: str
    summary: str = ""
    created_at: datetime
