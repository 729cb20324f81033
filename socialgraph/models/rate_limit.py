from datetime import UTC, datetime, timedelta
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class RateLimitAction(str, Enum):
    """Actions that are counted per user."""

    FOLLOW = "follow"
    UNFOLLOW = "unfollow"
    SEARCH = "search"
    FEED_REFRESH = "feed_refresh"
    PROFILE_VIEW = "profile_view"
    WORKOUT_POST = "workout_post"
    FOLLOW_REQUEST = "follow_request"
    REPORT = "report"
    LIKE = "like"
    COMMENT = "comment"
    BLOCK = "block"
    MUTE = "mute"
    RESPOND_REQUEST = "respond_request"


class RateWindow(str, Enum):
    """Fixed-boundary windows an action count is capped over."""

    MINUTE = "minute"
    HOUR = "hour"
    DAY = "day"
    WEEK = "week"

    @property
    def duration(self) -> timedelta:
        return _DURATIONS[self]

    def window_start(self, now: datetime) -> datetime:
        """Start of the window containing ``now``, aligned in UTC."""
        now = now.astimezone(UTC)
        if self is RateWindow.MINUTE:
            return now.replace(second=0, microsecond=0)
        if self is RateWindow.HOUR:
            return now.replace(minute=0, second=0, microsecond=0)
        day = now.replace(hour=0, minute=0, second=0, microsecond=0)
        if self is RateWindow.DAY:
            return day
        return day - timedelta(days=day.weekday())

    def window_end(self, now: datetime) -> datetime:
        return self.window_start(now) + self.duration


_DURATIONS = {
    RateWindow.MINUTE: timedelta(minutes=1),
    RateWindow.HOUR: timedelta(hours=1),
    RateWindow.DAY: timedelta(days=1),
    RateWindow.WEEK: timedelta(weeks=1),
}


class ActionLimits(BaseModel):
    """Caps for one action; ``None`` leaves a window unconstrained."""

    model_config = ConfigDict(frozen=True)

    minutely: int | None = Field(None, ge=0)
    hourly: int | None = Field(None, ge=0)
    daily: int | None = Field(None, ge=0)
    weekly: int | None = Field(None, ge=0)

    def windows(self) -> list[tuple[RateWindow, int]]:
        configured = [
            (RateWindow.MINUTE, self.minutely),
            (RateWindow.HOUR, self.hourly),
            (RateWindow.DAY, self.daily),
            (RateWindow.WEEK, self.weekly),
        ]
        return [(window, limit) for window, limit in configured if limit is not None]


DEFAULT_LIMITS: dict[RateLimitAction, ActionLimits] = {
    RateLimitAction.FOLLOW: ActionLimits(minutely=5, hourly=60, daily=500, weekly=1000),
    RateLimitAction.UNFOLLOW: ActionLimits(minutely=3, hourly=30, daily=100, weekly=500),
    RateLimitAction.SEARCH: ActionLimits(minutely=20, hourly=200, daily=1000),
    RateLimitAction.FEED_REFRESH: ActionLimits(minutely=10, hourly=100, daily=1000),
    RateLimitAction.PROFILE_VIEW: ActionLimits(minutely=30, hourly=500, daily=5000),
    RateLimitAction.WORKOUT_POST: ActionLimits(minutely=1, hourly=10, daily=50),
    RateLimitAction.FOLLOW_REQUEST: ActionLimits(minutely=2, hourly=20, daily=100),
    RateLimitAction.REPORT: ActionLimits(minutely=1, hourly=5, daily=20),
    RateLimitAction.LIKE: ActionLimits(minutely=60, hourly=600, daily=2000),
    RateLimitAction.COMMENT: ActionLimits(minutely=10, hourly=100, daily=500),
    RateLimitAction.BLOCK: ActionLimits(minutely=5, hourly=30, daily=100),
    RateLimitAction.MUTE: ActionLimits(minutely=10, hourly=60, daily=200),
    RateLimitAction.RESPOND_REQUEST: ActionLimits(minutely=10, hourly=100, daily=500),
}


class RateLimitCounter(BaseModel):
    """Count of one action by one user inside one window.

    A counter whose ``window_start`` is not the current window's start is
    stale and counts as zero.
    """

    user_id: str
    action: RateLimitAction
    window: RateWindow
    window_start: datetime
    count: int = Field(0, ge=0)

    def current_count(self, now: datetime) -> int:
        if self.window_start != self.window.window_start(now):
            return 0
        return self.count
