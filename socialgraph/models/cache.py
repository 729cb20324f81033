from datetime import datetime, timedelta
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class CacheEntry(BaseModel):
    """A cached value and the bookkeeping needed to expire it.

    Attributes:
        key: Cache key
        value: Cached value
        inserted_at: When the value was stored
        ttl: How long the value stays fresh
        size: Approximate size of the value in bytes
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    key: str
    value: Any
    inserted_at: datetime
    ttl: timedelta
    size: int = 0

    def is_expired(self, now: datetime) -> bool:
        return now > self.inserted_at + self.ttl


class CacheStatistics(BaseModel):
    model_config = ConfigDict(frozen=True)

    total_entries: int = 0
    total_size: int = 0
    hit_rate: float = 0.0
    miss_rate: float = 0.0
    eviction_count: int = 0


class CacheHealthReport(BaseModel):
    """Snapshot of cache health for introspection and tuning.

    Attributes:
        user_id: User the entry count is restricted to, if any
        total_entries: Entries currently cached (in scope)
        total_size: Approximate bytes held by the whole cache
        hit_rate: Share of lookups served from cache
        miss_rate: Share of lookups that missed
        eviction_count: Implicit removals so far (expiry and capacity)
        expired_entries: Entries removed by the sweep run for this report
        recommended_actions: Tuning hints derived from the statistics
        generated_at: When the report was produced
        sequence: Publish order assigned by the fan-out
    """

    model_config = ConfigDict(frozen=True)

    user_id: str | None = None
    total_entries: int = 0
    total_size: int = 0
    hit_rate: float = 0.0
    miss_rate: float = 0.0
    eviction_count: int = 0
    expired_entries: int = 0
    recommended_actions: list[str] = Field(default_factory=list)
    generated_at: datetime
    sequence: int = 0

    @property
    def key(self) -> str | None:
        return self.user_id
