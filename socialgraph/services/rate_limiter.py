import logging
import sys
from datetime import datetime

from pydantic import ValidationError as ModelValidationError

from socialgraph.errors import RateLimitExceeded, StoreUnavailable
from socialgraph.models.rate_limit import (
    DEFAULT_LIMITS,
    ActionLimits,
    RateLimitAction,
    RateLimitCounter,
    RateWindow,
)
from socialgraph.services.kv_store import KeyValueStore
from socialgraph.utils.clock import Clock, SystemClock
from socialgraph.utils.locks import ShardedRWLock

logger = logging.getLogger(__name__)


class RateLimiter:
    """Per-user, per-action counters over fixed minute/hour/day/week windows.

    An action is allowed only while every configured window for it is below
    its cap. Counters live in a ``KeyValueStore`` so they survive restarts;
    a counter from an earlier window is ignored and overwritten on the next
    record.

    ``acquire`` is the method to gate mutations with: it checks and records
    under one per-user lock, so two concurrent callers cannot both take the
    last slot. If the backing store is unavailable every check denies.
    """

    def __init__(
        self,
        store: KeyValueStore,
        clock: Clock | None = None,
        limits: dict[RateLimitAction, ActionLimits] | None = None,
        shards: int = 32,
    ) -> None:
        self._store = store
        self._clock = clock or SystemClock()
        self._limits = {**DEFAULT_LIMITS, **(limits or {})}
        self._locks = ShardedRWLock(shards)

    def limits_for(self, action: RateLimitAction) -> ActionLimits:
        return self._limits.get(action, ActionLimits())

    @staticmethod
    def _key(user_id: str, action: RateLimitAction, window: RateWindow) -> str:
        return f"ratelimit:{user_id}:{action.value}:{window.value}"

    async def _load(
        self, user_id: str, action: RateLimitAction, window: RateWindow
    ) -> RateLimitCounter | None:
        raw = await self._store.get(self._key(user_id, action, window))
        if raw is None:
            return None
        try:
            return RateLimitCounter.model_validate(raw)
        except ModelValidationError:
            logger.warning("Ignoring malformed rate limit counter for %s/%s", user_id, action.value)
            return None

    async def _usage(
        self, user_id: str, action: RateLimitAction, now: datetime
    ) -> list[tuple[RateWindow, int, int]]:
        """Return ``(window, limit, current count)`` for each configured window."""
        usage = []
        for window, limit in self.limits_for(action).windows():
            counter = await self._load(user_id, action, window)
            usage.append((window, limit, counter.current_count(now) if counter else 0))
        return usage

    async def _increment(self, user_id: str, action: RateLimitAction, now: datetime) -> None:
        for window, _ in self.limits_for(action).windows():
            counter = await self._load(user_id, action, window)
            start = window.window_start(now)
            count = counter.count + 1 if counter and counter.window_start == start else 1
            updated = RateLimitCounter(
                user_id=user_id,
                action=action,
                window=window,
                window_start=start,
                count=count,
            )
            await self._store.set(
                self._key(user_id, action, window), updated.model_dump(mode="json")
            )

    @staticmethod
    def _reset_time(usage: list[tuple[RateWindow, int, int]], now: datetime) -> datetime | None:
        exhausted = [window.window_end(now) for window, limit, count in usage if count >= limit]
        return max(exhausted) if exhausted else None

    async def check_limit(self, action: RateLimitAction, user_id: str) -> bool:
        """Return whether ``user_id`` may perform ``action`` right now."""
        now = self._clock.now()
        try:
            async with self._locks.for_key(user_id).read():
                usage = await self._usage(user_id, action, now)
        except StoreUnavailable:
            logger.exception("Rate limit store unavailable; denying %s for %s", action.value, user_id)
            return False
        return all(count < limit for _, limit, count in usage)

    async def record_action(self, action: RateLimitAction, user_id: str) -> None:
        now = self._clock.now()
        async with self._locks.for_key(user_id).write():
            await self._increment(user_id, action, now)

    async def acquire(self, action: RateLimitAction, user_id: str) -> None:
        """Atomically check every window and record the action.

        Raises:
            RateLimitExceeded: If any window is at its cap, or the counter
                store cannot be reached
        """
        now = self._clock.now()
        try:
            async with self._locks.for_key(user_id).write():
                usage = await self._usage(user_id, action, now)
                if any(count >= limit for _, limit, count in usage):
                    reset_time = self._reset_time(usage, now)
                    logger.info("Rate limit hit: %s by %s until %s", action.value, user_id, reset_time)
                    raise RateLimitExceeded(action.value, reset_time, now)
                await self._increment(user_id, action, now)
        except StoreUnavailable:
            logger.exception("Rate limit store unavailable; denying %s for %s", action.value, user_id)
            raise RateLimitExceeded(action.value, None, now)

    async def get_remaining_actions(self, action: RateLimitAction, user_id: str) -> int:
        now = self._clock.now()
        async with self._locks.for_key(user_id).read():
            usage = await self._usage(user_id, action, now)
        if not usage:
            return sys.maxsize
        return max(0, min(limit - count for _, limit, count in usage))

    async def get_reset_time(self, action: RateLimitAction, user_id: str) -> datetime | None:
        """When the action becomes allowed again, or None if it is allowed now."""
        now = self._clock.now()
        async with self._locks.for_key(user_id).read():
            usage = await self._usage(user_id, action, now)
        return self._reset_time(usage, now)

    async def reset_limits(self, user_id: str) -> None:
        async with self._locks.for_key(user_id).write():
            removed = await self._store.delete_prefix(f"ratelimit:{user_id}:")
        logger.info("Reset %d rate limit counters for %s", removed, user_id)
