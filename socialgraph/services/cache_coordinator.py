import asyncio
import logging
import re

from socialgraph.config import Settings
from socialgraph.errors import SocialGraphError
from socialgraph.models.cache import CacheHealthReport
from socialgraph.models.events import SocialInteractionEvent, SocialInteractionType
from socialgraph.models.feed import FeedItem
from socialgraph.models.user import UserProfile
from socialgraph.services.cache import CacheEngine
from socialgraph.services.fan_out import Subscription, SyncFanOut
from socialgraph.services.relationship_store import (
    RelationshipStore,
    follower_count_key,
    following_count_key,
)
from socialgraph.services.remote_store import RemoteSocialStore
from socialgraph.utils.clock import Clock, SystemClock
from socialgraph.utils.remote import fetch_with_retry

logger = logging.getLogger(__name__)

FEED_PAGE_PATTERN = re.compile(r"^feed:[^:]+:[^:]+:page:(\d+)$")
LOW_PRIORITY_PREFIXES = ("search:", "prefetch:")
KEPT_FEED_PAGES = 3

LOW_HIT_RATE = 0.7
HIGH_EVICTION_COUNT = 100


def feed_key(user_id: str, page: int) -> str:
    return f"feed:activity:{user_id}:page:{page}"


class SocialMediaCacheCoordinator:
    """Keeps feed, profile and count caches in step with social activity.

    Feed pages are read through the cache and refetched when they expire
    or when the user explicitly asks for fresh data. Interactions arriving
    on the interaction channel invalidate whatever they make stale, and a
    maintenance task started on app launch sweeps expired entries and
    publishes a health report on every run.
    """

    def __init__(
        self,
        cache: CacheEngine,
        store: RelationshipStore,
        remote: RemoteSocialStore,
        settings: Settings | None = None,
        health_events: SyncFanOut[CacheHealthReport] | None = None,
        interaction_events: SyncFanOut[SocialInteractionEvent] | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._cache = cache
        self._store = store
        self._remote = remote
        self._settings = settings or Settings()
        self.health_events = health_events or SyncFanOut()
        self._interaction_events = interaction_events
        self._clock = clock or SystemClock()
        self.current_user_id: str | None = None
        self._optimizing = False
        self._maintenance_task: asyncio.Task[None] | None = None
        self._interaction_task: asyncio.Task[None] | None = None
        self._interactions: Subscription[SocialInteractionEvent] | None = None
        self._background: set[asyncio.Task] = set()

    # Feed

    async def _fetch_feed_page(self, user_id: str, page: int) -> list[FeedItem]:
        return await fetch_with_retry(
            lambda: self._remote.fetch_feed_page(user_id, page, self._settings.feed_page_size),
            timeout=self._settings.network_timeout,
            attempts=self._settings.read_retry_attempts,
            backoff=self._settings.read_retry_backoff,
            description=f"fetch feed page {page} of {user_id}",
        )

    async def load_feed_page(
        self, user_id: str, page: int, user_initiated: bool = False
    ) -> list[FeedItem] | None:
        """Return a feed page, from cache unless ``user_initiated``.

        Returns:
            The page's items, or None if it could not be fetched and no
            fresh copy is cached
        """
        key = feed_key(user_id, page)
        if not user_initiated and (cached := self._cache.get(key, list)) is not None:
            return cached

        try:
            items = await self._fetch_feed_page(user_id, page)
        except SocialGraphError as e:
            logger.warning("Could not load feed page %d for %s: %s", page, user_id, e)
            return self._cache.get(key, list)

        self._cache.set(key, items, self._settings.feed_ttl)
        return items

    async def refresh_feed(self, user_id: str, user_initiated: bool = False) -> list[FeedItem] | None:
        if user_initiated:
            self._cache.invalidate(f"feed:activity:{user_id}:page:")
        return await self.load_feed_page(user_id, 0, user_initiated)

    def preload_next_feed_page(self, user_id: str, current_page: int) -> asyncio.Task | None:
        """Start loading the page after ``current_page`` in the background."""
        next_page = current_page + 1
        if feed_key(user_id, next_page) in self._cache:
            return None
        task = asyncio.create_task(self.load_feed_page(user_id, next_page))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    # Profiles and counts

    async def refresh_user_profile(self, user_id: str, force: bool = False) -> UserProfile | None:
        try:
            return await self._store.get_profile(user_id, force=force)
        except SocialGraphError as e:
            logger.warning("Could not refresh profile of %s: %s", user_id, e)
            return None

    async def refresh_social_counts(self, user_id: str) -> None:
        self._cache.remove(follower_count_key(user_id))
        self._cache.remove(following_count_key(user_id))
        try:
            await asyncio.gather(
                self._store.get_follower_count(user_id),
                self._store.get_following_count(user_id),
            )
        except SocialGraphError as e:
            logger.warning("Could not refresh social counts of %s: %s", user_id, e)

    # Invalidation

    def purge_user(self, user_id: str) -> int:
        """Remove every cache entry scoped to ``user_id``."""
        removed = self._cache.invalidate(f"*:{user_id}")
        removed += self._cache.invalidate(f"*:{user_id}:*")
        return removed

    def scoped_keys(self, user_id: str) -> list[str]:
        keys = set(self._cache.keys(f"*:{user_id}"))
        keys.update(self._cache.keys(f"*:{user_id}:*"))
        return sorted(keys)

    def _invalidate_feed_items(self, item_id: str) -> int:
        removed = 0
        for key in self._cache.keys("feed:"):
            items = self._cache.get(key, list) or []
            if any(isinstance(item, FeedItem) and item.item_id == item_id for item in items):
                self._cache.remove(key)
                removed += 1
        return removed

    def handle_social_interaction(
        self, type: SocialInteractionType, user_id: str, target_id: str
    ) -> int:
        """Invalidate what an interaction made stale.

        Follow changes drop both users' lists, counts, statuses and feeds.
        Blocks purge everything scoped to either user. Likes, comments and
        shares drop the cached feed pages showing the item.

        Returns:
            Number of cache entries removed
        """
        if type in (SocialInteractionType.FOLLOW, SocialInteractionType.UNFOLLOW):
            removed = self._store.invalidate_user(user_id) + self._store.invalidate_user(target_id)
            removed += self._cache.invalidate(f"feed:activity:{user_id}:")
            removed += self._cache.invalidate(f"feed:activity:{target_id}:")
        elif type in (SocialInteractionType.BLOCK, SocialInteractionType.UNBLOCK):
            removed = self.purge_user(user_id) + self.purge_user(target_id)
        else:
            removed = self._invalidate_feed_items(target_id)
        logger.debug("%s by %s on %s invalidated %d entries", type.value, user_id, target_id, removed)
        return removed

    async def _consume_interactions(self, subscription: Subscription[SocialInteractionEvent]) -> None:
        async for event in subscription:
            self.handle_social_interaction(event.type, event.user_id, event.target_id)

    # Lifecycle

    async def handle_app_launch(self) -> None:
        logger.info("Starting cache coordinator")
        self.optimize_cache()
        if self._maintenance_task is None:
            self._maintenance_task = asyncio.create_task(self._maintenance_loop())
        if self._interaction_events is not None and self._interaction_task is None:
            self._interactions = self._interaction_events.subscribe()
            self._interaction_task = asyncio.create_task(
                self._consume_interactions(self._interactions)
            )

    async def handle_app_become_active(self) -> None:
        if self.current_user_id is None:
            return
        await asyncio.gather(
            self.refresh_feed(self.current_user_id),
            self.refresh_user_profile(self.current_user_id),
        )

    async def handle_user_login(self, user_id: str) -> None:
        logger.info("Warming cache for %s", user_id)
        self.current_user_id = user_id
        await asyncio.gather(
            self.refresh_user_profile(user_id),
            self.refresh_feed(user_id),
            self.refresh_social_counts(user_id),
        )

    async def handle_user_logout(self) -> int:
        """Purge the logged-out user's entries and stop tracking them."""
        user_id, self.current_user_id = self.current_user_id, None
        if user_id is None:
            return 0
        removed = self.purge_user(user_id)
        logger.info("Purged %d cache entries for %s", removed, user_id)
        return removed

    async def shutdown(self) -> None:
        if self._interactions is not None and self._interaction_events is not None:
            await self._interaction_events.unsubscribe(self._interactions)
        tasks = [self._maintenance_task, self._interaction_task, *self._background]
        for task in tasks:
            if task is not None:
                task.cancel()
        await asyncio.gather(*(t for t in tasks if t is not None), return_exceptions=True)
        self._maintenance_task = self._interaction_task = self._interactions = None

    async def _maintenance_loop(self) -> None:
        while True:
            await asyncio.sleep(self._settings.cache_sweep_interval)
            self.optimize_cache()
            await self.get_cache_health_report()

    # Health

    def _recommendations(self, hit_rate: float, eviction_count: int, total_size: int) -> list[str]:
        recommendations = []
        if hit_rate < LOW_HIT_RATE:
            recommendations.append("Consider increasing cache TTL for better hit rates")
        if eviction_count > HIGH_EVICTION_COUNT:
            recommendations.append("High eviction count - consider increasing cache size")
        if total_size > self._settings.cache_max_size_bytes:
            recommendations.append("Cache is over its size budget - run optimization")
        return recommendations

    async def get_cache_health_report(self, user_id: str | None = None) -> CacheHealthReport:
        """Sweep expired entries and report on the cache.

        With ``user_id`` the entry count only covers that user's entries;
        the other figures always describe the whole cache. The report is
        also published on ``health_events``.
        """
        expired = self._cache.remove_expired()
        stats = self._cache.statistics
        report = CacheHealthReport(
            user_id=user_id,
            total_entries=len(self.scoped_keys(user_id)) if user_id else stats.total_entries,
            total_size=stats.total_size,
            hit_rate=stats.hit_rate,
            miss_rate=stats.miss_rate,
            eviction_count=stats.eviction_count,
            expired_entries=expired,
            recommended_actions=self._recommendations(
                stats.hit_rate, stats.eviction_count, stats.total_size
            ),
            generated_at=self._clock.now(),
        )
        return await self.health_events.publish(report)

    def optimize_cache(self) -> int:
        """Sweep expired entries and shed low-priority data when over budget.

        Returns:
            Number of entries removed
        """
        if self._optimizing:
            return 0
        self._optimizing = True
        try:
            removed = self._cache.remove_expired()
            if self._cache.statistics.total_size > self._settings.cache_max_size_bytes:
                logger.info("Cache over size budget, dropping low-priority entries")
                for prefix in LOW_PRIORITY_PREFIXES:
                    removed += self._cache.invalidate(prefix)
                for key in self._cache.keys("feed:"):
                    match = FEED_PAGE_PATTERN.match(key)
                    if match and int(match.group(1)) >= KEPT_FEED_PAGES:
                        self._cache.remove(key)
                        removed += 1
            return removed
        finally:
            self._optimizing = False
