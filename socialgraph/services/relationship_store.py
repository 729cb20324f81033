import asyncio
import logging
from collections import OrderedDict
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import TypeVar

from socialgraph.config import Settings
from socialgraph.errors import ConflictError
from socialgraph.models.follow_request import FollowRequest, FollowRequestStatus
from socialgraph.models.relationship import (
    Direction,
    Relationship,
    RelationshipState,
    RelationshipStatus,
)
from socialgraph.models.user import UserPage, UserProfile
from socialgraph.services.cache import CacheEngine
from socialgraph.services.remote_store import RemoteSocialStore
from socialgraph.utils.clock import Clock, SystemClock
from socialgraph.utils.locks import AsyncRWLock
from socialgraph.utils.remote import call_with_deadline, fetch_with_retry

logger = logging.getLogger(__name__)

T = TypeVar("T")

PAGE_SIZE = 100


def profile_key(user_id: str) -> str:
    return f"profile:{user_id}"


def follower_count_key(user_id: str) -> str:
    return f"follower_count:{user_id}"


def following_count_key(user_id: str) -> str:
    return f"following_count:{user_id}"


def relationship_key(user_id: str, other_id: str) -> str:
    return f"relationship:{user_id}:{other_id}"


class RelationshipStore:
    """Local view of the social graph in front of the remote store.

    The store keeps the outgoing edges and outgoing follow requests of the
    users it has seen, loaded lazily from the remote store on first use and
    reloaded once older than ``relationship_ttl``. At most
    ``graph_max_users`` users are held; the least recently loaded is dropped
    first. Writes go to the remote store first and are applied locally only
    once they succeed. No lock is held while waiting on the remote store.

    Follower and following lists, counts, profiles and relationship
    statuses are served cache-first through a ``CacheEngine``.
    """

    def __init__(
        self,
        remote: RemoteSocialStore,
        cache: CacheEngine,
        settings: Settings | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._remote = remote
        self._cache = cache
        self._settings = settings or Settings()
        self._clock = clock or SystemClock()
        self._lock = AsyncRWLock()
        # follower_id -> following_id -> edge, for loaded users only
        self._edges: dict[str, dict[str, Relationship]] = {}
        self._requests: dict[str, FollowRequest] = {}
        self._loaded: OrderedDict[str, datetime] = OrderedDict()
        self._versions: dict[str, int] = {}

    @property
    def clock(self) -> Clock:
        return self._clock

    @property
    def loaded_users(self) -> int:
        return len(self._loaded)

    async def _write(self, factory: Callable[[], Awaitable[T]]) -> T:
        return await call_with_deadline(factory, self._settings.network_timeout)

    async def _read(self, factory: Callable[[], Awaitable[T]], description: str) -> T:
        return await fetch_with_retry(
            factory,
            timeout=self._settings.network_timeout,
            attempts=self._settings.read_retry_attempts,
            backoff=self._settings.read_retry_backoff,
            description=description,
        )

    async def _fetch_all(self, user_id: str, direction: Direction) -> list[Relationship]:
        relationships: list[Relationship] = []
        cursor = None
        while True:
            page = await self._read(
                lambda: self._remote.fetch_relationships(
                    user_id, direction, cursor, PAGE_SIZE
                ),
                f"fetch {direction.value} relationships of {user_id}",
            )
            relationships.extend(page.relationships)
            if not page.next_cursor:
                return relationships
            cursor = page.next_cursor

    def _touch(self, *user_ids: str) -> None:
        # Only users with a load in flight or done are versioned.
        for user_id in user_ids:
            if user_id in self._versions:
                self._versions[user_id] += 1

    def _is_fresh(self, user_id: str) -> bool:
        loaded_at = self._loaded.get(user_id)
        if loaded_at is None:
            return False
        age = (self._clock.now() - loaded_at).total_seconds()
        return age < self._settings.relationship_ttl

    def _forget(self, user_id: str) -> None:
        self._edges.pop(user_id, None)
        self._requests = {
            request_id: request
            for request_id, request in self._requests.items()
            if request.requester_id != user_id
        }

    def _evict(self) -> None:
        while len(self._loaded) > self._settings.graph_max_users:
            user_id, _ = self._loaded.popitem(last=False)
            self._forget(user_id)
            self._versions.pop(user_id, None)
            logger.debug("Evicted %s from the local graph", user_id)

    async def ensure_loaded(self, user_id: str) -> None:
        """Load ``user_id``'s outgoing edges and requests unless freshly known."""
        if self._is_fresh(user_id):
            return
        while True:
            version = self._versions.setdefault(user_id, 0)
            edges, requests = await asyncio.gather(
                self._fetch_all(user_id, Direction.OUTGOING),
                self._read(
                    lambda: self._remote.fetch_follow_requests(user_id, Direction.OUTGOING),
                    f"fetch follow requests of {user_id}",
                ),
            )
            async with self._lock.write():
                # A local write landed while we were fetching; fetch again.
                if self._versions.get(user_id) != version:
                    continue
                self._forget(user_id)
                self._edges[user_id] = {edge.following_id: edge for edge in edges}
                for request in requests:
                    self._requests[request.id] = request
                self._loaded[user_id] = self._clock.now()
                self._loaded.move_to_end(user_id)
                self._evict()
            logger.debug("Loaded %d edges for %s", len(edges), user_id)
            return

    async def get_edge(
        self, follower_id: str, following_id: str, fresh: bool = False
    ) -> Relationship | None:
        """The edge from ``follower_id`` to ``following_id``, if any.

        Args:
            follower_id: ID of the user the edge starts at
            following_id: ID of the user the edge points to
            fresh: Read the edge from the remote store instead of the local
                view, and update the local view with what was read

        Returns:
            The edge, or None if there is none
        """
        if fresh:
            return await self._refresh_edge(follower_id, following_id)
        await self.ensure_loaded(follower_id)
        async with self._lock.read():
            return self._edges.get(follower_id, {}).get(following_id)

    async def _refresh_edge(self, follower_id: str, following_id: str) -> Relationship | None:
        edge = await self._read(
            lambda: self._remote.fetch_relationship(follower_id, following_id),
            f"fetch relationship {follower_id} -> {following_id}",
        )
        changed = False
        async with self._lock.write():
            if follower_id in self._loaded:
                edges = self._edges.setdefault(follower_id, {})
                changed = edges.get(following_id) != edge
                if edge is None:
                    edges.pop(following_id, None)
                else:
                    edges[following_id] = edge
        if changed:
            logger.info("Local edge %s -> %s was stale", follower_id, following_id)
            self.invalidate_pair(follower_id, following_id)
        return edge

    async def outgoing_edges(
        self, user_id: str, state: RelationshipState | None = None
    ) -> list[Relationship]:
        await self.ensure_loaded(user_id)
        async with self._lock.read():
            return [
                edge
                for edge in self._edges.get(user_id, {}).values()
                if state is None or edge.status == state
            ]

    async def put_relationship(self, relationship: Relationship) -> Relationship:
        stored = await self._write(lambda: self._remote.create_relationship(relationship))
        async with self._lock.write():
            if stored.follower_id in self._loaded:
                self._edges.setdefault(stored.follower_id, {})[stored.following_id] = stored
            self._touch(stored.follower_id)
        self.invalidate_pair(stored.follower_id, stored.following_id)
        return stored

    async def remove_relationship(self, follower_id: str, following_id: str) -> bool:
        existed = await self._write(
            lambda: self._remote.delete_relationship(follower_id, following_id)
        )
        async with self._lock.write():
            local = self._edges.get(follower_id, {}).pop(following_id, None)
            existed = local is not None or existed
            self._touch(follower_id)
        self.invalidate_pair(follower_id, following_id)
        return existed

    # Follow requests

    async def _expire_if_due(self, request: FollowRequest) -> FollowRequest:
        if request.status != FollowRequestStatus.PENDING or not request.is_expired(
            self._clock.now()
        ):
            return request
        try:
            expired = await self._write(
                lambda: self._remote.resolve_follow_request(
                    request.id, FollowRequestStatus.EXPIRED
                )
            )
        except ConflictError:
            expired = await self._read(
                lambda: self._remote.fetch_follow_request(request.id),
                f"fetch follow request {request.id}",
            )
        logger.info("Follow request %s expired", request.id)
        await self._remember_request(expired)
        return expired

    async def _remember_request(self, request: FollowRequest) -> None:
        async with self._lock.write():
            if request.requester_id in self._loaded:
                self._requests[request.id] = request
            self._touch(request.requester_id)
        self.invalidate_pair(request.requester_id, request.target_id)

    async def create_request(self, request: FollowRequest) -> FollowRequest:
        stored = await self._write(lambda: self._remote.create_follow_request(request))
        await self._remember_request(stored)
        return stored

    async def resolve_request(
        self, request_id: str, status: FollowRequestStatus
    ) -> FollowRequest:
        try:
            resolved = await self._write(
                lambda: self._remote.resolve_follow_request(request_id, status)
            )
        except ConflictError:
            # Resolved elsewhere; pick up its current state before reporting.
            current = await self._read(
                lambda: self._remote.fetch_follow_request(request_id),
                f"fetch follow request {request_id}",
            )
            await self._remember_request(current)
            raise
        await self._remember_request(resolved)
        return resolved

    async def get_request(self, request_id: str) -> FollowRequest:
        """Look up a request, expiring it first if its time has passed.

        Raises:
            NotFound: If the request does not exist
        """
        async with self._lock.read():
            request = self._requests.get(request_id)
        if request is None:
            request = await self._read(
                lambda: self._remote.fetch_follow_request(request_id),
                f"fetch follow request {request_id}",
            )
            await self._remember_request(request)
        return await self._expire_if_due(request)

    async def open_request(self, requester_id: str, target_id: str) -> FollowRequest | None:
        await self.ensure_loaded(requester_id)
        async with self._lock.read():
            candidates = [
                request
                for request in self._requests.values()
                if request.requester_id == requester_id
                and request.target_id == target_id
                and request.status == FollowRequestStatus.PENDING
            ]
        for request in candidates:
            request = await self._expire_if_due(request)
            if request.status == FollowRequestStatus.PENDING:
                return request
        return None

    async def open_requests(self, user_id: str, direction: Direction) -> list[FollowRequest]:
        """Open requests received (INCOMING) or sent (OUTGOING) by ``user_id``."""
        requests = await self._read(
            lambda: self._remote.fetch_follow_requests(user_id, direction),
            f"fetch {direction.value} follow requests of {user_id}",
        )
        open_requests = []
        for request in requests:
            await self._remember_request(request)
            request = await self._expire_if_due(request)
            if request.status == FollowRequestStatus.PENDING:
                open_requests.append(request)
        return open_requests

    # Cached reads

    async def relationship_status(self, user_id: str, other_id: str) -> RelationshipStatus:
        key = relationship_key(user_id, other_id)
        if (cached := self._cache.get(key, RelationshipStatus)) is not None:
            return cached

        forward = await self.get_edge(user_id, other_id)
        backward = await self.get_edge(other_id, user_id)
        pending = None
        if forward is None or forward.status == RelationshipState.MUTED:
            pending = await self.open_request(user_id, other_id)

        status = RelationshipStatus.NOT_FOLLOWING
        if RelationshipState.BLOCKED in (
            forward and forward.status,
            backward and backward.status,
        ):
            status = RelationshipStatus.BLOCKED
        elif forward is not None and forward.status == RelationshipState.ACTIVE:
            if backward is not None and backward.status == RelationshipState.ACTIVE:
                status = RelationshipStatus.MUTUAL_FOLLOW
            else:
                status = RelationshipStatus.FOLLOWING
        elif pending is not None:
            status = RelationshipStatus.PENDING
        elif forward is not None and forward.status == RelationshipState.MUTED:
            status = RelationshipStatus.MUTED

        self._cache.set(key, status, self._settings.relationship_ttl)
        return status

    async def get_profile(self, user_id: str, force: bool = False) -> UserProfile:
        key = profile_key(user_id)
        if not force and (cached := self._cache.get(key, UserProfile)) is not None:
            return cached
        profile = await self._read(
            lambda: self._remote.fetch_profile(user_id), f"fetch profile of {user_id}"
        )
        self._cache.set(key, profile, self._settings.profile_ttl)
        return profile

    async def _profiles(self, user_ids: list[str]) -> list[UserProfile]:
        return list(await asyncio.gather(*(self.get_profile(u) for u in user_ids)))

    async def _list(
        self, user_id: str, direction: Direction, limit: int, cursor: str | None
    ) -> UserPage:
        prefix = "followers" if direction == Direction.INCOMING else "following"
        key = f"{prefix}:{user_id}:{cursor or 0}:{limit}"
        if (cached := self._cache.get(key, UserPage)) is not None:
            return cached

        page = await self._read(
            lambda: self._remote.fetch_relationships(user_id, direction, cursor, limit),
            f"fetch {prefix} of {user_id}",
        )
        other_ids = [
            edge.follower_id if direction == Direction.INCOMING else edge.following_id
            for edge in page.relationships
            if edge.status == RelationshipState.ACTIVE
        ]
        users = UserPage(users=await self._profiles(other_ids), next_cursor=page.next_cursor)
        self._cache.set(key, users, self._settings.list_ttl)
        return users

    async def get_followers(
        self, user_id: str, limit: int = 50, cursor: str | None = None
    ) -> UserPage:
        return await self._list(user_id, Direction.INCOMING, limit, cursor)

    async def get_following(
        self, user_id: str, limit: int = 50, cursor: str | None = None
    ) -> UserPage:
        return await self._list(user_id, Direction.OUTGOING, limit, cursor)

    async def get_mutual_followers(self, user_id: str, limit: int = 20) -> list[UserProfile]:
        key = f"mutual:{user_id}:{limit}"
        if (cached := self._cache.get(key, list)) is not None:
            return cached

        incoming, outgoing = await asyncio.gather(
            self._fetch_all(user_id, Direction.INCOMING),
            self._fetch_all(user_id, Direction.OUTGOING),
        )
        following = {
            edge.following_id for edge in outgoing if edge.status == RelationshipState.ACTIVE
        }
        mutual = [
            edge.follower_id
            for edge in incoming
            if edge.status == RelationshipState.ACTIVE and edge.follower_id in following
        ]
        profiles = await self._profiles(mutual[:limit])
        self._cache.set(key, profiles, self._settings.list_ttl)
        return profiles

    async def _count(self, key: str, user_id: str, followers: bool) -> int:
        if (cached := self._cache.get(key, int)) is not None:
            return cached
        profile = await self.get_profile(user_id, force=True)
        count = profile.follower_count if followers else profile.following_count
        self._cache.set(key, count, self._settings.count_ttl)
        return count

    async def get_follower_count(self, user_id: str) -> int:
        return await self._count(follower_count_key(user_id), user_id, followers=True)

    async def get_following_count(self, user_id: str) -> int:
        return await self._count(following_count_key(user_id), user_id, followers=False)

    # Invalidation

    def invalidate_user(self, user_id: str) -> int:
        """Drop every cached list, count, profile and status of ``user_id``."""
        removed = 0
        for prefix in ("followers", "following", "mutual"):
            removed += self._cache.invalidate(f"{prefix}:{user_id}:")
        for key in (
            profile_key(user_id),
            follower_count_key(user_id),
            following_count_key(user_id),
        ):
            if key in self._cache:
                removed += 1
            self._cache.remove(key)
        removed += self._cache.invalidate(f"relationship:{user_id}:")
        removed += self._cache.invalidate(f"relationship:*:{user_id}")
        return removed

    def invalidate_pair(self, user_id: str, other_id: str) -> None:
        self.invalidate_user(user_id)
        self.invalidate_user(other_id)

    async def clear(self) -> None:
        """Forget the local graph and every cached relationship read."""
        async with self._lock.write():
            self._edges.clear()
            self._requests.clear()
            self._loaded.clear()
            self._versions.clear()
        for prefix in (
            "followers:",
            "following:",
            "mutual:",
            "follower_count:",
            "following_count:",
            "relationship:",
        ):
            self._cache.invalidate(prefix)
        logger.info("Cleared relationship cache")

    async def preload(self, user_ids: list[str]) -> None:
        await asyncio.gather(*(self.ensure_loaded(u) for u in user_ids))
        await asyncio.gather(
            *(self.get_follower_count(u) for u in user_ids),
            *(self.get_following_count(u) for u in user_ids),
        )
