from abc import ABC, abstractmethod

from socialgraph.errors import ConflictError, NotFound
from socialgraph.models.feed import FeedItem
from socialgraph.models.follow_request import FollowRequest, FollowRequestStatus
from socialgraph.models.relationship import (
    Direction,
    Relationship,
    RelationshipPage,
    RelationshipState,
    make_relationship_id,
)
from socialgraph.models.user import UserProfile


class RemoteSocialStore(ABC):
    """Remote persistent store for the social graph.

    This abstract class defines the operations the graph core needs from
    whatever backend holds the canonical data. Every method may raise
    ``NetworkError``, ``NotFound`` or ``ConflictError``.
    """

    @abstractmethod
    async def create_relationship(self, relationship: Relationship) -> Relationship:
        """Create or replace the edge with ``relationship.id``."""
        raise NotImplementedError

    @abstractmethod
    async def delete_relationship(self, follower_id: str, following_id: str) -> bool:
        """Delete an edge.

        Returns:
            Whether an edge existed
        """
        raise NotImplementedError

    @abstractmethod
    async def fetch_relationship(
        self, follower_id: str, following_id: str
    ) -> Relationship | None:
        """The edge from ``follower_id`` to ``following_id``, if any."""
        raise NotImplementedError

    @abstractmethod
    async def fetch_relationships(
        self,
        user_id: str,
        direction: Direction,
        cursor: str | None = None,
        limit: int = 100,
    ) -> RelationshipPage:
        raise NotImplementedError

    @abstractmethod
    async def create_follow_request(self, request: FollowRequest) -> FollowRequest:
        """Store a new pending request.

        Raises:
            ConflictError: If a pending request already exists for the pair
        """
        raise NotImplementedError

    @abstractmethod
    async def resolve_follow_request(
        self, request_id: str, status: FollowRequestStatus
    ) -> FollowRequest:
        """Move a pending request to a terminal status.

        Raises:
            NotFound: If the request does not exist
            ConflictError: If the request is no longer pending
        """
        raise NotImplementedError

    @abstractmethod
    async def fetch_follow_request(self, request_id: str) -> FollowRequest:
        raise NotImplementedError

    @abstractmethod
    async def fetch_follow_requests(
        self, user_id: str, direction: Direction
    ) -> list[FollowRequest]:
        """Requests sent (OUTGOING) or received (INCOMING) by ``user_id``."""
        raise NotImplementedError

    @abstractmethod
    async def fetch_profile(self, user_id: str) -> UserProfile:
        raise NotImplementedError

    @abstractmethod
    async def fetch_feed_page(
        self, user_id: str, page: int, page_size: int
    ) -> list[FeedItem]:
        raise NotImplementedError


class InMemoryRemoteSocialStore(RemoteSocialStore):
    """Remote store kept in process memory, for tests and local runs."""

    def __init__(self) -> None:
        self.relationships: dict[str, Relationship] = {}
        self.requests: dict[str, FollowRequest] = {}
        self.profiles: dict[str, UserProfile] = {}
        self.feed_items: list[FeedItem] = []
        self.write_count = 0

    def add_profile(self, profile: UserProfile) -> None:
        self.profiles[profile.user_id] = profile

    async def create_relationship(self, relationship: Relationship) -> Relationship:
        self.relationships.pop(relationship.id, None)
        self.relationships[relationship.id] = relationship
        self.write_count += 1
        return relationship

    async def delete_relationship(self, follower_id: str, following_id: str) -> bool:
        existed = self.relationships.pop(make_relationship_id(follower_id, following_id), None)
        if existed is not None:
            self.write_count += 1
        return existed is not None

    async def fetch_relationship(
        self, follower_id: str, following_id: str
    ) -> Relationship | None:
        return self.relationships.get(make_relationship_id(follower_id, following_id))

    async def fetch_relationships(
        self,
        user_id: str,
        direction: Direction,
        cursor: str | None = None,
        limit: int = 100,
    ) -> RelationshipPage:
        if direction == Direction.OUTGOING:
            matching = [r for r in self.relationships.values() if r.follower_id == user_id]
        else:
            matching = [r for r in self.relationships.values() if r.following_id == user_id]
        matching.reverse()
        offset = int(cursor) if cursor else 0
        page = matching[offset : offset + limit]
        next_offset = offset + len(page)
        return RelationshipPage(
            relationships=page,
            next_cursor=str(next_offset) if next_offset < len(matching) else None,
        )

    async def create_follow_request(self, request: FollowRequest) -> FollowRequest:
        for existing in self.requests.values():
            if (
                existing.requester_id == request.requester_id
                and existing.target_id == request.target_id
                and existing.status == FollowRequestStatus.PENDING
            ):
                raise ConflictError("A pending follow request already exists")
        self.requests[request.id] = request
        self.write_count += 1
        return request

    async def resolve_follow_request(
        self, request_id: str, status: FollowRequestStatus
    ) -> FollowRequest:
        request = await self.fetch_follow_request(request_id)
        if request.status != FollowRequestStatus.PENDING:
            raise ConflictError(f"Follow request is already {request.status.value}")
        resolved = request.model_copy(update={"status": status})
        self.requests[request_id] = resolved
        self.write_count += 1
        return resolved

    async def fetch_follow_request(self, request_id: str) -> FollowRequest:
        try:
            return self.requests[request_id]
        except KeyError:
            raise NotFound(f"Follow request {request_id} not found")

    async def fetch_follow_requests(
        self, user_id: str, direction: Direction
    ) -> list[FollowRequest]:
        if direction == Direction.OUTGOING:
            return [r for r in self.requests.values() if r.requester_id == user_id]
        return [r for r in self.requests.values() if r.target_id == user_id]

    async def fetch_profile(self, user_id: str) -> UserProfile:
        try:
            profile = self.profiles[user_id]
        except KeyError:
            raise NotFound(f"User {user_id} not found")
        followers = sum(
            1
            for r in self.relationships.values()
            if r.following_id == user_id and r.status == RelationshipState.ACTIVE
        )
        following = sum(
            1
            for r in self.relationships.values()
            if r.follower_id == user_id and r.status == RelationshipState.ACTIVE
        )
        return profile.model_copy(
            update={"follower_count": followers, "following_count": following}
        )

    async def fetch_feed_page(
        self, user_id: str, page: int, page_size: int
    ) -> list[FeedItem]:
        followed = {
            r.following_id
            for r in self.relationships.values()
            if r.follower_id == user_id and r.status == RelationshipState.ACTIVE
        }
        authors = followed | {user_id}
        items = sorted(
            (item for item in self.feed_items if item.user_id in authors),
            key=lambda item: item.created_at,
            reverse=True,
        )
        return items[page * page_size : (page + 1) * page_size]
