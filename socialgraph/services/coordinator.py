import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable
from datetime import timedelta
from typing import TypeVar

from socialgraph.config import Settings
from socialgraph.errors import (
    ConflictError,
    Duplicate,
    PrivacyRestriction,
    SpamDetected,
    Unauthorized,
    ValidationError,
)
from socialgraph.models.events import (
    RelationshipChangeEvent,
    RelationshipChangeKind,
    SocialInteractionEvent,
    SocialInteractionType,
)
from socialgraph.models.follow_request import FollowRequest, FollowRequestStatus
from socialgraph.models.rate_limit import RateLimitAction
from socialgraph.models.relationship import (
    Direction,
    Relationship,
    RelationshipState,
    RelationshipStatus,
)
from socialgraph.models.spam import SpamCheckAction, SpamReason
from socialgraph.models.user import UserPage, UserProfile, is_valid_user_id
from socialgraph.services.anti_spam import AntiSpamEngine
from socialgraph.services.fan_out import SyncFanOut
from socialgraph.services.rate_limiter import RateLimiter
from socialgraph.services.relationship_store import RelationshipStore
from socialgraph.utils.locks import PairSerializer

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SocialGraphCoordinator:
    """Entry point for every social graph operation.

    Each mutating operation runs under a per-pair guard, passes the rate
    limiter (and for follows the anti-spam engine), writes through the
    ``RelationshipStore`` and then publishes the change.

    Follows and follow requests are gated by both the rate limiter and the
    anti-spam engine. Unfollow, block, mute and request responses are only
    rate limited so that a flagged user can still withdraw from the graph.
    Unblock and unmute are not gated at all.
    """

    def __init__(
        self,
        store: RelationshipStore,
        rate_limiter: RateLimiter,
        anti_spam: AntiSpamEngine,
        relationship_events: SyncFanOut[RelationshipChangeEvent],
        interaction_events: SyncFanOut[SocialInteractionEvent],
        settings: Settings | None = None,
    ) -> None:
        self._store = store
        self._rate_limiter = rate_limiter
        self._anti_spam = anti_spam
        self.relationship_events = relationship_events
        self.interaction_events = interaction_events
        self._settings = settings or Settings()
        self._clock = store.clock
        self._serializer = PairSerializer()

    @property
    def store(self) -> RelationshipStore:
        return self._store

    @staticmethod
    def _validate(*user_ids: str) -> None:
        for user_id in user_ids:
            if not is_valid_user_id(user_id):
                raise ValidationError(f"Malformed user identifier: {user_id!r}")

    def _validate_pair(self, actor_id: str, user_id: str, verb: str) -> None:
        self._validate(actor_id, user_id)
        if actor_id == user_id:
            raise ValidationError(f"Users cannot {verb} themselves")

    async def _guarded(
        self, operation: str, a: str, b: str, factory: Callable[[], Awaitable[T]]
    ) -> T:
        return await self._serializer.run(a, b, (operation, a, b), factory)

    async def _check_spam(self, user_id: str, action: SpamCheckAction) -> None:
        result = await self._anti_spam.check_for_spam(user_id, action)
        if result.is_spam:
            logger.info("Rejected %s by %s as spam: %s", action.kind.value, user_id, result.reason)
            raise SpamDetected(result.reason)

    async def _publish(
        self,
        kind: RelationshipChangeKind,
        follower_id: str,
        following_id: str,
        relationship: Relationship | None = None,
        interaction: SocialInteractionType | None = None,
    ) -> None:
        now = self._clock.now()
        await self.relationship_events.publish(
            RelationshipChangeEvent(
                kind=kind,
                follower_id=follower_id,
                following_id=following_id,
                relationship=relationship,
                occurred_at=now,
            )
        )
        if interaction is not None:
            await self.interaction_events.publish(
                SocialInteractionEvent(
                    type=interaction,
                    user_id=follower_id,
                    target_id=following_id,
                    occurred_at=now,
                )
            )

    async def _ensure_not_blocked(self, actor_id: str, user_id: str) -> None:
        # Read from the remote store; blocks written by other workers must hold.
        forward, backward = await asyncio.gather(
            self._store.get_edge(actor_id, user_id, fresh=True),
            self._store.get_edge(user_id, actor_id, fresh=True),
        )
        if forward is not None and forward.status == RelationshipState.BLOCKED:
            raise PrivacyRestriction("Cannot follow a user you have blocked")
        if backward is not None and backward.status == RelationshipState.BLOCKED:
            raise PrivacyRestriction("Cannot follow a user who has blocked you")

    async def _ensure_not_following(self, actor_id: str, user_id: str) -> Relationship | None:
        edge = await self._store.get_edge(actor_id, user_id)
        if edge is not None and edge.status == RelationshipState.ACTIVE:
            raise Duplicate(f"Already following {user_id}")
        if await self._store.open_request(actor_id, user_id) is not None:
            raise Duplicate(f"A follow request to {user_id} is already pending")
        return edge

    # Follow / unfollow

    async def follow(self, actor_id: str, user_id: str) -> RelationshipStatus:
        """Follow a user, or send a follow request if their account is private.

        Args:
            actor_id: ID of the user doing the following
            user_id: ID of the user to follow

        Returns:
            FOLLOWING or MUTUAL_FOLLOW for a public account, PENDING when a
            follow request was created instead

        Raises:
            ValidationError: On a malformed identifier or a self-follow
            PrivacyRestriction: If either user blocks the other
            Duplicate: If already following or a request is pending
            RateLimitExceeded: If the follow rate limit is exhausted
            SpamDetected: If the actor is flagged as a spammer
        """
        self._validate_pair(actor_id, user_id, "follow")
        return await self._guarded(
            "follow", actor_id, user_id, lambda: self._follow(actor_id, user_id)
        )

    async def _follow(self, actor_id: str, user_id: str) -> RelationshipStatus:
        await self._ensure_not_blocked(actor_id, user_id)
        existing = await self._ensure_not_following(actor_id, user_id)

        await self._rate_limiter.acquire(RateLimitAction.FOLLOW, actor_id)
        await self._check_spam(actor_id, SpamCheckAction.follow(user_id))

        target = await self._store.get_profile(user_id)
        if target.is_private:
            await self._create_request(actor_id, user_id, None)
            return RelationshipStatus.PENDING

        # Following a muted user keeps them muted.
        relationship = Relationship.create(
            actor_id,
            user_id,
            notifications_enabled=existing is None,
            created_at=self._clock.now(),
        )
        relationship = await self._store.put_relationship(relationship)
        logger.info("%s followed %s", actor_id, user_id)
        await self._publish(
            RelationshipChangeKind.ADDED,
            actor_id,
            user_id,
            relationship,
            SocialInteractionType.FOLLOW,
        )

        reverse = await self._store.get_edge(user_id, actor_id)
        if reverse is not None and reverse.status == RelationshipState.ACTIVE:
            return RelationshipStatus.MUTUAL_FOLLOW
        return RelationshipStatus.FOLLOWING

    async def unfollow(self, actor_id: str, user_id: str) -> None:
        """Stop following a user. Not following is a successful no-op."""
        self._validate_pair(actor_id, user_id, "unfollow")
        await self._guarded(
            "unfollow", actor_id, user_id, lambda: self._unfollow(actor_id, user_id)
        )

    async def _unfollow(self, actor_id: str, user_id: str) -> None:
        edge = await self._store.get_edge(actor_id, user_id)
        if edge is None or edge.status != RelationshipState.ACTIVE:
            return

        await self._rate_limiter.acquire(RateLimitAction.UNFOLLOW, actor_id)
        if edge.notifications_enabled:
            await self._store.remove_relationship(actor_id, user_id)
        else:
            await self._store.put_relationship(
                edge.model_copy(
                    update={"status": RelationshipState.MUTED, "notifications_enabled": False}
                )
            )
        logger.info("%s unfollowed %s", actor_id, user_id)
        await self._publish(
            RelationshipChangeKind.REMOVED,
            actor_id,
            user_id,
            interaction=SocialInteractionType.UNFOLLOW,
        )

    # Follow requests

    async def _create_request(
        self, actor_id: str, user_id: str, message: str | None
    ) -> FollowRequest:
        now = self._clock.now()
        request = FollowRequest(
            id=str(uuid.uuid4()),
            requester_id=actor_id,
            target_id=user_id,
            created_at=now,
            expires_at=now + timedelta(days=self._settings.follow_request_expiry_days),
            message=message,
        )
        try:
            request = await self._store.create_request(request)
        except ConflictError as e:
            raise Duplicate(str(e)) from e
        logger.info("%s requested to follow %s", actor_id, user_id)
        return request

    async def request_follow(
        self, actor_id: str, user_id: str, message: str | None = None
    ) -> FollowRequest:
        """Send a follow request, optionally with a short message.

        Raises:
            ValidationError: On a malformed identifier or a self-request
            PrivacyRestriction: If either user blocks the other
            Duplicate: If already following or a request is pending
            RateLimitExceeded: If the follow request rate limit is exhausted
            SpamDetected: If the actor or the message is flagged as spam
        """
        self._validate_pair(actor_id, user_id, "follow")
        if message is not None and len(message) > 500:
            raise ValidationError("Follow request message is too long")
        return await self._guarded(
            "request_follow",
            actor_id,
            user_id,
            lambda: self._request_follow(actor_id, user_id, message),
        )

    async def _request_follow(
        self, actor_id: str, user_id: str, message: str | None
    ) -> FollowRequest:
        await self._ensure_not_blocked(actor_id, user_id)
        await self._ensure_not_following(actor_id, user_id)

        await self._rate_limiter.acquire(RateLimitAction.FOLLOW_REQUEST, actor_id)
        await self._check_spam(actor_id, SpamCheckAction.follow(user_id))
        if message:
            await self._check_spam(actor_id, SpamCheckAction.message(message))

        return await self._create_request(actor_id, user_id, message)

    async def respond_to_follow_request(
        self, actor_id: str, request_id: str, accept: bool
    ) -> FollowRequest:
        """Accept or reject a follow request addressed to ``actor_id``.

        Raises:
            NotFound: If the request does not exist
            Unauthorized: If ``actor_id`` is not the request's target
            ValidationError: If the request is no longer pending
            RateLimitExceeded: If the respond rate limit is exhausted
        """
        self._validate(actor_id)
        request = await self._store.get_request(request_id)
        if request.target_id != actor_id:
            raise Unauthorized("Only the requested user can respond to a follow request")
        return await self._guarded(
            "respond",
            request.requester_id,
            request.target_id,
            lambda: self._respond(actor_id, request_id, accept),
        )

    async def _respond(self, actor_id: str, request_id: str, accept: bool) -> FollowRequest:
        request = await self._store.get_request(request_id)
        if request.status != FollowRequestStatus.PENDING:
            raise ValidationError(f"Follow request is {request.status.value}")

        await self._rate_limiter.acquire(RateLimitAction.RESPOND_REQUEST, actor_id)
        if not accept:
            resolved = await self._resolve(request_id, FollowRequestStatus.REJECTED)
            logger.info("%s rejected follow request %s", actor_id, request_id)
            return resolved

        # Edge first: a failed write must leave the request pending.
        existing = await self._store.get_edge(request.requester_id, actor_id)
        relationship = await self._store.put_relationship(
            Relationship.create(
                request.requester_id,
                actor_id,
                notifications_enabled=existing is None,
                created_at=self._clock.now(),
            )
        )
        try:
            resolved = await self._resolve(request_id, FollowRequestStatus.ACCEPTED)
        except ValidationError:
            await self._restore_edge(request.requester_id, actor_id, existing)
            raise
        logger.info("%s accepted follow request %s", actor_id, request_id)

        await self._publish(
            RelationshipChangeKind.ADDED,
            request.requester_id,
            actor_id,
            relationship,
            SocialInteractionType.FOLLOW,
        )
        return resolved

    async def _resolve(self, request_id: str, status: FollowRequestStatus) -> FollowRequest:
        try:
            return await self._store.resolve_request(request_id, status)
        except ConflictError as e:
            raise ValidationError(str(e)) from e

    async def _restore_edge(
        self, follower_id: str, following_id: str, previous: Relationship | None
    ) -> None:
        if previous is None:
            await self._store.remove_relationship(follower_id, following_id)
        else:
            await self._store.put_relationship(previous)
        logger.warning("Rolled back edge %s -> %s", follower_id, following_id)

    async def cancel_follow_request(self, actor_id: str, request_id: str) -> FollowRequest:
        """Withdraw a pending request sent by ``actor_id``."""
        self._validate(actor_id)
        request = await self._store.get_request(request_id)
        if request.requester_id != actor_id:
            raise Unauthorized("Only the requester can cancel a follow request")
        if request.status != FollowRequestStatus.PENDING:
            raise ValidationError(f"Follow request is {request.status.value}")
        return await self._resolve(request_id, FollowRequestStatus.REJECTED)

    async def get_pending_follow_requests(self, user_id: str) -> list[FollowRequest]:
        self._validate(user_id)
        return await self._store.open_requests(user_id, Direction.INCOMING)

    async def get_sent_follow_requests(self, user_id: str) -> list[FollowRequest]:
        self._validate(user_id)
        return await self._store.open_requests(user_id, Direction.OUTGOING)

    async def check_relationship(self, user_id: str, other_id: str) -> RelationshipStatus:
        self._validate_pair(user_id, other_id, "relate to")
        return await self._store.relationship_status(user_id, other_id)

    # Block / mute

    async def block_user(self, actor_id: str, user_id: str) -> None:
        """Block a user.

        Removes follows in both directions, rejects open follow requests in
        both directions and prevents either user from following the other
        until the block is lifted. Blocking an already blocked user is a
        no-op.
        """
        self._validate_pair(actor_id, user_id, "block")
        await self._guarded(
            "block", actor_id, user_id, lambda: self._block(actor_id, user_id)
        )

    async def _block(self, actor_id: str, user_id: str) -> None:
        forward = await self._store.get_edge(actor_id, user_id)
        if forward is not None and forward.status == RelationshipState.BLOCKED:
            return

        await self._rate_limiter.acquire(RateLimitAction.BLOCK, actor_id)

        for requester_id, target_id in ((actor_id, user_id), (user_id, actor_id)):
            request = await self._store.open_request(requester_id, target_id)
            if request is not None:
                try:
                    await self._store.resolve_request(request.id, FollowRequestStatus.REJECTED)
                except ConflictError:
                    logger.info("Follow request %s resolved concurrently", request.id)

        backward = await self._store.get_edge(user_id, actor_id)
        if backward is not None and backward.status != RelationshipState.BLOCKED:
            await self._store.remove_relationship(user_id, actor_id)
            await self._publish(RelationshipChangeKind.REMOVED, user_id, actor_id)

        relationship = await self._store.put_relationship(
            Relationship.create(
                actor_id,
                user_id,
                status=RelationshipState.BLOCKED,
                notifications_enabled=False,
                created_at=self._clock.now(),
            )
        )
        logger.info("%s blocked %s", actor_id, user_id)
        await self._publish(
            RelationshipChangeKind.BLOCKED,
            actor_id,
            user_id,
            relationship,
            SocialInteractionType.BLOCK,
        )

    async def unblock_user(self, actor_id: str, user_id: str) -> None:
        """Lift a block. Unblocking a user who is not blocked is a no-op."""
        self._validate_pair(actor_id, user_id, "unblock")
        await self._guarded(
            "unblock", actor_id, user_id, lambda: self._unblock(actor_id, user_id)
        )

    async def _unblock(self, actor_id: str, user_id: str) -> None:
        edge = await self._store.get_edge(actor_id, user_id)
        if edge is None or edge.status != RelationshipState.BLOCKED:
            return
        await self._store.remove_relationship(actor_id, user_id)
        logger.info("%s unblocked %s", actor_id, user_id)
        await self._publish(
            RelationshipChangeKind.UNBLOCKED,
            actor_id,
            user_id,
            interaction=SocialInteractionType.UNBLOCK,
        )

    async def mute_user(self, actor_id: str, user_id: str) -> None:
        """Silence notifications from a user without changing who follows whom."""
        self._validate_pair(actor_id, user_id, "mute")
        await self._guarded(
            "mute", actor_id, user_id, lambda: self._mute(actor_id, user_id)
        )

    async def _mute(self, actor_id: str, user_id: str) -> None:
        edge = await self._store.get_edge(actor_id, user_id)
        if edge is not None and not edge.notifications_enabled:
            return

        await self._rate_limiter.acquire(RateLimitAction.MUTE, actor_id)
        if edge is None:
            edge = Relationship.create(
                actor_id,
                user_id,
                status=RelationshipState.MUTED,
                notifications_enabled=False,
                created_at=self._clock.now(),
            )
        else:
            edge = edge.model_copy(update={"notifications_enabled": False})
        relationship = await self._store.put_relationship(edge)
        logger.info("%s muted %s", actor_id, user_id)
        await self._publish(RelationshipChangeKind.MUTED, actor_id, user_id, relationship)

    async def unmute_user(self, actor_id: str, user_id: str) -> None:
        self._validate_pair(actor_id, user_id, "unmute")
        await self._guarded(
            "unmute", actor_id, user_id, lambda: self._unmute(actor_id, user_id)
        )

    async def _unmute(self, actor_id: str, user_id: str) -> None:
        edge = await self._store.get_edge(actor_id, user_id)
        if edge is None or edge.notifications_enabled or edge.status == RelationshipState.BLOCKED:
            return

        relationship = None
        if edge.status == RelationshipState.MUTED:
            await self._store.remove_relationship(actor_id, user_id)
        else:
            relationship = await self._store.put_relationship(
                edge.model_copy(update={"notifications_enabled": True})
            )
        logger.info("%s unmuted %s", actor_id, user_id)
        await self._publish(RelationshipChangeKind.UNMUTED, actor_id, user_id, relationship)

    async def get_blocked_users(self, user_id: str) -> list[str]:
        self._validate(user_id)
        edges = await self._store.outgoing_edges(user_id, RelationshipState.BLOCKED)
        return [edge.following_id for edge in edges]

    async def get_muted_users(self, user_id: str) -> list[str]:
        self._validate(user_id)
        edges = await self._store.outgoing_edges(user_id)
        return [
            edge.following_id
            for edge in edges
            if edge.status != RelationshipState.BLOCKED and not edge.notifications_enabled
        ]

    # Reads

    async def get_followers(
        self, user_id: str, limit: int = 50, cursor: str | None = None
    ) -> UserPage:
        self._validate(user_id)
        return await self._store.get_followers(user_id, limit, cursor)

    async def get_following(
        self, user_id: str, limit: int = 50, cursor: str | None = None
    ) -> UserPage:
        self._validate(user_id)
        return await self._store.get_following(user_id, limit, cursor)

    async def get_mutual_followers(self, user_id: str, limit: int = 20) -> list[UserProfile]:
        self._validate(user_id)
        return await self._store.get_mutual_followers(user_id, limit)

    async def get_follower_count(self, user_id: str) -> int:
        self._validate(user_id)
        return await self._store.get_follower_count(user_id)

    async def get_following_count(self, user_id: str) -> int:
        self._validate(user_id)
        return await self._store.get_following_count(user_id)

    async def clear_relationship_cache(self) -> None:
        await self._store.clear()

    async def preload_relationships(self, user_ids: list[str]) -> None:
        self._validate(*user_ids)
        await self._store.preload(user_ids)

    async def report_spam(self, actor_id: str, target_id: str, reason: SpamReason) -> float:
        """Report ``target_id`` as a spammer.

        Returns:
            The target's new spam score
        """
        self._validate_pair(actor_id, target_id, "report")
        await self._rate_limiter.acquire(RateLimitAction.REPORT, actor_id)
        return await self._anti_spam.report_spam(actor_id, target_id, reason)
