import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from socialgraph.dependencies import SocialGraphContainer
from socialgraph.errors import (
    Duplicate,
    NetworkError,
    NotFound,
    PrivacyRestriction,
    RateLimitExceeded,
    SpamDetected,
    Unauthorized,
    ValidationError,
)
from socialgraph.models.events import RelationshipChangeKind, SocialInteractionType
from socialgraph.models.follow_request import FollowRequestStatus
from socialgraph.models.relationship import Relationship, RelationshipState, RelationshipStatus
from socialgraph.models.spam import SpamReason
from socialgraph.services.coordinator import SocialGraphCoordinator
from socialgraph.services.remote_store import InMemoryRemoteSocialStore
from socialgraph.utils.clock import ManualClock


@pytest.mark.unit
class TestFollow:
    @pytest.mark.asyncio
    async def test_follow_public_user(
        self,
        coordinator: SocialGraphCoordinator,
        remote: InMemoryRemoteSocialStore,
        container: SocialGraphContainer,
    ):
        # Arrange
        changes = container.relationship_events.subscribe()
        interactions = container.interaction_events.subscribe()

        # Act
        result = await coordinator.follow("alice", "bob")

        # Assert
        assert result == RelationshipStatus.FOLLOWING
        assert list(remote.relationships) == ["alice_follows_bob"]
        events = await changes.drain()
        assert [(e.kind, e.follower_id, e.following_id) for e in events] == [
            (RelationshipChangeKind.ADDED, "alice", "bob")
        ]
        assert [e.type for e in await interactions.drain()] == [SocialInteractionType.FOLLOW]

    @pytest.mark.asyncio
    async def test_follow_back_is_mutual(self, coordinator: SocialGraphCoordinator):
        # Arrange
        await coordinator.follow("bob", "alice")

        # Act
        result = await coordinator.follow("alice", "bob")

        # Assert
        assert result == RelationshipStatus.MUTUAL_FOLLOW
        assert await coordinator.check_relationship("bob", "alice") == (
            RelationshipStatus.MUTUAL_FOLLOW
        )

    @pytest.mark.asyncio
    async def test_follow_twice_is_duplicate_with_one_write(
        self, coordinator: SocialGraphCoordinator, remote: InMemoryRemoteSocialStore
    ):
        # Arrange
        await coordinator.follow("alice", "bob")
        writes = remote.write_count

        # Act & Assert
        with pytest.raises(Duplicate):
            await coordinator.follow("alice", "bob")
        assert remote.write_count == writes
        assert len(remote.relationships) == 1

    @pytest.mark.asyncio
    async def test_concurrent_identical_follows_are_coalesced(
        self, coordinator: SocialGraphCoordinator, remote: InMemoryRemoteSocialStore
    ):
        # Act
        results = await asyncio.gather(
            coordinator.follow("alice", "bob"), coordinator.follow("alice", "bob")
        )

        # Assert
        assert results == [RelationshipStatus.FOLLOWING, RelationshipStatus.FOLLOWING]
        assert remote.write_count == 1

    @pytest.mark.asyncio
    async def test_self_follow_fails(self, coordinator: SocialGraphCoordinator):
        with pytest.raises(ValidationError, match="Users cannot follow themselves"):
            await coordinator.follow("alice", "alice")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("bad_id", ["", "   ", "bob smith", "a:b", "x" * 129])
    async def test_malformed_identifier_fails(
        self, coordinator: SocialGraphCoordinator, bad_id: str
    ):
        with pytest.raises(ValidationError):
            await coordinator.follow("alice", bad_id)

    @pytest.mark.asyncio
    async def test_follow_blocked_in_either_direction_fails(
        self, coordinator: SocialGraphCoordinator
    ):
        # Arrange
        await coordinator.block_user("bob", "alice")

        # Act & Assert
        with pytest.raises(PrivacyRestriction, match="has blocked you"):
            await coordinator.follow("alice", "bob")
        with pytest.raises(PrivacyRestriction, match="you have blocked"):
            await coordinator.follow("bob", "alice")

    @pytest.mark.asyncio
    async def test_follow_rate_limited(
        self, coordinator: SocialGraphCoordinator, container: SocialGraphContainer
    ):
        # Arrange
        with patch.object(
            container.rate_limiter,
            "acquire",
            AsyncMock(side_effect=RateLimitExceeded("follow", None)),
        ):
            # Act & Assert
            with pytest.raises(RateLimitExceeded):
                await coordinator.follow("alice", "bob")

        assert await coordinator.check_relationship("alice", "bob") == (
            RelationshipStatus.NOT_FOLLOWING
        )

    @pytest.mark.asyncio
    async def test_sixth_follow_in_a_minute_is_rate_limited(
        self, container: SocialGraphContainer, clock: ManualClock
    ):
        # Arrange
        for user_id in ("u1", "u2", "u3", "u4", "u5", "u6"):
            container.remote.add_profile(
                container.remote.profiles["bob"].model_copy(
                    update={"user_id": user_id, "username": user_id}
                )
            )
        for user_id in ("u1", "u2", "u3", "u4", "u5"):
            await container.coordinator.follow("alice", user_id)

        # Act & Assert
        with pytest.raises(RateLimitExceeded):
            await container.coordinator.follow("alice", "u6")
        clock.advance(60)
        assert await container.coordinator.follow("alice", "u6") == RelationshipStatus.FOLLOWING

    @pytest.mark.asyncio
    async def test_spammer_cannot_follow_but_can_block_and_unfollow(
        self, coordinator: SocialGraphCoordinator, container: SocialGraphContainer
    ):
        # Arrange
        await coordinator.follow("alice", "dave")
        for _ in range(6):
            await container.anti_spam.report_spam("bob", "alice", SpamReason.MASS_FOLLOWING)

        # Act & Assert
        with pytest.raises(SpamDetected, match="High spam score detected"):
            await coordinator.follow("alice", "bob")
        await coordinator.unfollow("alice", "dave")
        await coordinator.block_user("alice", "bob")
        assert await coordinator.check_relationship("alice", "bob") == RelationshipStatus.BLOCKED

    @pytest.mark.asyncio
    async def test_block_written_by_another_worker_stops_follow(
        self, coordinator: SocialGraphCoordinator, remote: InMemoryRemoteSocialStore
    ):
        # Arrange
        assert await coordinator.check_relationship("alice", "bob") == (
            RelationshipStatus.NOT_FOLLOWING
        )
        await remote.create_relationship(
            Relationship.create("bob", "alice", status=RelationshipState.BLOCKED)
        )

        # Act & Assert
        with pytest.raises(PrivacyRestriction, match="who has blocked you"):
            await coordinator.follow("alice", "bob")
        assert await coordinator.check_relationship("alice", "bob") == (
            RelationshipStatus.BLOCKED
        )


@pytest.mark.unit
class TestUnfollow:
    @pytest.mark.asyncio
    async def test_unfollow_removes_edge(
        self,
        coordinator: SocialGraphCoordinator,
        remote: InMemoryRemoteSocialStore,
        container: SocialGraphContainer,
    ):
        # Arrange
        await coordinator.follow("alice", "bob")
        changes = container.relationship_events.subscribe()

        # Act
        await coordinator.unfollow("alice", "bob")

        # Assert
        assert remote.relationships == {}
        assert [e.kind for e in await changes.drain()] == [RelationshipChangeKind.REMOVED]
        assert await coordinator.check_relationship("alice", "bob") == (
            RelationshipStatus.NOT_FOLLOWING
        )

    @pytest.mark.asyncio
    async def test_unfollow_when_not_following_is_noop(
        self,
        coordinator: SocialGraphCoordinator,
        remote: InMemoryRemoteSocialStore,
        container: SocialGraphContainer,
    ):
        # Arrange
        changes = container.relationship_events.subscribe()

        # Act
        await coordinator.unfollow("alice", "bob")

        # Assert
        assert remote.write_count == 0
        assert await changes.drain() == []

    @pytest.mark.asyncio
    async def test_unfollow_keeps_mute(self, coordinator: SocialGraphCoordinator):
        # Arrange
        await coordinator.follow("alice", "bob")
        await coordinator.mute_user("alice", "bob")

        # Act
        await coordinator.unfollow("alice", "bob")

        # Assert
        assert await coordinator.check_relationship("alice", "bob") == RelationshipStatus.MUTED
        assert await coordinator.get_muted_users("alice") == ["bob"]


@pytest.mark.unit
class TestFollowRequests:
    @pytest.mark.asyncio
    async def test_follow_private_user_creates_request(
        self, coordinator: SocialGraphCoordinator, remote: InMemoryRemoteSocialStore
    ):
        # Act
        result = await coordinator.follow("alice", "carol")

        # Assert
        assert result == RelationshipStatus.PENDING
        assert remote.relationships == {}
        pending = await coordinator.get_pending_follow_requests("carol")
        assert [(r.requester_id, r.status) for r in pending] == [
            ("alice", FollowRequestStatus.PENDING)
        ]
        assert await coordinator.check_relationship("alice", "carol") == (
            RelationshipStatus.PENDING
        )

    @pytest.mark.asyncio
    async def test_accepted_request_becomes_follow_and_updates_count(
        self, coordinator: SocialGraphCoordinator
    ):
        # Arrange
        assert await coordinator.get_follower_count("carol") == 0
        await coordinator.follow("alice", "carol")
        [request] = await coordinator.get_pending_follow_requests("carol")

        # Act
        resolved = await coordinator.respond_to_follow_request("carol", request.id, accept=True)

        # Assert
        assert resolved.status == FollowRequestStatus.ACCEPTED
        assert await coordinator.check_relationship("alice", "carol") == (
            RelationshipStatus.FOLLOWING
        )
        assert await coordinator.get_follower_count("carol") == 1
        assert await coordinator.get_pending_follow_requests("carol") == []

    @pytest.mark.asyncio
    async def test_rejected_request(self, coordinator: SocialGraphCoordinator):
        # Arrange
        request = await coordinator.request_follow("alice", "carol", "Hi from the running club")

        # Act
        resolved = await coordinator.respond_to_follow_request("carol", request.id, accept=False)

        # Assert
        assert resolved.status == FollowRequestStatus.REJECTED
        assert await coordinator.check_relationship("alice", "carol") == (
            RelationshipStatus.NOT_FOLLOWING
        )

    @pytest.mark.asyncio
    async def test_failed_accept_stays_pending_and_can_be_retried(
        self, coordinator: SocialGraphCoordinator, remote: InMemoryRemoteSocialStore
    ):
        # Arrange
        request = await coordinator.request_follow("alice", "carol")
        with patch.object(
            remote, "create_relationship", AsyncMock(side_effect=NetworkError("timeout"))
        ):
            with pytest.raises(NetworkError):
                await coordinator.respond_to_follow_request("carol", request.id, accept=True)
        assert remote.requests[request.id].status == FollowRequestStatus.PENDING

        # Act
        resolved = await coordinator.respond_to_follow_request("carol", request.id, accept=True)

        # Assert
        assert resolved.status == FollowRequestStatus.ACCEPTED
        assert remote.relationships["alice_follows_carol"].status == RelationshipState.ACTIVE
        assert await coordinator.check_relationship("alice", "carol") == (
            RelationshipStatus.FOLLOWING
        )

    @pytest.mark.asyncio
    async def test_accept_of_request_resolved_elsewhere_rolls_back_edge(
        self, coordinator: SocialGraphCoordinator, remote: InMemoryRemoteSocialStore
    ):
        # Arrange
        request = await coordinator.request_follow("alice", "carol")
        remote.requests[request.id] = request.model_copy(
            update={"status": FollowRequestStatus.REJECTED}
        )

        # Act & Assert
        with pytest.raises(ValidationError, match="already rejected"):
            await coordinator.respond_to_follow_request("carol", request.id, accept=True)
        assert "alice_follows_carol" not in remote.relationships
        assert await coordinator.check_relationship("alice", "carol") == (
            RelationshipStatus.NOT_FOLLOWING
        )

    @pytest.mark.asyncio
    async def test_duplicate_request_fails(self, coordinator: SocialGraphCoordinator):
        # Arrange
        await coordinator.request_follow("alice", "carol")

        # Act & Assert
        with pytest.raises(Duplicate):
            await coordinator.request_follow("alice", "carol")
        with pytest.raises(Duplicate):
            await coordinator.follow("alice", "carol")

    @pytest.mark.asyncio
    async def test_request_message_is_spam_checked(self, coordinator: SocialGraphCoordinator):
        with pytest.raises(SpamDetected, match="Inappropriate content"):
            await coordinator.request_follow("alice", "carol", "free bot spam spam spam")

    @pytest.mark.asyncio
    async def test_only_target_can_respond(self, coordinator: SocialGraphCoordinator):
        # Arrange
        request = await coordinator.request_follow("alice", "carol")

        # Act & Assert
        with pytest.raises(Unauthorized):
            await coordinator.respond_to_follow_request("bob", request.id, accept=True)

    @pytest.mark.asyncio
    async def test_respond_twice_fails(self, coordinator: SocialGraphCoordinator):
        # Arrange
        request = await coordinator.request_follow("alice", "carol")
        await coordinator.respond_to_follow_request("carol", request.id, accept=False)

        # Act & Assert
        with pytest.raises(ValidationError):
            await coordinator.respond_to_follow_request("carol", request.id, accept=True)

    @pytest.mark.asyncio
    async def test_respond_to_expired_request_fails(
        self, coordinator: SocialGraphCoordinator, clock: ManualClock
    ):
        # Arrange
        request = await coordinator.request_follow("alice", "carol")
        clock.advance(days=8)

        # Act & Assert
        with pytest.raises(ValidationError, match="expired"):
            await coordinator.respond_to_follow_request("carol", request.id, accept=True)

    @pytest.mark.asyncio
    async def test_respond_to_unknown_request_fails(self, coordinator: SocialGraphCoordinator):
        with pytest.raises(NotFound):
            await coordinator.respond_to_follow_request("carol", "missing", accept=True)

    @pytest.mark.asyncio
    async def test_cancel_request(self, coordinator: SocialGraphCoordinator):
        # Arrange
        request = await coordinator.request_follow("alice", "carol")

        # Act
        cancelled = await coordinator.cancel_follow_request("alice", request.id)

        # Assert
        assert cancelled.status == FollowRequestStatus.REJECTED
        assert await coordinator.get_sent_follow_requests("alice") == []

    @pytest.mark.asyncio
    async def test_only_requester_can_cancel(self, coordinator: SocialGraphCoordinator):
        # Arrange
        request = await coordinator.request_follow("alice", "carol")

        # Act & Assert
        with pytest.raises(Unauthorized):
            await coordinator.cancel_follow_request("carol", request.id)


@pytest.mark.unit
class TestBlockAndMute:
    @pytest.mark.asyncio
    async def test_block_removes_follows_both_ways(
        self, coordinator: SocialGraphCoordinator, remote: InMemoryRemoteSocialStore
    ):
        # Arrange
        await coordinator.follow("alice", "bob")
        await coordinator.follow("bob", "alice")

        # Act
        await coordinator.block_user("alice", "bob")

        # Assert
        assert list(remote.relationships) == ["alice_follows_bob"]
        assert remote.relationships["alice_follows_bob"].status == RelationshipState.BLOCKED
        assert await coordinator.check_relationship("alice", "bob") == RelationshipStatus.BLOCKED
        assert await coordinator.check_relationship("bob", "alice") == RelationshipStatus.BLOCKED
        assert await coordinator.get_blocked_users("alice") == ["bob"]

    @pytest.mark.asyncio
    async def test_block_rejects_open_requests_both_ways(
        self, coordinator: SocialGraphCoordinator, remote: InMemoryRemoteSocialStore
    ):
        # Arrange
        request = await coordinator.request_follow("alice", "carol")

        # Act
        await coordinator.block_user("carol", "alice")

        # Assert
        assert remote.requests[request.id].status == FollowRequestStatus.REJECTED

    @pytest.mark.asyncio
    async def test_unblock_allows_following_again(self, coordinator: SocialGraphCoordinator):
        # Arrange
        await coordinator.block_user("alice", "bob")

        # Act
        await coordinator.unblock_user("alice", "bob")

        # Assert
        assert await coordinator.follow("bob", "alice") == RelationshipStatus.FOLLOWING

    @pytest.mark.asyncio
    async def test_unblock_when_not_blocked_is_noop(
        self, coordinator: SocialGraphCoordinator, remote: InMemoryRemoteSocialStore
    ):
        # Act
        await coordinator.unblock_user("alice", "bob")

        # Assert
        assert remote.write_count == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("block_first", [True, False])
    async def test_concurrent_follow_and_block_never_both_hold(
        self,
        coordinator: SocialGraphCoordinator,
        remote: InMemoryRemoteSocialStore,
        block_first: bool,
    ):
        # Arrange
        follow = coordinator.follow("alice", "bob")
        block = coordinator.block_user("bob", "alice")
        calls = [block, follow] if block_first else [follow, block]

        # Act
        await asyncio.gather(*calls, return_exceptions=True)

        # Assert
        edges = remote.relationships
        assert edges["bob_follows_alice"].status == RelationshipState.BLOCKED
        assert "alice_follows_bob" not in edges
        assert await coordinator.check_relationship("alice", "bob") == RelationshipStatus.BLOCKED

    @pytest.mark.asyncio
    async def test_mute_keeps_follow(self, coordinator: SocialGraphCoordinator):
        # Arrange
        await coordinator.follow("alice", "bob")

        # Act
        await coordinator.mute_user("alice", "bob")

        # Assert
        assert await coordinator.check_relationship("alice", "bob") == (
            RelationshipStatus.FOLLOWING
        )
        assert await coordinator.get_muted_users("alice") == ["bob"]
        assert await coordinator.get_follower_count("bob") == 1

    @pytest.mark.asyncio
    async def test_mute_without_follow(
        self, coordinator: SocialGraphCoordinator, container: SocialGraphContainer
    ):
        # Arrange
        changes = container.relationship_events.subscribe()

        # Act
        await coordinator.mute_user("alice", "bob")

        # Assert
        assert await coordinator.check_relationship("alice", "bob") == RelationshipStatus.MUTED
        assert await coordinator.get_follower_count("bob") == 0
        assert [e.kind for e in await changes.drain()] == [RelationshipChangeKind.MUTED]

    @pytest.mark.asyncio
    async def test_unmute_removes_mute_only_edge(
        self, coordinator: SocialGraphCoordinator, remote: InMemoryRemoteSocialStore
    ):
        # Arrange
        await coordinator.mute_user("alice", "bob")

        # Act
        await coordinator.unmute_user("alice", "bob")

        # Assert
        assert remote.relationships == {}
        assert await coordinator.get_muted_users("alice") == []

    @pytest.mark.asyncio
    async def test_unmute_restores_notifications(
        self, coordinator: SocialGraphCoordinator, remote: InMemoryRemoteSocialStore
    ):
        # Arrange
        await coordinator.follow("alice", "bob")
        await coordinator.mute_user("alice", "bob")

        # Act
        await coordinator.unmute_user("alice", "bob")

        # Assert
        assert remote.relationships["alice_follows_bob"].notifications_enabled is True

    @pytest.mark.asyncio
    async def test_follow_muted_user_stays_muted(self, coordinator: SocialGraphCoordinator):
        # Arrange
        await coordinator.mute_user("alice", "bob")

        # Act
        result = await coordinator.follow("alice", "bob")

        # Assert
        assert result == RelationshipStatus.FOLLOWING
        assert await coordinator.get_muted_users("alice") == ["bob"]


@pytest.mark.unit
class TestReadsAndReports:
    @pytest.mark.asyncio
    async def test_followers_reflect_new_follow_after_invalidation(
        self, coordinator: SocialGraphCoordinator
    ):
        # Arrange
        assert (await coordinator.get_followers("bob")).users == []

        # Act
        await coordinator.follow("alice", "bob")

        # Assert
        assert [p.user_id for p in (await coordinator.get_followers("bob")).users] == ["alice"]
        assert [p.user_id for p in (await coordinator.get_following("alice")).users] == ["bob"]
        assert await coordinator.get_following_count("alice") == 1

    @pytest.mark.asyncio
    async def test_report_spam(self, coordinator: SocialGraphCoordinator):
        # Act
        score = await coordinator.report_spam("alice", "bob", SpamReason.FAKE_ACCOUNT)

        # Assert
        assert score == 10

    @pytest.mark.asyncio
    async def test_report_is_rate_limited(self, coordinator: SocialGraphCoordinator):
        # Arrange
        await coordinator.report_spam("alice", "bob", SpamReason.OTHER)

        # Act & Assert
        with pytest.raises(RateLimitExceeded):
            await coordinator.report_spam("alice", "dave", SpamReason.OTHER)

    @pytest.mark.asyncio
    async def test_clear_and_preload(
        self, coordinator: SocialGraphCoordinator, container: SocialGraphContainer
    ):
        # Arrange
        await coordinator.follow("alice", "bob")

        # Act
        await coordinator.clear_relationship_cache()
        await coordinator.preload_relationships(["alice", "bob"])

        # Assert
        assert "follower_count:bob" in container.cache
        assert await coordinator.check_relationship("alice", "bob") == (
            RelationshipStatus.FOLLOWING
        )
