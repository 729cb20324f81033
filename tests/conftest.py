from datetime import UTC, datetime

import pytest

from socialgraph.config import Settings
from socialgraph.dependencies import SocialGraphContainer
from socialgraph.models.user import UserProfile
from socialgraph.services.anti_spam import AntiSpamEngine
from socialgraph.services.cache import CacheEngine
from socialgraph.services.cache_coordinator import SocialMediaCacheCoordinator
from socialgraph.services.coordinator import SocialGraphCoordinator
from socialgraph.services.kv_store import InMemoryKeyValueStore
from socialgraph.services.rate_limiter import RateLimiter
from socialgraph.services.relationship_store import RelationshipStore
from socialgraph.services.remote_store import InMemoryRemoteSocialStore
from socialgraph.utils.clock import ManualClock

# Wednesday, so minute/hour/day windows never straddle a week boundary.
START = datetime(2024, 1, 3, 12, 0, 0, tzinfo=UTC)


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock(START)


@pytest.fixture
def settings() -> Settings:
    return Settings(read_retry_backoff=0, network_timeout=1.0, jwt_secret="test-secret")


@pytest.fixture
def kv_store() -> InMemoryKeyValueStore:
    return InMemoryKeyValueStore()


@pytest.fixture
def rate_limiter(kv_store: InMemoryKeyValueStore, clock: ManualClock) -> RateLimiter:
    return RateLimiter(kv_store, clock)


@pytest.fixture
def anti_spam(kv_store: InMemoryKeyValueStore, clock: ManualClock) -> AntiSpamEngine:
    return AntiSpamEngine(kv_store, clock)


# Users
@pytest.fixture
def test_user() -> UserProfile:
    return UserProfile(user_id="alice", username="alice", display_name="Alice")


@pytest.fixture
def another_test_user() -> UserProfile:
    return UserProfile(user_id="bob", username="bob", display_name="Bob")


@pytest.fixture
def private_user() -> UserProfile:
    return UserProfile(user_id="carol", username="carol", display_name="Carol", is_private=True)


@pytest.fixture
def third_user() -> UserProfile:
    return UserProfile(user_id="dave", username="dave", display_name="Dave")


@pytest.fixture
def container(
    settings: Settings,
    clock: ManualClock,
    test_user: UserProfile,
    another_test_user: UserProfile,
    private_user: UserProfile,
    third_user: UserProfile,
) -> SocialGraphContainer:
    container = SocialGraphContainer.in_memory(settings, clock)
    for profile in (test_user, another_test_user, private_user, third_user):
        container.remote.add_profile(profile)
    return container


@pytest.fixture
def cache(container: SocialGraphContainer) -> CacheEngine:
    return container.cache


@pytest.fixture
def remote(container: SocialGraphContainer) -> InMemoryRemoteSocialStore:
    return container.remote


@pytest.fixture
def relationship_store(container: SocialGraphContainer) -> RelationshipStore:
    return container.store


@pytest.fixture
def coordinator(container: SocialGraphContainer) -> SocialGraphCoordinator:
    return container.coordinator


@pytest.fixture
def cache_coordinator(container: SocialGraphContainer) -> SocialMediaCacheCoordinator:
    return container.cache_coordinator
