from fastapi import Depends, Request

from socialgraph.config import Settings
from socialgraph.db import DatabaseManager
from socialgraph.models.cache import CacheHealthReport
from socialgraph.models.events import RelationshipChangeEvent, SocialInteractionEvent
from socialgraph.services.anti_spam import AntiSpamEngine
from socialgraph.services.auth import AuthService
from socialgraph.services.cache import CacheEngine
from socialgraph.services.cache_coordinator import SocialMediaCacheCoordinator
from socialgraph.services.coordinator import SocialGraphCoordinator
from socialgraph.services.fan_out import SyncFanOut
from socialgraph.services.kv_store import InMemoryKeyValueStore, KeyValueStore
from socialgraph.services.neo4j_store import Neo4jKeyValueStore, Neo4jRemoteSocialStore
from socialgraph.services.rate_limiter import RateLimiter
from socialgraph.services.relationship_store import RelationshipStore
from socialgraph.services.remote_store import InMemoryRemoteSocialStore, RemoteSocialStore
from socialgraph.utils.clock import Clock, SystemClock


class SocialGraphContainer:
    """Builds and owns every long-lived service of the social graph core.

    Attributes:
        settings: Settings the services were built from
        cache: Shared in-process cache
        rate_limiter: Per-user action limiter
        anti_spam: Spam heuristics and scores
        store: Local view of the graph
        coordinator: Entry point for graph operations
        cache_coordinator: Feed, profile and count cache orchestration
        auth_service: Bearer token validation
        relationship_events: Relationship change channel
        interaction_events: Social interaction channel
        health_events: Cache health report channel
    """

    def __init__(
        self,
        settings: Settings,
        remote: RemoteSocialStore,
        kv_store: KeyValueStore,
        clock: Clock | None = None,
    ) -> None:
        clock = clock or SystemClock()
        self.settings = settings
        self.remote = remote
        self.cache = CacheEngine(settings.cache_max_entries, clock)
        self.rate_limiter = RateLimiter(kv_store, clock)
        self.anti_spam = AntiSpamEngine(
            kv_store,
            clock,
            follow_threshold=settings.spam_score_threshold,
            report_penalty=settings.spam_report_penalty,
        )
        self.relationship_events: SyncFanOut[RelationshipChangeEvent] = SyncFanOut()
        self.interaction_events: SyncFanOut[SocialInteractionEvent] = SyncFanOut()
        self.health_events: SyncFanOut[CacheHealthReport] = SyncFanOut()
        self.store = RelationshipStore(remote, self.cache, settings, clock)
        self.coordinator = SocialGraphCoordinator(
            self.store,
            self.rate_limiter,
            self.anti_spam,
            self.relationship_events,
            self.interaction_events,
            settings,
        )
        self.cache_coordinator = SocialMediaCacheCoordinator(
            self.cache,
            self.store,
            remote,
            settings,
            health_events=self.health_events,
            interaction_events=self.interaction_events,
            clock=clock,
        )
        self.auth_service = AuthService(settings)

    @classmethod
    def in_memory(
        cls, settings: Settings | None = None, clock: Clock | None = None
    ) -> "SocialGraphContainer":
        return cls(
            settings or Settings(),
            InMemoryRemoteSocialStore(),
            InMemoryKeyValueStore(),
            clock,
        )

    @classmethod
    def from_database(cls, settings: Settings, db: DatabaseManager) -> "SocialGraphContainer":
        return cls(settings, Neo4jRemoteSocialStore(db), Neo4jKeyValueStore(db))

    async def start(self) -> None:
        await self.cache_coordinator.handle_app_launch()

    async def close(self) -> None:
        await self.cache_coordinator.shutdown()
        for channel in (self.relationship_events, self.interaction_events, self.health_events):
            await channel.close()


def get_container(request: Request) -> SocialGraphContainer:
    return request.app.state.container


def get_coordinator(
    container: SocialGraphContainer = Depends(get_container),
) -> SocialGraphCoordinator:
    return container.coordinator


def get_cache_coordinator(
    container: SocialGraphContainer = Depends(get_container),
) -> SocialMediaCacheCoordinator:
    return container.cache_coordinator


def get_auth_service(
    container: SocialGraphContainer = Depends(get_container),
) -> AuthService:
    return container.auth_service
