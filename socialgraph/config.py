from functools import lru_cache
from os import environ

from pydantic import BaseModel, ConfigDict, Field


class Settings(BaseModel):
    """Runtime configuration for the social graph core.

    Values are read from environment variables by ``from_environ``; every
    field has a default so tests and local runs need no environment at all.

    Attributes:
        neo4j_uri: URI of the Neo4j database
        neo4j_user: Neo4j username
        neo4j_password: Neo4j password
        neo4j_database: Name of the Neo4j database to use
        cache_max_entries: Capacity of the in-process TTL cache
        cache_max_size_bytes: Size budget used by cache optimization
        cache_sweep_interval: Seconds between periodic cache sweeps
        profile_ttl: Seconds a cached profile stays fresh
        list_ttl: Seconds a cached follower/following page stays fresh
        count_ttl: Seconds a cached follower/following count stays fresh
        relationship_ttl: Seconds a cached relationship status, and a user's
            locally held edges, stay fresh
        graph_max_users: Most users whose edges the local graph view holds
        feed_ttl: Seconds a cached feed page stays fresh
        feed_page_size: Number of feed items per page
        follow_request_expiry_days: Days before a pending request expires
        spam_score_threshold: Score above which follows are rejected
        spam_report_penalty: Score added to a user per spam report
        network_timeout: Deadline in seconds for a remote call
        read_retry_attempts: Attempts for read-only remote fetches
        read_retry_backoff: Base backoff in seconds between read retries
        jwt_secret: Shared secret for HS256 bearer tokens, if used
        auth0_domain: Auth0 domain used when no shared secret is set
        auth0_audience: Auth0 API audience
    """

    model_config = ConfigDict(frozen=True)

    neo4j_uri: str = "bolt://localhost:7687"
    neo4j_user: str = "neo4j"
    neo4j_password: str = ""
    neo4j_database: str = "neo4j"

    cache_max_entries: int = Field(1_000, gt=0)
    cache_max_size_bytes: int = Field(100 * 1024 * 1024, gt=0)
    cache_sweep_interval: float = Field(60.0, gt=0)

    profile_ttl: float = 300.0
    list_ttl: float = 300.0
    count_ttl: float = 120.0
    relationship_ttl: float = 30.0
    graph_max_users: int = Field(10_000, gt=0)
    feed_ttl: float = 300.0
    feed_page_size: int = Field(20, gt=0)

    follow_request_expiry_days: int = Field(7, gt=0)
    spam_score_threshold: float = 50.0
    spam_report_penalty: float = 10.0

    network_timeout: float = Field(10.0, gt=0)
    read_retry_attempts: int = Field(3, ge=1)
    read_retry_backoff: float = Field(0.2, ge=0)

    jwt_secret: str | None = None
    auth0_domain: str = ""
    auth0_audience: str = ""

    @classmethod
    def from_environ(cls) -> "Settings":
        """Build settings from ``SOCIALGRAPH_*`` and ``NEO4J_*`` variables."""
        values: dict[str, str] = {}
        for name in cls.model_fields:
            if name.startswith("neo4j_"):
                key = name.upper()
            elif name.startswith("auth0_"):
                key = name.upper()
            else:
                key = f"SOCIALGRAPH_{name.upper()}"
            if key in environ:
                values[name] = environ[key]
        return cls.model_validate(values)


@lru_cache
def get_settings() -> Settings:
    return Settings.from_environ()
