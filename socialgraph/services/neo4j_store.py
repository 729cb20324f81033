import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any

from neo4j import AsyncManagedTransaction, AsyncSession
from neo4j.exceptions import (
    ConstraintError,
    DriverError,
    Neo4jError,
    ServiceUnavailable,
    SessionExpired,
)

from socialgraph.db import DatabaseManager
from socialgraph.errors import ConflictError, NetworkError, NotFound, StoreUnavailable
from socialgraph.models.feed import FeedItem
from socialgraph.models.follow_request import FollowRequest, FollowRequestStatus
from socialgraph.models.relationship import Direction, Relationship, RelationshipPage
from socialgraph.models.user import UserProfile
from socialgraph.services.kv_store import KeyValueStore
from socialgraph.services.remote_store import RemoteSocialStore
from socialgraph.utils.clock import Clock, SystemClock

logger = logging.getLogger(__name__)

CONSTRAINTS = (
    "CREATE CONSTRAINT user_id IF NOT EXISTS FOR (u:User) REQUIRE u.user_id IS UNIQUE",
    "CREATE CONSTRAINT follow_request_id IF NOT EXISTS "
    "FOR (fr:FollowRequest) REQUIRE fr.id IS UNIQUE",
    "CREATE CONSTRAINT key_value_key IF NOT EXISTS FOR (kv:KeyValue) REQUIRE kv.key IS UNIQUE",
)


def _native(value: Any) -> Any:
    """Convert neo4j temporal values to ``datetime``."""
    if hasattr(value, "to_native"):
        return value.to_native()
    return value


def _relationship_from_record(record: Any) -> Relationship:
    props = dict(record["r"])
    return Relationship(
        id=props["id"],
        follower_id=record["follower_id"],
        following_id=record["following_id"],
        status=props.get("status", "active"),
        notifications_enabled=props.get("notifications_enabled", True),
        created_at=_native(props.get("created_at")),
    )


def _request_from_node(node: Any) -> FollowRequest:
    props = {key: _native(value) for key, value in dict(node).items()}
    return FollowRequest.model_validate(props)


async def ensure_constraints(db: DatabaseManager) -> None:
    """Create the uniqueness constraints the stores rely on."""
    async with db.driver.session(database=db.database) as session:
        for statement in CONSTRAINTS:
            await session.run(statement)


class Neo4jRemoteSocialStore(RemoteSocialStore):
    """Remote social store backed by Neo4j.

    Users are ``(:User {user_id})`` nodes. Follow, block and mute edges are
    ``[:RELATES {id, status, notifications_enabled, created_at}]``
    relationships between them; follow requests are ``(:FollowRequest)``
    nodes so that resolved requests keep their history. Feed items are
    ``(:Activity)`` nodes linked from their author by ``[:POSTED]``.
    """

    def __init__(self, db: DatabaseManager) -> None:
        self._db = db

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self._db.driver.session(database=self._db.database) as session:
                yield session
        except (ServiceUnavailable, SessionExpired) as e:
            logger.warning("Neo4j unavailable: %s", e)
            raise NetworkError(e) from e
        except ConstraintError as e:
            raise ConflictError(str(e)) from e

    async def create_relationship(self, relationship: Relationship) -> Relationship:
        async with self._session() as session:
            return await session.execute_write(
                self._create_relationship_tx, relationship
            )

    @staticmethod
    async def _create_relationship_tx(
        tx: AsyncManagedTransaction, relationship: Relationship
    ) -> Relationship:
        query = """
        MATCH (follower:User {user_id: $follower_id})
        MATCH (following:User {user_id: $following_id})
        MERGE (follower)-[r:RELATES {id: $id}]->(following)
        SET r.status = $status,
            r.notifications_enabled = $notifications_enabled,
            r.created_at = coalesce(r.created_at, $created_at)
        RETURN r, follower.user_id AS follower_id, following.user_id AS following_id
        """
        result = await tx.run(
            query,
            id=relationship.id,
            follower_id=relationship.follower_id,
            following_id=relationship.following_id,
            status=relationship.status.value,
            notifications_enabled=relationship.notifications_enabled,
            created_at=relationship.created_at,
        )
        if record := await result.single():
            return _relationship_from_record(record)
        raise NotFound(
            f"User {relationship.follower_id} or {relationship.following_id} not found"
        )

    async def delete_relationship(self, follower_id: str, following_id: str) -> bool:
        async with self._session() as session:
            return await session.execute_write(
                self._delete_relationship_tx, follower_id, following_id
            )

    @staticmethod
    async def _delete_relationship_tx(
        tx: AsyncManagedTransaction, follower_id: str, following_id: str
    ) -> bool:
        query = """
        MATCH (:User {user_id: $follower_id})-[r:RELATES]->(:User {user_id: $following_id})
        DELETE r
        RETURN count(r) AS deleted
        """
        result = await tx.run(query, follower_id=follower_id, following_id=following_id)
        record = await result.single()
        return bool(record and record["deleted"])

    async def fetch_relationship(
        self, follower_id: str, following_id: str
    ) -> Relationship | None:
        async with self._session() as session:
            return await session.execute_read(
                self._fetch_relationship_tx, follower_id, following_id
            )

    @staticmethod
    async def _fetch_relationship_tx(
        tx: AsyncManagedTransaction, follower_id: str, following_id: str
    ) -> Relationship | None:
        query = """
        MATCH (follower:User {user_id: $follower_id})-[r:RELATES]->
              (following:User {user_id: $following_id})
        RETURN r, follower.user_id AS follower_id, following.user_id AS following_id
        """
        result = await tx.run(query, follower_id=follower_id, following_id=following_id)
        record = await result.single()
        return _relationship_from_record(record) if record else None

    async def fetch_relationships(
        self,
        user_id: str,
        direction: Direction,
        cursor: str | None = None,
        limit: int = 100,
    ) -> RelationshipPage:
        async with self._session() as session:
            return await session.execute_read(
                self._fetch_relationships_tx, user_id, direction, cursor, limit
            )

    @staticmethod
    async def _fetch_relationships_tx(
        tx: AsyncManagedTransaction,
        user_id: str,
        direction: Direction,
        cursor: str | None,
        limit: int,
    ) -> RelationshipPage:
        if direction == Direction.OUTGOING:
            pattern = "(follower:User {user_id: $user_id})-[r:RELATES]->(following:User)"
        else:
            pattern = "(follower:User)-[r:RELATES]->(following:User {user_id: $user_id})"
        query = f"""
        MATCH {pattern}
        RETURN r, follower.user_id AS follower_id, following.user_id AS following_id
        ORDER BY r.created_at DESC, r.id
        SKIP $skip
        LIMIT $limit
        """
        skip = int(cursor) if cursor else 0
        # One extra row tells us whether another page exists.
        result = await tx.run(query, user_id=user_id, skip=skip, limit=limit + 1)
        relationships = [_relationship_from_record(record) async for record in result]
        has_more = len(relationships) > limit
        return RelationshipPage(
            relationships=relationships[:limit],
            next_cursor=str(skip + limit) if has_more else None,
        )

    async def create_follow_request(self, request: FollowRequest) -> FollowRequest:
        async with self._session() as session:
            return await session.execute_write(self._create_follow_request_tx, request)

    @staticmethod
    async def _create_follow_request_tx(
        tx: AsyncManagedTransaction, request: FollowRequest
    ) -> FollowRequest:
        query = """
        OPTIONAL MATCH (existing:FollowRequest {
            requester_id: $requester_id,
            target_id: $target_id,
            status: 'pending'
        })
        WITH existing
        WHERE existing IS NULL
        CREATE (fr:FollowRequest {
            id: $id,
            requester_id: $requester_id,
            target_id: $target_id,
            status: $status,
            created_at: $created_at,
            expires_at: $expires_at,
            message: $message
        })
        RETURN fr
        """
        result = await tx.run(
            query,
            id=request.id,
            requester_id=request.requester_id,
            target_id=request.target_id,
            status=request.status.value,
            created_at=request.created_at,
            expires_at=request.expires_at,
            message=request.message,
        )
        if record := await result.single():
            return _request_from_node(record["fr"])
        raise ConflictError("A pending follow request already exists")

    async def resolve_follow_request(
        self, request_id: str, status: FollowRequestStatus
    ) -> FollowRequest:
        async with self._session() as session:
            return await session.execute_write(
                self._resolve_follow_request_tx, request_id, status
            )

    @staticmethod
    async def _resolve_follow_request_tx(
        tx: AsyncManagedTransaction, request_id: str, status: FollowRequestStatus
    ) -> FollowRequest:
        query = """
        MATCH (fr:FollowRequest {id: $request_id})
        WITH fr, fr.status AS previous
        SET fr.status = CASE WHEN previous = 'pending' THEN $status ELSE previous END
        RETURN fr, previous
        """
        result = await tx.run(query, request_id=request_id, status=status.value)
        record = await result.single()
        if not record:
            raise NotFound(f"Follow request {request_id} not found")
        if record["previous"] != FollowRequestStatus.PENDING.value:
            raise ConflictError(f"Follow request is already {record['previous']}")
        return _request_from_node(record["fr"])

    async def fetch_follow_request(self, request_id: str) -> FollowRequest:
        async with self._session() as session:
            return await session.execute_read(self._fetch_follow_request_tx, request_id)

    @staticmethod
    async def _fetch_follow_request_tx(
        tx: AsyncManagedTransaction, request_id: str
    ) -> FollowRequest:
        result = await tx.run(
            "MATCH (fr:FollowRequest {id: $request_id}) RETURN fr", request_id=request_id
        )
        if record := await result.single():
            return _request_from_node(record["fr"])
        raise NotFound(f"Follow request {request_id} not found")

    async def fetch_follow_requests(
        self, user_id: str, direction: Direction
    ) -> list[FollowRequest]:
        async with self._session() as session:
            return await session.execute_read(
                self._fetch_follow_requests_tx, user_id, direction
            )

    @staticmethod
    async def _fetch_follow_requests_tx(
        tx: AsyncManagedTransaction, user_id: str, direction: Direction
    ) -> list[FollowRequest]:
        field = "requester_id" if direction == Direction.OUTGOING else "target_id"
        query = f"""
        MATCH (fr:FollowRequest {{{field}: $user_id}})
        RETURN fr
        ORDER BY fr.created_at DESC
        """
        result = await tx.run(query, user_id=user_id)
        return [_request_from_node(record["fr"]) async for record in result]

    async def fetch_profile(self, user_id: str) -> UserProfile:
        async with self._session() as session:
            return await session.execute_read(self._fetch_profile_tx, user_id)

    @staticmethod
    async def _fetch_profile_tx(tx: AsyncManagedTransaction, user_id: str) -> UserProfile:
        query = """
        MATCH (u:User {user_id: $user_id})
        OPTIONAL MATCH (u)<-[incoming:RELATES {status: 'active'}]-(:User)
        WITH u, count(incoming) AS follower_count
        OPTIONAL MATCH (u)-[outgoing:RELATES {status: 'active'}]->(:User)
        RETURN u, follower_count, count(outgoing) AS following_count
        """
        result = await tx.run(query, user_id=user_id)
        record = await result.single()
        if not record:
            raise NotFound(f"User {user_id} not found")
        props = {key: _native(value) for key, value in dict(record["u"]).items()}
        props.setdefault("username", user_id)
        props["follower_count"] = record["follower_count"]
        props["following_count"] = record["following_count"]
        return UserProfile.model_validate(props)

    async def fetch_feed_page(
        self, user_id: str, page: int, page_size: int
    ) -> list[FeedItem]:
        async with self._session() as session:
            return await session.execute_read(
                self._fetch_feed_page_tx, user_id, page, page_size
            )

    @staticmethod
    async def _fetch_feed_page_tx(
        tx: AsyncManagedTransaction, user_id: str, page: int, page_size: int
    ) -> list[FeedItem]:
        query = """
        MATCH (u:User {user_id: $user_id})
        OPTIONAL MATCH (u)-[:RELATES {status: 'active'}]->(followed:User)
        WITH u, collect(followed) AS followed
        UNWIND followed + [u] AS author
        MATCH (author)-[:POSTED]->(a:Activity)
        RETURN a, author.user_id AS author_id
        ORDER BY a.created_at DESC
        SKIP $skip
        LIMIT $limit
        """
        result = await tx.run(
            query, user_id=user_id, skip=page * page_size, limit=page_size
        )
        items = []
        async for record in result:
            props = {key: _native(value) for key, value in dict(record["a"]).items()}
            props["user_id"] = record["author_id"]
            items.append(FeedItem.model_validate(props))
        return items


class Neo4jKeyValueStore(KeyValueStore):
    """Key/value store kept as ``(:KeyValue {key, value_json, updated_at})`` nodes."""

    def __init__(self, db: DatabaseManager, clock: Clock | None = None) -> None:
        self._db = db
        self._clock = clock or SystemClock()

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self._db.driver.session(database=self._db.database) as session:
                yield session
        except (ServiceUnavailable, SessionExpired) as e:
            logger.warning("Key/value store unavailable: %s", e)
            raise StoreUnavailable(str(e)) from e
        except (Neo4jError, DriverError) as e:
            logger.error("Key/value store failed: %s", e)
            raise StoreUnavailable(str(e)) from e

    async def get(self, key: str) -> dict[str, Any] | None:
        async with self._session() as session:
            raw = await session.execute_read(self._get_tx, key)
        return json.loads(raw) if raw is not None else None

    @staticmethod
    async def _get_tx(tx: AsyncManagedTransaction, key: str) -> str | None:
        result = await tx.run(
            "MATCH (kv:KeyValue {key: $key}) RETURN kv.value_json AS value", key=key
        )
        record = await result.single()
        return record["value"] if record else None

    async def set(self, key: str, value: dict[str, Any]) -> None:
        async with self._session() as session:
            await session.execute_write(
                self._set_tx, key, json.dumps(value), self._clock.now()
            )

    @staticmethod
    async def _set_tx(
        tx: AsyncManagedTransaction, key: str, value_json: str, now: datetime
    ) -> None:
        query = """
        MERGE (kv:KeyValue {key: $key})
        SET kv.value_json = $value_json, kv.updated_at = $now
        """
        result = await tx.run(query, key=key, value_json=value_json, now=now)
        await result.consume()

    async def delete(self, key: str) -> None:
        async with self._session() as session:
            await session.execute_write(self._delete_prefix_tx, key, True)

    async def delete_prefix(self, prefix: str) -> int:
        async with self._session() as session:
            return await session.execute_write(self._delete_prefix_tx, prefix, False)

    @staticmethod
    async def _delete_prefix_tx(
        tx: AsyncManagedTransaction, key: str, exact: bool
    ) -> int:
        condition = "kv.key = $key" if exact else "kv.key STARTS WITH $key"
        query = f"""
        MATCH (kv:KeyValue)
        WHERE {condition}
        WITH collect(kv) AS doomed
        FOREACH (node IN doomed | DELETE node)
        RETURN size(doomed) AS deleted
        """
        result = await tx.run(query, key=key)
        record = await result.single()
        return record["deleted"] if record else 0
