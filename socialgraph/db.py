from neo4j import AsyncDriver, AsyncGraphDatabase

from socialgraph.config import Settings


class DatabaseManager:
    """Manager for the Neo4j database connection.

    This class owns the lifecycle of the async Neo4j driver: it is created
    lazily on first use and closed once on shutdown.

    Attributes:
        _driver: The Neo4j driver instance
        _uri: URI of the Neo4j database
        _auth: Tuple of username and password for authentication
        _database: Name of the Neo4j database to connect to
    """

    def __init__(self, settings: Settings) -> None:
        self._driver: AsyncDriver | None = None
        self._uri: str = settings.neo4j_uri
        self._auth: tuple[str, str] = (settings.neo4j_user, settings.neo4j_password)
        self._database: str = settings.neo4j_database
        self._connection_timeout = settings.network_timeout

    async def verify_connectivity(self) -> None:
        """Verify database connectivity with current credentials.

        Raises:
            neo4j.exceptions.ServiceUnavailable: If database is not reachable
            neo4j.exceptions.AuthError: If credentials are invalid
        """
        await self.driver.verify_connectivity()

    @property
    def driver(self) -> AsyncDriver:
        """Get or create the Neo4j driver instance.

        Returns:
            The Neo4j driver instance that can be used for database operations
        """
        if not self._driver:
            self._driver = AsyncGraphDatabase.driver(
                self._uri,
                auth=self._auth,
                max_connection_pool_size=10,  # Default is 100
                connection_timeout=self._connection_timeout,
            )
        return self._driver

    @property
    def database(self) -> str:
        return self._database

    async def close(self) -> None:
        """Close the database connection.

        If no connection exists, this is a no-op.
        """
        if self._driver:
            await self._driver.close()
            self._driver = None
