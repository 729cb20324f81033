import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI

from socialgraph.api import social
from socialgraph.api.auth import get_current_user_id
from socialgraph.config import get_settings
from socialgraph.db import DatabaseManager
from socialgraph.dependencies import SocialGraphContainer
from socialgraph.schemas.responses import HealthCheckResponseSchema
from socialgraph.services.neo4j_store import ensure_constraints

logger = logging.getLogger(__name__)


def create_app(container: SocialGraphContainer | None = None) -> FastAPI:
    """Build the API application.

    Without a prebuilt ``container`` the services are wired to Neo4j on
    startup using the environment's settings.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        db = None
        services = container
        if services is None:
            settings = get_settings()
            db = DatabaseManager(settings)
            await db.verify_connectivity()
            await ensure_constraints(db)
            services = SocialGraphContainer.from_database(settings, db)
        app.state.container = services
        await services.start()
        logger.info("Social graph API started")
        yield
        await services.close()
        if db is not None:
            await db.close()

    app = FastAPI(lifespan=lifespan)
    app.include_router(social.router, prefix="/api")

    @app.get("/api/health", response_model=HealthCheckResponseSchema)
    async def health_check() -> HealthCheckResponseSchema:
        return HealthCheckResponseSchema(success=True)

    @app.get("/api/me")
    async def get_current_user(
        current_user_id: str = Depends(get_current_user_id),
    ) -> dict[str, str]:
        """Return the ID of the authenticated user."""
        return {"user_id": current_user_id}

    return app


app = create_app()
