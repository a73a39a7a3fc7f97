"""FastAPI application factory."""
from contextlib import asynccontextmanager

from fastapi import FastAPI

from runsync.api.deps import close_orchestrator
from runsync.api.routes import runs, sync as sync_routes


def create_app() -> FastAPI:
    """Build and return the FastAPI app."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        # Running syncs are cancelled so no session is left mid-phase
        await close_orchestrator()

    app = FastAPI(
        title="runsync API",
        description="Strava run sync with weather enrichment",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.include_router(sync_routes.router, prefix="/sync", tags=["sync"])
    app.include_router(runs.router, prefix="/runs", tags=["runs"])

    return app


# Module-level app instance for uvicorn
app = create_app()
