from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import FastAPI

from . import __version__
from .api import routes_admin
from .api.middleware import GovernanceMiddleware
from .config import Settings, get_settings
from .context import GovernanceContext
from .telemetry.logger import configure_logging


def create_app(
    context: Optional[GovernanceContext] = None,
    settings: Optional[Settings] = None,
) -> FastAPI:
    """Build the governance HTTP surface.

    Host applications either mount their own routers on the returned app or
    reuse ``GovernanceMiddleware`` and the dependencies on an existing one.
    The context's sweeps and audit worker run for the app's lifespan.
    """
    if context is None:
        settings = settings or get_settings()
        configure_logging(settings)
        context = GovernanceContext.from_settings(settings)

    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        context.start()
        try:
            yield
        finally:
            context.shutdown()

    app = FastAPI(
        title="Request Governor",
        version=__version__,
        description=(
            "In-process request governance: TTL caching, fixed-window rate "
            "limiting with escalating blocks, abuse heuristics and a "
            "role/ownership access-control gate with audit trail."
        ),
        lifespan=lifespan,
    )
    app.state.governance = context
    app.add_middleware(GovernanceMiddleware, context=context)
    app.include_router(routes_admin.router)

    @app.get("/health", tags=["meta"])
    def health() -> dict:
        return {"status": "healthy"}

    return app
