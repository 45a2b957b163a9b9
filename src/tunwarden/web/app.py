"""FastAPI application factory for the Tunwarden web API."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from tunwarden import __version__
from tunwarden.session.manager import SessionManager


def create_app(manager: SessionManager) -> FastAPI:
    """Build the FastAPI application around an existing session manager."""

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        yield
        # Never leave firewall rules or a system proxy behind
        await app.state.manager.shutdown()

    app = FastAPI(
        title="Tunwarden",
        version=__version__,
        docs_url="/api/docs",
        lifespan=lifespan,
    )

    app.state.manager = manager

    from tunwarden.web.api.live import router as live_router
    from tunwarden.web.api.profiles import router as profiles_router
    from tunwarden.web.api.session import router as session_router

    app.include_router(session_router, prefix="/api")
    app.include_router(profiles_router, prefix="/api")
    app.include_router(live_router, prefix="/api")

    return app
