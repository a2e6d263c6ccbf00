"""FastAPI application for the GM hub."""

from __future__ import annotations

from fastapi import FastAPI

from patrolsim.logging_setup import configure_logging

from .routers.jail import router as jail_router
from .routers.journal import router as journal_router
from .routers.patrols import router as patrols_router


def create_app(engine=None, debug: bool | None = None) -> FastAPI:
    """Build the hub app. ``engine`` may be attached later via ``app.state.patrol_engine``.

    With ``debug`` set, loguru is reconfigured to a single stderr sink.
    """
    if debug is not None:
        configure_logging(debug)
    app = FastAPI(
        title="patrolsim GM hub",
        description="Patrols, decision journal and prisoners of a running patrol engine",
        version="0.1.0",
    )
    app.state.patrol_engine = engine
    app.include_router(patrols_router)
    app.include_router(journal_router)
    app.include_router(jail_router)

    @app.get("/health")
    async def health():
        return {"status": "ok", "engine": app.state.patrol_engine is not None}

    return app
