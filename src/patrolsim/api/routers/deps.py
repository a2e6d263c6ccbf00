"""Shared router dependencies."""

from __future__ import annotations

from fastapi import HTTPException, Request


def get_engine(request: Request):
    """Retrieve the PatrolEngine from app state."""
    engine = getattr(request.app.state, "patrol_engine", None)
    if engine is None:
        raise HTTPException(503, "Patrol engine not available")
    return engine
