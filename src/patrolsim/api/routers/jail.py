"""Jail API — prisoners and release."""

from __future__ import annotations

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel

from .deps import get_engine

router = APIRouter(prefix="/api/jail", tags=["jail"])


class ReleaseRequest(BaseModel):
    return_to_origin: bool = True


@router.get("/prisoners")
async def list_prisoners(request: Request):
    """Unreleased prisoners across every jail scene."""
    engine = get_engine(request)
    return {"prisoners": engine.jail.get_prisoners(), "jailScenes": engine.jail.jail_scene_ids()}


@router.post("/prisoners/{actor_id}/release")
async def release_prisoner(actor_id: str, request: Request, body: ReleaseRequest | None = None):
    engine = get_engine(request)
    if not engine.jail.is_prisoner(actor_id):
        raise HTTPException(404, f"Not a prisoner: {actor_id}")
    return_to_origin = body.return_to_origin if body is not None else True
    if not engine.jail.release_prisoner(actor_id, return_to_origin=return_to_origin):
        raise HTTPException(409, f"Could not release {actor_id}")
    return {"actorId": actor_id, "released": True}


@router.post("/release-all")
async def release_all(request: Request):
    engine = get_engine(request)
    return {"released": engine.jail.release_all_prisoners()}
