"""Patrol control API — list, start, stop, pause, resume."""

from __future__ import annotations

from fastapi import APIRouter, HTTPException, Request

from .deps import get_engine

router = APIRouter(prefix="/api/patrols", tags=["patrols"])

BULK_ACTIONS = {
    "start": "start_all",
    "stop": "stop_all",
    "pause": "pause_all",
    "resume": "resume_all",
    "reset-alerts": "reset_all_alerts",
}


def _summary(patrol) -> dict:
    data = patrol.to_dict()
    data["phase"] = patrol.phase
    return data


def _get_patrol(engine, patrol_id: str):
    patrol = engine.manager.get_patrol(patrol_id)
    if patrol is None:
        raise HTTPException(404, f"Patrol not found: {patrol_id}")
    return patrol


@router.get("")
async def list_patrols(request: Request):
    """Statistics plus every patrol of the current scene."""
    engine = get_engine(request)
    return {
        "sceneId": engine.manager.scene_id,
        "statistics": engine.manager.get_statistics(),
        "patrols": [_summary(p) for p in engine.manager.get_patrols()],
        "alertCooldown": engine.reinforcement.alert_cooldown_remaining(),
    }


@router.get("/{patrol_id}")
async def get_patrol(patrol_id: str, request: Request):
    engine = get_engine(request)
    return _summary(_get_patrol(engine, patrol_id))


@router.post("/bulk/{action}")
async def bulk_action(action: str, request: Request):
    """Apply one lifecycle action to every patrol."""
    engine = get_engine(request)
    method = BULK_ACTIONS.get(action)
    if method is None:
        raise HTTPException(400, f"Unknown bulk action: {action}")
    count = getattr(engine.manager, method)()
    return {"action": action, "count": count}


@router.post("/{patrol_id}/start")
async def start_patrol(patrol_id: str, request: Request):
    patrol = _get_patrol(get_engine(request), patrol_id)
    if patrol.is_active:
        raise HTTPException(409, f"Patrol already running: {patrol.name}")
    if not patrol.start():
        raise HTTPException(400, f"Patrol {patrol.name} cannot start")
    return {"patrolId": patrol.id, "state": patrol.state}


@router.post("/{patrol_id}/stop")
async def stop_patrol(patrol_id: str, request: Request):
    patrol = _get_patrol(get_engine(request), patrol_id)
    patrol.stop()
    return {"patrolId": patrol.id, "state": patrol.state}


@router.post("/{patrol_id}/pause")
async def pause_patrol(patrol_id: str, request: Request):
    patrol = _get_patrol(get_engine(request), patrol_id)
    if not patrol.pause():
        raise HTTPException(409, f"Patrol {patrol.name} is not running")
    return {"patrolId": patrol.id, "state": patrol.state}


@router.post("/{patrol_id}/resume")
async def resume_patrol(patrol_id: str, request: Request):
    patrol = _get_patrol(get_engine(request), patrol_id)
    if not patrol.resume():
        raise HTTPException(409, f"Patrol {patrol.name} is not paused")
    return {"patrolId": patrol.id, "state": patrol.state}
