"""Decision journal API — undo log and pending approvals."""

from __future__ import annotations

from fastapi import APIRouter, HTTPException, Request

from .deps import get_engine

router = APIRouter(prefix="/api/journal", tags=["journal"])


@router.get("/log")
async def get_log(request: Request, limit: int = 50):
    """Most recent decision records, newest first."""
    engine = get_engine(request)
    entries = engine.journal.entries()
    return {"entries": list(reversed(entries))[:max(0, limit)], "total": len(entries)}


@router.delete("/log")
async def clear_log(request: Request):
    get_engine(request).journal.clear()
    return {"status": "cleared"}


@router.post("/log/{timestamp}/undo")
async def undo_entry(timestamp: int, request: Request):
    """Apply a record's compensating actions."""
    engine = get_engine(request)
    if engine.journal.find(timestamp) is None:
        raise HTTPException(404, f"No log entry {timestamp}")
    result = engine.journal.undo(timestamp)
    if not result["success"]:
        raise HTTPException(409, "; ".join(result["errors"]) or "Undo failed")
    return result


@router.get("/pending")
async def list_pending(request: Request):
    engine = get_engine(request)
    return {"pending": engine.pending.list()}


@router.post("/pending/{index}/approve")
async def approve_pending(index: int, request: Request):
    engine = get_engine(request)
    if not 0 <= index < len(engine.pending.list()):
        raise HTTPException(404, f"No pending entry at index {index}")
    if not engine.pending.approve(index):
        raise HTTPException(409, "Pending action could not be executed")
    return {"status": "approved", "index": index}


@router.post("/pending/{index}/reject")
async def reject_pending(index: int, request: Request):
    engine = get_engine(request)
    entry = engine.pending.reject(index)
    if entry is None:
        raise HTTPException(404, f"No pending entry at index {index}")
    return {"status": "rejected", "type": entry.get("type")}
