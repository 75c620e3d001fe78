"""
station/routers/presence.py

Read-only presence endpoints for the rendering layer.
"""

from typing import Any

from fastapi import APIRouter, Depends, HTTPException

from station.dependencies import get_tracker
from station.services.presence import PresenceTracker

router = APIRouter(prefix="/presence")


@router.get("")
async def list_presence(
    tracker: PresenceTracker = Depends(get_tracker),
) -> dict[str, Any]:
    return {
        "devices": [view.to_wire() for view in tracker.snapshot()],
        "stats": tracker.stats(),
    }


@router.get("/{device_id}")
async def get_presence(
    device_id: str,
    tracker: PresenceTracker = Depends(get_tracker),
) -> dict[str, Any]:
    view = tracker.query(device_id)
    if view is None:
        raise HTTPException(status_code=404, detail=f"Device '{device_id}' not found")
    return view.to_wire()
