"""
station/routers/signals.py

POST /signals endpoint.
Receives device signals from the telemetry channel and applies them to the
presence tracker.
"""

import structlog
from fastapi import APIRouter, Depends

from station.dependencies import get_tracker
from station.schemas import SignalEvent
from station.services.presence import PresenceTracker

logger = structlog.get_logger(__name__)

router = APIRouter()


@router.post("/signals", status_code=202)
async def receive_signal(
    event: SignalEvent,
    tracker: PresenceTracker = Depends(get_tracker),
) -> dict[str, str]:
    """
    Receive a signal from a device.

    The signal marks the device Online and restarts its liveness window.
    Location fields are optional and merged into the last known location.
    """
    logger.debug(
        "signal_received",
        device_id=event.device_id,
        has_location=event.lat is not None or event.lng is not None,
    )
    device = tracker.record_signal(event.device_id, event)
    return {
        "status": "received",
        "deviceId": device.id,
        "presenceState": device.presence_state.value,
    }
