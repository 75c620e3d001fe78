"""
station/services/bootstrap.py

Seeds the device registry from the remote API and rebuilds presence timers
from each device's last known location timestamp.
"""

import structlog

from station.services.device_api import DeviceApi, devices_from_listing
from station.services.presence import PresenceTracker

logger = structlog.get_logger(__name__)


async def bootstrap_devices(device_api: DeviceApi, tracker: PresenceTracker) -> int:
    """
    Fetch the device list and initialize presence from it.

    Returns the number of devices loaded; 0 when the listing failed.
    """
    result = await device_api.list_devices()
    if not result.success:
        logger.warning(
            "device_bootstrap_failed",
            error=result.error.value if result.error else None,
            detail=result.detail,
        )
        return 0

    devices = devices_from_listing(result.data)
    tracker.initialize(devices)
    logger.info("device_bootstrap_complete", device_count=len(devices))
    return len(devices)
