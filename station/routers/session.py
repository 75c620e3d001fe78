"""
station/routers/session.py

Operator session endpoints.
Login stores the remote token pair on the shared gateway; the first successful
login also seeds the device registry.
"""

from typing import Any

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request

from station.dependencies import get_device_api, get_gateway, get_tracker
from station.schemas import LoginRequest
from station.services.bootstrap import bootstrap_devices
from station.services.device_api import DeviceApi
from station.services.presence import PresenceTracker
from station.services.request_gateway import RequestGateway

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/session")


@router.get("")
async def get_session(
    gateway: RequestGateway = Depends(get_gateway),
) -> dict[str, bool]:
    return {"authenticated": gateway.is_authenticated}


@router.post("/login")
async def login(
    credentials: LoginRequest,
    request: Request,
    gateway: RequestGateway = Depends(get_gateway),
    device_api: DeviceApi = Depends(get_device_api),
    tracker: PresenceTracker = Depends(get_tracker),
) -> dict[str, Any]:
    result = await gateway.login(credentials.username, credentials.password)
    if not result.success:
        raise HTTPException(
            status_code=401,
            detail=result.detail or "Login failed",
        )

    loaded = None
    if not getattr(request.app.state, "devices_bootstrapped", False):
        loaded = await bootstrap_devices(device_api, tracker)
        request.app.state.devices_bootstrapped = loaded > 0

    return {"authenticated": True, "devicesLoaded": loaded}


@router.post("/logout")
async def logout(
    gateway: RequestGateway = Depends(get_gateway),
) -> dict[str, bool]:
    result = await gateway.logout()
    if not result.success:
        # The local session is gone either way
        logger.info("remote_logout_failed", error=result.error, detail=result.detail)
    return {"authenticated": False}
