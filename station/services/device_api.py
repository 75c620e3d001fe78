"""
station/services/device_api.py

Typed wrappers for the remote device endpoints.
All calls go through RequestGateway and return its GatewayResult unchanged;
helpers here only build paths and pull identifiers out of payloads.
"""

from typing import Any, Optional

import structlog

from station.constants import (
    ARTIFACT_KEYS,
    DEVICE_PATH,
    DEVICES_PATH,
    LAST_KNOWN_LOCATION_PATH,
    LOCATION_STOP_PATH,
    LOCATION_TRACK_PATH,
    RECORD_START_PATH,
    RECORD_STOP_PATH,
    RECORDING_DOWNLOAD_PATH,
    RECORDING_ID_KEYS,
)
from station.schemas import (
    Device,
    LocationSample,
    OperationType,
    PresenceState,
    parse_timestamp,
)
from station.services.request_gateway import GatewayResult, RequestGateway

logger = structlog.get_logger(__name__)


class DeviceApi:
    """Remote device operations (listing, recordings, location tracking)."""

    def __init__(self, gateway: RequestGateway) -> None:
        self.gateway = gateway

    async def list_devices(
        self,
        mapped_only: bool = False,
        unmapped_only: bool = False,
        platform: Optional[str] = None,
        status: Optional[str] = None,
    ) -> GatewayResult:
        params: dict[str, str] = {}
        if mapped_only:
            params["mapped_only"] = "true"
        if unmapped_only:
            params["unmapped_only"] = "true"
        if platform:
            params["platform"] = platform
        if status:
            params["status"] = status
        return await self.gateway.execute(DEVICES_PATH, params=params or None)

    async def get_device(self, device_id: str) -> GatewayResult:
        return await self.gateway.execute(DEVICE_PATH.format(device_id=device_id))

    async def get_last_known_location(self, device_id: str) -> GatewayResult:
        return await self.gateway.execute(
            LAST_KNOWN_LOCATION_PATH.format(device_id=device_id)
        )

    async def start_recording(
        self, device_id: str, op_type: OperationType
    ) -> GatewayResult:
        return await self.gateway.execute(
            RECORD_START_PATH.format(device_id=device_id, media=op_type.media),
            method="POST",
        )

    async def stop_recording(
        self, device_id: str, op_type: OperationType, recording_id: str
    ) -> GatewayResult:
        return await self.gateway.execute(
            RECORD_STOP_PATH.format(
                device_id=device_id,
                media=op_type.media,
                recording_id=recording_id,
            ),
            method="POST",
        )

    async def download_recording(
        self, op_type: OperationType, recording_id: str
    ) -> GatewayResult:
        """Fetch recording bytes; the filename comes from Content-Disposition."""
        return await self.gateway.execute(
            RECORDING_DOWNLOAD_PATH.format(media=op_type.media, recording_id=recording_id),
            raw=True,
        )

    async def start_location_tracking(self, device_id: str) -> GatewayResult:
        return await self.gateway.execute(
            LOCATION_TRACK_PATH.format(device_id=device_id), method="POST"
        )

    async def stop_location_tracking(self, device_id: str) -> GatewayResult:
        return await self.gateway.execute(
            LOCATION_STOP_PATH.format(device_id=device_id), method="POST"
        )


def extract_ref(data: Any, keys: tuple[str, ...]) -> Optional[str]:
    """First non-empty value for keys, looking one level into a 'data' envelope."""
    if not isinstance(data, dict):
        return None
    for container in (data, data.get("data")):
        if not isinstance(container, dict):
            continue
        for key in keys:
            value = container.get(key)
            if value not in (None, ""):
                return str(value)
    return None


def recording_id_from(data: Any) -> Optional[str]:
    return extract_ref(data, RECORDING_ID_KEYS)


def artifact_ref_from(data: Any) -> Optional[str]:
    return extract_ref(data, ARTIFACT_KEYS)


def device_from_remote(payload: Any) -> Optional[Device]:
    """
    Build a Device from a remote device listing entry.

    The last-known-location timestamp is the persisted signal time, and it
    only counts when the location carries coordinates. Presence is left
    Offline; the tracker decides it at initialization.
    """
    if not isinstance(payload, dict):
        return None
    device_id = payload.get("device_id") or payload.get("id")
    if not device_id:
        logger.warning("remote_device_missing_id", keys=sorted(payload.keys()))
        return None

    location = payload.get("lastKnownLocation") or payload.get("last_known_location")
    sample: Optional[LocationSample] = None
    last_signal_at = None
    if isinstance(location, dict):
        claimed = parse_timestamp(location.get("timestamp"))
        lat = _as_float(location.get("lat"))
        lng = _as_float(location.get("lng"))
        sample = LocationSample(
            lat=lat,
            lng=lng,
            address=location.get("address"),
            timestamp=claimed,
        )
        if lat is not None or lng is not None:
            last_signal_at = claimed

    return Device(
        id=str(device_id),
        display_name=(
            payload.get("display_name")
            or payload.get("admin_assigned_name")
            or payload.get("device_name")
        ),
        last_signal_at=last_signal_at,
        presence_state=PresenceState.OFFLINE,
        location_sample=sample,
    )


def devices_from_listing(data: Any) -> list[Device]:
    """Parse a GET /devices payload ({devices: [...]}, {data: [...]} or a bare list)."""
    if isinstance(data, dict):
        entries = data.get("devices")
        if entries is None:
            entries = data.get("data")
    else:
        entries = data
    if not isinstance(entries, list):
        return []

    devices = []
    for entry in entries:
        device = device_from_remote(entry)
        if device is not None:
            devices.append(device)
    return devices


def _as_float(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None
