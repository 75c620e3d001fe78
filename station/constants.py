"""
station/constants.py

Protocol and lifecycle constants shared by the core engines.
Deployment-tunable values live in config.py; these are fixed by the remote API
contract and the operation lifecycle.
"""

# ── Request gateway ──────────────────────────────────────────
MAX_AUTH_RETRIES: int = 1  # one retry after one refresh, never more
AUTH_LOGIN_PATH: str = "/auth/login"
AUTH_LOGOUT_PATH: str = "/auth/logout"
AUTH_REFRESH_PATH: str = "/auth/refresh"
BEARER_PREFIX: str = "Bearer "

# ── Device API paths ─────────────────────────────────────────
DEVICES_PATH: str = "/devices"
DEVICE_PATH: str = "/devices/{device_id}"
RECORD_START_PATH: str = "/devices/{device_id}/{media}/record"
RECORD_STOP_PATH: str = "/devices/{device_id}/{media}/{recording_id}/stop"
RECORDING_DOWNLOAD_PATH: str = "/recordings/{media}/{recording_id}/download"
LAST_KNOWN_LOCATION_PATH: str = "/devices/{device_id}/location/last-known"
LOCATION_TRACK_PATH: str = "/devices/{device_id}/location/track"
LOCATION_STOP_PATH: str = "/devices/{device_id}/location/stop"

# Keys the remote API has used for a recording id in start responses
RECORDING_ID_KEYS: tuple[str, ...] = ("recording_id", "recordingId", "id")
# Keys for the stored artifact returned by a stop call
ARTIFACT_KEYS: tuple[str, ...] = ("filename", "file", "url", "recording_id", "recordingId", "id")
