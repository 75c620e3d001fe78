"""
tests/fixtures.py

Shared test data and helper functions for constructing test objects.
All tests must use these fixtures instead of hardcoding test values.
"""

import json
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

import httpx

from station.schemas import (
    Device,
    LocationSample,
    OperationStatus,
    OperationType,
    PresenceState,
    ScheduledOperation,
    SignalEvent,
)

TEST_NOW = datetime(2024, 6, 15, 13, 30, 0, tzinfo=timezone.utc)
TEST_DEVICE_ID = "device_001"
TEST_BASE_URL = "http://c2.test/api"


class ManualClock:
    """Wall clock that only moves when a test advances it."""

    def __init__(self, now: datetime = TEST_NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class ManualTimerHandle:
    def __init__(self, due: datetime, callback: Callable[[], None]) -> None:
        self.due = due
        self.callback = callback
        self.cancelled = False
        self.fired = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualTimers:
    """
    Timer service bound to a ManualClock.

    advance() moves the clock and fires every live timer that came due, in
    due-time order, each at most once.
    """

    def __init__(self, clock: ManualClock) -> None:
        self.clock = clock
        self.handles: list[ManualTimerHandle] = []

    def call_later(self, delay: float, callback: Callable[[], None]) -> ManualTimerHandle:
        handle = ManualTimerHandle(self.clock() + timedelta(seconds=max(0.0, delay)), callback)
        self.handles.append(handle)
        return handle

    def live(self) -> list[ManualTimerHandle]:
        return [h for h in self.handles if not h.cancelled and not h.fired]

    def advance(self, seconds: float) -> None:
        target = self.clock() + timedelta(seconds=seconds)
        while True:
            due = [h for h in self.live() if h.due <= target]
            if not due:
                break
            handle = min(due, key=lambda h: h.due)
            self.clock.now = max(self.clock.now, handle.due)
            handle.fired = True
            handle.callback()
        self.clock.now = target


def build_device(
    device_id: str = TEST_DEVICE_ID,
    last_signal_at: Optional[datetime] = None,
    presence_state: PresenceState = PresenceState.OFFLINE,
    lat: Optional[float] = None,
    lng: Optional[float] = None,
) -> Device:
    """Build a Device with sensible defaults for testing."""
    sample = None
    if lat is not None or lng is not None:
        sample = LocationSample(lat=lat, lng=lng, timestamp=last_signal_at)
    return Device(
        id=device_id,
        display_name=f"Device {device_id}",
        last_signal_at=last_signal_at,
        presence_state=presence_state,
        location_sample=sample,
    )


def build_signal(
    device_id: str = TEST_DEVICE_ID,
    lat: Optional[float] = 39.9042,
    lng: Optional[float] = 116.4074,
    address: Optional[str] = None,
    timestamp: Optional[str] = None,
) -> SignalEvent:
    """Build a SignalEvent with sensible defaults for testing."""
    return SignalEvent(
        device_id=device_id,
        lat=lat,
        lng=lng,
        address=address,
        timestamp=timestamp,
    )


def build_operation(
    operation_id: str = "op_001",
    device_id: str = TEST_DEVICE_ID,
    op_type: OperationType = OperationType.AUDIO,
    scheduled_at: datetime = TEST_NOW,
    duration_minutes: int = 2,
    status: OperationStatus = OperationStatus.PENDING,
    **extra: Any,
) -> ScheduledOperation:
    """Build a ScheduledOperation with sensible defaults for testing."""
    return ScheduledOperation(
        id=operation_id,
        device_id=device_id,
        op_type=op_type,
        scheduled_at=scheduled_at,
        duration_minutes=duration_minutes,
        status=status,
        created_at=TEST_NOW - timedelta(hours=1),
        **extra,
    )


def json_response(status_code: int, payload: Any = None) -> httpx.Response:
    """Build an httpx response carrying a JSON body (or no body for None)."""
    if payload is None:
        return httpx.Response(status_code)
    return httpx.Response(
        status_code,
        content=json.dumps(payload).encode(),
        headers={"Content-Type": "application/json"},
    )


class RecordingHandler:
    """
    MockTransport handler that records every request and answers from a
    route table: {(method, path): response | [responses...] | callable}.
    Lists are consumed in order; the last entry repeats.
    """

    def __init__(self, routes: dict[tuple[str, str], Any]) -> None:
        self.routes = routes
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        key = (request.method, request.url.path)
        if key not in self.routes:
            return json_response(404, {"detail": f"no route for {key}"})
        entry = self.routes[key]
        if callable(entry):
            return entry(request)
        if isinstance(entry, list):
            entry = entry.pop(0) if len(entry) > 1 else entry[0]
        # Responses are bound to one request; hand out a fresh copy each time
        return httpx.Response(entry.status_code, content=entry.content, headers=entry.headers)

    def calls(self, method: str, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.method == method and r.url.path == path]

    def auth_headers(self, method: str, path: str) -> list[Optional[str]]:
        return [r.headers.get("Authorization") for r in self.calls(method, path)]
