"""
station/services/presence.py

Signal-recency presence tracking.
A device is Online while its last signal is no older than the liveness
window. Every signal cancels the device's pending expiry timer and arms a new
one; when a timer fires without an intervening signal the device goes
Offline. On process start, timers are rebuilt from persisted timestamps.
"""

from datetime import datetime, timedelta
from typing import Callable, Iterable, Optional

import structlog

from config import settings
from station.schemas import (
    Device,
    LocationSample,
    PresenceState,
    PresenceView,
    SignalEvent,
    parse_timestamp,
)
from station.services.registry import DeviceRegistry
from station.services.timers import Clock, TimerHandle, Timers, utc_now

logger = structlog.get_logger(__name__)

PresenceListener = Callable[[Device], None]


class PresenceTracker:
    """Owns presence state for every device in the registry."""

    def __init__(
        self,
        registry: DeviceRegistry,
        timers: Timers,
        clock: Clock = utc_now,
        liveness_window_s: Optional[float] = None,
    ) -> None:
        self._registry = registry
        self._timers = timers
        self._clock = clock
        self._window = timedelta(seconds=liveness_window_s or settings.liveness_window_s)

        # At most one outstanding expiry timer per device
        self._handles: dict[str, TimerHandle] = {}
        self._generations: dict[str, int] = {}
        self._listeners: list[PresenceListener] = []

    @property
    def liveness_window(self) -> timedelta:
        return self._window

    def subscribe(self, listener: PresenceListener) -> Callable[[], None]:
        """Register a change listener; returns a callable that removes it."""
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener)

    # ── Mutations ────────────────────────────────────────────

    def record_signal(
        self, device_id: str, sample: Optional[SignalEvent] = None
    ) -> Device:
        """
        Apply a received signal.

        Liveness follows reception time; a claimed timestamp in the sample is
        kept only on the location sample for display.
        """
        now = self._clock()
        current = self._registry.get(device_id) or Device(id=device_id)
        location = _merge_location(current.location_sample, sample, now)

        updated = current.model_copy(
            update={
                "last_signal_at": now,
                "presence_state": PresenceState.ONLINE,
                "location_sample": location,
            }
        )
        self._registry.put(updated)
        self._arm(device_id, self._window.total_seconds())

        logger.info(
            "signal_recorded",
            device_id=device_id,
            was_online=current.presence_state == PresenceState.ONLINE,
            has_coordinates=location.lat is not None or location.lng is not None,
        )
        self._notify(updated)
        return updated

    def initialize(self, devices: Iterable[Device]) -> None:
        """
        Rebuild presence from persisted signal timestamps.

        Devices still inside the window come up Online with a timer for the
        remaining time; everything else is Offline with no timer. A device
        that already signalled since start keeps its live presence; only its
        display fields are filled in from the persisted record.
        """
        now = self._clock()
        online = 0
        offline = 0
        kept = 0

        for device in devices:
            last_signal_at = parse_timestamp(device.last_signal_at)
            current = self._registry.get(device.id)
            if current is not None and current.last_signal_at is not None and (
                last_signal_at is None or current.last_signal_at >= last_signal_at
            ):
                self._registry.put(_fill_display(current, device))
                kept += 1
                continue

            self._cancel(device.id)

            remaining_s = 0.0
            if last_signal_at is not None:
                remaining_s = (self._window - (now - last_signal_at)).total_seconds()

            if remaining_s > 0:
                state = PresenceState.ONLINE
                online += 1
            else:
                state = PresenceState.OFFLINE
                offline += 1

            updated = device.model_copy(
                update={"last_signal_at": last_signal_at, "presence_state": state}
            )
            self._registry.put(updated)
            if state == PresenceState.ONLINE:
                self._arm(device.id, remaining_s)
            self._notify(updated)

        logger.info("presence_initialized", online=online, offline=offline, kept=kept)

    def shutdown(self) -> None:
        """Cancel every outstanding expiry timer."""
        for device_id in list(self._handles):
            self._cancel(device_id)

    # ── Reads ────────────────────────────────────────────────

    def query(self, device_id: str) -> Optional[PresenceView]:
        device = self._registry.get(device_id)
        if device is None:
            return None
        return self._view(device, self._clock())

    def snapshot(self) -> list[PresenceView]:
        now = self._clock()
        return [self._view(device, now) for device in self._registry.snapshot()]

    def stats(self) -> dict[str, int]:
        views = self.snapshot()
        online = sum(1 for view in views if view.presence_state == PresenceState.ONLINE)
        return {"total": len(views), "online": online, "offline": len(views) - online}

    def has_timer(self, device_id: str) -> bool:
        return device_id in self._handles

    def _view(self, device: Device, now: datetime) -> PresenceView:
        state = device.presence_state
        last = device.last_signal_at
        # A late timer must not make a stale device read as Online
        if state == PresenceState.ONLINE and (last is None or now - last > self._window):
            state = PresenceState.OFFLINE
        return PresenceView(
            device_id=device.id,
            presence_state=state,
            last_signal_at=last,
            location_sample=device.location_sample,
        )

    # ── Timers ───────────────────────────────────────────────

    def _arm(self, device_id: str, delay_s: float) -> None:
        self._cancel(device_id)
        generation = self._generations.get(device_id, 0) + 1
        self._generations[device_id] = generation
        self._handles[device_id] = self._timers.call_later(
            delay_s, lambda: self._expire(device_id, generation)
        )

    def _cancel(self, device_id: str) -> None:
        handle = self._handles.pop(device_id, None)
        if handle is not None:
            handle.cancel()

    def _expire(self, device_id: str, generation: int) -> None:
        if self._generations.get(device_id) != generation:
            return
        if self._handles.pop(device_id, None) is None:
            return

        device = self._registry.get(device_id)
        if device is None or device.presence_state == PresenceState.OFFLINE:
            return

        updated = device.model_copy(update={"presence_state": PresenceState.OFFLINE})
        self._registry.put(updated)
        logger.info(
            "device_offline",
            device_id=device_id,
            last_signal_at=str(device.last_signal_at),
            window_s=self._window.total_seconds(),
        )
        self._notify(updated)

    def _notify(self, device: Device) -> None:
        for listener in list(self._listeners):
            try:
                listener(device)
            except Exception as exc:
                logger.error("presence_listener_failed", device_id=device.id, error=str(exc))


def _fill_display(current: Device, persisted: Device) -> Device:
    """Take the display name and location from persisted only where current has none."""
    changes: dict = {}
    if current.display_name is None and persisted.display_name is not None:
        changes["display_name"] = persisted.display_name
    if current.location_sample is None and persisted.location_sample is not None:
        changes["location_sample"] = persisted.location_sample
    return current.model_copy(update=changes) if changes else current


def _merge_location(
    previous: Optional[LocationSample],
    sample: Optional[SignalEvent],
    now: datetime,
) -> LocationSample:
    """Overlay the fields present in sample onto the previous location."""
    base = previous or LocationSample()
    changes: dict = {}
    if sample is not None:
        for field in ("lat", "lng", "address"):
            value = getattr(sample, field)
            if value is not None:
                changes[field] = value
        claimed = parse_timestamp(sample.timestamp)
    else:
        claimed = None
    changes["timestamp"] = claimed or now
    return base.model_copy(update=changes)
