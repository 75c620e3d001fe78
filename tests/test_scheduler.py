"""
tests/test_scheduler.py

Unit tests for station/services/scheduler.py.
Covers validation, the Pending/Active/Completed/Cancelled lifecycle, tick
idempotence, remote-call failure handling and retention pruning.
The device API is mocked; time is passed to tick explicitly.
"""

from datetime import datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from station.schemas import OperationStatus, OperationType
from station.services.registry import DeviceRegistry, OperationRegistry
from station.services.request_gateway import ErrorKind, GatewayResult
from station.services.scheduler import (
    OperationNotFoundError,
    OperationStateError,
    ScheduleEngine,
    ValidationError,
)
from tests.fixtures import (
    TEST_DEVICE_ID,
    TEST_NOW,
    ManualClock,
    build_device,
    build_operation,
)


def make_device_api(
    start: GatewayResult | None = None,
    stop: GatewayResult | None = None,
) -> MagicMock:
    device_api = MagicMock()
    device_api.start_recording = AsyncMock(
        return_value=start or GatewayResult.succeeded(200, {"recording_id": "rec_1"})
    )
    device_api.stop_recording = AsyncMock(
        return_value=stop or GatewayResult.succeeded(200, {"filename": "rec_1.wav"})
    )
    return device_api


def make_engine(device_api: MagicMock | None = None, retention_hours: float = 24):
    clock = ManualClock(TEST_NOW - timedelta(seconds=10))
    operations = OperationRegistry()
    devices = DeviceRegistry([build_device()])
    device_api = device_api or make_device_api()
    engine = ScheduleEngine(
        operations,
        devices,
        device_api,
        clock=clock,
        retention_hours=retention_hours,
    )
    return engine, operations, device_api, clock


# ── schedule ─────────────────────────────────────────────────


def test_schedule_creates_pending_operation() -> None:
    engine, operations, _, clock = make_engine()

    op = engine.schedule(TEST_DEVICE_ID, "Audio", TEST_NOW.isoformat(), 5, "night watch")

    assert op.status == OperationStatus.PENDING
    assert op.op_type == OperationType.AUDIO
    assert op.scheduled_at == TEST_NOW
    assert op.duration_minutes == 5
    assert op.created_at == clock()
    assert op.note == "night watch"
    assert operations.get(op.id) == op


def test_schedule_wire_shape() -> None:
    engine, _, _, _ = make_engine()

    wire = engine.schedule(TEST_DEVICE_ID, OperationType.VIDEO, TEST_NOW, 3).to_wire()

    assert wire["deviceId"] == TEST_DEVICE_ID
    assert wire["type"] == "Video"
    assert wire["duration"] == 3
    assert wire["status"] == "Pending"
    assert "scheduledDateTime" in wire
    assert "createdAt" in wire


@pytest.mark.parametrize("duration", [0, -5, 2.5, "5", True, None])
def test_schedule_rejects_bad_duration(duration) -> None:
    engine, operations, _, _ = make_engine()

    with pytest.raises(ValidationError) as exc_info:
        engine.schedule(TEST_DEVICE_ID, "Audio", TEST_NOW, duration)

    assert exc_info.value.field == "duration"
    assert len(operations) == 0


def test_schedule_rejects_unknown_type() -> None:
    engine, _, _, _ = make_engine()

    with pytest.raises(ValidationError) as exc_info:
        engine.schedule(TEST_DEVICE_ID, "Photo", TEST_NOW, 5)

    assert exc_info.value.field == "type"


def test_schedule_rejects_unparsable_time() -> None:
    engine, _, _, _ = make_engine()

    with pytest.raises(ValidationError) as exc_info:
        engine.schedule(TEST_DEVICE_ID, "Audio", "tomorrow-ish", 5)

    assert exc_info.value.field == "scheduledDateTime"


def test_schedule_rejects_unknown_device() -> None:
    engine, _, _, _ = make_engine()

    with pytest.raises(ValidationError) as exc_info:
        engine.schedule("ghost", "Audio", TEST_NOW, 5)

    assert exc_info.value.field == "deviceId"


@pytest.mark.asyncio
async def test_past_schedule_is_accepted_and_starts_next_tick() -> None:
    engine, _, device_api, _ = make_engine()
    op = engine.schedule(TEST_DEVICE_ID, "Audio", TEST_NOW - timedelta(minutes=1), 5)

    engine.tick(TEST_NOW)
    await engine.drain()

    assert engine.get(op.id).status == OperationStatus.ACTIVE
    device_api.start_recording.assert_awaited_once_with(TEST_DEVICE_ID, OperationType.AUDIO)


# ── tick lifecycle ───────────────────────────────────────────


@pytest.mark.asyncio
async def test_tick_runs_full_lifecycle() -> None:
    """Created at T-10s for T with 5 minutes: Active at T, Completed after T+5m."""
    engine, _, device_api, _ = make_engine()
    op = engine.schedule(TEST_DEVICE_ID, "Audio", TEST_NOW, 5)

    engine.tick(TEST_NOW - timedelta(seconds=1))
    assert engine.get(op.id).status == OperationStatus.PENDING
    device_api.start_recording.assert_not_awaited()

    engine.tick(TEST_NOW)
    await engine.drain()
    active = engine.get(op.id)
    assert active.status == OperationStatus.ACTIVE
    assert active.start_confirmed is True
    assert active.remote_ref == "rec_1"
    device_api.start_recording.assert_awaited_once()

    engine.tick(TEST_NOW + timedelta(minutes=5))
    assert engine.get(op.id).status == OperationStatus.ACTIVE

    end = TEST_NOW + timedelta(minutes=5, seconds=1)
    engine.tick(end)
    await engine.drain()
    completed = engine.get(op.id)
    assert completed.status == OperationStatus.COMPLETED
    assert completed.stop_confirmed is True
    assert completed.artifact_ref == "rec_1.wav"
    assert completed.finished_at == end
    device_api.stop_recording.assert_awaited_once_with(
        TEST_DEVICE_ID, OperationType.AUDIO, "rec_1"
    )

    engine.tick(end)
    await engine.drain()
    device_api.start_recording.assert_awaited_once()
    device_api.stop_recording.assert_awaited_once()


@pytest.mark.asyncio
async def test_tick_accepts_naive_time_as_utc() -> None:
    engine, _, device_api, _ = make_engine()
    op = engine.schedule(TEST_DEVICE_ID, "Audio", "2024-06-15T13:30:00", 5)

    engine.tick(datetime(2024, 6, 15, 13, 31))
    await engine.drain()

    assert engine.get(op.id).status == OperationStatus.ACTIVE
    device_api.start_recording.assert_awaited_once()


def test_prune_accepts_naive_time() -> None:
    engine, _, _, _ = make_engine(retention_hours=1)
    engine.restore(
        [
            build_operation(
                status=OperationStatus.COMPLETED,
                finished_at=TEST_NOW - timedelta(hours=2),
            )
        ]
    )

    assert engine.prune(TEST_NOW.replace(tzinfo=None)) == 1


@pytest.mark.asyncio
async def test_repeated_tick_does_not_restart() -> None:
    engine, _, device_api, _ = make_engine()
    engine.schedule(TEST_DEVICE_ID, "Video", TEST_NOW, 5)

    first = engine.tick(TEST_NOW)
    second = engine.tick(TEST_NOW)
    third = engine.tick(TEST_NOW + timedelta(seconds=30))
    await engine.drain()

    assert len(first) == 1
    assert second == []
    assert third == []
    device_api.start_recording.assert_awaited_once_with(TEST_DEVICE_ID, OperationType.VIDEO)


@pytest.mark.asyncio
async def test_overdue_pending_starts_and_stops_in_one_tick() -> None:
    """Start is issued before stop, and stop uses the start's recording id."""
    engine, _, device_api, _ = make_engine()
    op = engine.schedule(TEST_DEVICE_ID, "Audio", TEST_NOW, 1)

    spawned = engine.tick(TEST_NOW + timedelta(minutes=10))
    await engine.drain()

    assert len(spawned) == 2
    final = engine.get(op.id)
    assert final.status == OperationStatus.COMPLETED
    assert final.start_confirmed is True
    assert final.stop_confirmed is True
    device_api.stop_recording.assert_awaited_once_with(
        TEST_DEVICE_ID, OperationType.AUDIO, "rec_1"
    )


@pytest.mark.asyncio
async def test_operations_on_same_device_run_independently() -> None:
    engine, _, device_api, _ = make_engine()
    first = engine.schedule(TEST_DEVICE_ID, "Audio", TEST_NOW, 5)
    second = engine.schedule(TEST_DEVICE_ID, "Video", TEST_NOW, 5)

    engine.tick(TEST_NOW)
    await engine.drain()

    assert engine.get(first.id).status == OperationStatus.ACTIVE
    assert engine.get(second.id).status == OperationStatus.ACTIVE
    assert device_api.start_recording.await_count == 2


# ── remote failures ──────────────────────────────────────────


@pytest.mark.asyncio
async def test_failed_start_still_advances_status() -> None:
    device_api = make_device_api(
        start=GatewayResult.failed(ErrorKind.SERVER_ERROR, "device busy", status=503)
    )
    engine, _, _, _ = make_engine(device_api)
    op = engine.schedule(TEST_DEVICE_ID, "Audio", TEST_NOW, 5)

    engine.tick(TEST_NOW)
    await engine.drain()
    active = engine.get(op.id)
    assert active.status == OperationStatus.ACTIVE
    assert active.start_confirmed is False
    assert active.last_error == "start failed: ServerError: device busy"

    engine.tick(TEST_NOW + timedelta(minutes=6))
    await engine.drain()
    completed = engine.get(op.id)
    assert completed.status == OperationStatus.COMPLETED
    assert completed.stop_confirmed is False
    # Nothing was started remotely, so nothing is stopped
    device_api.stop_recording.assert_not_awaited()
    assert completed.last_error.startswith("stop skipped")


@pytest.mark.asyncio
async def test_failed_stop_still_completes() -> None:
    device_api = make_device_api(
        stop=GatewayResult.failed(ErrorKind.NETWORK_ERROR, "Request timed out")
    )
    engine, _, _, _ = make_engine(device_api)
    op = engine.schedule(TEST_DEVICE_ID, "Audio", TEST_NOW, 5)

    engine.tick(TEST_NOW)
    engine.tick(TEST_NOW + timedelta(minutes=6))
    await engine.drain()

    completed = engine.get(op.id)
    assert completed.status == OperationStatus.COMPLETED
    assert completed.stop_confirmed is False
    assert completed.last_error == "stop failed: NetworkError: Request timed out"


@pytest.mark.asyncio
async def test_start_without_recording_id_is_flagged() -> None:
    device_api = make_device_api(start=GatewayResult.succeeded(200, {"status": "ok"}))
    engine, _, _, _ = make_engine(device_api)
    op = engine.schedule(TEST_DEVICE_ID, "Audio", TEST_NOW, 5)

    engine.tick(TEST_NOW)
    await engine.drain()

    active = engine.get(op.id)
    assert active.start_confirmed is True
    assert active.remote_ref is None
    assert active.last_error == "start response carried no recording id"


@pytest.mark.asyncio
async def test_crashing_device_api_is_recorded() -> None:
    device_api = make_device_api()
    device_api.start_recording = AsyncMock(side_effect=RuntimeError("boom"))
    engine, _, _, _ = make_engine(device_api)
    op = engine.schedule(TEST_DEVICE_ID, "Audio", TEST_NOW, 5)

    engine.tick(TEST_NOW)
    await engine.drain()

    active = engine.get(op.id)
    assert active.status == OperationStatus.ACTIVE
    assert active.last_error == "start crashed: boom"


# ── cancel ───────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_cancel_pending_prevents_start() -> None:
    engine, _, device_api, _ = make_engine()
    op = engine.schedule(TEST_DEVICE_ID, "Audio", TEST_NOW, 5)

    cancelled = engine.cancel(op.id)
    engine.tick(TEST_NOW + timedelta(minutes=1))
    await engine.drain()

    assert cancelled.status == OperationStatus.CANCELLED
    assert engine.get(op.id).status == OperationStatus.CANCELLED
    device_api.start_recording.assert_not_awaited()


@pytest.mark.asyncio
async def test_cancel_active_is_rejected() -> None:
    engine, _, _, _ = make_engine()
    op = engine.schedule(TEST_DEVICE_ID, "Audio", TEST_NOW, 5)
    engine.tick(TEST_NOW)
    await engine.drain()

    with pytest.raises(OperationStateError) as exc_info:
        engine.cancel(op.id)

    assert exc_info.value.current == OperationStatus.ACTIVE
    assert engine.get(op.id).status == OperationStatus.ACTIVE


def test_cancel_twice_is_rejected() -> None:
    engine, _, _, _ = make_engine()
    op = engine.schedule(TEST_DEVICE_ID, "Audio", TEST_NOW, 5)
    engine.cancel(op.id)

    with pytest.raises(OperationStateError):
        engine.cancel(op.id)


def test_cancel_unknown_operation() -> None:
    engine, _, _, _ = make_engine()

    with pytest.raises(OperationNotFoundError):
        engine.cancel("missing")


# ── restore / listing / retention ────────────────────────────


def test_list_operations_sorted_and_filtered() -> None:
    engine, _, _, _ = make_engine()
    engine.restore(
        [
            build_operation("op_late", scheduled_at=TEST_NOW + timedelta(hours=2)),
            build_operation("op_early", scheduled_at=TEST_NOW),
            build_operation("op_other", device_id="device_002", scheduled_at=TEST_NOW),
        ]
    )

    assert [op.id for op in engine.list_operations(TEST_DEVICE_ID)] == ["op_early", "op_late"]
    assert len(engine.list_operations()) == 3


@pytest.mark.asyncio
async def test_restored_active_operation_completes() -> None:
    engine, _, device_api, _ = make_engine()
    engine.restore(
        [
            build_operation(
                status=OperationStatus.ACTIVE,
                start_confirmed=True,
                remote_ref="rec_7",
            )
        ]
    )

    engine.tick(TEST_NOW + timedelta(minutes=3))
    await engine.drain()

    assert engine.get("op_001").status == OperationStatus.COMPLETED
    device_api.start_recording.assert_not_awaited()
    device_api.stop_recording.assert_awaited_once_with(
        TEST_DEVICE_ID, OperationType.AUDIO, "rec_7"
    )


def test_prune_drops_old_terminal_operations() -> None:
    engine, _, _, _ = make_engine(retention_hours=1)
    engine.restore(
        [
            build_operation(
                "op_old",
                status=OperationStatus.COMPLETED,
                finished_at=TEST_NOW - timedelta(hours=2),
            ),
            build_operation(
                "op_recent",
                status=OperationStatus.CANCELLED,
                finished_at=TEST_NOW - timedelta(minutes=30),
            ),
            build_operation("op_pending", scheduled_at=TEST_NOW + timedelta(days=3)),
        ]
    )

    pruned = engine.prune(TEST_NOW)

    assert pruned == 1
    assert engine.get("op_old") is None
    assert engine.get("op_recent") is not None
    assert engine.get("op_pending") is not None


def test_listeners_see_every_change() -> None:
    engine, _, _, _ = make_engine()
    seen = []
    engine.subscribe(lambda op: seen.append(op.status))

    op = engine.schedule(TEST_DEVICE_ID, "Audio", TEST_NOW, 5)
    engine.cancel(op.id)

    assert seen == [OperationStatus.PENDING, OperationStatus.CANCELLED]
