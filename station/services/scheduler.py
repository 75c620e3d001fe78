"""
station/services/scheduler.py

Lifecycle engine for scheduled remote recordings.
- schedule / cancel: synchronous, called from request handlers
- tick: periodic wall-clock pass that starts due operations and completes
  elapsed ones

All status changes happen synchronously on the event loop thread, so tick,
schedule and cancel never interleave on the same operation. Remote start/stop
calls run as background tasks and, when they resolve, only write the
remote-tracking fields; status is driven by the window boundaries alone.
"""

import asyncio
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Coroutine, Iterable, Optional

import structlog

from config import settings
from station.schemas import (
    ALLOWED_TRANSITIONS,
    TERMINAL_STATUSES,
    OperationStatus,
    OperationType,
    ScheduledOperation,
    parse_timestamp,
)
from station.services.device_api import DeviceApi, artifact_ref_from, recording_id_from
from station.services.registry import DeviceRegistry, OperationRegistry
from station.services.timers import Clock, utc_now

logger = structlog.get_logger(__name__)

OperationListener = Callable[[ScheduledOperation], None]


class ValidationError(Exception):
    """Caller-supplied scheduling input is invalid."""

    def __init__(self, message: str, field: Optional[str] = None):
        self.message = message
        self.field = field
        super().__init__(message)


class OperationNotFoundError(Exception):
    def __init__(self, operation_id: str):
        self.operation_id = operation_id
        super().__init__(f"Scheduled operation '{operation_id}' not found")


class OperationStateError(Exception):
    """Requested lifecycle edge is not legal from the current status."""

    def __init__(self, operation_id: str, current: OperationStatus, target: OperationStatus):
        self.operation_id = operation_id
        self.current = current
        self.target = target
        super().__init__(
            f"Operation '{operation_id}' cannot move from {current.value} to {target.value}"
        )


class ScheduleEngine:
    """Owns every ScheduledOperation and its status transitions."""

    def __init__(
        self,
        operations: OperationRegistry,
        devices: DeviceRegistry,
        device_api: DeviceApi,
        clock: Clock = utc_now,
        retention_hours: Optional[float] = None,
    ) -> None:
        self._operations = operations
        self._devices = devices
        self._device_api = device_api
        self._clock = clock
        self._retention = timedelta(
            hours=settings.operation_retention_hours
            if retention_hours is None
            else retention_hours
        )

        self._inflight: set[asyncio.Task] = set()
        self._start_tasks: dict[str, asyncio.Task] = {}
        self._listeners: list[OperationListener] = []

    def subscribe(self, listener: OperationListener) -> Callable[[], None]:
        """Register a change listener; returns a callable that removes it."""
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener)

    # ── Requests ─────────────────────────────────────────────

    def schedule(
        self,
        device_id: str,
        op_type: Any,
        scheduled_at: Any,
        duration_minutes: Any,
        note: Optional[str] = None,
    ) -> ScheduledOperation:
        """
        Create a Pending operation.

        A scheduled time in the past is accepted and becomes due on the next
        tick.
        """
        if isinstance(duration_minutes, bool) or not isinstance(duration_minutes, int):
            raise ValidationError("Duration must be a whole number of minutes", "duration")
        if duration_minutes <= 0:
            raise ValidationError("Duration must be greater than 0", "duration")

        try:
            kind = OperationType(op_type)
        except ValueError:
            raise ValidationError(f"Unknown operation type '{op_type}'", "type")

        start = parse_timestamp(scheduled_at)
        if start is None:
            raise ValidationError("Scheduled time is missing or unparsable", "scheduledDateTime")

        if device_id not in self._devices:
            raise ValidationError(f"Unknown device '{device_id}'", "deviceId")

        operation = ScheduledOperation(
            id=str(uuid.uuid4()),
            device_id=device_id,
            op_type=kind,
            scheduled_at=start,
            duration_minutes=duration_minutes,
            note=note or None,
            status=OperationStatus.PENDING,
            created_at=self._clock(),
        )
        self._operations.put(operation)
        logger.info(
            "operation_scheduled",
            operation_id=operation.id,
            device_id=device_id,
            op_type=kind.value,
            scheduled_at=start.isoformat(),
            duration_minutes=duration_minutes,
        )
        self._notify(operation)
        return operation

    def cancel(self, operation_id: str) -> ScheduledOperation:
        """Cancel a Pending operation; started operations always run their window."""
        operation = self._operations.get(operation_id)
        if operation is None:
            raise OperationNotFoundError(operation_id)
        return self._transition(operation, OperationStatus.CANCELLED, self._clock())

    def restore(self, operations: Iterable[ScheduledOperation]) -> None:
        """Load previously persisted operations (process start)."""
        count = 0
        for operation in operations:
            self._operations.put(operation)
            count += 1
        logger.info("operations_restored", count=count)

    # ── Reads ────────────────────────────────────────────────

    def get(self, operation_id: str) -> Optional[ScheduledOperation]:
        return self._operations.get(operation_id)

    def list_operations(self, device_id: Optional[str] = None) -> list[ScheduledOperation]:
        return self._operations.snapshot(device_id)

    # ── Evaluation ───────────────────────────────────────────

    def tick(self, now: Optional[datetime] = None) -> list[asyncio.Task]:
        """
        Advance every operation whose window boundary has passed.

        Must run on the event loop thread. Returns the remote call tasks it
        spawned; the transitions themselves are complete when this returns.
        """
        now = parse_timestamp(now) or self._clock()
        spawned: list[asyncio.Task] = []

        for operation in self._operations.with_status(OperationStatus.PENDING):
            if now >= operation.scheduled_at:
                active = self._transition(operation, OperationStatus.ACTIVE, now)
                task = self._spawn(self._start_remote(active), active.id, "start")
                self._start_tasks[active.id] = task
                task.add_done_callback(lambda _t, op_id=active.id: self._start_tasks.pop(op_id, None))
                spawned.append(task)

        for operation in self._operations.with_status(OperationStatus.ACTIVE):
            if now > operation.ends_at:
                completed = self._transition(operation, OperationStatus.COMPLETED, now)
                spawned.append(self._spawn(self._stop_remote(completed), completed.id, "stop"))

        self.prune(now)
        return spawned

    def prune(self, now: Optional[datetime] = None) -> int:
        """Drop terminal operations older than the retention period from memory."""
        now = parse_timestamp(now) or self._clock()
        pruned = 0
        for operation in self._operations.snapshot():
            if operation.status not in TERMINAL_STATUSES or operation.finished_at is None:
                continue
            if now - operation.finished_at > self._retention:
                self._operations.remove(operation.id)
                pruned += 1
        if pruned:
            logger.info("operations_pruned", count=pruned)
        return pruned

    async def drain(self) -> None:
        """Wait for every in-flight remote call to resolve."""
        while self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    def _transition(
        self,
        operation: ScheduledOperation,
        target: OperationStatus,
        now: datetime,
    ) -> ScheduledOperation:
        if (operation.status, target) not in ALLOWED_TRANSITIONS:
            raise OperationStateError(operation.id, operation.status, target)

        changes: dict[str, Any] = {"status": target}
        if target in TERMINAL_STATUSES:
            changes["finished_at"] = now
        updated = operation.model_copy(update=changes)
        self._operations.put(updated)

        logger.info(
            "operation_transition",
            operation_id=operation.id,
            device_id=operation.device_id,
            from_status=operation.status.value,
            to_status=target.value,
        )
        self._notify(updated)
        return updated

    # ── Remote calls ─────────────────────────────────────────

    def _spawn(
        self,
        coro: Coroutine[Any, Any, None],
        operation_id: str,
        action: str,
    ) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(self._guarded(coro, operation_id, action))
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        return task

    async def _guarded(
        self,
        coro: Coroutine[Any, Any, None],
        operation_id: str,
        action: str,
    ) -> None:
        try:
            await coro
        except Exception as exc:
            logger.error(
                "operation_remote_call_crashed",
                operation_id=operation_id,
                action=action,
                error=str(exc),
            )
            self._record_remote(operation_id, last_error=f"{action} crashed: {exc}")

    async def _start_remote(self, operation: ScheduledOperation) -> None:
        result = await self._device_api.start_recording(operation.device_id, operation.op_type)
        if not result.success:
            logger.warning(
                "operation_start_failed",
                operation_id=operation.id,
                device_id=operation.device_id,
                error=result.error.value if result.error else None,
                detail=result.detail,
            )
            self._record_remote(
                operation.id,
                last_error=f"start failed: {_describe(result.error, result.detail)}",
            )
            return

        recording_id = recording_id_from(result.data)
        logger.info(
            "operation_started_remotely",
            operation_id=operation.id,
            recording_id=recording_id,
        )
        self._record_remote(
            operation.id,
            start_confirmed=True,
            remote_ref=recording_id,
            last_error=None if recording_id else "start response carried no recording id",
        )

    async def _stop_remote(self, operation: ScheduledOperation) -> None:
        start_task = self._start_tasks.get(operation.id)
        if start_task is not None and not start_task.done():
            await asyncio.wait({start_task})

        current = self._operations.get(operation.id) or operation
        if not current.remote_ref:
            logger.warning(
                "operation_stop_skipped",
                operation_id=operation.id,
                reason="no_remote_recording",
            )
            self._record_remote(
                operation.id, last_error="stop skipped: no remote recording to stop"
            )
            return

        result = await self._device_api.stop_recording(
            current.device_id, current.op_type, current.remote_ref
        )
        if not result.success:
            logger.warning(
                "operation_stop_failed",
                operation_id=operation.id,
                device_id=current.device_id,
                error=result.error.value if result.error else None,
                detail=result.detail,
            )
            self._record_remote(
                operation.id,
                last_error=f"stop failed: {_describe(result.error, result.detail)}",
            )
            return

        artifact_ref = artifact_ref_from(result.data) or current.remote_ref
        logger.info(
            "operation_stopped_remotely",
            operation_id=operation.id,
            artifact_ref=artifact_ref,
        )
        self._record_remote(operation.id, stop_confirmed=True, artifact_ref=artifact_ref)

    def _record_remote(self, operation_id: str, **fields: Any) -> None:
        """Apply a resolved remote outcome; never touches status."""
        operation = self._operations.get(operation_id)
        if operation is None:
            return
        updated = operation.model_copy(update=fields)
        self._operations.put(updated)
        self._notify(updated)

    def _notify(self, operation: ScheduledOperation) -> None:
        for listener in list(self._listeners):
            try:
                listener(operation)
            except Exception as exc:
                logger.error(
                    "operation_listener_failed",
                    operation_id=operation.id,
                    error=str(exc),
                )


def _describe(error: Any, detail: Optional[str]) -> str:
    kind = error.value if error is not None else "unknown"
    return f"{kind}: {detail}" if detail else kind
