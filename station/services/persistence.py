"""
station/services/persistence.py

Durable history of scheduled operations in MySQL.
Uses SQLAlchemy 2.0 async sessions. Engine changes are written through an
ordered queue so successive snapshots of one operation land in order.
"""

import asyncio
from datetime import datetime
from typing import Optional

import structlog
from sqlalchemy import or_, select

from db.models import AsyncSessionLocal, ScheduledOperationRecord
from station.schemas import (
    OperationStatus,
    OperationType,
    ScheduledOperation,
    parse_timestamp,
)

logger = structlog.get_logger(__name__)


async def persist_operation(operation: ScheduledOperation) -> None:
    """Insert or update the history row for an operation."""
    try:
        async with AsyncSessionLocal() as session:
            await session.merge(_to_record(operation))
            await session.commit()
            logger.debug(
                "operation_persisted",
                operation_id=operation.id,
                status=operation.status.value,
            )
    except Exception as exc:
        logger.error(
            "operation_persist_failed",
            operation_id=operation.id,
            error=str(exc),
        )
        raise


async def load_operations(retained_after: datetime) -> list[ScheduledOperation]:
    """
    Load operations still worth holding in memory: every non-terminal one
    plus terminal ones that finished after retained_after.
    Returns an empty list if the database is unavailable.
    """
    try:
        async with AsyncSessionLocal() as session:
            result = await session.execute(
                select(ScheduledOperationRecord)
                .where(
                    or_(
                        ScheduledOperationRecord.finished_at.is_(None),
                        ScheduledOperationRecord.finished_at >= retained_after,
                    )
                )
                .order_by(ScheduledOperationRecord.scheduled_at)
            )
            records = result.scalars().all()
    except Exception as exc:
        logger.error("operation_history_load_failed", error=str(exc))
        return []

    operations = []
    for record in records:
        operation = _from_record(record)
        if operation is not None:
            operations.append(operation)
    logger.info("operation_history_loaded", count=len(operations))
    return operations


class OperationHistoryWriter:
    """Background writer fed by the schedule engine's change listener."""

    def __init__(self) -> None:
        self._queue: asyncio.Queue[ScheduledOperation] = asyncio.Queue()
        self._task: Optional[asyncio.Task] = None

    def enqueue(self, operation: ScheduledOperation) -> None:
        self._queue.put_nowait(operation)

    async def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run())

    async def stop(self, flush_timeout_s: float = 5.0) -> None:
        if self._task is None:
            return
        try:
            await asyncio.wait_for(self._queue.join(), timeout=flush_timeout_s)
        except asyncio.TimeoutError:
            logger.warning("operation_history_flush_timeout", pending=self._queue.qsize())
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def _run(self) -> None:
        while True:
            operation = await self._queue.get()
            try:
                await persist_operation(operation)
            except Exception:
                # Already logged; the next snapshot of this operation supersedes it
                pass
            finally:
                self._queue.task_done()


def _to_record(operation: ScheduledOperation) -> ScheduledOperationRecord:
    return ScheduledOperationRecord(
        id=operation.id,
        device_id=operation.device_id,
        op_type=operation.op_type.value,
        scheduled_at=operation.scheduled_at,
        duration_minutes=operation.duration_minutes,
        note=operation.note,
        status=operation.status.value,
        created_at=operation.created_at,
        start_confirmed=operation.start_confirmed,
        stop_confirmed=operation.stop_confirmed,
        remote_ref=operation.remote_ref,
        artifact_ref=operation.artifact_ref,
        last_error=operation.last_error,
        finished_at=operation.finished_at,
    )


def _from_record(record: ScheduledOperationRecord) -> Optional[ScheduledOperation]:
    scheduled_at = parse_timestamp(record.scheduled_at)
    created_at = parse_timestamp(record.created_at)
    if scheduled_at is None or created_at is None:
        logger.warning("operation_record_unreadable", operation_id=record.id)
        return None
    try:
        op_type = OperationType(record.op_type)
        status = OperationStatus(record.status)
    except ValueError:
        logger.warning("operation_record_unreadable", operation_id=record.id)
        return None

    return ScheduledOperation(
        id=record.id,
        device_id=record.device_id,
        op_type=op_type,
        scheduled_at=scheduled_at,
        duration_minutes=record.duration_minutes,
        note=record.note,
        status=status,
        created_at=created_at,
        start_confirmed=bool(record.start_confirmed),
        stop_confirmed=bool(record.stop_confirmed),
        remote_ref=record.remote_ref,
        artifact_ref=record.artifact_ref,
        last_error=record.last_error,
        finished_at=parse_timestamp(record.finished_at),
    )
