"""
station/routers/schedules.py

Scheduled recording endpoints.
Validation failures map to 422, illegal lifecycle edges to 409.
"""

from typing import Any, Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query

from station.dependencies import get_engine
from station.schemas import ScheduleRequest
from station.services.scheduler import (
    OperationNotFoundError,
    OperationStateError,
    ScheduleEngine,
    ValidationError,
)

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/schedules")


@router.post("", status_code=201)
async def create_schedule(
    request: ScheduleRequest,
    engine: ScheduleEngine = Depends(get_engine),
) -> dict[str, Any]:
    try:
        operation = engine.schedule(
            request.device_id,
            request.op_type,
            request.scheduled_at,
            request.duration_minutes,
            request.note,
        )
    except ValidationError as exc:
        logger.info("schedule_rejected", field=exc.field, reason=exc.message)
        raise HTTPException(
            status_code=422, detail={"field": exc.field, "message": exc.message}
        )
    return operation.to_wire()


@router.get("")
async def list_schedules(
    device_id: Optional[str] = Query(default=None, alias="deviceId"),
    engine: ScheduleEngine = Depends(get_engine),
) -> dict[str, Any]:
    return {
        "schedules": [op.to_wire() for op in engine.list_operations(device_id)],
    }


@router.get("/{operation_id}")
async def get_schedule(
    operation_id: str,
    engine: ScheduleEngine = Depends(get_engine),
) -> dict[str, Any]:
    operation = engine.get(operation_id)
    if operation is None:
        raise HTTPException(status_code=404, detail=f"Schedule '{operation_id}' not found")
    return operation.to_wire()


@router.post("/{operation_id}/cancel")
async def cancel_schedule(
    operation_id: str,
    engine: ScheduleEngine = Depends(get_engine),
) -> dict[str, Any]:
    try:
        operation = engine.cancel(operation_id)
    except OperationNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except OperationStateError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    return operation.to_wire()
