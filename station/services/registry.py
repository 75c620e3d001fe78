"""
station/services/registry.py

In-memory device and operation registries shared with the rendering layer.
Stored records are frozen pydantic models; writers replace whole records, so
any snapshot handed to a reader can never observe a half-applied change.
"""

from typing import Iterable, Optional

from station.schemas import Device, OperationStatus, ScheduledOperation


class DeviceRegistry:
    """Devices keyed by id."""

    def __init__(self, devices: Iterable[Device] = ()) -> None:
        self._devices: dict[str, Device] = {device.id: device for device in devices}

    def __contains__(self, device_id: object) -> bool:
        return device_id in self._devices

    def __len__(self) -> int:
        return len(self._devices)

    def get(self, device_id: str) -> Optional[Device]:
        return self._devices.get(device_id)

    def put(self, device: Device) -> None:
        self._devices[device.id] = device

    def snapshot(self) -> list[Device]:
        return sorted(self._devices.values(), key=lambda d: d.id)


class OperationRegistry:
    """Scheduled operations keyed by id."""

    def __init__(self, operations: Iterable[ScheduledOperation] = ()) -> None:
        self._operations: dict[str, ScheduledOperation] = {
            op.id: op for op in operations
        }

    def __contains__(self, operation_id: object) -> bool:
        return operation_id in self._operations

    def __len__(self) -> int:
        return len(self._operations)

    def get(self, operation_id: str) -> Optional[ScheduledOperation]:
        return self._operations.get(operation_id)

    def put(self, operation: ScheduledOperation) -> None:
        self._operations[operation.id] = operation

    def remove(self, operation_id: str) -> None:
        self._operations.pop(operation_id, None)

    def with_status(self, status: OperationStatus) -> list[ScheduledOperation]:
        return [op for op in self.snapshot() if op.status == status]

    def snapshot(self, device_id: Optional[str] = None) -> list[ScheduledOperation]:
        """All operations, ascending by scheduled time."""
        operations = [
            op
            for op in self._operations.values()
            if device_id is None or op.device_id == device_id
        ]
        return sorted(operations, key=lambda op: (op.scheduled_at, op.created_at, op.id))
