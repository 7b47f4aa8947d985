"""Domain models for the task queue."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from enum import IntEnum
from typing import Any


class TaskStatus(IntEnum):
    """Task lifecycle states; the numeric codes are part of the public API."""

    QUEUED = 10
    RUNNING = 20
    FAILED = 30
    COMPLETED = 40
    CANCELED = 50

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({TaskStatus.FAILED, TaskStatus.COMPLETED, TaskStatus.CANCELED})


@dataclass(slots=True, frozen=True)
class TaskOption:
    """One validated processing option."""

    name: str
    value: Any

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "value": self.value}

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> TaskOption:
        name = raw.get("name")
        if not isinstance(name, str) or not name:
            raise ValueError(f"Option name must be a non-empty string: {raw!r}")
        return cls(name=name, value=raw.get("value"))


@dataclass(slots=True, frozen=True)
class OperationResult:
    """Outcome of a manager operation reported back to the caller."""

    success: bool
    error: str | None = None

    @classmethod
    def ok(cls) -> OperationResult:
        return cls(success=True)

    @classmethod
    def failed(cls, error: Exception | str) -> OperationResult:
        return cls(success=False, error=str(error))

    def to_dict(self) -> dict[str, Any]:
        if self.success:
            return {"success": True}
        return {"success": False, "error": self.error}


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


def to_epoch_ms(value: datetime) -> int:
    return int(value.timestamp() * 1000)
