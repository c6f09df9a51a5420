"""
Persistent data model for the provisioning worker.

ExecutionResult is the single source of truth for what happened during a
run. It is written to the status file after every significant transition and
read back after a restart, so its JSON shape must stay stable: every type
here serializes with ``to_dict`` and is rebuilt with ``from_dict`` without
loss.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def utc_now_iso() -> str:
    """Timestamp for metadata values, which must stay JSON-native."""
    return utc_now().isoformat()


def _parse_time(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value)


def _format_time(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


class WorkerStatus(str, Enum):
    """Lifecycle states persisted in the status file."""

    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    RETRYING = "retrying"
    DELETION_SCHEDULED = "deletion_scheduled"
    DELETING = "deleting"
    DELETED = "deleted"
    DELETION_FAILED = "deletion_failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def is_active(self) -> bool:
        return self in (WorkerStatus.RUNNING, WorkerStatus.DELETING)


TERMINAL_STATUSES = frozenset(
    {
        WorkerStatus.COMPLETED,
        WorkerStatus.FAILED,
        WorkerStatus.DELETED,
        WorkerStatus.DELETION_FAILED,
    }
)


@dataclass(slots=True)
class IndexDetails:
    name: str
    status: str
    arn: str = ""
    type: str = "GSI"
    created_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status,
            "arn": self.arn,
            "type": self.type,
            "created_at": _format_time(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> IndexDetails:
        return cls(
            name=data["name"],
            status=data.get("status", ""),
            arn=data.get("arn", ""),
            type=data.get("type", "GSI"),
            created_at=_parse_time(data.get("created_at")),
        )


@dataclass(slots=True)
class ResourceStatus:
    """Last known state of one managed table."""

    name: str
    status: str
    arn: str = ""
    index_count: int = 0
    indexes: list[IndexDetails] = field(default_factory=list)
    created_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status,
            "arn": self.arn,
            "index_count": self.index_count,
            "indexes": [index.to_dict() for index in self.indexes],
            "created_at": _format_time(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ResourceStatus:
        return cls(
            name=data["name"],
            status=data.get("status", ""),
            arn=data.get("arn", ""),
            index_count=int(data.get("index_count", 0)),
            indexes=[IndexDetails.from_dict(item) for item in data.get("indexes") or []],
            created_at=_parse_time(data.get("created_at")),
        )


@dataclass(slots=True)
class ExecutionResult:
    status: WorkerStatus = WorkerStatus.IDLE
    success: bool = False
    start_time: datetime = field(default_factory=utc_now)
    end_time: datetime | None = None
    duration: float = 0.0
    resources: list[ResourceStatus] = field(default_factory=list)
    retry_count: int = 0
    environment: str = ""
    error_message: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)

    def find_resource(self, name: str) -> ResourceStatus | None:
        return next((r for r in self.resources if r.name == name), None)

    def finalize_timing(self) -> None:
        """Stamp end time and duration once the run reaches a terminal state."""
        if self.end_time is None and self.status.is_terminal:
            self.end_time = utc_now()
            self.duration = (self.end_time - self.start_time).total_seconds()

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "success": self.success,
            "start_time": _format_time(self.start_time),
            "end_time": _format_time(self.end_time),
            "duration": self.duration,
            "resources": [resource.to_dict() for resource in self.resources],
            "retry_count": self.retry_count,
            "environment": self.environment,
            "error_message": self.error_message,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ExecutionResult:
        start_time = _parse_time(data.get("start_time")) or utc_now()
        return cls(
            status=WorkerStatus(data.get("status", WorkerStatus.IDLE.value)),
            success=bool(data.get("success", False)),
            start_time=start_time,
            end_time=_parse_time(data.get("end_time")),
            duration=float(data.get("duration", 0.0)),
            resources=[ResourceStatus.from_dict(item) for item in data.get("resources") or []],
            retry_count=int(data.get("retry_count", 0)),
            environment=data.get("environment", ""),
            error_message=data.get("error_message", ""),
            metadata=dict(data.get("metadata") or {}),
        )


@dataclass(slots=True)
class LockRecord:
    """Content of the lock file; identifies the current holder and expiry."""

    id: str
    owner: str
    acquired_at: datetime
    expires_at: datetime
    environment: str

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or utc_now()) >= self.expires_at

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "owner": self.owner,
            "acquired_at": _format_time(self.acquired_at),
            "expires_at": _format_time(self.expires_at),
            "environment": self.environment,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LockRecord:
        return cls(
            id=data["id"],
            owner=data["owner"],
            acquired_at=datetime.fromisoformat(data["acquired_at"]),
            expires_at=datetime.fromisoformat(data["expires_at"]),
            environment=data.get("environment", ""),
        )


@dataclass(frozen=True)
class ResourceDescriptor:
    """Desired state of one table, derived from settings once per cycle."""

    name: str
    base_name: str
    environment: str
    billing_mode: str = "PAY_PER_REQUEST"
    tags: dict[str, str] = field(default_factory=dict)
    index_names: tuple[str, ...] = ()

    @property
    def index_count(self) -> int:
        return len(self.index_names)
