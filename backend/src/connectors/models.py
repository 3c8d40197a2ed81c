"""Runtime records: instances, executions and the caller context."""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
from uuid import uuid4


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid4().hex}"


class InstanceStatus(str, Enum):
    INACTIVE = "inactive"
    ACTIVE = "active"
    ERROR = "error"
    MAINTENANCE = "maintenance"


class ExecutionStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (ExecutionStatus.COMPLETED, ExecutionStatus.FAILED, ExecutionStatus.CANCELLED)


class CallOutcome(str, Enum):
    """How a finished call counts against instance statistics."""
    SUCCESS = "success"
    FAILURE = "failure"
    CANCELLED = "cancelled"
    FILTERED = "filtered"


@dataclass(frozen=True)
class RequestContext:
    """Who is acting: tenant and user ids, copied into audit events."""
    tenant_id: str
    user_id: str


@dataclass
class ConnectorInstance:
    """
    Credentialed, tenant-specific deployment of a connector.

    `credentials` only ever holds vault ciphertext. It is excluded from
    repr and from every serialized form (see schemas.InstanceRead).
    """
    id: str
    connector_id: str
    name: str
    status: InstanceStatus = InstanceStatus.INACTIVE
    configuration: dict[str, Any] = field(default_factory=dict)
    credentials: dict[str, Any] = field(default_factory=dict, repr=False)
    last_sync: Optional[datetime] = None
    total_calls: int = 0
    successful_calls: int = 0
    failed_calls: int = 0
    tenant_id: Optional[str] = None
    created_by: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def record_call(self, outcome: CallOutcome, at: Optional[datetime] = None) -> None:
        at = at or utcnow()
        self.total_calls += 1
        if outcome is CallOutcome.SUCCESS:
            self.successful_calls += 1
            self.last_sync = at
        elif outcome is CallOutcome.FILTERED:
            self.successful_calls += 1
        elif outcome is CallOutcome.FAILURE:
            self.failed_calls += 1
        self.updated_at = at


@dataclass(frozen=True)
class Execution:
    """
    Immutable record of one call attempt-sequence.

    Transitions return new records. `end_time` is set if and only if the
    status is terminal, and `duration` is `end_time - start_time` in
    milliseconds.
    """
    id: str
    instance_id: str
    endpoint_id: str
    status: ExecutionStatus
    input: Any
    start_time: datetime
    output: Any = None
    error: Optional[str] = None
    end_time: Optional[datetime] = None
    duration: Optional[float] = None
    retry_count: int = 0
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def create(
        cls,
        instance_id: str,
        endpoint_id: str,
        input: Any,
        metadata: Optional[dict[str, Any]] = None,
    ) -> "Execution":
        return cls(
            id=new_id("exec"),
            instance_id=instance_id,
            endpoint_id=endpoint_id,
            status=ExecutionStatus.PENDING,
            input=input,
            start_time=utcnow(),
            metadata=dict(metadata or {}),
        )

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def start(self) -> "Execution":
        if self.status is not ExecutionStatus.PENDING:
            raise ValueError(f"Execution {self.id} cannot start from {self.status.value}")
        return replace(self, status=ExecutionStatus.RUNNING)

    def finish(
        self,
        status: ExecutionStatus,
        *,
        output: Any = None,
        error: Optional[str] = None,
        retry_count: Optional[int] = None,
        metadata: Optional[dict[str, Any]] = None,
        end_time: Optional[datetime] = None,
    ) -> "Execution":
        if not status.is_terminal:
            raise ValueError(f"{status.value} is not a terminal status")
        if self.is_terminal:
            raise ValueError(f"Execution {self.id} is already {self.status.value}")

        end_time = end_time or utcnow()
        return replace(
            self,
            status=status,
            output=output,
            error=error,
            end_time=end_time,
            duration=(end_time - self.start_time).total_seconds() * 1000,
            retry_count=self.retry_count if retry_count is None else retry_count,
            metadata={**self.metadata, **(metadata or {})},
        )
