"""Audit logging service for connector events.

Every registry, instance and execution change produces an immutable audit
event. Events are handed to an AuditSink through the AuditOutbox, which
retries a bounded number of times and keeps undelivered events pending so
a later `flush()` can write them. The pending queue is bounded; when it is
full the oldest event is dropped and counted. Audit failures never abort the operation
that produced the event.

Audit actions:
- REGISTER_CONNECTOR
- CREATE_INSTANCE, UPDATE_INSTANCE, DELETE_INSTANCE
- EXECUTE_ENDPOINT
"""

import asyncio
import logging
import threading
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional
from uuid import uuid4

from observability.metrics import audit_delivery_failures_total, audit_events_dropped_total


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuditEvent:
    """
    One audit log entry.

    Attributes:
        action: Event action (e.g., "CREATE_INSTANCE", "EXECUTE_ENDPOINT")
        entity_type: Type of entity affected ("connector", "instance", "execution")
        entity_id: ID of affected entity
        tenant_id: Tenant the change belongs to (None for system events)
        actor_id: User who performed the action (None for system events)
        metadata: Additional context; never contains credentials
    """
    action: str
    entity_type: str
    entity_id: str
    tenant_id: Optional[str] = None
    actor_id: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: f"audit_{uuid4().hex}")
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        return data


class AuditSink(ABC):
    """Durable destination for audit events."""

    @abstractmethod
    def record(self, event: AuditEvent) -> None:
        """Write one event. Raise on failure so the outbox can retry."""
        pass


class InMemoryAuditSink(AuditSink):
    """Keeps events in a list. Used in tests and local development."""

    def __init__(self):
        self.events: list[AuditEvent] = []

    def record(self, event: AuditEvent) -> None:
        self.events.append(event)

    def actions(self) -> list[str]:
        return [event.action for event in self.events]


class LoggingAuditSink(AuditSink):
    """Writes events as structured records to the `audit` logger."""

    def __init__(self, logger_name: str = "audit"):
        self._logger = logging.getLogger(logger_name)

    def record(self, event: AuditEvent) -> None:
        self._logger.info(
            f"{event.action} {event.entity_type} {event.entity_id}",
            extra={"audit_event": event.to_dict(), "tenant_id": event.tenant_id},
        )


class AuditOutbox:
    """
    Bounded-retry delivery of audit events to a sink.

    `publish` makes one synchronous attempt and queues the event on failure.
    `deliver` retries with a fixed delay before queueing. `flush` retries
    everything pending. Neither raises on sink failure.
    """

    def __init__(
        self,
        sink: AuditSink,
        max_attempts: int = 3,
        retry_delay: float = 0.1,
        max_pending: int = 10_000,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if max_pending < 1:
            raise ValueError("max_pending must be at least 1")
        self.sink = sink
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay
        self.max_pending = max_pending
        self._pending: deque[AuditEvent] = deque()
        self._lock = threading.Lock()

    @property
    def pending(self) -> list[AuditEvent]:
        with self._lock:
            return list(self._pending)

    def publish(self, event: AuditEvent) -> bool:
        if self._try_record(event):
            return True
        self._enqueue(event)
        return False

    async def deliver(self, event: AuditEvent) -> bool:
        for attempt in range(1, self.max_attempts + 1):
            if self._try_record(event, attempt):
                return True
            if attempt < self.max_attempts:
                await asyncio.sleep(self.retry_delay)

        self._enqueue(event)
        return False

    def flush(self) -> int:
        """Retry pending events once each. Returns the number delivered."""
        with self._lock:
            batch = list(self._pending)
            self._pending.clear()

        delivered = 0
        for event in batch:
            if self._try_record(event):
                delivered += 1
            else:
                self._enqueue(event)
        return delivered

    def _try_record(self, event: AuditEvent, attempt: int = 1) -> bool:
        try:
            self.sink.record(event)
            return True
        except Exception as e:
            logger.warning(
                f"Audit write failed for {event.action} (attempt {attempt}/{self.max_attempts}): {e}",
                extra={"audit_event_id": event.id, "tenant_id": event.tenant_id},
            )
            return False

    def _enqueue(self, event: AuditEvent) -> None:
        dropped = None
        with self._lock:
            if len(self._pending) >= self.max_pending:
                dropped = self._pending.popleft()
            self._pending.append(event)
        if dropped is not None:
            audit_events_dropped_total.labels(action=dropped.action).inc()
            logger.error(
                f"Audit outbox full ({self.max_pending}); dropped event {dropped.id} ({dropped.action})",
                extra={"audit_event_id": dropped.id, "tenant_id": dropped.tenant_id},
            )
        audit_delivery_failures_total.labels(action=event.action).inc()
        logger.error(
            f"Audit event {event.id} ({event.action}) left pending in outbox",
            extra={"audit_event_id": event.id, "tenant_id": event.tenant_id},
        )
