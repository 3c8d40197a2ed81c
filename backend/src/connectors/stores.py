"""
Instance and execution stores.

Stores are ports with in-memory adapters. Each key (instance id or
execution id) has its own asyncio lock, so updates to one instance never
wait on calls to another.
"""

import asyncio
import copy
from abc import ABC, abstractmethod
from collections import defaultdict
from typing import Optional

from .models import ConnectorInstance, Execution


class KeyedLocks:
    """Lazily created asyncio lock per key."""

    def __init__(self):
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def __call__(self, key: str) -> asyncio.Lock:
        return self._locks[key]

    def held(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    def discard(self, key: str) -> None:
        lock = self._locks.get(key)
        if lock is not None and not lock.locked():
            del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


class InstanceStore(ABC):
    """Persistence port for connector instances."""

    @abstractmethod
    def lock(self, instance_id: str) -> asyncio.Lock:
        pass

    @abstractmethod
    def get(self, instance_id: str) -> Optional[ConnectorInstance]:
        pass

    @abstractmethod
    def save(self, instance: ConnectorInstance) -> None:
        pass

    @abstractmethod
    def delete(self, instance_id: str) -> bool:
        pass

    @abstractmethod
    def discard_lock(self, instance_id: str) -> None:
        """Forget the lock of a deleted instance unless it is held."""

    @abstractmethod
    def list(self, connector_id: Optional[str] = None) -> list[ConnectorInstance]:
        pass


class ExecutionStore(ABC):
    """Persistence port for execution records."""

    @abstractmethod
    def lock(self, execution_id: str) -> asyncio.Lock:
        pass

    @abstractmethod
    def get(self, execution_id: str) -> Optional[Execution]:
        pass

    @abstractmethod
    def save(self, execution: Execution) -> None:
        pass

    @abstractmethod
    def discard_lock(self, execution_id: str) -> None:
        pass

    @abstractmethod
    def list(self, instance_id: Optional[str] = None) -> list[Execution]:
        pass


class InMemoryInstanceStore(InstanceStore):
    def __init__(self):
        self._instances: dict[str, ConnectorInstance] = {}
        self._locks = KeyedLocks()

    def lock(self, instance_id: str) -> asyncio.Lock:
        return self._locks(instance_id)

    def get(self, instance_id: str) -> Optional[ConnectorInstance]:
        return self._instances.get(instance_id)

    def save(self, instance: ConnectorInstance) -> None:
        self._instances[instance.id] = instance

    def delete(self, instance_id: str) -> bool:
        return self._instances.pop(instance_id, None) is not None

    def discard_lock(self, instance_id: str) -> None:
        self._locks.discard(instance_id)

    def list(self, connector_id: Optional[str] = None) -> list[ConnectorInstance]:
        instances = sorted(self._instances.values(), key=lambda i: i.created_at)
        if connector_id is None:
            return instances
        return [i for i in instances if i.connector_id == connector_id]


class InMemoryExecutionStore(ExecutionStore):
    def __init__(self):
        self._executions: dict[str, Execution] = {}
        self._locks = KeyedLocks()

    def lock(self, execution_id: str) -> asyncio.Lock:
        return self._locks(execution_id)

    def get(self, execution_id: str) -> Optional[Execution]:
        execution = self._executions.get(execution_id)
        return copy.deepcopy(execution) if execution is not None else None

    def save(self, execution: Execution) -> None:
        # Records are copied in and out so callers cannot edit history
        self._executions[execution.id] = copy.deepcopy(execution)

    def discard_lock(self, execution_id: str) -> None:
        self._locks.discard(execution_id)

    def list(self, instance_id: Optional[str] = None) -> list[Execution]:
        executions = sorted(self._executions.values(), key=lambda e: e.start_time)
        if instance_id is not None:
            executions = [e for e in executions if e.instance_id == instance_id]
        return [copy.deepcopy(e) for e in executions]
