"""Pytest fixtures for connector engine testing.

Provides reusable test fixtures for:
- Request context (tenant and user)
- In-memory audit sink and outbox
- Registry preloaded with the built-in connectors
- AES-GCM credential vault with a test key
- Simulated transport and a recording sleep for retry backoff
- A fully wired ExecutionEngine

Usage:
    @pytest.mark.asyncio
    async def test_execute(engine, instance_manager, context):
        instance = await create_iot_instance(instance_manager, context)
        execution = await engine.execute_endpoint(instance.id, "send_vital_signs", VITALS, context)
"""

import os
import sys
from pathlib import Path

# Set environment variables BEFORE any imports to ensure they take effect
os.environ.setdefault("CREDENTIAL_VAULT_KEY", "test-vault-key-for-unit-tests-only")
os.environ.setdefault("LOAD_BUILTIN_CONNECTORS", "true")
os.environ.setdefault("AUDIT_RETRY_DELAY_SECONDS", "0")

backend_src = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(backend_src))

import pytest

from audit.service import AuditOutbox, InMemoryAuditSink
from connectors.builtin import BUILTIN_CONNECTORS
from connectors.engine import ExecutionEngine
from connectors.events import ConnectorEventBus
from connectors.instances import InstanceManager
from connectors.models import RequestContext
from connectors.rate_limit import RateLimiter
from connectors.registry import ConnectorRegistry
from connectors.stores import InMemoryExecutionStore, InMemoryInstanceStore
from infrastructure.encryption import AesGcmCredentialVault
from infrastructure.transport import SimulatedTransport


TEST_VAULT_KEY = "test-vault-key-for-unit-tests-only"


class RecordingSleep:
    """Stands in for asyncio.sleep; records requested delays in seconds."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


class FakeClock:
    """Monotonic clock driven by the test."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def context() -> RequestContext:
    return RequestContext(tenant_id="tenant-oakwood", user_id="user-admin")


@pytest.fixture
def audit_sink() -> InMemoryAuditSink:
    return InMemoryAuditSink()


@pytest.fixture
def audit_outbox(audit_sink) -> AuditOutbox:
    return AuditOutbox(audit_sink, max_attempts=3, retry_delay=0)


@pytest.fixture
def events() -> ConnectorEventBus:
    return ConnectorEventBus()


@pytest.fixture
def registry(audit_outbox, events) -> ConnectorRegistry:
    """Registry with the built-in connectors registered."""
    registry = ConnectorRegistry(audit_outbox, events)
    for definition in BUILTIN_CONNECTORS:
        registry.register(definition)
    return registry


@pytest.fixture
def vault() -> AesGcmCredentialVault:
    return AesGcmCredentialVault(TEST_VAULT_KEY)


@pytest.fixture
def instance_manager(registry, vault, audit_outbox, events) -> InstanceManager:
    return InstanceManager(registry, vault, InMemoryInstanceStore(), audit_outbox, events)


@pytest.fixture
def transport() -> SimulatedTransport:
    return SimulatedTransport(response_data={"success": True, "message": "received"})


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def rate_limiter(clock) -> RateLimiter:
    return RateLimiter(clock=clock)


@pytest.fixture
def engine(registry, instance_manager, transport, audit_outbox, events, rate_limiter, recording_sleep) -> ExecutionEngine:
    return ExecutionEngine(
        registry,
        instance_manager,
        InMemoryExecutionStore(),
        transport,
        audit_outbox,
        rate_limiter=rate_limiter,
        events=events,
        sleep=recording_sleep,
    )


async def create_iot_instance(instance_manager, context, **overrides):
    """Create an instance of the built-in IoT wearables connector."""
    return await instance_manager.create_instance(
        overrides.get("connector_id", "iot_wearables"),
        overrides.get("name", "Ward A wearables"),
        overrides.get("configuration", {"base_url": "https://iot.example.test"}),
        overrides.get("credentials", {"api_key": "iot-secret-key"}),
        context,
    )


async def create_nhs_instance(instance_manager, context, **overrides):
    """Create an instance of the built-in NHS GP Connect connector."""
    return await instance_manager.create_instance(
        "nhs_gp_connect",
        overrides.get("name", "Oakwood surgery"),
        overrides.get("configuration", {"ods_code": "A81001", "base_url": "https://gp.example.test"}),
        overrides.get("credentials", {"access_token": "nhs-token"}),
        context,
    )
