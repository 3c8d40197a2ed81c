"""
Connector Service - wires the engine together and owns its resources.

Usage:
    async with ConnectorService.from_settings() as service:
        instance = await service.create_instance(
            "iot_wearables", "Ward A wearables", {"base_url": "https://iot.example"},
            {"api_key": "..."}, context,
        )
        execution = await service.execute_endpoint(instance.id, "send_vital_signs", payload, context)
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Mapping, Optional, Union

from audit.service import AuditOutbox, AuditSink, LoggingAuditSink
from config import Settings, get_settings
from infrastructure.encryption import AesGcmCredentialVault
from infrastructure.transport import HttpTransport
from observability.logging_config import configure_logging
from .builtin import BUILTIN_CONNECTORS
from .definitions import ConnectorDefinition
from .engine import ExecutionEngine
from .events import ConnectorEventBus
from .instances import InstanceManager
from .mapping import DataMapper
from .models import ConnectorInstance, Execution, RequestContext
from .ports import CredentialVault, Transport
from .rate_limit import RateLimiter
from .registry import ConnectorRegistry
from .schemas import ConnectorSummary
from .stores import ExecutionStore, InMemoryExecutionStore, InMemoryInstanceStore, InstanceStore
from .transformation import CustomHandler, TransformationPipeline


logger = logging.getLogger(__name__)


class ConnectorService:
    """Facade over registry, instance manager and execution engine."""

    def __init__(
        self,
        registry: ConnectorRegistry,
        instances: InstanceManager,
        engine: ExecutionEngine,
        audit_outbox: AuditOutbox,
        events: ConnectorEventBus,
    ):
        self.registry = registry
        self.instances = instances
        self.engine = engine
        self.audit_outbox = audit_outbox
        self.events = events
        self._closed = False

    @classmethod
    def from_settings(
        cls,
        settings: Optional[Settings] = None,
        *,
        vault: Optional[CredentialVault] = None,
        audit_sink: Optional[AuditSink] = None,
        transport: Optional[Transport] = None,
        instance_store: Optional[InstanceStore] = None,
        execution_store: Optional[ExecutionStore] = None,
        rate_limiter: Optional[RateLimiter] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        setup_logging: bool = False,
    ) -> "ConnectorService":
        """
        Build a service from settings, with default adapters for any
        collaborator not supplied.

        Defaults: AES-GCM vault keyed by CREDENTIAL_VAULT_KEY, audit events
        written to the `audit` logger, httpx transport, in-memory stores.
        """
        settings = settings or get_settings()
        if setup_logging:
            configure_logging(settings.LOG_LEVEL, settings.LOG_JSON)

        events = ConnectorEventBus()
        audit_outbox = AuditOutbox(
            audit_sink or LoggingAuditSink(),
            max_attempts=settings.AUDIT_MAX_ATTEMPTS,
            retry_delay=settings.AUDIT_RETRY_DELAY_SECONDS,
            max_pending=settings.AUDIT_MAX_PENDING,
        )

        registry = ConnectorRegistry(audit_outbox, events)
        if settings.LOAD_BUILTIN_CONNECTORS:
            for definition in BUILTIN_CONNECTORS:
                registry.register(definition)
        if settings.CONNECTOR_DEFINITIONS_PATH:
            registry.load_directory(settings.CONNECTOR_DEFINITIONS_PATH)

        instances = InstanceManager(
            registry,
            vault or AesGcmCredentialVault(settings.CREDENTIAL_VAULT_KEY),
            instance_store or InMemoryInstanceStore(),
            audit_outbox,
            events,
        )
        engine = ExecutionEngine(
            registry,
            instances,
            execution_store or InMemoryExecutionStore(),
            transport or HttpTransport(max_connections=settings.HTTP_MAX_CONNECTIONS),
            audit_outbox,
            rate_limiter=rate_limiter or RateLimiter(),
            events=events,
            pipeline=TransformationPipeline(strict_conversions=settings.STRICT_CONVERSIONS),
            mapper=DataMapper(strict_conversions=settings.STRICT_CONVERSIONS),
            default_timeout_ms=settings.DEFAULT_ENDPOINT_TIMEOUT_MS,
            sleep=sleep,
        )

        logger.info(f"Connector service ready with {len(registry.list())} connectors")
        return cls(registry, instances, engine, audit_outbox, events)

    # -- catalog ------------------------------------------------------------

    def register_connector(self, definition: Union[ConnectorDefinition, Mapping[str, Any]]) -> ConnectorDefinition:
        return self.registry.register(definition)

    def list_connectors(self, category: Optional[str] = None) -> list[ConnectorSummary]:
        definitions = self.registry.list()
        if category is not None:
            definitions = [d for d in definitions if d.category == category]
        return [ConnectorSummary.from_definition(d) for d in definitions]

    def register_transformation_handler(self, name: str, handler: CustomHandler) -> None:
        self.engine.pipeline.register_handler(name, handler)

    # -- instances ----------------------------------------------------------

    async def create_instance(
        self,
        connector_id: str,
        name: str,
        configuration: Mapping[str, Any],
        credentials: Mapping[str, Any],
        context: RequestContext,
    ) -> ConnectorInstance:
        return await self.instances.create_instance(connector_id, name, configuration, credentials, context)

    async def update_instance(
        self, instance_id: str, updates: Mapping[str, Any], context: RequestContext
    ) -> ConnectorInstance:
        return await self.instances.update_instance(instance_id, updates, context)

    async def delete_instance(self, instance_id: str, context: RequestContext) -> None:
        await self.instances.delete_instance(instance_id, context)
        self.engine.rate_limiter.forget(instance_id)

    def get_instance(self, instance_id: str) -> ConnectorInstance:
        return self.instances.get_instance(instance_id)

    def list_instances(self, connector_id: Optional[str] = None) -> list[ConnectorInstance]:
        return self.instances.list_instances(connector_id)

    # -- executions ---------------------------------------------------------

    async def execute_endpoint(
        self,
        instance_id: str,
        endpoint_id: str,
        input: Optional[Mapping[str, Any]],
        context: RequestContext,
    ) -> Execution:
        return await self.engine.execute_endpoint(instance_id, endpoint_id, input, context)

    async def cancel_execution(self, execution_id: str) -> bool:
        return await self.engine.cancel_execution(execution_id)

    def get_execution(self, execution_id: str) -> Optional[Execution]:
        return self.engine.get_execution(execution_id)

    def list_executions(self, instance_id: Optional[str] = None) -> list[Execution]:
        return self.engine.list_executions(instance_id)

    # -- lifecycle ----------------------------------------------------------

    def flush_audit(self) -> int:
        return self.audit_outbox.flush()

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True

        delivered = self.audit_outbox.flush()
        if delivered:
            logger.info(f"Delivered {delivered} pending audit events on shutdown")
        remaining = len(self.audit_outbox.pending)
        if remaining:
            logger.error(f"{remaining} audit events still pending at shutdown")

        await self.engine.transport.aclose()

    async def __aenter__(self) -> "ConnectorService":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()
