"""
Instance Manager - lifecycle of credentialed connector instances.

Credentials are encrypted value by value through the CredentialVault before
they are stored, and decrypted only when the engine builds transport
authentication headers. Every mutation is audited and published.
"""

import logging
from typing import Any, Mapping, Optional

from audit.service import AuditEvent, AuditOutbox
from .errors import ConfigurationInvalid, InstanceNotFound
from .events import ConnectorEventBus
from .models import CallOutcome, ConnectorInstance, InstanceStatus, RequestContext, new_id, utcnow
from .ports import CredentialVault
from .registry import ConnectorRegistry
from .stores import InstanceStore
from .validator import validate_configuration


logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = frozenset({"name", "status", "configuration", "credentials"})


class InstanceManager:
    def __init__(
        self,
        registry: ConnectorRegistry,
        vault: CredentialVault,
        store: InstanceStore,
        audit_outbox: AuditOutbox,
        events: Optional[ConnectorEventBus] = None,
    ):
        self.registry = registry
        self.vault = vault
        self.store = store
        self._audit = audit_outbox
        self._events = events

    async def create_instance(
        self,
        connector_id: str,
        name: str,
        configuration: Mapping[str, Any],
        credentials: Mapping[str, Any],
        context: RequestContext,
    ) -> ConnectorInstance:
        """
        Create an inactive instance of a registered connector.

        Raises:
            ConnectorNotFound: If connector_id is not registered
            ConfigurationInvalid: If the configuration breaks the connector's
                validation rules or a credential cannot be stored
        """
        definition = self.registry.get(connector_id)
        if not name or not name.strip():
            raise ConfigurationInvalid("Instance name cannot be empty")

        validate_configuration(definition.validation, configuration)
        encrypted = self._encrypt_credentials(credentials)

        instance = ConnectorInstance(
            id=new_id("inst"),
            connector_id=connector_id,
            name=name,
            status=InstanceStatus.INACTIVE,
            configuration=dict(configuration),
            credentials=encrypted,
            tenant_id=context.tenant_id,
            created_by=context.user_id,
        )
        async with self.store.lock(instance.id):
            self.store.save(instance)

        logger.info(
            f"Created instance {instance.id} of connector {connector_id}",
            extra={"instance_id": instance.id, "connector_id": connector_id, "tenant_id": context.tenant_id},
        )
        await self._record(
            "CREATE_INSTANCE",
            instance,
            context,
            {"connector_id": connector_id, "name": name},
            "instance.created",
        )
        return instance

    async def update_instance(
        self,
        instance_id: str,
        updates: Mapping[str, Any],
        context: RequestContext,
    ) -> ConnectorInstance:
        """
        Apply updates to name, status, configuration or credentials.

        Raises:
            InstanceNotFound: If the instance does not exist
            ConfigurationInvalid: If an update targets a read-only field or
                carries an invalid value
        """
        rejected = set(updates) - UPDATABLE_FIELDS
        if rejected:
            raise ConfigurationInvalid(f"Fields cannot be updated: {', '.join(sorted(rejected))}")

        self._require(instance_id)
        async with self.store.lock(instance_id):
            instance = self._require(instance_id)
            definition = self.registry.get(instance.connector_id)

            changes = {}
            if "name" in updates:
                if not updates["name"] or not str(updates["name"]).strip():
                    raise ConfigurationInvalid("Instance name cannot be empty")
                changes["name"] = updates["name"]
            if "status" in updates:
                try:
                    changes["status"] = InstanceStatus(updates["status"])
                except ValueError:
                    raise ConfigurationInvalid(f"Unknown instance status: {updates['status']}")
            if "configuration" in updates:
                validate_configuration(definition.validation, updates["configuration"])
                changes["configuration"] = dict(updates["configuration"])
            if "credentials" in updates:
                changes["credentials"] = self._encrypt_credentials(updates["credentials"])

            for field_name, value in changes.items():
                setattr(instance, field_name, value)
            instance.updated_at = utcnow()
            self.store.save(instance)

        changed_fields = sorted(changes)
        logger.info(
            f"Updated instance {instance_id}: {', '.join(changed_fields) or 'no changes'}",
            extra={"instance_id": instance_id, "tenant_id": context.tenant_id},
        )
        await self._record("UPDATE_INSTANCE", instance, context, {"fields": changed_fields}, "instance.updated")
        return instance

    async def delete_instance(self, instance_id: str, context: RequestContext) -> None:
        """Delete an instance. Its executions stay in the execution store."""
        async with self.store.lock(instance_id):
            instance = self._require(instance_id)
            self.store.delete(instance_id)
        self.store.discard_lock(instance_id)

        logger.info(f"Deleted instance {instance_id}", extra={"instance_id": instance_id})
        await self._record(
            "DELETE_INSTANCE",
            instance,
            context,
            {"connector_id": instance.connector_id},
            "instance.deleted",
        )

    def get_instance(self, instance_id: str) -> ConnectorInstance:
        return self._require(instance_id)

    def find_instance(self, instance_id: str) -> Optional[ConnectorInstance]:
        return self.store.get(instance_id)

    def list_instances(self, connector_id: Optional[str] = None) -> list[ConnectorInstance]:
        return self.store.list(connector_id)

    def decrypt_credentials(self, instance: ConnectorInstance) -> dict[str, Any]:
        """Plaintext credentials for building transport auth. Never log the result."""
        return {
            key: self.vault.decrypt(value) if isinstance(value, str) else value
            for key, value in instance.credentials.items()
        }

    async def record_call(self, instance_id: str, outcome: CallOutcome) -> Optional[ConnectorInstance]:
        """Update call counters. Returns None if the instance was deleted mid-call."""
        async with self.store.lock(instance_id):
            instance = self.store.get(instance_id)
            if instance is not None:
                instance.record_call(outcome)
                self.store.save(instance)
                return instance

        self.store.discard_lock(instance_id)
        logger.warning(f"Instance {instance_id} deleted before call statistics were recorded")
        return None

    def _require(self, instance_id: str) -> ConnectorInstance:
        instance = self.store.get(instance_id)
        if instance is None:
            raise InstanceNotFound(instance_id)
        return instance

    def _encrypt_credentials(self, credentials: Mapping[str, Any]) -> dict[str, Any]:
        if not isinstance(credentials, Mapping):
            raise ConfigurationInvalid("Credentials must be a mapping")

        encrypted = {}
        for key, value in credentials.items():
            if isinstance(value, str):
                encrypted[key] = self.vault.encrypt(value)
            elif isinstance(value, self.vault.passthrough_types):
                encrypted[key] = value
            else:
                raise ConfigurationInvalid(
                    f"Credential '{key}' must be a string, got {type(value).__name__}"
                )
        return encrypted

    async def _record(
        self,
        action: str,
        instance: ConnectorInstance,
        context: RequestContext,
        metadata: dict[str, Any],
        event_type: str,
    ) -> None:
        await self._audit.deliver(
            AuditEvent(
                action=action,
                entity_type="instance",
                entity_id=instance.id,
                tenant_id=context.tenant_id,
                actor_id=context.user_id,
                metadata=metadata,
            )
        )
        if self._events is not None:
            self._events.publish(
                event_type,
                {"instance_id": instance.id, "connector_id": instance.connector_id, "tenant_id": context.tenant_id},
            )
