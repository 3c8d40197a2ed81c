"""
Connector Registry - Central registration and resolution of connector definitions

The ConnectorRegistry maps connector ids to immutable ConnectorDefinitions.
Definitions are registered at startup (built-ins and JSON declarations) or
explicitly at runtime, and are never deleted.
"""

import json
import logging
import re
import threading
from pathlib import Path
from typing import Any, Iterator, Mapping, Optional, Union

from pydantic import ValidationError

from audit.service import AuditEvent, AuditOutbox
from .definitions import ConnectorDefinition
from .errors import ConfigurationInvalid, ConnectorNotFound
from .events import ConnectorEventBus


logger = logging.getLogger(__name__)


class ConnectorRegistry:
    """
    Registry of connector definitions.

    Usage:
        registry = ConnectorRegistry(audit_outbox, events)
        registry.register(NHS_GP_CONNECT)

        definition = registry.get("nhs_gp_connect")
        endpoint = definition.find_endpoint("book_appointment")

    Thread-safety: writes are serialized by a reentrant lock. Registration
    stores a deep copy and every read returns a fresh deep copy, so no
    caller can change a registered definition through its dict fields.
    """

    def __init__(
        self,
        audit_outbox: Optional[AuditOutbox] = None,
        events: Optional[ConnectorEventBus] = None,
    ):
        self._definitions: dict[str, ConnectorDefinition] = {}
        self._lock = threading.RLock()
        self._audit = audit_outbox
        self._events = events

    def register(self, definition: Union[ConnectorDefinition, Mapping[str, Any]]) -> ConnectorDefinition:
        """
        Register a connector definition.

        Args:
            definition: A ConnectorDefinition, or a mapping in the declaration
                shape (camelCase keys accepted)

        Returns:
            The registered definition

        Raises:
            ConfigurationInvalid: If the definition is malformed or fails
                the registration checks

        Example:
            registry.register({"id": "crm", "name": "CRM", "version": "1.0.0", ...})
        """
        if not isinstance(definition, ConnectorDefinition):
            try:
                definition = ConnectorDefinition.model_validate(definition)
            except ValidationError as e:
                raise ConfigurationInvalid(f"Invalid connector definition: {e}")

        self._check(definition)
        # Registered definitions never share state with the caller
        stored = definition.model_copy(deep=True)

        with self._lock:
            replaced = definition.id in self._definitions
            self._definitions[definition.id] = stored

        if replaced:
            logger.warning(f"Connector '{definition.id}' re-registered; previous definition replaced")
        logger.info(
            f"Registered connector {definition.id} v{definition.version}",
            extra={"connector_id": definition.id},
        )

        if self._audit is not None:
            self._audit.publish(
                AuditEvent(
                    action="REGISTER_CONNECTOR",
                    entity_type="connector",
                    entity_id=definition.id,
                    metadata={"name": definition.name, "version": definition.version, "replaced": replaced},
                )
            )
        if self._events is not None:
            self._events.publish("connector.registered", {"connector_id": definition.id})

        return stored.model_copy(deep=True)

    def get(self, connector_id: str) -> ConnectorDefinition:
        definition = self.find(connector_id)
        if definition is None:
            raise ConnectorNotFound(connector_id)
        return definition

    def find(self, connector_id: str) -> Optional[ConnectorDefinition]:
        """Copy of the registered definition, or None."""
        with self._lock:
            definition = self._definitions.get(connector_id)
        return definition.model_copy(deep=True) if definition is not None else None

    def load_directory(self, path: Union[str, Path]) -> list[ConnectorDefinition]:
        """
        Register every `*.json` declaration in a directory.

        Raises:
            ConfigurationInvalid: If the directory is missing, a file is not
                valid JSON, or a declaration fails registration
        """
        directory = Path(path)
        if not directory.is_dir():
            raise ConfigurationInvalid(f"Connector definitions directory not found: {directory}")

        loaded = []
        for file_path in sorted(directory.glob("*.json")):
            try:
                document = json.loads(file_path.read_text(encoding="utf-8"))
            except (OSError, json.JSONDecodeError) as e:
                raise ConfigurationInvalid(f"Cannot read connector definition {file_path.name}: {e}")
            loaded.append(self.register(document))

        logger.info(f"Loaded {len(loaded)} connector definitions from {directory}")
        return loaded

    def list(self) -> list[ConnectorDefinition]:
        """All definitions, sorted by id."""
        with self._lock:
            definitions = [self._definitions[key] for key in sorted(self._definitions)]
        return [definition.model_copy(deep=True) for definition in definitions]

    def is_registered(self, connector_id: str) -> bool:
        with self._lock:
            return connector_id in self._definitions

    @staticmethod
    def _check(definition: ConnectorDefinition) -> None:
        for field_name in ("id", "name", "version", "category"):
            if not str(getattr(definition, field_name) or "").strip():
                raise ConfigurationInvalid(f"Connector definition is missing '{field_name}'")

        if not definition.endpoints:
            raise ConfigurationInvalid(f"Connector '{definition.id}' declares no endpoints")

        seen = set()
        for endpoint in definition.endpoints:
            if endpoint.id in seen:
                raise ConfigurationInvalid(
                    f"Connector '{definition.id}' declares endpoint '{endpoint.id}' more than once"
                )
            seen.add(endpoint.id)

        for rule in definition.mapping_rules():
            if not rule.source or not rule.target:
                raise ConfigurationInvalid(
                    f"Mapping rule '{rule.id}' of connector '{definition.id}' needs a source and a target"
                )

        for location, pattern in _declared_patterns(definition):
            try:
                re.compile(pattern)
            except re.error as e:
                raise ConfigurationInvalid(
                    f"Connector '{definition.id}' has an invalid pattern at {location}: {e}"
                )


def _declared_patterns(definition: ConnectorDefinition) -> Iterator[tuple[str, str]]:
    """Every regular expression a definition declares, with where it sits."""
    for field_name, pattern in definition.validation.patterns.items():
        yield f"validation.patterns.{field_name}", pattern

    for endpoint in definition.endpoints:
        for parameter in endpoint.parameters:
            if parameter.validation is not None and parameter.validation.pattern:
                yield f"endpoints.{endpoint.id}.parameters.{parameter.name}", parameter.validation.pattern
        if endpoint.request_body is not None:
            for field_name, pattern in endpoint.request_body.validation.patterns.items():
                yield f"endpoints.{endpoint.id}.requestBody.{field_name}", pattern

    for rule in definition.data_mapping.custom_mappings:
        yield f"dataMapping.customMappings.{rule.id}", rule.source_pattern
