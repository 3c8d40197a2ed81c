"""
Connector engine exceptions.

Every error raised by the engine derives from ConnectorError so callers can
catch the whole family at once. Errors raised after an Execution record was
created carry that record on `execution`.
"""

from typing import Any, Optional


class ConnectorError(Exception):
    """
    Base exception for connector-related errors.

    Attributes:
        error_type: Stable machine-readable classification
        execution: The finalized Execution, when one was created
    """

    error_type = "connector_error"

    def __init__(self, message: str, execution: Optional[Any] = None):
        super().__init__(message)
        self.execution = execution


class ConnectorNotFound(ConnectorError):
    error_type = "connector_not_found"

    def __init__(self, connector_id: str):
        super().__init__(f"Connector not found: {connector_id}")
        self.connector_id = connector_id


class InstanceNotFound(ConnectorError):
    error_type = "instance_not_found"

    def __init__(self, instance_id: str):
        super().__init__(f"Instance not found: {instance_id}")
        self.instance_id = instance_id


class EndpointNotFound(ConnectorError):
    error_type = "endpoint_not_found"

    def __init__(self, connector_id: str, endpoint_id: str):
        super().__init__(f"Endpoint not found: {endpoint_id} (connector {connector_id})")
        self.connector_id = connector_id
        self.endpoint_id = endpoint_id


class ConfigurationInvalid(ConnectorError):
    """Raised at registration or instance-creation time."""

    error_type = "configuration_invalid"


class ValidationFailed(ConnectorError):
    """Raised when call input misses a required field or breaks a constraint."""

    error_type = "validation_failed"

    def __init__(self, field: str, message: Optional[str] = None, execution: Optional[Any] = None):
        super().__init__(message or f"Required parameter missing: {field}", execution)
        self.field = field


class RateLimited(ConnectorError):
    error_type = "rate_limited"

    def __init__(
        self,
        key: tuple[str, str],
        limit: str,
        retry_after: float,
        execution: Optional[Any] = None,
    ):
        instance_id, endpoint_id = key
        super().__init__(
            f"Rate limit '{limit}' exceeded for instance {instance_id} "
            f"endpoint {endpoint_id}; retry after {retry_after:.2f}s",
            execution,
        )
        self.key = key
        self.limit = limit
        self.retry_after = retry_after


class TransportError(ConnectorError):
    """
    Network or HTTP failure reported by a Transport.

    Attributes:
        classification: Error class consulted by the retry policy
            (e.g. 'timeout', 'network_error', 'server_error', 'client_error')
        status_code: HTTP status when the remote system answered
        retryable: Transport's own hint; the retry policy has the final say
    """

    error_type = "transport_error"

    def __init__(
        self,
        classification: str,
        message: str,
        status_code: Optional[int] = None,
        retryable: bool = False,
    ):
        super().__init__(message)
        self.classification = classification
        self.status_code = status_code
        self.retryable = retryable


class TransformationFailed(ConnectorError):
    error_type = "transformation_failed"

    def __init__(self, rule_id: str, message: str):
        super().__init__(f"Transformation '{rule_id}' failed: {message}")
        self.rule_id = rule_id


class ExpressionError(ConnectorError):
    """Formula could not be parsed or evaluated by the arithmetic sandbox."""

    error_type = "expression_error"


class CredentialVaultError(ConnectorError):
    """Raised when credential encryption or decryption fails."""

    error_type = "credential_vault_error"
