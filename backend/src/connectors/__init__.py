"""
Connectors module - external system integration engine

This module provides the connector engine used to integrate the care-home
backend with external systems (GP systems, IoT wearables platforms, ...):
- Connector definitions registered in a ConnectorRegistry
- Credentialed, tenant-specific instances with encrypted credentials
- Transformation and data mapping between internal and external shapes
- Endpoint execution with validation, rate limiting and retry policy

The wired-up facade lives in `connectors.service.ConnectorService`.
"""

from .definitions import ConnectorDefinition, EndpointDefinition, TransformationRule
from .errors import (
    ConfigurationInvalid,
    ConnectorError,
    ConnectorNotFound,
    EndpointNotFound,
    InstanceNotFound,
    RateLimited,
    TransformationFailed,
    TransportError,
    ValidationFailed,
)
from .models import ConnectorInstance, Execution, ExecutionStatus, InstanceStatus, RequestContext
from .registry import ConnectorRegistry
from .transformation import FILTERED, TransformationPipeline

__all__ = [
    "ConnectorDefinition",
    "EndpointDefinition",
    "TransformationRule",
    "ConnectorError",
    "ConnectorNotFound",
    "InstanceNotFound",
    "EndpointNotFound",
    "ConfigurationInvalid",
    "ValidationFailed",
    "RateLimited",
    "TransportError",
    "TransformationFailed",
    "ConnectorInstance",
    "Execution",
    "ExecutionStatus",
    "InstanceStatus",
    "RequestContext",
    "ConnectorRegistry",
    "FILTERED",
    "TransformationPipeline",
]
