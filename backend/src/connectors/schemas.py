"""Pydantic schemas for connector engine read models.

These schemas define the observable shapes of instances, executions and
connector catalog entries. Instance credentials are never part of any
schema.
"""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from .definitions import ConnectorDefinition
from .models import ExecutionStatus, InstanceStatus


class InstanceRead(BaseModel):
    """Connector instance as exposed to callers. Has no credentials field."""

    model_config = ConfigDict(from_attributes=True, use_enum_values=True)

    id: str = Field(..., description="Instance unique identifier")
    connector_id: str = Field(..., description="Connector definition id")
    name: str = Field(..., description="Display name")
    status: InstanceStatus = Field(..., description="inactive, active, error or maintenance")
    configuration: dict[str, Any] = Field(default_factory=dict, description="Non-secret configuration")
    last_sync: Optional[datetime] = Field(None, description="Time of the last successful call")
    total_calls: int = Field(0, description="All finished calls")
    successful_calls: int = Field(0, description="Calls that completed")
    failed_calls: int = Field(0, description="Calls that failed")
    tenant_id: Optional[str] = Field(None, description="Owning tenant")
    created_by: Optional[str] = Field(None, description="User who created the instance")
    created_at: datetime
    updated_at: datetime


class ExecutionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True, use_enum_values=True)

    id: str
    instance_id: str
    endpoint_id: str
    status: ExecutionStatus
    input: Any = None
    output: Any = None
    error: Optional[str] = None
    start_time: datetime
    end_time: Optional[datetime] = None
    duration: Optional[float] = Field(None, description="Milliseconds from start to end")
    retry_count: int = 0
    metadata: dict[str, Any] = Field(default_factory=dict)


class EndpointSummary(BaseModel):
    id: str
    name: str
    method: str
    path: str


class ConnectorSummary(BaseModel):
    """Catalog entry for one registered connector."""

    id: str
    name: str
    description: str
    version: str
    category: str
    icon: str = ""
    color: str = ""
    enabled: bool = True
    authentication_type: Optional[str] = None
    endpoints: list[EndpointSummary] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_definition(cls, definition: ConnectorDefinition) -> "ConnectorSummary":
        return cls(
            id=definition.id,
            name=definition.name,
            description=definition.description,
            version=definition.version,
            category=definition.category,
            icon=definition.icon,
            color=definition.color,
            enabled=definition.enabled,
            authentication_type=definition.authentication.type if definition.authentication else None,
            endpoints=[
                EndpointSummary(id=e.id, name=e.name, method=e.method, path=e.path)
                for e in definition.endpoints
            ],
            metadata=dict(definition.metadata),
        )
