"""
Connector definition models.

Definitions describe how to talk to one external system: endpoints,
authentication, data mappings, transformation rules and call policies.
They are immutable once built. Field names are snake_case in Python and
accept camelCase aliases, so declarations written as JSON documents
(`requestBody`, `retryPolicy`, ...) load without translation.
"""

from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


HttpMethod = Literal["GET", "POST", "PUT", "DELETE", "PATCH"]
AuthType = Literal["oauth2", "api_key", "basic", "jwt", "custom"]
ParameterType = Literal["string", "number", "integer", "boolean", "date", "array", "object"]
RuleShape = Literal["field", "object", "array", "custom"]
RuleOperation = Literal[
    "map", "convert", "calculate", "filter", "aggregate", "split", "merge", "custom"
]
ConditionOperator = Literal[
    "equals",
    "not_equals",
    "contains",
    "not_contains",
    "greater_than",
    "less_than",
    "in",
    "not_in",
    "exists",
    "not_exists",
]

CONNECTOR_CATEGORIES = ("healthcare", "financial", "communication", "iot", "analytics", "custom")


class DefinitionModel(BaseModel):
    """Base for all definition models: frozen, camelCase aliases accepted."""

    model_config = ConfigDict(
        frozen=True,
        populate_by_name=True,
        alias_generator=to_camel,
        extra="ignore",
    )


class AuthenticationScheme(DefinitionModel):
    type: AuthType
    required: bool = True
    config: dict[str, Any] = Field(default_factory=dict)


class Condition(DefinitionModel):
    """Field/operator/value test used by filters, rules and mappings."""

    field: str
    operator: ConditionOperator
    value: Any = None


class ParameterConstraints(DefinitionModel):
    min: Optional[float] = None
    max: Optional[float] = None
    pattern: Optional[str] = None
    enum: Optional[tuple[Any, ...]] = None


class EndpointParameter(DefinitionModel):
    name: str
    type: ParameterType = "string"
    required: bool = False
    description: str = ""
    default_value: Any = None
    validation: Optional[ParameterConstraints] = None


class ValueRange(DefinitionModel):
    min: float
    max: float


class ValidationSpec(DefinitionModel):
    """Declarative field checks: presence, data types, ranges and patterns."""

    required: tuple[str, ...] = ()
    optional: tuple[str, ...] = ()
    data_types: dict[str, str] = Field(default_factory=dict)
    ranges: dict[str, ValueRange] = Field(default_factory=dict)
    patterns: dict[str, str] = Field(default_factory=dict)


class RequestBodySpec(DefinitionModel):
    content_type: str = "application/json"
    body_schema: dict[str, Any] = Field(default_factory=dict, alias="schema")
    required: bool = False
    validation: ValidationSpec = Field(default_factory=ValidationSpec)


class StatusCodeSpec(DefinitionModel):
    description: str = ""
    body_schema: dict[str, Any] = Field(default_factory=dict, alias="schema")


class ErrorHandling(DefinitionModel):
    retryable_errors: tuple[str, ...] = ()
    non_retryable_errors: tuple[str, ...] = ()
    custom_handlers: dict[str, Any] = Field(default_factory=dict)


class ResponseSpec(DefinitionModel):
    status_codes: dict[int, StatusCodeSpec] = Field(default_factory=dict)
    default_schema: dict[str, Any] = Field(default_factory=dict)
    error_handling: ErrorHandling = Field(default_factory=ErrorHandling)


class RateLimitPolicy(DefinitionModel):
    """Call frequency bounds per instance and endpoint.

    `requests_per_minute` applies over `window_size` seconds; `burst_limit`
    bounds calls within any one second. A limit of 0 disables that bound.
    """

    enabled: bool = False
    requests_per_minute: int = 0
    requests_per_hour: int = 0
    requests_per_day: int = 0
    burst_limit: int = 0
    window_size: int = 60


class RetryPolicy(DefinitionModel):
    """Bounded exponential backoff. Delays are in milliseconds."""

    enabled: bool = True
    max_retries: int = 3
    base_delay: int = 1000
    max_delay: int = 30_000
    backoff_multiplier: float = 2.0
    retryable_errors: tuple[str, ...] = ("timeout", "network_error")


class EndpointDefinition(DefinitionModel):
    id: str
    name: str
    description: str = ""
    method: HttpMethod = "GET"
    path: str
    parameters: tuple[EndpointParameter, ...] = ()
    request_body: Optional[RequestBodySpec] = None
    response: ResponseSpec = Field(default_factory=ResponseSpec)
    authentication: bool = True
    rate_limit: Optional[int] = None
    timeout: Optional[int] = None
    retry_policy: Optional[RetryPolicy] = None


class MappingRule(DefinitionModel):
    id: str
    name: str = ""
    source: str
    target: str
    transformation: Optional[str] = None
    conditions: tuple[Condition, ...] = ()
    required: bool = False
    default_value: Any = None


class CustomMappingRule(DefinitionModel):
    id: str
    name: str = ""
    source_pattern: str
    target_pattern: str
    transformation: Optional[str] = None
    priority: int = 0


class DataMappingSet(DefinitionModel):
    inbound: tuple[MappingRule, ...] = ()
    outbound: tuple[MappingRule, ...] = ()
    bidirectional: tuple[MappingRule, ...] = ()
    custom_mappings: tuple[CustomMappingRule, ...] = ()


class TransformationRule(DefinitionModel):
    id: str
    name: str = ""
    type: RuleShape = "field"
    source: str = ""
    target: str = ""
    operation: RuleOperation
    parameters: dict[str, Any] = Field(default_factory=dict)
    conditions: tuple[Condition, ...] = ()
    enabled: bool = True


class WebhookAuthentication(DefinitionModel):
    type: Literal["bearer", "basic", "hmac", "custom"]
    credentials: str = ""


class WebhookDefinition(DefinitionModel):
    id: str
    name: str = ""
    url: str
    events: tuple[str, ...] = ()
    authentication: Optional[WebhookAuthentication] = None
    retry_policy: RetryPolicy = Field(default_factory=RetryPolicy)
    enabled: bool = True


class ConnectorDefinition(DefinitionModel):
    """
    Reusable, versioned definition of one external system integration.

    `validation` declares the instance configuration an administrator must
    supply when deploying the connector (required fields, data types,
    ranges and patterns).
    """

    id: str
    name: str
    description: str = ""
    version: str
    category: str
    icon: str = ""
    color: str = ""
    enabled: bool = True
    authentication: Optional[AuthenticationScheme] = None
    endpoints: tuple[EndpointDefinition, ...] = ()
    data_mapping: DataMappingSet = Field(default_factory=DataMappingSet)
    transformations: tuple[TransformationRule, ...] = ()
    validation: ValidationSpec = Field(default_factory=ValidationSpec)
    rate_limiting: RateLimitPolicy = Field(default_factory=RateLimitPolicy)
    retry_policy: RetryPolicy = Field(default_factory=RetryPolicy)
    webhooks: tuple[WebhookDefinition, ...] = ()
    metadata: dict[str, Any] = Field(default_factory=dict)

    def find_endpoint(self, endpoint_id: str) -> Optional[EndpointDefinition]:
        for endpoint in self.endpoints:
            if endpoint.id == endpoint_id:
                return endpoint
        return None

    def retry_policy_for(self, endpoint: EndpointDefinition) -> RetryPolicy:
        return endpoint.retry_policy or self.retry_policy

    def mapping_rules(self) -> list[MappingRule]:
        """All mapping rules, in declaration order, across every direction."""
        mapping = self.data_mapping
        return [*mapping.inbound, *mapping.outbound, *mapping.bidirectional]
