"""
Execution Engine - runs one endpoint call end to end.

Handles the complete call workflow:
- Instance, connector and endpoint resolution
- Input validation
- Inbound transformations and outbound data mappings
- Rate limiting per (instance, endpoint)
- Transport call with per-attempt timeout
- Retry logic with exponential backoff
- Response mappings and outbound transformations
- Counters, audit and event notification

Every call produces exactly one Execution record, finalized exactly once
and never left running. Gate failures (validation, rate limiting) raise
with the failed execution attached; transport exhaustion, transformation
failures and cancellation return the finalized execution.
"""

import asyncio
import base64
import copy
import logging
import re
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Mapping, Optional
from urllib.parse import quote

from audit.service import AuditEvent, AuditOutbox
from observability.correlation import correlation_context
from observability.metrics import (
    connector_execution_duration_ms,
    connector_executions_total,
    connector_rate_limited_total,
    connector_retries_total,
    connector_transformation_failures_total,
)
from .definitions import AuthenticationScheme, ConnectorDefinition, EndpointDefinition
from .errors import (
    ConnectorError,
    EndpointNotFound,
    RateLimited,
    TransformationFailed,
    TransportError,
    ValidationFailed,
)
from .events import ConnectorEventBus
from .instances import InstanceManager
from .mapping import DataMapper
from .models import CallOutcome, ConnectorInstance, Execution, ExecutionStatus, RequestContext
from .ports import Transport, TransportRequest, TransportResponse
from .rate_limit import RateLimiter
from .registry import ConnectorRegistry
from .retry import RetryEvaluator
from .stores import ExecutionStore
from .transformation import FILTERED, TransformationPipeline, inbound_rules, outbound_rules
from .validator import BODY_FIELD, InputValidator


logger = logging.getLogger(__name__)

PATH_PARAMETER = re.compile(r"\{(\w+)\}")


def build_auth_headers(scheme: Optional[AuthenticationScheme], credentials: Mapping[str, Any]) -> dict[str, str]:
    """Authentication headers for a scheme from decrypted credentials."""
    headers: dict[str, str] = {}
    if scheme is None:
        return headers

    if scheme.type in ("oauth2", "jwt"):
        token = credentials.get("access_token") or credentials.get("token")
        if token:
            headers["Authorization"] = f"Bearer {token}"

    elif scheme.type == "api_key":
        api_key = credentials.get("api_key") or credentials.get("apiKey")
        key_header = scheme.config.get("headerName", "X-API-Key")
        if api_key:
            headers[key_header] = str(api_key)

    elif scheme.type == "basic":
        username = credentials.get("username")
        password = credentials.get("password")
        if username and password:
            auth_string = base64.b64encode(f"{username}:{password}".encode()).decode()
            headers["Authorization"] = f"Basic {auth_string}"

    elif scheme.type == "custom":
        # config.headers maps header name -> credential key
        for header, credential_key in scheme.config.get("headers", {}).items():
            if credentials.get(credential_key):
                headers[header] = str(credentials[credential_key])

    if scheme.required and not headers:
        logger.warning(f"No credentials available for required {scheme.type} authentication")
    return headers


def fill_path(template: str, values: Mapping[str, Any]) -> tuple[str, set[str]]:
    """Substitute `{name}` placeholders. Returns the path and the names used.

    Raises:
        ValidationFailed: If a placeholder has no value
    """
    used: set[str] = set()

    def substitute(match: re.Match) -> str:
        name = match.group(1)
        value = values.get(name)
        if value is None or value == "":
            raise ValidationFailed(name, f"Path parameter missing: {name}")
        used.add(name)
        return quote(str(value), safe="")

    return PATH_PARAMETER.sub(substitute, template), used


@dataclass
class _CallState:
    """Mutable progress of the transport phase of one execution."""
    retry_count: int = 0
    attempts: int = 0
    rate_limit_token: Optional[int] = None


class ExecutionEngine:
    """
    Orchestrates endpoint executions.

    Usage:
        engine = ExecutionEngine(registry, instances, executions, transport, audit_outbox, limiter)
        execution = await engine.execute_endpoint(
            instance_id=instance.id,
            endpoint_id="book_appointment",
            input={"patientId": "p-1", "appointmentType": "routine", "body": {...}},
            context=RequestContext(tenant_id="t-1", user_id="u-1"),
        )
        if execution.status is ExecutionStatus.COMPLETED:
            print(execution.output)
    """

    def __init__(
        self,
        registry: ConnectorRegistry,
        instances: InstanceManager,
        executions: ExecutionStore,
        transport: Transport,
        audit_outbox: AuditOutbox,
        rate_limiter: Optional[RateLimiter] = None,
        events: Optional[ConnectorEventBus] = None,
        pipeline: Optional[TransformationPipeline] = None,
        mapper: Optional[DataMapper] = None,
        validator: Optional[InputValidator] = None,
        default_timeout_ms: int = 30_000,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.registry = registry
        self.instances = instances
        self.executions = executions
        self.transport = transport
        self.rate_limiter = rate_limiter or RateLimiter()
        self.pipeline = pipeline or TransformationPipeline()
        self.mapper = mapper or DataMapper(strict_conversions=self.pipeline.strict_conversions)
        self.validator = validator or InputValidator()
        self.default_timeout_ms = default_timeout_ms
        self._audit = audit_outbox
        self._events = events
        self._sleep = sleep
        self._in_flight: dict[str, asyncio.Task] = {}
        self._cancel_requested: set[str] = set()

    # -- public API ---------------------------------------------------------

    async def execute_endpoint(
        self,
        instance_id: str,
        endpoint_id: str,
        input: Optional[Mapping[str, Any]],
        context: RequestContext,
    ) -> Execution:
        """
        Execute one endpoint of an instance.

        Returns:
            The finalized Execution (completed, failed or cancelled)

        Raises:
            InstanceNotFound / ConnectorNotFound / EndpointNotFound: Before
                any execution is created
            ValidationFailed: Input rejected; `.execution` is the failed record
            RateLimited: Rate limit hit; `.execution` is the failed record
        """
        instance = self.instances.get_instance(instance_id)
        definition = self.registry.get(instance.connector_id)
        endpoint = definition.find_endpoint(endpoint_id)
        if endpoint is None:
            raise EndpointNotFound(definition.id, endpoint_id)

        execution = Execution.create(
            instance_id,
            endpoint_id,
            copy.deepcopy(dict(input)) if isinstance(input, Mapping) else input,
            metadata={
                "connector_id": definition.id,
                "tenant_id": context.tenant_id,
                "user_id": context.user_id,
            },
        ).start()
        async with self.executions.lock(execution.id):
            self.executions.save(execution)

        with correlation_context(
            execution_id=execution.id,
            tenant_id=context.tenant_id,
            instance_id=instance_id,
            connector_id=definition.id,
        ):
            logger.info(f"Executing {definition.id}/{endpoint_id}", extra={"endpoint_id": endpoint_id})
            state = _CallState()
            try:
                return await self._run(execution, instance, definition, endpoint, context, state)
            except asyncio.CancelledError:
                await self._release_slot(execution, state)
                await asyncio.shield(
                    self._finalize(
                        execution,
                        context,
                        ExecutionStatus.CANCELLED,
                        CallOutcome.CANCELLED,
                        error="Execution cancelled",
                        error_type="cancelled",
                        state=state,
                    )
                )
                raise
            except (ValidationFailed, RateLimited):
                raise
            except Exception as e:
                logger.exception(f"Unexpected error executing {definition.id}/{endpoint_id}")
                return await self._finalize(
                    execution,
                    context,
                    ExecutionStatus.FAILED,
                    CallOutcome.FAILURE,
                    error=str(e),
                    error_type="internal_error",
                    state=state,
                )
            finally:
                self._in_flight.pop(execution.id, None)
                self._cancel_requested.discard(execution.id)
                self.executions.discard_lock(execution.id)

    async def cancel_execution(self, execution_id: str) -> bool:
        """Cancel an execution whose transport call is in flight.

        Returns:
            True if a cancellation was requested; False if the execution is
            unknown, already finished or not yet calling the transport
        """
        task = self._in_flight.get(execution_id)
        if task is None or task.done():
            return False
        self._cancel_requested.add(execution_id)
        task.cancel()
        logger.info(f"Cancellation requested for execution {execution_id}")
        return True

    def get_execution(self, execution_id: str) -> Optional[Execution]:
        return self.executions.get(execution_id)

    def list_executions(self, instance_id: Optional[str] = None) -> list[Execution]:
        return self.executions.list(instance_id)

    # -- pipeline -----------------------------------------------------------

    async def _run(
        self,
        execution: Execution,
        instance: ConnectorInstance,
        definition: ConnectorDefinition,
        endpoint: EndpointDefinition,
        context: RequestContext,
        state: _CallState,
    ) -> Execution:
        raw_input = execution.input if isinstance(execution.input, Mapping) else None

        # Validation
        try:
            if raw_input is None:
                raise ValidationFailed("input", "Input must be an object")
            self.validator.validate(raw_input, endpoint)
        except ValidationFailed as e:
            e.execution = await self._finalize(
                execution, context, ExecutionStatus.FAILED, CallOutcome.FAILURE,
                error=str(e), error_type=e.error_type, state=state,
                metadata={"field": e.field},
            )
            raise

        # Inbound transformations and outbound data mappings
        try:
            record = self.pipeline.apply(raw_input, inbound_rules(definition.transformations))
            if record is FILTERED:
                return await self._finalize(
                    execution, context, ExecutionStatus.COMPLETED, CallOutcome.FILTERED,
                    state=state, metadata={"filtered": True},
                )
            mapped = self.mapper.map_request(record, definition.data_mapping)
            record = mapped.record
            unmapped = list(mapped.unmapped)
        except TransformationFailed as e:
            return await self._transformation_failed(execution, definition, context, state, e)

        try:
            request = self._build_request(instance, definition, endpoint, record)
        except ValidationFailed as e:
            e.execution = await self._finalize(
                execution, context, ExecutionStatus.FAILED, CallOutcome.FAILURE,
                error=str(e), error_type=e.error_type, state=state,
                metadata={"field": e.field},
            )
            raise
        except ConnectorError as e:
            return await self._finalize(
                execution, context, ExecutionStatus.FAILED, CallOutcome.FAILURE,
                error=str(e), error_type=e.error_type, state=state,
            )

        # Rate limiting
        key = (instance.id, endpoint.id)
        decision = await self.rate_limiter.acquire(key, definition.rate_limiting, endpoint.rate_limit)
        if not decision.allowed:
            connector_rate_limited_total.labels(
                connector_id=definition.id, endpoint_id=endpoint.id, limit=decision.limit
            ).inc()
            failed = await self._finalize(
                execution, context, ExecutionStatus.FAILED, CallOutcome.FAILURE,
                error=f"Rate limit '{decision.limit}' exceeded",
                error_type=RateLimited.error_type, state=state,
                metadata={"limit": decision.limit, "retry_after": decision.retry_after},
            )
            raise RateLimited(key, decision.limit, decision.retry_after, execution=failed)
        state.rate_limit_token = decision.token

        # Transport, with retries, in a task that cancel_execution can reach
        evaluator = RetryEvaluator(definition.retry_policy_for(endpoint), endpoint)
        call = asyncio.ensure_future(self._call_with_retry(definition, endpoint, request, evaluator, state))
        self._in_flight[execution.id] = call
        try:
            response = await call
        except asyncio.CancelledError:
            if execution.id not in self._cancel_requested:
                raise
            await self._release_slot(execution, state)
            return await self._finalize(
                execution, context, ExecutionStatus.CANCELLED, CallOutcome.CANCELLED,
                error="Execution cancelled", error_type="cancelled", state=state,
            )
        except TransportError as e:
            logger.warning(
                f"{definition.id}/{endpoint.id} failed after {state.attempts} attempts: {e}",
                extra={"endpoint_id": endpoint.id, "error_type": e.classification},
            )
            return await self._finalize(
                execution, context, ExecutionStatus.FAILED, CallOutcome.FAILURE,
                error=str(e), error_type=e.classification, state=state,
                metadata={"status_code": e.status_code} if e.status_code is not None else None,
            )
        finally:
            self._in_flight.pop(execution.id, None)

        # Response mappings and outbound transformations
        try:
            result = response.to_record()
            if isinstance(result["data"], dict):
                mapped = self.mapper.map_response(result["data"], definition.data_mapping)
                result["data"] = mapped.record
                unmapped.extend(mapped.unmapped)
            output = self.pipeline.apply(result, outbound_rules(definition.transformations))
        except TransformationFailed as e:
            return await self._transformation_failed(execution, definition, context, state, e)

        metadata: dict[str, Any] = {"status_code": response.status_code, "latency_ms": response.latency_ms}
        if unmapped:
            metadata["unmapped_fields"] = unmapped
        if output is FILTERED:
            output = None
            metadata["filtered"] = True

        return await self._finalize(
            execution, context, ExecutionStatus.COMPLETED, CallOutcome.SUCCESS,
            output=output, state=state, metadata=metadata,
        )

    def _build_request(
        self,
        instance: ConnectorInstance,
        definition: ConnectorDefinition,
        endpoint: EndpointDefinition,
        record: Mapping[str, Any],
    ) -> TransportRequest:
        values = dict(record)
        for parameter in endpoint.parameters:
            if values.get(parameter.name) is None and parameter.default_value is not None:
                values[parameter.name] = parameter.default_value

        path, used = fill_path(endpoint.path, values)
        params = {
            key: value
            for key, value in values.items()
            if key != BODY_FIELD and key not in used and value is not None
        }

        headers: dict[str, str] = {}
        if endpoint.authentication and definition.authentication is not None:
            headers = build_auth_headers(definition.authentication, self.instances.decrypt_credentials(instance))

        timeout_ms = endpoint.timeout or self.default_timeout_ms
        base_url = (
            instance.configuration.get("base_url")
            or instance.configuration.get("baseUrl")
            or definition.metadata.get("base_url")
        )
        return TransportRequest(
            method=endpoint.method,
            path=path,
            params=params,
            body=values.get(BODY_FIELD),
            headers=headers,
            base_url=base_url,
            timeout=timeout_ms / 1000,
        )

    async def _call_with_retry(
        self,
        definition: ConnectorDefinition,
        endpoint: EndpointDefinition,
        request: TransportRequest,
        evaluator: RetryEvaluator,
        state: _CallState,
    ) -> TransportResponse:
        while True:
            state.attempts += 1
            try:
                return await asyncio.wait_for(self.transport.call(endpoint, request), timeout=request.timeout)
            except asyncio.TimeoutError:
                error = TransportError("timeout", f"No response within {request.timeout:.3f}s", retryable=True)
            except TransportError as e:
                error = e

            if not evaluator.should_retry(error.classification, state.retry_count):
                raise error

            delay_ms = evaluator.delay_for(state.retry_count)
            state.retry_count += 1
            connector_retries_total.labels(
                connector_id=definition.id, endpoint_id=endpoint.id, error_type=error.classification
            ).inc()
            logger.info(
                f"Retrying {definition.id}/{endpoint.id} in {delay_ms:.0f}ms "
                f"(retry {state.retry_count}/{evaluator.policy.max_retries}): {error}",
                extra={"endpoint_id": endpoint.id, "error_type": error.classification, "attempt": state.attempts},
            )
            await self._sleep(delay_ms / 1000)

    # -- finalization -------------------------------------------------------

    async def _transformation_failed(
        self,
        execution: Execution,
        definition: ConnectorDefinition,
        context: RequestContext,
        state: _CallState,
        error: TransformationFailed,
    ) -> Execution:
        connector_transformation_failures_total.labels(connector_id=definition.id, rule_id=error.rule_id).inc()
        logger.warning(str(error), extra={"rule_id": error.rule_id})
        return await self._finalize(
            execution, context, ExecutionStatus.FAILED, CallOutcome.FAILURE,
            error=str(error), error_type=error.error_type, state=state,
            metadata={"rule_id": error.rule_id},
        )

    async def _release_slot(self, execution: Execution, state: _CallState) -> None:
        if state.rate_limit_token is not None:
            await self.rate_limiter.release((execution.instance_id, execution.endpoint_id), state.rate_limit_token)
            state.rate_limit_token = None

    async def _finalize(
        self,
        execution: Execution,
        context: RequestContext,
        status: ExecutionStatus,
        outcome: CallOutcome,
        *,
        state: _CallState,
        output: Any = None,
        error: Optional[str] = None,
        error_type: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> Execution:
        async with self.executions.lock(execution.id):
            current = self.executions.get(execution.id) or execution
            if current.is_terminal:
                return current
            details = {"attempts": state.attempts, "filtered": False, **(metadata or {})}
            if error_type:
                details["error_type"] = error_type
            finished = current.finish(
                status,
                output=output,
                error=error,
                retry_count=state.retry_count,
                metadata=details,
            )
            self.executions.save(finished)

        await self.instances.record_call(finished.instance_id, outcome)

        connector_id = finished.metadata.get("connector_id", "")
        connector_executions_total.labels(
            connector_id=connector_id, endpoint_id=finished.endpoint_id, status=status.value
        ).inc()
        connector_execution_duration_ms.labels(
            connector_id=connector_id, endpoint_id=finished.endpoint_id
        ).observe(finished.duration)

        log = logger.info if status is ExecutionStatus.COMPLETED else logger.warning
        log(
            f"Execution {finished.id} {status.value} in {finished.duration:.1f}ms "
            f"(retries: {finished.retry_count})",
            extra={"endpoint_id": finished.endpoint_id, "error_type": error_type},
        )

        await self._audit.deliver(
            AuditEvent(
                action="EXECUTE_ENDPOINT",
                entity_type="execution",
                entity_id=finished.id,
                tenant_id=context.tenant_id,
                actor_id=context.user_id,
                metadata={
                    "instance_id": finished.instance_id,
                    "connector_id": connector_id,
                    "endpoint_id": finished.endpoint_id,
                    "status": status.value,
                    "error_type": error_type,
                    "duration_ms": finished.duration,
                    "retry_count": finished.retry_count,
                },
            )
        )
        if self._events is not None:
            self._events.publish(
                f"connector.execution.{status.value}",
                {
                    "execution_id": finished.id,
                    "instance_id": finished.instance_id,
                    "connector_id": connector_id,
                    "endpoint_id": finished.endpoint_id,
                    "tenant_id": context.tenant_id,
                },
            )
        return finished
