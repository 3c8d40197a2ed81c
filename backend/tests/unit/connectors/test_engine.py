"""Unit tests for the execution engine.

Covers the call workflow end to end against SimulatedTransport:
validation, transformations, rate limiting, retries, cancellation,
statistics, audit and events.
"""

import asyncio
import time

import pytest

from conftest import create_iot_instance, create_nhs_instance
from connectors.engine import ExecutionEngine
from connectors.errors import EndpointNotFound, InstanceNotFound, RateLimited, TransportError, ValidationFailed
from connectors.models import ExecutionStatus
from connectors.stores import InMemoryExecutionStore
from infrastructure.transport import SimulatedTransport


VITALS = {
    "deviceId": "d-1",
    "residentId": "r-1",
    "body": {"heartRate": 72, "timestamp": "2025-01-10T08:00:00Z"},
}

BOOKING = {
    "patientId": "p-1",
    "appointmentType": "routine",
    "body": {"preferredDate": "2025-01-10", "reason": "Medication review"},
}

WARD_SENSORS = {
    "id": "ward_sensors",
    "name": "Ward Sensors",
    "version": "1.0.0",
    "category": "iot",
    "endpoints": [
        {
            "id": "post_reading",
            "name": "Post Reading",
            "method": "POST",
            "path": "/sensors/{sensorId}/readings",
            "authentication": False,
            "parameters": [{"name": "sensorId", "type": "string", "required": True}],
        },
    ],
    "transformations": [
        {
            "id": "alerts_only",
            "operation": "filter",
            "parameters": {"conditions": [{"field": "level", "operator": "equals", "value": "alert"}]},
        },
    ],
    "rateLimiting": {"enabled": True, "requestsPerMinute": 1, "windowSize": 60},
    "retryPolicy": {
        "enabled": True,
        "maxRetries": 2,
        "baseDelay": 100,
        "retryableErrors": ["timeout", "server_error"],
    },
}

ALERT = {"sensorId": "s-1", "level": "alert"}


async def create_sensor_instance(registry, instance_manager, context, definition=WARD_SENSORS, **overrides):
    registry.register(definition)
    return await create_iot_instance(
        instance_manager, context, connector_id="ward_sensors", name="Ward sensors", **overrides
    )


class TestSuccessfulExecution:
    """Test the happy path."""

    @pytest.mark.asyncio
    async def test_execute_completes(self, engine, instance_manager, transport, context):
        """Test a valid call completes and updates instance statistics."""
        instance = await create_iot_instance(instance_manager, context)

        execution = await engine.execute_endpoint(instance.id, "send_vital_signs", VITALS, context)

        assert execution.status is ExecutionStatus.COMPLETED
        assert execution.output == {"status": 200, "data": {"success": True, "message": "received"}}
        assert execution.error is None
        assert execution.retry_count == 0
        assert execution.end_time is not None
        assert execution.duration >= 0
        assert execution.metadata["tenant_id"] == "tenant-oakwood"
        assert execution.metadata["filtered"] is False

        stored = instance_manager.get_instance(instance.id)
        assert (stored.total_calls, stored.successful_calls, stored.failed_calls) == (1, 1, 0)
        assert stored.last_sync is not None

    @pytest.mark.asyncio
    async def test_request_built_from_definition(self, engine, instance_manager, transport, context):
        """Test path, params, body, auth header, base URL and timeout."""
        instance = await create_iot_instance(instance_manager, context)

        await engine.execute_endpoint(instance.id, "send_vital_signs", VITALS, context)

        request = transport.calls[0]
        assert request.method == "POST"
        assert request.path == "/vital-signs"
        assert request.params == {"deviceId": "d-1", "residentId": "r-1"}
        assert request.body == VITALS["body"]
        assert request.headers == {"X-API-Key": "iot-secret-key"}
        assert request.base_url == "https://iot.example.test"
        assert request.timeout == 5.0

    @pytest.mark.asyncio
    async def test_path_parameters_filled(self, engine, registry, instance_manager, transport, context):
        """Test placeholders are substituted and left out of the query."""
        instance = await create_sensor_instance(registry, instance_manager, context)

        await engine.execute_endpoint(instance.id, "post_reading", ALERT, context)

        request = transport.calls[0]
        assert request.path == "/sensors/s-1/readings"
        assert request.params == {"level": "alert"}
        assert request.headers == {}

    @pytest.mark.asyncio
    async def test_optional_parameter_defaults_fill_request(
        self, engine, registry, instance_manager, transport, context
    ):
        """Test omitted optional parameters are sent with their declared default."""
        endpoint = {**WARD_SENSORS["endpoints"][0]}
        endpoint["parameters"] = [*endpoint["parameters"], {"name": "unit", "defaultValue": "celsius"}]
        instance = await create_sensor_instance(
            registry, instance_manager, context, definition={**WARD_SENSORS, "endpoints": [endpoint]}
        )

        await engine.execute_endpoint(instance.id, "post_reading", ALERT, context)

        assert transport.calls[0].params == {"level": "alert", "unit": "celsius"}

    @pytest.mark.asyncio
    async def test_unmapped_response_fields_reported(self, engine, instance_manager, context):
        """Test required mapping sources missing from the response are listed."""
        instance = await create_iot_instance(instance_manager, context)

        execution = await engine.execute_endpoint(instance.id, "send_vital_signs", VITALS, context)

        assert execution.metadata["unmapped_fields"] == ["device.vitalSigns"]

    @pytest.mark.asyncio
    async def test_input_is_copied(self, engine, instance_manager, context):
        """Test later mutation of the caller's input does not leak into the record."""
        instance = await create_iot_instance(instance_manager, context)
        payload = {**VITALS, "body": dict(VITALS["body"])}

        execution = await engine.execute_endpoint(instance.id, "send_vital_signs", payload, context)
        payload["body"]["heartRate"] = 180

        assert engine.get_execution(execution.id).input["body"]["heartRate"] == 72


class TestGateFailures:
    """Test failures before the transport is called."""

    @pytest.mark.asyncio
    async def test_missing_required_parameter(self, engine, instance_manager, transport, context):
        """Test validation failure raises with a failed execution attached."""
        instance = await create_nhs_instance(instance_manager, context)
        booking = {key: value for key, value in BOOKING.items() if key != "patientId"}

        with pytest.raises(ValidationFailed) as exc_info:
            await engine.execute_endpoint(instance.id, "book_appointment", booking, context)

        execution = exc_info.value.execution
        assert exc_info.value.field == "patientId"
        assert execution.status is ExecutionStatus.FAILED
        assert execution.metadata["error_type"] == "validation_failed"
        assert engine.get_execution(execution.id).status is ExecutionStatus.FAILED
        assert transport.call_count == 0

        stored = instance_manager.get_instance(instance.id)
        assert (stored.total_calls, stored.failed_calls) == (1, 1)

    @pytest.mark.asyncio
    async def test_non_mapping_input(self, engine, instance_manager, context):
        instance = await create_iot_instance(instance_manager, context)

        with pytest.raises(ValidationFailed) as exc_info:
            await engine.execute_endpoint(instance.id, "send_vital_signs", None, context)

        assert exc_info.value.field == "input"

    @pytest.mark.asyncio
    async def test_unknown_instance_and_endpoint(self, engine, instance_manager, context):
        """Test resolution errors raise before any execution exists."""
        instance = await create_iot_instance(instance_manager, context)

        with pytest.raises(InstanceNotFound):
            await engine.execute_endpoint("inst_missing", "send_vital_signs", VITALS, context)
        with pytest.raises(EndpointNotFound):
            await engine.execute_endpoint(instance.id, "missing_endpoint", VITALS, context)

        assert engine.list_executions() == []

    @pytest.mark.asyncio
    async def test_rate_limited(self, engine, registry, instance_manager, transport, context):
        """Test a call over the limit fails without reaching the transport."""
        instance = await create_sensor_instance(registry, instance_manager, context)
        await engine.execute_endpoint(instance.id, "post_reading", ALERT, context)

        with pytest.raises(RateLimited) as exc_info:
            await engine.execute_endpoint(instance.id, "post_reading", ALERT, context)

        error = exc_info.value
        assert error.limit == "minute"
        assert error.retry_after > 0
        assert error.execution.status is ExecutionStatus.FAILED
        assert error.execution.metadata["error_type"] == "rate_limited"
        assert transport.call_count == 1

        stored = instance_manager.get_instance(instance.id)
        assert (stored.total_calls, stored.successful_calls, stored.failed_calls) == (2, 1, 1)

    @pytest.mark.asyncio
    async def test_filtered_input(self, engine, registry, instance_manager, transport, context):
        """Test filtered records complete without a transport call."""
        instance = await create_sensor_instance(registry, instance_manager, context)

        execution = await engine.execute_endpoint(
            instance.id, "post_reading", {"sensorId": "s-1", "level": "info"}, context
        )

        assert execution.status is ExecutionStatus.COMPLETED
        assert execution.metadata["filtered"] is True
        assert execution.output is None
        assert transport.call_count == 0

        stored = instance_manager.get_instance(instance.id)
        assert (stored.total_calls, stored.successful_calls) == (1, 1)
        assert stored.last_sync is None


class TestRetries:
    """Test retry and backoff behavior."""

    @pytest.mark.asyncio
    async def test_timeout_exhausts_retries(self, engine, instance_manager, recording_sleep, context):
        """Test a permanent timeout retries max_retries times with backoff."""
        engine.transport = SimulatedTransport(mode="timeout")
        instance = await create_nhs_instance(instance_manager, context)

        execution = await engine.execute_endpoint(instance.id, "book_appointment", BOOKING, context)

        assert execution.status is ExecutionStatus.FAILED
        assert execution.retry_count == 3
        assert execution.metadata["error_type"] == "timeout"
        assert execution.metadata["attempts"] == 4
        assert engine.transport.call_count == 4
        assert recording_sleep.delays == [1.0, 2.0, 4.0]
        assert engine.transport.calls[0].headers["Authorization"] == "Bearer nhs-token"

        stored = instance_manager.get_instance(instance.id)
        assert (stored.total_calls, stored.failed_calls) == (1, 1)

    @pytest.mark.asyncio
    async def test_recovers_after_transient_failures(
        self, engine, registry, instance_manager, recording_sleep, context
    ):
        """Test a call that fails twice then succeeds completes."""
        engine.transport = SimulatedTransport(failures_before_success=2, error_classification="server_error")
        instance = await create_sensor_instance(registry, instance_manager, context)

        execution = await engine.execute_endpoint(instance.id, "post_reading", ALERT, context)

        assert execution.status is ExecutionStatus.COMPLETED
        assert execution.retry_count == 2
        assert recording_sleep.delays == [0.1, 0.2]

    @pytest.mark.asyncio
    async def test_non_retryable_error(self, engine, instance_manager, recording_sleep, context):
        """Test errors outside retryable_errors fail on the first attempt."""
        engine.transport = SimulatedTransport(mode="failure", error_classification="client_error")
        instance = await create_nhs_instance(instance_manager, context)

        execution = await engine.execute_endpoint(instance.id, "book_appointment", BOOKING, context)

        assert execution.status is ExecutionStatus.FAILED
        assert execution.retry_count == 0
        assert execution.metadata["error_type"] == "client_error"
        assert engine.transport.call_count == 1
        assert recording_sleep.delays == []

    @pytest.mark.asyncio
    async def test_hanging_transport_times_out(self, engine, registry, instance_manager, recording_sleep, context):
        """Test a transport that never answers is cut off at the endpoint timeout and retried."""
        endpoint = {**WARD_SENSORS["endpoints"][0], "timeout": 50}
        engine.transport = SimulatedTransport(delay_ms=5000)
        instance = await create_sensor_instance(
            registry, instance_manager, context, definition={**WARD_SENSORS, "endpoints": [endpoint]}
        )

        started = time.monotonic()
        execution = await engine.execute_endpoint(instance.id, "post_reading", ALERT, context)

        assert time.monotonic() - started < 2
        assert execution.status is ExecutionStatus.FAILED
        assert execution.metadata["error_type"] == "timeout"
        assert execution.retry_count == 2
        assert engine.transport.call_count == 3
        assert recording_sleep.delays == [0.1, 0.2]

    @pytest.mark.asyncio
    async def test_backoff_does_not_block_other_executions(
        self, registry, instance_manager, audit_outbox, events, context
    ):
        """Test a call sleeping between retries leaves other instances free to run."""

        def responder(endpoint, request):
            if request.base_url == "https://flaky.example.test":
                raise TransportError("server_error", "Service unavailable")
            return {"success": True}

        engine = ExecutionEngine(
            registry,
            instance_manager,
            InMemoryExecutionStore(),
            SimulatedTransport(responder=responder),
            audit_outbox,
            events=events,
        )
        sensors = await create_sensor_instance(
            registry, instance_manager, context, configuration={"base_url": "https://flaky.example.test"}
        )
        wearables = await create_iot_instance(instance_manager, context)

        async def timed(instance_id, endpoint_id, input):
            started = time.monotonic()
            execution = await engine.execute_endpoint(instance_id, endpoint_id, input, context)
            return execution, time.monotonic() - started

        (flaky, flaky_elapsed), (healthy, healthy_elapsed) = await asyncio.gather(
            timed(sensors.id, "post_reading", ALERT),
            timed(wearables.id, "send_vital_signs", VITALS),
        )

        assert flaky.status is ExecutionStatus.FAILED
        assert flaky.retry_count == 2
        assert flaky_elapsed >= 0.3
        assert healthy.status is ExecutionStatus.COMPLETED
        assert healthy_elapsed < 0.1

    @pytest.mark.asyncio
    async def test_unexpected_transport_error_is_internal_error(self, engine, instance_manager, context):
        """Test a non-transport exception fails the execution instead of escaping."""

        def broken(endpoint, request):
            raise RuntimeError("boom")

        engine.transport = SimulatedTransport(responder=broken)
        instance = await create_iot_instance(instance_manager, context)

        execution = await engine.execute_endpoint(instance.id, "send_vital_signs", VITALS, context)

        assert execution.status is ExecutionStatus.FAILED
        assert execution.metadata["error_type"] == "internal_error"
        assert execution.error == "boom"
        stored = instance_manager.get_instance(instance.id)
        assert (stored.total_calls, stored.failed_calls) == (1, 1)


class TestCancellation:
    """Test cancelling in-flight executions."""

    @pytest.mark.asyncio
    async def test_cancel_in_flight(self, engine, registry, instance_manager, rate_limiter, context):
        """Test cancellation finalizes the execution and releases the rate limit slot."""
        engine.transport = SimulatedTransport(delay_ms=2000)
        instance = await create_sensor_instance(registry, instance_manager, context)

        task = asyncio.create_task(engine.execute_endpoint(instance.id, "post_reading", ALERT, context))
        while engine.transport.call_count == 0:
            await asyncio.sleep(0)
        running = engine.list_executions(instance.id)[0]
        assert running.status is ExecutionStatus.RUNNING

        assert await engine.cancel_execution(running.id) is True
        execution = await task

        assert execution.status is ExecutionStatus.CANCELLED
        assert execution.end_time is not None
        assert rate_limiter.usage((instance.id, "post_reading"), 60) == 0

        stored = instance_manager.get_instance(instance.id)
        assert (stored.total_calls, stored.successful_calls, stored.failed_calls) == (1, 0, 0)

    @pytest.mark.asyncio
    async def test_cancel_finished_execution(self, engine, instance_manager, context):
        """Test finished executions cannot be cancelled."""
        instance = await create_iot_instance(instance_manager, context)
        execution = await engine.execute_endpoint(instance.id, "send_vital_signs", VITALS, context)

        assert await engine.cancel_execution(execution.id) is False
        assert await engine.cancel_execution("exec_missing") is False
        assert engine.get_execution(execution.id).status is ExecutionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_caller_cancels_task(self, engine, registry, instance_manager, rate_limiter, context):
        """Test cancelling the caller's task still records a cancelled execution."""
        engine.transport = SimulatedTransport(delay_ms=2000)
        instance = await create_sensor_instance(registry, instance_manager, context)

        task = asyncio.create_task(engine.execute_endpoint(instance.id, "post_reading", ALERT, context))
        while engine.transport.call_count == 0:
            await asyncio.sleep(0)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task

        execution = engine.list_executions(instance.id)[0]
        assert execution.status is ExecutionStatus.CANCELLED
        assert execution.metadata["error_type"] == "cancelled"
        assert rate_limiter.usage((instance.id, "post_reading"), 60) == 0

        stored = instance_manager.get_instance(instance.id)
        assert (stored.total_calls, stored.successful_calls, stored.failed_calls) == (1, 0, 0)


class TestAuditAndEvents:
    """Test audit records and event notifications."""

    @pytest.mark.asyncio
    async def test_execution_audited(self, engine, instance_manager, audit_sink, context):
        """Test every execution writes one EXECUTE_ENDPOINT event."""
        instance = await create_iot_instance(instance_manager, context)

        execution = await engine.execute_endpoint(instance.id, "send_vital_signs", VITALS, context)

        event = audit_sink.events[-1]
        assert event.action == "EXECUTE_ENDPOINT"
        assert event.entity_id == execution.id
        assert event.actor_id == "user-admin"
        assert event.metadata["status"] == "completed"
        assert audit_sink.actions().count("EXECUTE_ENDPOINT") == 1

    @pytest.mark.asyncio
    async def test_execution_event_published(self, engine, instance_manager, events, context):
        received = []
        events.subscribe("connector.execution.completed", received.append)
        instance = await create_iot_instance(instance_manager, context)

        execution = await engine.execute_endpoint(instance.id, "send_vital_signs", VITALS, context)

        assert [event.payload["execution_id"] for event in received] == [execution.id]

    @pytest.mark.asyncio
    async def test_audit_failure_does_not_fail_execution(
        self, engine, instance_manager, audit_sink, audit_outbox, context, monkeypatch
    ):
        """Test a broken audit sink leaves events pending instead of raising."""
        instance = await create_iot_instance(instance_manager, context)

        def unavailable(event):
            raise ConnectionError("audit store unavailable")

        monkeypatch.setattr(audit_sink, "record", unavailable)

        execution = await engine.execute_endpoint(instance.id, "send_vital_signs", VITALS, context)

        assert execution.status is ExecutionStatus.COMPLETED
        assert [event.action for event in audit_outbox.pending] == ["EXECUTE_ENDPOINT"]

        monkeypatch.undo()
        assert audit_outbox.flush() == 1
        assert audit_outbox.pending == []


class TestListExecutions:
    @pytest.mark.asyncio
    async def test_list_by_instance(self, engine, registry, instance_manager, context):
        """Test executions are listed per instance in start order."""
        iot = await create_iot_instance(instance_manager, context)
        sensors = await create_sensor_instance(registry, instance_manager, context)

        first = await engine.execute_endpoint(iot.id, "send_vital_signs", VITALS, context)
        await engine.execute_endpoint(sensors.id, "post_reading", ALERT, context)
        second = await engine.execute_endpoint(iot.id, "send_vital_signs", VITALS, context)

        assert [e.id for e in engine.list_executions(iot.id)] == [first.id, second.id]
        assert len(engine.list_executions()) == 3

    @pytest.mark.asyncio
    async def test_stored_executions_cannot_be_edited(self, engine, instance_manager, context):
        """Test changing a returned execution leaves the stored record intact."""
        instance = await create_iot_instance(instance_manager, context)
        execution = await engine.execute_endpoint(instance.id, "send_vital_signs", VITALS, context)

        execution.metadata["status_code"] = 500
        engine.get_execution(execution.id).input["deviceId"] = "tampered"
        engine.list_executions(instance.id)[0].metadata["connector_id"] = "tampered"

        stored = engine.get_execution(execution.id)
        assert stored.metadata["status_code"] == 200
        assert stored.metadata["connector_id"] == "iot_wearables"
        assert stored.input["deviceId"] == "d-1"

    @pytest.mark.asyncio
    async def test_finished_executions_release_locks(self, engine, instance_manager, context):
        instance = await create_iot_instance(instance_manager, context)

        for _ in range(20):
            await engine.execute_endpoint(instance.id, "send_vital_signs", VITALS, context)

        assert len(engine.list_executions()) == 20
        assert len(engine.executions._locks) == 0
