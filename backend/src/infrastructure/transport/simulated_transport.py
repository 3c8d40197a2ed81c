"""
Simulated Transport - In-memory transport for testing

Provides a transport that simulates external system calls without any
network. Used for unit tests and local development.
"""

import asyncio
import logging
from typing import Any, Callable, Optional

from connectors.definitions import EndpointDefinition
from connectors.errors import TransportError
from connectors.ports import Transport, TransportRequest, TransportResponse


logger = logging.getLogger(__name__)


class SimulatedTransport(Transport):
    """
    Simulated transport for testing and development.

    Every call is recorded in `calls`. Supports modes to simulate success,
    failure and delays.

    Configuration:
        - mode: "success" | "failure" | "timeout" (default: "success")
        - delay_ms: Latency to simulate per call (default: 0)
        - failures_before_success: Fail this many calls first, then succeed
        - error_classification: Classification used when mode="failure"
        - responder: Optional callable (endpoint, request) -> response data

    Usage:
        # Success case
        transport = SimulatedTransport(response_data={"appointmentId": "a-1"})
        response = await transport.call(endpoint, request)
        assert response.status_code == 200

        # Permanent timeout
        transport = SimulatedTransport(mode="timeout")
        # Raises TransportError("timeout", ...)
    """

    def __init__(
        self,
        mode: str = "success",
        delay_ms: float = 0,
        status_code: int = 200,
        response_data: Any = None,
        failures_before_success: int = 0,
        error_classification: str = "server_error",
        responder: Optional[Callable[[EndpointDefinition, TransportRequest], Any]] = None,
    ):
        if mode not in ("success", "failure", "timeout"):
            raise ValueError(f"Unknown simulation mode: {mode}")
        self.mode = mode
        self.delay_ms = delay_ms
        self.status_code = status_code
        self.response_data = response_data
        self.failures_before_success = failures_before_success
        self.error_classification = error_classification
        self.responder = responder
        self.calls: list[TransportRequest] = []
        self.closed = False

    @property
    def call_count(self) -> int:
        return len(self.calls)

    async def call(self, endpoint: EndpointDefinition, request: TransportRequest) -> TransportResponse:
        self.calls.append(request)

        # Simulate latency if configured
        if self.delay_ms > 0:
            await asyncio.sleep(self.delay_ms / 1000.0)

        if self.mode == "timeout":
            logger.info(f"SimulatedTransport: Simulating timeout for {endpoint.id}")
            raise TransportError("timeout", "Connection timeout", retryable=True)

        if self.mode == "failure" or self.call_count <= self.failures_before_success:
            logger.info(f"SimulatedTransport: Simulating {self.error_classification} for {endpoint.id}")
            raise TransportError(self.error_classification, "Simulated failure")

        if self.responder is not None:
            data = self.responder(endpoint, request)
        elif self.response_data is not None:
            data = self.response_data
        else:
            data = {"success": True, "endpoint": endpoint.id, "received": request.body}

        return TransportResponse(status_code=self.status_code, data=data, latency_ms=self.delay_ms)

    async def aclose(self) -> None:
        self.closed = True
