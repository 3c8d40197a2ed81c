"""
HTTP transport adapter over httpx.

One pooled AsyncClient serves every instance; the instance's base URL is
joined with the endpoint path per request. Library failures are reported
as connectors.errors.TransportError with a classification the retry
policy understands:

- timeout: httpx.TimeoutException or HTTP 408
- network_error: any other httpx.TransportError (connect, read, protocol)
- rate_limited: HTTP 429
- server_error: HTTP 5xx
- client_error: other HTTP 4xx
"""

import logging
import time
from typing import Optional

import httpx

from connectors.definitions import EndpointDefinition
from connectors.errors import TransportError
from connectors.ports import Transport, TransportRequest, TransportResponse


logger = logging.getLogger(__name__)


def classify_status(status_code: int) -> Optional[str]:
    """Error classification for an HTTP status, or None for success."""
    if status_code < 400:
        return None
    if status_code == 408:
        return "timeout"
    if status_code == 429:
        return "rate_limited"
    if status_code >= 500:
        return "server_error"
    return "client_error"


class HttpTransport(Transport):
    """
    Transport that performs real HTTP calls.

    Usage:
        transport = HttpTransport(max_connections=100)
        response = await transport.call(endpoint, request)
        await transport.aclose()

    Tests pass `transport=httpx.MockTransport(handler)` to stub the network.
    """

    def __init__(
        self,
        max_connections: int = 100,
        client: Optional[httpx.AsyncClient] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            limits=httpx.Limits(max_connections=max_connections),
            transport=transport,
        )

    async def call(self, endpoint: EndpointDefinition, request: TransportRequest) -> TransportResponse:
        if not request.base_url:
            raise TransportError(
                "configuration_error",
                f"No base URL configured for endpoint {endpoint.id}",
            )

        url = request.base_url.rstrip("/") + "/" + request.path.lstrip("/")
        headers = dict(request.headers)
        if request.body is not None:
            content_type = endpoint.request_body.content_type if endpoint.request_body else "application/json"
            headers.setdefault("Content-Type", content_type)

        start_time = time.perf_counter()
        try:
            response = await self._client.request(
                method=request.method,
                url=url,
                params=request.params or None,
                json=request.body if request.body is not None and not isinstance(request.body, (str, bytes)) else None,
                content=request.body if isinstance(request.body, (str, bytes)) else None,
                headers=headers,
                timeout=request.timeout,
            )
        except httpx.TimeoutException as e:
            raise TransportError("timeout", f"{request.method} {url} timed out: {e}", retryable=True)
        except httpx.TransportError as e:
            raise TransportError("network_error", f"{request.method} {url} failed: {e}", retryable=True)

        latency_ms = (time.perf_counter() - start_time) * 1000
        data = self._parse_body(response)

        classification = classify_status(response.status_code)
        if classification is not None:
            logger.info(
                f"{request.method} {url} returned {response.status_code}",
                extra={"endpoint_id": endpoint.id, "error_type": classification},
            )
            raise TransportError(
                classification,
                f"{request.method} {url} returned HTTP {response.status_code}",
                status_code=response.status_code,
                retryable=classification in ("timeout", "rate_limited", "server_error"),
            )

        return TransportResponse(
            status_code=response.status_code,
            data=data,
            headers=dict(response.headers),
            latency_ms=latency_ms,
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    @staticmethod
    def _parse_body(response: httpx.Response):
        if not response.content:
            return None
        if "json" in response.headers.get("content-type", ""):
            try:
                return response.json()
            except ValueError:
                logger.debug("Response declared JSON but could not be parsed", exc_info=True)
        return response.text
