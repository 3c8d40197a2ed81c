"""
Collaborator ports consumed by the connector engine.

Following hexagonal architecture, the engine depends only on these
interfaces; adapters live under `infrastructure/` (AES vault, httpx
transport) and tests substitute in-memory fakes.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional

from .definitions import EndpointDefinition


class CredentialVault(ABC):
    """
    Opaque encrypt/decrypt capability for instance credentials.

    Implementations must guarantee `decrypt(encrypt(x)) == x` and that the
    ciphertext never equals the plaintext.

    Attributes:
        passthrough_types: Non-string credential value types this vault
            declares safe to store unencrypted. Empty by default, which
            makes the instance manager reject non-string credentials.
    """

    passthrough_types: tuple[type, ...] = ()

    @abstractmethod
    def encrypt(self, plaintext: str) -> str:
        pass

    @abstractmethod
    def decrypt(self, ciphertext: str) -> str:
        pass


@dataclass
class TransportRequest:
    """
    Everything a transport needs for one attempt.

    Attributes:
        method: HTTP method from the endpoint definition
        path: Endpoint path with `{param}` placeholders already filled
        params: Query parameters
        body: Request body (JSON-serializable) or None
        headers: Headers, including authentication built from decrypted credentials
        base_url: Instance-specific base URL, if configured
        timeout: Per-attempt timeout in seconds
    """
    method: str
    path: str
    params: dict[str, Any] = field(default_factory=dict)
    body: Any = None
    headers: dict[str, str] = field(default_factory=dict, repr=False)
    base_url: Optional[str] = None
    timeout: Optional[float] = None


@dataclass
class TransportResponse:
    status_code: int
    data: Any = None
    headers: dict[str, str] = field(default_factory=dict)
    latency_ms: float = 0.0

    def to_record(self) -> dict[str, Any]:
        """Shape handed to outbound transformations."""
        return {"status": self.status_code, "data": self.data}


class Transport(ABC):
    """
    Executes one call against an external system.

    Implementations raise connectors.errors.TransportError with a
    classification ('timeout', 'network_error', 'server_error', ...) on
    failure; they never retry on their own.
    """

    @abstractmethod
    async def call(self, endpoint: EndpointDefinition, request: TransportRequest) -> TransportResponse:
        pass

    async def aclose(self) -> None:
        """Release pooled resources. Default: nothing to release."""
        return None
