"""Infrastructure transport adapters."""

from .http_transport import HttpTransport, classify_status
from .simulated_transport import SimulatedTransport

__all__ = [
    "HttpTransport",
    "SimulatedTransport",
    "classify_status",
]
