"""Resonate durable-execution client used for persistent bid jobs."""

from resonate import Context

from .client import ResonateClient
from .exceptions import (
    ResonateClientError,
    ResonateConnectionError,
    ResonatePromiseError,
    ResonateRPCError,
)

__all__ = [
    "Context",
    "ResonateClient",
    "ResonateClientError",
    "ResonateConnectionError",
    "ResonatePromiseError",
    "ResonateRPCError",
]
