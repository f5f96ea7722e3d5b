"""Error types raised synchronously by dispatch and job reports."""
from __future__ import annotations

__all__ = [
    "HubError",
    "ValidationError",
    "CapabilityUnavailableError",
    "AgentSpawnError",
]


class HubError(RuntimeError):
    """Base class for errors surfaced to API callers."""


class ValidationError(HubError):
    """Raised when a dispatch or job report is missing or has bad fields."""


class CapabilityUnavailableError(HubError):
    """Raised when the agent CLI was not found on this host."""


class AgentSpawnError(HubError):
    """Raised when the OS refuses to start the agent process."""
