"""
Exception hierarchy for vidchat.

Adapter-level failures derive from ProviderError so the orchestrator can tell
a failover-eligible error from a precondition or policy violation.
"""

from __future__ import annotations


class VidChatError(Exception):
    """Base exception for all vidchat errors."""


class ProviderError(VidChatError):
    """A provider call failed. Eligible for failover."""

    def __init__(self, message: str, provider: str = ""):
        self.provider = provider
        super().__init__(message)


class TransportError(ProviderError):
    """Network, DNS or timeout failure talking to a provider (or the relay)."""


class ApiError(ProviderError):
    """Provider answered with a non-2xx status."""

    def __init__(self, status: int, body: str = "", provider: str = ""):
        self.status = status
        self.body = body
        super().__init__(f"HTTP {status}: {body[:500]}", provider=provider)


class ResponseShapeError(ProviderError):
    """2xx response whose body could not be turned into text."""


class InsufficientFramesError(VidChatError):
    """Frame-based video understanding needs more key frames."""

    def __init__(self, count: int, required: int):
        self.count = count
        self.required = required
        super().__init__(
            f"Video understanding needs at least {required} frames, got {count}"
        )


class ProviderUnavailableError(VidChatError):
    """The requested provider cannot be used (not initialized or disabled)."""

    def __init__(self, provider: str, reason: str = ""):
        self.provider = provider
        msg = f"Provider '{provider}' is unavailable"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class NoProviderAvailableError(VidChatError):
    """Neither provider could be initialized."""


class TurnInProgressError(VidChatError):
    """A new turn was submitted while the previous one is still awaiting a response."""


class TurnCancelledError(VidChatError):
    """The in-flight turn was cancelled before it completed."""
