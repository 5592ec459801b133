"""Exceptions shared by the provider clients and the panel flow."""

from __future__ import annotations


class ProviderError(RuntimeError):
    """Raised when an upstream HTTP provider answers with a non-2xx status."""

    def __init__(self, provider: str, status: int | None, detail: str = ""):
        self.provider = provider
        self.status = status
        self.detail = detail[:300]
        message = f"{provider} error (HTTP {status})" if status else f"{provider} error"
        super().__init__(message)


class LookupFailedError(RuntimeError):
    """The show identity lookup raised instead of returning a result."""


class ChatServiceError(RuntimeError):
    """Carries the user-facing message for a failed chat answer."""

    def __init__(self, message: str, *, status: int | None = None):
        self.status = status
        super().__init__(message)


class InvalidTransitionError(RuntimeError):
    def __init__(self, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(f"Invalid init transition {current} -> {target}")
