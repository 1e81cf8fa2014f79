"""Error types surfaced to API callers."""

from __future__ import annotations


class RelayError(Exception):
    """Base error rendered as ``{"error": message}`` with ``status_code``."""

    status_code = 500

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class ValidationFailed(RelayError):
    status_code = 400


class Unauthenticated(RelayError):
    status_code = 401

    def __init__(self, message: str = "Unauthorized") -> None:
        super().__init__(message)


class Forbidden(RelayError):
    status_code = 403


class NotFound(RelayError):
    status_code = 404


class TurnInProgress(RelayError):
    status_code = 409

    def __init__(self, message: str = "A response is already in progress for this conversation") -> None:
        super().__init__(message)


class ConfigurationError(RelayError):
    status_code = 500


class PersistenceError(RelayError):
    """A write the current turn depends on failed."""

    status_code = 500


class ProviderError(RelayError):
    """The LLM provider rejected or broke off the request."""

    status_code = 502
