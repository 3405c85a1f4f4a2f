"""Exception hierarchy for Faceoff.

One exception per failure mode so callers can tell a missing selection
from a missing credential from a provider failure.
"""

from typing import Optional


class FaceoffError(Exception):
    """Base exception for all Faceoff errors."""


class ValidationError(FaceoffError):
    """A request was rejected before any network call (e.g. no model selected)."""


class CredentialError(FaceoffError):
    """A required credential is missing."""

    def __init__(self, provider: str = "openrouter") -> None:
        self.provider = provider
        super().__init__(
            f"No API key configured for {provider}. "
            "Add your API key in Settings."
        )


class RestrictionError(FaceoffError):
    """Free mode attempted to use a paid model."""

    def __init__(self, model_id: str) -> None:
        self.model_id = model_id
        super().__init__(
            f"Model {model_id} requires an API key. "
            "Add your OpenRouter API key in Settings to use paid models."
        )


class UpstreamError(FaceoffError):
    """The provider answered with a non-success status."""

    def __init__(self, status: int, body: str = "") -> None:
        self.status = status
        self.body = body
        super().__init__(f"API error: {status} - {body}")


class DecodeError(FaceoffError):
    """A single stream payload could not be decoded."""

    def __init__(self, payload: str, reason: str) -> None:
        self.payload = payload
        self.reason = reason
        super().__init__(f"Malformed stream payload ({reason}): {payload[:80]}")


class PersistenceError(FaceoffError):
    """A storage operation failed."""

    def __init__(self, operation: str, cause: Optional[BaseException] = None) -> None:
        self.operation = operation
        self.cause = cause
        message = f"Storage operation '{operation}' failed"
        if cause is not None:
            message += f": {cause}"
        super().__init__(message)
