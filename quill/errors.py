"""Error taxonomy for the Quill retrieval subsystem.

Every error carries a ``kind`` string that the REST layer returns verbatim
in ``{"error": {"kind": ..., "message": ...}}`` bodies.
"""

from typing import Any, Dict, Optional


class QuillError(Exception):
    """Base class for all Quill errors."""

    kind = "error"
    retryable = False

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "message": self.message}


class ConfigurationError(QuillError):
    """Fatal setup problem (dimension mismatch, subsystem disabled, bad settings)."""

    kind = "configuration_error"


class ExternalServiceError(QuillError):
    """An external call (embedding API, answer provider) failed."""

    kind = "external_service_error"

    def __init__(self, message: str, retryable: bool = True):
        super().__init__(message)
        self.retryable = retryable


class RateLimitExceeded(ExternalServiceError):
    """The outbound rate limiter could not grant a call within its wait bound."""

    kind = "rate_limited"


class NotFoundError(QuillError):
    kind = "not_found"


class ValidationError(QuillError):
    """Rejected input. ``code`` narrows the reason (e.g. ``invalid_type``)."""

    kind = "validation_error"

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.code = code

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        if self.code:
            data["code"] = self.code
        return data


class PartialFailure(QuillError):
    """Some items of a batch operation failed; ``failures`` maps item -> reason."""

    kind = "partial_failure"

    def __init__(self, message: str, failures: Optional[Dict[str, str]] = None):
        super().__init__(message)
        self.failures = dict(failures or {})

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["failures"] = self.failures
        return data
