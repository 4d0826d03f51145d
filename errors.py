"""
Service-layer exceptions.

Services raise these; main.py maps them onto HTTP responses. External
dependency failures that are only an optimization (POS push, realtime emit)
are logged where they happen and never reach this layer.
"""

from typing import List, Optional


class ServiceError(Exception):
    """Base class for errors reported to the caller."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationFailed(ServiceError):
    """Raised for bad or missing input. `errors` lists every violated field."""

    status_code = 400

    def __init__(self, message: str = "Validation failed", errors: Optional[List[str]] = None):
        super().__init__(message)
        self.errors = list(errors or [])


class NotFound(ServiceError):
    status_code = 404


class Forbidden(ServiceError):
    status_code = 403


class ExternalServiceError(ServiceError):
    """Raised when a mandatory external dependency fails."""

    status_code = 502

    def __init__(self, service: str, message: str):
        super().__init__(f"{service} error: {message}")
        self.service = service


class CloverError(ExternalServiceError):
    """Non-success response (or no response) from the Clover API."""

    def __init__(self, reason: str, status: Optional[int] = None):
        super().__init__("Clover", reason)
        self.status = status
        self.reason = reason
