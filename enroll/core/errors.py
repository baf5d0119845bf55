"""
Error taxonomy for manifest enrollment operations.

Every failure an operation can produce is one of these classes. The protocol
engine returns them as values; the API layer turns them into a status code
and JSON envelope exactly once.
"""

from typing import Optional


class EnrollError(Exception):
    """Base class for enrollment failures."""

    status_code = 500
    title = "Server error"

    def __init__(self, message: str, log_result: str = "FAILURE", detail: Optional[str] = None):
        super().__init__(message)
        self.message = message
        # Short result code written to the audit sink
        self.log_result = log_result
        # Internal detail, only returned when DEBUG is on
        self.detail = detail

    def to_envelope(self) -> dict:
        """Render the JSON error envelope returned to the caller."""
        return {
            "status": "error",
            "error": self.title,
            "message": self.message,
        }


class ValidationError(EnrollError):
    """Missing or malformed input, self-inclusion or path violation."""

    status_code = 400
    title = "Invalid parameters"


class SecurityError(EnrollError):
    """Identity mismatch, or fetch against a record with no stored identity."""

    status_code = 403
    title = "UUID verification failed"


class NotFoundError(EnrollError):
    """Operation on a record that does not exist."""

    status_code = 404
    title = "Manifest not found"


class ConflictError(EnrollError):
    """Enroll against a record that already exists."""

    status_code = 409
    title = "Manifest already exists"


class ServerError(EnrollError):
    """I/O failure or malformed stored document."""

    status_code = 500
    title = "Server error"
