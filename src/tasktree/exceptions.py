"""
Error taxonomy for the Task Tree backend.

Every failure surfaced to a client is one of these exceptions. Each carries
the HTTP status it maps to, so the API layer can render any of them with a
single exception handler.
"""

from typing import Any, Dict, Optional


class TaskTreeError(Exception):
    """Base exception for all Task Tree errors."""

    status_code: int = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to the standard error envelope."""
        return {
            "success": False,
            "error": self.message,
            "code": self.status_code,
            "details": self.details or None,
        }


class UnauthorizedError(TaskTreeError):
    """Missing, invalid or expired session."""

    status_code = 401


class NotFoundError(TaskTreeError):
    """Resource absent or not owned by the caller."""

    status_code = 404


class BadRequestError(TaskTreeError):
    """Input accepted by the schema but rejected by a business rule."""

    status_code = 400


class UnprocessableError(TaskTreeError):
    """Input failed structural validation."""

    status_code = 422


class InternalError(TaskTreeError):
    """Storage failure or broken invariant."""

    status_code = 500
