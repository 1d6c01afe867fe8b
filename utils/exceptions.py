"""
Unified exception hierarchy for Microlearn.

All domain exceptions inherit from MicrolearnError and carry:
- error_code: machine-readable string (e.g. "LESSON_NOT_FOUND")
- status_code: HTTP status code
- message: human-readable description
- context: optional structured metadata dict
"""

from typing import Optional, Dict, Any


class MicrolearnError(Exception):
    """Base exception for all Microlearn domain errors."""

    def __init__(
        self,
        message: str,
        error_code: str = "INTERNAL_ERROR",
        status_code: int = 500,
        context: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.context = context or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.error_code,
            "message": self.message,
            "context": self.context,
        }


class ValidationError(MicrolearnError):
    """400-level validation / bad-request errors."""

    def __init__(
        self,
        message: str,
        error_code: str = "INVALID_REQUEST",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, error_code=error_code, status_code=400, context=context)


class AuthenticationError(MicrolearnError):
    """401 errors: no user identity on the request."""

    def __init__(self, message: str = "Authentication required", context: Optional[Dict[str, Any]] = None):
        super().__init__(message, error_code="UNAUTHENTICATED", status_code=401, context=context)


class OwnershipError(MicrolearnError):
    """403 errors: the entity exists but belongs to another user."""

    def __init__(
        self,
        message: str = "Access denied",
        error_code: str = "ACCESS_DENIED",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, error_code=error_code, status_code=403, context=context)


class NotFoundError(MicrolearnError):
    """404 resource-not-found errors."""

    def __init__(
        self,
        message: str,
        error_code: str = "NOT_FOUND",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, error_code=error_code, status_code=404, context=context)


class GenerationError(MicrolearnError):
    """Provider failures: the model call failed, timed out or returned unusable output."""

    def __init__(
        self,
        message: str,
        error_code: str = "GENERATION_FAILED",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, error_code=error_code, status_code=502, context=context)


class OutlineParseError(GenerationError):
    """The model answered, but not with a usable outline or question. Safe to retry."""

    def __init__(self, message: str = "Could not process the outline response", context: Optional[Dict[str, Any]] = None):
        super().__init__(message, error_code="OUTLINE_UNPROCESSABLE", context=context)


class ResearchError(GenerationError):
    """Deep research call failed or timed out."""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message, error_code="RESEARCH_FAILED", context=context)


class StorageError(MicrolearnError):
    """500-level database / storage failures."""

    def __init__(
        self,
        message: str,
        error_code: str = "STORAGE_ERROR",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, error_code=error_code, status_code=500, context=context)
