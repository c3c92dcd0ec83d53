"""Custom exception hierarchy for ContextVC."""

from enum import Enum
from typing import Optional, Dict, Any


class ErrorCode(str, Enum):
    """Standardized error codes for API responses."""

    # Input errors
    VALIDATION_ERROR = "VALIDATION_ERROR"

    # Lookup errors
    VERSION_NOT_FOUND = "VERSION_NOT_FOUND"
    NO_CURRENT_VERSION = "NO_CURRENT_VERSION"
    NO_VERSION_AT_TIME = "NO_VERSION_AT_TIME"

    # Invariant violations
    CONSISTENCY_VIOLATION = "CONSISTENCY_VIOLATION"

    # Storage errors
    STORE_ERROR = "STORE_ERROR"

    # Generic errors
    INTERNAL_ERROR = "INTERNAL_ERROR"


class ContextVCException(Exception):
    """
    Base exception for all ContextVC errors.

    Provides structured error responses with:
    - Human-readable message
    - Machine-readable error code
    - HTTP status code
    - Optional additional details
    """

    def __init__(
        self,
        message: str,
        error_code: ErrorCode,
        status_code: int = 500,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for JSON response."""
        return {
            "error": self.error_code.value,
            "message": self.message,
            "details": self.details
        }


class ValidationError(ContextVCException):
    """Input rejected before any write."""

    def __init__(self, message: str, field: Optional[str] = None):
        details = {"field": field} if field else {}
        super().__init__(
            message,
            ErrorCode.VALIDATION_ERROR,
            status_code=400,
            details=details
        )


class NotFoundError(ContextVCException):
    """Base for expected "nothing there" outcomes.

    Not a failure: callers decide whether absence is an error.
    """

    def __init__(self, message: str, error_code: ErrorCode, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, error_code, status_code=404, details=details)


class VersionNotFoundError(NotFoundError):
    """Version id does not exist."""

    def __init__(self, version_id: str):
        super().__init__(
            f"Version not found: {version_id}",
            ErrorCode.VERSION_NOT_FOUND,
            details={"version_id": version_id}
        )


class NoCurrentVersionError(NotFoundError):
    """Owner has not committed anything yet."""

    def __init__(self, owner_id: str):
        super().__init__(
            f"No context versions found for owner: {owner_id}",
            ErrorCode.NO_CURRENT_VERSION,
            details={"owner_id": owner_id}
        )


class NoVersionAtTimeError(NotFoundError):
    """Owner has no version created at or before the requested instant."""

    def __init__(self, owner_id: str, timestamp: str):
        super().__init__(
            f"No version for owner {owner_id} at or before {timestamp}",
            ErrorCode.NO_VERSION_AT_TIME,
            details={"owner_id": owner_id, "timestamp": timestamp}
        )


class ConsistencyError(ContextVCException):
    """A stored invariant was observed broken (e.g. two current versions).

    Fatal: never resolved silently by picking one of the candidates.
    """

    def __init__(self, message: str, owner_id: Optional[str] = None, version_ids: Optional[list] = None):
        details: Dict[str, Any] = {}
        if owner_id:
            details["owner_id"] = owner_id
        if version_ids:
            details["version_ids"] = list(version_ids)
        super().__init__(
            message,
            ErrorCode.CONSISTENCY_VIOLATION,
            status_code=500,
            details=details
        )


class StoreError(ContextVCException):
    """Storage operation failed. Not retried by the engine."""

    def __init__(self, message: str, original_error: Optional[Exception] = None):
        details = {}
        if original_error:
            details["original_error"] = str(original_error)

        super().__init__(
            message,
            ErrorCode.STORE_ERROR,
            status_code=503,
            details=details
        )
