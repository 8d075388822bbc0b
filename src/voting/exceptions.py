"""
Exceptions for the liquid voting engine.

Every rejected operation is raised as a ``LiquidVotingError`` subclass that
carries an HTTP-like code, a machine readable kind and optional field-level
details, so the transport layer can render a structured error without
knowing about individual failure modes.
"""
from typing import Dict, List, Optional


class LiquidVotingError(Exception):
    """Base exception for all liquid voting errors."""

    kind = "internal_error"

    def __init__(
        self,
        message: str,
        code: int = 500,
        details: Optional[Dict[str, List[str]]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details or {}

    def to_dict(self) -> dict:
        """Convert to dictionary for API responses."""
        return {
            "kind": self.kind,
            "message": self.message,
            "details": self.details,
        }


# ============================================
# 4xx Client Errors
# ============================================

class ValidationError(LiquidVotingError):
    """400 Bad Request - Missing or invalid fields."""

    kind = "validation_error"

    def __init__(
        self,
        message: str = "Invalid request data",
        details: Optional[Dict[str, List[str]]] = None,
    ):
        super().__init__(message, code=400, details=details)


class MissingOrganizationError(ValidationError):
    """400 Bad Request - No organization scope supplied."""

    def __init__(self, message: str = "An organization id is required"):
        super().__init__(message, details={"organization_id": ["can't be blank"]})


class NotFoundError(LiquidVotingError):
    """404 Not Found - Target of a get or delete doesn't exist."""

    kind = "not_found"

    def __init__(self, message: str = "Resource not found"):
        super().__init__(message, code=404)


class VoteNotFoundError(NotFoundError):
    def __init__(self, message: str = "No vote found to delete"):
        super().__init__(message)


class DelegationNotFoundError(NotFoundError):
    def __init__(self, message: str = "No delegation found to delete"):
        super().__init__(message)


class ConflictError(LiquidVotingError):
    """409 Conflict - A vote or delegation already exists for that scope."""

    kind = "conflict"

    def __init__(
        self,
        message: str = "Resource conflict",
        details: Optional[Dict[str, List[str]]] = None,
    ):
        super().__init__(message, code=409, details=details)


class CycleError(LiquidVotingError):
    """422 Unprocessable - The delegation would close a delegation cycle."""

    kind = "cycle"

    def __init__(self, message: str = "Delegation would create a cycle"):
        super().__init__(message, code=422, details={"delegate": ["would create a delegation cycle"]})


class SelfDelegationError(LiquidVotingError):
    """422 Unprocessable - Delegator and delegate are the same participant."""

    kind = "self_delegation"

    def __init__(self, message: str = "A participant cannot delegate to themselves"):
        super().__init__(message, code=422, details={"delegate": ["must differ from delegator"]})


# ============================================
# 5xx Server Errors
# ============================================

class StoreUnavailableError(LiquidVotingError):
    """503 Service Unavailable - The entity store could not be reached."""

    kind = "store_unavailable"

    def __init__(self, message: str = "Entity store unavailable. Please try again."):
        super().__init__(message, code=503)


class InternalError(LiquidVotingError):
    """500 Internal Server Error - Unexpected error."""

    def __init__(self, message: str = "An unexpected error occurred."):
        super().__init__(message, code=500)


def classify_exception(error: Exception) -> LiquidVotingError:
    """
    Convert a generic exception to a LiquidVotingError.

    This helps normalize error handling across the store backends.
    """
    if isinstance(error, LiquidVotingError):
        return error

    error_type = type(error).__name__
    error_msg = str(error)

    if 'connection' in error_type.lower() or 'connection' in error_msg.lower():
        return StoreUnavailableError(f"Connection error: {error_msg}")

    if error_type in ('OperationalError', 'InterfaceError'):
        return StoreUnavailableError(f"Database error: {error_msg}")

    return InternalError(f"Unexpected error: {error_msg}")
