"""Domain error taxonomy.

Every error is an ``HTTPException`` so services can raise them directly and
FastAPI renders ``{"detail": ...}`` with the matching status code.
"""

import uuid

from fastapi import HTTPException


class MarketplaceError(HTTPException):
    status_code: int = 400

    def __init__(self, detail: str) -> None:
        super().__init__(status_code=self.status_code, detail=detail)


class NotFound(MarketplaceError):
    """The referenced entity does not exist."""

    status_code = 404


class AuthorizationError(MarketplaceError):
    """Caller lacks the required role or is not a participant."""

    status_code = 403


class StateError(MarketplaceError):
    """Operation is invalid for the current lifecycle state."""

    status_code = 409


class ValidationError(MarketplaceError):
    """Malformed or out-of-range input."""

    status_code = 422


class ExternalServiceError(MarketplaceError):
    """Payment processor call failed or a webhook signature was invalid."""

    status_code = 502

    def __init__(self, detail: str, retryable: bool = False) -> None:
        super().__init__(detail)
        self.retryable = retryable


class ConsistencyError(MarketplaceError):
    """A local write failed after the processor already moved money.

    A reconciliation record has been written; ``reconciliation_id`` points at it.
    """

    status_code = 500

    def __init__(self, detail: str, reconciliation_id: uuid.UUID | None = None) -> None:
        super().__init__(detail)
        self.reconciliation_id = reconciliation_id
