"""
Error taxonomy shared by the reconciliation engine, the payment manager and
the stores. The HTTP layer maps each class to a status code in main.py.
"""
from typing import Optional


class OrderServiceError(Exception):
    """Base class for every error raised by the service core."""


class ValidationError(OrderServiceError):
    """Input rejected before any write happened."""


class StoreError(OrderServiceError):
    """A single store operation failed; safe to retry after re-reading."""

    def __init__(self, message: str, order_id: Optional[str] = None):
        super().__init__(message)
        self.order_id = order_id


class ProviderError(OrderServiceError):
    """The payment provider was unreachable or answered with garbage."""


class ConflictError(OrderServiceError):
    """A uniqueness guard fired (duplicate order code or pending session)."""


class NotFoundError(OrderServiceError):
    pass
