"""Exceptions raised by the storefront services.

Every exception carries the HTTP status code the API layer answers with, so
services can raise them without knowing about FastAPI.
"""


class StorefrontError(Exception):
    """Base exception for all storefront errors."""

    status_code = 500

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ValidationError(StorefrontError):
    """Raised when request input is missing or inconsistent."""

    status_code = 400


class InvalidIdError(ValidationError):
    """Raised when a string is not a valid document id."""

    def __init__(self, value: str):
        self.value = value
        super().__init__(f"Invalid id: {value}")


class CouponError(ValidationError):
    """Raised when a coupon cannot be applied."""


class AuthenticationError(StorefrontError):
    """Raised when the request carries no usable credential."""

    status_code = 401


class PermissionDeniedError(StorefrontError):
    """Raised when the caller is authenticated but not allowed."""

    status_code = 403


class NotFoundError(StorefrontError):
    """Raised when a referenced document doesn't exist."""

    status_code = 404


class ConflictError(StorefrontError):
    """Raised when a write conflicts with the current state."""

    status_code = 409


class InsufficientStockError(ConflictError):
    """Raised when a line cannot be reserved from available stock."""

    def __init__(self, product_name: str, size: str | None, available: int = 0):
        self.product_name = product_name
        self.size = size
        self.available = available
        msg = f"Insufficient stock for {product_name}"
        if size:
            msg = f"{msg} (size {size})"
        super().__init__(msg)


class StockConflictError(ConflictError):
    """Raised when a stock update kept losing to concurrent writers."""

    def __init__(self, product_id: str, attempts: int):
        self.product_id = product_id
        self.attempts = attempts
        super().__init__(
            f"Stock for product {product_id} changed concurrently, gave up after {attempts} attempts"
        )


class InvalidTransitionError(ConflictError):
    """Raised when an order status change isn't allowed."""

    def __init__(self, current: str, requested: str):
        self.current = current
        self.requested = requested
        super().__init__(f"Cannot change order status from {current} to {requested}")
