"""Domain errors raised by the cart, order and payment services."""
from typing import Optional


class StorefrontError(Exception):
    """Base class for errors that map onto an HTTP response."""

    status_code = 500
    code = "internal_error"
    public_message = "Internal server error"

    def __init__(self, message: str, public_message: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if public_message is not None:
            self.public_message = public_message


class ValidationError(StorefrontError):
    """Missing or malformed input. Nothing has been written."""

    status_code = 400
    code = "validation_error"
    public_message = "Invalid request"

    def __init__(self, field: str, message: Optional[str] = None, public_message: Optional[str] = None):
        super().__init__(message or f"Missing required field: {field}", public_message)
        self.field = field


class NotFoundError(StorefrontError):
    status_code = 404
    code = "not_found"
    public_message = "Not found"

    def __init__(self, entity: str, key: object):
        super().__init__(f"{entity} not found: {key}", f"{entity} not found")
        self.entity = entity
        self.key = key


class ProductNotFoundError(NotFoundError):
    code = "product_not_found"

    def __init__(self, product_id: object):
        super().__init__("Product", product_id)


class AmountMismatchError(StorefrontError):
    """Payment amount differs from the stored order total."""

    status_code = 400
    code = "amount_mismatch"
    public_message = "Amount does not match order total"

    def __init__(self, order_id: str, expected, provided):
        super().__init__(
            f"Amount mismatch for order {order_id}: expected {expected}, got {provided}"
        )
        self.order_id = order_id
        self.expected = expected
        self.provided = provided


class PaymentStateError(StorefrontError):
    status_code = 409
    code = "invalid_payment_state"
    public_message = "Order cannot be paid in its current state"


class InvalidTransitionError(StorefrontError):
    status_code = 409
    code = "invalid_transition"
    public_message = "Status transition not allowed"


class InsufficientStockError(StorefrontError):
    status_code = 409
    code = "insufficient_stock"
    public_message = "Some items are no longer available in the requested quantity"

    def __init__(self, product_id: int, requested: int):
        super().__init__(f"Insufficient stock for product {product_id} (requested {requested})")
        self.product_id = product_id
        self.requested = requested


class GatewayError(StorefrontError):
    """Payment gateway failure. The gateway's own message is shown to the user."""

    status_code = 502
    code = "gateway_error"

    def __init__(self, message: str, status_code: Optional[str] = None):
        super().__init__(message, public_message=message)
        self.gateway_status_code = status_code


class DataStoreError(StorefrontError):
    status_code = 500
    code = "data_store_error"
    public_message = "Internal server error"
