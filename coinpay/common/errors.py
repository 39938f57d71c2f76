"""Typed error hierarchy shared by the payments core and its HTTP surface.

Every error carries a stable `code` and an HTTP status. User-facing messages
never include internal details; `to_response()` is the only envelope handed to
clients.
"""


class CoinpayError(Exception):
    """Base error for all expected failure modes."""

    code = "INTERNAL_ERROR"
    http_status = 500

    def __init__(self, message: str = "An unexpected error occurred") -> None:
        super().__init__(message)
        self.message = message

    def to_response(self) -> dict:
        return {"success": False, "error": {"code": self.code, "message": self.message}}


class ValidationError(CoinpayError):
    """Missing or malformed input that the caller can correct."""

    code = "VALIDATION_ERROR"
    http_status = 400


class NotFoundError(CoinpayError):
    code = "NOT_FOUND"
    http_status = 404


class ProductNotFoundError(NotFoundError):
    code = "PRODUCT_NOT_FOUND"

    def __init__(self, message: str = "Product not found") -> None:
        super().__init__(message)


class OrderNotFoundError(NotFoundError):
    code = "ORDER_NOT_FOUND"

    def __init__(self, message: str = "Order not found") -> None:
        super().__init__(message)


class UnauthenticatedError(CoinpayError):
    """Signature did not match; no state was touched."""

    code = "INVALID_SIGNATURE"
    http_status = 400

    def __init__(self, message: str = "Invalid signature") -> None:
        super().__init__(message)


class GatewayError(CoinpayError):
    """Remote gateway call failed; the local order stays pending and retryable."""

    code = "GATEWAY_ERROR"
    http_status = 500

    def __init__(self, message: str = "Failed to create order", order_id: str | None = None) -> None:
        super().__init__(message)
        self.order_id = order_id

    def to_response(self) -> dict:
        """Carry the pending order id so the client can resume instead of re-creating."""

        body = super().to_response()
        if self.order_id:
            body["error"]["orderId"] = self.order_id
        return body


class ConflictError(CoinpayError):
    code = "CONFLICT"
    http_status = 409


class DuplicateOrderError(ConflictError):
    code = "DUPLICATE_ORDER"

    def __init__(self, message: str = "Order already exists") -> None:
        super().__init__(message)


class GatewayOrderAlreadyAttachedError(ConflictError):
    code = "GATEWAY_ORDER_ALREADY_ATTACHED"

    def __init__(self, message: str = "Gateway order already attached") -> None:
        super().__init__(message)
