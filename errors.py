"""Custom exceptions for the Koseli Mart API."""

from typing import Any, Dict, List, Optional


class KoseliMartError(Exception):
    """Base exception for all storefront errors."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def extra(self) -> Dict[str, Any]:
        """Additional fields rendered next to the message in the JSON body."""
        return {}


class ConfigError(KoseliMartError):
    """Raised at startup when the environment is misconfigured."""


class ValidationError(KoseliMartError):
    """Raised for malformed input the schema layer cannot catch."""


class DuplicateError(KoseliMartError):
    """Raised when a unique field (email, slug) is already taken."""


class EmptyCartError(KoseliMartError):
    """Raised when checking out a cart with no items."""

    def __init__(self):
        super().__init__("Cart is empty")


class UnavailableProductsError(KoseliMartError):
    """Raised when one or more cart lines can no longer be purchased."""

    def __init__(self, items: List[Dict[str, Any]]):
        self.items = items
        super().__init__("Some products are no longer available")

    def extra(self):
        return {"unavailable_products": self.items}


class OrderNotFoundError(KoseliMartError):
    """Raised when an order doesn't exist, isn't the caller's, or was already processed."""

    def __init__(self, message: str = "Order not found"):
        super().__init__(message)


class PaymentNotSucceededError(KoseliMartError):
    """Raised when the gateway reports a payment intent that hasn't succeeded."""

    def __init__(self, status: str):
        self.status = status
        super().__init__("Payment not successful")

    def extra(self):
        return {"status": self.status}


class SignatureVerificationError(KoseliMartError):
    """Raised when a webhook payload fails signature verification."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Webhook Error: {reason}")


class InvalidStatusTransitionError(KoseliMartError):
    """Raised when a status change isn't allowed from the current status."""

    def __init__(self, from_status: str, to_status: str, field: str = "status"):
        self.from_status = from_status
        self.to_status = to_status
        self.field = field
        super().__init__(f"Cannot change {field} from '{from_status}' to '{to_status}'")

    def extra(self):
        return {"current_status": self.from_status}


class OrderNotCancellableError(KoseliMartError):
    """Raised when a user tries to cancel an order past the confirmed stage."""

    def __init__(self, current_status: str):
        self.current_status = current_status
        super().__init__("Order cannot be cancelled in current status")

    def extra(self):
        return {"current_status": self.current_status}


class PaymentRequiredError(KoseliMartError):
    """Raised when an order that is paid online is confirmed before its payment succeeds."""

    def __init__(self, payment_status: str):
        self.payment_status = payment_status
        super().__init__("Order cannot be confirmed before its payment succeeds")

    def extra(self):
        return {"payment_status": self.payment_status}


class ProductNotFoundError(KoseliMartError):
    def __init__(self, product_id: Optional[str] = None):
        self.product_id = product_id
        super().__init__("Product not found")


class ProductUnavailableError(KoseliMartError):
    def __init__(self, product_id: Optional[str] = None):
        self.product_id = product_id
        super().__init__("Product is not available")


class InsufficientStockError(KoseliMartError):
    """Raised when the requested quantity exceeds tracked stock."""

    def __init__(self, available_stock: int, current_quantity: Optional[int] = None):
        self.available_stock = available_stock
        self.current_quantity = current_quantity
        msg = "Insufficient stock"
        if current_quantity is not None:
            msg = "Insufficient stock for requested quantity"
        super().__init__(msg)

    def extra(self):
        out = {"available_stock": self.available_stock}
        if self.current_quantity is not None:
            out["current_quantity"] = self.current_quantity
        return out


class CartNotFoundError(KoseliMartError):
    def __init__(self):
        super().__init__("Cart not found")


class CartItemNotFoundError(KoseliMartError):
    def __init__(self, product_id: str):
        self.product_id = product_id
        super().__init__("Item not found in cart")


class CategoryNotFoundError(KoseliMartError):
    def __init__(self, category_id: Optional[str] = None):
        self.category_id = category_id
        super().__init__("Category not found")


class UserNotFoundError(KoseliMartError):
    def __init__(self, user_id: Optional[str] = None):
        self.user_id = user_id
        super().__init__("User not found")


ERROR_STATUS_CODES = {
    ValidationError: 400,
    DuplicateError: 400,
    EmptyCartError: 400,
    UnavailableProductsError: 400,
    OrderNotFoundError: 404,
    PaymentNotSucceededError: 400,
    SignatureVerificationError: 400,
    InvalidStatusTransitionError: 400,
    OrderNotCancellableError: 400,
    PaymentRequiredError: 400,
    ProductNotFoundError: 404,
    ProductUnavailableError: 400,
    InsufficientStockError: 400,
    CartNotFoundError: 404,
    CartItemNotFoundError: 404,
    CategoryNotFoundError: 404,
    UserNotFoundError: 404,
}
