"""Exceptions raised while taking orders and talking to providers."""


class ElektropolisError(Exception):
    """Base exception for all storefront errors."""

    status_code = 500


class CheckoutError(ElektropolisError):
    """A checkout request that cannot be turned into an order."""

    status_code = 400


class EmptyCart(CheckoutError):
    def __init__(self):
        super().__init__("Cart is empty")


class MalformedCart(CheckoutError):
    """Raised when the checkout body or a cart line is not a JSON object."""

    def __init__(self, reason: str = "Invalid checkout request"):
        super().__init__(reason)


class MissingContactInfo(CheckoutError):
    def __init__(self, field: str):
        self.field = field
        super().__init__(f"{field.capitalize()} is required")


class IncompleteAddress(CheckoutError):
    def __init__(self):
        super().__init__("Complete shipping address is required")


class InvalidQuantity(CheckoutError):
    def __init__(self, product_id: str | None):
        self.product_id = product_id
        super().__init__(f"Invalid quantity for product {product_id}")


class ProductUnavailable(CheckoutError):
    """Raised when a cart line references a product that does not exist."""

    def __init__(self, product_id: str | None):
        self.product_id = product_id
        super().__init__(f"Product {product_id} is no longer available")


class ProductInactive(CheckoutError):
    """Raised when the product exists but is not active in the catalog."""

    def __init__(self, product_id: str, title: str):
        self.product_id = product_id
        self.title = title
        super().__init__(f"{title} is not available for purchase")


class InsufficientStock(CheckoutError):
    """Raised when the catalog holds fewer units than the cart asks for."""

    def __init__(self, product_id: str, title: str, requested: int, available: int):
        self.product_id = product_id
        self.title = title
        self.requested = requested
        self.available = available
        super().__init__(
            f"Only {available} of {title} in stock (requested {requested})"
        )


class OrderPersistFailure(ElektropolisError):
    """Raised when the order header or its items could not be stored.

    The message is deliberately generic; details go to the log.
    """

    status_code = 500

    def __init__(self):
        super().__init__("Failed to create order. Please try again.")


class RateLimited(ElektropolisError):
    status_code = 429

    def __init__(self):
        super().__init__("Too many requests. Please wait a moment.")


class PaymentProviderError(ElektropolisError):
    """Raised when the payment provider rejects or fails a request."""

    status_code = 502

    def __init__(self, status: int | None, body: str = ""):
        self.status = status
        self.body = body
        super().__init__(f"Payment provider error: {status}")
