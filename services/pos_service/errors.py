class CheckoutError(Exception):
    """Base class for every error the POS service reports to its caller."""


class ItemNotFound(CheckoutError):
    """The catalog has no active service/product with the requested id."""

    def __init__(self, item_kind: str, item_id: int):
        super().__init__(f"{item_kind.capitalize()} {item_id} not found")
        self.item_kind = item_kind
        self.item_id = item_id


class StaffNotFound(CheckoutError):
    """No active staff member with the requested id."""


class CustomerNotFound(CheckoutError):
    """No registered client with the requested id."""


class TransactionNotFound(CheckoutError):
    """No POS transaction with the requested id."""


class EmptyCartError(CheckoutError):
    """Checkout was submitted with no lines in the cart."""


class StaffRequiredError(CheckoutError):
    """Checkout was submitted without a staff member selected."""


class CheckoutInProgressError(CheckoutError):
    """The terminal is already submitting or waiting on a payment."""


class PersistenceError(CheckoutError):
    """The transaction store failed while the checkout was being submitted."""


class GatewayError(CheckoutError):
    """The payment gateway refused to start the charge."""


class SessionNotFound(CheckoutError):
    """No open session for the terminal (never opened or expired)."""
