# Overview: Exception taxonomy shared by services, routes, and CLI commands.

"""
Domain errors.

Routes map these to HTTP status codes (see HTTP_STATUS_BY_ERROR). The
fulfillment pipeline catches supplier and stock errors per item and records
them; only wallet and not-found errors stop an operation outright.
"""


class DigicardsError(Exception):
    """Base class for all domain errors."""
    pass


class InsufficientStockError(DigicardsError):
    """Raised when local stock cannot cover a reservation. Nothing is reserved."""

    def __init__(self, available: int, requested: int):
        self.available = available
        self.requested = requested
        super().__init__(f"Insufficient inventory: {available} available, {requested} requested")


class SupplierError(DigicardsError):
    """Base class for supplier-side failures. Recorded per item."""

    def __init__(self, message: str, *, status_code: int | None = None, detail=None):
        super().__init__(message)
        self.status_code = status_code
        self.detail = detail
        self.suggested_code: str | None = None


class SupplierValidationError(SupplierError):
    """Supplier rejected the request (400/404/422 or "validation failed")."""
    pass


class SupplierUnreachableError(SupplierError):
    """Transport error, timeout, or unexpected supplier status."""
    pass


class NoResolvableSupplierError(SupplierError):
    pass


class MissingProductCodeError(SupplierError):
    pass


class SupplierConfigurationError(SupplierError):
    """Supplier hub credentials are not configured."""
    pass


class InsufficientWalletBalanceError(DigicardsError):
    def __init__(self, balance_cents: int, required_cents: int):
        self.balance_cents = balance_cents
        self.required_cents = required_cents
        super().__init__("Insufficient wallet balance to reveal these codes")


class WalletNotFoundError(DigicardsError):
    pass


class OrderNotFoundError(DigicardsError):
    pass


class ProductNotFoundError(DigicardsError):
    pass


class CardNotFoundError(DigicardsError):
    pass


class InvalidCardStateError(DigicardsError):
    pass


class CardOwnershipConflictError(InvalidCardStateError):
    """A card code already belongs to a different customer."""

    def __init__(self, card_code: str, current_owner_id: str):
        self.card_code = card_code
        self.current_owner_id = current_owner_id
        super().__init__(f"Card {card_code} is already owned by another customer")


HTTP_STATUS_BY_ERROR = (
    (InsufficientWalletBalanceError, 402),
    (WalletNotFoundError, 404),
    (OrderNotFoundError, 404),
    (ProductNotFoundError, 404),
    (CardNotFoundError, 404),
    (DigicardsError, 400),
)


def http_status_for(exc: Exception) -> int:
    for exc_type, status in HTTP_STATUS_BY_ERROR:
        if isinstance(exc, exc_type):
            return status
    return 500
