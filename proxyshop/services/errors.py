"""
Business error taxonomy. Every error carries a stable `code` that workers and
the presentation layer map to user-facing text.
"""


class ShopError(Exception):
    code = "shop_error"

    def __init__(self, message: str = "", **context) -> None:
        super().__init__(message or self.code)
        self.context = context


class InsufficientFunds(ShopError):
    code = "insufficient_funds"


class PriceUnavailable(ShopError):
    code = "price_unavailable"


class ProvisioningFailed(ShopError):
    code = "provisioning_failed"


class CredentialsNotFound(ShopError):
    code = "credentials_not_found"


class AlreadyClaimed(ShopError):
    """Internal: a unit key is owned by somebody else. Never shown to users."""

    code = "already_claimed"


class PaymentLookupFailed(ShopError):
    code = "payment_lookup_failed"


class InvoiceExpired(ShopError):
    code = "invoice_expired"


class IdentifierUnavailable(ShopError):
    code = "identifier_unavailable"


class ClaimNotFound(ShopError):
    code = "claim_not_found"


class InvalidPurchaseRequest(ShopError):
    code = "invalid_purchase_request"


class InvalidDepositAmount(ShopError):
    code = "invalid_deposit_amount"


class PaymentProviderError(ShopError):
    code = "payment_provider_error"
