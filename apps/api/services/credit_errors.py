"""Credit engine error taxonomy."""

from __future__ import annotations


class CreditError(RuntimeError):
    """Base class for credit ledger failures."""


class CreditValidationError(CreditError):
    """Request rejected before any write (non-positive amount, missing job id)."""


class UserNotFoundError(CreditError):
    """Credit mutation targeted a user row that does not exist."""


class InsufficientCreditsError(CreditError):
    """Spendable balance is below the required cost."""

    def __init__(self, required: int, available: int):
        self.required = required
        self.available = available
        super().__init__(f"Insufficient credits. Required: {required}, Available: {available}")


class PromoCodeError(CreditError):
    """Promo code cannot be redeemed (not found, inactive, expired, exhausted, reused)."""


class TransientStoreError(CreditError):
    """Lock timeout or serialization conflict that survived the retry budget."""


class PaymentProcessingError(CreditError):
    """Verified payment could not be turned into credits; the provider should redeliver."""
