"""Models package."""

from .user import User
from .credit_ledger import CreditLedger
from .user_credits import UserCredits
from .billing_transaction import BillingTransaction
from .promo_code import PromoCode, PromoRedemption
