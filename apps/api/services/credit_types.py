"""Result contracts returned by the credit services."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Literal, Optional


SubscriptionType = Literal["none", "starter", "pro"]


@dataclass(frozen=True)
class GrantResult:
    success: bool
    new_balance: int
    idempotent: bool = False
    error: Optional[str] = None


@dataclass(frozen=True)
class ConsumeResult:
    success: bool
    remaining_balance: int
    consumed: int
    idempotent: bool = False
    error: Optional[str] = None


@dataclass(frozen=True)
class RedeemResult:
    success: bool
    credits_granted: int
    new_balance: int
    subscription_granted: Optional[SubscriptionType] = None
    subscription_days: Optional[int] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class ExpiringEntry:
    id: str
    delta: int
    reason: str
    expires_at: datetime


@dataclass(frozen=True)
class BalanceDetails:
    total_balance: int
    unexpired_balance: int
    expired_credits: int
    pending_expiry: List[ExpiringEntry] = field(default_factory=list)


@dataclass(frozen=True)
class FreeScanStatus:
    can_use: bool
    reason: str
    days_until_reset: Optional[int] = None


@dataclass(frozen=True)
class FreeScanResult:
    success: bool
    error: Optional[str] = None


@dataclass(frozen=True)
class ScanCharge:
    success: bool
    used_free_scan: bool
    consumed: int
    remaining_balance: int
    idempotent: bool = False
    error: Optional[str] = None


@dataclass(frozen=True)
class WebhookResult:
    processed: bool
    already_processed: bool
    user_id: Optional[str] = None
    credits_granted: int = 0
    new_balance: int = 0
    error: Optional[str] = None
