"""One-time credit pack catalogue.

Payment events are mapped to credits through this explicit table (by pack key or by
Stripe price id), never by inspecting the charged amount.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Literal, Optional

from config import settings


PackKey = Literal["starter", "pro"]


@dataclass(frozen=True)
class CreditPack:
    key: PackKey
    name: str
    price_gbp: int
    credits: int
    pence_per_credit: int
    recommended_for: str

    @property
    def reason(self) -> str:
        return f"purchase:{self.key}_{self.credits}"


CREDIT_PACKS: Dict[str, CreditPack] = {
    "starter": CreditPack(
        key="starter",
        name="Starter Pack",
        price_gbp=29,
        credits=50,
        pence_per_credit=58,
        recommended_for="Perfect for testing and small projects",
    ),
    "pro": CreditPack(
        key="pro",
        name="Pro Pack",
        price_gbp=99,
        credits=250,
        pence_per_credit=40,
        recommended_for="Great for small teams and growing businesses",
    ),
}


def get_pack(key: Optional[str]) -> Optional[CreditPack]:
    return CREDIT_PACKS.get((key or "").strip().lower())


def _price_id_table() -> Dict[str, CreditPack]:
    table = {}
    if settings.STRIPE_PRICE_STARTER:
        table[settings.STRIPE_PRICE_STARTER] = CREDIT_PACKS["starter"]
    if settings.STRIPE_PRICE_PRO:
        table[settings.STRIPE_PRICE_PRO] = CREDIT_PACKS["pro"]
    return table


def pack_for_price_id(price_id: Optional[str]) -> Optional[CreditPack]:
    if not price_id:
        return None
    return _price_id_table().get(price_id)


def list_packs() -> List[Dict[str, object]]:
    return [
        {
            "key": pack.key,
            "name": pack.name,
            "price_gbp": pack.price_gbp,
            "credits": pack.credits,
            "pence_per_credit": pack.pence_per_credit,
            "credits_per_pound": round(pack.credits / pack.price_gbp, 2),
            "recommended_for": pack.recommended_for,
        }
        for pack in CREDIT_PACKS.values()
    ]
