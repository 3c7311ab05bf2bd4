"""Platform fee calculation.

Pure functions only: no I/O, no clock, no settings. Given the same inputs the
result is always identical, which is what the billing path and the renewal
reminder amounts rely on.

Split model (``split_v1``):
    8% platform fee, 4% added to what the subscriber pays and 4% deducted from
    what the creator receives. Cross-border charges add a 1.5% buffer, split
    evenly. If the fee would not cover the estimated processor cost plus a
    minimum margin, it is raised to that floor (``fee_was_capped``).

Legacy models (subscriptions created before the split model keep them):
    ``absorb``              8% deducted from the creator.
    ``pass_to_subscriber``  8% added on top of the base price.
    ``legacy_flat``         purpose-based percentage plus a fixed amount,
                            never more than the base price.
"""
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Tuple


class FeeMode(str, Enum):
    SPLIT = "split"
    ABSORB = "absorb"
    PASS_TO_SUBSCRIBER = "pass_to_subscriber"
    LEGACY_FLAT = "legacy_flat"


SPLIT_FEE_MODEL = "split_v1"
LEGACY_FEE_MODEL = "legacy"

PLATFORM_FEE_RATE = Decimal("0.08")
SPLIT_RATE = Decimal("0.04")
CROSS_BORDER_BUFFER = Decimal("0.015")

# Legacy flat fees by creator purpose: (rate, fixed minor units)
LEGACY_FLAT_FEES: Dict[str, Tuple[Decimal, int]] = {
    "service": (Decimal("0.08"), 30),
    "personal": (Decimal("0.10"), 30),
}

# Conservative processor cost estimates: (percent rate, fixed minor units)
PROCESSOR_FEES: Dict[str, Tuple[Decimal, int]] = {
    "USD": (Decimal("0.029"), 30),
    "EUR": (Decimal("0.029"), 25),
    "GBP": (Decimal("0.029"), 20),
    "CAD": (Decimal("0.029"), 30),
    "AUD": (Decimal("0.029"), 30),
    "ZAR": (Decimal("0.029"), 500),
    "KES": (Decimal("0.015"), 5000),
    "NGN": (Decimal("0.015"), 10000),
    "GHS": (Decimal("0.019"), 0),
}
DEFAULT_PROCESSOR_FEE = (Decimal("0.029"), 30)

MIN_MARGIN_CENTS: Dict[str, int] = {
    "USD": 25,
    "EUR": 25,
    "GBP": 20,
    "CAD": 35,
    "AUD": 35,
    "ZAR": 500,
    "KES": 2500,
    "NGN": 25000,
    "GHS": 250,
}
DEFAULT_MIN_MARGIN = 25

# Share of a processor-buffer deficit charged to the subscriber, in tenths.
SUBSCRIBER_DEFICIT_TENTHS = 6


@dataclass(frozen=True)
class FeeBreakdown:
    base_cents: int
    gross_cents: int
    fee_cents: int
    net_cents: int
    subscriber_fee_cents: int
    creator_fee_cents: int
    effective_rate: float
    fee_model: str
    fee_mode: FeeMode
    purpose_type: str
    currency: str
    fee_was_capped: bool
    estimated_processor_fee_cents: int
    estimated_margin_cents: int

    def as_dict(self) -> Dict[str, Any]:
        return {
            "baseCents": self.base_cents,
            "grossCents": self.gross_cents,
            "feeCents": self.fee_cents,
            "netCents": self.net_cents,
            "subscriberFeeCents": self.subscriber_fee_cents,
            "creatorFeeCents": self.creator_fee_cents,
            "effectiveRate": self.effective_rate,
            "feeModel": self.fee_model,
            "feeMode": self.fee_mode.value,
            "currency": self.currency,
            "feeWasCapped": self.fee_was_capped,
        }


def _round(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _purpose_type(category: Optional[str]) -> str:
    return "service" if (category or "").lower() == "service" else "personal"


def estimate_processor_fee(gross_cents: int, currency: str) -> int:
    rate, fixed = PROCESSOR_FEES.get(currency.upper(), DEFAULT_PROCESSOR_FEE)
    return _round(Decimal(gross_cents) * rate) + fixed


def _zero(currency: str, fee_mode: FeeMode, purpose_type: str) -> FeeBreakdown:
    return FeeBreakdown(
        base_cents=0,
        gross_cents=0,
        fee_cents=0,
        net_cents=0,
        subscriber_fee_cents=0,
        creator_fee_cents=0,
        effective_rate=0.0,
        fee_model=SPLIT_FEE_MODEL if fee_mode == FeeMode.SPLIT else LEGACY_FEE_MODEL,
        fee_mode=fee_mode,
        purpose_type=purpose_type,
        currency=currency,
        fee_was_capped=False,
        estimated_processor_fee_cents=0,
        estimated_margin_cents=0,
    )


def _split_fee(amount: int, currency: str, purpose_type: str, is_cross_border: bool) -> FeeBreakdown:
    rate = SPLIT_RATE
    if is_cross_border:
        rate += CROSS_BORDER_BUFFER / 2

    subscriber_fee = _round(Decimal(amount) * rate)
    creator_fee = _round(Decimal(amount) * rate)
    total_fee = subscriber_fee + creator_fee
    gross = amount + subscriber_fee

    processor_fee = estimate_processor_fee(gross, currency)
    min_platform_fee = processor_fee + MIN_MARGIN_CENTS.get(currency, DEFAULT_MIN_MARGIN)

    capped = False
    if total_fee < min_platform_fee:
        capped = True
        deficit = min_platform_fee - total_fee
        subscriber_extra = -(-deficit * SUBSCRIBER_DEFICIT_TENTHS // 10)
        subscriber_fee += subscriber_extra
        creator_fee += deficit - subscriber_extra
        total_fee = subscriber_fee + creator_fee
        gross = amount + subscriber_fee

    return FeeBreakdown(
        base_cents=amount,
        gross_cents=gross,
        fee_cents=total_fee,
        net_cents=amount - creator_fee,
        subscriber_fee_cents=subscriber_fee,
        creator_fee_cents=creator_fee,
        effective_rate=subscriber_fee / amount,
        fee_model=SPLIT_FEE_MODEL,
        fee_mode=FeeMode.SPLIT,
        purpose_type=purpose_type,
        currency=currency,
        fee_was_capped=capped,
        estimated_processor_fee_cents=processor_fee,
        estimated_margin_cents=total_fee - processor_fee,
    )


def _percentage_fee(amount: int, currency: str, purpose_type: str, fee_mode: FeeMode, is_cross_border: bool) -> FeeBreakdown:
    rate = PLATFORM_FEE_RATE
    if is_cross_border:
        rate += CROSS_BORDER_BUFFER
    fee = _round(Decimal(amount) * rate)

    if fee_mode == FeeMode.ABSORB:
        subscriber_fee, creator_fee = 0, fee
    else:
        subscriber_fee, creator_fee = fee, 0
    gross = amount + subscriber_fee
    processor_fee = estimate_processor_fee(gross, currency)

    return FeeBreakdown(
        base_cents=amount,
        gross_cents=gross,
        fee_cents=fee,
        net_cents=amount - creator_fee,
        subscriber_fee_cents=subscriber_fee,
        creator_fee_cents=creator_fee,
        effective_rate=float(rate),
        fee_model=LEGACY_FEE_MODEL,
        fee_mode=fee_mode,
        purpose_type=purpose_type,
        currency=currency,
        fee_was_capped=False,
        estimated_processor_fee_cents=processor_fee,
        estimated_margin_cents=fee - processor_fee,
    )


def _legacy_flat_fee(amount: int, currency: str, purpose_type: str) -> FeeBreakdown:
    rate, fixed = LEGACY_FLAT_FEES[purpose_type]
    fee = _round(Decimal(amount) * rate) + fixed
    capped = fee > amount
    if capped:
        fee = amount
    processor_fee = estimate_processor_fee(amount, currency)
    return FeeBreakdown(
        base_cents=amount,
        gross_cents=amount,
        fee_cents=fee,
        net_cents=amount - fee,
        subscriber_fee_cents=0,
        creator_fee_cents=fee,
        effective_rate=fee / amount,
        fee_model=LEGACY_FEE_MODEL,
        fee_mode=FeeMode.LEGACY_FLAT,
        purpose_type=purpose_type,
        currency=currency,
        fee_was_capped=capped,
        estimated_processor_fee_cents=processor_fee,
        estimated_margin_cents=fee - processor_fee,
    )


def compute_fee(
    base_amount_cents: int,
    currency: str,
    creator_category: Optional[str] = None,
    fee_mode: FeeMode | str = FeeMode.SPLIT,
    is_cross_border: bool = False,
) -> FeeBreakdown:
    amount = int(base_amount_cents)
    if amount < 0:
        raise ValueError("Amount cannot be negative")
    mode = FeeMode(fee_mode)
    cur = (currency or "").upper()
    purpose_type = _purpose_type(creator_category)

    if amount == 0:
        return _zero(cur, mode, purpose_type)
    if mode == FeeMode.SPLIT:
        return _split_fee(amount, cur, purpose_type, is_cross_border)
    if mode == FeeMode.LEGACY_FLAT:
        return _legacy_flat_fee(amount, cur, purpose_type)
    return _percentage_fee(amount, cur, purpose_type, mode, is_cross_border)


def resolve_fee_mode(subscription: Mapping[str, Any]) -> FeeMode:
    """Fee mode locked on the subscription at checkout."""
    if subscription.get("fee_model") == SPLIT_FEE_MODEL:
        return FeeMode.SPLIT
    mode = subscription.get("fee_mode")
    if mode == FeeMode.PASS_TO_SUBSCRIBER.value:
        return FeeMode.PASS_TO_SUBSCRIBER
    if mode == FeeMode.ABSORB.value:
        return FeeMode.ABSORB
    return FeeMode.LEGACY_FLAT


def requires_manual_payout(subscription: Mapping[str, Any]) -> bool:
    # Legacy subscriptions charge with a subaccount and the processor splits
    # the settlement itself; split_v1 settles to the platform balance.
    return subscription.get("fee_model") == SPLIT_FEE_MODEL


def fee_for_subscription(subscription: Mapping[str, Any], creator_category: Optional[str] = None) -> FeeBreakdown:
    return compute_fee(
        int(subscription.get("amount") or 0),
        str(subscription.get("currency") or "USD"),
        creator_category or subscription.get("creator_purpose"),
        resolve_fee_mode(subscription),
        bool(subscription.get("is_cross_border")),
    )


def subscriber_charge_amount(subscription: Mapping[str, Any]) -> int:
    return fee_for_subscription(subscription).gross_cents


def format_rate(rate: float) -> str:
    return f"{rate * 100:.1f}%"


def fee_preview(amount_cents: int, currency: str, creator_category: Optional[str] = None) -> Dict[str, Any]:
    calc = compute_fee(amount_cents, currency, creator_category, FeeMode.SPLIT)
    return {
        "creatorReceives": calc.net_cents,
        "subscriberPays": calc.gross_cents,
        "serviceFee": calc.fee_cents,
        "subscriberFee": calc.subscriber_fee_cents,
        "creatorFee": calc.creator_fee_cents,
        "effectiveRate": format_rate(calc.effective_rate),
        "feeMode": calc.fee_mode.value,
        "feeWasCapped": calc.fee_was_capped,
    }
