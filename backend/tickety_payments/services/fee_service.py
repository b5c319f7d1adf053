"""Fee calculation

All amounts are integer cents. The client computes the same breakdown for
display, and the server recomputes it to validate what the client submits,
so these formulas must not drift from the app's copy.

Primary and favor purchases pass Stripe's cost through to the buyer:

    platform = ceil(base * 5%)
    subtotal = base + platform + mint
    total    = ceil((subtotal + 30) / (1 - 2.9%))
    stripe   = total - subtotal

Resale and cash sales take a flat 5% and nothing else.
"""
from dataclasses import dataclass
from typing import Dict

# Rates expressed as integer fractions so no float touches the money path
PLATFORM_FEE_PERCENT = 5                # 5%
STRIPE_FEE_RATE_PER_MILLE = 29          # 2.9%
STRIPE_FEE_FIXED_CENTS = 30
MINT_FEE_CENTS = 0                      # Reserved for NFT minting
RESALE_FEE_PERCENT = 5


def _ceil_div(numerator: int, denominator: int) -> int:
    return -(-numerator // denominator)


@dataclass(frozen=True)
class FeeBreakdown:
    base_cents: int = 0
    platform_fee_cents: int = 0
    mint_fee_cents: int = 0
    stripe_fee_cents: int = 0
    service_fee_cents: int = 0
    total_cents: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "base_cents": self.base_cents,
            "platform_fee_cents": self.platform_fee_cents,
            "mint_fee_cents": self.mint_fee_cents,
            "stripe_fee_cents": self.stripe_fee_cents,
            "service_fee_cents": self.service_fee_cents,
            "total_cents": self.total_cents,
        }


@dataclass(frozen=True)
class FlatFeeBreakdown:
    amount_cents: int
    platform_fee_cents: int
    seller_amount_cents: int


def compute_fees(base_cents: int) -> FeeBreakdown:
    """Compute the buyer-facing fee breakdown for a base price

    Free tickets (base <= 0) carry no fees at all.
    """
    if base_cents <= 0:
        return FeeBreakdown()

    platform_fee = _ceil_div(base_cents * PLATFORM_FEE_PERCENT, 100)
    subtotal = base_cents + platform_fee + MINT_FEE_CENTS
    # Smallest total where total - (2.9% of total + 30) >= subtotal
    total = _ceil_div((subtotal + STRIPE_FEE_FIXED_CENTS) * 1000, 1000 - STRIPE_FEE_RATE_PER_MILLE)
    stripe_fee = total - subtotal

    return FeeBreakdown(
        base_cents=base_cents,
        platform_fee_cents=platform_fee,
        mint_fee_cents=MINT_FEE_CENTS,
        stripe_fee_cents=stripe_fee,
        service_fee_cents=platform_fee + stripe_fee + MINT_FEE_CENTS,
        total_cents=total,
    )


def compute_flat_fee(amount_cents: int, percent: int = RESALE_FEE_PERCENT) -> FlatFeeBreakdown:
    """Flat platform cut (rounded half up) used for resale and cash sales"""
    if amount_cents <= 0:
        return FlatFeeBreakdown(amount_cents=max(amount_cents, 0), platform_fee_cents=0, seller_amount_cents=max(amount_cents, 0))
    fee = (amount_cents * percent + 50) // 100
    return FlatFeeBreakdown(
        amount_cents=amount_cents,
        platform_fee_cents=fee,
        seller_amount_cents=amount_cents - fee,
    )
