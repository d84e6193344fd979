"""Escrow fee calculation.

Fee structure (rates configurable via settings):

1. **Platform fee**: % of the escrow amount, kept by the marketplace.
2. **Payment processing fee**: % of the escrow amount, passed through to the
   payment processor.

Both are computed once when the escrow is funded and stored on the escrow.
Changing the rates later never touches existing escrows.
"""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

from visaflow.config import settings

_CENT = Decimal("0.01")


@dataclass
class EscrowFees:
    """Fee breakdown fixed on an escrow at funding time."""
    platform: Decimal
    payment: Decimal
    total: Decimal

    def to_dict(self) -> dict:
        return {
            "platform": str(self.platform),
            "payment": str(self.payment),
            "total": str(self.total),
        }


def _quantize(value: Decimal) -> Decimal:
    return value.quantize(_CENT, rounding=ROUND_HALF_UP)


def calculate_escrow_fees(amount: Decimal) -> EscrowFees:
    """Compute platform, payment and total fees for an escrow amount.

    Each component is rounded half-up to the cent independently. The total is
    the rounded total rate applied to the amount, not the sum of the rounded
    components.
    """
    return EscrowFees(
        platform=_quantize(amount * settings.fee_platform_percent),
        payment=_quantize(amount * settings.fee_payment_percent),
        total=_quantize(amount * settings.fee_total_percent),
    )


def get_fee_schedule() -> dict:
    """Return the current fee schedule for display to clients and agents."""
    example = calculate_escrow_fees(Decimal("1000"))
    return {
        "platform_fee": {
            "rate_percent": str(settings.fee_platform_percent * 100),
            "charged_at": "Escrow funding",
        },
        "payment_processing_fee": {
            "rate_percent": str(settings.fee_payment_percent * 100),
            "charged_at": "Escrow funding",
        },
        "total_rate_percent": str(settings.fee_total_percent * 100),
        "currency": settings.default_currency,
        "example": {"amount": "1000.00", **example.to_dict()},
    }
