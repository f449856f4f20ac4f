"""
Payment validation utilities for settled checkout sessions
Compares what the payment provider says was charged against the order we persisted
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional

from pricing_utils import from_minor_units, round_money

logger = logging.getLogger(__name__)

# Absolute tolerance in settlement currency; card networks settle to the minor unit
DEFAULT_TOLERANCE = Decimal('0.01')

@dataclass(frozen=True)
class AmountCheck:
    valid: bool
    expected: Decimal
    received: Optional[Decimal]
    reason: str = ""

    def to_details(self) -> Dict[str, Any]:
        return {
            'expected': f"{self.expected:.2f}",
            'received': f"{self.received:.2f}" if self.received is not None else None,
            'reason': self.reason,
        }

def validate_payment_amount(expected: Decimal, received: Decimal, tolerance: Decimal = DEFAULT_TOLERANCE) -> bool:
    """
    Validate payment amount with an absolute tolerance

    Args:
        expected: Order total
        received: Amount the provider reports as settled
        tolerance: Largest acceptable difference

    Returns:
        bool: True if payment amount is valid
    """
    if expected <= 0 or received <= 0:
        return False
    return abs(round_money(expected) - round_money(received)) <= tolerance

def validate_settled_amount(expected_total: Decimal, expected_currency: str, amount_total_minor: Optional[int],
                            currency: Optional[str]) -> AmountCheck:
    """
    Check a provider session's amount_total (minor units) against an order

    Args:
        expected_total: Order total in major units
        expected_currency: Order currency code
        amount_total_minor: Session amount_total as reported by the provider
        currency: Session currency as reported by the provider

    Returns:
        AmountCheck describing the outcome; never raises
    """
    if amount_total_minor is None:
        logger.warning("⚠️ Settled session carries no amount_total")
        return AmountCheck(False, expected_total, None, "missing amount_total")

    received = from_minor_units(amount_total_minor)

    if currency and currency.upper() != expected_currency.upper():
        logger.warning(f"⚠️ Settlement currency mismatch: expected {expected_currency}, got {currency.upper()}")
        return AmountCheck(False, expected_total, received, f"currency {currency.upper()} != {expected_currency}")

    if not validate_payment_amount(expected_total, received):
        logger.warning(f"⚠️ Settled amount mismatch: expected {expected_total}, received {received}")
        return AmountCheck(False, expected_total, received, "amount mismatch")

    return AmountCheck(True, expected_total, received)
