"""
Pricing utilities for domain quotes and checkout line items
Decimal money arithmetic, currency conversion with margin and display formatting
"""

import logging
from typing import Union
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation

logger = logging.getLogger(__name__)

CENT = Decimal('0.01')

Number = Union[float, int, str, Decimal]

CURRENCY_SYMBOLS = {
    'USD': '$',
    'EUR': '€',
    'GBP': '£',
}

def to_decimal(value: Number) -> Decimal:
    """
    Convert a numeric value to Decimal without float artefacts

    Args:
        value: Amount as Decimal, int, float or numeric string

    Returns:
        Decimal: Exact decimal representation

    Raises:
        ValueError: If the value is not numeric
    """
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValueError(f"Not a monetary amount: {value!r}")

def round_money(amount: Number) -> Decimal:
    """Round to 2 decimal places using half-up rounding"""
    return to_decimal(amount).quantize(CENT, rounding=ROUND_HALF_UP)

def convert_with_margin(amount: Number, rate: Number, margin: Number) -> Decimal:
    """
    Convert an amount into the settlement currency and apply the rate margin

    The result is left unrounded so callers can scale it before rounding once.

    Args:
        amount: Amount in the source currency
        rate: Exchange rate source -> settlement
        margin: Fractional margin in [0, 1)

    Returns:
        Decimal: Converted amount, unrounded
    """
    return to_decimal(amount) * to_decimal(rate) * (Decimal('1') + to_decimal(margin))

def to_minor_units(amount: Number) -> int:
    """Convert a major-unit amount (e.g. pounds) to minor units (pence)"""
    return int((round_money(amount) * 100).to_integral_value(rounding=ROUND_HALF_UP))

def from_minor_units(amount: int) -> Decimal:
    """Convert minor units (pence) back to a major-unit Decimal"""
    return round_money(Decimal(int(amount)) / Decimal(100))

def format_money(amount: Number, currency: str = "GBP", show_currency: bool = True) -> str:
    """
    Format monetary amount for display

    Args:
        amount: Amount to format
        currency: Currency code (default: GBP)
        show_currency: Whether to show currency symbol

    Returns:
        str: Formatted money string
    """
    try:
        formatted = f"{round_money(amount):.2f}"
    except ValueError as e:
        logger.warning(f"Error formatting money: {e}")
        return str(amount)

    if not show_currency:
        return formatted

    symbol = CURRENCY_SYMBOLS.get(currency.upper())
    if symbol is None:
        return f"{formatted} {currency.upper()}"
    return f"{symbol}{formatted}"
