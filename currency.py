from __future__ import annotations

from enum import Enum

# Fixed display rate: 1 USD = 1550 NGN. Amounts are always stored in NGN.
USD_RATE_NGN = 1550


class Currency(str, Enum):
    NGN = "ngn"
    USD = "usd"


def format_amount(amount_ngn: int, currency: Currency = Currency.NGN) -> str:
    """
    Format an NGN amount for display, optionally converted to USD.

    Conversion happens on the formatted copy only; the caller's amount is never changed.
    """
    if Currency(currency) == Currency.USD:
        return f"${amount_ngn / USD_RATE_NGN:,.2f}"
    return f"₦{amount_ngn:,.0f}"


def format_ngn_ascii(amount_ngn: int) -> str:
    # ReportLab's built-in Type1 fonts have no naira sign.
    sign = "-" if amount_ngn < 0 else ""
    return f"{sign}NGN {abs(amount_ngn):,.0f}"
