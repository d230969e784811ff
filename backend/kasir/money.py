# Overview: Integer Rupiah arithmetic helpers.

from __future__ import annotations

BPS_DENOMINATOR = 10_000


def apply_rate_bps(amount: int, rate_bps: int) -> int:
    """
    Return amount * rate_bps / 10000 rounded half-up to a whole Rupiah.

    Amounts and rates are non-negative integers, so floor division with a
    half-denominator offset is exact.
    """
    if amount < 0 or rate_bps < 0:
        raise ValueError("amount and rate_bps must be non-negative")
    return (amount * rate_bps + BPS_DENOMINATOR // 2) // BPS_DENOMINATOR


def format_rupiah(amount: int) -> str:
    """Format as Indonesian Rupiah, e.g. 75000 -> 'Rp 75.000'."""
    return f"Rp {amount:,}".replace(",", ".")
