"""
Compact viewer-count formatting for OBS text sources.

Rounding is half-up throughout. Output only ever contains digits, a dot
and a K/M suffix: "0", "999", "1.2K", "10K", "999K", "1M", "2.5M".
Counts that would round past that range are shown as "999.9M".
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal
from typing import Any

_ONE_DECIMAL = Decimal("0.1")
_WHOLE = Decimal("1")

# widest text that still fits three digits before the suffix
_MAX_DISPLAY = "999.9M"


def _strip_zero(value: Decimal) -> str:
    text = format(value, "f")
    if text.endswith(".0"):
        text = text[:-2]
    return text


def format_viewer_count(count: Any) -> str:
    if isinstance(count, bool):
        return "0"
    try:
        n = int(count)
    except (TypeError, ValueError, OverflowError):
        return "0"
    if n <= 0:
        return "0"

    if n < 1_000:
        return str(n)

    if n < 10_000:
        thousands = (Decimal(n) / 1000).quantize(_ONE_DECIMAL, rounding=ROUND_HALF_UP)
        return f"{_strip_zero(thousands)}K"

    if n < 1_000_000:
        thousands = (Decimal(n) / 1000).quantize(_WHOLE, rounding=ROUND_HALF_UP)
        if thousands >= 1000:
            return "1M"
        return f"{thousands}K"

    millions = (Decimal(n) / 1_000_000).quantize(_ONE_DECIMAL, rounding=ROUND_HALF_UP)
    if millions >= 1000:
        return _MAX_DISPLAY
    return f"{_strip_zero(millions)}M"


__all__ = ["format_viewer_count"]
