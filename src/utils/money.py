from __future__ import annotations

import math
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any


def _to_decimal(value: Any) -> Decimal | None:
    if value is None:
        return None
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        return Decimal(int(value))
    if isinstance(value, (int, float)):
        return Decimal(str(value))
    s = str(value).strip()
    if not s:
        return None
    s = s.replace(",", "").replace("₹", "")
    try:
        return Decimal(s)
    except InvalidOperation:
        return None


def to_float(value: Any) -> float:
    d = _to_decimal(value)
    return float(d) if d is not None else 0.0


def format_inr(value: Any, digits: int = 0, dash: str = "—") -> str:
    """
    Rupee formatter used in nudge and insight copy.

    - `None` -> em dash
    - numeric -> "₹1235" (or "₹1234.56" if digits=2)
    - non-numeric string -> returned as-is
    """
    d = _to_decimal(value)
    if d is None:
        if value is None:
            return dash
        s = str(value).strip()
        return s if s else dash

    digits = max(0, int(digits))
    q = Decimal(1) if digits == 0 else Decimal("1").scaleb(-digits)
    d = d.quantize(q, rounding=ROUND_HALF_UP)

    sign = "-" if d < 0 else ""
    d_abs = -d if d < 0 else d
    return f"{sign}₹{d_abs:.{digits}f}"


def round_half_up(value: float) -> int:
    """Round .5 away from zero on the positive side, matching how amounts are shown in copy."""
    return int(math.floor(float(value) + 0.5))
