from __future__ import annotations

import math
import re
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional, Union

import pandas as pd

from agritrace.errors import ValidationError

Number = Union[int, float]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_aware_utc(v: Optional[datetime]) -> Optional[datetime]:
    """Normalize a datetime to aware UTC; naive values are taken as UTC."""
    if v is None:
        return None
    return v.astimezone(timezone.utc) if v.tzinfo else v.replace(tzinfo=timezone.utc)


def parse_datetime(v: Union[str, datetime, None], field: str) -> datetime:
    """Parse a free-form date/time string into an aware UTC datetime.

    Accepts '2025-03-01', '2025-03-01T08:00:00Z', '2025-03-01 08:00' and the
    like. Anything pandas cannot read is a ValidationError naming the field.
    """
    if isinstance(v, datetime):
        return to_aware_utc(v)
    if v is None or str(v).strip() == "":
        raise ValidationError(f"{field} is required")
    ts = pd.to_datetime(v, errors="coerce", utc=True)
    if pd.isna(ts):
        raise ValidationError(f"{field} is not a valid date: {v!r}")
    return ts.to_pydatetime()


def epoch_ms(ts: datetime) -> int:
    return int(ts.timestamp() * 1000)


def short_token(n: int = 6) -> str:
    return uuid.uuid4().hex[:n].upper()


def crop_token(crop_type: str) -> str:
    """'Palm Oil' -> 'PALM_OIL'"""
    return re.sub(r"\s+", "_", crop_type.strip().upper())


def weight_variance(declared: Number, actual: Number) -> Decimal:
    """actual - declared, computed in decimal so 478.1 - 473.1 is exactly 5."""
    return Decimal(str(actual)) - Decimal(str(declared))


def within_tolerance(variance: Decimal, tolerance: Number) -> bool:
    return abs(variance) <= Decimal(str(tolerance))


def days_remaining(expires_at: datetime, now: datetime) -> int:
    """Whole days left before expiry, rounded up; 0 once expired."""
    seconds = (to_aware_utc(expires_at) - to_aware_utc(now)).total_seconds()
    if seconds <= 0:
        return 0
    return math.ceil(seconds / 86400)


def window_status(expires_at: datetime, now: datetime) -> str:
    return "active" if to_aware_utc(now) < to_aware_utc(expires_at) else "expired"
