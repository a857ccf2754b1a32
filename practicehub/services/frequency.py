"""
Service frequency arithmetic.

Month-based steps clamp to the last day of shorter months, so 31 January plus
one month is 29 February in a leap year and 28 February otherwise.
"""
import calendar
from datetime import date, timedelta
from typing import Dict, Optional, Tuple

from .errors import SchedulingComputationError, SchedulingConfigurationError


# frequency -> (months, days)
FREQUENCY_STEPS: Dict[str, Tuple[int, int]] = {
    "daily": (0, 1),
    "weekly": (0, 7),
    "fortnightly": (0, 14),
    "monthly": (1, 0),
    "quarterly": (3, 0),
    "annually": (12, 0),
}

FREQUENCY_ALIASES: Dict[str, str] = {
    "annual": "annually",
    "yearly": "annually",
}


def normalize_frequency(raw: Optional[str]) -> str:
    if raw is None or not str(raw).strip():
        raise SchedulingConfigurationError("Service has no frequency configured", error_type="missing_frequency")
    key = str(raw).strip().lower()
    key = FREQUENCY_ALIASES.get(key, key)
    if key not in FREQUENCY_STEPS:
        raise SchedulingConfigurationError(
            f"Unsupported frequency '{raw}'",
            error_type="invalid_frequency",
            context={"frequency": raw},
        )
    return key


def add_months(d: date, months: int) -> date:
    month_index = d.month - 1 + months
    year = d.year + month_index // 12
    month = month_index % 12 + 1
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, min(d.day, last_day))


def advance(d: date, frequency: str) -> date:
    """Move ``d`` forward by one cycle of ``frequency``."""
    key = normalize_frequency(frequency)
    months, days = FREQUENCY_STEPS[key]
    try:
        if months:
            return add_months(d, months)
        return d + timedelta(days=days)
    except (OverflowError, ValueError) as e:
        raise SchedulingComputationError(
            f"Cannot advance {d.isoformat()} by one {key} cycle: {e}",
            context={"date": d.isoformat(), "frequency": key},
        ) from e
