"""
Norma - pattern classification primitives.

Responsibility:
- Turn free-text descriptions into stable grouping keys.
- Measure consistency of amounts and intervals (coefficient of variation).
- Map an average interval onto a billing frequency.

Design notes:
- This module must be PURE: no database access, no global state mutation.
- Recurrence detection and subscription detection both build on these, so a
  change here moves both.
"""

from __future__ import annotations

import re
from calendar import monthrange
from datetime import date
from statistics import pstdev
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

# -------------------------
# Frequencies
# -------------------------

FREQUENCIES: Tuple[str, ...] = ("weekly", "fortnightly", "monthly", "quarterly", "yearly")

# inclusive [low, high] bounds on the average interval, in days
FREQUENCY_BANDS: Tuple[Tuple[str, float, float], ...] = (
    ("weekly", 4, 10),
    ("fortnightly", 11, 18),
    ("monthly", 25, 35),
    ("quarterly", 80, 100),
    ("yearly", 350, 380),
)

EXPECTED_INTERVAL_DAYS: Dict[str, int] = {
    "weekly": 7,
    "fortnightly": 14,
    "monthly": 30,
    "quarterly": 91,
    "yearly": 365,
}

# interval CV (percent) above which a group is not considered regular
MAX_INTERVAL_CV = 30.0


# -------------------------
# Description normalization
# -------------------------

_DATE_TOKEN = re.compile(r"\d{1,2}[/\-.]\d{1,2}(?:[/\-.]\d{2,4})?")
# "REF 123", "REF:ABC", "TXN9981" but not "REFUND"
_REFERENCE = re.compile(r"\b(?:REF|TXN)(?:[:\s]+|(?=\d))\w+", re.IGNORECASE)
_NUMERIC_TOKEN = re.compile(r"(?<!\S)\d+(?!\S)")
_ASTERISKS = re.compile(r"\s*\*+\s*")
_WHITESPACE = re.compile(r"\s+")


def normalize_description(description: Optional[str]) -> str:
    """
    Grouping key for recurrence/subscription detection.

    "NETFLIX.COM 12/03 REF 99812" and "netflix.com 14/04 REF 10022" both
    normalize to "NETFLIX.COM". Two transactions group together only on exact
    equality of this key.
    """
    if not description:
        return ""
    s = description.upper()
    s = _DATE_TOKEN.sub(" ", s)
    s = _REFERENCE.sub(" ", s)
    s = _NUMERIC_TOKEN.sub(" ", s)
    s = _ASTERISKS.sub(" ", s)
    s = _WHITESPACE.sub(" ", s)
    return s.strip()


# -------------------------
# Statistics
# -------------------------

def mean(values: Sequence[float]) -> float:
    if not values:
        return 0.0
    return sum(values) / len(values)


def coefficient_of_variation(values: Sequence[float]) -> float:
    """
    Population stddev / |mean| * 100.

    Returns 0 for fewer than two values or a zero mean.
    """
    vals = [float(v) for v in values]
    if len(vals) < 2:
        return 0.0
    avg = mean(vals)
    if avg == 0:
        return 0.0
    return pstdev(vals) / abs(avg) * 100


def intervals_in_days(dates: Iterable[date]) -> List[int]:
    ordered = sorted(dates)
    return [(b - a).days for a, b in zip(ordered, ordered[1:])]


def typical_day(dates: Iterable[date]) -> Optional[int]:
    days = [d.day for d in dates]
    if not days:
        return None
    # half-up, so a mean of 14.5 lands on the 15th
    return int(mean(days) + 0.5)


def classify_frequency(avg_interval_days: float) -> Optional[str]:
    for name, low, high in FREQUENCY_BANDS:
        if low <= avg_interval_days <= high:
            return name
    return None


def months_before(day: date, months: int) -> date:
    """Same day-of-month `months` earlier, clamped to the end of shorter months."""
    index = day.year * 12 + (day.month - 1) - months
    year, month = divmod(index, 12)
    return date(year, month + 1, min(day.day, monthrange(year, month + 1)[1]))
