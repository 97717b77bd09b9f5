"""Fiscal period extraction from financial document text.

Heuristic and deterministic: the filename is prepended to the text (filenames
such as ``DRE_2024_Q1.pdf`` often carry the period), then year, quarter and
month are searched independently and combined into one canonical label:

- ``YYYY-Qn`` when year and quarter are known
- ``YYYY-MM`` when year and month are known
- ``YYYY``    when only the year is known
"""

from __future__ import annotations

import calendar
import re
from dataclasses import dataclass
from datetime import date
from functools import cmp_to_key
from typing import NamedTuple

_YEAR_RE = re.compile(r"\b(20[2-3][0-9])\b")

# Tried in order; first pattern with a match wins.
_QUARTER_RES = (
    re.compile(r"\b([1-4])º?\s*trimestre\b"),
    re.compile(r"\btrimestre\s*([1-4])\b"),
    re.compile(r"\bq([1-4])\b"),
    re.compile(r"\b([1-4])t\b"),
)

# Insertion order is the tie-break: the first name found in this list wins,
# regardless of where it appears in the text.
_MONTH_NAMES: dict[str, int] = {
    "janeiro": 1, "jan": 1,
    "fevereiro": 2, "fev": 2,
    "março": 3, "mar": 3,
    "abril": 4, "abr": 4,
    "maio": 5, "mai": 5,
    "junho": 6, "jun": 6,
    "julho": 7, "jul": 7,
    "agosto": 8, "ago": 8,
    "setembro": 9, "set": 9,
    "outubro": 10, "out": 10,
    "novembro": 11, "nov": 11,
    "dezembro": 12, "dez": 12,
}

_MONTH_NUM = r"(1[0-2]|0?[1-9])"

_CANONICAL_PATTERNS = (
    re.compile(r"^\d{4}$"),
    re.compile(r"^\d{4}-(0[1-9]|1[0-2])$"),
    re.compile(r"^\d{4}-Q[1-4]$"),
)

_YEAR_ONLY_RE = re.compile(r"^(\d{4})$")
_MONTH_PERIOD_RE = re.compile(r"^(\d{4})-(0[1-9]|1[0-2])$")
_QUARTER_PERIOD_RE = re.compile(r"^(\d{4})-Q([1-4])$")


@dataclass(frozen=True)
class PeriodInfo:
    period: str | None  # "2024-Q1", "2023", "2024-01"
    year: int | None
    month: int | None
    quarter: int | None


class PeriodRange(NamedTuple):
    start: date
    end: date  # inclusive


def extract_period(text: str, file_name: str | None = None) -> PeriodInfo:
    """Best-guess fiscal period for a document."""
    # Underscores are word characters for \b; "DRE_2024_Q1.pdf" must still split
    name = (file_name or "").replace("_", " ")
    full_text = f"{name} {text or ''}".lower()

    year_match = _YEAR_RE.search(full_text)
    year = int(year_match.group(1)) if year_match else None

    quarter: int | None = None
    for pattern in _QUARTER_RES:
        m = pattern.search(full_text)
        if m:
            quarter = int(m.group(1))
            break

    month: int | None = None
    for month_name, number in _MONTH_NAMES.items():
        if month_name in full_text:
            month = number
            break

    if month is None and year is not None:
        month = _numeric_month(full_text, year)

    period: str | None = None
    if year and quarter:
        period = f"{year}-Q{quarter}"
    elif year and month:
        period = f"{year}-{month:02d}"
    elif year:
        period = str(year)

    return PeriodInfo(period=period, year=year, month=month, quarter=quarter)


def _numeric_month(full_text: str, year: int) -> int | None:
    """Month from ``MM/YYYY``, ``MM-YYYY``, ``YYYY/MM`` or ``YYYY-MM`` next to the year."""
    patterns = (
        re.compile(rf"(?<!\d){_MONTH_NUM}[/\-]{year}"),
        re.compile(rf"{year}[/\-]{_MONTH_NUM}(?!\d)"),
    )
    for pattern in patterns:
        m = pattern.search(full_text)
        if m:
            return int(m.group(1))
    return None


def is_valid_period(period: str) -> bool:
    """True for ``YYYY``, ``YYYY-MM`` (01-12) and ``YYYY-Qn`` (1-4)."""
    return any(p.match(period) for p in _CANONICAL_PATTERNS)


def period_to_date_range(period: str) -> PeriodRange | None:
    """Inclusive calendar range covered by a canonical period, else None."""
    m = _YEAR_ONLY_RE.match(period)
    if m:
        year = int(m.group(1))
        return PeriodRange(date(year, 1, 1), date(year, 12, 31))

    m = _MONTH_PERIOD_RE.match(period)
    if m:
        year, month = int(m.group(1)), int(m.group(2))
        last_day = calendar.monthrange(year, month)[1]
        return PeriodRange(date(year, month, 1), date(year, month, last_day))

    m = _QUARTER_PERIOD_RE.match(period)
    if m:
        year, quarter = int(m.group(1)), int(m.group(2))
        start_month = (quarter - 1) * 3 + 1
        end_month = start_month + 2
        last_day = calendar.monthrange(year, end_month)[1]
        return PeriodRange(date(year, start_month, 1), date(year, end_month, last_day))

    return None


def compare_periods(period_a: str, period_b: str) -> int:
    """Chronological comparison by range start; 0 when either is not canonical.

    On equal starts the wider range sorts first, so a year precedes its
    quarters and a quarter precedes its first month.
    """
    range_a = period_to_date_range(period_a)
    range_b = period_to_date_range(period_b)
    if range_a is None or range_b is None:
        return 0

    if range_a.start != range_b.start:
        return -1 if range_a.start < range_b.start else 1
    if range_a.end != range_b.end:
        return -1 if range_a.end > range_b.end else 1
    return 0


period_sort_key = cmp_to_key(compare_periods)
