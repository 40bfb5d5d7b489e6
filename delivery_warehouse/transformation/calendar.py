"""
Calendar Generator

Derives date dimension rows from order dates. Generation is a pure function
of the date, so regenerating a date always yields the same row.
"""

from dataclasses import asdict, dataclass
from datetime import date
from typing import Any, Dict, Iterable, List

MONTH_ABBREVIATIONS = (
    "Jan", "Feb", "Mar", "Apr", "May", "Jun",
    "Jul", "Aug", "Sep", "Oct", "Nov", "Dec",
)


@dataclass(frozen=True)
class CalendarRow:
    """One dim_date row"""
    date_key: int
    date_iso: str
    year: int
    quarter: int
    month: int
    month_name: str
    day: int
    dow: int
    is_weekend: bool

    def as_record(self) -> Dict[str, Any]:
        return asdict(self)


def calendar_row(value: date) -> CalendarRow:
    """
    Build the calendar attributes of a date.

    ``dow`` runs from Monday = 1 to Sunday = 7.
    """
    dow = value.isoweekday()
    return CalendarRow(
        date_key=value.year * 10000 + value.month * 100 + value.day,
        date_iso=value.isoformat(),
        year=value.year,
        quarter=1 + (value.month - 1) // 3,
        month=value.month,
        month_name=MONTH_ABBREVIATIONS[value.month - 1],
        day=value.day,
        dow=dow,
        is_weekend=dow >= 6,
    )


def build_calendar(dates: Iterable[date]) -> List[CalendarRow]:
    """Calendar rows for the distinct dates given, ordered by date"""
    return [calendar_row(d) for d in sorted(set(dates))]
