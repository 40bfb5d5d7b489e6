"""
Data Transformation Module
"""
from .calendar import CalendarRow, build_calendar, calendar_row
from .cleaners import (
    OrderRecord,
    PreparedRows,
    normalize_timestamp,
    order_natural_key,
    prepare_orders,
)
from .enrichers import (
    Bucket,
    convert_currency,
    education_bucket,
    income_bucket,
    split_cuisines,
)

__all__ = [
    "CalendarRow",
    "build_calendar",
    "calendar_row",
    "OrderRecord",
    "PreparedRows",
    "normalize_timestamp",
    "order_natural_key",
    "prepare_orders",
    "Bucket",
    "convert_currency",
    "education_bucket",
    "income_bucket",
    "split_cuisines",
]
