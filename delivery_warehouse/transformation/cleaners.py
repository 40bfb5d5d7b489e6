"""
Data Cleaning Module

Coercion of loosely typed staging text and natural-key synthesis.
Handles:
- Text trimming and blank-to-null normalization
- Integer / float coercion with typed errors
- Timestamp normalization to ``YYYY-MM-DD HH:MM:SS``
- Deterministic natural keys for orders and locations
- Preparation of staging orders into ``OrderRecord`` value objects
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Dict, Generic, List, Mapping, Optional, TypeVar
import math

import polars as pl
import structlog

from delivery_warehouse.exceptions import MalformedInput, MalformedTimestamp, RowError

logger = structlog.get_logger(__name__)

KEY_DELIMITER = "|"
TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"

T = TypeVar("T")


@dataclass
class PreparedRows(Generic[T]):
    """Rows that passed coercion plus the errors of the rows that did not"""
    records: List[T] = field(default_factory=list)
    errors: List[RowError] = field(default_factory=list)

    @property
    def excluded(self) -> int:
        return len(self.errors)


@dataclass(frozen=True)
class OrderRecord:
    """A staging order with its natural key and coerced measures"""
    natural_key: str
    user_id: str
    restaurant_id: str
    ordered_at: datetime
    sales_qty: int
    sales_amount: float
    currency: Optional[str]
    row_number: int

    @property
    def order_date(self) -> date:
        return self.ordered_at.date()

    @property
    def date_key(self) -> int:
        return int(self.ordered_at.strftime("%Y%m%d"))


# =============================================================================
# SCALAR COERCION
# =============================================================================

def clean_text(value: Any) -> Optional[str]:
    """Trim text; blank or missing values become None"""
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def coerce_float(
    value: Any,
    field_name: str,
    relation: Optional[str] = None,
    row_number: Optional[int] = None,
) -> Optional[float]:
    """
    Coerce staging text to float. Missing values stay None.

    Raises:
        MalformedInput: If the value is not a finite number
    """
    text = clean_text(value)
    if text is None:
        return None
    try:
        number = float(text)
    except ValueError:
        raise MalformedInput(
            f"{field_name}: cannot convert {text!r} to a number",
            relation=relation,
            row_number=row_number,
        ) from None
    if not math.isfinite(number):
        raise MalformedInput(
            f"{field_name}: {text!r} is not a finite number",
            relation=relation,
            row_number=row_number,
        )
    return number


def coerce_int(
    value: Any,
    field_name: str,
    relation: Optional[str] = None,
    row_number: Optional[int] = None,
) -> Optional[int]:
    """
    Coerce staging text to int. Integral decimals such as ``"2.0"`` are accepted.

    Raises:
        MalformedInput: If the value is not an integral number
    """
    number = coerce_float(value, field_name, relation, row_number)
    if number is None:
        return None
    if not number.is_integer():
        raise MalformedInput(
            f"{field_name}: {value!r} is not a whole number",
            relation=relation,
            row_number=row_number,
        )
    return int(number)


def normalize_timestamp(value: Any) -> datetime:
    """
    Parse an order timestamp.

    Accepts ISO-8601 forms with a ``T`` or space separator and date-only
    values. Offsets are converted to UTC; sub-second precision is dropped.

    Raises:
        MalformedTimestamp: If the value cannot be parsed
    """
    text = clean_text(value)
    if text is None:
        raise MalformedTimestamp("order timestamp is missing")
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        raise MalformedTimestamp(f"order timestamp {text!r} is not a valid date/time") from None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed.replace(microsecond=0)


def format_timestamp(value: datetime) -> str:
    return value.strftime(TIMESTAMP_FORMAT)


# =============================================================================
# NATURAL KEYS
# =============================================================================

def order_natural_key(row: Mapping[str, Any], ordered_at: Optional[datetime] = None) -> str:
    """
    Build the natural key of a staging order.

    Customer identity, restaurant identity, normalized timestamp, currency,
    quantity and amount joined by ``|``. Missing text parts become ``""``.
    ``ordered_at`` is used instead of ``order_date`` when already parsed.

    Raises:
        MalformedTimestamp: If ``order_date`` cannot be normalized
    """
    if ordered_at is None:
        ordered_at = normalize_timestamp(row.get("order_date"))
    parts = [
        clean_text(row.get("user_id")) or "",
        clean_text(row.get("r_id")) or "",
        format_timestamp(ordered_at),
        clean_text(row.get("currency")) or "",
        clean_text(row.get("sales_qty")) or "",
        clean_text(row.get("sales_amount")) or "",
    ]
    return KEY_DELIMITER.join(parts)


def location_natural_key(country: Optional[str], state: Optional[str], city: Optional[str]) -> str:
    return KEY_DELIMITER.join([country or "", state or "", city or ""])


# =============================================================================
# ORDER PREPARATION
# =============================================================================

def prepare_order(row: Mapping[str, Any], row_number: int) -> OrderRecord:
    """
    Coerce one staging order.

    Raises:
        MalformedTimestamp: If the timestamp is unusable
        MalformedInput: If identities are missing or measures are not numeric
    """
    try:
        ordered_at = normalize_timestamp(row.get("order_date"))
    except MalformedTimestamp as e:
        e.relation = "orders"
        e.row_number = row_number
        raise
    natural_key = order_natural_key(row, ordered_at)

    user_id = clean_text(row.get("user_id"))
    restaurant_id = clean_text(row.get("r_id"))
    if user_id is None or restaurant_id is None:
        raise MalformedInput(
            "order is missing its customer or restaurant identity",
            relation="orders",
            natural_key=natural_key,
            row_number=row_number,
        )

    try:
        sales_qty = coerce_int(row.get("sales_qty"), "sales_qty", "orders", row_number)
        sales_amount = coerce_float(row.get("sales_amount"), "sales_amount", "orders", row_number)
    except MalformedInput as e:
        e.natural_key = natural_key
        raise
    if sales_qty is None or sales_amount is None:
        raise MalformedInput(
            "order quantity and amount are required",
            relation="orders",
            natural_key=natural_key,
            row_number=row_number,
        )

    return OrderRecord(
        natural_key=natural_key,
        user_id=user_id,
        restaurant_id=restaurant_id,
        ordered_at=ordered_at,
        sales_qty=sales_qty,
        sales_amount=sales_amount,
        currency=clean_text(row.get("currency")),
        row_number=row_number,
    )


def prepare_orders(df: pl.DataFrame) -> PreparedRows[OrderRecord]:
    """
    Prepare every staging order, collecting row errors instead of failing.

    Orders sharing a natural key collapse to the last one in the frame.
    """
    prepared: PreparedRows[OrderRecord] = PreparedRows()
    by_key: Dict[str, OrderRecord] = {}

    for row_number, row in enumerate(df.iter_rows(named=True)):
        try:
            record = prepare_order(row, row_number)
        except MalformedInput as e:
            logger.warning(
                "Excluding malformed order",
                row_number=row_number,
                natural_key=e.natural_key,
                error=e.message,
            )
            prepared.errors.append(e)
            continue
        by_key[record.natural_key] = record

    prepared.records = list(by_key.values())
    return prepared
