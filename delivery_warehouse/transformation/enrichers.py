"""
Data Enrichment Module

Derived attributes recomputed on every merge. All rules are pure, total and
deterministic, so refreshing a record twice yields the same values.
Includes:
- Income bucketing with a stable sort order
- Education bucketing with a stable sort order
- Currency normalization to the warehouse currency
- Cuisine list splitting for restaurants
"""

from typing import Any, Dict, List, NamedTuple, Optional, Tuple
import re

import structlog

logger = structlog.get_logger(__name__)


class Bucket(NamedTuple):
    """A derived label and its sort position"""
    label: str
    order: int


INCOME_UNKNOWN = Bucket("Unknown", 9)
EDUCATION_UNKNOWN = Bucket("Unknown", 0)

# Checked in order against the normalized income text
_INCOME_RULES: List[Tuple[re.Pattern, Bucket]] = [
    (re.compile(r"^noincome"), Bucket("None", 0)),
    (re.compile(r"below.*10000"), Bucket("Below 10k", 1)),
    (re.compile(r"10001to25000"), Bucket("10k-25k", 2)),
    (re.compile(r"25001to50000"), Bucket("25k-50k", 3)),
    (re.compile(r"morethan50000"), Bucket("50k+", 4)),
]

_EDUCATION_BUCKETS: Dict[str, Bucket] = {
    "uneducated": Bucket("Basic Education", 1),
    "school": Bucket("Basic Education", 1),
    "graduate": Bucket("Higher Education", 2),
    "postgraduate": Bucket("Higher Education", 2),
    "phd": Bucket("Doctoral", 3),
}


def _squash(value: Optional[str]) -> str:
    """Lowercase and drop everything but letters and digits"""
    if value is None:
        return ""
    return re.sub(r"[^0-9a-z]", "", str(value).lower())


def income_bucket(raw: Optional[str]) -> Bucket:
    """
    Classify a raw monthly income label.

    Example:
        >>> income_bucket("10001 to 25000")
        Bucket(label='10k-25k', order=2)
    """
    normalized = _squash(raw)
    for pattern, bucket in _INCOME_RULES:
        if pattern.search(normalized):
            return bucket
    return INCOME_UNKNOWN


def education_bucket(raw: Optional[str]) -> Bucket:
    """Classify a raw education label into Basic / Higher / Doctoral / Unknown"""
    return _EDUCATION_BUCKETS.get(_squash(raw), EDUCATION_UNKNOWN)


def convert_currency(
    amount: float,
    currency: Optional[str],
    rate: float,
    source_currency: str = "USD",
    target_currency: str = "INR",
) -> Tuple[float, Optional[str]]:
    """
    Normalize an amount to the warehouse currency.

    Amounts in ``source_currency`` (case-insensitive) are multiplied by
    ``rate`` and relabeled ``target_currency``; anything else passes through.
    """
    if currency is not None and currency.strip().lower() == source_currency.lower():
        return amount * rate, target_currency
    return amount, currency


def split_cuisines(raw: Optional[str]) -> List[str]:
    """``"North Indian, Chinese,"`` -> ``["North Indian", "Chinese"]``"""
    if not raw:
        return []
    return [item.strip() for item in raw.split(",") if item.strip()]


def enrich_customer(record: Dict[str, Any]) -> Dict[str, Any]:
    """Attach income and education buckets to a customer record"""
    income = income_bucket(record.get("monthly_income_raw"))
    education = education_bucket(record.get("education_raw"))
    record.update(
        income_group=income.label,
        income_group_order=income.order,
        education_group=education.label,
        education_group_order=education.order,
    )
    return record


def enrich_restaurant(record: Dict[str, Any]) -> Dict[str, Any]:
    """Attach cuisine count and primary cuisine to a restaurant record"""
    cuisines = split_cuisines(record.get("cuisine"))
    record.update(
        cuisine_count=len(cuisines),
        primary_cuisine=cuisines[0] if cuisines else None,
    )
    return record
