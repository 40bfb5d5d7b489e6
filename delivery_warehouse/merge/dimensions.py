"""
Dimension Merge Engine

Upserts staging rows into surrogate-keyed dimensions. A natural key seen for
the first time gets a new surrogate key; a natural key already present has
all of its non-identity attributes overwritten with the latest staging
values, nulls included. Derived attributes are recomputed in the same pass.

Running a merge any number of times over the same input leaves the dimension
unchanged after the first run.
"""

from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Sequence, Tuple, Type

import polars as pl
import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from delivery_warehouse.database.models import (
    Base,
    DimCustomer,
    DimDate,
    DimLocation,
    DimRestaurant,
)
from delivery_warehouse.database.upsert import existing_keys, upsert_rows
from delivery_warehouse.exceptions import MalformedInput
from delivery_warehouse.merge.report import MergeStats
from delivery_warehouse.transformation.calendar import CalendarRow
from delivery_warehouse.transformation.cleaners import (
    PreparedRows,
    clean_text,
    coerce_float,
    coerce_int,
    location_natural_key,
)
from delivery_warehouse.transformation.enrichers import enrich_customer, enrich_restaurant

logger = structlog.get_logger(__name__)

RecordBuilder = Callable[[Mapping[str, Any], int], Dict[str, Any]]


# =============================================================================
# RECORD BUILDERS
# =============================================================================

def _identity(row: Mapping[str, Any], column: str, relation: str, row_number: int) -> str:
    value = clean_text(row.get(column))
    if value is None:
        raise MalformedInput(
            f"{column} is missing",
            relation=relation,
            row_number=row_number,
        )
    return value


def customer_record(row: Mapping[str, Any], row_number: int) -> Dict[str, Any]:
    """Staging user -> dim_customer attributes, enriched"""
    user_id = _identity(row, "user_id", "users", row_number)
    try:
        age = coerce_int(row.get("age"), "age", "users", row_number)
        family_size = coerce_int(row.get("family_size"), "family_size", "users", row_number)
    except MalformedInput as e:
        e.natural_key = user_id
        raise

    record = {
        "user_id_nat": user_id,
        "name": clean_text(row.get("name")),
        "email": clean_text(row.get("email")),
        "age": age,
        "gender": clean_text(row.get("gender")),
        "family_size": family_size,
        "monthly_income_raw": clean_text(row.get("monthly_income")),
        "education_raw": clean_text(row.get("educational_qualifications")),
    }
    return enrich_customer(record)


def restaurant_record(row: Mapping[str, Any], row_number: int) -> Dict[str, Any]:
    """Staging restaurant -> dim_restaurant attributes, enriched"""
    restaurant_id = _identity(row, "id", "restaurant", row_number)
    try:
        rating = coerce_float(row.get("rating"), "rating", "restaurant", row_number)
    except MalformedInput as e:
        e.natural_key = restaurant_id
        raise

    record = {
        "restaurant_id_nat": restaurant_id,
        "name": clean_text(row.get("name")),
        "city": clean_text(row.get("city")),
        "rating": rating,
        "cuisine": clean_text(row.get("cuisine")),
    }
    return enrich_restaurant(record)


def location_record(row: Mapping[str, Any], row_number: int) -> Dict[str, Any]:
    """Staging location -> dim_location attributes"""
    country = _identity(row, "country", "location", row_number)
    city = _identity(row, "city", "location", row_number)
    state = clean_text(row.get("state"))
    return {
        "location_nk": location_natural_key(country, state, city),
        "country": country,
        "state": state,
        "city": city,
    }


# =============================================================================
# MERGE ENGINE
# =============================================================================

@dataclass(frozen=True)
class DimensionSpec:
    """How one dimension is keyed, refreshed and built from staging"""
    name: str
    staging_relation: str
    model: Type[Base]
    natural_key: str
    surrogate_key: str
    attributes: Tuple[str, ...]
    build_record: RecordBuilder


CUSTOMER = DimensionSpec(
    name="customer",
    staging_relation="users",
    model=DimCustomer,
    natural_key="user_id_nat",
    surrogate_key="customer_key",
    attributes=(
        "name", "email", "age", "gender", "family_size",
        "monthly_income_raw", "income_group", "income_group_order",
        "education_raw", "education_group", "education_group_order",
    ),
    build_record=customer_record,
)

RESTAURANT = DimensionSpec(
    name="restaurant",
    staging_relation="restaurant",
    model=DimRestaurant,
    natural_key="restaurant_id_nat",
    surrogate_key="restaurant_key",
    # location_key belongs to the geo-linkage resolver
    attributes=("name", "city", "rating", "cuisine", "cuisine_count", "primary_cuisine"),
    build_record=restaurant_record,
)

LOCATION = DimensionSpec(
    name="location",
    staging_relation="location",
    model=DimLocation,
    natural_key="location_nk",
    surrogate_key="location_key",
    attributes=("country", "state", "city"),
    build_record=location_record,
)

DIMENSIONS = (LOCATION, CUSTOMER, RESTAURANT)


class DimensionMerger:
    """
    Upsert engine for one dimension.

    Example:
        merger = DimensionMerger(CUSTOMER)
        prepared = merger.prepare(batch.users)
        stats = await merger.merge(session, prepared.records)
    """

    def __init__(self, spec: DimensionSpec, batch_size: int = 500):
        self.spec = spec
        self.batch_size = batch_size

    @property
    def columns(self) -> List[str]:
        return [self.spec.natural_key, *self.spec.attributes]

    def prepare(self, df: pl.DataFrame) -> PreparedRows[Dict[str, Any]]:
        """
        Build dimension records from a staging frame.

        Rows with uncoercible values are excluded and returned as errors.
        Rows sharing a natural key collapse to the last one.
        """
        prepared: PreparedRows[Dict[str, Any]] = PreparedRows()
        by_key: Dict[str, Dict[str, Any]] = {}

        for row_number, row in enumerate(df.iter_rows(named=True)):
            try:
                record = self.spec.build_record(row, row_number)
            except MalformedInput as e:
                logger.warning(
                    "Excluding malformed staging row",
                    dimension=self.spec.name,
                    row_number=row_number,
                    natural_key=e.natural_key,
                    error=e.message,
                )
                prepared.errors.append(e)
                continue
            by_key[record[self.spec.natural_key]] = {c: record.get(c) for c in self.columns}

        prepared.records = list(by_key.values())
        return prepared

    async def merge(self, session: AsyncSession, records: Sequence[Dict[str, Any]]) -> MergeStats:
        """Insert unseen natural keys and fully refresh the rest"""
        natural_column = getattr(self.spec.model, self.spec.natural_key)
        keys = [r[self.spec.natural_key] for r in records]
        present = await existing_keys(session, natural_column, keys, self.batch_size)

        await upsert_rows(
            session,
            self.spec.model,
            list(records),
            conflict_column=self.spec.natural_key,
            update_columns=self.spec.attributes,
            batch_size=self.batch_size,
        )

        stats = MergeStats(
            relation=self.spec.model.__tablename__,
            inserted=len(records) - len(present),
            updated=len(present),
        )
        logger.info(
            "Dimension merged",
            dimension=self.spec.name,
            inserted=stats.inserted,
            updated=stats.updated,
        )
        return stats

    async def run(self, session: AsyncSession, df: pl.DataFrame) -> Tuple[MergeStats, List[MalformedInput]]:
        """Prepare and merge one staging frame"""
        prepared = self.prepare(df)
        stats = await self.merge(session, prepared.records)
        stats.excluded = prepared.excluded
        return stats, prepared.errors


async def merge_calendar(
    session: AsyncSession,
    rows: Sequence[CalendarRow],
    batch_size: int = 500,
) -> MergeStats:
    """Insert missing dates and refresh the attributes of existing ones"""
    records = [row.as_record() for row in rows]
    present = await existing_keys(session, DimDate.date_key, [r["date_key"] for r in records], batch_size)

    await upsert_rows(
        session,
        DimDate,
        records,
        conflict_column="date_key",
        update_columns=[c for c in records[0] if c != "date_key"] if records else [],
        batch_size=batch_size,
    )

    stats = MergeStats(
        relation=DimDate.__tablename__,
        inserted=len(records) - len(present),
        updated=len(present),
    )
    logger.info("Calendar merged", inserted=stats.inserted, updated=stats.updated)
    return stats
