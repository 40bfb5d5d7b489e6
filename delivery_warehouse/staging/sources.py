"""
Staging Sources

Reads the four staging relations (users, restaurant, orders, location) into
an immutable ``StagingBatch`` of polars DataFrames. Staging values are
loosely typed, so every column is read as text; coercion happens in the
transformation layer where failures become row-level errors.

Sources:
- CsvStagingSource: a directory of CSV extracts
- DatabaseStagingSource: ``stg_*`` tables in a relational database
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Protocol, Union
import re

import polars as pl
import structlog
from sqlalchemy import literal_column, select, table
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import create_async_engine

from delivery_warehouse.config import get_settings
from delivery_warehouse.exceptions import StagingError

logger = structlog.get_logger(__name__)


# Expected columns per relation; identity columns must be present
STAGING_COLUMNS: Dict[str, List[str]] = {
    "users": [
        "user_id", "name", "email", "age", "gender", "family_size",
        "monthly_income", "educational_qualifications",
    ],
    "restaurant": ["id", "name", "city", "rating", "cuisine"],
    "orders": ["user_id", "r_id", "order_date", "sales_qty", "sales_amount", "currency"],
    "location": ["country", "state", "city"],
}

REQUIRED_COLUMNS: Dict[str, List[str]] = {
    "users": ["user_id"],
    "restaurant": ["id"],
    "orders": ["user_id", "r_id", "order_date", "sales_qty", "sales_amount"],
    "location": ["country", "city"],
}


def normalize_column_name(name: str) -> str:
    """``'Family size'`` -> ``'family_size'``"""
    return re.sub(r"[^0-9a-z]+", "_", name.strip().lower()).strip("_")


def normalize_frame(df: pl.DataFrame, relation: str) -> pl.DataFrame:
    """
    Normalize headers, cast every column to trimmed text and add missing
    optional columns as nulls.

    Raises:
        StagingError: If a required column is missing
    """
    df = df.rename({col: normalize_column_name(col) for col in df.columns})

    missing_required = [c for c in REQUIRED_COLUMNS[relation] if c not in df.columns]
    if missing_required:
        raise StagingError(f"Staging relation '{relation}' is missing columns: {missing_required}")

    missing_optional = [c for c in STAGING_COLUMNS[relation] if c not in df.columns]
    if missing_optional:
        logger.warning(
            "Staging relation lacks optional columns, filling with nulls",
            relation=relation,
            columns=missing_optional,
        )
        df = df.with_columns([pl.lit(None, dtype=pl.Utf8).alias(c) for c in missing_optional])

    df = df.select(STAGING_COLUMNS[relation])
    df = df.with_columns(pl.all().cast(pl.Utf8).str.strip_chars())
    # Blank text is treated as absent
    return df.with_columns(
        [pl.when(pl.col(c) == "").then(None).otherwise(pl.col(c)).alias(c) for c in df.columns]
    )


def _records_to_frame(records: List[Mapping[str, Any]], relation: str) -> pl.DataFrame:
    if not records:
        return pl.DataFrame(schema={c: pl.Utf8 for c in STAGING_COLUMNS[relation]})
    rows = [{k: (None if v is None else str(v)) for k, v in r.items()} for r in records]
    return pl.DataFrame(rows, infer_schema_length=None)


@dataclass(frozen=True)
class StagingBatch:
    """
    One snapshot of the staging area.

    Frames are normalized on construction and never modified by the core.
    """
    users: pl.DataFrame
    restaurant: pl.DataFrame
    orders: pl.DataFrame
    location: pl.DataFrame

    @classmethod
    def from_frames(
        cls,
        users: pl.DataFrame,
        restaurant: pl.DataFrame,
        orders: pl.DataFrame,
        location: pl.DataFrame,
    ) -> "StagingBatch":
        return cls(
            users=normalize_frame(users, "users"),
            restaurant=normalize_frame(restaurant, "restaurant"),
            orders=normalize_frame(orders, "orders"),
            location=normalize_frame(location, "location"),
        )

    @classmethod
    def from_records(
        cls,
        users: Optional[List[Mapping[str, Any]]] = None,
        restaurant: Optional[List[Mapping[str, Any]]] = None,
        orders: Optional[List[Mapping[str, Any]]] = None,
        location: Optional[List[Mapping[str, Any]]] = None,
    ) -> "StagingBatch":
        """Build a batch from plain row dictionaries"""
        return cls.from_frames(
            users=_records_to_frame(users or [], "users"),
            restaurant=_records_to_frame(restaurant or [], "restaurant"),
            orders=_records_to_frame(orders or [], "orders"),
            location=_records_to_frame(location or [], "location"),
        )

    @property
    def row_counts(self) -> Dict[str, int]:
        return {
            "users": self.users.height,
            "restaurant": self.restaurant.height,
            "orders": self.orders.height,
            "location": self.location.height,
        }


class StagingSource(Protocol):
    async def load(self) -> StagingBatch: ...


class CsvStagingSource:
    """
    Staging extracts stored as CSV files in one directory.

    Example:
        source = CsvStagingSource("data/staging")
        batch = await source.load()
    """

    def __init__(self, directory: Optional[Union[str, Path]] = None):
        settings = get_settings().staging
        self.directory = Path(directory or settings.source_dir)
        self.files = {
            "users": settings.users_file,
            "restaurant": settings.restaurant_file,
            "orders": settings.orders_file,
            "location": settings.location_file,
        }
        self.null_values = settings.null_values

    def _read_csv(self, relation: str) -> pl.DataFrame:
        path = self.directory / self.files[relation]
        if not path.exists():
            raise StagingError(f"Staging file not found: {path}")
        # All columns as text
        return pl.read_csv(path, infer_schema_length=0, null_values=self.null_values)

    async def load(self) -> StagingBatch:
        frames = {relation: self._read_csv(relation) for relation in self.files}
        batch = StagingBatch.from_frames(**frames)
        logger.info("Loaded staging extracts", directory=str(self.directory), **batch.row_counts)
        return batch


class DatabaseStagingSource:
    """Staging relations stored as tables in a relational database"""

    def __init__(self, url: Optional[str] = None):
        settings = get_settings().staging
        self.url = url or settings.url
        if not self.url:
            raise StagingError("No staging database URL configured")
        self.tables = {
            "users": settings.users_table,
            "restaurant": settings.restaurant_table,
            "orders": settings.orders_table,
            "location": settings.location_table,
        }

    async def load(self) -> StagingBatch:
        engine = create_async_engine(self.url)
        frames = {}
        try:
            async with engine.connect() as conn:
                for relation, table_name in self.tables.items():
                    result = await conn.execute(
                        select(literal_column("*")).select_from(table(table_name))
                    )
                    columns = list(result.keys())
                    rows = [
                        [None if v is None else str(v) for v in row]
                        for row in result.all()
                    ]
                    frames[relation] = pl.DataFrame(
                        rows,
                        schema={c: pl.Utf8 for c in columns},
                        orient="row",
                    )
        except SQLAlchemyError as e:
            raise StagingError(f"Failed to read staging tables: {e}") from e
        finally:
            await engine.dispose()

        batch = StagingBatch.from_frames(**frames)
        logger.info("Loaded staging tables", **batch.row_counts)
        return batch
