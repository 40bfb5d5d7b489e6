"""
Database Models - Star Schema Design

Food delivery warehouse at order grain:

Fact Tables:
- FactOrder: One row per order with quantity and amount measures

Dimension Tables:
- DimDate: Calendar attributes keyed by YYYYMMDD
- DimCustomer: Customer demographics with income and education buckets
- DimRestaurant: Restaurant attributes linked to a location
- DimLocation: Country / state / city hierarchy

Every surrogate-keyed table carries a unique natural key. Surrogate keys are
assigned once and never reused. There are no audit timestamps, so repeated
merges of unchanged staging data leave the tables identical.

Columns copied from staging are unbounded ``Text``; only values the merge
engine derives itself carry a length.
"""

from typing import Optional

from sqlalchemy import (
    Boolean,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


SCHEMA_VERSION = 2


class Base(DeclarativeBase):
    """Base class for all warehouse models"""
    pass


# =============================================================================
# DIMENSION TABLES
# =============================================================================

class DimDate(Base):
    """
    Date Dimension Table

    Populated from the distinct order dates seen in staging.
    """
    __tablename__ = "dim_date"

    date_key: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)  # YYYYMMDD
    date_iso: Mapped[str] = mapped_column(String(10), unique=True, nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    quarter: Mapped[int] = mapped_column(Integer, nullable=False)
    month: Mapped[int] = mapped_column(Integer, nullable=False)
    month_name: Mapped[str] = mapped_column(String(3), nullable=False)
    day: Mapped[int] = mapped_column(Integer, nullable=False)
    dow: Mapped[int] = mapped_column(Integer, nullable=False)  # 1=Monday .. 7=Sunday
    is_weekend: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    __table_args__ = (
        Index("ix_dim_date_year_month", "year", "month"),
    )


class DimCustomer(Base):
    """
    Customer Dimension Table

    Raw income and education labels are kept next to their derived buckets,
    which are recomputed on every merge.
    """
    __tablename__ = "dim_customer"

    customer_key: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id_nat: Mapped[str] = mapped_column(Text, unique=True, nullable=False)

    name: Mapped[Optional[str]] = mapped_column(Text)
    email: Mapped[Optional[str]] = mapped_column(Text)
    age: Mapped[Optional[int]] = mapped_column(Integer)
    gender: Mapped[Optional[str]] = mapped_column(Text)
    family_size: Mapped[Optional[int]] = mapped_column(Integer)

    # Derived
    monthly_income_raw: Mapped[Optional[str]] = mapped_column(Text)
    income_group: Mapped[str] = mapped_column(String(20), nullable=False, default="Unknown")
    income_group_order: Mapped[int] = mapped_column(Integer, nullable=False, default=9)
    education_raw: Mapped[Optional[str]] = mapped_column(Text)
    education_group: Mapped[str] = mapped_column(String(20), nullable=False, default="Unknown")
    education_group_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (
        Index("ix_dim_customer_income", "income_group_order"),
        Index("ix_dim_customer_education", "education_group_order"),
        {"sqlite_autoincrement": True},
    )


class DimLocation(Base):
    """
    Location Dimension Table

    Natural key is ``country|state|city`` with an empty state when absent.
    """
    __tablename__ = "dim_location"

    location_key: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    location_nk: Mapped[str] = mapped_column(Text, unique=True, nullable=False)

    country: Mapped[str] = mapped_column(Text, nullable=False)
    state: Mapped[Optional[str]] = mapped_column(Text)
    city: Mapped[str] = mapped_column(Text, nullable=False)

    __table_args__ = (
        Index("ix_dim_location_country", "country"),
        Index("ix_dim_location_state", "state"),
        Index("ix_dim_location_city", "city"),
        {"sqlite_autoincrement": True},
    )


class DimRestaurant(Base):
    """
    Restaurant Dimension Table

    ``location_key`` is assigned by the geo-linkage resolver and never
    overwritten once set.
    """
    __tablename__ = "dim_restaurant"

    restaurant_key: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    restaurant_id_nat: Mapped[str] = mapped_column(Text, unique=True, nullable=False)

    name: Mapped[Optional[str]] = mapped_column(Text)
    city: Mapped[Optional[str]] = mapped_column(Text)
    rating: Mapped[Optional[float]] = mapped_column(Float)
    cuisine: Mapped[Optional[str]] = mapped_column(Text)

    # Derived
    cuisine_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    primary_cuisine: Mapped[Optional[str]] = mapped_column(Text)

    location_key: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("dim_location.location_key")
    )

    __table_args__ = (
        Index("ix_dim_restaurant_location", "location_key"),
        {"sqlite_autoincrement": True},
    )


# =============================================================================
# FACT TABLES
# =============================================================================

class FactOrder(Base):
    """
    Order Fact Table

    Grain is one staging order. ``order_nk`` is derived from the six
    order-defining fields, so re-ingesting an order refreshes its row
    instead of adding a new one.
    """
    __tablename__ = "fact_order"

    order_key: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_nk: Mapped[str] = mapped_column(Text, unique=True, nullable=False)

    # Dimension foreign keys
    date_key: Mapped[int] = mapped_column(
        Integer, ForeignKey("dim_date.date_key"), nullable=False
    )
    customer_key: Mapped[int] = mapped_column(
        Integer, ForeignKey("dim_customer.customer_key"), nullable=False
    )
    restaurant_key: Mapped[int] = mapped_column(
        Integer, ForeignKey("dim_restaurant.restaurant_key"), nullable=False
    )
    location_key: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("dim_location.location_key")
    )

    # Measures
    sales_qty: Mapped[int] = mapped_column(Integer, nullable=False)
    sales_amount: Mapped[float] = mapped_column(Float, nullable=False)

    # Degenerate dimension
    currency: Mapped[Optional[str]] = mapped_column(Text)

    __table_args__ = (
        Index("ix_fact_order_date", "date_key"),
        Index("ix_fact_order_customer", "customer_key"),
        Index("ix_fact_order_restaurant", "restaurant_key"),
        Index("ix_fact_order_location", "location_key"),
        {"sqlite_autoincrement": True},
    )


# =============================================================================
# METADATA
# =============================================================================

class SchemaVersion(Base):
    """Single-row table stamping the schema version the warehouse was built with"""
    __tablename__ = "etl_schema_version"

    version: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)


WAREHOUSE_TABLES = (DimDate, DimCustomer, DimRestaurant, DimLocation, FactOrder)
