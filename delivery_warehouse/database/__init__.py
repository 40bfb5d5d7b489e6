"""
Database Module
"""
from .connection import (
    init_database,
    close_database,
    get_engine,
    create_warehouse_engine,
    create_session_factory,
    check_database_health,
)
from .models import (
    Base,
    DimCustomer,
    DimDate,
    DimLocation,
    DimRestaurant,
    FactOrder,
    SCHEMA_VERSION,
)

__all__ = [
    "init_database",
    "close_database",
    "get_engine",
    "create_warehouse_engine",
    "create_session_factory",
    "check_database_health",
    "Base",
    "DimCustomer",
    "DimDate",
    "DimLocation",
    "DimRestaurant",
    "FactOrder",
    "SCHEMA_VERSION",
]
