"""
Test Suite Configuration
"""
from typing import AsyncGenerator, Awaitable, Callable, Dict, List

import pytest
import pytest_asyncio
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

from delivery_warehouse.config.settings import MergeSettings
from delivery_warehouse.database.connection import create_session_factory, create_warehouse_engine
from delivery_warehouse.database.models import WAREHOUSE_TABLES
from delivery_warehouse.staging import StagingBatch


@pytest.fixture
def warehouse_url(tmp_path) -> str:
    """A fresh SQLite warehouse file per test"""
    return f"sqlite+aiosqlite:///{tmp_path / 'warehouse.db'}"


@pytest_asyncio.fixture
async def warehouse_engine(warehouse_url) -> AsyncGenerator[AsyncEngine, None]:
    """Warehouse engine with the star schema created"""
    engine = await create_warehouse_engine(warehouse_url, echo=False)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session(warehouse_engine) -> AsyncGenerator[AsyncSession, None]:
    """Session on the test warehouse; tests open their own transactions"""
    session_factory = create_session_factory(warehouse_engine)
    async with session_factory() as session:
        yield session


@pytest.fixture
def merge_settings() -> MergeSettings:
    """Merge settings with a small batch size so chunking is exercised"""
    return MergeSettings(usd_to_inr_rate=87.0, batch_size=2)


@pytest.fixture
def staging_records() -> Dict[str, List[Dict[str, str]]]:
    """Staging rows as the external loader would present them"""
    return {
        "users": [
            {
                "user_id": "7", "name": "Asha", "email": "asha@example.com", "age": "24",
                "gender": "Female", "family_size": "3",
                "monthly_income": "10001 to 25000", "educational_qualifications": "Graduate",
            },
            {
                "user_id": "8", "name": "Ravi", "email": "ravi@example.com", "age": "31",
                "gender": "Male", "family_size": "2",
                "monthly_income": "No Income", "educational_qualifications": "Ph.D",
            },
            {
                "user_id": "9", "name": "Meera", "email": "meera@example.com", "age": "45",
                "gender": "Female", "family_size": "5",
                "monthly_income": "More than 50000", "educational_qualifications": "Post Graduate",
            },
        ],
        "restaurant": [
            {"id": "3", "name": "Spice Route", "city": "Koramangala,Bangalore", "rating": "4.2",
             "cuisine": "North Indian,Chinese"},
            {"id": "4", "name": "Dosa Corner", "city": "New Delhi", "rating": "3.9",
             "cuisine": "South Indian"},
            {"id": "5", "name": "Chai Point", "city": "Pune", "rating": "",
             "cuisine": ""},
        ],
        "orders": [
            {"user_id": "7", "r_id": "3", "order_date": "2019-11-02T10:00:00",
             "sales_qty": "2", "sales_amount": "500", "currency": "USD"},
            {"user_id": "8", "r_id": "4", "order_date": "2019-11-03 19:30:00",
             "sales_qty": "1", "sales_amount": "250.5", "currency": "INR"},
            {"user_id": "9", "r_id": "5", "order_date": "2019-11-03 12:00:00",
             "sales_qty": "1", "sales_amount": "0.0", "currency": "INR"},
        ],
        "location": [
            {"country": "India", "state": "Karnataka", "city": "Bangalore"},
            {"country": "India", "state": "Delhi", "city": "Delhi"},
            {"country": "India", "state": "Delhi", "city": "New Delhi"},
        ],
    }


@pytest.fixture
def staging_batch(staging_records) -> StagingBatch:
    return StagingBatch.from_records(**staging_records)


@pytest.fixture
def snapshot(warehouse_engine) -> Callable[[], Awaitable[Dict[str, List[tuple]]]]:
    """Read every warehouse relation ordered by its primary key"""
    async def read_tables() -> Dict[str, List[tuple]]:
        tables = {}
        async with warehouse_engine.connect() as conn:
            for model in WAREHOUSE_TABLES:
                table = model.__table__
                result = await conn.execute(select(table).order_by(*table.primary_key.columns))
                tables[table.name] = [tuple(row) for row in result.all()]
        return tables

    return read_tables
