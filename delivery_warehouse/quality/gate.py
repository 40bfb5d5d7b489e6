"""
Post-Merge Quality Gate

Runs inside the merge transaction once every relation has been merged:

- Orphan and natural-key uniqueness checks (reported, never blocking)
- Removal of fact rows whose amount is a known invalid sentinel
- Row counts per warehouse relation
"""

from typing import TYPE_CHECKING, Dict, Sequence

import structlog
from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from delivery_warehouse.database.models import (
    WAREHOUSE_TABLES,
    DimCustomer,
    DimDate,
    DimLocation,
    DimRestaurant,
    FactOrder,
)
from delivery_warehouse.exceptions import IntegrityViolation
from delivery_warehouse.quality.validators import (
    CheckKind,
    ValidationResult,
    WarehouseValidator,
)

if TYPE_CHECKING:
    from delivery_warehouse.merge.report import CycleReport

logger = structlog.get_logger(__name__)


def create_warehouse_validator() -> WarehouseValidator:
    """Referential and uniqueness checks over the star schema"""
    return (
        WarehouseValidator()
        .add_orphan_check(FactOrder.date_key, DimDate.date_key)
        .add_orphan_check(FactOrder.customer_key, DimCustomer.customer_key)
        .add_orphan_check(FactOrder.restaurant_key, DimRestaurant.restaurant_key)
        .add_orphan_check(FactOrder.location_key, DimLocation.location_key)
        .add_orphan_check(DimRestaurant.location_key, DimLocation.location_key)
        .add_unique_check(FactOrder.order_nk)
        .add_unique_check(DimCustomer.user_id_nat)
        .add_unique_check(DimRestaurant.restaurant_id_nat)
        .add_unique_check(DimLocation.location_nk)
        .add_unique_check(DimDate.date_iso)
    )


class QualityGate:
    """
    Example:
        gate = QualityGate(invalid_amounts=[0.0, -1.0])
        await gate.run(session, report)
    """

    def __init__(self, invalid_amounts: Sequence[float] = (0.0, -1.0)):
        self.invalid_amounts = list(invalid_amounts)
        self.validator = create_warehouse_validator()

    async def delete_invalid_measures(self, session: AsyncSession) -> int:
        """Delete fact rows whose stored amount equals an invalid sentinel"""
        if not self.invalid_amounts:
            return 0
        outcome = await session.execute(
            delete(FactOrder)
            .where(FactOrder.sales_amount.in_(self.invalid_amounts))
            .execution_options(synchronize_session=False)
        )
        deleted = outcome.rowcount or 0
        if deleted:
            logger.info("Deleted facts with invalid amounts", rows=deleted, amounts=self.invalid_amounts)
        return deleted

    async def row_counts(self, session: AsyncSession) -> Dict[str, int]:
        counts = {}
        for model in WAREHOUSE_TABLES:
            counts[model.__tablename__] = await session.scalar(select(func.count()).select_from(model))
        return counts

    async def run(self, session: AsyncSession, report: "CycleReport") -> ValidationResult:
        """Evaluate every check and record the outcome on ``report``"""
        result = await self.validator.validate(session)

        for check in result.checks:
            if check.kind == CheckKind.ORPHAN:
                report.orphan_counts[check.name] = check.failed_rows
            if not check.passed:
                report.record(IntegrityViolation(check.message, check.name, check.failed_rows))

        report.invalid_measures_deleted = await self.delete_invalid_measures(session)
        report.row_counts = await self.row_counts(session)

        logger.info(
            "Quality gate complete",
            status=result.status.value,
            row_counts=report.row_counts,
            invalid_measures_deleted=report.invalid_measures_deleted,
        )
        return result
