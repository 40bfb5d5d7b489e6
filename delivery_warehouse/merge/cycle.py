"""
Merge Cycle Orchestration

One cycle merges a staging batch into the warehouse inside a single
transaction, in dependency order:

1. Calendar dates derived from the valid staging orders
2. Location, customer and restaurant dimensions
3. Restaurant geo-linkage
4. Order facts, then fact geo-linkage and currency normalization
5. Quality gate

Row-level problems exclude the row and land in the report. Any database error
rolls the whole cycle back and surfaces as ``TransactionFailure``.
"""

from typing import Optional, Union

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

from delivery_warehouse.config import MergeSettings, get_settings
from delivery_warehouse.database.connection import create_session_factory, create_warehouse_engine
from delivery_warehouse.exceptions import TransactionFailure
from delivery_warehouse.merge.dimensions import DIMENSIONS, DimensionMerger, merge_calendar
from delivery_warehouse.merge.facts import FactMerger
from delivery_warehouse.merge.geo import GeoLinker, GeoLinkResult
from delivery_warehouse.merge.report import CycleReport, CycleStatus
from delivery_warehouse.quality.gate import QualityGate
from delivery_warehouse.staging.sources import StagingBatch, StagingSource
from delivery_warehouse.transformation.calendar import build_calendar
from delivery_warehouse.transformation.cleaners import OrderRecord, PreparedRows, prepare_orders

logger = structlog.get_logger(__name__)


class MergeCycle:
    """
    Incremental merge of one staging batch into the star schema.

    Example:
        engine = await create_warehouse_engine()
        report = await MergeCycle(engine).run(batch)
    """

    def __init__(
        self,
        engine: AsyncEngine,
        settings: Optional[MergeSettings] = None,
        usd_to_inr_rate: Optional[float] = None,
    ):
        settings = settings or get_settings().merge
        if usd_to_inr_rate is not None:
            if usd_to_inr_rate <= 0:
                raise ValueError("usd_to_inr_rate must be positive")
            settings = settings.model_copy(update={"usd_to_inr_rate": usd_to_inr_rate})

        self.engine = engine
        self.settings = settings
        self.session_factory = create_session_factory(engine)

    async def run(self, staging: StagingBatch) -> CycleReport:
        """
        Merge ``staging`` and return the cycle report.

        Raises:
            TransactionFailure: The cycle was rolled back; ``report`` is attached
        """
        report = CycleReport(
            usd_to_inr_rate=self.settings.usd_to_inr_rate,
            staging_rows=staging.row_counts,
        )
        logger.info("Merge cycle started", staging_rows=report.staging_rows, rate=report.usd_to_inr_rate)

        orders = prepare_orders(staging.orders)
        for error in orders.errors:
            report.record(error)

        try:
            async with self.session_factory() as session:
                async with session.begin():
                    await self._merge(session, staging, orders, report)
        except SQLAlchemyError as e:
            report.finish(CycleStatus.FAILED, error_message=str(e))
            logger.error(
                "Merge cycle rolled back",
                error=str(e),
                error_type=type(e).__name__,
                excluded=len(report.excluded_natural_keys),
            )
            raise TransactionFailure(f"Merge cycle rolled back: {e}", report=report) from e

        report.finish(CycleStatus.COMPLETED)
        logger.info(
            "Merge cycle completed",
            duration_seconds=report.duration_seconds,
            row_counts=report.row_counts,
            issues=len(report.issues),
        )
        return report

    async def _merge(
        self,
        session: AsyncSession,
        staging: StagingBatch,
        orders: PreparedRows[OrderRecord],
        report: CycleReport,
    ) -> None:
        batch_size = self.settings.batch_size

        calendar = build_calendar(order.order_date for order in orders.records)
        stats = await merge_calendar(session, calendar, batch_size)
        report.merges[stats.relation] = stats

        for spec in DIMENSIONS:
            merger = DimensionMerger(spec, batch_size)
            stats, errors = await merger.run(session, getattr(staging, spec.staging_relation))
            report.merges[stats.relation] = stats
            for error in errors:
                report.record(error)

        linker = GeoLinker()
        geo = GeoLinkResult()
        await linker.link_restaurants(session, geo)

        fact_merger = FactMerger(self.settings)
        stats, unresolved = await fact_merger.merge(session, orders.records)
        stats.excluded += orders.excluded
        report.merges[stats.relation] = stats
        for error in unresolved:
            report.record(error)

        await linker.link_facts(session, geo)
        report.restaurants_linked = geo.restaurants_linked
        report.facts_linked = geo.facts_linked
        report.ambiguous_geo_matches = len(geo.ambiguous)
        for warning in geo.ambiguous:
            report.record(warning)

        report.currency_normalized = await fact_merger.normalize_currency(session)

        await QualityGate(self.settings.invalid_amounts).run(session, report)


async def run_merge_cycle(
    staging: Union[StagingBatch, StagingSource],
    warehouse_url: Optional[str] = None,
    usd_to_inr_rate: Optional[float] = None,
) -> CycleReport:
    """
    Merge a staging batch (or anything with an async ``load()``) into the warehouse.

    Args:
        staging: Batch to merge, or a staging source to load it from
        warehouse_url: Async SQLAlchemy URL, defaults to the configured warehouse
        usd_to_inr_rate: Override of the configured conversion rate

    Returns:
        CycleReport of the committed cycle
    """
    if not isinstance(staging, StagingBatch):
        staging = await staging.load()

    engine = await create_warehouse_engine(warehouse_url)
    try:
        return await MergeCycle(engine, usd_to_inr_rate=usd_to_inr_rate).run(staging)
    finally:
        await engine.dispose()
