"""
Fact Merge Engine

Resolves the surrogate keys of each prepared staging order and upserts it
into ``fact_order`` by natural key. Existing rows get every foreign key and
measure overwritten from the fresh resolution; measures are never
accumulated. ``location_key`` is left to the geo-linkage resolver.
"""

from typing import Any, Dict, List, Sequence, Tuple

import structlog
from sqlalchemy import func, update
from sqlalchemy.ext.asyncio import AsyncSession

from delivery_warehouse.config.settings import MergeSettings
from delivery_warehouse.database.models import DimCustomer, DimDate, DimRestaurant, FactOrder
from delivery_warehouse.database.upsert import existing_keys, fetch_key_map, upsert_rows
from delivery_warehouse.exceptions import UnresolvedReference
from delivery_warehouse.merge.report import MergeStats
from delivery_warehouse.transformation.cleaners import OrderRecord
from delivery_warehouse.transformation.enrichers import convert_currency

logger = structlog.get_logger(__name__)

FACT_REFRESH_COLUMNS = (
    "date_key",
    "customer_key",
    "restaurant_key",
    "sales_qty",
    "sales_amount",
    "currency",
)


class FactMerger:
    """
    Idempotent update-or-insert of order facts.

    Example:
        merger = FactMerger(settings.merge)
        stats, unresolved = await merger.merge(session, prepared.records)
    """

    def __init__(self, settings: MergeSettings):
        self.settings = settings

    def _measures(self, order: OrderRecord) -> Tuple[float, Any]:
        return convert_currency(
            order.sales_amount,
            order.currency,
            self.settings.usd_to_inr_rate,
            self.settings.source_currency,
            self.settings.target_currency,
        )

    async def resolve(
        self,
        session: AsyncSession,
        orders: Sequence[OrderRecord],
    ) -> Tuple[List[Dict[str, Any]], List[UnresolvedReference]]:
        """
        Look up the dimension keys of every order.

        Returns:
            Fact records ready for upsert, and the orders that could not be resolved
        """
        batch_size = self.settings.batch_size
        customers = await fetch_key_map(
            session, DimCustomer.user_id_nat, DimCustomer.customer_key,
            (o.user_id for o in orders), batch_size,
        )
        restaurants = await fetch_key_map(
            session, DimRestaurant.restaurant_id_nat, DimRestaurant.restaurant_key,
            (o.restaurant_id for o in orders), batch_size,
        )
        dates = await existing_keys(session, DimDate.date_key, (o.date_key for o in orders), batch_size)

        records: List[Dict[str, Any]] = []
        unresolved: List[UnresolvedReference] = []

        for order in orders:
            missing = []
            if order.user_id not in customers:
                missing.append(f"customer {order.user_id!r}")
            if order.restaurant_id not in restaurants:
                missing.append(f"restaurant {order.restaurant_id!r}")
            if order.date_key not in dates:
                missing.append(f"date {order.date_key}")

            if missing:
                error = UnresolvedReference(
                    f"unresolved {', '.join(missing)}",
                    relation="orders",
                    natural_key=order.natural_key,
                    row_number=order.row_number,
                )
                logger.warning(
                    "Excluding order with unresolved reference",
                    natural_key=order.natural_key,
                    missing=missing,
                )
                unresolved.append(error)
                continue

            amount, currency = self._measures(order)
            records.append({
                "order_nk": order.natural_key,
                "date_key": order.date_key,
                "customer_key": customers[order.user_id],
                "restaurant_key": restaurants[order.restaurant_id],
                "sales_qty": order.sales_qty,
                "sales_amount": amount,
                "currency": currency,
            })

        return records, unresolved

    async def merge(
        self,
        session: AsyncSession,
        orders: Sequence[OrderRecord],
    ) -> Tuple[MergeStats, List[UnresolvedReference]]:
        """Upsert resolvable orders; unresolved ones are excluded and returned"""
        records, unresolved = await self.resolve(session, orders)
        present = await existing_keys(
            session, FactOrder.order_nk, (r["order_nk"] for r in records), self.settings.batch_size
        )

        await upsert_rows(
            session,
            FactOrder,
            records,
            conflict_column="order_nk",
            update_columns=FACT_REFRESH_COLUMNS,
            batch_size=self.settings.batch_size,
        )

        stats = MergeStats(
            relation=FactOrder.__tablename__,
            inserted=len(records) - len(present),
            updated=len(present),
            excluded=len(unresolved),
        )
        logger.info(
            "Facts merged",
            inserted=stats.inserted,
            updated=stats.updated,
            unresolved=stats.excluded,
        )
        return stats, unresolved

    async def normalize_currency(self, session: AsyncSession) -> int:
        """
        Convert any fact rows still in the source currency.

        Rows merged by this engine are converted on resolution, so this sweep
        only touches rows written by earlier loads.
        """
        outcome = await session.execute(
            update(FactOrder)
            .where(func.lower(FactOrder.currency) == self.settings.source_currency.lower())
            .values(
                sales_amount=FactOrder.sales_amount * self.settings.usd_to_inr_rate,
                currency=self.settings.target_currency,
            )
            .execution_options(synchronize_session=False)
        )
        converted = outcome.rowcount or 0
        if converted:
            logger.info("Normalized fact currency", rows=converted, rate=self.settings.usd_to_inr_rate)
        return converted
