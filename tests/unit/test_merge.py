"""
Unit Tests - Merge Engine
"""
import pytest
from sqlalchemy import func, select, update
from sqlalchemy.exc import OperationalError

from delivery_warehouse.database.models import DimCustomer, DimLocation, DimRestaurant, FactOrder
from delivery_warehouse.exceptions import TransactionFailure
from delivery_warehouse.merge import (
    CUSTOMER,
    LOCATION,
    CycleStatus,
    DimensionMerger,
    FactMerger,
    IssueKind,
    MergeCycle,
    run_merge_cycle,
)
from delivery_warehouse.merge.geo import LocationCandidate, match_candidates, rank_candidates
from delivery_warehouse.merge.report import CycleIssue
from delivery_warehouse.quality.gate import QualityGate
from delivery_warehouse.staging import StagingBatch
from delivery_warehouse.transformation.cleaners import prepare_orders

USD_ORDER_NK = "7|3|2019-11-02 10:00:00|USD|2|500"
INR_ORDER_NK = "8|4|2019-11-03 19:30:00|INR|1|250.5"
ZERO_ORDER_NK = "9|5|2019-11-03 12:00:00|INR|1|0.0"


async def _location_key(session, city):
    return await session.scalar(select(DimLocation.location_key).where(DimLocation.city == city))


async def _fact(session, natural_key):
    result = await session.execute(
        select(
            FactOrder.order_key,
            FactOrder.sales_amount,
            FactOrder.currency,
            FactOrder.date_key,
            FactOrder.location_key,
        ).where(FactOrder.order_nk == natural_key)
    )
    return result.one_or_none()


class TestDimensionMerger:
    """Tests for DimensionMerger"""

    @pytest.mark.asyncio
    async def test_merge_is_idempotent(self, session, staging_batch):
        """Test re-merging keeps surrogate keys and adds nothing"""
        merger = DimensionMerger(CUSTOMER, batch_size=2)

        first, errors = await merger.run(session, staging_batch.users)
        await session.commit()
        keys_before = dict((await session.execute(
            select(DimCustomer.user_id_nat, DimCustomer.customer_key)
        )).all())

        second, _ = await merger.run(session, staging_batch.users)
        await session.commit()
        keys_after = dict((await session.execute(
            select(DimCustomer.user_id_nat, DimCustomer.customer_key)
        )).all())

        assert errors == []
        assert (first.inserted, first.updated) == (3, 0)
        assert (second.inserted, second.updated) == (0, 3)
        assert keys_after == keys_before
        assert len(set(keys_after.values())) == 3

    @pytest.mark.asyncio
    async def test_refresh_overwrites_with_nulls(self, session, staging_records):
        """Test full refresh, including attributes that became null"""
        merger = DimensionMerger(CUSTOMER)
        await merger.run(session, StagingBatch.from_records(users=staging_records["users"]).users)

        changed = dict(staging_records["users"][0], email="", monthly_income="More than 50000")
        await merger.run(session, StagingBatch.from_records(users=[changed]).users)
        await session.commit()

        row = (await session.execute(
            select(DimCustomer.email, DimCustomer.income_group, DimCustomer.income_group_order)
            .where(DimCustomer.user_id_nat == "7")
        )).one()

        assert row.email is None
        assert row.income_group == "50k+"
        assert row.income_group_order == 4

    @pytest.mark.asyncio
    async def test_enrichment_applied(self, session, staging_batch):
        """Test derived attributes are written with the dimension"""
        await DimensionMerger(CUSTOMER).run(session, staging_batch.users)
        await session.commit()

        rows = dict((await session.execute(
            select(DimCustomer.user_id_nat, DimCustomer.education_group)
        )).all())

        assert rows == {"7": "Higher Education", "8": "Doctoral", "9": "Higher Education"}

    def test_prepare_excludes_malformed_rows(self, staging_records):
        """Test uncoercible attributes exclude the row with its natural key"""
        users = [dict(staging_records["users"][0], age="twenty"), staging_records["users"][1]]
        frame = StagingBatch.from_records(users=users).users

        prepared = DimensionMerger(CUSTOMER).prepare(frame)

        assert [r["user_id_nat"] for r in prepared.records] == ["8"]
        assert prepared.errors[0].natural_key == "7"
        assert prepared.errors[0].row_number == 0

    def test_prepare_last_row_wins(self, staging_records):
        """Test duplicate natural keys within a batch"""
        users = [staging_records["users"][0], dict(staging_records["users"][0], name="Asha K")]
        frame = StagingBatch.from_records(users=users).users

        prepared = DimensionMerger(CUSTOMER).prepare(frame)

        assert len(prepared.records) == 1
        assert prepared.records[0]["name"] == "Asha K"

    def test_location_requires_city(self):
        """Test locations without a city are rejected"""
        frame = StagingBatch.from_records(location=[
            {"country": "India", "state": "Goa", "city": ""},
            {"country": "India", "state": "Goa", "city": "Panaji"},
        ]).location

        prepared = DimensionMerger(LOCATION).prepare(frame)

        assert [r["location_nk"] for r in prepared.records] == ["India|Goa|Panaji"]
        assert prepared.excluded == 1


class TestGeoRanking:
    """Tests for candidate matching and ranking"""

    def test_match_is_case_insensitive_substring(self):
        """Test substring matching"""
        locations = [
            LocationCandidate(1, "Bangalore"),
            LocationCandidate(2, "Pune"),
            LocationCandidate(3, "  "),
        ]

        matches = match_candidates("Koramangala,BANGALORE", locations)

        assert [m.location_key for m in matches] == [1]

    def test_no_city_matches_nothing(self):
        """Test missing restaurant city"""
        assert match_candidates(None, [LocationCandidate(1, "Pune")]) == []

    def test_rank_shortest_then_lowest_key(self):
        """Test deterministic tie-break"""
        ranked = rank_candidates([
            LocationCandidate(5, "New Delhi"),
            LocationCandidate(9, "Delhi"),
            LocationCandidate(2, "Delhi"),
        ])

        assert [c.location_key for c in ranked] == [2, 9, 5]


class TestMergeCycle:
    """Tests for the full merge cycle"""

    @pytest.mark.asyncio
    async def test_usd_order_converted(self, warehouse_engine, session, merge_settings, staging_batch):
        """Test a USD order lands in INR at the configured rate"""
        await MergeCycle(warehouse_engine, merge_settings).run(staging_batch)

        fact = await _fact(session, USD_ORDER_NK)

        assert fact.currency == "INR"
        assert fact.sales_amount == pytest.approx(43500.0)
        assert fact.date_key == 20191102

    @pytest.mark.asyncio
    async def test_zero_amount_removed(self, warehouse_engine, session, merge_settings, staging_batch):
        """Test the quality gate deletes zero-amount orders"""
        report = await MergeCycle(warehouse_engine, merge_settings).run(staging_batch)

        assert await _fact(session, ZERO_ORDER_NK) is None
        assert report.invalid_measures_deleted == 1
        assert report.row_counts["fact_order"] == 2

    @pytest.mark.asyncio
    async def test_report_counts(self, warehouse_engine, merge_settings, staging_batch):
        """Test the success report"""
        report = await MergeCycle(warehouse_engine, merge_settings).run(staging_batch)

        assert report.status == CycleStatus.COMPLETED
        assert report.row_counts == {
            "dim_date": 2,
            "dim_customer": 3,
            "dim_restaurant": 3,
            "dim_location": 3,
            "fact_order": 2,
        }
        assert report.merges["fact_order"].inserted == 3
        assert report.orphan_counts and not report.has_integrity_violations
        assert report.excluded_natural_keys == set()

    @pytest.mark.asyncio
    async def test_geo_linkage(self, warehouse_engine, session, merge_settings, staging_batch):
        """Test restaurant and fact locations, including the ambiguous match"""
        report = await MergeCycle(warehouse_engine, merge_settings).run(staging_batch)

        bangalore = await _location_key(session, "Bangalore")
        delhi = await _location_key(session, "Delhi")
        restaurants = dict((await session.execute(
            select(DimRestaurant.restaurant_id_nat, DimRestaurant.location_key)
        )).all())

        assert restaurants == {"3": bangalore, "4": delhi, "5": None}
        assert (await _fact(session, USD_ORDER_NK)).location_key == bangalore
        assert (await _fact(session, INR_ORDER_NK)).location_key == delhi
        assert report.ambiguous_geo_matches == 1
        assert report.issues_of(IssueKind.AMBIGUOUS_GEO_MATCH)[0].natural_key == "4"
        assert report.restaurants_linked == 2
        assert report.facts_linked == 2

    @pytest.mark.asyncio
    async def test_geo_assignment_not_overwritten(self, warehouse_engine, session, merge_settings, staging_batch):
        """Test an existing restaurant location survives later cycles"""
        cycle = MergeCycle(warehouse_engine, merge_settings)
        await cycle.run(staging_batch)

        new_delhi = await _location_key(session, "New Delhi")
        await session.execute(
            update(DimRestaurant)
            .where(DimRestaurant.restaurant_id_nat == "4")
            .values(location_key=new_delhi)
        )
        await session.commit()

        report = await cycle.run(staging_batch)
        location = await session.scalar(
            select(DimRestaurant.location_key).where(DimRestaurant.restaurant_id_nat == "4")
        )

        assert location == new_delhi
        assert report.ambiguous_geo_matches == 0

    @pytest.mark.asyncio
    async def test_measures_overwritten_not_accumulated(self, warehouse_engine, session, merge_settings, staging_records):
        """Test a re-presented order replaces the stored amount"""
        order = {"user_id": "7", "r_id": "3", "order_date": "2019-11-05 09:00:00",
                 "sales_qty": "1", "sales_amount": "600", "currency": "INR"}
        batch = StagingBatch.from_records(
            users=staging_records["users"],
            restaurant=staging_records["restaurant"],
            orders=[order],
        )
        natural_key = "7|3|2019-11-05 09:00:00|INR|1|600"
        cycle = MergeCycle(warehouse_engine, merge_settings)

        await cycle.run(batch)
        first = await _fact(session, natural_key)
        await session.execute(
            update(FactOrder).where(FactOrder.order_nk == natural_key).values(sales_amount=500.0)
        )
        await session.commit()

        await cycle.run(batch)
        second = await _fact(session, natural_key)
        count = await session.scalar(select(func.count()).select_from(FactOrder))

        assert count == 1
        assert second.sales_amount == 600.0
        assert second.order_key == first.order_key

    @pytest.mark.asyncio
    async def test_rate_change_does_not_compound(self, warehouse_engine, session, merge_settings, staging_batch):
        """Test amounts are always converted from the staging value"""
        await MergeCycle(warehouse_engine, merge_settings).run(staging_batch)
        report = await MergeCycle(warehouse_engine, merge_settings, usd_to_inr_rate=80.0).run(staging_batch)

        fact = await _fact(session, USD_ORDER_NK)

        assert report.usd_to_inr_rate == 80.0
        assert fact.sales_amount == pytest.approx(40000.0)
        assert fact.currency == "INR"

    @pytest.mark.asyncio
    async def test_unresolved_reference_excluded(self, warehouse_engine, session, merge_settings, staging_records):
        """Test orders for unknown customers are left out and reported"""
        orders = staging_records["orders"] + [
            {"user_id": "99", "r_id": "3", "order_date": "2019-11-04 08:00:00",
             "sales_qty": "1", "sales_amount": "120", "currency": "INR"},
        ]
        batch = StagingBatch.from_records(**dict(staging_records, orders=orders))
        missing_nk = "99|3|2019-11-04 08:00:00|INR|1|120"

        report = await MergeCycle(warehouse_engine, merge_settings).run(batch)

        assert await _fact(session, missing_nk) is None
        assert missing_nk in report.excluded_natural_keys
        issue = report.issues_of(IssueKind.UNRESOLVED_REFERENCE)[0]
        assert issue.relation == "orders"
        assert issue.row_number == 3
        assert report.merges["fact_order"].excluded == 1
        assert not report.has_integrity_violations

    @pytest.mark.asyncio
    async def test_malformed_timestamp_excluded(self, warehouse_engine, session, merge_settings, staging_records):
        """Test a bad timestamp excludes only its row"""
        orders = staging_records["orders"] + [
            {"user_id": "7", "r_id": "3", "order_date": "31/12/2019",
             "sales_qty": "1", "sales_amount": "120", "currency": "INR"},
        ]
        batch = StagingBatch.from_records(**dict(staging_records, orders=orders))

        report = await MergeCycle(warehouse_engine, merge_settings).run(batch)

        issues = report.issues_of(IssueKind.MALFORMED_INPUT)
        assert [(i.relation, i.row_number) for i in issues] == [("orders", 3)]
        assert report.row_counts["fact_order"] == 2
        assert report.row_counts["dim_date"] == 2

    @pytest.mark.asyncio
    async def test_long_text_values_stored(self, warehouse_engine, session, merge_settings, staging_records):
        """Test free-text staging values of any length are merged as-is"""
        long_name = "Asha " * 60
        users = [dict(staging_records["users"][0], name=long_name)] + staging_records["users"][1:]
        orders = staging_records["orders"] + [
            {"user_id": "8", "r_id": "4", "order_date": "2019-11-05 09:00:00",
             "sales_qty": "1", "sales_amount": "99", "currency": "Indian Rupee"},
        ]
        batch = StagingBatch.from_records(**dict(staging_records, users=users, orders=orders))

        report = await MergeCycle(warehouse_engine, merge_settings).run(batch)

        fact = await _fact(session, "8|4|2019-11-05 09:00:00|Indian Rupee|1|99")
        assert report.status == CycleStatus.COMPLETED
        assert fact.currency == "Indian Rupee"
        assert fact.sales_amount == 99.0
        name = await session.scalar(select(DimCustomer.name).where(DimCustomer.user_id_nat == "7"))
        assert name == long_name.strip()

    @pytest.mark.asyncio
    async def test_second_run_is_idempotent(self, warehouse_engine, merge_settings, staging_batch, snapshot):
        """Test identical input leaves every relation unchanged"""
        cycle = MergeCycle(warehouse_engine, merge_settings)

        await cycle.run(staging_batch)
        after_first = await snapshot()
        report = await cycle.run(staging_batch)
        after_second = await snapshot()

        assert after_second == after_first
        assert report.merges["dim_customer"].inserted == 0
        assert report.merges["dim_restaurant"].inserted == 0
        assert report.merges["dim_location"].inserted == 0
        assert report.merges["dim_date"].inserted == 0

    @pytest.mark.asyncio
    async def test_failure_rolls_back_cycle(self, warehouse_engine, merge_settings, staging_records, snapshot, monkeypatch):
        """Test a storage failure undoes every write of the cycle"""
        async def failing_gate(self, session, report):
            raise OperationalError("DELETE FROM fact_order", {}, Exception("disk I/O error"))

        monkeypatch.setattr(QualityGate, "run", failing_gate)
        orders = staging_records["orders"] + [
            {"user_id": "7", "r_id": "3", "order_date": "2019-11-04 08:00:00",
             "sales_qty": "lots", "sales_amount": "1", "currency": "INR"},
        ]
        batch = StagingBatch.from_records(**dict(staging_records, orders=orders))

        with pytest.raises(TransactionFailure) as exc:
            await MergeCycle(warehouse_engine, merge_settings).run(batch)

        tables = await snapshot()
        assert all(rows == [] for rows in tables.values())
        assert exc.value.report.status == CycleStatus.FAILED
        assert "disk I/O error" in exc.value.report.error_message
        assert exc.value.excluded_natural_keys == {"7|3|2019-11-04 08:00:00|INR|lots|1"}

    @pytest.mark.asyncio
    async def test_invalid_rate_rejected(self, warehouse_engine, merge_settings):
        """Test conversion rate validation"""
        with pytest.raises(ValueError):
            MergeCycle(warehouse_engine, merge_settings, usd_to_inr_rate=0)


class TestFactMerger:
    """Tests for FactMerger"""

    @pytest.mark.asyncio
    async def test_currency_sweep(self, warehouse_engine, session, merge_settings, staging_batch):
        """Test rows still in USD are converted once"""
        await MergeCycle(warehouse_engine, merge_settings).run(staging_batch)
        await session.execute(
            update(FactOrder)
            .where(FactOrder.order_nk == INR_ORDER_NK)
            .values(sales_amount=10.0, currency="usd")
        )

        merger = FactMerger(merge_settings)
        converted = await merger.normalize_currency(session)
        again = await merger.normalize_currency(session)
        await session.commit()

        fact = await _fact(session, INR_ORDER_NK)
        usd_rows = await session.scalar(
            select(func.count()).select_from(FactOrder).where(func.upper(FactOrder.currency) == "USD")
        )

        assert (converted, again) == (1, 0)
        assert fact.sales_amount == pytest.approx(870.0)
        assert fact.currency == "INR"
        assert usd_rows == 0

    @pytest.mark.asyncio
    async def test_resolve_reports_every_missing_key(self, session, merge_settings, staging_batch):
        """Test unresolved orders name the missing references"""
        orders = prepare_orders(staging_batch.orders).records
        records, unresolved = await FactMerger(merge_settings).resolve(session, orders)

        assert records == []
        assert len(unresolved) == 3
        assert "customer '7'" in unresolved[0].message
        assert "restaurant '3'" in unresolved[0].message
        assert "date 20191102" in unresolved[0].message


class TestEntryPoint:
    """Tests for run_merge_cycle"""

    @pytest.mark.asyncio
    async def test_run_merge_cycle_with_batch(self, warehouse_url, staging_batch):
        """Test the one-call entry point"""
        report = await run_merge_cycle(staging_batch, warehouse_url=warehouse_url, usd_to_inr_rate=87.0)

        assert report.status == CycleStatus.COMPLETED
        assert report.row_counts["fact_order"] == 2

    @pytest.mark.asyncio
    async def test_run_merge_cycle_with_source(self, warehouse_url, staging_batch):
        """Test the entry point loads staging sources"""
        class StaticSource:
            async def load(self):
                return staging_batch

        report = await run_merge_cycle(StaticSource(), warehouse_url=warehouse_url)

        assert report.staging_rows == {"users": 3, "restaurant": 3, "orders": 3, "location": 3}


class TestCycleIssue:
    """Tests for report issue conversion"""

    def test_unknown_error_rejected(self):
        """Test only recoverable errors become issues"""
        with pytest.raises(TypeError):
            CycleIssue.from_error(ValueError("boom"))
