"""
Prefect Workflow Orchestration - Warehouse Merge Cycle

Scheduled incremental merge of staging extracts into the delivery warehouse:
- Staging load from CSV extracts or stg_* tables
- Warehouse health check before merging
- One transactional merge cycle with retries
- Alerting on failures and integrity violations
"""

from typing import Optional

from prefect import flow, get_run_logger, task

from delivery_warehouse.config import get_settings
from delivery_warehouse.config.logging import configure_logging
from delivery_warehouse.database.connection import (
    check_database_health,
    close_database,
    get_engine,
    init_database,
)
from delivery_warehouse.exceptions import TransactionFailure
from delivery_warehouse.merge import IssueKind, MergeCycle
from delivery_warehouse.staging import CsvStagingSource, DatabaseStagingSource, StagingBatch


# =============================================================================
# TASKS
# =============================================================================

@task(
    name="load_staging",
    description="Load the four staging relations",
    retries=3,
    retry_delay_seconds=60,
)
async def load_staging(source: str = "csv", location: Optional[str] = None) -> StagingBatch:
    """Load staging from a CSV directory or a staging database"""
    logger = get_run_logger()

    if source == "csv":
        batch = await CsvStagingSource(location).load()
    elif source == "database":
        batch = await DatabaseStagingSource(location).load()
    else:
        raise ValueError(f"Unknown staging source: {source}")

    logger.info(f"Staging loaded: {batch.row_counts}")
    return batch


@task(
    name="merge_staging",
    description="Merge staging into the warehouse in one transaction",
    retries=2,
    retry_delay_seconds=120,
)
async def merge_staging(batch: StagingBatch, usd_to_inr_rate: Optional[float] = None) -> dict:
    """Run one merge cycle against the initialized warehouse"""
    logger = get_run_logger()

    engine = get_engine()
    if not await check_database_health(engine):
        raise RuntimeError("Warehouse is not reachable")

    report = await MergeCycle(engine, usd_to_inr_rate=usd_to_inr_rate).run(batch)

    logger.info(
        f"Merge complete in {report.duration_seconds:.2f}s: "
        f"{report.row_counts}, {len(report.issues)} issues"
    )
    return report.model_dump(mode="json")


@task(
    name="send_alert",
    description="Send alert notification",
)
async def send_alert(
    alert_type: str,
    message: str,
    severity: str = "info",
) -> None:
    """Send alert notification"""
    logger = get_run_logger()
    logger.warning(f"[{severity.upper()}] {alert_type}: {message}")


# =============================================================================
# FLOWS
# =============================================================================

@flow(
    name="warehouse_merge_cycle",
    description="Incremental merge of food delivery staging data into the star schema",
)
async def warehouse_merge_cycle(
    source: str = "csv",
    location: Optional[str] = None,
    warehouse_url: Optional[str] = None,
    usd_to_inr_rate: Optional[float] = None,
) -> dict:
    """
    Warehouse merge pipeline.

    Steps:
    1. Load staging relations
    2. Merge them into the warehouse
    3. Alert on rollback or integrity violations
    """
    logger = get_run_logger()
    configure_logging()

    await init_database(warehouse_url)
    try:
        batch = await load_staging(source, location)
        report = await merge_staging(batch, usd_to_inr_rate)
    except TransactionFailure as e:
        await send_alert(
            alert_type="Merge Rolled Back",
            message=f"{e} ({len(e.excluded_natural_keys)} rows excluded before failure)",
            severity="critical",
        )
        raise
    finally:
        await close_database()

    violations = [
        issue for issue in report["issues"]
        if issue["kind"] == IssueKind.INTEGRITY_VIOLATION.value
    ]
    if violations:
        await send_alert(
            alert_type="Integrity Violations",
            message=f"{len(violations)} quality checks failed after merge",
            severity="warning",
        )

    logger.info(f"Merge cycle {report['status']} for {get_settings().app_name}")
    return report


# =============================================================================
# DEPLOYMENT CONFIGURATION
# =============================================================================

if __name__ == "__main__":
    import asyncio

    asyncio.run(warehouse_merge_cycle())
