"""
Warehouse Validation Module

Rule-based data quality checks evaluated with SQL against the warehouse
relations inside the caller's transaction.

Features:
- Referential integrity (orphan) checks
- Natural-key uniqueness checks
- Severity levels and an overall status
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog
from sqlalchemy import distinct, exists, func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import InstrumentedAttribute

logger = structlog.get_logger(__name__)


class ValidationSeverity(str, Enum):
    """Severity levels for validation failures"""
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"


class ValidationStatus(str, Enum):
    """Overall validation status"""
    PASSED = "passed"
    FAILED = "failed"
    PARTIAL = "partial"


class CheckKind(str, Enum):
    ORPHAN = "orphan"
    UNIQUE = "unique"


@dataclass
class ValidationCheck:
    """Single validation check result"""
    name: str
    kind: CheckKind
    passed: bool
    severity: ValidationSeverity
    message: str
    details: Optional[Dict[str, Any]] = None
    failed_rows: int = 0
    total_rows: int = 0


@dataclass
class ValidationResult:
    """Complete validation suite result"""
    status: ValidationStatus
    total_checks: int
    passed_checks: int
    failed_checks: int
    warning_count: int
    checks: List[ValidationCheck] = field(default_factory=list)
    started_at: datetime = field(default_factory=datetime.utcnow)
    completed_at: Optional[datetime] = None

    @property
    def success_rate(self) -> float:
        """Percentage of passed checks"""
        if self.total_checks == 0:
            return 100.0
        return (self.passed_checks / self.total_checks) * 100

    def failures(self, kind: Optional[CheckKind] = None) -> List[ValidationCheck]:
        return [c for c in self.checks if not c.passed and (kind is None or c.kind == kind)]


SqlCheck = Callable[[AsyncSession], Awaitable[ValidationCheck]]


def _column_label(column: InstrumentedAttribute) -> str:
    return f"{column.class_.__tablename__}.{column.key}"


class WarehouseValidator:
    """
    Warehouse validator with a chainable check suite.

    Example:
        validator = (
            WarehouseValidator()
            .add_orphan_check(FactOrder.customer_key, DimCustomer.customer_key)
            .add_unique_check(FactOrder.order_nk)
        )
        result = await validator.validate(session)
    """

    def __init__(self, strict_mode: bool = False):
        self.strict_mode = strict_mode  # Fail on any warning
        self._checks: List[SqlCheck] = []

    def reset(self) -> None:
        self._checks = []

    def add_orphan_check(
        self,
        column: InstrumentedAttribute,
        reference: InstrumentedAttribute,
        severity: ValidationSeverity = ValidationSeverity.ERROR,
    ) -> "WarehouseValidator":
        """Count non-null ``column`` values with no matching ``reference`` row"""
        name = f"orphan_{column.class_.__tablename__}_{column.key}"
        label = _column_label(column)

        async def check(session: AsyncSession) -> ValidationCheck:
            total = await session.scalar(
                select(func.count()).select_from(column.class_).where(column.is_not(None))
            )
            orphans = await session.scalar(
                select(func.count())
                .select_from(column.class_)
                .where(column.is_not(None))
                .where(~exists().where(reference == column))
            )
            passed = orphans == 0
            return ValidationCheck(
                name=name,
                kind=CheckKind.ORPHAN,
                passed=passed,
                severity=severity,
                message=(
                    f"{label} has {orphans} orphan references to {_column_label(reference)}"
                    if not passed else "Referential integrity maintained"
                ),
                details={"orphan_count": orphans, "reference": _column_label(reference)},
                failed_rows=orphans,
                total_rows=total,
            )

        self._checks.append(check)
        return self

    def add_unique_check(
        self,
        column: InstrumentedAttribute,
        severity: ValidationSeverity = ValidationSeverity.ERROR,
    ) -> "WarehouseValidator":
        """Check that ``column`` holds no duplicate values"""
        name = f"unique_{column.class_.__tablename__}_{column.key}"
        label = _column_label(column)

        async def check(session: AsyncSession) -> ValidationCheck:
            row = (
                await session.execute(
                    select(func.count(column), func.count(distinct(column))).select_from(column.class_)
                )
            ).one()
            total, unique_count = row
            duplicate_count = total - unique_count
            passed = duplicate_count == 0
            return ValidationCheck(
                name=name,
                kind=CheckKind.UNIQUE,
                passed=passed,
                severity=severity,
                message=(
                    f"{label} has {duplicate_count} duplicate values"
                    if not passed else f"{label} values are unique"
                ),
                details={"unique_count": unique_count, "duplicate_count": duplicate_count},
                failed_rows=duplicate_count,
                total_rows=total,
            )

        self._checks.append(check)
        return self

    async def validate(self, session: AsyncSession) -> ValidationResult:
        """
        Run all checks against the warehouse.

        Args:
            session: Session whose transaction the checks should observe

        Returns:
            ValidationResult with all check results
        """
        started_at = datetime.utcnow()
        results = []

        logger.info("Running warehouse validation checks", checks=len(self._checks))

        for check_func in self._checks:
            result = await check_func(session)
            results.append(result)

            if not result.passed:
                logger.warning(
                    f"Validation failed: {result.name}",
                    message=result.message,
                    severity=result.severity.value,
                )

        passed_checks = sum(1 for r in results if r.passed)
        failed_checks = sum(1 for r in results if not r.passed and r.severity == ValidationSeverity.ERROR)
        warning_count = sum(1 for r in results if not r.passed and r.severity == ValidationSeverity.WARNING)

        if failed_checks > 0:
            status = ValidationStatus.FAILED
        elif warning_count > 0 and self.strict_mode:
            status = ValidationStatus.FAILED
        elif warning_count > 0:
            status = ValidationStatus.PARTIAL
        else:
            status = ValidationStatus.PASSED

        validation_result = ValidationResult(
            status=status,
            total_checks=len(results),
            passed_checks=passed_checks,
            failed_checks=failed_checks,
            warning_count=warning_count,
            checks=results,
            started_at=started_at,
            completed_at=datetime.utcnow(),
        )

        logger.info(
            f"Validation complete: {status.value}",
            passed=passed_checks,
            failed=failed_checks,
            warnings=warning_count,
        )

        return validation_result
