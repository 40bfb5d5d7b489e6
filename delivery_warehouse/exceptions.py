"""
Warehouse Exceptions

Error kinds raised by the merge engine. Row-level errors (``MalformedInput``,
``UnresolvedReference``) are recovered locally: the offending staging row is
excluded and the error is recorded in the cycle report. ``TransactionFailure``
is fatal to the cycle and carries whatever report was built before the
rollback.
"""

from typing import Optional


class WarehouseError(Exception):
    """Base exception for all warehouse errors."""


class RowError(WarehouseError):
    """
    Error attached to a single staging row.

    Attributes:
        relation: Staging or warehouse relation the row belongs to
        natural_key: Natural key of the row, when it could be derived
        row_number: Zero-based position of the row in its staging frame
    """

    def __init__(
        self,
        message: str,
        relation: Optional[str] = None,
        natural_key: Optional[str] = None,
        row_number: Optional[int] = None,
    ):
        super().__init__(message)
        self.message = message
        self.relation = relation
        self.natural_key = natural_key
        self.row_number = row_number


class MalformedInput(RowError):
    """Raised when a staging value cannot be coerced to its target type."""


class MalformedTimestamp(MalformedInput):
    """Raised when an order timestamp cannot be normalized."""


class UnresolvedReference(RowError):
    """Raised when a fact row references a customer or restaurant that is not in its dimension."""


class AmbiguousGeoMatch(RowError):
    """More than one location matched a restaurant city; resolved by tie-break."""

    def __init__(self, message: str, candidates: int = 0, **kwargs):
        super().__init__(message, **kwargs)
        self.candidates = candidates


class IntegrityViolation(WarehouseError):
    """A post-merge quality check found orphaned or duplicated keys."""

    def __init__(self, message: str, check_name: str, orphan_count: int):
        super().__init__(message)
        self.check_name = check_name
        self.orphan_count = orphan_count


class TransactionFailure(WarehouseError):
    """Storage-layer failure during a cycle. All writes of the cycle were rolled back."""

    def __init__(self, message: str, report=None):
        super().__init__(message)
        self.report = report

    @property
    def excluded_natural_keys(self) -> set:
        if self.report is None:
            return set()
        return self.report.excluded_natural_keys


class SchemaVersionMismatch(WarehouseError):
    """The target warehouse was created with a different schema version."""


class StagingError(WarehouseError):
    """A staging relation is missing or lacks required columns."""
