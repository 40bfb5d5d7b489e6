"""
Merge Cycle Report

Aggregates merge statistics, quality results and every recovered row-level
error of one cycle.
"""

from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Set

from pydantic import BaseModel, Field

from delivery_warehouse.exceptions import (
    AmbiguousGeoMatch,
    IntegrityViolation,
    MalformedInput,
    UnresolvedReference,
)


class IssueKind(str, Enum):
    """Recovered error kinds"""
    MALFORMED_INPUT = "malformed_input"
    UNRESOLVED_REFERENCE = "unresolved_reference"
    AMBIGUOUS_GEO_MATCH = "ambiguous_geo_match"
    INTEGRITY_VIOLATION = "integrity_violation"


_ROW_ERROR_KINDS = {
    MalformedInput: IssueKind.MALFORMED_INPUT,
    UnresolvedReference: IssueKind.UNRESOLVED_REFERENCE,
    AmbiguousGeoMatch: IssueKind.AMBIGUOUS_GEO_MATCH,
}


class CycleStatus(str, Enum):
    """Merge cycle status"""
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class CycleIssue(BaseModel):
    """One recovered error"""
    kind: IssueKind
    message: str
    relation: Optional[str] = None
    natural_key: Optional[str] = None
    row_number: Optional[int] = None

    @classmethod
    def from_error(cls, error: Exception) -> "CycleIssue":
        if isinstance(error, IntegrityViolation):
            return cls(
                kind=IssueKind.INTEGRITY_VIOLATION,
                message=str(error),
                relation=error.check_name,
            )
        for error_type, kind in _ROW_ERROR_KINDS.items():
            if isinstance(error, error_type):
                return cls(
                    kind=kind,
                    message=error.message,
                    relation=error.relation,
                    natural_key=error.natural_key,
                    row_number=error.row_number,
                )
        raise TypeError(f"Not a recoverable error: {type(error).__name__}")


class MergeStats(BaseModel):
    """Upsert outcome for one relation"""
    relation: str
    inserted: int = 0
    updated: int = 0
    excluded: int = 0


class CycleReport(BaseModel):
    """Result of a merge cycle"""
    status: CycleStatus = CycleStatus.RUNNING
    started_at: datetime = Field(default_factory=datetime.utcnow)
    completed_at: Optional[datetime] = None
    duration_seconds: float = 0
    usd_to_inr_rate: float
    staging_rows: Dict[str, int] = Field(default_factory=dict)
    merges: Dict[str, MergeStats] = Field(default_factory=dict)
    restaurants_linked: int = 0
    facts_linked: int = 0
    ambiguous_geo_matches: int = 0
    currency_normalized: int = 0
    invalid_measures_deleted: int = 0
    row_counts: Dict[str, int] = Field(default_factory=dict)
    orphan_counts: Dict[str, int] = Field(default_factory=dict)
    issues: List[CycleIssue] = Field(default_factory=list)
    error_message: Optional[str] = None

    def record(self, error: Exception) -> None:
        self.issues.append(CycleIssue.from_error(error))

    def issues_of(self, kind: IssueKind) -> List[CycleIssue]:
        return [i for i in self.issues if i.kind == kind]

    @property
    def excluded_natural_keys(self) -> Set[str]:
        """Natural keys of rows left out of the merge"""
        excluded_kinds = (IssueKind.MALFORMED_INPUT, IssueKind.UNRESOLVED_REFERENCE)
        return {
            i.natural_key
            for i in self.issues
            if i.kind in excluded_kinds and i.natural_key is not None
        }

    @property
    def has_integrity_violations(self) -> bool:
        return any(count > 0 for count in self.orphan_counts.values())

    def finish(self, status: CycleStatus, error_message: Optional[str] = None) -> None:
        self.status = status
        self.error_message = error_message
        self.completed_at = datetime.utcnow()
        self.duration_seconds = (self.completed_at - self.started_at).total_seconds()
