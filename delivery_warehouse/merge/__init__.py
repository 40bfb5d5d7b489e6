"""
Merge Engine Module
"""
from .cycle import MergeCycle, run_merge_cycle
from .dimensions import CUSTOMER, DIMENSIONS, LOCATION, RESTAURANT, DimensionMerger, merge_calendar
from .facts import FactMerger
from .geo import GeoLinker, GeoLinkResult
from .report import CycleIssue, CycleReport, CycleStatus, IssueKind, MergeStats

__all__ = [
    "MergeCycle",
    "run_merge_cycle",
    "CUSTOMER",
    "DIMENSIONS",
    "LOCATION",
    "RESTAURANT",
    "DimensionMerger",
    "merge_calendar",
    "FactMerger",
    "GeoLinker",
    "GeoLinkResult",
    "CycleIssue",
    "CycleReport",
    "CycleStatus",
    "IssueKind",
    "MergeStats",
]
