"""
Staging Module
"""
from .sources import (
    CsvStagingSource,
    DatabaseStagingSource,
    StagingBatch,
    StagingSource,
    normalize_column_name,
)

__all__ = [
    "CsvStagingSource",
    "DatabaseStagingSource",
    "StagingBatch",
    "StagingSource",
    "normalize_column_name",
]
