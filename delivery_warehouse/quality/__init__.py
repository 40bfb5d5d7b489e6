"""
Data Quality Module
"""
from .gate import QualityGate, create_warehouse_validator
from .validators import (
    CheckKind,
    ValidationCheck,
    ValidationResult,
    ValidationSeverity,
    ValidationStatus,
    WarehouseValidator,
)

__all__ = [
    "QualityGate",
    "create_warehouse_validator",
    "CheckKind",
    "ValidationCheck",
    "ValidationResult",
    "ValidationSeverity",
    "ValidationStatus",
    "WarehouseValidator",
]
