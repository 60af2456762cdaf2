"""
Test factories for generating realistic test data.

Uses factory_boy for declarative test data generation.
"""

from .work_order import (
    WorkOrderFieldsFactory,
    ImportRowFactory,
    LegacyWorkOrderRowFactory,
)

__all__ = [
    "WorkOrderFieldsFactory",
    "ImportRowFactory",
    "LegacyWorkOrderRowFactory",
]
