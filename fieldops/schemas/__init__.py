from fieldops.schemas.work_order import (
    WorkOrderFields,
    WorkOrderCreate,
    WorkOrderUpdate,
    WorkOrder,
    WorkOrderFilters,
    WorkOrderStats,
    BulkUpsertResult,
)
from fieldops.schemas.backup import (
    NamespaceBackup,
    RestoreResult,
    NamespaceStats,
)

__all__ = [
    "WorkOrderFields",
    "WorkOrderCreate",
    "WorkOrderUpdate",
    "WorkOrder",
    "WorkOrderFilters",
    "WorkOrderStats",
    "BulkUpsertResult",
    "NamespaceBackup",
    "RestoreResult",
    "NamespaceStats",
]
