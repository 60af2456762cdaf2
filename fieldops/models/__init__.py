from fieldops.models.work_order_status import WorkOrderStatus
from fieldops.models.service_type import ServiceType
from fieldops.models.trouble_code import TroubleCode
from fieldops.models.meter_type import MeterType
from fieldops.models.user import User
from fieldops.models.user_group import UserGroup
from fieldops.models.work_order import (
    CANONICAL_FOREIGN_KEYS,
    CanonicalForeignKey,
    build_work_order_table,
    forget_work_order_table,
)

__all__ = [
    "WorkOrderStatus",
    "ServiceType",
    "TroubleCode",
    "MeterType",
    "User",
    "UserGroup",
    "CANONICAL_FOREIGN_KEYS",
    "CanonicalForeignKey",
    "build_work_order_table",
    "forget_work_order_table",
]
