"""
Canonical work order table.

Every project namespace owns exactly one ``work_orders`` table. The table is a
plain Core ``Table`` bound to a per-namespace ``MetaData`` (schema-qualified),
so the same definition serves hundreds of namespaces without declaring an ORM
class for each one.

Foreign keys point at the shared reference tables in the default schema. All of
them are ``ON DELETE RESTRICT ON UPDATE CASCADE``: a referenced code cannot be
deleted while in use, and renaming a code propagates into every namespace.
"""

from dataclasses import dataclass
from typing import Dict, Tuple

from sqlalchemy import (
    Column,
    DateTime,
    ForeignKey,
    Integer,
    JSON,
    MetaData,
    String,
    Table,
    Text,
    text,
)
from sqlalchemy.dialects import postgresql

from fieldops.models.meter_type import MeterType
from fieldops.models.service_type import ServiceType
from fieldops.models.trouble_code import TroubleCode
from fieldops.models.user import User
from fieldops.models.user_group import UserGroup
from fieldops.models.work_order_status import WorkOrderStatus

WORK_ORDER_TABLE = "work_orders"
DEFAULT_STATUS_CODE = "Open"

# Postgres stores attachments as TEXT[]; everything else gets a JSON list
AttachmentList = JSON().with_variant(postgresql.ARRAY(Text()), "postgresql")


@dataclass(frozen=True)
class CanonicalForeignKey:
    """One foreign key every namespace's work order table must carry."""

    name: str
    column: str
    ref_table: str
    ref_column: str
    ondelete: str = "RESTRICT"
    onupdate: str = "CASCADE"


CANONICAL_FOREIGN_KEYS: Tuple[CanonicalForeignKey, ...] = (
    CanonicalForeignKey("fk_status", "status", "work_order_statuses", "code"),
    CanonicalForeignKey("fk_service_type", "service_type", "service_types", "code"),
    CanonicalForeignKey("fk_trouble_code", "trouble", "trouble_codes", "code"),
    CanonicalForeignKey("fk_old_meter_type", "old_meter_type", "meter_types", "product_id"),
    CanonicalForeignKey("fk_new_meter_type", "new_meter_type", "meter_types", "product_id"),
    CanonicalForeignKey("fk_assigned_user", "assigned_user_id", "users", "id"),
    CanonicalForeignKey("fk_assigned_group", "assigned_group_id", "user_groups", "name"),
    CanonicalForeignKey("fk_scheduled_by", "scheduled_by", "users", "id"),
    CanonicalForeignKey("fk_completed_by", "completed_by", "users", "id"),
    CanonicalForeignKey("fk_created_by", "created_by", "users", "id"),
    CanonicalForeignKey("fk_updated_by", "updated_by", "users", "id"),
)

_REFERENCE_COLUMNS = {
    ("work_order_statuses", "code"): WorkOrderStatus.__table__.c.code,
    ("service_types", "code"): ServiceType.__table__.c.code,
    ("trouble_codes", "code"): TroubleCode.__table__.c.code,
    ("meter_types", "product_id"): MeterType.__table__.c.product_id,
    ("users", "id"): User.__table__.c.id,
    ("user_groups", "name"): UserGroup.__table__.c.name,
}

_FOREIGN_KEYS_BY_COLUMN: Dict[str, CanonicalForeignKey] = {
    fk.column: fk for fk in CANONICAL_FOREIGN_KEYS
}


def _fk(column_name: str) -> ForeignKey:
    fk = _FOREIGN_KEYS_BY_COLUMN[column_name]
    return ForeignKey(
        _REFERENCE_COLUMNS[(fk.ref_table, fk.ref_column)],
        name=fk.name,
        ondelete=fk.ondelete,
        onupdate=fk.onupdate,
    )


_TABLES: Dict[str, Table] = {}


def build_work_order_table(namespace: str) -> Table:
    """Return the canonical ``work_orders`` table for a namespace (cached)."""
    table = _TABLES.get(namespace)
    if table is None:
        table = _TABLES[namespace] = _define_work_order_table(namespace)
    return table


def forget_work_order_table(namespace: str) -> None:
    """Drop the cached table of a destroyed namespace."""
    _TABLES.pop(namespace, None)


def _define_work_order_table(namespace: str) -> Table:
    metadata = MetaData(schema=namespace)

    return Table(
        WORK_ORDER_TABLE,
        metadata,
        Column("id", Integer, primary_key=True, autoincrement=True),
        # Business identity
        Column("customer_wo_id", String(100), unique=True),
        Column("customer_id", String(100)),
        Column("customer_name", String(255)),
        # Location
        Column("address", String(500)),
        Column("city", String(100)),
        Column("state", String(50)),
        Column("zip", String(20)),
        Column("phone", String(50)),
        Column("email", String(255)),
        Column("route", String(100)),
        Column("zone", String(100)),
        Column("service_type", String(50), _fk("service_type")),
        # Equipment
        Column("old_meter_id", String(100)),
        Column("old_meter_reading", Integer),
        Column("new_meter_id", String(100)),
        Column("new_meter_reading", Integer),
        Column("old_gps", String(100)),
        Column("new_gps", String(100)),
        Column("old_meter_type", String(255), _fk("old_meter_type")),
        Column("new_meter_type", String(255), _fk("new_meter_type")),
        # State
        Column(
            "status",
            String(50),
            _fk("status"),
            nullable=False,
            server_default=text(f"'{DEFAULT_STATUS_CODE}'"),
        ),
        Column("trouble", String(100), _fk("trouble")),
        Column("scheduled_at", DateTime),
        Column("scheduled_by", String(255), _fk("scheduled_by")),
        Column("completed_at", DateTime),
        Column("completed_by", String(255), _fk("completed_by")),
        # Assignment
        Column("assigned_user_id", String(255), _fk("assigned_user_id")),
        Column("assigned_group_id", String(255), _fk("assigned_group_id")),
        # Audit trail and capture
        Column("notes", Text),
        Column("attachments", AttachmentList),
        Column("signature_data", Text),
        Column("signature_name", String(255)),
        Column("created_by", String(255), _fk("created_by")),
        Column("updated_by", String(255), _fk("updated_by")),
        Column("created_at", DateTime),
        Column("updated_at", DateTime),
    )
