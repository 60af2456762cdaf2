"""
Schema Migrator

Brings a namespace's ``work_orders`` table forward to the canonical shape.
Namespaces created by older releases can carry any mix of:

- missing columns (added since the namespace was provisioned)
- superseded column names (``scheduled_date``, ``meter_type``)
- old representations (integer meter type / group ids, text dates)
- status and service type stored as labels instead of codes
- deprecated ``*_id`` columns from the numeric-foreign-key era
- foreign keys with missing or outdated ON DELETE / ON UPDATE rules

Planning is a pure function of an inspected ``SchemaSnapshot`` so every rule
can be exercised without a PostgreSQL server. Execution runs the whole plan
in one transaction and never raises: the outcome is a ``MigrationReport``.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import sqlalchemy as sa
from sqlalchemy import inspect, text
from sqlalchemy.engine import Dialect
from sqlalchemy.ext.asyncio import AsyncEngine

from fieldops.exceptions import MigrationError
from fieldops.models.work_order import (
    CANONICAL_FOREIGN_KEYS,
    WORK_ORDER_TABLE,
    build_work_order_table,
)

logger = logging.getLogger(__name__)

# (legacy name, canonical name)
RENAMED_COLUMNS: Tuple[Tuple[str, str], ...] = (
    ("scheduled_date", "scheduled_at"),
    ("meter_type", "old_meter_type"),
)

DEPRECATED_COLUMNS: Tuple[str, ...] = (
    "assigned_to",
    "status_id",
    "service_type_id",
    "trouble_code_id",
    "old_meter_type_id",
    "new_meter_type_id",
    "created_by_id",
    "updated_by_id",
)

TIMESTAMP_COLUMNS: Tuple[str, ...] = ("scheduled_at", "completed_at")
METER_TYPE_COLUMNS: Tuple[str, ...] = ("old_meter_type", "new_meter_type")

# column -> reference table whose label may have been stored instead of the code
LABEL_NORMALIZED_COLUMNS: Tuple[Tuple[str, str], ...] = (
    ("status", "work_order_statuses"),
    ("service_type", "service_types"),
)

# canonical actor column -> legacy numeric id column
ACTOR_BACKFILLS: Tuple[Tuple[str, str], ...] = (
    ("created_by", "created_by_id"),
    ("updated_by", "updated_by_id"),
)


@dataclass(frozen=True)
class ForeignKeyInfo:
    name: Optional[str]
    columns: Tuple[str, ...]
    ref_table: str
    ref_columns: Tuple[str, ...]
    ondelete: Optional[str] = None
    onupdate: Optional[str] = None


def _type_family(column_type: sa.types.TypeEngine) -> str:
    if isinstance(column_type, sa.Integer):
        return "integer"
    if isinstance(column_type, sa.DateTime):
        return "timestamp"
    if isinstance(column_type, sa.Date):
        return "date"
    if isinstance(column_type, sa.String):
        return "text"
    return column_type.__class__.__name__.lower()


@dataclass
class SchemaSnapshot:
    """Columns (name -> type family) and foreign keys of one namespace's table."""

    namespace: str
    columns: Dict[str, str] = field(default_factory=dict)
    foreign_keys: List[ForeignKeyInfo] = field(default_factory=list)
    table_exists: bool = True

    @classmethod
    def inspect(cls, sync_conn, namespace: str) -> "SchemaSnapshot":
        """Build a snapshot from a live (sync) connection; use via ``run_sync``."""
        inspector = inspect(sync_conn)
        if not inspector.has_table(WORK_ORDER_TABLE, schema=namespace):
            return cls(namespace=namespace, table_exists=False)

        columns = {
            c["name"]: _type_family(c["type"])
            for c in inspector.get_columns(WORK_ORDER_TABLE, schema=namespace)
        }
        foreign_keys = []
        for fk in inspector.get_foreign_keys(WORK_ORDER_TABLE, schema=namespace):
            options = fk.get("options") or {}
            foreign_keys.append(
                ForeignKeyInfo(
                    name=fk.get("name"),
                    columns=tuple(fk["constrained_columns"]),
                    ref_table=fk["referred_table"],
                    ref_columns=tuple(fk["referred_columns"]),
                    ondelete=options.get("ondelete"),
                    onupdate=options.get("onupdate"),
                )
            )
        return cls(namespace=namespace, columns=columns, foreign_keys=foreign_keys)


@dataclass
class MigrationStep:
    """
    One unit of migration work.

    ``portable`` steps run on every dialect; the rest (ALTER COLUMN TYPE,
    ALTER TABLE ... CONSTRAINT) need PostgreSQL and are reported as skipped
    elsewhere. A step with a ``pending_query`` only runs when that count is > 0.
    """

    phase: str
    description: str
    statements: List[str]
    portable: bool = True
    pending_query: Optional[str] = None


@dataclass
class MigrationReport:
    namespace: str
    applied: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.error is None


# ---------------------------------------------------------------------------
# SQL helpers
# ---------------------------------------------------------------------------

def _qualified(dialect: Dialect, namespace: str) -> str:
    quote = dialect.identifier_preparer.quote
    return f"{quote(namespace)}.{quote(WORK_ORDER_TABLE)}"


def _drop_fk_sql(table: str, name: str) -> str:
    return f"ALTER TABLE {table} DROP CONSTRAINT IF EXISTS {name}"


def _add_fk_sql(table: str, name: str, column: str, ref_table: str, ref_column: str,
                on_delete: str, on_update: str) -> str:
    return (
        f"ALTER TABLE {table} ADD CONSTRAINT {name} "
        f"FOREIGN KEY ({column}) REFERENCES {ref_table}({ref_column}) "
        f"ON DELETE {on_delete} ON UPDATE {on_update}"
    )


def _add_column_sql(table: str, column: sa.Column, dialect: Dialect) -> str:
    sql = f"ALTER TABLE {table} ADD COLUMN {column.name} {column.type.compile(dialect=dialect)}"
    if column.server_default is not None:
        sql += f" DEFAULT {column.server_default.arg.text}"
    return sql


def _fk_matches(existing: ForeignKeyInfo, canonical) -> bool:
    return (
        existing.columns == (canonical.column,)
        and existing.ref_table == canonical.ref_table
        and existing.ref_columns == (canonical.ref_column,)
        and (existing.ondelete or "").upper() == canonical.ondelete
        and (existing.onupdate or "").upper() == canonical.onupdate
    )


# ---------------------------------------------------------------------------
# Planning
# ---------------------------------------------------------------------------

def plan_migration(snapshot: SchemaSnapshot, dialect: Dialect) -> List[MigrationStep]:
    """Return the ordered steps that bring ``snapshot`` to the canonical shape."""
    if not snapshot.table_exists:
        raise MigrationError(
            detail=f"{snapshot.namespace}.{WORK_ORDER_TABLE} does not exist",
            namespace=snapshot.namespace,
        )

    table = _qualified(dialect, snapshot.namespace)
    is_postgres = dialect.name == "postgresql"
    canonical = build_work_order_table(snapshot.namespace)

    columns = dict(snapshot.columns)
    foreign_keys = list(snapshot.foreign_keys)
    steps: List[MigrationStep] = []

    def drop_fks_on(column: str) -> List[str]:
        nonlocal foreign_keys
        dropped = [fk for fk in foreign_keys if column in fk.columns and fk.name]
        foreign_keys = [fk for fk in foreign_keys if column not in fk.columns]
        return [_drop_fk_sql(table, fk.name) for fk in dropped]

    # 1. Additive columns. A rename below will produce its target, so skip those.
    rename_targets = {
        new for old, new in RENAMED_COLUMNS if old in columns and new not in columns
    }
    for column in canonical.columns:
        if column.name in columns or column.name in rename_targets or column.primary_key:
            continue
        steps.append(MigrationStep(
            phase="add_column",
            description=f"add column {column.name}",
            statements=[_add_column_sql(table, column, dialect)],
        ))
        columns[column.name] = _type_family(column.type)

    # 2. Renames, never overwriting an existing canonical column
    for old, new in RENAMED_COLUMNS:
        if old not in columns:
            continue
        if new in columns:
            logger.warning(
                f"{snapshot.namespace}: both {old} and {new} exist, leaving {old} untouched"
            )
            continue
        steps.append(MigrationStep(
            phase="rename_column",
            description=f"rename column {old} to {new}",
            statements=[f"ALTER TABLE {table} RENAME COLUMN {old} TO {new}"],
        ))
        columns[new] = columns.pop(old)
        foreign_keys = [
            ForeignKeyInfo(
                name=fk.name,
                columns=tuple(new if c == old else c for c in fk.columns),
                ref_table=fk.ref_table,
                ref_columns=fk.ref_columns,
                ondelete=fk.ondelete,
                onupdate=fk.onupdate,
            )
            for fk in foreign_keys
        ]

    # 3. Representation changes
    for column in TIMESTAMP_COLUMNS:
        if columns.get(column) in (None, "timestamp"):
            continue
        steps.append(MigrationStep(
            phase="convert_column",
            description=f"convert {column} to timestamp",
            statements=drop_fks_on(column) + [
                f"ALTER TABLE {table} ALTER COLUMN {column} TYPE TIMESTAMP "
                f"USING CASE WHEN {column}::text ~ '^\\d{{4}}-\\d{{2}}-\\d{{2}}' "
                f"THEN {column}::text::timestamp ELSE NULL END"
            ],
            portable=False,
        ))
        columns[column] = "timestamp"

    for column in METER_TYPE_COLUMNS:
        if columns.get(column) != "integer":
            continue
        # Postgres forbids sub-queries in USING, so the lookup is a follow-up UPDATE
        steps.append(MigrationStep(
            phase="convert_column",
            description=f"convert {column} from meter type row id to product id",
            statements=drop_fks_on(column) + [
                f"ALTER TABLE {table} ALTER COLUMN {column} TYPE VARCHAR(255) USING {column}::text",
                f"UPDATE {table} SET {column} = ("
                f"SELECT r.product_id FROM meter_types r "
                f"WHERE CAST(r.id AS VARCHAR) = {WORK_ORDER_TABLE}.{column}) "
                f"WHERE {column} IS NOT NULL",
            ],
            portable=False,
        ))
        columns[column] = "text"

    # 4. Group assignment: numeric id -> group name
    if columns.get("assigned_group_id") == "integer":
        steps.append(MigrationStep(
            phase="convert_column",
            description="convert assigned_group_id from group id to group name",
            statements=drop_fks_on("assigned_group_id") + [
                f"ALTER TABLE {table} ALTER COLUMN assigned_group_id TYPE VARCHAR(255) "
                f"USING assigned_group_id::text",
                f"UPDATE {table} SET assigned_group_id = ("
                f"SELECT g.name FROM user_groups g "
                f"WHERE CAST(g.id AS VARCHAR) = {WORK_ORDER_TABLE}.assigned_group_id) "
                f"WHERE assigned_group_id IS NOT NULL",
            ],
            portable=False,
        ))
        columns["assigned_group_id"] = "text"

    # Labels stored where the foreign key expects codes
    for column, ref_table in LABEL_NORMALIZED_COLUMNS:
        if column not in columns:
            continue
        target = f"{WORK_ORDER_TABLE}.{column}"
        needs_rewrite = (
            f"{column} IS NOT NULL "
            f"AND NOT EXISTS (SELECT 1 FROM {ref_table} r WHERE r.code = {target}) "
            f"AND EXISTS (SELECT 1 FROM {ref_table} r WHERE r.label = {target})"
        )
        steps.append(MigrationStep(
            phase="normalize_values",
            description=f"rewrite {column} labels to codes",
            statements=[
                f"UPDATE {table} SET {column} = ("
                f"SELECT MIN(r.code) FROM {ref_table} r WHERE r.label = {target}) "
                f"WHERE {needs_rewrite}"
            ],
            pending_query=f"SELECT COUNT(*) FROM {table} WHERE {needs_rewrite}",
        ))

    # Actor columns from the numeric-id era
    for column, legacy in ACTOR_BACKFILLS:
        if legacy not in columns or column not in columns:
            continue
        steps.append(MigrationStep(
            phase="backfill_actors",
            description=f"backfill {column} from {legacy}",
            statements=[
                f"UPDATE {table} SET {column} = COALESCE("
                f"(SELECT MIN(u.id) FROM users u "
                f"WHERE u.id = CAST({WORK_ORDER_TABLE}.{legacy} AS VARCHAR)), "
                f"(SELECT MIN(u.id) FROM users u "
                f"WHERE u.id = {WORK_ORDER_TABLE}.{column} OR u.username = {WORK_ORDER_TABLE}.{column}))"
            ],
        ))

    # 5. Deprecated columns
    for column in DEPRECATED_COLUMNS:
        if column not in columns:
            continue
        drop_fks_on(column)
        steps.append(MigrationStep(
            phase="drop_column",
            description=f"drop deprecated column {column}",
            statements=[
                f"ALTER TABLE {table} DROP COLUMN {column}" + (" CASCADE" if is_postgres else "")
            ],
        ))
        del columns[column]

    # 6. Foreign keys
    for fk in CANONICAL_FOREIGN_KEYS:
        if fk.column not in columns:
            continue
        existing = next((e for e in foreign_keys if e.name == fk.name), None)
        strays = [
            e for e in foreign_keys
            if e.columns == (fk.column,) and e.name and e.name != fk.name
        ]
        if existing is not None and _fk_matches(existing, fk) and not strays:
            continue
        steps.append(MigrationStep(
            phase="foreign_key",
            description=f"sync foreign key {fk.name}",
            statements=[_drop_fk_sql(table, e.name) for e in strays] + [
                _drop_fk_sql(table, fk.name),
                _add_fk_sql(table, fk.name, fk.column, fk.ref_table, fk.ref_column,
                            fk.ondelete, fk.onupdate),
            ],
            portable=False,
        ))

    return steps


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------

class SchemaMigrator:
    """Applies ``plan_migration`` to a live namespace."""

    def __init__(self, engine: AsyncEngine):
        self.engine = engine

    async def migrate(self, namespace: str) -> MigrationReport:
        """
        Migrate one namespace. Safe to call repeatedly.

        Never raises: a failure rolls the namespace back to its prior shape,
        is logged, and is returned as ``report.error``.
        """
        report = MigrationReport(namespace=namespace)
        try:
            async with self.engine.begin() as conn:
                snapshot = await conn.run_sync(SchemaSnapshot.inspect, namespace)
                steps = plan_migration(snapshot, conn.dialect)
                supports_alter = conn.dialect.name == "postgresql"

                for step in steps:
                    if not step.portable and not supports_alter:
                        logger.debug(f"{namespace}: skipped on {conn.dialect.name}: {step.description}")
                        report.skipped.append(step.description)
                        continue
                    if step.pending_query is not None:
                        pending = (await conn.execute(text(step.pending_query))).scalar()
                        if not pending:
                            continue
                    for statement in step.statements:
                        await conn.execute(text(statement))
                    report.applied.append(step.description)
                    if step.phase == "convert_column":
                        logger.info(f"{namespace}: converted column ({step.description})")
                    else:
                        logger.info(f"{namespace}: {step.description}")
        except Exception as e:
            # migrate() never raises; the transaction has rolled back
            logger.error(f"Migration of {namespace} failed: {e}", exc_info=True)
            report.applied = []
            report.error = e.detail if isinstance(e, MigrationError) else str(e)
            return report

        if report.applied:
            logger.info(f"Migrated {namespace}: {len(report.applied)} change(s)")
        return report
