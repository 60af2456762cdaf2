"""
Namespace backup, restore and statistics.

Backups are plain JSON-able snapshots of every work order in a namespace.
Restore is a raw insert: it bypasses the state machine, keeps derived fields
as they were exported, and lets the database assign new ids.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Union

from pydantic import ValidationError
from sqlalchemy import delete, func, insert, select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fieldops.models.work_order import DEFAULT_STATUS_CODE, build_work_order_table
from fieldops.schemas.backup import NamespaceBackup, NamespaceStats, RestoreResult
from fieldops.schemas.work_order import WorkOrder
from fieldops.services.store_registry import StoreRegistry

logger = logging.getLogger(__name__)

# Keys written by older backup formats
LEGACY_BACKUP_KEYS = {
    "meterType": "oldMeterType",
    "scheduledDate": "scheduledAt",
}


def _upgrade_legacy_row(row: Dict[str, Any]) -> Dict[str, Any]:
    row = dict(row)
    for legacy, current in LEGACY_BACKUP_KEYS.items():
        if legacy in row:
            value = row.pop(legacy)
            if not row.get(current):
                row[current] = value
    return row


class NamespaceBackupService:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession], registry: StoreRegistry):
        self.session_factory = session_factory
        self.registry = registry

    async def backup(self, namespace: str) -> NamespaceBackup:
        """Export every work order in the namespace, ordered by id."""
        store = await self.registry.get(namespace)
        await store.ensure_migrated()
        table = build_work_order_table(namespace)

        async with self.session_factory() as db:
            result = await db.execute(select(table).order_by(table.c.id))
            work_orders = [WorkOrder.model_validate(dict(row)) for row in result.mappings().all()]

        logger.info(f"Backed up {len(work_orders)} work orders from {namespace}")
        return NamespaceBackup(
            namespace=namespace,
            backup_date=datetime.now(timezone.utc),
            work_orders=work_orders,
        )

    async def restore(
        self,
        namespace: str,
        backup: Union[NamespaceBackup, Dict[str, Any]],
        clear_existing: bool = False,
    ) -> RestoreResult:
        """
        Insert the rows of a backup. Each row is its own transaction; failures
        are collected as "Row <n>: ..." and do not stop the restore.
        """
        store = await self.registry.get(namespace)
        await store.ensure_writable()
        table = build_work_order_table(namespace)

        if isinstance(backup, NamespaceBackup):
            rows = [wo.model_dump() for wo in backup.work_orders]
        else:
            rows = backup.get("workOrders") or backup.get("work_orders") or []

        if clear_existing:
            async with self.session_factory() as db:
                await db.execute(delete(table))
                await db.commit()
            logger.info(f"Cleared {namespace} before restore")

        result = RestoreResult()
        now = datetime.now(timezone.utc).replace(tzinfo=None)
        for index, raw in enumerate(rows, start=1):
            try:
                work_order = WorkOrder.model_validate(_upgrade_legacy_row(raw))
                values = work_order.model_dump(exclude={"id"})
                values["status"] = values["status"] or DEFAULT_STATUS_CODE
                values["created_at"] = values["created_at"] or now
                values["updated_at"] = values["updated_at"] or now
                async with self.session_factory() as db:
                    await db.execute(insert(table).values(**values))
                    await db.commit()
                result.restored += 1
            except (ValidationError, SQLAlchemyError) as e:
                message = str(getattr(e, "orig", None) or e)
                result.errors.append(f"Row {index}: {message}")

        logger.info(
            f"Restored {result.restored} work orders into {namespace} "
            f"({len(result.errors)} errors)"
        )
        return result

    async def namespace_stats(self, namespace: str) -> NamespaceStats:
        table = build_work_order_table(namespace)
        async with self.session_factory() as db:
            result = await db.execute(
                select(func.count().label("total"), func.max(table.c.updated_at).label("last_modified"))
                .select_from(table)
            )
            totals = result.one()

            table_size = None
            if db.bind.dialect.name == "postgresql":
                size = await db.execute(
                    text("SELECT pg_size_pretty(pg_total_relation_size(CAST(:relation AS regclass)))"),
                    {"relation": f'"{namespace}".work_orders'},
                )
                table_size = size.scalar()

        return NamespaceStats(
            total_records=totals.total,
            last_modified=totals.last_modified,
            table_size=table_size,
        )
