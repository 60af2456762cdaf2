"""
Work Order Store

Per-namespace CRUD and status state machine. One instance per namespace for
the life of the process (see ``StoreRegistry``).

A write happens in two phases:

1. ``_resolve`` looks up every reference value the write mentions (status,
   trouble code, meter types, users, group, the acting identity) and builds a
   ``WriteContext``.
2. ``derive_changes`` (pure) applies the derivation rules against the previous
   row and returns the column values to store plus generated audit notes.

Rule precedence, first match wins for ``status``:
    1. scheduledAt set      -> Scheduled, scheduledBy, "Scheduled at ..." note
    2. scheduledAt cleared  -> clear scheduledBy, explicit status (rule 4) or
                               revert a Scheduled order to the default status
    3. trouble changed      -> Trouble, "Trouble Code: ..." note
    4. explicit status      -> Completed stamps completedAt/By and a note;
                               anything but Scheduled clears the appointment
    6. assignedGroupId is always stored as the group name

A changed trouble code always gets its "Trouble Code: ..." note, even when
rule 1 or 2 decides the status.
"""

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Set, Tuple, Type, Union

from pydantic import ValidationError
from sqlalchemy import case, delete, func, insert, literal, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fieldops.config import settings
from fieldops.exceptions import (
    ConstraintViolationError,
    DuplicateWorkOrderError,
    InvalidWorkOrderFieldsError,
    MissingRequiredFieldsError,
    NamespaceDegradedError,
    WorkOrderCoreError,
    WorkOrderNotFoundError,
)
from fieldops.models.work_order import DEFAULT_STATUS_CODE, build_work_order_table
from fieldops.schemas.work_order import (
    BulkUpsertResult,
    WorkOrder,
    WorkOrderCreate,
    WorkOrderFields,
    WorkOrderFilters,
    WorkOrderStats,
    WorkOrderUpdate,
)
from fieldops.services.import_mapping import missing_required_fields
from fieldops.services.lookup_resolver import (
    COMPLETED_LABEL,
    SCHEDULED_LABEL,
    TROUBLE_LABEL,
    LookupResolver,
)
from fieldops.services.schema_migrator import MigrationReport, SchemaMigrator
from fieldops.utils.note_format import completed_note, scheduled_note, trouble_note

logger = logging.getLogger(__name__)

# Copied straight through, no lookup
PLAIN_FIELDS = (
    "customer_wo_id",
    "customer_id",
    "customer_name",
    "address",
    "city",
    "state",
    "zip",
    "phone",
    "email",
    "route",
    "zone",
    "old_meter_id",
    "old_meter_reading",
    "new_meter_id",
    "new_meter_reading",
    "old_gps",
    "new_gps",
    "attachments",
    "signature_data",
    "signature_name",
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


@dataclass
class WriteContext:
    """Everything a write needs from the reference tables, resolved up front."""

    values: Dict[str, Any]
    sent: Set[str]
    actor_id: Optional[str] = None
    actor_name: Optional[str] = None
    status_code: Optional[str] = None
    status_label: Optional[str] = None
    trouble_label: Optional[str] = None
    scheduled_code: str = SCHEDULED_LABEL
    scheduled_label: str = SCHEDULED_LABEL
    trouble_status_code: str = TROUBLE_LABEL
    default_status_code: str = DEFAULT_STATUS_CODE
    tz_name: Optional[str] = None


def _apply_status(ctx: WriteContext, changes: Dict[str, Any], notes: List[str], now: datetime) -> None:
    changes["status"] = ctx.status_code
    if ctx.status_label == COMPLETED_LABEL:
        changes["completed_at"] = now
        changes["completed_by"] = ctx.actor_id
        notes.append(completed_note(now, ctx.actor_name, ctx.tz_name))
    if ctx.status_label != SCHEDULED_LABEL:
        changes["scheduled_at"] = None
        changes["scheduled_by"] = None


def derive_changes(
    ctx: WriteContext,
    previous: Optional[Mapping[str, Any]],
    now: datetime,
) -> Tuple[Dict[str, Any], List[str]]:
    """
    Apply the derivation rules to one write.

    Returns the column values to store and the generated note lines. Only
    fields in ``ctx.sent`` trigger rules; ``previous`` is None on create.
    """
    changes = dict(ctx.values)
    notes: List[str] = []
    sent = ctx.sent

    prev_status = previous["status"] if previous else None
    prev_trouble = previous["trouble"] if previous else None
    prev_scheduled_at = previous["scheduled_at"] if previous else None
    explicit_status = "status" in sent and ctx.status_code is not None
    new_trouble = changes.get("trouble")
    trouble_changed = "trouble" in sent and bool(new_trouble) and new_trouble != prev_trouble

    if "scheduled_at" in sent and changes.get("scheduled_at") is not None:
        changes["status"] = ctx.scheduled_code
        changes["scheduled_by"] = ctx.actor_id
        notes.append(scheduled_note(now, ctx.actor_name, changes["scheduled_at"], ctx.tz_name))
    elif "scheduled_at" in sent:
        changes["scheduled_at"] = None
        changes["scheduled_by"] = None
        if explicit_status and ctx.status_label != SCHEDULED_LABEL:
            _apply_status(ctx, changes, notes, now)
        elif explicit_status or prev_status in (ctx.scheduled_code, ctx.scheduled_label):
            # No appointment left, so the order cannot stay Scheduled
            changes["status"] = ctx.default_status_code
    elif trouble_changed:
        changes["status"] = ctx.trouble_status_code
        changes["scheduled_at"] = None
        changes["scheduled_by"] = None
    elif explicit_status:
        if ctx.status_label == SCHEDULED_LABEL and prev_scheduled_at is None:
            raise InvalidWorkOrderFieldsError(
                detail="status Scheduled requires scheduledAt",
                errors=[{"field": "status", "message": "requires scheduledAt", "type": "value_error"}],
            )
        _apply_status(ctx, changes, notes, now)

    # A new trouble code is always audited, whichever rule owns status
    if trouble_changed:
        notes.append(trouble_note(new_trouble, ctx.trouble_label, now, ctx.tz_name))

    return changes, notes


class WorkOrderStore:
    """CRUD and status state machine for one namespace's work orders."""

    def __init__(
        self,
        namespace: str,
        session_factory: async_sessionmaker[AsyncSession],
        resolver: LookupResolver,
        migrator: SchemaMigrator,
        failure_policy: Optional[str] = None,
        tz_name: Optional[str] = None,
    ):
        self.namespace = namespace
        self.session_factory = session_factory
        self.resolver = resolver
        self.migrator = migrator
        self.failure_policy = failure_policy or settings.MIGRATION_FAILURE_POLICY
        self.tz_name = tz_name or settings.DEFAULT_TIMEZONE
        self.table = build_work_order_table(namespace)
        self.migration_report: Optional[MigrationReport] = None
        self._migration_task: Optional[asyncio.Task] = None
        self._migration_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Migration gate
    # ------------------------------------------------------------------

    def start_migration(self) -> asyncio.Task:
        """Kick off the namespace migration (once) without waiting for it."""
        if self._migration_task is None:
            self._migration_task = asyncio.get_running_loop().create_task(
                self.migrator.migrate(self.namespace)
            )
        return self._migration_task

    async def ensure_migrated(self) -> MigrationReport:
        """Wait for the shared migration of this namespace and return its report."""
        async with self._migration_lock:
            task = self.start_migration()
        # A cancelled caller must not cancel the shared migration
        report = await asyncio.shield(task)
        self.migration_report = report
        return report

    async def ensure_writable(self) -> None:
        """Raise NamespaceDegradedError if writes are refused after a failed migration."""
        report = await self.ensure_migrated()
        if not report.succeeded and self.failure_policy == "refuse_writes":
            raise NamespaceDegradedError(
                detail=f"Namespace {self.namespace} failed migration: {report.error}",
                namespace=self.namespace,
            )

    @property
    def degraded(self) -> bool:
        return self.migration_report is not None and not self.migration_report.succeeded

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def list(
        self,
        filters: Optional[Union[WorkOrderFilters, Dict[str, Any]]] = None,
    ) -> List[WorkOrder]:
        """List work orders, newest first."""
        await self.ensure_migrated()
        t = self.table
        if filters is None:
            filters = WorkOrderFilters()
        elif not isinstance(filters, WorkOrderFilters):
            filters = self._validate(filters, WorkOrderFilters)

        query = select(t)
        if filters.status:
            record = await self.resolver.get_status(filters.status)
            if record:
                query = query.where(or_(t.c.status == record.code, t.c.status == record.label))
            else:
                query = query.where(t.c.status == filters.status)
        if filters.assigned_user_id:
            user_id = await self.resolver.resolve_user_id(filters.assigned_user_id)
            query = query.where(t.c.assigned_user_id == (user_id or filters.assigned_user_id))
        if filters.assigned_group_id is not None:
            group = await self.resolver.resolve_group_name(filters.assigned_group_id)
            query = query.where(t.c.assigned_group_id == (group or str(filters.assigned_group_id)))

        query = query.order_by(t.c.created_at.desc(), t.c.id.desc())
        async with self.session_factory() as db:
            result = await db.execute(query)
            return [WorkOrder.model_validate(dict(row)) for row in result.mappings().all()]

    async def get(self, work_order_id: int) -> Optional[WorkOrder]:
        await self.ensure_migrated()
        async with self.session_factory() as db:
            result = await db.execute(select(self.table).where(self.table.c.id == work_order_id))
            row = result.mappings().first()
        return WorkOrder.model_validate(dict(row)) if row else None

    async def get_by_business_id(self, customer_wo_id: str) -> Optional[WorkOrder]:
        await self.ensure_migrated()
        async with self.session_factory() as db:
            result = await db.execute(
                select(self.table).where(self.table.c.customer_wo_id == customer_wo_id)
            )
            row = result.mappings().first()
        return WorkOrder.model_validate(dict(row)) if row else None

    async def stats(self) -> WorkOrderStats:
        """Counts per canonical status label (codes and labels folded together)."""
        await self.ensure_migrated()
        t = self.table
        async with self.session_factory() as db:
            result = await db.execute(
                select(t.c.status, func.count().label("count")).group_by(t.c.status)
            )
            rows = result.all()

        labels = await self.resolver.status_label_map()
        counts: Dict[str, int] = defaultdict(int)
        for status, count in rows:
            if status is None:
                continue
            counts[labels.get(status, status)] += count
        return WorkOrderStats(counts_by_status_label=dict(counts), total=sum(c for _, c in rows))

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def create(
        self,
        fields: Union[WorkOrderFields, Dict[str, Any]],
        acting_user: Optional[str] = None,
    ) -> WorkOrder:
        """
        Create a work order.

        Raises:
            InvalidWorkOrderFieldsError: unknown or malformed fields
            DuplicateWorkOrderError: customerWoId already used in this namespace
            ConstraintViolationError: any other rejected value (e.g. unknown status code)
        """
        await self.ensure_writable()
        fields = self._validate(fields, WorkOrderCreate)
        ctx = await self._resolve(fields, acting_user)
        now = _utcnow()

        values, notes = derive_changes(ctx, None, now)
        values.setdefault("status", ctx.default_status_code)
        values["notes"] = self._joined_notes(values.get("notes"), notes)
        values["created_by"] = values.get("created_by") or ctx.actor_id
        values["updated_by"] = ctx.actor_id
        values["created_at"] = now
        values["updated_at"] = now

        try:
            async with self.session_factory() as db:
                result = await db.execute(insert(self.table).values(**values).returning(*self.table.c))
                row = result.mappings().one()
                await db.commit()
        except IntegrityError as e:
            raise await self._constraint_error(e, values.get("customer_wo_id")) from e

        logger.debug(f"Created work order {row['id']} in {self.namespace}")
        return WorkOrder.model_validate(dict(row))

    async def update(
        self,
        work_order_id: int,
        fields: Union[WorkOrderFields, Dict[str, Any]],
        acting_user: Optional[str] = None,
    ) -> Optional[WorkOrder]:
        """
        Apply a partial update. Returns None if the work order does not exist.

        Only the fields present in ``fields`` are written or trigger derived
        side effects. Generated notes are appended server-side.
        """
        await self.ensure_writable()
        fields = self._validate(fields, WorkOrderUpdate)
        ctx = await self._resolve(fields, acting_user)
        # created_by is set once, on create
        ctx.values.pop("created_by", None)
        ctx.sent.discard("created_by")
        t = self.table

        try:
            async with self.session_factory() as db:
                result = await db.execute(
                    select(t.c.status, t.c.trouble, t.c.scheduled_at)
                    .where(t.c.id == work_order_id)
                    .with_for_update()
                )
                previous = result.mappings().first()
                if previous is None:
                    return None

                now = _utcnow()
                values, notes = derive_changes(ctx, previous, now)
                if "notes" in ctx.sent:
                    values["notes"] = self._joined_notes(values.get("notes"), notes)
                elif notes:
                    generated = "\n".join(notes)
                    values["notes"] = case(
                        (or_(t.c.notes.is_(None), t.c.notes == ""), literal(generated)),
                        else_=t.c.notes + literal("\n" + generated),
                    )
                if ctx.actor_id:
                    values["updated_by"] = ctx.actor_id
                values["updated_at"] = now

                result = await db.execute(
                    update(t).where(t.c.id == work_order_id).values(**values).returning(*t.c)
                )
                row = result.mappings().one()
                await db.commit()
        except IntegrityError as e:
            raise await self._constraint_error(
                e, ctx.values.get("customer_wo_id"), exclude_id=work_order_id
            ) from e

        return WorkOrder.model_validate(dict(row))

    async def delete(self, work_order_id: int) -> bool:
        """Hard delete. Returns whether a row was removed."""
        await self.ensure_writable()
        async with self.session_factory() as db:
            result = await db.execute(delete(self.table).where(self.table.c.id == work_order_id))
            removed = result.rowcount > 0
            await db.commit()
        if removed:
            logger.info(f"Deleted work order {work_order_id} from {self.namespace}")
        return removed

    async def bulk_upsert(
        self,
        rows: List[Dict[str, Any]],
        acting_user: Optional[str] = None,
    ) -> BulkUpsertResult:
        """
        Best-effort batch import keyed on customerWoId.

        Existing business ids are updated (createdBy excluded), new ones are
        created. Row failures are collected as "Row <n>: ..." and never stop
        the batch.
        """
        await self.ensure_writable()
        result = BulkUpsertResult()

        for index, row in enumerate(rows, start=1):
            try:
                fields = self._validate(row, WorkOrderFields)
                if not fields.customer_wo_id:
                    raise MissingRequiredFieldsError(["customerWoId"], namespace=self.namespace)

                existing = await self.get_by_business_id(fields.customer_wo_id)
                if existing is not None:
                    changes = fields.model_dump(include=fields.model_fields_set - {"created_by"})
                    updated = await self.update(existing.id, WorkOrderUpdate(**changes), acting_user)
                    if updated is None:
                        raise WorkOrderNotFoundError(
                            detail=f"Work order {fields.customer_wo_id} was deleted during the import",
                            namespace=self.namespace,
                        )
                    result.updated += 1
                else:
                    missing = missing_required_fields(fields)
                    if missing:
                        raise MissingRequiredFieldsError(missing, namespace=self.namespace)
                    await self.create(fields, acting_user)
                    result.created += 1
            except (WorkOrderCoreError, SQLAlchemyError) as e:
                message = e.detail if isinstance(e, WorkOrderCoreError) else str(e)
                logger.warning(f"Bulk upsert into {self.namespace}, row {index} failed: {message}")
                result.errors.append(f"Row {index}: {message}")

        logger.info(
            f"Bulk upsert into {self.namespace}: {result.created} created, "
            f"{result.updated} updated, {len(result.errors)} errors"
        )
        return result

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _validate(self, data, model: Type):
        if isinstance(data, model):
            return data
        if isinstance(data, WorkOrderFields):
            data = data.model_dump(include=data.model_fields_set)
        try:
            return model.model_validate(data)
        except ValidationError as e:
            raise InvalidWorkOrderFieldsError.from_validation_error(e, namespace=self.namespace) from e

    async def _resolve(self, fields: WorkOrderFields, acting_user: Optional[str]) -> WriteContext:
        """Resolve every reference value this write mentions."""
        sent = set(fields.model_fields_set)
        data = fields.model_dump(include=sent)
        values: Dict[str, Any] = {name: data[name] for name in PLAIN_FIELDS if name in data}
        ctx = WriteContext(values=values, sent=sent, tz_name=self.tz_name)
        r = self.resolver

        if acting_user:
            actor = await r.get_user(acting_user)
            ctx.actor_id = actor.id if actor else None
            ctx.actor_name = actor.display_name if actor else acting_user

        # Reference values: resolved when possible, raw otherwise (the FK decides)
        if "service_type" in sent:
            record = await r.get_service_type(data["service_type"])
            values["service_type"] = record.code if record else data["service_type"]
        for column in ("old_meter_type", "new_meter_type"):
            if column in sent:
                record = await r.get_meter_type(data[column])
                values[column] = record.code if record else data[column]
        for column in ("assigned_user_id", "created_by"):
            if column in sent:
                user_id = await r.resolve_user_id(data[column])
                values[column] = user_id or data[column]
        if "trouble" in sent:
            record = await r.get_trouble_code(data["trouble"])
            values["trouble"] = record.code if record else data["trouble"]
            ctx.trouble_label = record.label if record else None
        if "scheduled_at" in sent:
            values["scheduled_at"] = data["scheduled_at"]
        if "notes" in sent:
            values["notes"] = data["notes"]

        if "assigned_group_id" in sent:
            raw = data["assigned_group_id"]
            group = await r.resolve_group_name(raw) if raw is not None else None
            if raw is not None and group is None:
                logger.warning(f"{self.namespace}: unknown group {raw!r}, leaving assignment unset")
            values["assigned_group_id"] = group

        if data.get("status") is not None:
            record = await r.get_status(data["status"])
            ctx.status_code = record.code if record else data["status"]
            ctx.status_label = record.label if record else data["status"]

        scheduled = await r.get_status(SCHEDULED_LABEL)
        if scheduled:
            ctx.scheduled_code, ctx.scheduled_label = scheduled.code, scheduled.label
        if ctx.values.get("trouble"):
            trouble = await r.get_status(TROUBLE_LABEL)
            if trouble:
                ctx.trouble_status_code = trouble.code
        default = await r.default_status()
        if default:
            ctx.default_status_code = default.code
        return ctx

    @staticmethod
    def _joined_notes(user_notes: Optional[str], generated: List[str]) -> Optional[str]:
        lines = [line for line in [user_notes, *generated] if line]
        return "\n".join(lines) if lines else None

    async def _constraint_error(
        self,
        exc: IntegrityError,
        customer_wo_id: Optional[str],
        exclude_id: Optional[int] = None,
    ) -> ConstraintViolationError:
        logger.warning(f"Constraint violation in {self.namespace}: {exc.orig}")
        if customer_wo_id:
            holder = await self.get_by_business_id(customer_wo_id)
            if holder is not None and holder.id != exclude_id:
                return DuplicateWorkOrderError(customer_wo_id, namespace=self.namespace)
        return ConstraintViolationError(detail=str(exc.orig), namespace=self.namespace)
