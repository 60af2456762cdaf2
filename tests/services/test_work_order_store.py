"""
Tests for WorkOrderStore: CRUD, the status state machine and audit notes.
"""

from datetime import datetime

import pytest
from sqlalchemy import text

from fieldops.exceptions import (
    ConstraintViolationError,
    DuplicateWorkOrderError,
    InvalidWorkOrderFieldsError,
    NamespaceDegradedError,
)
from fieldops.services.schema_migrator import MigrationReport
from fieldops.services.work_order_store import WorkOrderStore, WriteContext, derive_changes

from factories import WorkOrderFieldsFactory

# 15:00 UTC is 09:00 in Denver (MDT)
APPOINTMENT = "2024-06-01T15:00:00Z"
APPOINTMENT_LOCAL = "06/01/2024, 09:00 AM"


class TestCreate:

    @pytest.mark.asyncio
    async def test_create_defaults_to_open(self, store, work_order_fields):
        work_order = await store.create(work_order_fields, acting_user="jdoe")

        assert work_order.id is not None
        assert work_order.status == "Open"
        assert work_order.notes is None
        assert work_order.created_by == "u-1"
        assert work_order.updated_by == "u-1"
        assert work_order.created_at is not None
        assert work_order.created_at == work_order.updated_at

    @pytest.mark.asyncio
    async def test_create_resolves_reference_values(self, store):
        fields = WorkOrderFieldsFactory(
            serviceType="Sewer",
            oldMeterType="5/8 inch Meter",
            newMeterType="2",
            assignedUserId="Bob Smith",
            assignedGroupId=1,
        )
        work_order = await store.create(fields)

        assert work_order.service_type == "SEW"
        assert work_order.old_meter_type == "MTR-58"
        assert work_order.new_meter_type == "MTR-1"
        assert work_order.assigned_user_id == "u-2"
        assert work_order.assigned_group_id == "Crew A"

    @pytest.mark.asyncio
    async def test_unknown_group_is_left_unassigned(self, store, work_order_fields):
        work_order = await store.create({**work_order_fields, "assignedGroupId": 99})
        assert work_order.assigned_group_id is None

    @pytest.mark.asyncio
    async def test_create_with_appointment_is_scheduled(self, store, work_order_fields):
        work_order = await store.create(
            {**work_order_fields, "scheduledAt": APPOINTMENT}, acting_user="jdoe"
        )

        assert work_order.status == "Scheduled"
        assert work_order.scheduled_by == "u-1"
        assert work_order.scheduled_at == datetime(2024, 6, 1, 15, 0)
        assert work_order.notes.startswith("Scheduled at ")
        assert work_order.notes.endswith(f" by Jane Doe for {APPOINTMENT_LOCAL}")

    @pytest.mark.asyncio
    async def test_explicit_created_by_is_kept(self, store, work_order_fields):
        work_order = await store.create({**work_order_fields, "createdBy": "bsmith"}, acting_user="jdoe")
        assert work_order.created_by == "u-2"
        assert work_order.updated_by == "u-1"

    @pytest.mark.asyncio
    async def test_duplicate_business_id(self, store, work_order_fields):
        await store.create(work_order_fields)

        with pytest.raises(DuplicateWorkOrderError) as exc_info:
            await store.create({**work_order_fields, "customerName": "Someone Else"})

        assert exc_info.value.customer_wo_id == work_order_fields["customerWoId"]
        assert exc_info.value.namespace == store.namespace
        assert isinstance(exc_info.value, ConstraintViolationError)

    @pytest.mark.asyncio
    async def test_unknown_field_rejected(self, store, work_order_fields):
        with pytest.raises(InvalidWorkOrderFieldsError) as exc_info:
            await store.create({**work_order_fields, "priority": "high"})
        assert exc_info.value.errors[0]["field"] == "priority"

    @pytest.mark.asyncio
    async def test_derived_fields_cannot_be_set(self, store, work_order_fields):
        with pytest.raises(InvalidWorkOrderFieldsError):
            await store.create({**work_order_fields, "completedBy": "u-1"})

    @pytest.mark.asyncio
    async def test_numeric_identifiers_become_strings(self, store, work_order_fields):
        work_order = await store.create({**work_order_fields, "customerId": 50001, "zip": 80202})
        assert work_order.customer_id == "50001"
        assert work_order.zip == "80202"


class TestStatusTransitions:

    @pytest.mark.asyncio
    async def test_full_lifecycle(self, store, work_order_fields):
        created = await store.create(work_order_fields, acting_user="jdoe")

        scheduled = await store.update(created.id, {"scheduledAt": APPOINTMENT}, acting_user="jdoe")
        assert scheduled.status == "Scheduled"
        assert scheduled.scheduled_by == "u-1"
        assert len(scheduled.notes.splitlines()) == 1

        troubled = await store.update(created.id, {"trouble": "T1"}, acting_user="jdoe")
        assert troubled.status == "Trouble"
        assert troubled.trouble == "T1"
        assert troubled.scheduled_at is None
        assert troubled.scheduled_by is None
        lines = troubled.notes.splitlines()
        assert len(lines) == 2
        assert lines[0] == scheduled.notes
        assert lines[1].startswith("Trouble Code: T1 - Leak - ")

        completed = await store.update(created.id, {"status": "Completed"}, acting_user="jdoe")
        assert completed.status == "COMPLETE"
        assert completed.completed_at is not None
        assert completed.completed_by == "u-1"
        lines = completed.notes.splitlines()
        assert len(lines) == 3
        assert lines[2].startswith("Completed at ")
        assert lines[2].endswith(" by Jane Doe")

    @pytest.mark.asyncio
    async def test_same_trouble_code_adds_no_note(self, store, work_order_fields):
        created = await store.create(work_order_fields)
        first = await store.update(created.id, {"trouble": "T1"})
        again = await store.update(created.id, {"trouble": "T1"})

        assert again.notes == first.notes
        assert len(again.notes.splitlines()) == 1

    @pytest.mark.asyncio
    async def test_trouble_sent_with_appointment_is_audited_once(self, store, work_order_fields):
        created = await store.create(work_order_fields)

        both = await store.update(
            created.id, {"scheduledAt": APPOINTMENT, "trouble": "T1"}, acting_user="jdoe"
        )
        repeat = await store.update(created.id, {"trouble": "T1"}, acting_user="jdoe")

        assert both.status == "Scheduled"
        assert both.trouble == "T1"
        lines = both.notes.splitlines()
        assert lines[0].startswith("Scheduled at ")
        assert lines[1].startswith("Trouble Code: T1 - Leak - ")
        assert repeat.notes == both.notes
        assert repeat.notes.count("T1 - Leak") == 1

    @pytest.mark.asyncio
    async def test_trouble_by_label(self, store, work_order_fields):
        created = await store.create(work_order_fields)

        by_label = await store.update(created.id, {"trouble": "Broken Register"})
        assert by_label.trouble == "T2"
        assert "Trouble Code: T2 - Broken Register - " in by_label.notes

    @pytest.mark.asyncio
    async def test_clearing_appointment_reverts_to_default(self, store, work_order_fields):
        created = await store.create({**work_order_fields, "scheduledAt": APPOINTMENT})

        cleared = await store.update(created.id, {"scheduledAt": None})

        assert cleared.status == "Open"
        assert cleared.scheduled_at is None
        assert cleared.scheduled_by is None

    @pytest.mark.asyncio
    async def test_clearing_appointment_with_explicit_status(self, store, work_order_fields):
        created = await store.create({**work_order_fields, "scheduledAt": APPOINTMENT})

        skipped = await store.update(created.id, {"scheduledAt": None, "status": "Skipped"})

        assert skipped.status == "Skipped"
        assert skipped.scheduled_at is None

    @pytest.mark.asyncio
    async def test_non_scheduled_status_clears_appointment(self, store, work_order_fields):
        created = await store.create({**work_order_fields, "scheduledAt": APPOINTMENT})

        reopened = await store.update(created.id, {"status": "Open"})

        assert reopened.status == "Open"
        assert reopened.scheduled_at is None
        assert reopened.scheduled_by is None

    @pytest.mark.asyncio
    async def test_scheduled_status_requires_appointment(self, store, work_order_fields):
        created = await store.create(work_order_fields)

        with pytest.raises(InvalidWorkOrderFieldsError):
            await store.update(created.id, {"status": "Scheduled"})

        assert (await store.get(created.id)).status == "Open"

    @pytest.mark.asyncio
    async def test_update_without_actor_keeps_updated_by(self, store, work_order_fields):
        created = await store.create(work_order_fields, acting_user="jdoe")

        updated = await store.update(created.id, {"city": "Boulder"})

        assert updated.city == "Boulder"
        assert updated.updated_by == "u-1"
        assert updated.updated_at >= created.updated_at

    @pytest.mark.asyncio
    async def test_created_by_is_immutable(self, store, work_order_fields):
        created = await store.create(work_order_fields, acting_user="jdoe")

        updated = await store.update(created.id, {"createdBy": "bsmith"}, acting_user="bsmith")

        assert updated.created_by == "u-1"
        assert updated.updated_by == "u-2"

    @pytest.mark.asyncio
    async def test_unknown_actor_name_still_appears_in_note(self, store, work_order_fields):
        created = await store.create(work_order_fields)

        updated = await store.update(created.id, {"status": "Completed"}, acting_user="contractor")

        assert updated.completed_by is None
        assert updated.notes.endswith(" by contractor")


class TestNotes:

    @pytest.mark.asyncio
    async def test_generated_notes_append_to_existing(self, store, work_order_fields):
        created = await store.create({**work_order_fields, "notes": "Dog in yard"})

        updated = await store.update(created.id, {"trouble": "T1"})

        lines = updated.notes.splitlines()
        assert lines[0] == "Dog in yard"
        assert lines[1].startswith("Trouble Code: T1")

    @pytest.mark.asyncio
    async def test_sent_notes_replace_and_keep_generated_line(self, store, work_order_fields):
        created = await store.create({**work_order_fields, "notes": "old text"})

        updated = await store.update(
            created.id, {"notes": "Gate code 1234", "scheduledAt": APPOINTMENT}, acting_user="jdoe"
        )

        lines = updated.notes.splitlines()
        assert lines[0] == "Gate code 1234"
        assert lines[1].startswith("Scheduled at ")
        assert "old text" not in updated.notes

    @pytest.mark.asyncio
    async def test_plain_update_leaves_notes_alone(self, store, work_order_fields):
        created = await store.create({**work_order_fields, "notes": "Dog in yard"})
        updated = await store.update(created.id, {"phone": "555-000-1111"})
        assert updated.notes == "Dog in yard"


class TestReadsAndDeletes:

    @pytest.mark.asyncio
    async def test_get_and_get_by_business_id(self, store, work_order_fields):
        created = await store.create(work_order_fields)

        assert (await store.get(created.id)).customer_wo_id == created.customer_wo_id
        assert (await store.get_by_business_id(created.customer_wo_id)).id == created.id
        assert await store.get(created.id + 100) is None
        assert await store.get_by_business_id("missing") is None

    @pytest.mark.asyncio
    async def test_update_missing_returns_none(self, store):
        assert await store.update(12345, {"city": "Denver"}) is None

    @pytest.mark.asyncio
    async def test_update_to_taken_business_id(self, store):
        first = await store.create(WorkOrderFieldsFactory())
        second = await store.create(WorkOrderFieldsFactory())

        with pytest.raises(DuplicateWorkOrderError):
            await store.update(second.id, {"customerWoId": first.customer_wo_id})

        same = await store.update(first.id, {"customerWoId": first.customer_wo_id})
        assert same.customer_wo_id == first.customer_wo_id

    @pytest.mark.asyncio
    async def test_delete(self, store, work_order_fields):
        created = await store.create(work_order_fields)

        assert await store.delete(created.id) is True
        assert await store.get(created.id) is None
        assert await store.delete(created.id) is False

    @pytest.mark.asyncio
    async def test_list_newest_first_with_filters(self, store):
        a = await store.create(WorkOrderFieldsFactory(assignedUserId="jdoe", assignedGroupId="Crew A"))
        b = await store.create(WorkOrderFieldsFactory(assignedUserId="u-2"))
        c = await store.create(WorkOrderFieldsFactory())
        await store.update(c.id, {"status": "Completed"})

        everything = await store.list()
        assert [wo.id for wo in everything] == [c.id, b.id, a.id]

        assert [wo.id for wo in await store.list({"status": "Completed"})] == [c.id]
        assert [wo.id for wo in await store.list({"status": "COMPLETE"})] == [c.id]
        assert [wo.id for wo in await store.list({"assignedUserId": "Jane Doe"})] == [a.id]
        assert [wo.id for wo in await store.list({"assignedGroupId": 1})] == [a.id]
        assert await store.list({"status": "Skipped"}) == []

    @pytest.mark.asyncio
    async def test_stats_folds_codes_and_labels(self, store, engine):
        await store.create(WorkOrderFieldsFactory())
        async with engine.begin() as conn:
            for wo_id, status in (("RAW-1", "Completed"), ("RAW-2", "COMPLETE"), ("RAW-3", "Legacy")):
                await conn.execute(
                    text(
                        f'INSERT INTO "{store.namespace}".work_orders (customer_wo_id, status) '
                        "VALUES (:wo_id, :status)"
                    ),
                    {"wo_id": wo_id, "status": status},
                )

        stats = await store.stats()

        assert stats.total == 4
        assert stats.counts_by_status_label == {"Open": 1, "Completed": 2, "Legacy": 1}


class TestBulkUpsert:

    @pytest.mark.asyncio
    async def test_creates_updates_and_collects_errors(self, store):
        existing = await store.create(WorkOrderFieldsFactory(), acting_user="jdoe")
        rows = [
            WorkOrderFieldsFactory(),
            {"customerWoId": existing.customer_wo_id, "city": "Golden", "createdBy": "bsmith"},
            {"customerName": "No Id"},
            WorkOrderFieldsFactory(customerName=""),
            {**WorkOrderFieldsFactory(), "bogus": 1},
        ]

        result = await store.bulk_upsert(rows, acting_user="bsmith")

        assert result.created == 1
        assert result.updated == 1
        assert result.errors == [
            "Row 3: Missing required fields: customerWoId",
            "Row 4: Missing required fields: customerName",
            "Row 5: bogus: Extra inputs are not permitted",
        ]
        refreshed = await store.get(existing.id)
        assert refreshed.city == "Golden"
        assert refreshed.created_by == "u-1"
        assert refreshed.updated_by == "u-2"

    @pytest.mark.asyncio
    async def test_existing_rows_go_through_state_machine(self, store):
        existing = await store.create(WorkOrderFieldsFactory())

        result = await store.bulk_upsert([{"customerWoId": existing.customer_wo_id, "trouble": "T1"}])

        assert result.updated == 1
        assert (await store.get(existing.id)).status == "Trouble"

    @pytest.mark.asyncio
    async def test_row_deleted_mid_import_is_an_error(self, store, monkeypatch):
        existing = await store.create(WorkOrderFieldsFactory())
        await store.delete(existing.id)

        async def stale_lookup(customer_wo_id):
            return existing

        monkeypatch.setattr(store, "get_by_business_id", stale_lookup)

        result = await store.bulk_upsert([{"customerWoId": existing.customer_wo_id, "city": "Golden"}])

        assert result.updated == 0
        assert result.created == 0
        assert result.errors == [
            f"Row 1: Work order {existing.customer_wo_id} was deleted during the import"
        ]

    @pytest.mark.asyncio
    async def test_empty_batch(self, store):
        result = await store.bulk_upsert([])
        assert (result.created, result.updated, result.errors) == (0, 0, [])


class FailingMigrator:
    def __init__(self):
        self.calls = 0

    async def migrate(self, namespace):
        self.calls += 1
        return MigrationReport(namespace=namespace, error="column conversion failed")


class TestMigrationFailurePolicy:

    @pytest.mark.asyncio
    async def test_refuse_writes(self, session_factory, resolver, namespace, work_order_fields):
        store = WorkOrderStore(
            namespace, session_factory, resolver, FailingMigrator(), failure_policy="refuse_writes"
        )

        with pytest.raises(NamespaceDegradedError):
            await store.create(work_order_fields)
        with pytest.raises(NamespaceDegradedError):
            await store.bulk_upsert([work_order_fields])

        assert store.degraded
        assert await store.list() == []

    @pytest.mark.asyncio
    async def test_continue_serves_writes(self, session_factory, resolver, namespace, work_order_fields):
        migrator = FailingMigrator()
        store = WorkOrderStore(namespace, session_factory, resolver, migrator, failure_policy="continue")

        created = await store.create(work_order_fields)
        await store.update(created.id, {"city": "Aurora"})

        assert store.degraded
        assert migrator.calls == 1


def _ctx(**kwargs):
    defaults = dict(
        values={},
        sent=set(),
        actor_id="u-1",
        actor_name="Jane Doe",
        scheduled_code="Scheduled",
        scheduled_label="Scheduled",
        trouble_status_code="Trouble",
        default_status_code="Open",
        tz_name="UTC",
    )
    defaults.update(kwargs)
    return WriteContext(**defaults)


NOW = datetime(2024, 6, 1, 8, 0)
PREVIOUS = {"status": "Open", "trouble": None, "scheduled_at": None}


class TestDeriveChanges:
    """derive_changes is pure; no database needed."""

    def test_appointment_schedules(self):
        appointment = datetime(2024, 6, 2, 9, 0)
        ctx = _ctx(values={"scheduled_at": appointment}, sent={"scheduled_at"})

        values, notes = derive_changes(ctx, PREVIOUS, NOW)

        assert values["status"] == "Scheduled"
        assert values["scheduled_by"] == "u-1"
        assert notes == ["Scheduled at 06/01/2024, 08:00 AM by Jane Doe for 06/02/2024, 09:00 AM"]

    def test_appointment_beats_trouble(self):
        ctx = _ctx(
            values={"scheduled_at": datetime(2024, 6, 2), "trouble": "T1"},
            sent={"scheduled_at", "trouble"},
            trouble_label="Leak",
        )

        values, notes = derive_changes(ctx, PREVIOUS, NOW)

        assert values["status"] == "Scheduled"
        assert values["scheduled_at"] == datetime(2024, 6, 2)
        assert len(notes) == 2
        assert notes[0].startswith("Scheduled at ")
        assert notes[1] == "Trouble Code: T1 - Leak - 06/01/2024, 08:00 AM"

    def test_trouble_noted_when_appointment_cleared(self):
        ctx = _ctx(values={"scheduled_at": None, "trouble": "T2"}, sent={"scheduled_at", "trouble"})
        previous = {**PREVIOUS, "status": "Scheduled", "scheduled_at": NOW}

        values, notes = derive_changes(ctx, previous, NOW)

        assert values["status"] == "Open"
        assert notes == ["Trouble Code: T2 - 06/01/2024, 08:00 AM"]

    def test_trouble_without_label(self):
        ctx = _ctx(values={"trouble": "X9"}, sent={"trouble"})

        values, notes = derive_changes(ctx, PREVIOUS, NOW)

        assert values["status"] == "Trouble"
        assert notes == ["Trouble Code: X9 - 06/01/2024, 08:00 AM"]

    def test_clearing_trouble_is_not_a_change(self):
        ctx = _ctx(values={"trouble": None}, sent={"trouble"})
        previous = {**PREVIOUS, "status": "Trouble", "trouble": "T1"}

        values, notes = derive_changes(ctx, previous, NOW)

        assert "status" not in values
        assert notes == []

    def test_cleared_appointment_on_scheduled_order_reverts(self):
        ctx = _ctx(values={"scheduled_at": None}, sent={"scheduled_at"})
        previous = {**PREVIOUS, "status": "Scheduled", "scheduled_at": NOW}

        values, _ = derive_changes(ctx, previous, NOW)

        assert values["status"] == "Open"
        assert values["scheduled_by"] is None

    def test_cleared_appointment_on_other_status_keeps_it(self):
        ctx = _ctx(values={"scheduled_at": None}, sent={"scheduled_at"})
        previous = {**PREVIOUS, "status": "Trouble"}

        values, _ = derive_changes(ctx, previous, NOW)

        assert "status" not in values

    def test_completed_with_cleared_appointment(self):
        ctx = _ctx(
            values={"scheduled_at": None},
            sent={"scheduled_at", "status"},
            status_code="COMPLETE",
            status_label="Completed",
        )

        values, notes = derive_changes(ctx, {**PREVIOUS, "status": "Scheduled"}, NOW)

        assert values["status"] == "COMPLETE"
        assert values["completed_at"] == NOW
        assert notes == ["Completed at 06/01/2024, 08:00 AM by Jane Doe"]

    def test_scheduled_status_with_existing_appointment(self):
        ctx = _ctx(sent={"status"}, status_code="Scheduled", status_label="Scheduled")
        previous = {**PREVIOUS, "status": "Trouble", "scheduled_at": NOW}

        values, notes = derive_changes(ctx, previous, NOW)

        assert values["status"] == "Scheduled"
        assert "scheduled_at" not in values
        assert notes == []

    def test_scheduled_status_on_create_rejected(self):
        ctx = _ctx(sent={"status"}, status_code="Scheduled", status_label="Scheduled")
        with pytest.raises(InvalidWorkOrderFieldsError):
            derive_changes(ctx, None, NOW)

    def test_completed_note_without_actor(self):
        ctx = _ctx(sent={"status"}, status_code="COMPLETE", status_label="Completed",
                   actor_id=None, actor_name=None)

        values, notes = derive_changes(ctx, PREVIOUS, NOW)

        assert values["completed_by"] is None
        assert notes == ["Completed at 06/01/2024, 08:00 AM"]
