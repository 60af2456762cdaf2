"""
Tests for import column mapping and required-field checks.
"""

from fieldops.schemas.work_order import WorkOrderFields
from fieldops.services.import_mapping import (
    REQUIRED_IMPORT_FIELDS,
    WORK_ORDER_FIELD_MAPPINGS,
    apply_column_mapping,
    missing_required_fields,
)

from factories import ImportRowFactory, WorkOrderFieldsFactory

COLUMN_MAPPING = {
    "WO_NUM": "customerWoId",
    "ACCOUNT": "customerId",
    "NAME": "customerName",
    "SERVICE_ADDR": "address",
    "UTILITY": "serviceType",
    "READING": "oldMeterReading",
    "IGNORED": "",
}


class TestFieldMappings:

    def test_required_fields(self):
        assert REQUIRED_IMPORT_FIELDS == [
            "customerWoId", "customerId", "customerName", "address", "serviceType",
        ]

    def test_every_key_is_a_work_order_field(self):
        aliases = {f.alias for f in WorkOrderFields.model_fields.values()}
        assert {m["key"] for m in WORK_ORDER_FIELD_MAPPINGS} <= aliases


class TestApplyColumnMapping:

    def test_maps_source_columns(self):
        row = ImportRowFactory(ACCOUNT=50123, READING="417")

        mapped = apply_column_mapping(row, COLUMN_MAPPING)

        assert mapped["customerWoId"] == row["WO_NUM"]
        assert mapped["customerId"] == 50123
        assert mapped["oldMeterReading"] == "417"
        assert "" not in mapped

    def test_skips_absent_columns(self):
        mapped = apply_column_mapping({"WO_NUM": "EXT-9"}, COLUMN_MAPPING)
        assert mapped == {"customerWoId": "EXT-9"}

    def test_mapped_row_validates(self):
        mapped = apply_column_mapping(ImportRowFactory(ACCOUNT=50123, READING="417"), COLUMN_MAPPING)

        fields = WorkOrderFields.model_validate(mapped)

        assert fields.customer_id == "50123"
        assert fields.old_meter_reading == 417
        assert missing_required_fields(fields) == []


class TestMissingRequiredFields:

    def test_complete_row(self):
        assert missing_required_fields(WorkOrderFieldsFactory()) == []

    def test_blank_and_absent_values(self):
        row = WorkOrderFieldsFactory(customerName="   ")
        del row["address"]

        assert missing_required_fields(row) == ["customerName", "address"]

    def test_model_input(self):
        fields = WorkOrderFields(customer_wo_id="WO-1", customer_name="Jane")
        assert missing_required_fields(fields) == ["customerId", "address", "serviceType"]
