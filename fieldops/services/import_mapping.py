"""Import boundary helpers.

The scheduled import pipeline maps source-system columns onto the canonical
work order field names before handing rows to ``WorkOrderStore.bulk_upsert``.
"""

from typing import Any, Dict, List, Mapping, Union

from fieldops.schemas.work_order import WorkOrderFields

WORK_ORDER_FIELD_MAPPINGS: List[Dict[str, Any]] = [
    {"key": "customerWoId", "label": "Work Order ID", "required": True},
    {"key": "customerId", "label": "Customer ID", "required": True},
    {"key": "customerName", "label": "Customer Name", "required": True},
    {"key": "address", "label": "Address", "required": True},
    {"key": "city", "label": "City", "required": False},
    {"key": "state", "label": "State", "required": False},
    {"key": "zip", "label": "ZIP Code", "required": False},
    {"key": "phone", "label": "Phone", "required": False},
    {"key": "email", "label": "Email", "required": False},
    {"key": "route", "label": "Route", "required": False},
    {"key": "zone", "label": "Zone", "required": False},
    {"key": "serviceType", "label": "Service Type (Water/Electric/Gas)", "required": True},
    {"key": "oldMeterId", "label": "Old Meter ID", "required": False},
    {"key": "oldMeterReading", "label": "Old Meter Reading", "required": False},
    {"key": "newMeterId", "label": "New Meter ID", "required": False},
    {"key": "newMeterReading", "label": "New Meter Reading", "required": False},
    {"key": "oldGps", "label": "Old GPS Coordinates", "required": False},
    {"key": "newGps", "label": "New GPS Coordinates", "required": False},
    {"key": "oldMeterType", "label": "Old Meter Type", "required": False},
    {"key": "newMeterType", "label": "New Meter Type", "required": False},
    {"key": "status", "label": "Status", "required": False},
    {"key": "trouble", "label": "Trouble Code", "required": False},
    {"key": "scheduledAt", "label": "Scheduled At", "required": False},
    {"key": "assignedUserId", "label": "Assigned User", "required": False},
    {"key": "assignedGroupId", "label": "Assigned Group", "required": False},
    {"key": "notes", "label": "Notes", "required": False},
]

REQUIRED_IMPORT_FIELDS: List[str] = [m["key"] for m in WORK_ORDER_FIELD_MAPPINGS if m["required"]]


def apply_column_mapping(source_row: Mapping[str, Any], column_mapping: Mapping[str, str]) -> Dict[str, Any]:
    """
    Translate a source row into canonical field names.

    ``column_mapping`` is ``{sourceColumn: targetField}``. Entries with an
    empty target, or whose source column is absent from the row, are skipped.
    """
    mapped: Dict[str, Any] = {}
    for source_column, target_field in column_mapping.items():
        if target_field and source_column in source_row:
            mapped[target_field] = source_row[source_column]
    return mapped


def missing_required_fields(row: Union[WorkOrderFields, Mapping[str, Any]]) -> List[str]:
    """Names of required create fields that are absent or blank."""
    if isinstance(row, WorkOrderFields):
        row = row.model_dump(by_alias=True)

    missing = []
    for key in REQUIRED_IMPORT_FIELDS:
        value = row.get(key)
        if value is None or (isinstance(value, str) and not value.strip()):
            missing.append(key)
    return missing
