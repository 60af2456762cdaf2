from datetime import datetime, timezone
from typing import Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel


def blank_to_none(values):
    """Treat blank strings (UI and spreadsheet cells) as absent values."""
    if isinstance(values, dict):
        return {
            k: (None if isinstance(v, str) and v.strip() == "" else v)
            for k, v in values.items()
        }
    return values


class WorkOrderFields(BaseModel):
    """Caller-settable work order attributes.

    Derived fields (scheduledBy, completedAt, completedBy, updatedBy, ids,
    timestamps) are owned by the store and rejected here. Which fields were
    actually sent is tracked by pydantic (``model_fields_set``), so the same
    model serves full creates and partial updates.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="forbid",
        str_strip_whitespace=True,
    )

    customer_wo_id: Optional[str] = None
    customer_id: Optional[str] = None
    customer_name: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    route: Optional[str] = None
    zone: Optional[str] = None
    service_type: Optional[str] = None

    old_meter_id: Optional[str] = None
    old_meter_reading: Optional[int] = None
    new_meter_id: Optional[str] = None
    new_meter_reading: Optional[int] = None
    old_gps: Optional[str] = None
    new_gps: Optional[str] = None
    old_meter_type: Optional[str] = None
    new_meter_type: Optional[str] = None

    status: Optional[str] = None
    trouble: Optional[str] = None
    scheduled_at: Optional[datetime] = None

    assigned_user_id: Optional[str] = None
    assigned_group_id: Optional[Union[int, str]] = None

    notes: Optional[str] = None
    attachments: Optional[List[str]] = None
    signature_data: Optional[str] = None
    signature_name: Optional[str] = None
    created_by: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def clean_blank_strings(cls, values):
        return blank_to_none(values)

    @field_validator("customer_id", "customer_wo_id", "old_meter_id", "new_meter_id", "zip", mode="before")
    @classmethod
    def coerce_identifier(cls, v):
        # Spreadsheets hand identifiers over as numbers
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            return str(int(v)) if float(v).is_integer() else str(v)
        return v

    @field_validator("scheduled_at")
    @classmethod
    def to_naive_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        if v is not None and v.tzinfo is not None:
            return v.astimezone(timezone.utc).replace(tzinfo=None)
        return v


class WorkOrderCreate(WorkOrderFields):
    """Schema for creating a work order."""
    pass


class WorkOrderUpdate(WorkOrderFields):
    """Schema for updating a work order (only the fields sent are applied)."""
    pass


class WorkOrder(BaseModel):
    """Stored work order, as returned by the store."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )

    id: Optional[int] = None
    customer_wo_id: Optional[str] = None
    customer_id: Optional[str] = None
    customer_name: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    route: Optional[str] = None
    zone: Optional[str] = None
    service_type: Optional[str] = None
    old_meter_id: Optional[str] = None
    old_meter_reading: Optional[int] = None
    new_meter_id: Optional[str] = None
    new_meter_reading: Optional[int] = None
    old_gps: Optional[str] = None
    new_gps: Optional[str] = None
    old_meter_type: Optional[str] = None
    new_meter_type: Optional[str] = None
    status: Optional[str] = None
    trouble: Optional[str] = None
    scheduled_at: Optional[datetime] = None
    scheduled_by: Optional[str] = None
    completed_at: Optional[datetime] = None
    completed_by: Optional[str] = None
    assigned_user_id: Optional[str] = None
    assigned_group_id: Optional[str] = None
    notes: Optional[str] = None
    attachments: Optional[List[str]] = None
    signature_data: Optional[str] = None
    signature_name: Optional[str] = None
    created_by: Optional[str] = None
    updated_by: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class WorkOrderFilters(BaseModel):
    """Optional filters for listing work orders."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")

    status: Optional[str] = None
    assigned_user_id: Optional[str] = None
    assigned_group_id: Optional[Union[int, str]] = None


class WorkOrderStats(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    counts_by_status_label: Dict[str, int] = Field(default_factory=dict)
    total: int = 0


class BulkUpsertResult(BaseModel):
    """Outcome of a best-effort batch import."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    created: int = 0
    updated: int = 0
    errors: List[str] = Field(default_factory=list)
