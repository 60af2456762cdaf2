from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from fieldops.schemas.work_order import WorkOrder

BACKUP_FORMAT_VERSION = "3.0"


class NamespaceBackup(BaseModel):
    """Full export of one namespace's work orders."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    namespace: str
    backup_date: datetime
    version: str = BACKUP_FORMAT_VERSION
    work_orders: List[WorkOrder] = Field(default_factory=list)


class RestoreResult(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    restored: int = 0
    errors: List[str] = Field(default_factory=list)


class NamespaceStats(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    total_records: int = 0
    last_modified: Optional[datetime] = None
    table_size: Optional[str] = None
