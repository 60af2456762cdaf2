"""
Lookup Resolver

Read-only access to the shared reference tables. Translates whatever a user or
an import file supplied (a code, a label, a numeric row id, a username, a full
name) into the canonical value a work order foreign key expects.

Every miss returns ``None``; callers decide whether that matters.
No caching: reference tables are administrator-editable and small.
"""

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Union

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fieldops.models import (
    MeterType,
    ServiceType,
    TroubleCode,
    User,
    UserGroup,
    WorkOrderStatus,
)

logger = logging.getLogger(__name__)

COMPLETED_LABEL = "Completed"
SCHEDULED_LABEL = "Scheduled"
TROUBLE_LABEL = "Trouble"
FALLBACK_DEFAULT_STATUS = "Open"


@dataclass(frozen=True)
class LookupRecord:
    """A reference row reduced to (id, code, label)."""

    id: int
    code: str
    label: str


@dataclass(frozen=True)
class UserRecord:
    id: str
    username: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None

    @property
    def display_name(self) -> str:
        full = f"{self.first_name or ''} {self.last_name or ''}".strip()
        return full or self.username


def _is_numeric(value: Union[int, str]) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, int):
        return True
    return isinstance(value, str) and value.strip().isdigit()


class LookupResolver:
    """Resolves human-facing identifiers against the shared reference tables."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def _code_or_label(self, model, value: Optional[str]) -> Optional[LookupRecord]:
        if value is None or str(value).strip() == "":
            return None
        value = str(value).strip()

        async with self.session_factory() as db:
            result = await db.execute(
                select(model).where(or_(model.code == value, model.label == value))
            )
            rows = result.scalars().all()

        if not rows:
            logger.debug(f"{model.__tablename__}: no match for {value!r}")
            return None
        # An exact code match wins over a label that happens to equal another row's code
        row = next((r for r in rows if r.code == value), rows[0])
        return LookupRecord(id=row.id, code=row.code, label=row.label)

    async def get_status(self, value: Optional[str]) -> Optional[LookupRecord]:
        return await self._code_or_label(WorkOrderStatus, value)

    async def get_service_type(self, value: Optional[str]) -> Optional[LookupRecord]:
        return await self._code_or_label(ServiceType, value)

    async def get_trouble_code(self, value: Optional[str]) -> Optional[LookupRecord]:
        return await self._code_or_label(TroubleCode, value)

    async def get_meter_type(self, value: Optional[Union[int, str]]) -> Optional[LookupRecord]:
        """Match a product id, a product label, or (legacy clients) a numeric row id."""
        if value is None or str(value).strip() == "":
            return None
        value = str(value).strip()

        async with self.session_factory() as db:
            result = await db.execute(
                select(MeterType).where(
                    or_(MeterType.product_id == value, MeterType.product_label == value)
                )
            )
            rows = result.scalars().all()
            if not rows and _is_numeric(value):
                result = await db.execute(select(MeterType).where(MeterType.id == int(value)))
                rows = result.scalars().all()

        if not rows:
            logger.debug(f"meter_types: no match for {value!r}")
            return None
        row = next((r for r in rows if r.product_id == value), rows[0])
        return LookupRecord(id=row.id, code=row.product_id, label=row.product_label)

    async def is_completed_status(self, value: Optional[str]) -> bool:
        """Completion is decided by label; codes are administrator-configurable."""
        if not value:
            return False
        record = await self.get_status(value)
        label = record.label if record else value
        return label == COMPLETED_LABEL

    async def default_status(self) -> Optional[LookupRecord]:
        """The status flagged ``is_default``, else the "Open" row."""
        async with self.session_factory() as db:
            result = await db.execute(
                select(WorkOrderStatus)
                .where(WorkOrderStatus.is_default.is_(True))
                .order_by(WorkOrderStatus.sort_order, WorkOrderStatus.id)
                .limit(1)
            )
            row = result.scalar_one_or_none()
        if row is not None:
            return LookupRecord(id=row.id, code=row.code, label=row.label)
        return await self.get_status(FALLBACK_DEFAULT_STATUS)

    async def list_statuses(self) -> List[LookupRecord]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(WorkOrderStatus).order_by(WorkOrderStatus.sort_order, WorkOrderStatus.id)
            )
            return [
                LookupRecord(id=r.id, code=r.code, label=r.label)
                for r in result.scalars().all()
            ]

    async def status_label_map(self) -> Dict[str, str]:
        """Map both codes and labels to the canonical label."""
        mapping: Dict[str, str] = {}
        for record in await self.list_statuses():
            mapping.setdefault(record.label, record.label)
            mapping[record.code] = record.label
        return mapping

    async def get_user(self, value: Optional[str]) -> Optional[UserRecord]:
        """Match a user id, a username, or a "First Last" display name."""
        if value is None or str(value).strip() == "":
            return None
        value = str(value).strip()

        full_name = func.trim(
            func.coalesce(User.first_name, "") + " " + func.coalesce(User.last_name, "")
        )
        async with self.session_factory() as db:
            result = await db.execute(
                select(User).where(
                    or_(User.id == value, User.username == value, full_name == value)
                )
            )
            rows = result.scalars().all()

        if not rows:
            logger.debug(f"users: no match for {value!r}")
            return None
        row = (
            next((r for r in rows if r.id == value), None)
            or next((r for r in rows if r.username == value), rows[0])
        )
        return UserRecord(
            id=row.id,
            username=row.username,
            first_name=row.first_name,
            last_name=row.last_name,
        )

    async def resolve_user_id(self, value: Optional[str]) -> Optional[str]:
        user = await self.get_user(value)
        return user.id if user else None

    async def resolve_group_name(self, value: Optional[Union[int, str]]) -> Optional[str]:
        """Translate a group id (int or digit string) or name to the group's name."""
        if value is None or str(value).strip() == "":
            return None

        async with self.session_factory() as db:
            name = None
            if _is_numeric(value):
                result = await db.execute(
                    select(UserGroup.name).where(UserGroup.id == int(value))
                )
                name = result.scalar_one_or_none()
            if name is None:
                result = await db.execute(
                    select(UserGroup.name).where(UserGroup.name == str(value).strip())
                )
                name = result.scalar_one_or_none()

        if name is None:
            logger.debug(f"user_groups: no match for {value!r}")
        return name
