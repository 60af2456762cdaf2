"""
Project namespaces.

Each project's work orders live in their own namespace of the shared database:
a schema on PostgreSQL, an attached database on SQLite (local runs and tests).
``namespace_key`` derives the key, ``NamespaceProvisioner`` creates and drops it.
"""

import logging
import re
from typing import Optional

from sqlalchemy import inspect, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine
from sqlalchemy.schema import CreateSchema, DropSchema

from fieldops.config import settings
from fieldops.exceptions import SchemaDefinitionError
from fieldops.models.work_order import (
    CANONICAL_FOREIGN_KEYS,
    build_work_order_table,
    forget_work_order_table,
)

logger = logging.getLogger(__name__)

_NON_ALNUM = re.compile(r"[^a-z0-9]+")
_VALID_KEY = re.compile(r"^[a-z][a-z0-9_]*$")

# PostgreSQL truncates identifiers longer than this
MAX_IDENTIFIER_LENGTH = 63


def namespace_key(
    project_name: str,
    project_id: int,
    prefix: Optional[str] = None,
    max_length: Optional[int] = None,
) -> str:
    """
    Derive the namespace key for a project.

    "Acme Water (North)", 7 -> "project_acme_water_north_7"

    The name part is lowercased, every run of non-alphanumerics becomes a
    single underscore, and it is capped at ``max_length`` characters (less if
    the prefix and id would push the key past ``MAX_IDENTIFIER_LENGTH``). The
    id suffix keeps two projects with the same name apart.
    """
    prefix = prefix or settings.NAMESPACE_PREFIX
    max_length = max_length or settings.NAMESPACE_MAX_LENGTH

    sanitized = _NON_ALNUM.sub("_", (project_name or "").lower()).strip("_")
    room = MAX_IDENTIFIER_LENGTH - len(prefix) - len(str(project_id)) - 2
    sanitized = sanitized[:max(min(max_length, room), 0)].strip("_")
    if not sanitized:
        return f"{prefix}_{project_id}"
    return f"{prefix}_{sanitized}_{project_id}"


def validate_namespace_key(key: str) -> str:
    """Reject anything that is not a key ``namespace_key`` could have produced."""
    if not key or not _VALID_KEY.match(key) or len(key) > MAX_IDENTIFIER_LENGTH:
        raise ValueError(f"Invalid namespace key: {key!r}")
    return key


def _missing_reference_tables(sync_conn) -> list:
    inspector = inspect(sync_conn)
    required = sorted({fk.ref_table for fk in CANONICAL_FOREIGN_KEYS})
    return [name for name in required if not inspector.has_table(name)]


class NamespaceProvisioner:
    """Creates and destroys project namespaces on a shared engine."""

    def __init__(self, engine: AsyncEngine):
        self.engine = engine

    async def exists(self, key: str) -> bool:
        async with self.engine.connect() as conn:
            names = await conn.run_sync(lambda c: inspect(c).get_schema_names())
        return key in names

    async def create(self, project_name: str, project_id: int) -> str:
        """
        Create the namespace (if absent) and its canonical work order table.

        Raises:
            SchemaDefinitionError: reference tables are missing or the
                canonical DDL was rejected. Not retried.
        """
        key = validate_namespace_key(namespace_key(project_name, project_id))

        try:
            async with self.engine.begin() as conn:
                missing = await conn.run_sync(_missing_reference_tables)
                if missing:
                    logger.error(f"Cannot provision {key}: missing reference tables {missing}")
                    raise SchemaDefinitionError(
                        detail=f"Reference tables missing: {', '.join(missing)}",
                        namespace=key,
                    )
                await self._create_namespace(conn, key)
                table = build_work_order_table(key)
                await conn.run_sync(lambda c: table.create(c, checkfirst=True))
        except SQLAlchemyError as e:
            logger.error(f"Failed to provision namespace {key}: {e}")
            raise SchemaDefinitionError(
                detail=f"Could not create work order table: {e}",
                namespace=key,
            ) from e

        logger.info(f"Provisioned namespace {key} for project {project_id}")
        return key

    async def destroy(self, key: str) -> None:
        """Drop the namespace and everything in it. There is no recovery."""
        validate_namespace_key(key)
        async with self.engine.begin() as conn:
            if conn.dialect.name == "sqlite":
                attached = await self._sqlite_attached(conn)
                if key in attached:
                    await conn.execute(text(f'DETACH DATABASE "{key}"'))
            else:
                await conn.execute(DropSchema(key, cascade=True, if_exists=True))
        forget_work_order_table(key)
        logger.info(f"Destroyed namespace {key}")

    async def _create_namespace(self, conn: AsyncConnection, key: str) -> None:
        if conn.dialect.name == "sqlite":
            if key not in await self._sqlite_attached(conn):
                await conn.execute(text(f"ATTACH DATABASE ':memory:' AS \"{key}\""))
        else:
            await conn.execute(CreateSchema(key, if_not_exists=True))

    @staticmethod
    async def _sqlite_attached(conn: AsyncConnection) -> set:
        result = await conn.execute(text("PRAGMA database_list"))
        return {row[1] for row in result}
