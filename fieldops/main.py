"""
Work Order Core - composition root

Wires the shared engine into the resolver, migrator, provisioner, store
registry and backup service. Hosts (the HTTP API, the import scheduler) build
one ``WorkOrderCore`` at startup via ``lifespan()`` and hand it around.

SECURITY:
- Connection strings are never logged
"""

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Optional

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from fieldops.config import settings
from fieldops.services.lookup_resolver import LookupResolver
from fieldops.services.namespace import NamespaceProvisioner
from fieldops.services.namespace_backup import NamespaceBackupService
from fieldops.services.schema_migrator import SchemaMigrator
from fieldops.services.store_registry import StoreRegistry
from fieldops.services.work_order_store import WorkOrderStore

logger = logging.getLogger(__name__)


def configure_logging(level: Optional[str] = None) -> None:
    logging.basicConfig(
        level=level or settings.log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


@dataclass
class WorkOrderCore:
    engine: AsyncEngine
    session_factory: async_sessionmaker[AsyncSession]
    resolver: LookupResolver
    migrator: SchemaMigrator
    provisioner: NamespaceProvisioner
    registry: StoreRegistry
    backups: NamespaceBackupService

    async def create_project_namespace(self, project_name: str, project_id: int) -> str:
        """Provision the namespace for a new project and return its key."""
        return await self.provisioner.create(project_name, project_id)

    async def drop_project_namespace(self, namespace: str) -> None:
        """Destroy a project's namespace and forget its store."""
        await self.provisioner.destroy(namespace)
        self.registry.evict(namespace)

    async def store(self, namespace: str) -> WorkOrderStore:
        return await self.registry.get(namespace)


def build_core(
    engine: Optional[AsyncEngine] = None,
    failure_policy: Optional[str] = None,
    tz_name: Optional[str] = None,
) -> WorkOrderCore:
    """Build a core on ``engine`` (defaults to the application engine)."""
    if engine is None:
        from fieldops.database import async_session_maker, engine as default_engine

        engine = default_engine
        session_factory = async_session_maker
    else:
        session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    resolver = LookupResolver(session_factory)
    migrator = SchemaMigrator(engine)
    provisioner = NamespaceProvisioner(engine)

    def make_store(namespace: str) -> WorkOrderStore:
        return WorkOrderStore(
            namespace,
            session_factory,
            resolver,
            migrator,
            failure_policy=failure_policy,
            tz_name=tz_name,
        )

    registry = StoreRegistry(make_store)
    backups = NamespaceBackupService(session_factory, registry)
    return WorkOrderCore(
        engine=engine,
        session_factory=session_factory,
        resolver=resolver,
        migrator=migrator,
        provisioner=provisioner,
        registry=registry,
        backups=backups,
    )


@asynccontextmanager
async def lifespan(engine: Optional[AsyncEngine] = None) -> AsyncIterator[WorkOrderCore]:
    """Build the core for the life of the host process and dispose the pool afterwards."""
    configure_logging()
    logger.info("Starting work order core...")
    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"Migration failure policy: {settings.MIGRATION_FAILURE_POLICY}")

    core = build_core(engine)
    try:
        yield core
    finally:
        logger.info(f"Shutting down work order core ({len(core.registry)} open namespaces)...")
        core.registry.clear()
        await core.engine.dispose()
