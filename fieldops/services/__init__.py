# Services module
from fieldops.services.lookup_resolver import LookupResolver, LookupRecord, UserRecord
from fieldops.services.namespace import NamespaceProvisioner, namespace_key
from fieldops.services.schema_migrator import (
    MigrationReport,
    MigrationStep,
    SchemaMigrator,
    SchemaSnapshot,
    plan_migration,
)
from fieldops.services.work_order_store import WorkOrderStore, derive_changes
from fieldops.services.store_registry import StoreRegistry
from fieldops.services.namespace_backup import NamespaceBackupService

__all__ = [
    "LookupResolver",
    "LookupRecord",
    "UserRecord",
    "NamespaceProvisioner",
    "namespace_key",
    "MigrationReport",
    "MigrationStep",
    "SchemaMigrator",
    "SchemaSnapshot",
    "plan_migration",
    "WorkOrderStore",
    "derive_changes",
    "StoreRegistry",
    "NamespaceBackupService",
]
