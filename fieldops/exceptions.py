"""
Error taxonomy for the work order core.

Every error raised past a public boundary derives from ``WorkOrderCoreError``
and carries a machine-readable ``ErrorCode`` so callers (HTTP layer, import
pipeline) can map it without parsing messages.

- Structural errors (bad canonical DDL, missing reference tables) are fatal.
- Migration errors are recorded on the migration report, never raised.
- Constraint violations are raised to the caller.
- Lookup misses are not errors at all (resolvers return ``None``).
"""

from typing import Optional, Dict, Any, List
from enum import Enum
from pydantic import BaseModel, Field
from datetime import datetime


class ErrorCode(str, Enum):
    """Standardized error codes for the work order core."""

    # Validation
    VALIDATION_ERROR = "VAL_001"
    INVALID_FORMAT = "VAL_002"
    MISSING_FIELD = "VAL_003"
    CONSTRAINT_VIOLATION = "VAL_004"

    # Resource
    NOT_FOUND = "RES_001"
    ALREADY_EXISTS = "RES_002"

    # Schema lifecycle
    SCHEMA_DEFINITION = "SCH_001"
    MIGRATION_FAILED = "SCH_002"
    NAMESPACE_DEGRADED = "SCH_003"

    # Server
    DATABASE_ERROR = "EXT_004"
    INTERNAL_ERROR = "SRV_001"


class ErrorDetail(BaseModel):
    """
    Serializable description of a core error.

    Attributes:
        code: Machine-readable error code
        title: Short, human-readable summary
        detail: Explanation specific to this occurrence
        namespace: Project namespace the error belongs to, if any
        timestamp: ISO 8601 timestamp of when the error occurred
        errors: Field-level validation errors
    """

    code: str = Field(description="Machine-readable error code")
    title: str = Field(description="Short, human-readable summary of the problem")
    detail: str = Field(description="Explanation specific to this occurrence")
    namespace: Optional[str] = Field(default=None, description="Project namespace")
    timestamp: str = Field(description="ISO 8601 timestamp")
    errors: Optional[List[Dict[str, Any]]] = Field(
        default=None,
        description="Field-level validation errors"
    )


class WorkOrderCoreError(Exception):
    """
    Base exception for the work order core.

    Usage:
        raise ConstraintViolationError(
            detail="insert or update violates foreign key constraint fk_status",
            namespace="project_acme_water_7",
        )
    """

    code: ErrorCode = ErrorCode.INTERNAL_ERROR
    title: str = "Internal Error"

    def __init__(
        self,
        detail: str,
        namespace: Optional[str] = None,
        errors: Optional[List[Dict[str, Any]]] = None,
    ):
        self.detail = detail
        self.namespace = namespace
        self.errors = errors
        self.timestamp = datetime.utcnow().isoformat() + "Z"
        super().__init__(detail)

    def to_error_detail(self) -> ErrorDetail:
        return ErrorDetail(
            code=self.code.value,
            title=self.title,
            detail=self.detail,
            namespace=self.namespace,
            timestamp=self.timestamp,
            errors=self.errors,
        )


class SchemaDefinitionError(WorkOrderCoreError):
    """Canonical DDL could not be applied (fatal, not retried)."""

    code = ErrorCode.SCHEMA_DEFINITION
    title = "Schema Definition Error"


class MigrationError(WorkOrderCoreError):
    """A namespace could not be brought to the canonical shape."""

    code = ErrorCode.MIGRATION_FAILED
    title = "Migration Failed"


class NamespaceDegradedError(WorkOrderCoreError):
    """Writes refused because the namespace failed migration."""

    code = ErrorCode.NAMESPACE_DEGRADED
    title = "Namespace Degraded"


class ConstraintViolationError(WorkOrderCoreError):
    """The database rejected a write (foreign key, NOT NULL, uniqueness)."""

    code = ErrorCode.CONSTRAINT_VIOLATION
    title = "Constraint Violation"


class DuplicateWorkOrderError(ConstraintViolationError):
    """A work order with the same business id already exists."""

    code = ErrorCode.ALREADY_EXISTS
    title = "Duplicate Work Order"

    def __init__(self, customer_wo_id: str, namespace: Optional[str] = None):
        self.customer_wo_id = customer_wo_id
        super().__init__(
            detail=f"Work order with customerWoId {customer_wo_id!r} already exists",
            namespace=namespace,
        )


class WorkOrderNotFoundError(WorkOrderCoreError):
    """The work order disappeared between lookup and write."""

    code = ErrorCode.NOT_FOUND
    title = "Work Order Not Found"


class InvalidWorkOrderFieldsError(WorkOrderCoreError):
    """Unknown or malformed fields supplied for a work order."""

    code = ErrorCode.VALIDATION_ERROR
    title = "Validation Error"

    @classmethod
    def from_validation_error(cls, exc, namespace: Optional[str] = None) -> "InvalidWorkOrderFieldsError":
        """Wrap a pydantic ValidationError with field-level details."""
        errors = []
        for error in exc.errors():
            errors.append({
                "field": ".".join(str(loc) for loc in error["loc"]),
                "message": error["msg"],
                "type": error["type"],
            })
        summary = "; ".join(f"{e['field']}: {e['message']}" for e in errors)
        return cls(detail=summary or "Invalid work order fields", namespace=namespace, errors=errors)


class MissingRequiredFieldsError(WorkOrderCoreError):
    """Import row lacks a field required to create a work order."""

    code = ErrorCode.MISSING_FIELD
    title = "Missing Required Fields"

    def __init__(self, missing: List[str], namespace: Optional[str] = None):
        self.missing = missing
        super().__init__(
            detail=f"Missing required fields: {', '.join(missing)}",
            namespace=namespace,
        )
