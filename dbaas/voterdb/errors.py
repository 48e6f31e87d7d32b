"""
Error types for VoterDB.

This module defines every exception raised across the data layer:
- VoterDbError: Base exception
- UnknownTenantError / AmbiguousOrUnknownTenantError: Routing failures
- InvalidFieldNameError / DuplicateFieldError / CriticalFieldProtectedError:
  Schema-evolution validation failures
- NotFoundError: Missing member or field
- PartitionTransportError: A partition round-trip failed
- PartialMigrationError: A batched write stopped after committing some batches

Invariants:
    - All errors inherit from VoterDbError
    - Errors include a stable code and JSON-serializable details
    - Error messages are actionable
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class VoterDbError(Exception):
    """Base exception for all VoterDB errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "VOTERDB_ERROR"
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a JSON-serializable error body."""
        return {"error": self.message, "error_code": self.code, "details": self.details}


class UnknownTenantError(VoterDbError):
    """Tenant key is outside the configured set."""

    def __init__(self, tenant_key: Any) -> None:
        super().__init__(
            f"Unknown tenant key: {tenant_key!r}",
            code="UNKNOWN_TENANT",
            details={"tenant_key": tenant_key if isinstance(tenant_key, (int, str)) else repr(tenant_key)},
        )
        self.tenant_key = tenant_key


class AmbiguousOrUnknownTenantError(VoterDbError):
    """Identifier could not be resolved to exactly one tenant.

    Raised when:
    - An alias matches no constituency name
    - The matched document carries no usable tenant key
    - The identifier is empty
    """

    def __init__(self, identifier: Any, reason: str = "no matching constituency") -> None:
        super().__init__(
            f"Invalid constituency identifier {identifier!r}: {reason}",
            code="AMBIGUOUS_OR_UNKNOWN_TENANT",
            details={"identifier": str(identifier), "reason": reason},
        )
        self.identifier = identifier
        self.reason = reason


class InvalidFieldNameError(VoterDbError):
    """Field name does not match ^[A-Za-z_][A-Za-z0-9_]*$."""

    def __init__(self, field_name: Any) -> None:
        super().__init__(
            f"Invalid field name {field_name!r}: must start with a letter or underscore "
            "and contain only letters, numbers, and underscores",
            code="INVALID_FIELD_NAME",
            details={"field_name": str(field_name)},
        )
        self.field_name = field_name


class DuplicateFieldError(VoterDbError):
    """A field descriptor with this name already exists."""

    def __init__(self, field_name: str) -> None:
        super().__init__(
            f'Field "{field_name}" already exists',
            code="DUPLICATE_FIELD",
            details={"field_name": field_name},
        )
        self.field_name = field_name


class CriticalFieldProtectedError(VoterDbError):
    """Operation targets a protected system field."""

    def __init__(self, field_name: str, operation: str) -> None:
        super().__init__(
            f'Field "{field_name}" is a critical system field and cannot be {operation}',
            code="CRITICAL_FIELD_PROTECTED",
            details={"field_name": field_name, "operation": operation},
        )
        self.field_name = field_name
        self.operation = operation


class NotFoundError(VoterDbError):
    """Resource not found.

    Raised when:
    - A member id exists in no partition
    - A field exists neither as metadata nor on any document
    """

    def __init__(
        self,
        message: str,
        resource_type: str,
        resource_id: str,
    ) -> None:
        super().__init__(
            message,
            code="NOT_FOUND",
            details={
                "resource_type": resource_type,
                "resource_id": resource_id,
            },
        )
        self.resource_type = resource_type
        self.resource_id = resource_id


class PartitionTransportError(VoterDbError):
    """A round-trip to a partition failed.

    Fan-out operations never skip a failed partition: this error aborts the
    remaining probes and propagates to the caller.
    """

    def __init__(self, message: str, tenant_key: Optional[int] = None) -> None:
        super().__init__(
            message,
            code="PARTITION_TRANSPORT_ERROR",
            details={"tenant_key": tenant_key},
        )
        self.tenant_key = tenant_key


class PartialMigrationError(VoterDbError):
    """A batched schema operation failed after committing earlier batches.

    Batches are not rolled back. The partial report tells operators what
    was applied before the failure.

    Attributes:
        report: Operation report with the counts committed so far
        cause: The underlying transport error
    """

    def __init__(self, operation: str, report: Any, cause: Exception) -> None:
        super().__init__(
            f"{operation} stopped after a partition failure: {cause}",
            code="PARTIAL_MIGRATION",
            details={
                "operation": operation,
                "partial": report.to_dict() if hasattr(report, "to_dict") else None,
            },
        )
        self.operation = operation
        self.report = report
        self.cause = cause


class InvalidRequestError(VoterDbError):
    """Request payload failed validation."""

    def __init__(self, message: str, errors: Optional[list] = None) -> None:
        super().__init__(
            message,
            code="INVALID_REQUEST",
            details={"errors": errors or []},
        )
        self.errors = errors or []
