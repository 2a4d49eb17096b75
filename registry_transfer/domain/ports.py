"""Domain Ports - Abstract Contracts for Record Transfer.

This module defines the Port interfaces (abstract contracts) that Adapters must implement.
Following Hexagonal Architecture, the Domain Core defines what it needs from the host
data-capture platform and from the remote exchange endpoint, not how they are provided.

Security Impact:
    - Stores only ever hand raw field maps to the boundary decoders, never to codecs
    - Transport failures are reported as values so payloads can be logged in one place
    - Field names used in predicates are validated to keep stores injection-safe

Architecture:
    - Pure abstract interfaces with zero infrastructure dependencies
    - Adapters (DuckDB, in-memory, httpx) implement these ports
    - Result type communicates "no rows" (success, empty) apart from fetch failures
"""

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Generic, Optional, TypeVar, Union

from registry_transfer.domain.models import FormLocation, MedicationCatalogEntry, MedicationDraft

# Type variable for Result generic
T = TypeVar('T')

FIELD_NAME_PATTERN = re.compile(r"^[a-z][a-z0-9_]*$")


# ============================================================================
# Result Type for Success/Failure Communication
# ============================================================================

@dataclass(frozen=True)
class Result(Generic[T]):
    """Result type for communicating success or failure without exceptions.

    Host collaborator calls return Results so that a repeating-form access
    failure can be logged at the per-resource-type boundary and treated as
    "no data for this type this run" without aborting other types or records.
    An empty list inside a successful Result is the normal "nothing to send" case.

    Attributes:
        success: True if the operation succeeded, False otherwise
        value: The successful result value (only present if success=True)
        error: Error information (only present if success=False)
        error_type: Type of error (StoreError, ValidationError, etc.)
        error_details: Additional error context (record_id, form, instance, etc.)

    Example:
        ```python
        result = store.fetch_instances("12", location, [FieldCondition.unsent("dx_sent_to_curesma")])
        if result.is_success():
            for row in result.value:
                ...
        else:
            logger.error(result.error)
        ```
    """

    success: bool
    value: Optional[T] = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    error_details: Optional[dict] = None

    @classmethod
    def success_result(cls, value: T) -> 'Result[T]':
        """Create a successful result.

        Parameters:
            value: The successful result value

        Returns:
            Result: Success result with the value
        """
        return cls(
            success=True,
            value=value,
            error=None,
            error_type=None,
            error_details=None
        )

    @classmethod
    def failure_result(
        cls,
        error: Union[str, Exception],
        error_type: Optional[str] = None,
        error_details: Optional[dict] = None
    ) -> 'Result[T]':
        """Create a failure result.

        Parameters:
            error: Error message or exception
            error_type: Type of error (e.g., "StoreError", "ValidationError")
            error_details: Additional context (record_id, form, etc.)

        Returns:
            Result: Failure result with error information
        """
        error_message = str(error) if isinstance(error, Exception) else error
        error_type_name = error_type or (type(error).__name__ if isinstance(error, Exception) else "UnknownError")

        return cls(
            success=False,
            value=None,
            error=error_message,
            error_type=error_type_name,
            error_details=error_details or {}
        )

    def is_success(self) -> bool:
        """Check if result is successful."""
        return self.success

    def is_failure(self) -> bool:
        """Check if result is a failure."""
        return not self.success


# ============================================================================
# Custom Exception Hierarchy
# ============================================================================

class TransferError(Exception):
    """Base exception for all transfer-related errors."""
    pass


class ConfigurationError(TransferError):
    """Raised when required configuration is missing or malformed.

    Note that an unconfigured resource form/event is NOT a configuration
    error; it only disables that resource type.
    """
    pass


class ValidationError(TransferError):
    """Raised when a raw host row cannot be decoded into a typed resource row.

    Attributes:
        source: Identifier of the row that failed (record/instance)
        details: Validation messages
    """

    def __init__(self, message: str, source: Optional[str] = None, details: Optional[dict] = None):
        super().__init__(message)
        self.source = source
        self.details = details or {}


class StoreError(TransferError):
    """Raised when the host record store or the medication catalog fails.

    Attributes:
        operation: The store operation that failed (fetch, save, reserve, ...)
        details: Additional error context
    """

    def __init__(self, message: str, operation: Optional[str] = None, details: Optional[dict] = None):
        super().__init__(message)
        self.operation = operation
        self.details = details or {}


class TransportError(TransferError):
    """Raised when the transport cannot be constructed (bad certificate, etc.)."""
    pass


class CertificateError(TransferError):
    """Raised when certificate material cannot be provisioned or removed."""
    pass


# ============================================================================
# Host boundary value objects
# ============================================================================

@dataclass(frozen=True)
class FieldCondition:
    """One filter predicate applied to an instance's field map.

    Operators:
        unsent: field value is anything other than "1" (checkbox not ticked)
        empty: field missing or blank
        not_empty: field present and non-blank
        equals: field equals value (string comparison)
    """

    field: str
    op: str
    value: Optional[str] = None

    def __post_init__(self):
        if not FIELD_NAME_PATTERN.match(self.field):
            raise ValueError(f"Invalid field name in filter: {self.field!r}")
        if self.op not in ("unsent", "empty", "not_empty", "equals"):
            raise ValueError(f"Unsupported filter operator: {self.op}")

    @classmethod
    def unsent(cls, flag_field: str) -> 'FieldCondition':
        return cls(flag_field, "unsent")

    @classmethod
    def empty(cls, field_name: str) -> 'FieldCondition':
        return cls(field_name, "empty")

    @classmethod
    def not_empty(cls, field_name: str) -> 'FieldCondition':
        return cls(field_name, "not_empty")

    @classmethod
    def equals(cls, field_name: str, value: str) -> 'FieldCondition':
        return cls(field_name, "equals", value)

    def matches(self, fields: dict[str, Any]) -> bool:
        raw = fields.get(self.field)
        text = "" if raw is None else str(raw).strip()
        if self.op == "unsent":
            return text != "1"
        if self.op == "empty":
            return text == ""
        if self.op == "not_empty":
            return text != ""
        return text == (self.value or "")


def matches_all(conditions: list[FieldCondition], fields: dict[str, Any]) -> bool:
    """Return True when every condition holds for the field map."""
    return all(condition.matches(fields) for condition in conditions)


@dataclass(frozen=True)
class InstanceRow:
    """Raw field map for one form instance, as returned by the host store."""

    record_id: str
    instance: int
    fields: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class TransportErrorDetail:
    """Failure detail for one PUT.

    Attributes:
        http_code: HTTP status (0 when no response was received)
        response: Raw response body text
        info: Transport diagnostics (url, method, elapsed, http version)
        error: Low-level error string
    """

    http_code: int
    response: str = ""
    info: dict = field(default_factory=dict)
    error: str = ""

    def to_dict(self) -> dict:
        return {
            "http_code": self.http_code,
            "response": self.response,
            "info": self.info,
            "error": self.error,
        }


@dataclass(frozen=True)
class SubmissionResult:
    """Outcome of a single PUT to the exchange endpoint."""

    success: bool
    error: Optional[TransportErrorDetail] = None


# ============================================================================
# Ports
# ============================================================================

class RecordStorePort(ABC):
    """Abstract contract for the host record store (record-query / record-save).

    The store is keyed by (record_id, event, form, instance). Non-repeating
    forms are stored at instance 1.

    Key Principles:
        - Ordering: instances are returned ascending by instance number
        - Filtering: FieldCondition predicates are evaluated by the store
        - Merge saves: only the given fields change on save
    """

    @abstractmethod
    def fetch_instances(
        self,
        record_id: str,
        location: FormLocation,
        conditions: Optional[list[FieldCondition]] = None
    ) -> Result[list[InstanceRow]]:
        """Fetch the instances of one form for one record that satisfy all conditions.

        Parameters:
            record_id: Internal record identifier
            location: Form and event holding the data
            conditions: Predicates every returned instance must satisfy

        Returns:
            Result[list[InstanceRow]]: Matching instances (possibly empty) or failure
        """
        pass

    @abstractmethod
    def query_records(
        self,
        location: FormLocation,
        conditions: Optional[list[FieldCondition]] = None
    ) -> Result[list[InstanceRow]]:
        """Fetch matching instances of one form across all records.

        Used by the cohort selector; returns rows ordered by record id then instance.
        """
        pass

    @abstractmethod
    def save_instance_fields(
        self,
        record_id: str,
        location: FormLocation,
        instance: int,
        fields: dict[str, Any]
    ) -> Result[None]:
        """Persist status fields back onto an existing instance (merge semantics)."""
        pass

    def flush_submission_logs(self, logs: list[dict]) -> Result[int]:
        """Persist a batch of submission audit entries.

        Default implementation keeps nothing; stores with durable storage override it.
        """
        return Result.success_result(0)

    def close(self) -> None:
        """Release store resources (default: nothing to release)."""
        return None


class CatalogStorePort(ABC):
    """Abstract contract for the shared cross-patient medication catalog.

    The catalog is the only cross-record shared mutable resource. Its
    reserve operation must be atomic: read every entry, assign the next
    sequence number(s) and append, in one serialized step.
    """

    @abstractmethod
    def load_catalog(self) -> Result[list[MedicationCatalogEntry]]:
        """Read every catalog entry."""
        pass

    @abstractmethod
    def reserve_entries(self, drafts: list[MedicationDraft]) -> Result[list[MedicationCatalogEntry]]:
        """Atomically ensure one catalog entry exists per distinct drug key.

        New entries receive `medlist-<max(seq)+1>` in draft order and are stored
        unsent. Existing entries are returned untouched.

        Returns:
            Result[list[MedicationCatalogEntry]]: One entry per distinct drug key
            in `drafts`, in first-seen order
        """
        pass

    @abstractmethod
    def mark_entry_sent(self, list_id: str, sent_at: datetime) -> Result[None]:
        """Record that the Medication resource for a catalog entry was accepted."""
        pass


class TransportPort(ABC):
    """Abstract contract for submitting resource documents to the exchange endpoint."""

    @abstractmethod
    def put(self, url: str, document: dict) -> SubmissionResult:
        """PUT one canonical resource document.

        Success is HTTP 200 exactly; everything else is a failure carrying
        a TransportErrorDetail. Implementations never retry.
        """
        pass

    def close(self) -> None:
        """Release transport resources (default: nothing to release)."""
        pass
