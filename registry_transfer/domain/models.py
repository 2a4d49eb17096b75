"""Registry Transfer Domain Models.

This module defines the typed rows, catalog entries and run outcomes that flow
through the transfer pipeline. Raw host field maps are decoded into these
models at the host boundary, so codecs only ever see validated, typed data.

Security Impact:
    - Rows carry PHI (names, MRN, dates of birth); they are never logged whole
    - Certificate passphrases are held as SecretStr and masked on display
    - Empty strings are normalised to None so "missing" has one representation

Architecture:
    - Pure domain models with zero infrastructure dependencies
    - Source rows are immutable once decoded
    - Outcome counters are plain dataclasses mutated only by the orchestrator
"""

import json
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator

VITAL_FIELDS = (
    "enc_weight",
    "enc_respiratory_rate",
    "enc_pulse",
    "enc_temperature",
    "enc_height",
    "enc_o2",
    "enc_bmi",
    "enc_bp_systolic",
    "enc_bp_diastolic",
)


class FormLocation(BaseModel):
    """Where one resource type's data lives in the host project.

    Parameters:
        form: Instrument (form) name holding the rows
        event: Event name; None for classic (non-longitudinal) projects
    """

    form: str = Field(..., pattern=r"^[a-z][a-z0-9_]*$", description="Form (instrument) name")
    event: Optional[str] = Field(None, description="Event name, if longitudinal")

    model_config = ConfigDict(frozen=True)

    def __str__(self) -> str:
        return f"{self.event}:{self.form}" if self.event else self.form


class ParticipatingRecord(BaseModel):
    """A patient selected for transfer in this run.

    Parameters:
        record_id: Internal host record identifier
        study_id: Externally shared study identifier (used in every resource reference)
        enrolled: Registry enrollment flag (always True once selected)
    """

    record_id: str = Field(..., min_length=1, description="Internal record identifier")
    study_id: str = Field(..., min_length=1, description="Externally shared study identifier")
    enrolled: bool = Field(True, description="Registry enrollment flag")

    model_config = ConfigDict(frozen=True)


class CodingOptions(BaseModel):
    """Organization-level coding values injected into every codec call."""

    submitting_org: str = Field(..., description="Submitting organization reference")
    identifier_system: str = Field(
        "http://terminology.hl7.org/CodeSystem/v2-0203",
        description="Identifier type code system"
    )
    local_code_system: str = Field(
        "https://www.stanford.edu",
        description="System URI for local lab component and medication ids"
    )

    model_config = ConfigDict(frozen=True)


class ConnectionContext(BaseModel):
    """Endpoint connection values for one run.

    The certificate files referenced here are owned by the certificate
    provisioner; the context itself never deletes anything.
    """

    url: str = Field(..., description="Endpoint base URL (no trailing slash)")
    cert_path: str = Field(..., description="Client certificate PEM file")
    key_path: str = Field(..., description="Client private key PEM file")
    cert_password: Optional[SecretStr] = Field(None, description="Private key passphrase")
    submitting_org: str = Field(..., description="Submitting organization identifier")

    model_config = ConfigDict(frozen=True)

    @field_validator("url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    def resource_url(self, path: str) -> str:
        """Join a `/<ResourceType>/<id>` path onto the base URL."""
        return f"{self.url}{path}"


# ============================================================================
# Typed source rows (decoded at the host boundary)
# ============================================================================

class SourceRow(BaseModel):
    """Base for all typed rows: owning record and repeating instance number."""

    record_id: str = Field(..., min_length=1, description="Owning record identifier")
    instance: int = Field(1, ge=1, description="Repeating-form instance number")

    model_config = ConfigDict(
        frozen=True,
        extra="ignore",
        str_strip_whitespace=True,
        coerce_numbers_to_str=True,
    )

    @field_validator("*", mode="before")
    @classmethod
    def blank_to_none(cls, v: Any) -> Any:
        """Normalise empty strings to None."""
        if isinstance(v, str) and v.strip() == "":
            return None
        return v

    @property
    def ref(self) -> str:
        """Human-readable row reference for logs."""
        return f"record {self.record_id} instance {self.instance}"


class DemographicsRow(SourceRow):
    mrn: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    race: Optional[str] = None
    ethnicity: Optional[str] = None
    street: Optional[str] = None
    city: Optional[str] = None
    state_text: Optional[str] = None
    zip: Optional[str] = None
    country_text: Optional[str] = None
    gender: Optional[str] = None
    dob: Optional[str] = None


class ConditionRow(SourceRow):
    dx_code: str = Field(..., description="ICD-10-CM diagnosis code")
    dx_description: Optional[str] = None
    dx_start_date: Optional[str] = None
    dx_resolved_date: Optional[str] = None


class LabRow(SourceRow):
    lab_id: Optional[str] = None
    lab_date_time: Optional[str] = None
    lab_loinc: Optional[str] = None
    lab_loinc_description: Optional[str] = None
    lab_result: Optional[str] = None
    lab_result_status: Optional[str] = None
    lab_result_units: Optional[str] = None
    lab_ref_low: Optional[str] = None
    lab_ref_high: Optional[str] = None
    lab_component_id: Optional[str] = None


class VitalsRow(SourceRow):
    """Vital sign measurements recorded against an encounter."""

    enc_id: Optional[str] = None
    enc_start_datetime: Optional[str] = None
    enc_weight: Optional[str] = None
    enc_respiratory_rate: Optional[str] = None
    enc_pulse: Optional[str] = None
    enc_temperature: Optional[str] = None
    enc_height: Optional[str] = None
    enc_o2: Optional[str] = None
    enc_bmi: Optional[str] = None
    enc_bp_systolic: Optional[str] = None
    enc_bp_diastolic: Optional[str] = None

    def present_vitals(self) -> dict[str, str]:
        """Return the non-empty vital fields in catalog order."""
        values = {}
        for name in VITAL_FIELDS:
            value = getattr(self, name)
            if value is not None:
                values[name] = value
        return values


class EncounterRow(VitalsRow):
    enc_start_datetime: str = Field(..., description="Encounter start date/time")
    enc_end_datetime: Optional[str] = None
    enc_status: Optional[str] = None
    enc_provider: Optional[str] = None
    enc_prov_specialty: Optional[str] = None
    enc_reason: Optional[str] = None


class ProcedureRow(SourceRow):
    proc_id: Optional[str] = None
    proc_code: str = Field(..., description="Procedure code")
    proc_code_type: Optional[str] = None
    proc_description: Optional[str] = None
    proc_date: Optional[str] = None
    proc_status: Optional[str] = None


class MedicationRow(SourceRow):
    med_list_id: Optional[str] = None
    med_ndc_code: Optional[str] = None
    med_local_id: Optional[str] = None
    med_snomed_ct_code: Optional[str] = None
    med_description: Optional[str] = None
    med_snomed_ct_description: Optional[str] = None
    med_brand_name: Optional[str] = None
    med_otc: Optional[str] = None
    med_start_date: Optional[str] = None
    med_end_date: Optional[str] = None
    med_order_date: Optional[str] = None
    med_administered: Optional[str] = None

    @property
    def drug_key(self) -> Optional[str]:
        """Catalog key for this drug: SNOMED code, else NDC code, else local id."""
        return self.med_snomed_ct_code or self.med_ndc_code or self.med_local_id


class AllergyRow(SourceRow):
    all_description: str = Field(..., description="Allergen description")
    all_date_noted: Optional[str] = None
    all_status: Optional[str] = None
    all_reaction: Optional[str] = None


# ============================================================================
# Medication catalog
# ============================================================================

class MedicationDraft(BaseModel):
    """Drug attributes staged for the shared medication catalog."""

    drug_key: str = Field(..., min_length=1, description="Distinct drug identifier")
    ndc_code: Optional[str] = None
    local_id: Optional[str] = None
    snomed_code: Optional[str] = None
    description: Optional[str] = None
    snomed_description: Optional[str] = None
    brand: bool = False
    otc: bool = False

    model_config = ConfigDict(frozen=True)

    @classmethod
    def from_row(cls, row: MedicationRow) -> 'MedicationDraft':
        return cls(
            drug_key=row.drug_key,
            ndc_code=row.med_ndc_code,
            local_id=row.med_local_id,
            snomed_code=row.med_snomed_ct_code,
            description=row.med_description,
            snomed_description=row.med_snomed_ct_description,
            brand=row.med_brand_name == "1",
            otc=row.med_otc == "1",
        )


class MedicationCatalogEntry(MedicationDraft):
    """One shared catalog entry; at most one exists per drug key.

    Parameters:
        seq: Monotonic sequence number (max existing + 1)
        sent: True once the Medication resource was accepted by the endpoint
        sent_at: When the Medication resource was accepted
    """

    seq: int = Field(..., ge=1, description="Catalog sequence number")
    sent: bool = Field(False, description="Medication resource accepted")
    sent_at: Optional[datetime] = Field(None, description="Acceptance timestamp")

    @property
    def list_id(self) -> str:
        return f"medlist-{self.seq}"


# ============================================================================
# Linkage
# ============================================================================

class EncounterWindow(BaseModel):
    """Date window of one already-identified encounter, used for linkage only."""

    encounter_id: str
    start: date
    end: Optional[date] = None
    instance: int = 1

    model_config = ConfigDict(frozen=True)

    def contains(self, target: date) -> bool:
        if self.end is None:
            return target == self.start
        return self.start <= target <= self.end


# ============================================================================
# Run outcomes
# ============================================================================

class RunStatus(str, Enum):
    """Coarse status reported by the trigger surface."""

    SUCCESS = "success"
    NO_RESOURCES = "no_resources"
    FAILURE = "failure"

    @property
    def exit_code(self) -> int:
        return {RunStatus.SUCCESS: 0, RunStatus.NO_RESOURCES: 2, RunStatus.FAILURE: 1}[self]


class SubmissionOutcome(str, Enum):
    SENT = "SENT"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"


@dataclass
class TypeOutcome:
    """Aggregate counts for one resource type within one record."""

    sent: int = 0
    failed: int = 0
    skipped: int = 0
    fetch_errors: int = 0
    disabled: bool = False

    @property
    def succeeded(self) -> bool:
        """True when nothing failed; does not imply anything was sent."""
        return self.failed == 0 and self.fetch_errors == 0

    def merge(self, other: 'TypeOutcome') -> None:
        self.sent += other.sent
        self.failed += other.failed
        self.skipped += other.skipped
        self.fetch_errors += other.fetch_errors
        self.disabled = self.disabled and other.disabled

    def as_dict(self) -> dict:
        return {
            "sent": self.sent,
            "failed": self.failed,
            "skipped": self.skipped,
            "fetch_errors": self.fetch_errors,
            "disabled": self.disabled,
        }


@dataclass
class RecordOutcome:
    record_id: str
    study_id: str
    types: dict[str, TypeOutcome] = field(default_factory=dict)

    def outcome_for(self, resource_type: str) -> TypeOutcome:
        if resource_type not in self.types:
            self.types[resource_type] = TypeOutcome()
        return self.types[resource_type]

    @property
    def succeeded(self) -> bool:
        return all(outcome.succeeded for outcome in self.types.values())


@dataclass
class RunReport:
    """Aggregate result of one transfer run.

    Attributes:
        run_id: Unique identifier of the run (also stamped on audit entries)
        selection: Resource types processed, in processing order
        records: Per-record outcomes, in cohort order
        status: Coarse run status (success / no resources / failure)
        error: Message of the exception that aborted the run, if any
    """

    run_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    selection: list[str] = field(default_factory=list)
    records: list[RecordOutcome] = field(default_factory=list)
    status: RunStatus = RunStatus.SUCCESS
    error: Optional[str] = None
    started_at: datetime = field(default_factory=datetime.now)
    finished_at: Optional[datetime] = None

    def totals(self) -> dict[str, TypeOutcome]:
        """Sum per-type outcomes across all records, keyed in selection order."""
        totals = {name: TypeOutcome(disabled=True) for name in self.selection}
        for record in self.records:
            for name, outcome in record.types.items():
                totals.setdefault(name, TypeOutcome(disabled=True)).merge(outcome)
        return totals

    @property
    def has_failures(self) -> bool:
        return any(not record.succeeded for record in self.records)


class SubmissionEvent(BaseModel):
    """One audited submission attempt (or skip) for a single resource.

    Parameters:
        run_id: Run that produced the event
        resource_type: Resource selection token (dx, lab, ...)
        record_id: Owning record identifier
        instance: Repeating instance number (None for catalog Medication resources)
        resource_id: Resource identifier used in the URL
        url: Target URL (None when skipped before encoding)
        outcome: SENT, FAILED or SKIPPED
        detail: Error or skip reason
    """

    run_id: str = Field(..., description="Run identifier")
    resource_type: str = Field(..., description="Resource type token")
    record_id: str = Field(..., description="Owning record identifier")
    instance: Optional[int] = Field(None, description="Repeating instance number")
    resource_id: Optional[str] = Field(None, description="Resource identifier")
    url: Optional[str] = Field(None, description="Target URL")
    outcome: SubmissionOutcome = Field(..., description="SENT, FAILED or SKIPPED")
    detail: Optional[Any] = Field(None, description="Error detail or skip reason")
    occurred_at: datetime = Field(default_factory=datetime.now, description="Event timestamp")

    model_config = {
        'frozen': True,
    }

    def to_audit_dict(self) -> dict:
        """Convert to a dictionary suitable for database insertion."""
        detail = self.detail
        if isinstance(detail, (dict, list)):
            detail = json.dumps(detail, ensure_ascii=False)
        return {
            'event_id': str(uuid.uuid4()),
            'run_id': self.run_id,
            'resource_type': self.resource_type,
            'record_id': self.record_id,
            'instance': self.instance,
            'resource_id': self.resource_id,
            'url': self.url,
            'outcome': self.outcome.value,
            'detail': None if detail is None else str(detail),
            'occurred_at': self.occurred_at,
        }
