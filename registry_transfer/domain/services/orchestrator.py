"""Submission Orchestrator.

This service drives one record through fetch -> encode -> send -> mark-sent
for every selected resource type, strictly in processing order:

    demo -> dx -> lab -> enc -> med (catalog, then statements) -> px -> vitals -> allergy

Each run resumes from the persisted sent flags, so an instance that was
accepted once is never submitted again.

Security Impact:
    - Failed submissions are logged with their payload (PHI) at ERROR level
    - Status write-back only happens after the endpoint returned HTTP 200

Architecture:
    - Pure domain service; host store, transport and audit trail are injected
    - A failure on one instance never stops the remaining instances, types or records
    - Per-type results are aggregated into TypeOutcome counters
"""

import json
import logging
from datetime import datetime
from typing import Callable, Iterable, Optional, Type

from registry_transfer.domain.codecs import (
    VITAL_SIGNS,
    EncodedResource,
    decode_row,
    encode_allergy,
    encode_condition,
    encode_encounter,
    encode_lab,
    encode_medication_statement,
    encode_patient,
    encode_procedure,
    encode_vital,
)
from registry_transfer.domain.linkage import build_windows, resolve_encounter
from registry_transfer.domain.models import (
    AllergyRow,
    CodingOptions,
    ConditionRow,
    ConnectionContext,
    DemographicsRow,
    EncounterRow,
    EncounterWindow,
    FormLocation,
    LabRow,
    MedicationRow,
    ParticipatingRecord,
    ProcedureRow,
    RecordOutcome,
    SourceRow,
    SubmissionOutcome,
    TypeOutcome,
    VitalsRow,
)
from registry_transfer.domain.ports import (
    FieldCondition,
    RecordStorePort,
    StoreError,
    TransportPort,
    ValidationError,
)
from registry_transfer.domain.resource_types import STATUS_FIELDS, ResourceType
from registry_transfer.domain.services.medication_registry import LIST_ID_FIELD, MedicationRegistry
from registry_transfer.infrastructure.audit import SubmissionAuditLogger

logger = logging.getLogger(__name__)

TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"
UNRESOLVED_ENCOUNTER = "unk"


class SubmissionOrchestrator:
    """Per-record, per-resource-type submission driver.

    Parameters:
        store: Host record store (record-query / record-save)
        transport: Endpoint transport
        connection: Connection values for this run
        options: Organization-level coding values
        locations: Form/event per resource type; a missing entry disables the type
        registry: Medication registry used before statements are sent
        audit_logger: Optional submission audit trail
        clock: Source of send timestamps
    """

    def __init__(
        self,
        store: RecordStorePort,
        transport: TransportPort,
        connection: ConnectionContext,
        options: CodingOptions,
        locations: dict[ResourceType, Optional[FormLocation]],
        registry: Optional[MedicationRegistry] = None,
        audit_logger: Optional[SubmissionAuditLogger] = None,
        clock: Callable[[], datetime] = datetime.now
    ):
        self.store = store
        self.transport = transport
        self.connection = connection
        self.options = options
        self.locations = locations
        self.registry = registry
        self.audit_logger = audit_logger
        self.clock = clock

        self._handlers = {
            ResourceType.DEMO: self._send_demographics,
            ResourceType.DX: self._send_conditions,
            ResourceType.LAB: self._send_labs,
            ResourceType.ENC: self._send_encounters,
            ResourceType.MED: self._send_medications,
            ResourceType.PX: self._send_procedures,
            ResourceType.VITALS: self._send_vitals,
            ResourceType.ALLERGY: self._send_allergies,
        }

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def run(self, patients: Iterable[ParticipatingRecord], selection: list[ResourceType]) -> list[RecordOutcome]:
        """Process every participating record sequentially."""
        return [self.process_record(patient, selection) for patient in patients]

    def process_record(self, patient: ParticipatingRecord, selection: list[ResourceType]) -> RecordOutcome:
        """Send every selected resource type for one record.

        Parameters:
            patient: Record to process
            selection: Resource types in processing order (see parse_selection)

        Returns:
            RecordOutcome: Per-type counters for this record
        """
        record_outcome = RecordOutcome(record_id=patient.record_id, study_id=patient.study_id)
        logger.debug(f"Processing record {patient.record_id} (study id {patient.study_id})")

        for resource_type in selection:
            outcome = record_outcome.outcome_for(resource_type.value)
            location = self.locations.get(resource_type)
            if location is None:
                logger.debug(f"{resource_type.value} is not configured; skipping")
                outcome.disabled = True
                continue
            try:
                self._handlers[resource_type](patient, location, outcome)
            except StoreError as e:
                logger.error(
                    f"Host store failure for {resource_type.value} on record {patient.record_id}: {e}"
                )
                outcome.fetch_errors += 1

            log = logger.warning if not outcome.succeeded else logger.info
            log(
                f"Record {patient.record_id} {resource_type.value}: sent={outcome.sent} "
                f"failed={outcome.failed} skipped={outcome.skipped} fetch_errors={outcome.fetch_errors}"
            )

        return record_outcome

    # ------------------------------------------------------------------
    # Resource handlers
    # ------------------------------------------------------------------

    def _send_demographics(self, patient, location, outcome) -> None:
        for row in self._fetch(patient, ResourceType.DEMO, location, DemographicsRow, outcome):
            encoded = encode_patient(row, patient, self.options)
            self._submit_and_mark(patient, ResourceType.DEMO, location, row, encoded, outcome, write_id=False)

    def _send_conditions(self, patient, location, outcome) -> None:
        for row in self._fetch(patient, ResourceType.DX, location, ConditionRow, outcome):
            encoded = encode_condition(row, patient)
            self._submit_and_mark(patient, ResourceType.DX, location, row, encoded, outcome)

    def _send_labs(self, patient, location, outcome) -> None:
        for row in self._fetch(patient, ResourceType.LAB, location, LabRow, outcome):
            encoded = encode_lab(row, patient, self.options)
            # Source lab ids are kept; only generated ids are written back
            self._submit_and_mark(
                patient, ResourceType.LAB, location, row, encoded, outcome, write_id=row.lab_id is None
            )

    def _send_encounters(self, patient, location, outcome) -> None:
        for row in self._fetch(patient, ResourceType.ENC, location, EncounterRow, outcome):
            encoded = encode_encounter(row, patient)
            self._submit_and_mark(patient, ResourceType.ENC, location, row, encoded, outcome)

    def _send_medications(self, patient, location, outcome) -> None:
        if self.registry is not None:
            outcome.merge(self.registry.sync_patient(patient, location))

        rows = self._fetch(
            patient, ResourceType.MED, location, MedicationRow, outcome,
            extra=[FieldCondition.not_empty(LIST_ID_FIELD)]
        )
        for row in rows:
            encoded = encode_medication_statement(row, patient)
            self._submit_and_mark(patient, ResourceType.MED, location, row, encoded, outcome)

    def _send_procedures(self, patient, location, outcome) -> None:
        rows = self._fetch(patient, ResourceType.PX, location, ProcedureRow, outcome)
        if not rows:
            return
        windows = self._encounter_windows(patient)
        if windows is None:
            # Linking against an incomplete window list would send a wrong reference
            outcome.fetch_errors += 1
            return

        for row in rows:
            encounter_id = resolve_encounter(windows, row.proc_date)
            if encounter_id is None:
                logger.debug(f"Procedure {row.ref} dated {row.proc_date} matches no encounter")
            encoded = encode_procedure(row, patient, encounter_id)
            extra = {"proc_enc_id": encounter_id or UNRESOLVED_ENCOUNTER}
            self._submit_and_mark(
                patient, ResourceType.PX, location, row, encoded, outcome,
                write_id=row.proc_id is None, extra_fields=extra
            )

    def _send_vitals(self, patient, location, outcome) -> None:
        rows = self._fetch(patient, ResourceType.VITALS, location, VitalsRow, outcome)
        # Vitals kept on the encounter form belong to that exact encounter
        on_encounter_form = location == self.locations.get(ResourceType.ENC)
        windows: Optional[list[EncounterWindow]] = None
        windows_loaded = False

        for row in rows:
            present = row.present_vitals()
            if not present:
                logger.debug(f"No vital signs recorded on {row.ref}")
                outcome.skipped += 1
                continue

            encounter_id = row.enc_id
            if encounter_id is None and not on_encounter_form:
                if not windows_loaded:
                    windows = self._encounter_windows(patient)
                    windows_loaded = True
                    if windows is None:
                        outcome.fetch_errors += 1
                if windows is None:
                    # Unlinked vitals stay unsent until the encounters can be read
                    continue
                encounter_id = resolve_encounter(windows, row.enc_start_datetime)
            if encounter_id is None:
                logger.warning(f"Vital signs on {row.ref} deferred: owning encounter has not been sent")
                outcome.skipped += 1
                self._audit(ResourceType.VITALS, row, None, None, SubmissionOutcome.SKIPPED, "no encounter")
                continue

            all_sent = True
            for vital in VITAL_SIGNS:
                if vital.field_name not in present:
                    continue
                try:
                    encoded = encode_vital(vital, present[vital.field_name], patient, encounter_id, row.enc_start_datetime)
                except ValueError as e:
                    logger.warning(f"Vital {vital.name} on {row.ref} skipped: {e}")
                    outcome.skipped += 1
                    all_sent = False
                    continue
                if self._submit(patient, ResourceType.VITALS, row, encoded):
                    outcome.sent += 1
                else:
                    outcome.failed += 1
                    all_sent = False

            if all_sent:
                self._mark_sent(ResourceType.VITALS, location, row, None, outcome)

    def _send_allergies(self, patient, location, outcome) -> None:
        for row in self._fetch(patient, ResourceType.ALLERGY, location, AllergyRow, outcome):
            encoded = encode_allergy(row, patient)
            self._submit_and_mark(patient, ResourceType.ALLERGY, location, row, encoded, outcome)

    # ------------------------------------------------------------------
    # Shared steps
    # ------------------------------------------------------------------

    def _fetch(
        self,
        patient: ParticipatingRecord,
        resource_type: ResourceType,
        location: FormLocation,
        model: Type[SourceRow],
        outcome: TypeOutcome,
        extra: Optional[list[FieldCondition]] = None
    ) -> list:
        """Fetch and decode the unsent instances of one resource type.

        A store failure counts as "no data this run"; rows that fail to
        decode are skipped and stay unsent.
        """
        conditions = [FieldCondition.unsent(STATUS_FIELDS[resource_type].flag)] + (extra or [])
        result = self.store.fetch_instances(patient.record_id, location, conditions)
        if result.is_failure():
            logger.error(
                f"Could not read {resource_type.value} rows for record {patient.record_id} "
                f"from {location}: {result.error}"
            )
            outcome.fetch_errors += 1
            return []

        rows = []
        for instance in result.value:
            try:
                rows.append(decode_row(model, instance))
            except ValidationError as e:
                logger.warning(f"{e}; skipped ({e.details})")
                outcome.skipped += 1
                if self.audit_logger is not None:
                    self.audit_logger.log_submission(
                        resource_type.value, instance.record_id, instance.instance,
                        None, None, SubmissionOutcome.SKIPPED, e.details
                    )
        return rows

    def _encounter_windows(self, patient: ParticipatingRecord) -> Optional[list[EncounterWindow]]:
        """Load every encounter of the record (sent or not) as linkage windows.

        Returns None when the encounters could not be read.
        """
        location = self.locations.get(ResourceType.ENC)
        if location is None:
            return []
        result = self.store.fetch_instances(patient.record_id, location)
        if result.is_failure():
            logger.error(f"Could not read encounters for linkage on record {patient.record_id}: {result.error}")
            return None

        encounters = []
        for instance in result.value:
            try:
                encounters.append(decode_row(EncounterRow, instance))
            except ValidationError as e:
                logger.debug(f"Encounter excluded from linkage: {e}")
        return build_windows(encounters)

    def _submit(self, patient: ParticipatingRecord, resource_type: ResourceType, row: SourceRow, encoded: EncodedResource) -> bool:
        url = self.connection.resource_url(encoded.path)
        result = self.transport.put(url, encoded.document)
        if result.success:
            logger.debug(f"Sent {encoded.resource_type} {encoded.resource_id} for {row.ref}")
            self._audit(resource_type, row, encoded.resource_id, url, SubmissionOutcome.SENT)
            return True

        detail = result.error.to_dict() if result.error else {}
        logger.error(
            f"Error sending {encoded.resource_type} {encoded.resource_id} for {row.ref} "
            f"(study id {patient.study_id}). Payload: {json.dumps(encoded.document, ensure_ascii=False)} "
            f"Error: {detail}"
        )
        self._audit(resource_type, row, encoded.resource_id, url, SubmissionOutcome.FAILED, detail)
        return False

    def _submit_and_mark(
        self,
        patient: ParticipatingRecord,
        resource_type: ResourceType,
        location: FormLocation,
        row: SourceRow,
        encoded: EncodedResource,
        outcome: TypeOutcome,
        write_id: bool = True,
        extra_fields: Optional[dict] = None
    ) -> None:
        if not self._submit(patient, resource_type, row, encoded):
            outcome.failed += 1
            return
        outcome.sent += 1
        self._mark_sent(
            resource_type, location, row,
            encoded.resource_id if write_id else None,
            outcome, extra_fields
        )

    def _mark_sent(
        self,
        resource_type: ResourceType,
        location: FormLocation,
        row: SourceRow,
        resource_id: Optional[str],
        outcome: TypeOutcome,
        extra_fields: Optional[dict] = None
    ) -> None:
        status = STATUS_FIELDS[resource_type]
        fields = {status.flag: "1", status.timestamp: self.clock().strftime(TIMESTAMP_FORMAT)}
        if resource_id is not None and status.id_field:
            fields[status.id_field] = resource_id
        if extra_fields:
            fields.update(extra_fields)

        saved = self.store.save_instance_fields(row.record_id, location, row.instance, fields)
        if saved.is_failure():
            # Accepted but not marked: the next run re-sends the same id
            logger.error(f"Could not save {resource_type.value} status for {row.ref}: {saved.error}")
            outcome.fetch_errors += 1

    def _audit(self, resource_type, row, resource_id, url, result, detail=None) -> None:
        if self.audit_logger is not None:
            self.audit_logger.log_submission(
                resource_type.value, row.record_id, row.instance, resource_id, url, result, detail
            )
