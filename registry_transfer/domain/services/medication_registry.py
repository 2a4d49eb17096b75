"""Medication Registry Service.

This service keeps the cross-patient medication catalog in step with each
patient's medication rows. Every distinct drug is submitted once as a shared
Medication resource (`medlist-<n>`); patient rows are then back-filled with
the catalog id that their MedicationStatement will reference.

Security Impact:
    - Catalog entries hold drug codes only, never patient data
    - A patient row only receives a catalog id once its Medication was accepted

Architecture:
    - Pure domain service; the catalog store provides the atomic reserve step
    - Unsent catalog entries are retried on every run until accepted
    - Returns a TypeOutcome instead of raising on per-drug failures
"""

import json
import logging
from datetime import datetime
from typing import Callable, Optional

from registry_transfer.domain.codecs import decode_row, encode_medication
from registry_transfer.domain.models import (
    CodingOptions,
    ConnectionContext,
    FormLocation,
    MedicationCatalogEntry,
    MedicationDraft,
    MedicationRow,
    ParticipatingRecord,
    SubmissionOutcome,
    TypeOutcome,
)
from registry_transfer.domain.ports import (
    CatalogStorePort,
    FieldCondition,
    RecordStorePort,
    TransportPort,
    ValidationError,
)
from registry_transfer.domain.resource_types import STATUS_FIELDS, ResourceType
from registry_transfer.infrastructure.audit import SubmissionAuditLogger

logger = logging.getLogger(__name__)

LIST_ID_FIELD = "med_list_id"


class MedicationRegistry:
    """Deduplicates medications across patients and back-fills catalog ids."""

    def __init__(
        self,
        store: RecordStorePort,
        catalog: CatalogStorePort,
        transport: TransportPort,
        connection: ConnectionContext,
        options: CodingOptions,
        audit_logger: Optional[SubmissionAuditLogger] = None,
        clock: Callable[[], datetime] = datetime.now
    ):
        self.store = store
        self.catalog = catalog
        self.transport = transport
        self.connection = connection
        self.options = options
        self.audit_logger = audit_logger
        self.clock = clock

    def sync_patient(self, patient: ParticipatingRecord, location: FormLocation) -> TypeOutcome:
        """Register one patient's uncatalogued medications and back-fill their ids.

        Steps:
            1. Fetch unsent rows whose catalog id is still empty
            2. Atomically reserve one catalog entry per distinct drug key
            3. PUT each reserved entry not yet accepted; mark it sent on success
            4. Re-read the catalog and write the id onto every row whose entry was accepted

        Parameters:
            patient: Record being processed
            location: Form/event of the medication rows

        Returns:
            TypeOutcome: Medication resources sent/failed and rows skipped or deferred
        """
        outcome = TypeOutcome()
        flag = STATUS_FIELDS[ResourceType.MED].flag

        fetched = self.store.fetch_instances(
            patient.record_id,
            location,
            [FieldCondition.empty(LIST_ID_FIELD), FieldCondition.unsent(flag)]
        )
        if fetched.is_failure():
            logger.error(f"Could not read medications for record {patient.record_id}: {fetched.error}")
            outcome.fetch_errors += 1
            return outcome

        rows = self._decode_rows(fetched.value, outcome)
        if not rows:
            return outcome

        # Dedup within the batch by drug key, preserving first-seen order
        drafts: dict[str, MedicationDraft] = {}
        for row in rows:
            drafts.setdefault(row.drug_key, MedicationDraft.from_row(row))

        reserved = self.catalog.reserve_entries(list(drafts.values()))
        if reserved.is_failure():
            logger.error(f"Medication catalog update failed for record {patient.record_id}: {reserved.error}")
            outcome.fetch_errors += 1
            return outcome

        for entry in reserved.value:
            if not entry.sent:
                self._submit_entry(patient, entry, outcome)

        catalog = self.catalog.load_catalog()
        if catalog.is_failure():
            logger.error(f"Could not re-read medication catalog: {catalog.error}")
            outcome.fetch_errors += 1
            return outcome
        by_key = {entry.drug_key: entry for entry in catalog.value}

        for row in rows:
            entry = by_key.get(row.drug_key)
            if entry is None or not entry.sent:
                logger.warning(f"Medication {row.ref} deferred: catalog entry not yet accepted")
                outcome.skipped += 1
                continue
            saved = self.store.save_instance_fields(
                row.record_id, location, row.instance, {LIST_ID_FIELD: entry.list_id}
            )
            if saved.is_failure():
                logger.error(f"Could not store catalog id {entry.list_id} on {row.ref}: {saved.error}")
                outcome.fetch_errors += 1
            else:
                logger.debug(f"Linked medication {row.ref} to {entry.list_id}")

        return outcome

    def _decode_rows(self, instances, outcome: TypeOutcome) -> list[MedicationRow]:
        rows = []
        for instance in instances:
            try:
                row = decode_row(MedicationRow, instance)
            except ValidationError as e:
                logger.warning(f"{e}: {e.details}")
                outcome.skipped += 1
                continue
            if not row.drug_key:
                logger.warning(f"Medication {row.ref} has no SNOMED, NDC or local code; skipped")
                outcome.skipped += 1
                continue
            rows.append(row)
        return rows

    def _submit_entry(self, patient: ParticipatingRecord, entry: MedicationCatalogEntry, outcome: TypeOutcome) -> None:
        encoded = encode_medication(entry, self.options)
        url = self.connection.resource_url(encoded.path)
        result = self.transport.put(url, encoded.document)

        if not result.success:
            detail = result.error.to_dict() if result.error else {}
            logger.error(
                f"Error sending Medication {entry.list_id} (record {patient.record_id}). "
                f"Payload: {json.dumps(encoded.document, ensure_ascii=False)} Error: {detail}"
            )
            outcome.failed += 1
            self._audit(patient, entry, url, SubmissionOutcome.FAILED, detail)
            return

        outcome.sent += 1
        self._audit(patient, entry, url, SubmissionOutcome.SENT)
        marked = self.catalog.mark_entry_sent(entry.list_id, self.clock())
        if marked.is_failure():
            logger.error(f"Medication {entry.list_id} was accepted but could not be marked sent: {marked.error}")
            outcome.fetch_errors += 1
        else:
            logger.info(f"Registered Medication {entry.list_id} for drug {entry.drug_key}")

    def _audit(self, patient, entry, url, result, detail=None) -> None:
        if self.audit_logger is not None:
            self.audit_logger.log_submission(
                ResourceType.MED.value, patient.record_id, None, entry.list_id, url, result, detail
            )
