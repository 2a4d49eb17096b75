"""In-Memory Record Store.

Dictionary-backed implementation of both store ports. Used for tests and
dry runs; nothing survives the process.
"""

import logging
import threading
from datetime import datetime
from typing import Any, Optional

from registry_transfer.domain.models import FormLocation, MedicationCatalogEntry, MedicationDraft
from registry_transfer.domain.ports import (
    CatalogStorePort,
    FieldCondition,
    InstanceRow,
    RecordStorePort,
    Result,
    StoreError,
    matches_all,
)

logger = logging.getLogger(__name__)

InstanceKey = tuple[str, Optional[str], str, int]


class InMemoryRecordStore(RecordStorePort, CatalogStorePort):
    """Record store and medication catalog held in dictionaries.

    Example Usage:
        ```python
        store = InMemoryRecordStore()
        store.add_instance("12", FormLocation(form="diagnosis"), 1, {"dx_code": "G12.0"})
        result = store.fetch_instances("12", FormLocation(form="diagnosis"))
        ```
    """

    def __init__(self):
        self._instances: dict[InstanceKey, dict[str, Any]] = {}
        self._catalog: dict[str, MedicationCatalogEntry] = {}
        self._lock = threading.Lock()
        self.submission_logs: list[dict] = []

    # ------------------------------------------------------------------
    # Seeding / inspection helpers
    # ------------------------------------------------------------------

    def add_instance(self, record_id: str, location: FormLocation, instance: int, fields: dict[str, Any]) -> None:
        """Create or replace one form instance."""
        self._instances[(str(record_id), location.event, location.form, int(instance))] = dict(fields)

    def get_fields(self, record_id: str, location: FormLocation, instance: int = 1) -> dict[str, Any]:
        """Return a copy of one instance's field map (empty when absent)."""
        return dict(self._instances.get((str(record_id), location.event, location.form, int(instance)), {}))

    def add_catalog_entry(self, entry: MedicationCatalogEntry) -> None:
        self._catalog[entry.drug_key] = entry

    # ------------------------------------------------------------------
    # RecordStorePort
    # ------------------------------------------------------------------

    def fetch_instances(
        self,
        record_id: str,
        location: FormLocation,
        conditions: Optional[list[FieldCondition]] = None
    ) -> Result[list[InstanceRow]]:
        rows = [
            InstanceRow(record_id=key[0], instance=key[3], fields=dict(fields))
            for key, fields in self._instances.items()
            if key[0] == str(record_id) and key[1] == location.event and key[2] == location.form
            and matches_all(conditions or [], fields)
        ]
        rows.sort(key=lambda row: row.instance)
        return Result.success_result(rows)

    def query_records(
        self,
        location: FormLocation,
        conditions: Optional[list[FieldCondition]] = None
    ) -> Result[list[InstanceRow]]:
        rows = [
            InstanceRow(record_id=key[0], instance=key[3], fields=dict(fields))
            for key, fields in self._instances.items()
            if key[1] == location.event and key[2] == location.form
            and matches_all(conditions or [], fields)
        ]
        rows.sort(key=lambda row: (_record_sort_key(row.record_id), row.instance))
        return Result.success_result(rows)

    def save_instance_fields(
        self,
        record_id: str,
        location: FormLocation,
        instance: int,
        fields: dict[str, Any]
    ) -> Result[None]:
        key = (str(record_id), location.event, location.form, int(instance))
        if key not in self._instances:
            return Result.failure_result(
                StoreError(f"No instance {instance} of {location} for record {record_id}", operation="save"),
                error_type="StoreError",
                error_details={"record_id": record_id, "instance": instance}
            )
        self._instances[key].update(fields)
        return Result.success_result(None)

    def flush_submission_logs(self, logs: list[dict]) -> Result[int]:
        self.submission_logs.extend(logs)
        return Result.success_result(len(logs))

    # ------------------------------------------------------------------
    # CatalogStorePort
    # ------------------------------------------------------------------

    def load_catalog(self) -> Result[list[MedicationCatalogEntry]]:
        entries = sorted(self._catalog.values(), key=lambda entry: entry.seq)
        return Result.success_result(entries)

    def reserve_entries(self, drafts: list[MedicationDraft]) -> Result[list[MedicationCatalogEntry]]:
        with self._lock:
            next_seq = max((entry.seq for entry in self._catalog.values()), default=0) + 1
            reserved: dict[str, MedicationCatalogEntry] = {}
            for draft in drafts:
                if draft.drug_key in reserved:
                    continue
                entry = self._catalog.get(draft.drug_key)
                if entry is None:
                    entry = MedicationCatalogEntry(**draft.model_dump(), seq=next_seq)
                    self._catalog[draft.drug_key] = entry
                    next_seq += 1
                    logger.debug(f"Reserved catalog entry {entry.list_id} for drug {draft.drug_key}")
                reserved[draft.drug_key] = entry
            return Result.success_result(list(reserved.values()))

    def mark_entry_sent(self, list_id: str, sent_at: datetime) -> Result[None]:
        with self._lock:
            for key, entry in self._catalog.items():
                if entry.list_id == list_id:
                    self._catalog[key] = entry.model_copy(update={"sent": True, "sent_at": sent_at})
                    return Result.success_result(None)
        return Result.failure_result(
            StoreError(f"Unknown catalog entry: {list_id}", operation="mark_entry_sent"),
            error_type="StoreError"
        )


def _record_sort_key(record_id: str) -> tuple:
    """Numeric record ids sort numerically, everything else lexically after them."""
    return (0, int(record_id), "") if record_id.isdigit() else (1, 0, record_id)
