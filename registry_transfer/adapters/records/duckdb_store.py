"""DuckDB Record Store Adapter.

This adapter implements RecordStorePort and CatalogStorePort over a DuckDB
database holding the host project's form instances, the shared medication
catalog and the submission audit trail.

Security Impact:
    - Form instances contain PHI; they are stored as JSON field maps only
    - Field names reaching SQL are never interpolated; filters run on decoded maps
    - The audit trail table is append-only

Architecture:
    - Implements RecordStorePort and CatalogStorePort (Hexagonal Architecture)
    - Isolated from domain core - only depends on ports and models
    - Catalog reservation runs in one BEGIN ... COMMIT transaction
    - CSV exports are loaded in chunks with pandas
"""

import json
import logging
import threading
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

import duckdb
import pandas as pd

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
from registry_transfer.infrastructure.config_manager import StoreConfig

logger = logging.getLogger(__name__)

# Empty string stands in for "no event" so the primary key stays NOT NULL
NO_EVENT = ""

INSTANCE_COLUMN = "redcap_repeat_instance"
RECORD_COLUMN = "record_id"
# Export column of a single-option checkbox (e.g. dx_sent_to_curesma___1)
CHECKBOX_SUFFIX = "___1"

CATALOG_COLUMNS = (
    "seq", "drug_key", "ndc_code", "local_id", "snomed_code", "description",
    "snomed_description", "brand", "otc", "sent", "sent_at",
)


class DuckDBRecordStore(RecordStorePort, CatalogStorePort):
    """DuckDB implementation of the host record store and medication catalog.

    Parameters:
        store_config: StoreConfig from the configuration manager (preferred)
        db_path: Path to DuckDB database file (or ':memory:' for in-memory)

    Example Usage:
        ```python
        store = DuckDBRecordStore(db_path="data/registry.duckdb")
        store.initialize_schema()
        store.import_csv("exports/diagnosis.csv", FormLocation(form="diagnosis"))
        result = store.fetch_instances("12", FormLocation(form="diagnosis"))
        ```
    """

    def __init__(self, store_config: Optional[StoreConfig] = None, db_path: Optional[str] = None):
        """Initialize DuckDB record store.

        Connection is established lazily (on first operation). If both
        store_config and db_path are given, store_config takes precedence.
        """
        if store_config:
            if store_config.db_type != "duckdb":
                raise StoreError(
                    f"StoreConfig type '{store_config.db_type}' does not match DuckDB store",
                    operation="__init__"
                )
            self.db_path = store_config.db_path or ":memory:"
        else:
            self.db_path = db_path or ":memory:"

        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        self._initialized = False
        self._catalog_lock = threading.Lock()

        if self.db_path != ":memory:":
            db_path_obj = Path(self.db_path)
            if not db_path_obj.parent.exists():
                raise StoreError(
                    f"Database directory does not exist: {db_path_obj.parent}",
                    operation="__init__"
                )

    def _get_connection(self) -> duckdb.DuckDBPyConnection:
        """Get or create the DuckDB connection."""
        if self._connection is None:
            try:
                self._connection = duckdb.connect(self.db_path)
                logger.info(f"Connected to DuckDB database: {self.db_path}")
            except Exception as e:
                raise StoreError(
                    f"Failed to connect to DuckDB: {str(e)}",
                    operation="connect",
                    details={"db_path": self.db_path}
                )
        return self._connection

    def _ensure_schema(self) -> None:
        if not self._initialized:
            result = self.initialize_schema()
            if result.is_failure():
                raise StoreError(result.error, operation="initialize_schema")

    def initialize_schema(self) -> Result[None]:
        """Create the form_instances, medication_catalog and submission_log tables.

        Returns:
            Result[None]: Success or failure result
        """
        try:
            conn = self._get_connection()

            conn.execute("""
                CREATE TABLE IF NOT EXISTS form_instances (
                    record_id VARCHAR NOT NULL,
                    event VARCHAR NOT NULL,
                    form VARCHAR NOT NULL,
                    instance INTEGER NOT NULL,
                    fields JSON NOT NULL,
                    updated_at TIMESTAMP,
                    PRIMARY KEY (record_id, event, form, instance)
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS medication_catalog (
                    seq INTEGER PRIMARY KEY,
                    drug_key VARCHAR NOT NULL UNIQUE,
                    ndc_code VARCHAR,
                    local_id VARCHAR,
                    snomed_code VARCHAR,
                    description VARCHAR,
                    snomed_description VARCHAR,
                    brand BOOLEAN NOT NULL DEFAULT FALSE,
                    otc BOOLEAN NOT NULL DEFAULT FALSE,
                    sent BOOLEAN NOT NULL DEFAULT FALSE,
                    sent_at TIMESTAMP,
                    created_at TIMESTAMP NOT NULL
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS submission_log (
                    event_id VARCHAR PRIMARY KEY,
                    run_id VARCHAR NOT NULL,
                    resource_type VARCHAR NOT NULL,
                    record_id VARCHAR NOT NULL,
                    instance INTEGER,
                    resource_id VARCHAR,
                    url VARCHAR,
                    outcome VARCHAR NOT NULL,
                    detail VARCHAR,
                    occurred_at TIMESTAMP NOT NULL
                )
            """)

            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_form_instances_form
                ON form_instances(form, event)
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_submission_log_run
                ON submission_log(run_id)
            """)

            self._initialized = True
            logger.info("DuckDB record store schema initialized")
            return Result.success_result(None)

        except Exception as e:
            error_msg = f"Failed to initialize schema: {str(e)}"
            logger.error(error_msg, exc_info=True)
            return Result.failure_result(
                StoreError(error_msg, operation="initialize_schema"),
                error_type="StoreError"
            )

    # ------------------------------------------------------------------
    # RecordStorePort
    # ------------------------------------------------------------------

    def _select(self, location: FormLocation, record_id: Optional[str], conditions) -> list[InstanceRow]:
        self._ensure_schema()
        conn = self._get_connection()
        sql = "SELECT record_id, instance, fields FROM form_instances WHERE form = ? AND event = ?"
        params: list[Any] = [location.form, location.event or NO_EVENT]
        if record_id is not None:
            sql += " AND record_id = ?"
            params.append(str(record_id))
        sql += " ORDER BY TRY_CAST(record_id AS BIGINT) NULLS LAST, record_id, instance"

        rows = []
        for rec_id, instance, fields_json in conn.execute(sql, params).fetchall():
            fields = json.loads(fields_json) if isinstance(fields_json, str) else dict(fields_json or {})
            if matches_all(conditions or [], fields):
                rows.append(InstanceRow(record_id=rec_id, instance=int(instance), fields=fields))
        return rows

    def fetch_instances(
        self,
        record_id: str,
        location: FormLocation,
        conditions: Optional[list[FieldCondition]] = None
    ) -> Result[list[InstanceRow]]:
        try:
            return Result.success_result(self._select(location, record_id, conditions))
        except Exception as e:
            error_msg = f"Failed to fetch {location} instances for record {record_id}: {str(e)}"
            logger.error(error_msg, exc_info=True)
            return Result.failure_result(
                StoreError(error_msg, operation="fetch_instances"),
                error_type="StoreError",
                error_details={"record_id": record_id, "form": location.form}
            )

    def query_records(
        self,
        location: FormLocation,
        conditions: Optional[list[FieldCondition]] = None
    ) -> Result[list[InstanceRow]]:
        try:
            return Result.success_result(self._select(location, None, conditions))
        except Exception as e:
            error_msg = f"Failed to query {location}: {str(e)}"
            logger.error(error_msg, exc_info=True)
            return Result.failure_result(
                StoreError(error_msg, operation="query_records"),
                error_type="StoreError",
                error_details={"form": location.form}
            )

    def save_instance_fields(
        self,
        record_id: str,
        location: FormLocation,
        instance: int,
        fields: dict[str, Any]
    ) -> Result[None]:
        """Merge fields into an existing instance inside a transaction."""
        try:
            self._ensure_schema()
            conn = self._get_connection()
            conn.begin()
            try:
                key = [str(record_id), location.event or NO_EVENT, location.form, int(instance)]
                existing = conn.execute(
                    "SELECT fields FROM form_instances "
                    "WHERE record_id = ? AND event = ? AND form = ? AND instance = ?",
                    key
                ).fetchone()
                if existing is None:
                    raise StoreError(
                        f"No instance {instance} of {location} for record {record_id}",
                        operation="save_instance_fields"
                    )
                merged = json.loads(existing[0]) if isinstance(existing[0], str) else dict(existing[0])
                merged.update({name: _as_text(value) for name, value in fields.items()})
                conn.execute(
                    "UPDATE form_instances SET fields = ?, updated_at = ? "
                    "WHERE record_id = ? AND event = ? AND form = ? AND instance = ?",
                    [json.dumps(merged, ensure_ascii=False), datetime.now()] + key
                )
                conn.commit()
            except Exception:
                conn.rollback()
                raise
            return Result.success_result(None)

        except Exception as e:
            error_msg = f"Failed to save {location} instance {instance} for record {record_id}: {str(e)}"
            logger.error(error_msg)
            return Result.failure_result(
                StoreError(error_msg, operation="save_instance_fields"),
                error_type="StoreError",
                error_details={"record_id": record_id, "instance": instance}
            )

    def upsert_instance(self, record_id: str, location: FormLocation, instance: int, fields: dict[str, Any]) -> None:
        """Create or replace one form instance (used by imports and fixtures)."""
        self._ensure_schema()
        conn = self._get_connection()
        conn.execute(
            "INSERT OR REPLACE INTO form_instances (record_id, event, form, instance, fields, updated_at) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            [
                str(record_id), location.event or NO_EVENT, location.form, int(instance),
                json.dumps({k: _as_text(v) for k, v in fields.items()}, ensure_ascii=False),
                datetime.now(),
            ]
        )

    def import_csv(self, path: str, location: FormLocation, chunk_size: int = 10000) -> Result[int]:
        """Load a per-form CSV export into form_instances.

        Columns: `record_id`, optional `redcap_repeat_instance` (defaults to 1),
        then one column per field. Checkbox columns such as
        `dx_sent_to_curesma___1` load as `dx_sent_to_curesma`. Existing
        instances are replaced.

        Parameters:
            path: CSV file path
            location: Form/event the rows belong to
            chunk_size: Rows read per chunk

        Returns:
            Result[int]: Number of instances loaded
        """
        csv_path = Path(path)
        if not csv_path.exists():
            return Result.failure_result(
                StoreError(f"CSV file not found: {path}", operation="import_csv"),
                error_type="StoreError"
            )

        try:
            self._ensure_schema()
            conn = self._get_connection()
            total = 0
            for chunk in pd.read_csv(csv_path, dtype=str, keep_default_na=False, chunksize=chunk_size):
                chunk = chunk.rename(columns=_field_name)
                if RECORD_COLUMN not in chunk.columns:
                    raise StoreError(
                        f"CSV export has no {RECORD_COLUMN} column",
                        operation="import_csv",
                        details={"columns": list(chunk.columns)}
                    )
                field_columns = [c for c in chunk.columns if c not in (RECORD_COLUMN, INSTANCE_COLUMN)]
                frame = pd.DataFrame({
                    "record_id": chunk[RECORD_COLUMN].str.strip(),
                    "event": location.event or NO_EVENT,
                    "form": location.form,
                    "instance": (
                        pd.to_numeric(chunk[INSTANCE_COLUMN].replace("", "1"), errors="coerce").fillna(1).astype(int)
                        if INSTANCE_COLUMN in chunk.columns else 1
                    ),
                    "fields": chunk[field_columns].apply(
                        lambda row: json.dumps(row.to_dict(), ensure_ascii=False), axis=1
                    ) if field_columns else "{}",
                    "updated_at": datetime.now(),
                })
                frame = frame[frame["record_id"] != ""]

                conn.register('csv_chunk', frame)
                try:
                    conn.execute(
                        "INSERT OR REPLACE INTO form_instances "
                        "SELECT record_id, event, form, instance, CAST(fields AS JSON), updated_at FROM csv_chunk"
                    )
                finally:
                    conn.unregister('csv_chunk')
                total += len(frame)

            logger.info(f"Imported {total} instance(s) of {location} from {csv_path.name}")
            return Result.success_result(total)

        except Exception as e:
            error_msg = f"Failed to import {path}: {str(e)}"
            logger.error(error_msg, exc_info=True)
            return Result.failure_result(
                StoreError(error_msg, operation="import_csv", details={"path": path}),
                error_type="StoreError"
            )

    def flush_submission_logs(self, logs: list[dict]) -> Result[int]:
        """Flush submission audit entries to the submission_log table."""
        if not logs:
            return Result.success_result(0)

        try:
            self._ensure_schema()
            conn = self._get_connection()
            for log_entry in logs:
                conn.execute("""
                    INSERT INTO submission_log (
                        event_id, run_id, resource_type, record_id, instance,
                        resource_id, url, outcome, detail, occurred_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, [
                    log_entry.get('event_id', str(uuid.uuid4())),
                    log_entry.get('run_id'),
                    log_entry.get('resource_type'),
                    log_entry.get('record_id'),
                    log_entry.get('instance'),
                    log_entry.get('resource_id'),
                    log_entry.get('url'),
                    log_entry.get('outcome'),
                    log_entry.get('detail'),
                    log_entry.get('occurred_at', datetime.now()),
                ])

            count = len(logs)
            logger.info(f"Flushed {count} submission log entries to database")
            return Result.success_result(count)

        except Exception as e:
            error_msg = f"Failed to flush submission logs: {str(e)}"
            logger.error(error_msg, exc_info=True)
            return Result.failure_result(
                StoreError(error_msg, operation="flush_submission_logs"),
                error_type="StoreError"
            )

    # ------------------------------------------------------------------
    # CatalogStorePort
    # ------------------------------------------------------------------

    def load_catalog(self) -> Result[list[MedicationCatalogEntry]]:
        try:
            self._ensure_schema()
            rows = self._get_connection().execute(
                f"SELECT {', '.join(CATALOG_COLUMNS)} FROM medication_catalog ORDER BY seq"
            ).fetchall()
            return Result.success_result([_catalog_entry(row) for row in rows])
        except Exception as e:
            error_msg = f"Failed to load medication catalog: {str(e)}"
            logger.error(error_msg, exc_info=True)
            return Result.failure_result(
                StoreError(error_msg, operation="load_catalog"),
                error_type="StoreError"
            )

    def reserve_entries(self, drafts: list[MedicationDraft]) -> Result[list[MedicationCatalogEntry]]:
        """Read the catalog, assign next sequence numbers and append, in one transaction."""
        if not drafts:
            return Result.success_result([])

        try:
            self._ensure_schema()
            conn = self._get_connection()
            with self._catalog_lock:
                conn.begin()
                try:
                    existing = {
                        row[1]: _catalog_entry(row)
                        for row in conn.execute(
                            f"SELECT {', '.join(CATALOG_COLUMNS)} FROM medication_catalog"
                        ).fetchall()
                    }
                    next_seq = max((entry.seq for entry in existing.values()), default=0) + 1

                    reserved: dict[str, MedicationCatalogEntry] = {}
                    for draft in drafts:
                        if draft.drug_key in reserved:
                            continue
                        entry = existing.get(draft.drug_key)
                        if entry is None:
                            entry = MedicationCatalogEntry(**draft.model_dump(), seq=next_seq)
                            conn.execute("""
                                INSERT INTO medication_catalog (
                                    seq, drug_key, ndc_code, local_id, snomed_code, description,
                                    snomed_description, brand, otc, sent, sent_at, created_at
                                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, FALSE, NULL, ?)
                            """, [
                                entry.seq, entry.drug_key, entry.ndc_code, entry.local_id,
                                entry.snomed_code, entry.description, entry.snomed_description,
                                entry.brand, entry.otc, datetime.now(),
                            ])
                            next_seq += 1
                            logger.debug(f"Reserved catalog entry {entry.list_id} for drug {draft.drug_key}")
                        reserved[draft.drug_key] = entry

                    conn.commit()
                except Exception:
                    conn.rollback()
                    raise
            return Result.success_result(list(reserved.values()))

        except Exception as e:
            error_msg = f"Failed to reserve medication catalog entries: {str(e)}"
            logger.error(error_msg, exc_info=True)
            return Result.failure_result(
                StoreError(error_msg, operation="reserve_entries", details={"draft_count": len(drafts)}),
                error_type="StoreError"
            )

    def mark_entry_sent(self, list_id: str, sent_at: datetime) -> Result[None]:
        try:
            seq = int(list_id.rsplit("-", 1)[-1])
        except ValueError:
            return Result.failure_result(
                StoreError(f"Malformed catalog id: {list_id}", operation="mark_entry_sent"),
                error_type="StoreError"
            )

        try:
            self._ensure_schema()
            conn = self._get_connection()
            updated = conn.execute(
                "UPDATE medication_catalog SET sent = TRUE, sent_at = ? WHERE seq = ? RETURNING seq",
                [sent_at, seq]
            ).fetchall()
            if not updated:
                raise StoreError(f"Unknown catalog entry: {list_id}", operation="mark_entry_sent")
            return Result.success_result(None)
        except Exception as e:
            error_msg = f"Failed to mark {list_id} sent: {str(e)}"
            logger.error(error_msg)
            return Result.failure_result(
                StoreError(error_msg, operation="mark_entry_sent"),
                error_type="StoreError"
            )

    def close(self) -> None:
        """Close storage connection and release resources."""
        if self._connection is not None:
            try:
                self._connection.close()
                self._connection = None
                logger.info("Closed DuckDB connection")
            except Exception as e:
                logger.warning(f"Error closing connection: {str(e)}")


def _as_text(value: Any) -> Any:
    """Store scalars as text, the way the host project holds every field."""
    if value is None or isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "1" if value else "0"
    return str(value)


def _catalog_entry(row: tuple) -> MedicationCatalogEntry:
    values = dict(zip(CATALOG_COLUMNS, row))
    return MedicationCatalogEntry(
        seq=values["seq"],
        drug_key=values["drug_key"],
        ndc_code=values["ndc_code"],
        local_id=values["local_id"],
        snomed_code=values["snomed_code"],
        description=values["description"],
        snomed_description=values["snomed_description"],
        brand=bool(values["brand"]),
        otc=bool(values["otc"]),
        sent=bool(values["sent"]),
        sent_at=values["sent_at"],
    )


def _field_name(column: str) -> str:
    """Map an export column to its field name (checkbox columns drop their option suffix)."""
    if column.endswith(CHECKBOX_SUFFIX):
        return column[:-len(CHECKBOX_SUFFIX)]
    return column
