"""Main entry point for registry transfer runs.

This module wires configuration, the host record store, the certificate
provisioner and the HTTP transport into the domain services and drives
one transfer run:

    Init -> FetchCert -> SelectCohort -> {per record: demo .. allergy} -> CleanupCert -> Done

Security Impact:
    - Certificate material exists on disk only for the duration of the run
    - The submission audit trail is flushed to the store even when the run aborts
    - Configuration errors abort the run before anything is sent

Architecture:
    - Follows Hexagonal Architecture principles
    - Store and transport are selected here; domain services receive them by injection
    - run_transfer() is the trigger used by the CLI and by schedulers
"""

import logging
from datetime import datetime
from typing import Callable, Iterable, Optional, Union

from registry_transfer.adapters.records import DuckDBRecordStore, InMemoryRecordStore
from registry_transfer.adapters.transport import HttpxTransportClient
from registry_transfer.domain.models import ConnectionContext, RunReport, RunStatus
from registry_transfer.domain.ports import (
    CatalogStorePort,
    RecordStorePort,
    StoreError,
    TransferError,
    TransportPort,
)
from registry_transfer.domain.resource_types import format_selection, parse_selection
from registry_transfer.domain.services import CohortSelector, MedicationRegistry, SubmissionOrchestrator
from registry_transfer.infrastructure.audit import SubmissionAuditLogger
from registry_transfer.infrastructure.certificates import provision_connection
from registry_transfer.infrastructure.config_manager import ConfigManager, StoreConfig
from registry_transfer.infrastructure.logging_config import RunContextFilter

logger = logging.getLogger(__name__)

TransportFactory = Callable[[ConnectionContext], TransportPort]


def create_record_store(store_config: StoreConfig) -> RecordStorePort:
    """Create the host record store based on configuration.

    Returns:
        RecordStorePort: Configured store (also implements CatalogStorePort)

    Raises:
        ValueError: If the store type is unsupported
    """
    if store_config.db_type == "duckdb":
        logger.info(f"Initializing DuckDB record store with path: {store_config.db_path or ':memory:'}")
        return DuckDBRecordStore(store_config=store_config)
    elif store_config.db_type == "memory":
        logger.info("Initializing in-memory record store")
        return InMemoryRecordStore()
    else:
        raise ValueError(f"Unsupported store type: {store_config.db_type}")


def run_transfer(
    selection: Union[str, Iterable[str], None] = None,
    record_ids: Optional[Iterable[str]] = None,
    config_manager: Optional[ConfigManager] = None,
    store: Optional[RecordStorePort] = None,
    transport_factory: Optional[TransportFactory] = None,
    clock: Callable[[], datetime] = datetime.now
) -> RunReport:
    """Run one transfer for the selected resource types.

    Parameters:
        selection: Comma-separated resource types or an iterable of them ("all" for everything)
        record_ids: Restrict the run to these record ids (None runs the whole cohort)
        config_manager: Configuration (environment when omitted)
        store: Host record store; must also implement CatalogStorePort. Created
            from the store configuration and closed at run end when omitted
        transport_factory: Builds the transport for the run's ConnectionContext
            (HttpxTransportClient when omitted)
        clock: Source of send timestamps

    Returns:
        RunReport: Per-record, per-type outcomes and the coarse run status
    """
    report = RunReport(selection=[])
    run_filter = RunContextFilter(report.run_id)
    handlers = list(logging.getLogger().handlers)
    for handler in handlers:
        handler.addFilter(run_filter)

    try:
        types = parse_selection(selection)
        report.selection = [resource_type.value for resource_type in types]
        if not types:
            logger.warning("No resource types selected; nothing to transfer")
            report.status = RunStatus.NO_RESOURCES
            return report

        logger.info(f"Starting transfer run {report.run_id} for: {format_selection(types)}")
        try:
            _execute(report, types, record_ids, config_manager, store, transport_factory, clock)
        except TransferError as e:
            logger.error(f"Transfer run aborted: {e}")
            report.status = RunStatus.FAILURE
            report.error = str(e)
        except Exception as e:
            logger.error(f"Transfer run aborted by unexpected error: {e}", exc_info=True)
            report.status = RunStatus.FAILURE
            report.error = str(e)
        else:
            report.status = RunStatus.FAILURE if report.has_failures else RunStatus.SUCCESS

        report.finished_at = datetime.now()
        logger.info(
            f"Transfer run {report.run_id} finished with status {report.status.value}: "
            f"{len(report.records)} record(s) processed"
        )
        return report
    finally:
        for handler in handlers:
            handler.removeFilter(run_filter)


def _execute(
    report: RunReport,
    types: list,
    record_ids: Optional[Iterable[str]],
    config_manager: Optional[ConfigManager],
    store: Optional[RecordStorePort],
    transport_factory: Optional[TransportFactory],
    clock: Callable[[], datetime]
) -> None:
    config_manager = config_manager or ConfigManager.from_environment()
    endpoint = config_manager.get_endpoint_config()
    project = config_manager.get_project_config()
    cohort_config = config_manager.get_cohort_config()
    options = config_manager.get_coding_options()

    owns_store = store is None
    if owns_store:
        store = create_record_store(config_manager.get_store_config())
    if not isinstance(store, CatalogStorePort):
        raise TypeError(f"{type(store).__name__} does not provide a medication catalog")

    if transport_factory is None:
        def transport_factory(connection: ConnectionContext) -> TransportPort:
            return HttpxTransportClient(connection, timeout=endpoint.timeout)

    audit_logger = SubmissionAuditLogger(run_id=report.run_id)
    try:
        with provision_connection(endpoint) as connection:
            transport = transport_factory(connection)
            try:
                cohort = CohortSelector(
                    store,
                    cohort_config.location,
                    enrollment_field=cohort_config.enrollment_field,
                    study_id_field=cohort_config.study_id_field
                ).select(record_ids)
                if cohort.is_failure():
                    raise StoreError(
                        f"Cohort selection failed: {cohort.error}",
                        operation="select_cohort",
                        details=cohort.error_details
                    )

                registry = MedicationRegistry(
                    store, store, transport, connection, options,
                    audit_logger=audit_logger,
                    clock=clock
                )
                orchestrator = SubmissionOrchestrator(
                    store, transport, connection, options, project.locations(),
                    registry=registry,
                    audit_logger=audit_logger,
                    clock=clock
                )
                for patient in cohort.value:
                    report.records.append(orchestrator.process_record(patient, types))
            finally:
                transport.close()
    finally:
        _flush_audit_trail(store, audit_logger)
        if owns_store:
            store.close()


def _flush_audit_trail(store: RecordStorePort, audit_logger: SubmissionAuditLogger) -> None:
    if not audit_logger.has_logs():
        return
    result = store.flush_submission_logs(audit_logger.get_logs())
    if result.is_success():
        logger.info(f"Flushed {result.value} submission audit entries")
        audit_logger.clear_logs()
    else:
        logger.error(f"Failed to flush submission audit trail: {result.error}")
