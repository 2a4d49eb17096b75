"""Cohort Selector.

Finds the records enrolled for data sharing. The whole cohort is loaded into
memory at once; registry cohorts are hundreds to low thousands of patients.
"""

import logging
from typing import Iterable, Optional

from registry_transfer.domain.models import FormLocation, ParticipatingRecord
from registry_transfer.domain.ports import FieldCondition, RecordStorePort, Result

logger = logging.getLogger(__name__)


class CohortSelector:
    """Selects participating records via the registry-enrollment predicate."""

    def __init__(
        self,
        store: RecordStorePort,
        location: FormLocation,
        enrollment_field: str = "registry_enrolled",
        study_id_field: str = "study_id"
    ):
        """Initialize cohort selector.

        Parameters:
            store: Host record store
            location: Form/event holding the enrollment flag and study id
            enrollment_field: Field that must equal "1" for a record to take part
            study_id_field: Field holding the externally shared study identifier
        """
        self.store = store
        self.location = location
        self.enrollment_field = enrollment_field
        self.study_id_field = study_id_field

    def select(self, record_ids: Optional[Iterable[str]] = None) -> Result[list[ParticipatingRecord]]:
        """Return the enrolled records, optionally restricted to the given ids.

        Records without a study id cannot be referenced by the endpoint and
        are left out with a warning.

        Parameters:
            record_ids: Only keep these record ids (None keeps the whole cohort)

        Returns:
            Result[list[ParticipatingRecord]]: Enrolled records in store order
        """
        result = self.store.query_records(
            self.location,
            [FieldCondition.equals(self.enrollment_field, "1")]
        )
        if result.is_failure():
            logger.error(f"Cohort selection failed on {self.location}: {result.error}")
            return Result.failure_result(
                result.error,
                error_type=result.error_type,
                error_details=result.error_details
            )

        wanted = {str(record_id) for record_id in record_ids} if record_ids is not None else None
        cohort: list[ParticipatingRecord] = []
        seen: set[str] = set()
        for row in result.value:
            if row.record_id in seen:
                continue
            if wanted is not None and row.record_id not in wanted:
                continue
            seen.add(row.record_id)

            study_id = str(row.fields.get(self.study_id_field) or "").strip()
            if not study_id:
                logger.warning(f"Record {row.record_id} is enrolled but has no {self.study_id_field}; skipped")
                continue
            cohort.append(ParticipatingRecord(record_id=row.record_id, study_id=study_id))

        logger.info(f"Selected {len(cohort)} participating record(s)")
        return Result.success_result(cohort)
