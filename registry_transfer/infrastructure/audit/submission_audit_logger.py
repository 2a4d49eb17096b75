"""Submission Audit Logger.

This module buffers one audit entry per resource submission attempt so that
every run leaves a queryable trail of what was sent, what failed and what was
skipped, independent of the application log.

Security Impact:
    - Entries reference records and resource ids, never document bodies
    - Error detail may include the endpoint's response text
    - The buffer is append-only; entries are only removed by clear_logs()

Architecture:
    - Infrastructure layer component, fed by the submission orchestrator
    - Flushed once at run end through RecordStorePort.flush_submission_logs()
"""

import logging
from typing import Any, List, Optional

from registry_transfer.domain.models import SubmissionEvent, SubmissionOutcome

logger = logging.getLogger(__name__)


class SubmissionAuditLogger:
    """Append-only buffer of submission events for one run.

    Example Usage:
        ```python
        audit = SubmissionAuditLogger(run_id="run-1")
        audit.log_submission("dx", "12", 1, "dx-12-1", url, SubmissionOutcome.SENT)
        store.flush_submission_logs(audit.get_logs())
        audit.clear_logs()
        ```
    """

    def __init__(self, run_id: Optional[str] = None):
        """Initialize submission audit logger.

        Parameters:
            run_id: Identifier stamped on every entry (may be set later)
        """
        self._logs: List[dict] = []
        self._run_id = run_id

    def set_run_context(self, run_id: str) -> None:
        self._run_id = run_id

    def log_submission(
        self,
        resource_type: str,
        record_id: str,
        instance: Optional[int],
        resource_id: Optional[str],
        url: Optional[str],
        outcome: SubmissionOutcome,
        detail: Optional[Any] = None
    ) -> None:
        """Log a single submission event.

        Parameters:
            resource_type: Resource type token (dx, lab, med, ...)
            record_id: Owning record identifier
            instance: Repeating instance number (None for catalog Medication resources)
            resource_id: Resource identifier
            url: Target URL
            outcome: SENT, FAILED or SKIPPED
            detail: Error detail or skip reason
        """
        event = SubmissionEvent(
            run_id=self._run_id or "unassigned",
            resource_type=resource_type,
            record_id=str(record_id),
            instance=instance,
            resource_id=resource_id,
            url=url,
            outcome=outcome,
            detail=detail,
        )
        self._logs.append(event.to_audit_dict())
        logger.debug(
            f"Logged submission: {resource_type} {resource_id or '-'} "
            f"record {record_id} ({outcome.value})"
        )

    def get_logs(self) -> List[dict]:
        """Get all logged submission events.

        Returns:
            List of entries ready for database insertion
        """
        return self._logs.copy()

    def clear_logs(self) -> None:
        """Clear all logged events (after flushing to storage)."""
        self._logs.clear()
        logger.debug("Cleared submission audit logs")

    def get_log_count(self) -> int:
        return len(self._logs)

    def has_logs(self) -> bool:
        return len(self._logs) > 0

    def count_by_outcome(self) -> dict[str, int]:
        """Count buffered entries per outcome."""
        counts = {outcome.value: 0 for outcome in SubmissionOutcome}
        for entry in self._logs:
            counts[entry["outcome"]] += 1
        return counts
