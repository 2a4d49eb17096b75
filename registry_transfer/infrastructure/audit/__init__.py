"""Audit infrastructure components.

This package provides the submission audit trail: one entry per resource
sent, failed or skipped during a transfer run.
"""

from registry_transfer.infrastructure.audit.submission_audit_logger import SubmissionAuditLogger

__all__ = ['SubmissionAuditLogger']
