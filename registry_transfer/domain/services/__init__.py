"""Domain Services.

This package contains the services that sequence the transfer without
infrastructure dependencies: cohort selection, the medication registry and
the per-record submission orchestrator.
"""

from registry_transfer.domain.services.cohort import CohortSelector
from registry_transfer.domain.services.medication_registry import MedicationRegistry
from registry_transfer.domain.services.orchestrator import SubmissionOrchestrator

__all__ = ['CohortSelector', 'MedicationRegistry', 'SubmissionOrchestrator']
