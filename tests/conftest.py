"""Shared fixtures for registry transfer tests."""

from datetime import datetime
from typing import Callable, Optional

import pytest

from registry_transfer.adapters.records import InMemoryRecordStore
from registry_transfer.domain.models import CodingOptions, ConnectionContext, FormLocation, ParticipatingRecord
from registry_transfer.domain.ports import SubmissionResult, TransportErrorDetail, TransportPort
from registry_transfer.domain.resource_types import ResourceType

BASE_URL = "https://exchange.example.org/fhir"
FIXED_NOW = datetime(2024, 3, 1, 12, 30, 0)

DEMOGRAPHICS = FormLocation(form="demographics")
DIAGNOSIS = FormLocation(form="diagnosis")
LABS = FormLocation(form="labs")
ENCOUNTERS = FormLocation(form="encounters")
MEDICATIONS = FormLocation(form="medications")
PROCEDURES = FormLocation(form="procedures")
ALLERGIES = FormLocation(form="allergies")


class RecordingTransport(TransportPort):
    """Transport double that records every PUT and fails the ones selected."""

    def __init__(self, fail_when: Optional[Callable[[str], bool]] = None):
        self.calls: list[tuple[str, dict]] = []
        self.fail_when = fail_when or (lambda url: False)
        self.closed = False

    def put(self, url: str, document: dict) -> SubmissionResult:
        self.calls.append((url, document))
        if self.fail_when(url):
            return SubmissionResult(
                success=False,
                error=TransportErrorDetail(
                    http_code=500,
                    response='{"issue": "rejected"}',
                    info={"url": url, "method": "PUT"},
                    error="Internal Server Error",
                ),
            )
        return SubmissionResult(success=True)

    def close(self) -> None:
        self.closed = True

    @property
    def urls(self) -> list[str]:
        return [url for url, _ in self.calls]

    def document_for(self, path: str) -> dict:
        for url, document in self.calls:
            if url == f"{BASE_URL}{path}":
                return document
        raise KeyError(path)


@pytest.fixture
def store():
    return InMemoryRecordStore()


@pytest.fixture
def transport():
    return RecordingTransport()


@pytest.fixture
def connection():
    return ConnectionContext(
        url=f"{BASE_URL}/",
        cert_path="/nonexistent/client-cert.pem",
        key_path="/nonexistent/client-key.pem",
        submitting_org="Organization/stanford",
    )


@pytest.fixture
def options():
    return CodingOptions(submitting_org="Organization/stanford")


@pytest.fixture
def clock():
    return lambda: FIXED_NOW


@pytest.fixture
def locations():
    """Every resource type configured; vital signs live on the encounter form."""
    return {
        ResourceType.DEMO: DEMOGRAPHICS,
        ResourceType.DX: DIAGNOSIS,
        ResourceType.LAB: LABS,
        ResourceType.ENC: ENCOUNTERS,
        ResourceType.MED: MEDICATIONS,
        ResourceType.PX: PROCEDURES,
        ResourceType.VITALS: ENCOUNTERS,
        ResourceType.ALLERGY: ALLERGIES,
    }


@pytest.fixture
def patient():
    return ParticipatingRecord(record_id="1", study_id="CS-0001")


@pytest.fixture
def make_transport():
    """Build a RecordingTransport failing every URL the predicate selects."""
    return lambda fail_when=None: RecordingTransport(fail_when=fail_when)
