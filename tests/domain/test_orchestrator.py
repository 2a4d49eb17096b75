"""Unit tests for the SubmissionOrchestrator.

Tests cover:
- At-most-once delivery across repeated runs
- Failure isolation between instances of one resource type
- Status write-back (flag, timestamp, generated ids)
- Encounter linkage of procedures and vital signs
- Disabled types and host store failures
"""

from unittest.mock import Mock

from registry_transfer.domain.models import FormLocation, SubmissionOutcome
from registry_transfer.domain.ports import Result, StoreError
from registry_transfer.domain.resource_types import ResourceType, parse_selection
from registry_transfer.domain.services import MedicationRegistry, SubmissionOrchestrator
from registry_transfer.infrastructure.audit import SubmissionAuditLogger


def _orchestrator(store, transport, connection, options, locations, clock, audit_logger=None):
    registry = MedicationRegistry(store, store, transport, connection, options, audit_logger=audit_logger, clock=clock)
    return SubmissionOrchestrator(
        store, transport, connection, options, locations,
        registry=registry, audit_logger=audit_logger, clock=clock
    )


class TestConditionSubmission:
    """Test fetch -> encode -> send -> mark-sent for diagnoses."""

    def _seed(self, store, locations):
        for instance, code in ((1, "G12.0"), (2, "G12.1"), (3, "J18.9")):
            store.add_instance("1", locations[ResourceType.DX], instance, {"dx_code": code})

    def test_marks_each_sent_instance(self, store, transport, connection, options, locations, clock, patient):
        self._seed(store, locations)
        orchestrator = _orchestrator(store, transport, connection, options, locations, clock)

        outcome = orchestrator.process_record(patient, [ResourceType.DX]).outcome_for("dx")

        assert outcome.sent == 3
        assert outcome.failed == 0
        assert store.get_fields("1", locations[ResourceType.DX], 1) == {
            "dx_code": "G12.0",
            "dx_sent_to_curesma": "1",
            "dx_date_data_curesma": "2024-03-01 12:30:00",
            "dx_id": "dx-1-1",
        }

    def test_failed_instance_does_not_stop_the_others(self, store, make_transport, connection, options, locations, clock, patient):
        self._seed(store, locations)
        transport = make_transport(lambda url: url.endswith("/Condition/dx-1-2"))
        orchestrator = _orchestrator(store, transport, connection, options, locations, clock)

        outcome = orchestrator.process_record(patient, [ResourceType.DX]).outcome_for("dx")

        assert transport.urls == [
            "https://exchange.example.org/fhir/Condition/dx-1-1",
            "https://exchange.example.org/fhir/Condition/dx-1-2",
            "https://exchange.example.org/fhir/Condition/dx-1-3",
        ]
        assert (outcome.sent, outcome.failed) == (2, 1)
        assert store.get_fields("1", locations[ResourceType.DX], 1)["dx_sent_to_curesma"] == "1"
        assert "dx_sent_to_curesma" not in store.get_fields("1", locations[ResourceType.DX], 2)
        assert store.get_fields("1", locations[ResourceType.DX], 3)["dx_sent_to_curesma"] == "1"

    def test_sent_instances_are_never_resubmitted(self, store, make_transport, connection, options, locations, clock, patient):
        self._seed(store, locations)
        failing = make_transport(lambda url: url.endswith("dx-1-2"))
        _orchestrator(store, failing, connection, options, locations, clock).process_record(patient, [ResourceType.DX])

        retry = make_transport()
        outcome = _orchestrator(store, retry, connection, options, locations, clock).process_record(
            patient, [ResourceType.DX]
        ).outcome_for("dx")
        assert retry.urls == ["https://exchange.example.org/fhir/Condition/dx-1-2"]
        assert outcome.sent == 1

        idle = make_transport()
        _orchestrator(store, idle, connection, options, locations, clock).process_record(patient, [ResourceType.DX])
        assert idle.calls == []

    def test_undecodable_row_is_skipped_and_audited(self, store, transport, connection, options, locations, clock, patient):
        store.add_instance("1", locations[ResourceType.DX], 1, {"dx_code": ""})
        store.add_instance("1", locations[ResourceType.DX], 2, {"dx_code": "G12.0"})
        audit = SubmissionAuditLogger(run_id="run-1")
        orchestrator = _orchestrator(store, transport, connection, options, locations, clock, audit)

        outcome = orchestrator.process_record(patient, [ResourceType.DX]).outcome_for("dx")

        assert (outcome.sent, outcome.skipped) == (1, 1)
        assert audit.count_by_outcome() == {"SENT": 1, "FAILED": 0, "SKIPPED": 1}


class TestStatusWriteBack:
    """Test which ids are written back per resource type."""

    def test_patient_has_no_generated_id(self, store, transport, connection, options, locations, clock, patient):
        store.add_instance("1", locations[ResourceType.DEMO], 1, {"mrn": "MRN-1", "first_name": "Ada"})
        _orchestrator(store, transport, connection, options, locations, clock).process_record(
            patient, [ResourceType.DEMO]
        )

        assert transport.urls == ["https://exchange.example.org/fhir/Patient/CS-0001"]
        fields = store.get_fields("1", locations[ResourceType.DEMO])
        assert fields["demo_sent_to_curesma"] == "1"
        assert fields["demo_date_sent_curesma"] == "2024-03-01 12:30:00"

    def test_source_lab_ids_are_kept(self, store, transport, connection, options, locations, clock, patient):
        store.add_instance("1", locations[ResourceType.LAB], 1, {"lab_id": "L-77", "lab_result": "5"})
        store.add_instance("1", locations[ResourceType.LAB], 2, {"lab_result": "<=5.2"})
        _orchestrator(store, transport, connection, options, locations, clock).process_record(
            patient, [ResourceType.LAB]
        )

        assert transport.urls == [
            "https://exchange.example.org/fhir/Observation/L-77",
            "https://exchange.example.org/fhir/Observation/lab-1-2",
        ]
        assert store.get_fields("1", locations[ResourceType.LAB], 1)["lab_id"] == "L-77"
        assert store.get_fields("1", locations[ResourceType.LAB], 2)["lab_id"] == "lab-1-2"

    def test_allergy_ids(self, store, transport, connection, options, locations, clock, patient):
        store.add_instance("1", locations[ResourceType.ALLERGY], 2, {"all_description": "Penicillin"})
        _orchestrator(store, transport, connection, options, locations, clock).process_record(
            patient, [ResourceType.ALLERGY]
        )

        fields = store.get_fields("1", locations[ResourceType.ALLERGY], 2)
        assert fields["all_sent_to_curesma"] == "1"
        assert fields["all_id"] == "all-1-2"


class TestEncounterLinkage:
    """Test procedures and vital signs referencing their encounter."""

    def _seed_encounters(self, store, locations):
        encounters = locations[ResourceType.ENC]
        store.add_instance("1", encounters, 1, {
            "enc_start_datetime": "2020-01-01 08:00", "enc_end_datetime": "2020-01-03",
            "enc_weight": "350", "enc_height": "5' 7\"", "enc_pulse": "72",
        })
        store.add_instance("1", encounters, 2, {"enc_start_datetime": "2020-01-05"})

    def test_procedures_resolve_by_date(self, store, transport, connection, options, locations, clock, patient):
        self._seed_encounters(store, locations)
        procedures = locations[ResourceType.PX]
        store.add_instance("1", procedures, 1, {"proc_code": "99213", "proc_code_type": "CPT", "proc_date": "2020-01-02"})
        store.add_instance("1", procedures, 2, {"proc_code": "99214", "proc_code_type": "CPT", "proc_date": "2020-01-05"})
        store.add_instance("1", procedures, 3, {"proc_code": "99215", "proc_code_type": "CPT", "proc_date": "2020-02-01"})

        record = _orchestrator(store, transport, connection, options, locations, clock).process_record(
            patient, parse_selection("px")
        )

        assert list(record.types) == ["enc", "px"]
        assert record.outcome_for("enc").sent == 2
        assert record.outcome_for("px").sent == 3
        assert [store.get_fields("1", procedures, i)["proc_enc_id"] for i in (1, 2, 3)] == [
            "enc-1-1", "enc-1-2", "unk"
        ]
        assert store.get_fields("1", procedures, 1)["proc_id"] == "px-1-1"
        assert transport.document_for("/Procedure/px-1-3")["context"] == {"reference": "urn:Encounter/unk"}

    def test_vitals_on_encounter_form(self, store, transport, connection, options, locations, clock, patient):
        self._seed_encounters(store, locations)

        record = _orchestrator(store, transport, connection, options, locations, clock).process_record(
            patient, parse_selection("vitals")
        )

        vitals = record.outcome_for("vitals")
        assert vitals.sent == 3
        assert vitals.skipped == 1
        assert transport.document_for("/Observation/vital-1-1-weight")["valueQuantity"]["value"] == 9.92
        assert transport.document_for("/Observation/vital-1-1-height")["valueQuantity"]["value"] == 67
        assert transport.document_for("/Observation/vital-1-1-pulse")["context"] == {
            "reference": "urn:Encounter/enc-1-1"
        }
        fields = store.get_fields("1", locations[ResourceType.ENC], 1)
        assert fields["vitals_sent_to_curesma"] == "1"
        assert "vitals_sent_to_curesma" not in store.get_fields("1", locations[ResourceType.ENC], 2)

    def test_vitals_wait_for_their_encounter(self, store, make_transport, connection, options, locations, clock, patient):
        self._seed_encounters(store, locations)
        transport = make_transport(lambda url: url.endswith("/Encounter/enc-1-1"))
        audit = SubmissionAuditLogger(run_id="run-1")

        record = _orchestrator(store, transport, connection, options, locations, clock, audit).process_record(
            patient, parse_selection("vitals")
        )

        assert record.outcome_for("enc").failed == 1
        assert record.outcome_for("vitals").sent == 0
        assert not any("/Observation/" in url for url in transport.urls)
        assert "vitals_sent_to_curesma" not in store.get_fields("1", locations[ResourceType.ENC], 1)
        assert any(
            entry["resource_type"] == "vitals" and entry["outcome"] == SubmissionOutcome.SKIPPED.value
            for entry in audit.get_logs()
        )

    def test_vitals_on_separate_form_link_by_date(self, store, transport, connection, options, locations, clock, patient):
        vitals_form = FormLocation(form="vital_signs")
        locations = dict(locations)
        locations[ResourceType.VITALS] = vitals_form
        self._seed_encounters(store, locations)
        store.add_instance("1", vitals_form, 1, {"enc_start_datetime": "2020-01-02 10:00", "enc_o2": "98"})

        _orchestrator(store, transport, connection, options, locations, clock).process_record(
            patient, parse_selection("vitals")
        )

        assert transport.document_for("/Observation/vital-1-1-o2")["context"] == {
            "reference": "urn:Encounter/enc-1-1"
        }
        assert store.get_fields("1", vitals_form, 1)["vitals_sent_to_curesma"] == "1"

    def test_procedures_skipped_when_encounters_unreadable(self, transport, connection, options, locations, clock, patient):
        from registry_transfer.adapters.records import InMemoryRecordStore

        store = InMemoryRecordStore()
        store.add_instance("1", locations[ResourceType.PX], 1, {"proc_code": "99213", "proc_date": "2020-01-02"})
        original_fetch = store.fetch_instances

        def fetch(record_id, location, conditions=None):
            if location == locations[ResourceType.ENC]:
                return Result.failure_result(StoreError("encounter form unavailable"), error_type="StoreError")
            return original_fetch(record_id, location, conditions)

        store.fetch_instances = fetch
        record = _orchestrator(store, transport, connection, options, locations, clock).process_record(
            patient, [ResourceType.PX]
        )

        assert record.outcome_for("px").fetch_errors == 1
        assert transport.calls == []

    def test_vitals_report_unreadable_encounters(self, store, transport, connection, options, locations, clock, patient):
        vitals_form = FormLocation(form="vital_signs")
        locations = dict(locations)
        locations[ResourceType.VITALS] = vitals_form
        store.add_instance("1", vitals_form, 1, {"enc_start_datetime": "2020-01-02 10:00", "enc_o2": "98"})
        store.add_instance("1", vitals_form, 2, {"enc_start_datetime": "2020-01-05 08:00", "enc_pulse": "72"})
        original_fetch = store.fetch_instances

        def fetch(record_id, location, conditions=None):
            if location == locations[ResourceType.ENC]:
                return Result.failure_result(StoreError("encounter form unavailable"), error_type="StoreError")
            return original_fetch(record_id, location, conditions)

        store.fetch_instances = fetch
        outcome = _orchestrator(store, transport, connection, options, locations, clock).process_record(
            patient, [ResourceType.VITALS]
        ).outcome_for("vitals")

        assert outcome.fetch_errors == 1
        assert outcome.skipped == 0
        assert not outcome.succeeded
        assert transport.calls == []
        assert "vitals_sent_to_curesma" not in store.get_fields("1", vitals_form, 1)


class TestMedicationStatements:
    """Test statements are only sent once their catalog entry is accepted."""

    def test_statement_follows_catalog(self, store, transport, connection, options, locations, clock, patient):
        store.add_instance("1", locations[ResourceType.MED], 1, {
            "med_snomed_ct_code": "387207008", "med_description": "Ibuprofen", "med_start_date": "2020-01-01",
        })

        outcome = _orchestrator(store, transport, connection, options, locations, clock).process_record(
            patient, [ResourceType.MED]
        ).outcome_for("med")

        assert transport.urls == [
            "https://exchange.example.org/fhir/Medication/medlist-1",
            "https://exchange.example.org/fhir/MedicationStatement/med-1-1",
        ]
        assert outcome.sent == 2
        fields = store.get_fields("1", locations[ResourceType.MED], 1)
        assert fields["med_list_id"] == "medlist-1"
        assert fields["med_id"] == "med-1-1"
        assert fields["med_sent_to_curesma"] == "1"


class TestProcessRecordBoundaries:
    """Test disabled types and host store failures."""

    def test_unconfigured_type_is_disabled(self, store, transport, connection, options, locations, clock, patient):
        locations = dict(locations)
        locations[ResourceType.ALLERGY] = None

        record = _orchestrator(store, transport, connection, options, locations, clock).process_record(
            patient, [ResourceType.ALLERGY]
        )

        assert record.outcome_for("allergy").disabled is True
        assert record.succeeded
        assert transport.calls == []

    def test_store_failure_is_isolated_to_its_type(self, transport, connection, options, locations, clock, patient):
        store = Mock()
        store.fetch_instances.side_effect = [
            Result.failure_result(StoreError("diagnosis form locked"), error_type="StoreError"),
            Result.success_result([]),
        ]

        orchestrator = SubmissionOrchestrator(store, transport, connection, options, locations, clock=clock)
        record = orchestrator.process_record(patient, [ResourceType.DX, ResourceType.LAB])

        assert record.outcome_for("dx").fetch_errors == 1
        assert record.outcome_for("lab").succeeded
        assert not record.succeeded
        assert store.fetch_instances.call_count == 2

    def test_raised_store_error_is_caught_per_type(self, transport, connection, options, locations, clock, patient):
        store = Mock()
        store.fetch_instances.side_effect = [StoreError("connection lost"), Result.success_result([])]

        orchestrator = SubmissionOrchestrator(store, transport, connection, options, locations, clock=clock)
        record = orchestrator.process_record(patient, [ResourceType.DX, ResourceType.LAB])

        assert record.outcome_for("dx").fetch_errors == 1
        assert record.outcome_for("lab").fetch_errors == 0

    def test_run_processes_every_patient(self, store, transport, connection, options, locations, clock):
        from registry_transfer.domain.models import ParticipatingRecord

        patients = [ParticipatingRecord(record_id=str(i), study_id=f"CS-{i}") for i in (1, 2)]
        for p in patients:
            store.add_instance(p.record_id, locations[ResourceType.DX], 1, {"dx_code": "G12.0"})

        outcomes = _orchestrator(store, transport, connection, options, locations, clock).run(
            patients, [ResourceType.DX]
        )

        assert [outcome.record_id for outcome in outcomes] == ["1", "2"]
        assert transport.document_for("/Condition/dx-2-1")["subject"] == {"reference": "urn:Patient/CS-2"}
