"""Unit tests for InMemoryRecordStore."""

from datetime import datetime

from registry_transfer.adapters.records import InMemoryRecordStore
from registry_transfer.domain.models import FormLocation, MedicationDraft
from registry_transfer.domain.ports import FieldCondition

LABS = FormLocation(form="labs")


class TestInstances:
    """Test instance fetch, query and save."""

    def test_fetch_filters_by_record_form_and_conditions(self):
        store = InMemoryRecordStore()
        store.add_instance("1", LABS, 2, {"lab_result": "5", "lab_sent_to_curesma": "1"})
        store.add_instance("1", LABS, 1, {"lab_result": "6"})
        store.add_instance("2", LABS, 1, {"lab_result": "7"})
        store.add_instance("1", FormLocation(form="labs", event="followup_arm_1"), 1, {"lab_result": "8"})

        result = store.fetch_instances("1", LABS, [FieldCondition.unsent("lab_sent_to_curesma")])

        assert result.is_success()
        assert [(row.record_id, row.instance) for row in result.value] == [("1", 1)]

    def test_no_rows_is_success(self):
        result = InMemoryRecordStore().fetch_instances("1", LABS)
        assert result.is_success()
        assert result.value == []

    def test_query_orders_numeric_record_ids(self):
        store = InMemoryRecordStore()
        for record_id in ("10", "B-1", "9"):
            store.add_instance(record_id, LABS, 1, {})

        assert [row.record_id for row in store.query_records(LABS).value] == ["9", "10", "B-1"]

    def test_save_merges_fields(self):
        store = InMemoryRecordStore()
        store.add_instance("1", LABS, 1, {"lab_result": "5"})

        assert store.save_instance_fields("1", LABS, 1, {"lab_sent_to_curesma": "1"}).is_success()
        assert store.get_fields("1", LABS, 1) == {"lab_result": "5", "lab_sent_to_curesma": "1"}

    def test_save_to_missing_instance_fails(self):
        result = InMemoryRecordStore().save_instance_fields("1", LABS, 4, {"lab_sent_to_curesma": "1"})

        assert result.is_failure()
        assert result.error_type == "StoreError"
        assert result.error_details == {"record_id": "1", "instance": 4}


class TestCatalog:
    """Test atomic catalog reservation."""

    def test_reserve_is_idempotent_by_drug_key(self):
        store = InMemoryRecordStore()
        first = store.reserve_entries([MedicationDraft(drug_key="A"), MedicationDraft(drug_key="B")]).value
        second = store.reserve_entries([MedicationDraft(drug_key="B"), MedicationDraft(drug_key="C")]).value

        assert [entry.list_id for entry in first] == ["medlist-1", "medlist-2"]
        assert [entry.list_id for entry in second] == ["medlist-2", "medlist-3"]
        assert len(store.load_catalog().value) == 3

    def test_mark_entry_sent(self):
        store = InMemoryRecordStore()
        store.reserve_entries([MedicationDraft(drug_key="A")])
        sent_at = datetime(2024, 3, 1, 12, 0)

        assert store.mark_entry_sent("medlist-1", sent_at).is_success()
        entry = store.load_catalog().value[0]
        assert entry.sent is True
        assert entry.sent_at == sent_at

    def test_mark_unknown_entry_fails(self):
        assert InMemoryRecordStore().mark_entry_sent("medlist-9", datetime.now()).is_failure()
