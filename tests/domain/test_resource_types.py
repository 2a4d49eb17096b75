"""Unit tests for resource type selection."""

import pytest

from registry_transfer.domain.resource_types import (
    PROCESSING_ORDER,
    STATUS_FIELDS,
    ResourceType,
    format_selection,
    parse_selection,
)


class TestParseSelection:
    """Test parsing trigger selections into ordered resource types."""

    @pytest.mark.parametrize("selection, expected", [
        ("px", "enc,px"),
        ("vitals", "enc,vitals"),
        ("px,vitals", "enc,px,vitals"),
        ("lab,dx", "dx,lab"),
        (" DX , demo ", "demo,dx"),
        ("allergy", "allergy"),
    ])
    def test_selection_order_and_encounter_dependency(self, selection, expected):
        assert format_selection(parse_selection(selection)) == expected

    def test_all_selects_every_type(self):
        assert parse_selection("all") == list(PROCESSING_ORDER)

    def test_iterable_selection(self):
        assert parse_selection(["med", "demo"]) == [ResourceType.DEMO, ResourceType.MED]

    def test_unknown_tokens_are_ignored(self, caplog):
        assert parse_selection("dx,labs") == [ResourceType.DX]
        assert "labs" in caplog.text

    def test_empty_selection(self):
        assert parse_selection("") == []
        assert parse_selection(None) == []
        assert parse_selection("bogus") == []


class TestStatusFields:
    """Test the companion status field layout."""

    def test_every_type_has_status_fields(self):
        assert set(STATUS_FIELDS) == set(ResourceType)

    def test_procedure_fields(self):
        assert STATUS_FIELDS[ResourceType.PX].flag == "proc_sent_to_curesma"
        assert STATUS_FIELDS[ResourceType.PX].id_field == "proc_id"

    def test_types_without_local_ids(self):
        assert STATUS_FIELDS[ResourceType.DEMO].id_field is None
        assert STATUS_FIELDS[ResourceType.VITALS].id_field is None

    def test_host_field_names(self):
        """Flag and timestamp fields match the host project's data dictionary."""
        assert STATUS_FIELDS[ResourceType.DEMO].timestamp == "demo_date_sent_curesma"
        assert STATUS_FIELDS[ResourceType.DX].flag == "dx_sent_to_curesma"
        assert STATUS_FIELDS[ResourceType.DX].timestamp == "dx_date_data_curesma"
        assert STATUS_FIELDS[ResourceType.PX].timestamp == "proc_date_data_curesma"
        assert STATUS_FIELDS[ResourceType.MED].timestamp == "med_date_data_curesma"
        assert STATUS_FIELDS[ResourceType.VITALS].timestamp == "vitals_date_curesma"
