"""Unit tests for encounter linkage."""

from datetime import date, datetime

from registry_transfer.domain.linkage import build_windows, date_part, resolve_encounter
from registry_transfer.domain.models import EncounterRow


def _encounter(instance, enc_id, start, end=None):
    return EncounterRow(
        record_id="1", instance=instance, enc_id=enc_id,
        enc_start_datetime=start, enc_end_datetime=end
    )


class TestDatePart:
    """Test date extraction from host date/time values."""

    def test_date_only(self):
        assert date_part("2020-01-05") == date(2020, 1, 5)

    def test_date_time_with_space_or_t(self):
        assert date_part("2020-01-05 14:30") == date(2020, 1, 5)
        assert date_part("2020-01-05T14:30:00") == date(2020, 1, 5)

    def test_datetime_and_date_objects(self):
        assert date_part(datetime(2020, 1, 5, 9, 0)) == date(2020, 1, 5)
        assert date_part(date(2020, 1, 5)) == date(2020, 1, 5)

    def test_unparseable(self):
        assert date_part("last tuesday") is None
        assert date_part("") is None
        assert date_part(None) is None


class TestResolveEncounter:
    """Test date-containment linkage of procedures and vital signs."""

    def setup_method(self):
        self.windows = build_windows([
            _encounter(2, "E2", "2020-01-05"),
            _encounter(1, "E1", "2020-01-01", "2020-01-03"),
        ])

    def test_windows_are_ordered_by_start(self):
        assert [window.encounter_id for window in self.windows] == ["E1", "E2"]

    def test_date_inside_range(self):
        assert resolve_encounter(self.windows, "2020-01-02") == "E1"

    def test_range_bounds_are_inclusive(self):
        assert resolve_encounter(self.windows, "2020-01-01") == "E1"
        assert resolve_encounter(self.windows, "2020-01-03 23:59") == "E1"

    def test_single_day_encounter_requires_exact_date(self):
        assert resolve_encounter(self.windows, "2020-01-05") == "E2"
        assert resolve_encounter(self.windows, "2020-01-06") is None

    def test_no_containing_encounter(self):
        assert resolve_encounter(self.windows, "2020-02-01") is None

    def test_missing_target_date(self):
        assert resolve_encounter(self.windows, None) is None

    def test_overlapping_windows_resolve_to_earliest_start(self):
        windows = build_windows([
            _encounter(1, "LATE", "2020-03-05", "2020-03-20"),
            _encounter(2, "EARLY", "2020-03-01", "2020-03-10"),
        ])
        assert resolve_encounter(windows, "2020-03-07") == "EARLY"

    def test_same_start_ties_break_on_instance(self):
        windows = build_windows([
            _encounter(3, "THIRD", "2020-04-01", "2020-04-02"),
            _encounter(1, "FIRST", "2020-04-01", "2020-04-03"),
        ])
        assert resolve_encounter(windows, "2020-04-01") == "FIRST"


class TestBuildWindows:
    """Test which encounters take part in linkage."""

    def test_encounters_without_id_are_excluded(self):
        windows = build_windows([
            _encounter(1, None, "2020-01-01"),
            _encounter(2, "enc-1-2", "2020-01-02"),
        ])
        assert [window.encounter_id for window in windows] == ["enc-1-2"]

    def test_unparseable_start_is_excluded(self):
        windows = build_windows([_encounter(1, "enc-1-1", "unknown")])
        assert windows == []
