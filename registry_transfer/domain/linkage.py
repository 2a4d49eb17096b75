"""Encounter Linkage Resolver.

Procedures and vital signs are tied to their owning encounter by date
containment. Windows are ordered ascending by start date (ties broken by
instance number, stable) and scanned linearly; the first containing window
wins. Overlapping windows are therefore resolved to the earliest-starting
encounter.
"""

import logging
import re
from datetime import date, datetime
from typing import Iterable, Optional, Union

from registry_transfer.domain.models import EncounterRow, EncounterWindow

logger = logging.getLogger(__name__)

_DATE_SPLIT = re.compile(r"[ T]")


def date_part(value: Union[str, date, None]) -> Optional[date]:
    """Return the calendar date of a `YYYY-MM-DD[ HH:MM[:SS]]` value, or None."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = value.strip()
    if not text:
        return None
    try:
        return date.fromisoformat(_DATE_SPLIT.split(text, 1)[0])
    except ValueError:
        return None


def build_windows(encounters: Iterable[EncounterRow]) -> list[EncounterWindow]:
    """Build the ordered encounter windows for one record.

    Only encounters that already carry an id take part. Encounters whose
    start cannot be parsed are left out and logged.

    Returns:
        list[EncounterWindow]: Windows sorted ascending by (start, instance)
    """
    windows = []
    for row in encounters:
        if not row.enc_id:
            logger.debug(f"Encounter {row.ref} has no id yet; excluded from linkage")
            continue
        start = date_part(row.enc_start_datetime)
        if start is None:
            logger.warning(f"Encounter {row.enc_id} has an unparseable start date; excluded from linkage")
            continue
        windows.append(
            EncounterWindow(
                encounter_id=row.enc_id,
                start=start,
                end=date_part(row.enc_end_datetime),
                instance=row.instance,
            )
        )
    return sorted(windows, key=lambda window: (window.start, window.instance))


def resolve_encounter(windows: list[EncounterWindow], target: Union[str, date, None]) -> Optional[str]:
    """Return the id of the first window containing the target date.

    Parameters:
        windows: Encounter windows, in linkage order
        target: Event date (or date-time); the date part is used

    Returns:
        The encounter id, or None when no window contains the date
    """
    target_date = date_part(target)
    if target_date is None:
        return None
    for window in windows:
        if window.contains(target_date):
            return window.encounter_id
    return None
