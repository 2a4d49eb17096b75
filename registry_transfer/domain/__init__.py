"""Domain layer for Registry Transfer.

This module contains the core transfer logic: typed source rows, resource
codecs, encounter linkage and the submission services. Domain models are
pure Python with no external dependencies beyond Pydantic.
"""

from .models import (
    ParticipatingRecord,
    FormLocation,
    RunReport,
    TypeOutcome,
)

__all__ = [
    "ParticipatingRecord",
    "FormLocation",
    "RunReport",
    "TypeOutcome",
]
