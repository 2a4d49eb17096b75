"""Resource type selection and status field layout.

A trigger names the resource types to process as a comma-separated list of
tokens. Procedures and vital signs both reference an encounter, so selecting
either one pulls in the encounter type as well. Whatever order the tokens
arrive in, processing always follows PROCESSING_ORDER.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional, Union

logger = logging.getLogger(__name__)


class ResourceType(str, Enum):
    DEMO = "demo"
    DX = "dx"
    LAB = "lab"
    ENC = "enc"
    MED = "med"
    PX = "px"
    VITALS = "vitals"
    ALLERGY = "allergy"


PROCESSING_ORDER = (
    ResourceType.DEMO,
    ResourceType.DX,
    ResourceType.LAB,
    ResourceType.ENC,
    ResourceType.MED,
    ResourceType.PX,
    ResourceType.VITALS,
    ResourceType.ALLERGY,
)

# Types that can only be sent once their owning encounter has an id
REQUIRES_ENCOUNTER = frozenset({ResourceType.PX, ResourceType.VITALS})

ALL_TOKEN = "all"


@dataclass(frozen=True)
class StatusFields:
    """Companion fields written back onto a row once it has been sent.

    Attributes:
        flag: Checkbox-style field set to "1"
        timestamp: `YYYY-MM-DD HH:MM:SS` send time
        id_field: Field receiving the resource id, when the id is generated locally
    """

    flag: str
    timestamp: str
    id_field: Optional[str] = None


STATUS_FIELDS = {
    ResourceType.DEMO: StatusFields("demo_sent_to_curesma", "demo_date_sent_curesma"),
    ResourceType.DX: StatusFields("dx_sent_to_curesma", "dx_date_data_curesma", "dx_id"),
    ResourceType.LAB: StatusFields("lab_sent_to_curesma", "lab_date_data_curesma", "lab_id"),
    ResourceType.ENC: StatusFields("enc_sent_to_curesma", "enc_date_data_curesma", "enc_id"),
    ResourceType.MED: StatusFields("med_sent_to_curesma", "med_date_data_curesma", "med_id"),
    ResourceType.PX: StatusFields("proc_sent_to_curesma", "proc_date_data_curesma", "proc_id"),
    ResourceType.VITALS: StatusFields("vitals_sent_to_curesma", "vitals_date_curesma"),
    ResourceType.ALLERGY: StatusFields("all_sent_to_curesma", "all_date_data_curesma", "all_id"),
}


def parse_selection(selection: Union[str, Iterable[str], None]) -> list[ResourceType]:
    """Parse a resource-type selection into the ordered list of types to process.

    Parameters:
        selection: Comma-separated tokens (e.g. "px,lab") or an iterable of tokens.
            "all" selects every type. Unknown tokens are logged and ignored.

    Returns:
        list[ResourceType]: Selected types in processing order, with the
        encounter type added when procedures or vital signs are selected.
        Empty when nothing valid was selected.
    """
    if selection is None:
        return []
    if isinstance(selection, str):
        tokens = selection.split(",")
    else:
        tokens = list(selection)

    selected: set[ResourceType] = set()
    for raw in tokens:
        token = raw.strip().lower()
        if not token:
            continue
        if token == ALL_TOKEN:
            selected.update(PROCESSING_ORDER)
            continue
        try:
            selected.add(ResourceType(token))
        except ValueError:
            logger.warning(f"Ignoring unknown resource type in selection: {token!r}")

    if selected & REQUIRES_ENCOUNTER and ResourceType.ENC not in selected:
        logger.info("Adding encounters to selection: procedures and vital signs reference them")
        selected.add(ResourceType.ENC)

    return [resource_type for resource_type in PROCESSING_ORDER if resource_type in selected]


def format_selection(types: Iterable[ResourceType]) -> str:
    """Render a parsed selection back into its comma-separated token form."""
    return ",".join(resource_type.value for resource_type in types)
