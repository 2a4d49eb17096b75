"""Resource Codecs - typed rows to canonical resource documents.

Each encode function turns one decoded source row into an EncodedResource:
the resource type, its identifier and the JSON-ready document body. The
functions are pure; they take every organization-level value they need as
arguments and never touch the host store or the network.

Security Impact:
    - Documents contain PHI and are only ever handed to the transport
    - Narrative text is HTML-escaped before being wrapped in a div block

Architecture:
    - Zero infrastructure dependencies; exercised directly by unit tests
    - decode_row() is the single place raw host field maps become typed rows
    - Field values the endpoint cannot use (None) are dropped from documents
"""

import html
import math
import re
from dataclasses import dataclass
from typing import Optional, Type, TypeVar, Union

from pydantic import ValidationError as PydanticValidationError

from registry_transfer.domain.models import (
    AllergyRow,
    CodingOptions,
    ConditionRow,
    DemographicsRow,
    EncounterRow,
    LabRow,
    MedicationCatalogEntry,
    MedicationRow,
    ParticipatingRecord,
    ProcedureRow,
    SourceRow,
)
from registry_transfer.domain.ports import InstanceRow, ValidationError

RowT = TypeVar('RowT', bound=SourceRow)
Number = Union[int, float]

# Code systems
IDENTIFIER_URI_SYSTEM = "urn:ietf:rfc:3986"
SNOMED_SYSTEM = "http://snomed.info/sct"
ICD10_CM_SYSTEM = "http://hl7.org/fhir/sid/icd-10-cm"
LOINC_SYSTEM = "http://loinc.org"
UCUM_SYSTEM = "http://unitsofmeasure.org"
NDC_SYSTEM = "http://hl7.org/fhir/sid/ndc"
CPT_SYSTEM = "http://www.ama-assn.org/go/cpt"
ICD10_PROCEDURE_SYSTEM = "https://www.cdc.gov/"
LAB_CATEGORY_SYSTEM = "http://terminology.hl7.org/CodeSystem/observation-category"
VITAL_CATEGORY_SYSTEM = "http://hl7.org/fhir/observation-category"
OMB_SYSTEM = "urn:oid:2.16.840.1.113883.6.238"
NULL_FLAVOR_SYSTEM = "http://terminology.hl7.org/CodeSystem/v3-NullFlavor"

RACE_EXTENSION_URL = "http://hl7.org/fhir/us/core/ValueSet/omb-race-category"
ETHNICITY_EXTENSION_URL = "http://hl7.org/fhir/us/core/ValueSet/omb-ethnicity-category"

RACE_CODES = {
    "Native American": {"code": "1002-5", "display": "American Indian or Alaska Native", "system": OMB_SYSTEM},
    "Asian": {"code": "2028-9", "display": "Asian", "system": OMB_SYSTEM},
    "Black": {"code": "2054-5", "display": "Black or African American", "system": OMB_SYSTEM},
    "Pacific Islander": {"code": "2076-8", "display": "Native Hawaiian or Other Pacific Islander", "system": OMB_SYSTEM},
    "White": {"code": "2106-3", "display": "White", "system": OMB_SYSTEM},
    # Deprecated in HL7 but still present in source exports
    "Other": {"code": "2131-1", "display": "Other Race", "system": OMB_SYSTEM},
    "Unknown": {"code": "UNK", "display": "Unknown", "system": NULL_FLAVOR_SYSTEM},
}

ETHNICITY_CODES = {
    "Non-Hispanic": {"code": "2186-5", "display": "Non Hispanic or Latino", "system": OMB_SYSTEM},
    "Hispanic/Latino": {"code": "2135-2", "display": "Hispanic or Latino", "system": OMB_SYSTEM},
    "Unknown": {"code": "UNK", "display": "Unknown", "system": OMB_SYSTEM},
}

OUNCES_PER_KG = 35.274

_NUMBER_PATTERN = re.compile(r"^[+-]?(\d+(\.\d*)?|\.\d+)([eE][+-]?\d+)?$")
_INTEGER_PATTERN = re.compile(r"^[+-]?\d+$")
_HEIGHT_PATTERN = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*'\s*(?:(\d+(?:\.\d+)?)\s*\"?)?\s*$")
_COMPARATORS = ("<=", ">=", "<", ">")


@dataclass(frozen=True)
class VitalSign:
    """One entry of the fixed vital sign catalog."""

    name: str
    field_name: str
    loinc_code: str
    unit: str
    ucum_code: str
    display: str


VITAL_SIGNS = (
    VitalSign("weight", "enc_weight", "29463-7", "kg", "kg", "Body Weight"),
    VitalSign("rr", "enc_respiratory_rate", "9279-1", "/min", "/min", "Respiratory Rate"),
    VitalSign("pulse", "enc_pulse", "8867-4", "/min", "/min", "Pulse"),
    VitalSign("temp", "enc_temperature", "8310-5", "Cel or [degF]", "[degF]", "Body Temperature"),
    VitalSign("height", "enc_height", "8302-2", "inches", "[in_i]", "Height"),
    VitalSign("o2", "enc_o2", "59408-5", "%", "%", "Oxygen Saturation"),
    VitalSign("bmi", "enc_bmi", "39156-5", "kg/m2", "kg/m2", "BMI"),
    VitalSign("bps", "enc_bp_systolic", "8480-6", "mm[Hg]", "mm[Hg]", "BP Systolic"),
    VitalSign("bpd", "enc_bp_diastolic", "8462-4", "mm[Hg]", "mm[Hg]", "BP Diastolic"),
)


@dataclass(frozen=True)
class EncodedResource:
    """A resource document ready for submission."""

    resource_type: str
    resource_id: str
    document: dict

    @property
    def path(self) -> str:
        return f"/{self.resource_type}/{self.resource_id}"


# ============================================================================
# Boundary decoding
# ============================================================================

def decode_row(model: Type[RowT], row: InstanceRow) -> RowT:
    """Decode a raw host field map into a typed row.

    Parameters:
        model: Typed row class (ConditionRow, LabRow, ...)
        row: Raw instance returned by the record store

    Returns:
        The validated, immutable typed row

    Raises:
        ValidationError: If a required field is missing or a value has the wrong shape
    """
    data = dict(row.fields)
    data["record_id"] = row.record_id
    data["instance"] = row.instance
    try:
        return model.model_validate(data)
    except PydanticValidationError as e:
        problems = {".".join(str(part) for part in err["loc"]): err["msg"] for err in e.errors()}
        raise ValidationError(
            f"Cannot decode {model.__name__} for record {row.record_id} instance {row.instance}",
            source=f"{row.record_id}:{row.instance}",
            details=problems,
        ) from e


def local_resource_id(prefix: str, row: SourceRow) -> str:
    """Build the locally generated id `<prefix>-<record_id>-<instance>`."""
    return f"{prefix}-{row.record_id}-{row.instance}"


# ============================================================================
# Value helpers
# ============================================================================

def parse_number(text: Optional[str]) -> Optional[Number]:
    """Return text as an int or float when it is a plain finite decimal number, else None."""
    if text is None:
        return None
    candidate = text.strip()
    if not _NUMBER_PATTERN.match(candidate):
        return None
    if _INTEGER_PATTERN.match(candidate):
        return int(candidate)
    number = float(candidate)
    # JSON has no literal for overflowed exponents such as 1e400
    return number if math.isfinite(number) else None


def _tidy(value: float) -> Number:
    return int(value) if float(value).is_integer() else value


def return_lab_result(raw: Optional[str]) -> tuple[Union[Number, str], Optional[str]]:
    """Split a raw lab result into (value, comparator).

    A leading `<=`, `>=`, `<` or `>` becomes the comparator. A remaining
    `N/D` fraction is divided when both sides are numeric and D is not zero.
    Numeric results come back as int/float; anything else stays a string.

    Examples:
        "<=5.2" -> (5.2, "<=")
        "10"    -> (10, None)
        "4/2"   -> (2, None)
    """
    value = (raw or "").strip()
    comparator = None
    for candidate in _COMPARATORS:
        if value.startswith(candidate):
            comparator = candidate
            value = value[len(candidate):].strip()
            break

    if "/" in value:
        numerator, denominator = value.split("/", 1)
        top = parse_number(numerator)
        bottom = parse_number(denominator)
        if top is not None and bottom is not None and bottom != 0:
            try:
                quotient = top / bottom
            except OverflowError:
                quotient = math.inf
            if math.isfinite(quotient):
                return _tidy(quotient), comparator

    number = parse_number(value)
    if number is not None:
        return number, comparator
    return value, comparator


def parse_height(raw: str) -> Number:
    """Parse `F' I"` free text (or a bare number of inches) into total inches."""
    number = parse_number(raw)
    if number is not None:
        return number
    match = _HEIGHT_PATTERN.match(raw)
    if not match:
        raise ValueError(f"Unrecognised height value: {raw!r}")
    feet = float(match.group(1))
    inches = float(match.group(2) or 0)
    return _tidy(round(feet * 12 + inches, 2))


def convert_vital(name: str, raw: str) -> Union[Number, str]:
    """Convert a raw vital value into the unit reported for it.

    Weight arrives in ounces and is reported in kg (2 decimals); height
    arrives as `F' I"` text and is reported in inches. Other vitals are
    passed through, as numbers when numeric.

    Raises:
        ValueError: If a weight or height value cannot be parsed
    """
    if name == "weight":
        ounces = parse_number(raw)
        if ounces is None:
            raise ValueError(f"Unrecognised weight value: {raw!r}")
        return round(ounces / OUNCES_PER_KG, 2)
    if name == "height":
        return parse_height(raw)
    number = parse_number(raw)
    return raw.strip() if number is None else number


def _compact(document: dict) -> dict:
    """Drop top-level keys whose value is None."""
    return {key: value for key, value in document.items() if value is not None}


def _subject(patient: ParticipatingRecord) -> dict:
    return {"reference": f"urn:Patient/{patient.study_id}"}


def _narrative(div: str) -> dict:
    return {"status": "generated", "div": div}


def _quantity(unit: Optional[str], raw: Optional[str], with_comparator: bool = True) -> dict:
    quantity = {"unit": unit, "system": UCUM_SYSTEM, "code": unit}
    if raw is None:
        return quantity
    result, comparator = return_lab_result(raw)
    if isinstance(result, str):
        quantity["valueString"] = result
    else:
        quantity["value"] = result
    if with_comparator and comparator is not None:
        quantity["comparator"] = comparator
    return quantity


# ============================================================================
# Encoders
# ============================================================================

def encode_patient(row: DemographicsRow, patient: ParticipatingRecord, options: CodingOptions) -> EncodedResource:
    """Encode demographics as a Patient resource identified by the study id."""
    identifier = {
        "system": IDENTIFIER_URI_SYSTEM,
        "type": {
            "coding": [
                {"code": "MR", "display": "Medical Record", "system": options.identifier_system}
            ]
        },
        "use": "usual",
        "assigner": {"reference": options.submitting_org},
        "value": row.mrn,
    }

    name = {
        "text": " ".join(part for part in (row.first_name, row.last_name) if part),
        "given": [row.first_name] if row.first_name else [],
        "family": row.last_name,
    }

    # Unknown source values have no coding; the extension is left out
    extensions = []
    race = RACE_CODES.get(row.race or "")
    if race:
        extensions.append({"url": RACE_EXTENSION_URL, "valueCodeableConcept": {"coding": [dict(race)]}})
    ethnicity = ETHNICITY_CODES.get(row.ethnicity or "")
    if ethnicity:
        extensions.append({"url": ETHNICITY_EXTENSION_URL, "valueCodeableConcept": {"coding": [dict(ethnicity)]}})

    address = {
        "use": "home",
        "line": [row.street] if row.street else [],
        "city": row.city,
        "state": row.state_text,
        "postalCode": row.zip,
        "country": row.country_text,
    }

    document = _compact({
        "resourceType": "Patient",
        "id": patient.study_id,
        "active": True,
        "name": [name],
        "extension": extensions,
        "gender": row.gender,
        "birthDate": row.dob,
        "identifier": [identifier],
        "address": [_compact(address)],
    })
    return EncodedResource("Patient", patient.study_id, document)


def encode_condition(row: ConditionRow, patient: ParticipatingRecord) -> EncodedResource:
    """Encode a diagnosis as a Condition; resolved when a resolution date exists."""
    resource_id = local_resource_id("dx", row)
    document = _compact({
        "resourceType": "Condition",
        "id": resource_id,
        "clinicalStatus": "resolved" if row.dx_resolved_date else "active",
        # Source verification codes are not mapped
        "verificationStatus": "confirmed",
        "category": {
            "coding": [{"system": SNOMED_SYSTEM, "code": "439401001", "display": "Diagnosis"}]
        },
        "code": {
            "coding": [{"system": ICD10_CM_SYSTEM, "code": row.dx_code, "display": row.dx_description}]
        },
        "subject": _subject(patient),
        "onsetDateTime": row.dx_start_date,
        "abatementDateTime": row.dx_resolved_date,
    })
    return EncodedResource("Condition", resource_id, document)


def lab_resource_id(row: LabRow) -> str:
    return row.lab_id or local_resource_id("lab", row)


def encode_lab(row: LabRow, patient: ParticipatingRecord, options: CodingOptions) -> EncodedResource:
    """Encode a lab result as a laboratory Observation.

    The result string is split into value and comparator; INR results are
    reported with `%` units. The reference range is only emitted when a low
    or high bound exists.
    """
    resource_id = lab_resource_id(row)

    if row.lab_loinc:
        coding = {"system": LOINC_SYSTEM, "code": row.lab_loinc, "display": row.lab_loinc_description}
    else:
        coding = {"system": options.local_code_system, "code": row.lab_component_id, "display": row.lab_loinc_description}

    units = "%" if row.lab_result_units == "INR" else row.lab_result_units

    bounds = {}
    if row.lab_ref_low is not None:
        bounds["low"] = _quantity(units, row.lab_ref_low, with_comparator=False)
    if row.lab_ref_high is not None:
        bounds["high"] = _quantity(units, row.lab_ref_high, with_comparator=False)

    document = _compact({
        "resourceType": "Observation",
        "id": resource_id,
        "status": row.lab_result_status,
        "code": {"coding": [coding]},
        "category": [
            {"coding": [{"system": LAB_CATEGORY_SYSTEM, "code": "laboratory", "display": "Laboratory"}]}
        ],
        "subject": _subject(patient),
        "effectiveDateTime": row.lab_date_time,
        "valueQuantity": _quantity(units, row.lab_result),
        "referenceRange": [bounds] if bounds else [],
    })
    return EncodedResource("Observation", resource_id, document)


def encode_encounter(row: EncounterRow, patient: ParticipatingRecord) -> EncodedResource:
    """Encode an encounter with its period and reason narrative."""
    resource_id = local_resource_id("enc", row)

    period = {"start": row.enc_start_datetime}
    if row.enc_end_datetime:
        period["end"] = row.enc_end_datetime

    text = None
    if row.enc_reason:
        text = _narrative(f"<div>{html.escape(row.enc_reason)}</div>")

    document = _compact({
        "resourceType": "Encounter",
        "id": resource_id,
        "status": row.enc_status,
        "text": text,
        "subject": _subject(patient),
        "period": period,
        "specialty": row.enc_prov_specialty,
        "provider": row.enc_provider,
    })
    return EncodedResource("Encounter", resource_id, document)


def procedure_resource_id(row: ProcedureRow) -> str:
    return row.proc_id or local_resource_id("px", row)


def encode_procedure(row: ProcedureRow, patient: ParticipatingRecord, encounter_id: Optional[str]) -> EncodedResource:
    """Encode a procedure; an unresolved encounter is referenced as `unk`."""
    resource_id = procedure_resource_id(row)
    system = CPT_SYSTEM if row.proc_code_type == "CPT" else ICD10_PROCEDURE_SYSTEM

    document = _compact({
        "resourceType": "Procedure",
        "id": resource_id,
        "status": row.proc_status,
        "code": {
            "coding": [{"system": system, "code": row.proc_code, "display": row.proc_description}]
        },
        "subject": _subject(patient),
        "performedDateTime": row.proc_date,
        "context": {"reference": f"urn:Encounter/{encounter_id or 'unk'}"},
    })
    return EncodedResource("Procedure", resource_id, document)


def vital_resource_id(encounter_id: str, vital: VitalSign) -> str:
    return f"{encounter_id.replace('enc', 'vital')}-{vital.name}"


def encode_vital(
    vital: VitalSign,
    raw_value: str,
    patient: ParticipatingRecord,
    encounter_id: str,
    effective: Optional[str]
) -> EncodedResource:
    """Encode one vital sign measurement as a vital-signs Observation.

    Raises:
        ValueError: If the raw value cannot be converted
    """
    resource_id = vital_resource_id(encounter_id, vital)
    value = convert_vital(vital.name, raw_value)

    quantity = {"unit": vital.unit, "system": UCUM_SYSTEM, "code": vital.ucum_code}
    if isinstance(value, str):
        quantity["valueString"] = value
    else:
        quantity["value"] = value

    document = _compact({
        "resourceType": "Observation",
        "id": resource_id,
        "status": "final",
        "category": [
            {"coding": [{"system": VITAL_CATEGORY_SYSTEM, "code": "vital-signs", "display": "Vital Signs"}]}
        ],
        "code": {
            "coding": [{"system": LOINC_SYSTEM, "code": vital.loinc_code, "display": vital.display}]
        },
        "subject": _subject(patient),
        "context": {"reference": f"urn:Encounter/{encounter_id}"},
        "effectiveDateTime": effective,
        "valueQuantity": quantity,
    })
    return EncodedResource("Observation", resource_id, document)


def encode_medication(entry: MedicationCatalogEntry, options: CodingOptions) -> EncodedResource:
    """Encode a shared catalog entry as a Medication resource."""
    if entry.ndc_code:
        coding = {"system": NDC_SYSTEM, "code": entry.ndc_code, "display": entry.description}
    else:
        coding = {"system": options.local_code_system, "code": entry.local_id, "display": entry.description}

    document = {
        "resourceType": "Medication",
        "id": entry.list_id,
        "code": {"coding": [coding]},
    }
    if entry.snomed_code:
        document["ingredient"] = [
            {
                "itemCodeableConcept": {
                    "coding": [
                        {"system": SNOMED_SYSTEM, "code": entry.snomed_code, "display": entry.snomed_description}
                    ]
                }
            }
        ]
    if entry.brand:
        document["isBrand"] = True
    if entry.otc:
        document["isOverTheCounter"] = True
    return EncodedResource("Medication", entry.list_id, document)


def encode_medication_statement(row: MedicationRow, patient: ParticipatingRecord) -> EncodedResource:
    """Encode a patient's medication use, referencing its shared Medication.

    Raises:
        ValidationError: If the row has no catalog id yet
    """
    if not row.med_list_id:
        raise ValidationError(f"No medication catalog id for {row.ref}", source=f"{row.record_id}:{row.instance}")

    resource_id = local_resource_id("med", row)
    description = html.escape(row.med_description or "")
    document = _compact({
        "resourceType": "MedicationStatement",
        "id": resource_id,
        "text": _narrative(f"<div xmlns='http://www.w3.org/1999/xhtml'><p>{description}</p></div>"),
        "status": "completed" if row.med_end_date else "active",
        "medicationReference": {"reference": f"urn:Medication/{row.med_list_id}"},
        "effectiveDateTime": row.med_start_date,
        "dateAsserted": row.med_order_date,
        "subject": _subject(patient),
        "taken": "y" if row.med_administered == "1" else "unk",
    })
    return EncodedResource("MedicationStatement", resource_id, document)


def encode_allergy(row: AllergyRow, patient: ParticipatingRecord) -> EncodedResource:
    """Encode an allergy; only an "Active" source status maps to active."""
    resource_id = local_resource_id("all", row)
    document = _compact({
        "resourceType": "AllergyIntolerance",
        "id": resource_id,
        "clinicalStatus": "active" if row.all_status == "Active" else "inactive",
        "verificationStatus": "confirmed",
        "type": "allergy",
        "code": {"coding": [{"display": row.all_description}]},
        "reaction": [{"manifestation": [{"coding": [{"display": row.all_reaction}]}]}],
        "patient": _subject(patient),
        "onsetDateTime": row.all_date_noted,
    })
    return EncodedResource("AllergyIntolerance", resource_id, document)
