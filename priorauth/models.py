"""Typed records for local clinical data, outbound packets and fill contexts.

Upstream clinic data is loosely shaped JSON, so every entity field is optional,
unknown keys are ignored and malformed values (a null list entry, an object where
text was expected, a lone object where a list was expected) degrade to empty
rather than failing validation.  The packet models are the opposite: closed
(``extra="forbid"``) so nothing can be attached to an outbound packet that the
de-identifier did not put there.
"""

from __future__ import annotations

from datetime import date, datetime
from typing import Annotated, Any, Dict, List, Literal, Mapping, Optional, Union

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field

Number = Union[int, float]


def _to_number(value: Any) -> Optional[Number]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return value
    if isinstance(value, (Mapping, list, tuple)):
        return None
    text = str(value).strip()
    if not text:
        return None
    try:
        return int(text)
    except ValueError:
        pass
    try:
        return float(text)
    except ValueError:
        return None


def _to_text(value: Any) -> Optional[str]:
    if value is None or isinstance(value, (Mapping, list, tuple, set)):
        return None
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    return str(value)


_FLAG_WORDS = {"true": True, "yes": True, "y": True, "1": True, "false": False, "no": False, "n": False, "0": False}


def _to_flag(value: Any) -> Optional[bool]:
    if value is None or isinstance(value, bool):
        return value
    if isinstance(value, (int, float)) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        return _FLAG_WORDS.get(value.strip().lower())
    return None


def _is_entity(value: Any) -> bool:
    return isinstance(value, (Mapping, BaseModel))


def _to_list(value: Any) -> List[Any]:
    """Entity lists: a lone object becomes a one-item list; junk entries are dropped."""

    if _is_entity(value):
        return [value]
    if not isinstance(value, (list, tuple)):
        return []
    return [item for item in value if _is_entity(item)]


def _to_text_list(value: Any) -> List[str]:
    if value is None:
        return []
    items = value if isinstance(value, (list, tuple)) else [value]
    return [text for text in (_to_text(item) for item in items) if text is not None]


def _to_findings(value: Any) -> Union[List[str], str, None]:
    if isinstance(value, (list, tuple)):
        return _to_text_list(value)
    return _to_text(value)


def _to_mapping(value: Any) -> Any:
    if _is_entity(value):
        return value
    return {}


def _to_optional_entity(value: Any) -> Any:
    if _is_entity(value):
        return value
    return None


LenientNumber = Annotated[Optional[Number], BeforeValidator(_to_number)]
Text = Annotated[Optional[str], BeforeValidator(_to_text)]
Flag = Annotated[Optional[bool], BeforeValidator(_to_flag)]
TextList = Annotated[List[str], BeforeValidator(_to_text_list)]
Findings = Annotated[Union[List[str], str, None], BeforeValidator(_to_findings)]


class _Record(BaseModel):
    model_config = ConfigDict(extra="ignore", coerce_numbers_to_str=True)


class Patient(_Record):
    patient_id: Text = None
    full_name: Text = None
    first_name: Text = None
    last_name: Text = None
    dob: Text = None
    sex: Text = None
    phone: Text = None
    address: Text = None
    insurance_member_id: Text = None
    insurance_group_number: Text = None
    coverage_id: Text = None
    payer_id: Text = None
    provider_id: Text = None


class Facility(_Record):
    facility_id: Text = None
    facility_name: Text = None
    facility_npi: Text = None
    facility_phone: Text = None
    facility_fax: Text = None
    facility_address: Text = None
    facility_city: Text = None
    facility_state: Text = None
    facility_zip: Text = None


class Coverage(_Record):
    coverage_id: Text = None
    payer_name: Text = None
    payer_key: Text = None
    payer_phone: Text = None
    payer_fax: Text = None
    payer_address: Text = None
    member_id: Text = None
    group_id: Text = None
    plan_name: Text = None
    plan_type: Text = None
    is_primary: Flag = None


class Provider(_Record):
    provider_id: Text = None
    name: Text = None
    first_name: Text = None
    last_name: Text = None
    credentials: Text = None
    specialty: Text = None
    npi: Text = None
    phone: Text = None
    signature_name: Text = None


class ServiceRequest(_Record):
    request_id: Text = None
    coverage_id: Text = None
    service_key: Text = None
    service_name: Text = None
    cpt_code: Text = None
    cpt_codes: TextList = Field(default_factory=list)
    cpt_description: Text = None
    icd10_code: Text = None
    icd10_codes: TextList = Field(default_factory=list)
    icd10_description: Text = None
    clinical_question: Text = None
    requested_units: LenientNumber = None
    requested_dos: Text = None
    priority: Text = None
    medical_necessity_summary: Text = None


class Problem(_Record):
    icd10_code: Text = None
    description: Text = None
    onset_date: Text = None


class Therapy(_Record):
    therapy_type: Text = None
    weeks: LenientNumber = None
    details: Text = None
    start_date: Text = None
    end_date: Text = None
    total_visits: LenientNumber = None
    response: Text = None


class ImagingStudy(_Record):
    modality: Text = None
    body_part: Text = None
    findings: Findings = None
    impression: Text = None
    study_date: Text = None
    imaging_date: Text = None

    def finding_list(self) -> List[str]:
        if isinstance(self.findings, list):
            return [item for item in self.findings if item]
        if isinstance(self.findings, str) and self.findings:
            return [self.findings]
        return []


class Encounter(_Record):
    encounter_date: Text = None
    summary: Text = None
    provider_name: Text = None


class MedTrial(_Record):
    medication: Text = None
    dose: Text = None
    start_date: Text = None
    end_date: Text = None
    outcome: Text = None


class ParentLetter(_Record):
    denial_reason: Text = None
    denial_code: Text = None
    denial_date: Text = None
    response_date: Text = None
    appeal_deadline: Text = None
    auth_number: Text = None
    letter_type: Text = None


CoverageList = Annotated[List[Coverage], BeforeValidator(_to_list)]
RequestList = Annotated[List[ServiceRequest], BeforeValidator(_to_list)]
ProblemList = Annotated[List[Problem], BeforeValidator(_to_list)]
TherapyList = Annotated[List[Therapy], BeforeValidator(_to_list)]
ImagingList = Annotated[List[ImagingStudy], BeforeValidator(_to_list)]
EncounterList = Annotated[List[Encounter], BeforeValidator(_to_list)]
MedTrialList = Annotated[List[MedTrial], BeforeValidator(_to_list)]
PatientField = Annotated[Patient, BeforeValidator(_to_mapping)]
CoverageField = Annotated[Optional[Coverage], BeforeValidator(_to_optional_entity)]
RequestField = Annotated[Optional[ServiceRequest], BeforeValidator(_to_optional_entity)]
FacilityField = Annotated[Optional[Facility], BeforeValidator(_to_optional_entity)]
ProviderField = Annotated[Optional[Provider], BeforeValidator(_to_optional_entity)]
ParentLetterField = Annotated[Optional[ParentLetter], BeforeValidator(_to_optional_entity)]


class LocalClinicalRecord(_Record):
    """Everything cached on-device for the active patient. Never transmitted."""

    patient: PatientField = Field(default_factory=Patient)
    coverage: CoverageField = None
    coverage_primary: CoverageField = None
    coverage_all: CoverageList = Field(default_factory=list)
    request: RequestField = None
    requests: RequestList = Field(default_factory=list)
    problems: ProblemList = Field(default_factory=list)
    therapies: TherapyList = Field(default_factory=list)
    imaging: ImagingList = Field(default_factory=list)
    encounters: EncounterList = Field(default_factory=list)
    med_trials: MedTrialList = Field(default_factory=list)
    parent_letter: ParentLetterField = None


class PHIReinsertionContext(_Record):
    """Local-only values used to fill placeholders in a returned template."""

    patient: PatientField = Field(default_factory=Patient)
    facility: FacilityField = None
    coverage: CoverageField = None
    request: RequestField = None
    provider: ProviderField = None
    parent_letter: ParentLetterField = None
    problems: ProblemList = Field(default_factory=list)
    therapies: TherapyList = Field(default_factory=list)
    imaging: ImagingList = Field(default_factory=list)
    encounters: EncounterList = Field(default_factory=list)
    med_trials: MedTrialList = Field(default_factory=list)
    requests: RequestList = Field(default_factory=list)
    coverage_all: CoverageList = Field(default_factory=list)


# --------------------------------------------------------------------------
# Outbound packet


class _PacketModel(BaseModel):
    model_config = ConfigDict(extra="forbid")


class PacketPatient(_PacketModel):
    patient_ref: str
    age_band: Optional[str] = None
    sex: Optional[str] = None


class PacketCoverage(_PacketModel):
    payer_key: Optional[str] = None
    plan_type: Optional[str] = None


class PacketRequest(_PacketModel):
    service_key: Optional[str] = None
    cpt: List[str] = Field(default_factory=list)
    diagnoses: List[str] = Field(default_factory=list)
    requested_units: Optional[Number] = None


class OtherTherapy(_PacketModel):
    type: str
    weeks: Optional[Number] = None


class ConservativeTreatment(_PacketModel):
    pt_weeks: Optional[Number] = None
    nsaids_weeks: Optional[Number] = None
    injections: List[str] = Field(default_factory=list)
    activity_modification: Optional[bool] = None
    other: List[OtherTherapy] = Field(default_factory=list)


class ImagingSummary(_PacketModel):
    has_imaging: bool = False
    modalities: List[str] = Field(default_factory=list)
    findings: List[str] = Field(default_factory=list)


class ClinicalSummary(_PacketModel):
    summaries: List[str] = Field(default_factory=list)
    conservative_tx: ConservativeTreatment = Field(default_factory=ConservativeTreatment)
    imaging: ImagingSummary = Field(default_factory=ImagingSummary)
    encounter_summaries: List[str] = Field(default_factory=list)
    med_trial_summaries: List[str] = Field(default_factory=list)


class PacketAudit(_PacketModel):
    phi_removed: Literal[True] = True
    generated_at: str
    generator_version: str


class DeidentifiedPacket(_PacketModel):
    """The only clinical structure permitted to leave the device."""

    facility_id: str
    case_id: str
    patient: PacketPatient
    coverage: PacketCoverage = Field(default_factory=PacketCoverage)
    request: PacketRequest = Field(default_factory=PacketRequest)
    clinical: ClinicalSummary = Field(default_factory=ClinicalSummary)
    audit: PacketAudit

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")


def coerce_record(value: Union[LocalClinicalRecord, Mapping[str, Any], None]) -> LocalClinicalRecord:
    if isinstance(value, LocalClinicalRecord):
        return value
    return LocalClinicalRecord.model_validate(dict(value) if isinstance(value, Mapping) else {})


def coerce_context(
    value: Union[PHIReinsertionContext, Mapping[str, Any], None],
) -> PHIReinsertionContext:
    if isinstance(value, PHIReinsertionContext):
        return value
    return PHIReinsertionContext.model_validate(dict(value) if isinstance(value, Mapping) else {})


__all__ = [
    "Patient",
    "Facility",
    "Coverage",
    "Provider",
    "ServiceRequest",
    "Problem",
    "Therapy",
    "ImagingStudy",
    "Encounter",
    "MedTrial",
    "ParentLetter",
    "LocalClinicalRecord",
    "PHIReinsertionContext",
    "PacketPatient",
    "PacketCoverage",
    "PacketRequest",
    "OtherTherapy",
    "ConservativeTreatment",
    "ImagingSummary",
    "ClinicalSummary",
    "PacketAudit",
    "DeidentifiedPacket",
    "coerce_record",
    "coerce_context",
]
