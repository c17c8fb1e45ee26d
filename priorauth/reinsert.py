"""Local reinsertion of PHI into templates returned by the generation service.

Everything here is a pure function over a
:class:`~priorauth.models.PHIReinsertionContext`: no network, no storage and
no module state. The returned template is built from a de-identified packet,
so filling it is purely additive.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Union

from priorauth.models import (
    Coverage,
    Encounter,
    Facility,
    ImagingStudy,
    MedTrial,
    ParentLetter,
    Patient,
    PHIReinsertionContext,
    Problem,
    Provider,
    ServiceRequest,
    Therapy,
    coerce_context,
)
from priorauth.placeholders import (
    PlaceholderKey as K,
    extract_unfilled_placeholders,
    has_placeholders,
    substitute,
)
from priorauth.time_utils import calc_age, format_date_long, format_date_short, format_phone, utc_now

ContextLike = Union[PHIReinsertionContext, Mapping[str, Any]]

DOCUMENT_MARKERS = (
    "To: Utilization Management",
    "PRIOR AUTHORIZATION",
    "Re: Patient",
    "Dear",
    "[MISSING:",
    "Sincerely",
)

ARTIFACT_TEXT_FIELDS = ("content", "text")


def _s(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _first(*values: Any) -> str:
    for value in values:
        text = _s(value)
        if text:
            return text
    return ""


def _number(value: Any) -> str:
    if value is None or value == 0:
        return ""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def looks_like_document(text: Optional[str]) -> bool:
    """Heuristic: is ``text`` a letter that reinsertion should run on?"""

    body = text or ""
    return any(marker in body for marker in DOCUMENT_MARKERS) or has_placeholders(body)


# --------------------------------------------------------------------------
# Field groups


def _date_fields(today: date) -> Dict[K, str]:
    short = format_date_short(today)
    long = format_date_long(today)
    return {
        K.DATE: short,
        K.CURRENT_DATE: short,
        K.DATE_LONG: long,
        K.TODAY: long,
        K.LETTER_DATE: long,
    }


def _patient_fields(patient: Patient, today: date) -> Dict[K, str]:
    dob_long = format_date_long(patient.dob)
    sex = _s(patient.sex)
    phone = format_phone(patient.phone)
    address = _s(patient.address)
    age = calc_age(patient.dob, today)
    return {
        K.PATIENT_ID: _s(patient.patient_id),
        K.PATIENT_FULL_NAME: _s(patient.full_name),
        K.PATIENT_FIRST_NAME: _s(patient.first_name),
        K.PATIENT_LAST_NAME: _s(patient.last_name),
        K.PATIENT_NAME: _first(
            patient.full_name,
            " ".join(part for part in (_s(patient.first_name), _s(patient.last_name)) if part),
        ),
        K.PATIENT_DOB: dob_long,
        K.PATIENT_DOB_SHORT: format_date_short(patient.dob),
        K.PATIENT_DATE_OF_BIRTH: dob_long,
        K.DOB: dob_long,
        K.DATE_OF_BIRTH: dob_long,
        K.PATIENT_SEX: sex,
        K.PATIENT_GENDER: sex,
        K.SEX: sex,
        K.GENDER: sex,
        K.PATIENT_AGE: "" if age is None else str(age),
        K.PATIENT_PHONE: phone,
        K.PATIENT_ADDRESS: address,
        K.PHONE: phone,
        K.ADDRESS: address,
    }


def _coverage_fields(patient: Patient, coverage: Optional[Coverage]) -> Dict[K, str]:
    cov = coverage or Coverage()
    member_id = _first(patient.insurance_member_id, cov.member_id)
    group_id = _first(patient.insurance_group_number, cov.group_id)
    fax = format_phone(cov.payer_fax)
    return {
        K.MEMBER_ID: member_id,
        K.INSURANCE_MEMBER_ID: member_id,
        K.GROUP_ID: group_id,
        K.INSURANCE_GROUP_NUMBER: group_id,
        K.GROUP_NUMBER: group_id,
        K.COVERAGE_ID: _first(cov.coverage_id, patient.coverage_id),
        K.PAYER_NAME: _s(cov.payer_name),
        K.PAYER_KEY: _s(cov.payer_key),
        K.PAYER_PHONE: format_phone(cov.payer_phone),
        K.PAYER_FAX: fax,
        K.PAYER_FAX_LINE: f"Fax: {fax}" if fax else "",
        K.PAYER_ADDRESS: _s(cov.payer_address),
        K.PLAN_NAME: _s(cov.plan_name),
        K.PLAN_TYPE: _s(cov.plan_type),
    }


def _full_address(facility: Facility) -> str:
    state = _s(facility.facility_state)
    zip_code = _s(facility.facility_zip)
    region = f"{state} {zip_code}".strip() if state else zip_code
    parts = (_s(facility.facility_address), _s(facility.facility_city), region)
    return ", ".join(part for part in parts if part)


def _facility_fields(facility: Optional[Facility]) -> Dict[K, str]:
    fac = facility or Facility()
    return {
        K.FACILITY_ID: _s(fac.facility_id),
        K.FACILITY_NAME: _s(fac.facility_name),
        K.FACILITY_NPI: _s(fac.facility_npi),
        K.FACILITY_PHONE: format_phone(fac.facility_phone),
        K.FACILITY_FAX: format_phone(fac.facility_fax),
        K.FACILITY_ADDRESS: _s(fac.facility_address),
        K.FACILITY_CITY: _s(fac.facility_city),
        K.FACILITY_STATE: _s(fac.facility_state),
        K.FACILITY_ZIP: _s(fac.facility_zip),
        K.FACILITY_FULL_ADDRESS: _full_address(fac),
    }


def _provider_fields(provider: Optional[Provider]) -> Dict[K, str]:
    prov = provider or Provider()
    signature = _first(prov.signature_name, prov.name)
    return {
        K.PROVIDER_NAME: _first(prov.name, prov.signature_name),
        K.PROVIDER_FIRST_NAME: _s(prov.first_name),
        K.PROVIDER_LAST_NAME: _s(prov.last_name),
        K.PROVIDER_CREDENTIALS: _s(prov.credentials),
        K.PROVIDER_SPECIALTY: _s(prov.specialty),
        K.PROVIDER_NPI: _s(prov.npi),
        K.PROVIDER_PHONE: format_phone(prov.phone),
        K.SIGNATURE_NAME: signature,
        K.SIGNATURE_LINE: signature,
    }


def selected_request(context: PHIReinsertionContext) -> Optional[ServiceRequest]:
    """The explicit request wins, then the first listed one, else nothing."""

    if context.request is not None:
        return context.request
    if context.requests:
        return context.requests[0]
    return None


def _codes(many: Sequence[str], single: Optional[str]) -> List[str]:
    if many:
        return [code for code in (_s(item) for item in many) if code]
    return [_s(single)] if _s(single) else []


def _request_fields(request: Optional[ServiceRequest]) -> Dict[K, str]:
    req = request or ServiceRequest()
    cpt = _codes(req.cpt_codes, req.cpt_code)
    icd = _codes(req.icd10_codes, req.icd10_code)
    dos_long = format_date_long(req.requested_dos)
    dos_short = format_date_short(req.requested_dos)
    return {
        K.SERVICE_NAME: _s(req.service_name),
        K.SERVICE_KEY: _s(req.service_key),
        K.REQUEST_ID: _s(req.request_id),
        K.PRIORITY: _first(req.priority, "standard"),
        K.CPT_CODES: ", ".join(cpt),
        K.CPT_CODE: _first(req.cpt_code, cpt[0] if cpt else None),
        K.CPT_DESCRIPTION: _s(req.cpt_description),
        K.ICD10_CODES: ", ".join(icd),
        K.ICD10_CODE: _first(req.icd10_code, icd[0] if icd else None),
        K.DIAGNOSIS_CODES: ", ".join(icd),
        K.ICD10_DESCRIPTION: _s(req.icd10_description),
        K.DIAGNOSIS_DESCRIPTION: _s(req.icd10_description),
        K.CLINICAL_QUESTION: _s(req.clinical_question),
        K.MEDICAL_NECESSITY_SUMMARY: _s(req.medical_necessity_summary),
        K.REQUESTED_UNITS: _number(req.requested_units),
        K.REQUESTED_DOS: dos_long,
        K.REQUESTED_DOS_SHORT: dos_short,
        K.DATE_OF_SERVICE: dos_long,
        K.DOS: dos_short,
    }


# --------------------------------------------------------------------------
# List renderings


def _numbered(lines: Iterable[str]) -> str:
    return "\n".join(f"{index}. {line}" for index, line in enumerate(lines, start=1))


def _diagnosis_line(problem: Problem) -> str:
    return " — ".join(part for part in (_s(problem.icd10_code), _s(problem.description)) if part)


def _diagnosis_fields(problems: Sequence[Problem]) -> Dict[K, str]:
    lines = [line for line in (_diagnosis_line(p) for p in problems) if line]
    return {
        K.DIAGNOSES_LIST: _numbered(lines),
        K.ALL_DIAGNOSES: "; ".join(lines),
        K.DIAGNOSIS_LIST: "\n".join(lines),
        K.PRIMARY_DIAGNOSIS: _diagnosis_line(problems[0]) if problems else "",
    }


def _date_range(start: Any, end: Any) -> str:
    if _s(start) and _s(end):
        return f"({format_date_short(start)} – {format_date_short(end)})"
    return ""


def _therapy_detail(therapy: Therapy) -> str:
    parts = [_s(therapy.therapy_type)]
    visits = _number(therapy.total_visits)
    if visits:
        parts.append(f"{visits} visits")
    parts.append(_s(therapy.response))
    return ": ".join(part for part in parts if part)


def _therapy_fields(therapies: Sequence[Therapy]) -> Dict[K, str]:
    failed = []
    for therapy in therapies:
        parts = [_s(therapy.therapy_type), _date_range(therapy.start_date, therapy.end_date)]
        visits = _number(therapy.total_visits)
        if visits:
            parts.append(f"{visits} visits")
        if _s(therapy.response):
            parts.append(f"— {_s(therapy.response)}")
        failed.append(" ".join(part for part in parts if part))
    details = [line for line in (_therapy_detail(t) for t in therapies) if line]
    return {
        K.FAILED_THERAPIES: _numbered(failed),
        K.THERAPY_SUMMARY: "; ".join(details),
        K.THERAPY_LIST: "\n".join(details),
    }


def _med_trial_line(trial: MedTrial) -> str:
    parts = [_first(trial.medication, "Unknown"), _s(trial.dose)]
    span = _date_range(trial.start_date, trial.end_date)
    if span:
        parts.append(span)
    elif _s(trial.start_date):
        parts.append(f"(started {format_date_short(trial.start_date)})")
    if _s(trial.outcome):
        parts.append(f"— {_s(trial.outcome)}")
    return " ".join(part for part in parts if part)


def _imaging_line(study: ImagingStudy) -> str:
    parts = [f"{_s(study.modality)} {_s(study.body_part)}".strip()]
    when = _first(study.imaging_date, study.study_date)
    if when:
        parts.append(f"({format_date_short(when)})")
    findings = "; ".join(_s(item) for item in study.finding_list() if _s(item))
    if findings:
        parts.append(f"— {findings}")
    impression = _s(study.impression)
    if impression and impression != findings:
        parts.append(f"— {impression}")
    return " ".join(part for part in parts if part)


def _imaging_fields(imaging: Sequence[ImagingStudy]) -> Dict[K, str]:
    summaries = [
        " — ".join(part for part in (_s(s.modality), _s(s.body_part), _s(s.impression)) if part)
        for s in imaging
    ]
    first = imaging[0] if imaging else None
    return {
        K.IMAGING_FINDINGS: _numbered(_imaging_line(study) for study in imaging),
        K.IMAGING_SUMMARY: "; ".join(line for line in summaries if line),
        K.IMAGING_DATE: format_date_long(_first(first.study_date, first.imaging_date)) if first else "",
    }


def _encounter_line(encounter: Encounter) -> str:
    parts = []
    if _s(encounter.encounter_date):
        parts.append(f"[{format_date_short(encounter.encounter_date)}]")
    if _s(encounter.provider_name):
        parts.append(f"({_s(encounter.provider_name)})")
    parts.append(_s(encounter.summary))
    return " ".join(part for part in parts if part)


def _appeal_fields(letter: Optional[ParentLetter]) -> Dict[K, str]:
    parent = letter or ParentLetter()
    return {
        K.DENIAL_REASON: _s(parent.denial_reason),
        K.DENIAL_CODE: _s(parent.denial_code),
        K.DENIAL_DATE: format_date_long(_first(parent.denial_date, parent.response_date) or None),
        K.DENIAL_REFERENCE: _s(parent.denial_code),
        K.APPEAL_DEADLINE: format_date_long(parent.appeal_deadline),
        K.AUTH_NUMBER: _s(parent.auth_number),
    }


def build_replacement_map(context: ContextLike, today: Optional[date] = None) -> Dict[K, str]:
    """Flatten ``context`` into one string per known placeholder key.

    Missing values map to ``""`` so that partially assembled contexts (for
    example a facility profile that has not loaded yet) degrade to blanks.
    """

    ctx = coerce_context(context)
    ref = today or utc_now().date()
    values: Dict[K, str] = {}
    values.update(_date_fields(ref))
    values.update(_patient_fields(ctx.patient, ref))
    values.update(_coverage_fields(ctx.patient, ctx.coverage))
    values.update(_facility_fields(ctx.facility))
    values.update(_provider_fields(ctx.provider))
    values.update(_request_fields(selected_request(ctx)))
    values.update(_diagnosis_fields(ctx.problems))
    values.update(_therapy_fields(ctx.therapies))
    values[K.MEDICATION_TRIALS] = _numbered(_med_trial_line(trial) for trial in ctx.med_trials)
    values.update(_imaging_fields(ctx.imaging))
    values[K.ENCOUNTER_SUMMARY] = "\n\n".join(
        line for line in (_encounter_line(e) for e in ctx.encounters) if line
    )
    values.update(_appeal_fields(ctx.parent_letter))
    return values


def reinsert_phi(
    template: Optional[str],
    context: ContextLike,
    today: Optional[date] = None,
    blank_unfilled: bool = False,
) -> str:
    """Fill the placeholders in ``template`` from ``context``.

    Text without placeholders is returned unchanged. Placeholders whose key is
    unknown stay in place (so QA can list them) unless ``blank_unfilled``.
    """

    text = template or ""
    if not has_placeholders(text):
        return text
    return substitute(text, build_replacement_map(context, today), blank_unfilled=blank_unfilled)


def reinsert_into_artifacts(
    artifacts: Iterable[Mapping[str, Any]],
    context: ContextLike,
    today: Optional[date] = None,
) -> List[Dict[str, Any]]:
    """Apply :func:`reinsert_phi` to the text field of each artifact."""

    ctx = coerce_context(context)
    filled: List[Dict[str, Any]] = []
    for artifact in artifacts:
        updated = dict(artifact)
        for name in ARTIFACT_TEXT_FIELDS:
            value = updated.get(name)
            if isinstance(value, str) and has_placeholders(value):
                updated[name] = reinsert_phi(value, ctx, today)
        filled.append(updated)
    return filled


@dataclass
class ContextValidation:
    valid: bool
    missing: List[str] = field(default_factory=list)


def validate_context(context: ContextLike) -> ContextValidation:
    """Report the identity fields a letter cannot do without. Never raises."""

    ctx = coerce_context(context)
    missing = []
    if not _s(ctx.patient.patient_id):
        missing.append("patient.patient_id")
    if not _s(ctx.patient.full_name) and not _s(ctx.patient.first_name):
        missing.append("patient.full_name or patient.first_name")
    return ContextValidation(valid=not missing, missing=missing)


__all__ = [
    "looks_like_document",
    "build_replacement_map",
    "selected_request",
    "reinsert_phi",
    "reinsert_into_artifacts",
    "extract_unfilled_placeholders",
    "has_placeholders",
    "ContextValidation",
    "validate_context",
]
