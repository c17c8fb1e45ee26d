"""Placeholder grammar shared by the generation service and local reinsertion.

A placeholder for key ``k`` may be written as ``{{k}}``, ``{k}`` or
``[MISSING: k]``. Matching is case-insensitive and tolerates whitespace around
the key. Keys the reinserter knows how to fill are enumerated in
:class:`PlaceholderKey`; anything else lands in an "unknown" bucket.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterator, List, Mapping, Optional


class PlaceholderKey(str, Enum):
    # Dates
    DATE = "date"
    CURRENT_DATE = "current_date"
    DATE_LONG = "date_long"
    TODAY = "today"
    LETTER_DATE = "letter_date"

    # Patient
    PATIENT_ID = "patient_id"
    PATIENT_FULL_NAME = "patient_full_name"
    PATIENT_FIRST_NAME = "patient_first_name"
    PATIENT_LAST_NAME = "patient_last_name"
    PATIENT_NAME = "patient_name"
    PATIENT_DOB = "patient_dob"
    PATIENT_DOB_SHORT = "patient_dob_short"
    PATIENT_DATE_OF_BIRTH = "patient_date_of_birth"
    DOB = "dob"
    DATE_OF_BIRTH = "date_of_birth"
    PATIENT_SEX = "patient_sex"
    PATIENT_GENDER = "patient_gender"
    SEX = "sex"
    GENDER = "gender"
    PATIENT_AGE = "patient_age"
    PATIENT_PHONE = "patient_phone"
    PATIENT_ADDRESS = "patient_address"
    PHONE = "phone"
    ADDRESS = "address"

    # Coverage
    MEMBER_ID = "member_id"
    INSURANCE_MEMBER_ID = "insurance_member_id"
    GROUP_ID = "group_id"
    INSURANCE_GROUP_NUMBER = "insurance_group_number"
    GROUP_NUMBER = "group_number"
    COVERAGE_ID = "coverage_id"

    # Payer
    PAYER_NAME = "payer_name"
    PAYER_KEY = "payer_key"
    PAYER_PHONE = "payer_phone"
    PAYER_FAX = "payer_fax"
    PAYER_FAX_LINE = "payer_fax_line"
    PAYER_ADDRESS = "payer_address"
    PLAN_NAME = "plan_name"
    PLAN_TYPE = "plan_type"

    # Facility
    FACILITY_ID = "facility_id"
    FACILITY_NAME = "facility_name"
    FACILITY_NPI = "facility_npi"
    FACILITY_PHONE = "facility_phone"
    FACILITY_FAX = "facility_fax"
    FACILITY_ADDRESS = "facility_address"
    FACILITY_CITY = "facility_city"
    FACILITY_STATE = "facility_state"
    FACILITY_ZIP = "facility_zip"
    FACILITY_FULL_ADDRESS = "facility_full_address"

    # Provider
    PROVIDER_NAME = "provider_name"
    PROVIDER_FIRST_NAME = "provider_first_name"
    PROVIDER_LAST_NAME = "provider_last_name"
    PROVIDER_CREDENTIALS = "provider_credentials"
    PROVIDER_SPECIALTY = "provider_specialty"
    PROVIDER_NPI = "provider_npi"
    PROVIDER_PHONE = "provider_phone"
    SIGNATURE_NAME = "signature_name"
    SIGNATURE_LINE = "signature_line"

    # Request
    SERVICE_NAME = "service_name"
    SERVICE_KEY = "service_key"
    REQUEST_ID = "request_id"
    PRIORITY = "priority"
    CPT_CODES = "cpt_codes"
    CPT_CODE = "cpt_code"
    CPT_DESCRIPTION = "cpt_description"
    ICD10_CODES = "icd10_codes"
    ICD10_CODE = "icd10_code"
    DIAGNOSIS_CODES = "diagnosis_codes"
    ICD10_DESCRIPTION = "icd10_description"
    DIAGNOSIS_DESCRIPTION = "diagnosis_description"
    CLINICAL_QUESTION = "clinical_question"
    MEDICAL_NECESSITY_SUMMARY = "medical_necessity_summary"
    REQUESTED_UNITS = "requested_units"
    REQUESTED_DOS = "requested_dos"
    REQUESTED_DOS_SHORT = "requested_dos_short"
    DATE_OF_SERVICE = "date_of_service"
    DOS = "dos"

    # Clinical lists
    DIAGNOSES_LIST = "diagnoses_list"
    ALL_DIAGNOSES = "all_diagnoses"
    DIAGNOSIS_LIST = "diagnosis_list"
    PRIMARY_DIAGNOSIS = "primary_diagnosis"
    FAILED_THERAPIES = "failed_therapies"
    THERAPY_SUMMARY = "therapy_summary"
    THERAPY_LIST = "therapy_list"
    MEDICATION_TRIALS = "medication_trials"
    IMAGING_FINDINGS = "imaging_findings"
    IMAGING_SUMMARY = "imaging_summary"
    IMAGING_DATE = "imaging_date"
    ENCOUNTER_SUMMARY = "encounter_summary"

    # Appeals
    DENIAL_REASON = "denial_reason"
    DENIAL_CODE = "denial_code"
    DENIAL_DATE = "denial_date"
    DENIAL_REFERENCE = "denial_reference"
    APPEAL_DEADLINE = "appeal_deadline"
    AUTH_NUMBER = "auth_number"

    @classmethod
    def lookup(cls, name: str) -> Optional["PlaceholderKey"]:
        """Return the member spelled ``name`` (any case), if there is one."""

        return _BY_VALUE.get(name.strip().lower())


_BY_VALUE: Dict[str, PlaceholderKey] = {member.value: member for member in PlaceholderKey}

PLACEHOLDER_PATTERN = re.compile(
    r"\{\{\s*(?P<double>[A-Za-z0-9_]+)\s*\}\}"
    r"|\{\s*(?P<single>[A-Za-z0-9_]+)\s*\}"
    r"|\[\s*MISSING\s*:\s*(?P<missing>[^\]]*?[^\]\s])\s*\]",
    re.IGNORECASE,
)


def _key_of(match: "re.Match[str]") -> str:
    return match.group("double") or match.group("single") or match.group("missing")


def iter_placeholder_keys(text: Optional[str]) -> Iterator[str]:
    """Yield the key of each placeholder in ``text`` in document order."""

    for match in PLACEHOLDER_PATTERN.finditer(text or ""):
        yield _key_of(match)


def has_placeholders(text: Optional[str]) -> bool:
    return PLACEHOLDER_PATTERN.search(text or "") is not None


def extract_unfilled_placeholders(text: Optional[str]) -> List[str]:
    """Return placeholder keys still present in ``text``, first seen first."""

    seen: Dict[str, None] = {}
    for key in iter_placeholder_keys(text):
        seen.setdefault(key, None)
    return list(seen)


@dataclass
class PlaceholderScan:
    known: List[PlaceholderKey] = field(default_factory=list)
    unknown: List[str] = field(default_factory=list)

    @property
    def empty(self) -> bool:
        return not self.known and not self.unknown


def scan_placeholders(text: Optional[str]) -> PlaceholderScan:
    """Split the placeholders in ``text`` into known keys and unknown names."""

    scan = PlaceholderScan()
    for key in extract_unfilled_placeholders(text):
        member = PlaceholderKey.lookup(key)
        if member is None:
            if key not in scan.unknown:
                scan.unknown.append(key)
        elif member not in scan.known:
            scan.known.append(member)
    return scan


def substitute(
    text: str,
    values: Mapping[PlaceholderKey, str],
    blank_unfilled: bool = False,
) -> str:
    """Fill every placeholder whose key is in ``values`` in a single pass.

    Placeholders without a value are kept verbatim unless ``blank_unfilled``
    is set, in which case they are replaced with an empty string.
    """

    def replace(match: "re.Match[str]") -> str:
        member = PlaceholderKey.lookup(_key_of(match))
        if member is not None and member in values:
            return values[member]
        return "" if blank_unfilled else match.group(0)

    return PLACEHOLDER_PATTERN.sub(replace, text)


__all__ = [
    "PlaceholderKey",
    "PLACEHOLDER_PATTERN",
    "PlaceholderScan",
    "iter_placeholder_keys",
    "has_placeholders",
    "extract_unfilled_placeholders",
    "scan_placeholders",
    "substitute",
]
