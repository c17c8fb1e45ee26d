"""De-identification of a locally cached clinical record.

`deidentify` turns a :class:`~priorauth.models.LocalClinicalRecord` into a
:class:`~priorauth.models.DeidentifiedPacket`: an age band instead of a DOB,
codes instead of descriptions where possible, and short sanitized summaries
instead of free text. It never performs I/O and never raises on partial data;
missing fields simply become ``None`` or empty lists.

Free text is cleaned by :func:`sanitize_free_text`, which redacts the shared
PHI patterns and drops a field outright when a labeled identifier (``DOB``,
``MRN``, ``phone`` ...) survives redaction.
"""
from __future__ import annotations

import re
import secrets
from datetime import date, datetime, timezone
from typing import Any, Iterable, List, Mapping, Optional, Tuple, Union

import structlog

from priorauth.config import get_settings
from priorauth.models import (
    ClinicalSummary,
    ConservativeTreatment,
    Coverage,
    DeidentifiedPacket,
    ImagingSummary,
    LocalClinicalRecord,
    Number,
    OtherTherapy,
    PacketAudit,
    PacketCoverage,
    PacketPatient,
    PacketRequest,
    ServiceRequest,
    coerce_record,
)
from priorauth.observability import FREE_TEXT_DROPPED, PACKETS_BUILT
from priorauth.phi_patterns import contains_keyword, looks_like_phi_text, redact_patterns
from priorauth.time_utils import ensure_utc, isoformat_utc, parse_date, utc_now

logger = structlog.get_logger(__name__)

DEFAULT_MAX_LEN = 160

# Per-field length limits for sanitized text.
PROBLEM_MAX_LEN = 120
QUESTION_MAX_LEN = 140
THERAPY_DETAILS_MAX_LEN = 120
FINDING_MAX_LEN = 140
ENCOUNTER_MAX_LEN = 200
OUTCOME_MAX_LEN = 120
SHORT_FIELD_MAX_LEN = 60

# List caps.
MAX_PROBLEM_SUMMARIES = 8
MAX_THERAPY_SUMMARIES = 8
MAX_FINDINGS = 12
MAX_SUMMARIES = 12
MAX_ENCOUNTER_SUMMARIES = 10
MAX_MED_TRIAL_SUMMARIES = 10
MAX_OTHER_THERAPIES = 10

KNOWN_THERAPY_TYPES = ("pt", "nsaids", "injection", "activity_mod")

AGE_BANDS = (
    (17, "0-17"),
    (24, "18-24"),
    (34, "25-34"),
    (44, "35-44"),
    (54, "45-54"),
    (64, "55-64"),
    (74, "65-74"),
)

_LEADING_YEAR = re.compile(r"^\s*(\d{4})\b")
_SLUG_PATTERN = re.compile(r"[^\w\-]+")

Reference = Union[date, datetime, None]


def _truncate(text: str, max_len: int) -> str:
    if len(text) <= max_len:
        return text
    return text[: max_len - 1].rstrip() + "…"


def sanitize_free_text(value: Any, max_len: int = DEFAULT_MAX_LEN) -> str:
    """Return a redacted, whitespace-collapsed and truncated copy of ``value``.

    An empty string means the field must not be transmitted: either it was
    empty to begin with or it still carried a labeled identifier after the
    pattern redaction pass.
    """

    if value is None:
        return ""
    text = " ".join(str(value).split())
    if not text:
        return ""
    text = redact_patterns(text)
    if contains_keyword(text):
        FREE_TEXT_DROPPED.inc()
        return ""
    text = _truncate(text, max_len)
    # Truncation can re-expose a date prefix such as "2024-05-12…".
    if looks_like_phi_text(text):
        FREE_TEXT_DROPPED.inc()
        return ""
    return text


def _dob_year(dob: Any) -> Optional[int]:
    parsed = parse_date(dob)
    if parsed is not None:
        return parsed.year
    match = _LEADING_YEAR.match(str(dob))
    if match:
        return int(match.group(1))
    return None


def age_band_from_dob(dob: Any, today: Reference = None) -> Optional[str]:
    """Bucket the age implied by the *year* of ``dob`` into a coarse band."""

    if not dob:
        return None
    year = _dob_year(dob)
    if year is None:
        return None
    reference = today or utc_now()
    age = reference.year - year
    if age < 0:
        return None
    for upper, label in AGE_BANDS:
        if age <= upper:
            return label
    return "75+"


def normalize_key(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip().lower()
    return text or None


def _safe_key(value: Any) -> Optional[str]:
    key = normalize_key(value)
    if key is None or looks_like_phi_text(key):
        return None
    return key


def normalize_therapy_type(value: Any) -> str:
    """Map a free-form therapy label onto the closed therapy vocabulary."""

    text = str(value or "").strip().lower()
    if not text:
        return ""
    if text == "pt" or "physical" in text:
        return "pt"
    if "nsaid" in text:
        return "nsaids"
    if "inject" in text:
        return "injection"
    if "activity" in text:
        return "activity_mod"
    return _SLUG_PATTERN.sub("_", text)


def select_coverage(
    record: LocalClinicalRecord, coverage_id: Optional[str] = None
) -> Optional[Coverage]:
    """Pick the single coverage a packet describes.

    Order: explicit ``coverage_id`` match, ``coverage_primary``, the first
    ``coverage_all`` entry flagged primary, the first ``coverage_all`` entry,
    then the legacy singular ``coverage``.
    """

    candidates = [c for c in (record.coverage_primary, *record.coverage_all, record.coverage) if c]
    if coverage_id:
        for candidate in candidates:
            if candidate.coverage_id == coverage_id:
                return candidate
    if record.coverage_primary is not None:
        return record.coverage_primary
    for candidate in record.coverage_all:
        if candidate.is_primary:
            return candidate
    if record.coverage_all:
        return record.coverage_all[0]
    return record.coverage


def select_request(
    record: LocalClinicalRecord, request_id: Optional[str] = None
) -> Optional[ServiceRequest]:
    """Pick the request a packet describes: explicit id, first listed, legacy."""

    requests = list(record.requests or [])
    if request_id:
        for candidate in [*requests, record.request]:
            if candidate is not None and candidate.request_id == request_id:
                return candidate
    if requests:
        return requests[0]
    return record.request


def _dedupe(values: Iterable[Optional[str]]) -> List[str]:
    seen = {}
    for value in values:
        if value is None:
            continue
        text = str(value).strip()
        if text and text not in seen:
            seen[text] = None
    return list(seen)


def _code_list(*groups: Iterable[Optional[str]]) -> List[str]:
    codes: List[Optional[str]] = []
    for group in groups:
        codes.extend(group)
    return _dedupe(codes)


def _reference_moment(now: Reference) -> datetime:
    if isinstance(now, datetime):
        return ensure_utc(now)
    if isinstance(now, date):
        return datetime(now.year, now.month, now.day, tzinfo=timezone.utc)
    return utc_now()


def new_case_id(now: Optional[datetime] = None) -> str:
    stamp = int((now or utc_now()).timestamp() * 1000)
    return f"case_{stamp}_{secrets.token_hex(6)}"


def _requested_units(explicit: Optional[Number], request: Optional[ServiceRequest]) -> Optional[Number]:
    if isinstance(explicit, (int, float)) and not isinstance(explicit, bool):
        return explicit
    if request is not None:
        return request.requested_units
    return None


def _conservative_treatment(
    record: LocalClinicalRecord,
) -> Tuple[ConservativeTreatment, List[str]]:
    normalized = []
    for therapy in record.therapies:
        kind = normalize_therapy_type(sanitize_free_text(therapy.therapy_type, SHORT_FIELD_MAX_LEN))
        if not kind or looks_like_phi_text(kind):
            continue
        normalized.append(
            (kind, therapy.weeks, sanitize_free_text(therapy.details, THERAPY_DETAILS_MAX_LEN))
        )

    def first_weeks(kind: str) -> Optional[Number]:
        for item_kind, weeks, _ in normalized:
            if item_kind == kind:
                return weeks
        return None

    other = [
        OtherTherapy(type=kind, weeks=weeks)
        for kind, weeks, _ in normalized
        if kind not in KNOWN_THERAPY_TYPES
    ][:MAX_OTHER_THERAPIES]
    treatment = ConservativeTreatment(
        pt_weeks=first_weeks("pt"),
        nsaids_weeks=first_weeks("nsaids"),
        injections=["injection" for kind, _, _ in normalized if kind == "injection"],
        activity_modification=True if any(kind == "activity_mod" for kind, _, _ in normalized) else None,
        other=other,
    )
    details = _dedupe(details for _, _, details in normalized)[:MAX_THERAPY_SUMMARIES]
    return treatment, details


def _med_trial_summary(medication: Any, dose: Any, outcome: Any) -> str:
    med = sanitize_free_text(medication, SHORT_FIELD_MAX_LEN)
    if not med:
        return ""
    parts = [med]
    dose_text = sanitize_free_text(dose, SHORT_FIELD_MAX_LEN)
    if dose_text:
        parts.append(dose_text)
    outcome_text = sanitize_free_text(outcome, OUTCOME_MAX_LEN)
    if outcome_text:
        parts.append(f"→ {outcome_text}")
    return " ".join(parts)


def deidentify(
    facility_id: str,
    record: Union[LocalClinicalRecord, Mapping[str, Any], None],
    service_key: Optional[str] = None,
    payer_key: Optional[str] = None,
    requested_units: Optional[Number] = None,
    *,
    request_id: Optional[str] = None,
    coverage_id: Optional[str] = None,
    now: Reference = None,
) -> DeidentifiedPacket:
    """Build the transmittable packet for ``record``.

    ``service_key``/``payer_key``/``requested_units`` override what the record
    carries. ``request_id``/``coverage_id`` pin the selection when the record
    holds several requests or coverages. ``now`` fixes the clock for the age
    band, case id and audit stamp.
    """

    local = coerce_record(record)
    moment = _reference_moment(now)

    case_id = new_case_id(moment)
    coverage = select_coverage(local, coverage_id)
    request = select_request(local, request_id)

    diagnoses = _code_list(
        (problem.icd10_code for problem in local.problems),
        [request.icd10_code] if request else [],
        request.icd10_codes if request else [],
    )
    cpt = _code_list(
        [request.cpt_code] if request else [],
        request.cpt_codes if request else [],
    )

    problem_summaries = _dedupe(
        sanitize_free_text(problem.description, PROBLEM_MAX_LEN) for problem in local.problems
    )[:MAX_PROBLEM_SUMMARIES]
    question = sanitize_free_text(request.clinical_question if request else None, QUESTION_MAX_LEN)
    question_summary = [f"Clinical question: {question}"] if question else []

    treatment, therapy_summaries = _conservative_treatment(local)

    modalities = _dedupe(
        sanitize_free_text(study.modality, SHORT_FIELD_MAX_LEN) for study in local.imaging
    )
    findings = _dedupe(
        sanitize_free_text(finding, FINDING_MAX_LEN)
        for study in local.imaging
        for finding in study.finding_list()
    )[:MAX_FINDINGS]

    summaries = _dedupe(
        [*problem_summaries, *therapy_summaries, *findings, *question_summary]
    )[:MAX_SUMMARIES]
    encounter_summaries = [
        text
        for text in (sanitize_free_text(e.summary, ENCOUNTER_MAX_LEN) for e in local.encounters)
        if text
    ][:MAX_ENCOUNTER_SUMMARIES]
    med_trial_summaries = [
        text
        for text in (_med_trial_summary(m.medication, m.dose, m.outcome) for m in local.med_trials)
        if text
    ][:MAX_MED_TRIAL_SUMMARIES]

    sex = sanitize_free_text(local.patient.sex, SHORT_FIELD_MAX_LEN) or None
    packet = DeidentifiedPacket(
        facility_id=str(facility_id or ""),
        case_id=case_id,
        patient=PacketPatient(
            patient_ref=f"CASEONLY-{case_id}",
            age_band=age_band_from_dob(local.patient.dob, moment),
            sex=sex,
        ),
        coverage=PacketCoverage(
            payer_key=_safe_key(payer_key) if payer_key else _safe_key(coverage.payer_key if coverage else None),
            plan_type=None,
        ),
        request=PacketRequest(
            service_key=_safe_key(service_key) if service_key else _safe_key(request.service_key if request else None),
            cpt=cpt,
            diagnoses=diagnoses,
            requested_units=_requested_units(requested_units, request),
        ),
        clinical=ClinicalSummary(
            summaries=summaries,
            conservative_tx=treatment,
            imaging=ImagingSummary(
                has_imaging=bool(local.imaging),
                modalities=modalities,
                findings=findings,
            ),
            encounter_summaries=encounter_summaries,
            med_trial_summaries=med_trial_summaries,
        ),
        audit=PacketAudit(
            phi_removed=True,
            generated_at=isoformat_utc(moment),
            generator_version=get_settings().generator_version,
        ),
    )
    PACKETS_BUILT.inc()
    logger.info(
        "deid.packet_built",
        case_id=case_id,
        diagnoses=len(diagnoses),
        summaries=len(summaries),
        has_imaging=packet.clinical.imaging.has_imaging,
    )
    return packet


__all__ = [
    "sanitize_free_text",
    "age_band_from_dob",
    "normalize_key",
    "normalize_therapy_type",
    "select_coverage",
    "select_request",
    "new_case_id",
    "deidentify",
]
