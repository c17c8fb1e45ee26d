import json
import re
from datetime import date

import pytest

from priorauth import deid
from priorauth.deid import (
    age_band_from_dob,
    deidentify,
    normalize_therapy_type,
    sanitize_free_text,
    select_coverage,
    select_request,
)
from priorauth.firewall import assert_no_phi
from priorauth.models import LocalClinicalRecord
from priorauth.phi_patterns import looks_like_phi_text
from priorauth.reinsert import reinsert_phi, validate_context


@pytest.mark.parametrize(
    "dob,expected",
    [
        ("1968-04-12", "55-64"),
        ("1968", "55-64"),
        ("04/12/1968", "55-64"),
        ("2010-12-31", "0-17"),
        ("2006-01-01", "18-24"),
        ("2000-06-15", "18-24"),
        ("1999-01-01", "25-34"),
        ("1980-01-01", "35-44"),
        ("1970-01-01", "45-54"),
        ("1955-01-01", "65-74"),
        ("1949-01-01", "75+"),
        ("2030-01-01", None),
        ("", None),
        (None, None),
        ("not a date", None),
    ],
)
def test_age_band_uses_birth_year_against_reference(dob, expected):
    assert age_band_from_dob(dob, date(2024, 1, 1)) == expected


def test_contact_details_with_dob_label_drop_whole_field():
    text = "Contact John at john@example.com or 555-123-4567, DOB 1990-01-01"
    assert sanitize_free_text(text) == ""


@pytest.mark.parametrize(
    "text,raw",
    [
        ("Email jane.doe@example.com today", "jane.doe@example.com"),
        ("Call (555) 123-4567 today", "123-4567"),
        ("Call +1 555 123 4567", "555 123 4567"),
        ("Card 123-45-6789 on file", "123-45-6789"),
        ("Seen 2024-03-02 in clinic", "2024-03-02"),
        ("Seen 3/2/24 in clinic", "3/2/24"),
        ("Lives near 90210", "90210"),
        ("Zip 62701-1234 region", "62701-1234"),
        ("Ref 1234567 pending", "1234567"),
        ("Arrived at 10:30 for imaging", "10:30"),
    ],
)
def test_sanitized_text_is_closed_under_firewall(text, raw):
    cleaned = sanitize_free_text(text)
    assert raw not in cleaned
    assert not looks_like_phi_text(cleaned)
    assert assert_no_phi({"summary": cleaned}) is True


def test_sanitize_marks_redactions_by_kind():
    cleaned = sanitize_free_text("Seen 03/02/2024 at 10:30, card 1234567")
    assert cleaned == "Seen [redacted-date] at [redacted-time], card [redacted]"


def test_sanitize_collapses_whitespace_and_truncates():
    assert sanitize_free_text("  pain   worse\n\twith  sitting ") == "pain worse with sitting"
    cleaned = sanitize_free_text("word " * 50, max_len=20)
    assert len(cleaned) <= 20
    assert cleaned.endswith("…")


def test_sanitize_drops_text_when_truncation_exposes_a_date():
    assert sanitize_free_text("Noted 2024-05-123 value", max_len=17) == ""


def test_sanitize_keyword_match_is_case_insensitive():
    assert sanitize_free_text("Home ADDRESS on file") == ""
    assert sanitize_free_text("Patient MRN pending") == ""


@pytest.mark.parametrize("value", [None, "", "   "])
def test_sanitize_empty_input(value):
    assert sanitize_free_text(value) == ""


@pytest.mark.parametrize(
    "value,expected",
    [
        ("PT", "pt"),
        ("Physical Therapy", "pt"),
        ("NSAIDs", "nsaids"),
        ("nsaid trial", "nsaids"),
        ("Epidural steroid injection", "injection"),
        ("Activity modification", "activity_mod"),
        ("Chiropractic care", "chiropractic_care"),
        ("heat/ice", "heat_ice"),
        ("", ""),
        (None, ""),
    ],
)
def test_normalize_therapy_type(value, expected):
    assert normalize_therapy_type(value) == expected


def test_select_coverage_order():
    record = LocalClinicalRecord.model_validate(
        {
            "coverage": {"coverage_id": "legacy"},
            "coverage_all": [
                {"coverage_id": "a"},
                {"coverage_id": "b", "is_primary": True},
            ],
        }
    )
    assert select_coverage(record).coverage_id == "b"
    assert select_coverage(record, "a").coverage_id == "a"
    assert select_coverage(record, "legacy").coverage_id == "legacy"

    record.coverage_primary = record.coverage_all[0]
    assert select_coverage(record).coverage_id == "a"

    only_list = LocalClinicalRecord.model_validate({"coverage_all": [{"coverage_id": "x"}, {"coverage_id": "y"}]})
    assert select_coverage(only_list).coverage_id == "x"

    legacy = LocalClinicalRecord.model_validate({"coverage": {"coverage_id": "legacy"}})
    assert select_coverage(legacy).coverage_id == "legacy"
    assert select_coverage(LocalClinicalRecord()) is None


def test_select_request_order():
    record = LocalClinicalRecord.model_validate(
        {
            "request": {"request_id": "legacy"},
            "requests": [{"request_id": "r1"}, {"request_id": "r2"}],
        }
    )
    assert select_request(record).request_id == "r1"
    assert select_request(record, "r2").request_id == "r2"
    assert select_request(record, "legacy").request_id == "legacy"
    assert select_request(record, "missing").request_id == "r1"

    legacy = LocalClinicalRecord.model_validate({"request": {"request_id": "legacy"}})
    assert select_request(legacy).request_id == "legacy"
    assert select_request(LocalClinicalRecord()) is None


def test_deidentify_full_record(clinical_record, fixed_now):
    packet = deidentify("FAC-1", clinical_record, now=fixed_now)

    assert re.fullmatch(r"case_\d+_[0-9a-f]+", packet.case_id)
    assert packet.case_id.startswith(f"case_{int(fixed_now.timestamp() * 1000)}_")
    assert packet.patient.patient_ref == f"CASEONLY-{packet.case_id}"
    assert packet.patient.age_band == "55-64"
    assert packet.patient.sex == "F"

    assert packet.coverage.payer_key == "blueshield"
    assert packet.coverage.plan_type is None

    assert packet.request.service_key == "mri_lumbar"
    assert packet.request.cpt == ["72148"]
    assert packet.request.diagnoses == ["M54.16", "M51.26"]
    assert packet.request.requested_units == 1

    clinical = packet.clinical
    assert clinical.summaries == [
        "Lumbar radiculopathy",
        "Twice weekly PT, minimal improvement",
        "Naproxen 500 mg BID",
        "Mild degenerative changes at L4-L5",
        "Seen [redacted-date] at [redacted-time]",
        "Clinical question: Persistent radicular pain after 6 weeks of PT; evaluate for disc herniation.",
    ]
    tx = clinical.conservative_tx
    assert tx.pt_weeks == 6
    assert tx.nsaids_weeks == 4
    assert tx.injections == ["injection"]
    assert tx.activity_modification is True
    assert [(item.type, item.weeks) for item in tx.other] == [("chiropractic_care", 3)]

    assert clinical.imaging.has_imaging is True
    assert clinical.imaging.modalities == ["X-ray"]
    assert clinical.imaging.findings == [
        "Mild degenerative changes at L4-L5",
        "Seen [redacted-date] at [redacted-time]",
    ]
    assert clinical.encounter_summaries == ["Follow-up: pain 7/10 radiating to left leg."]
    assert clinical.med_trial_summaries == ["Gabapentin 300 mg TID → Partial relief, sedation"]

    assert packet.audit.phi_removed is True
    assert packet.audit.generated_at == "2024-06-01T00:00:00.000Z"
    assert packet.audit.generator_version == "phi-scrubber-2.1"


def test_deidentified_packet_passes_firewall_and_omits_phi(clinical_record, fixed_now):
    packet = deidentify("FAC-1", clinical_record, now=fixed_now)
    payload = packet.to_payload()
    assert assert_no_phi(payload, skip_keys={"facility_id"}) is True

    dumped = json.dumps(payload)
    for raw in ("Jane", "Doe", "PAT-0042", "1968-04-12", "867-5309", "W123456789", "Oak Lane", "2024-06-03"):
        assert raw not in dumped


def test_packet_surface_matches_wire_contract(clinical_record, fixed_now):
    payload = deidentify("FAC-1", clinical_record, now=fixed_now).to_payload()
    assert set(payload) == {"facility_id", "case_id", "patient", "coverage", "request", "clinical", "audit"}
    assert set(payload["patient"]) == {"patient_ref", "age_band", "sex"}
    assert set(payload["coverage"]) == {"payer_key", "plan_type"}
    assert set(payload["request"]) == {"service_key", "cpt", "diagnoses", "requested_units"}
    assert set(payload["clinical"]) == {
        "summaries",
        "conservative_tx",
        "imaging",
        "encounter_summaries",
        "med_trial_summaries",
    }
    assert set(payload["clinical"]["conservative_tx"]) == {
        "pt_weeks",
        "nsaids_weeks",
        "injections",
        "activity_modification",
        "other",
    }
    assert set(payload["clinical"]["imaging"]) == {"has_imaging", "modalities", "findings"}
    assert payload["audit"]["phi_removed"] is True


@pytest.mark.parametrize(
    "record",
    [
        {},
        None,
        {"patient": None, "imaging": None, "therapies": [], "requests": None},
        {"requests": [], "coverage_all": [], "encounters": [], "med_trials": []},
        {"patient": {"dob": "garbage", "sex": "555-123-4567"}},
        {"coverage": {"payer_key": "member id 1234567"}},
        {"request": {"service_key": "john@example.com", "requested_units": "two"}},
        {"therapies": [{"therapy_type": "call 555-111-2222", "weeks": "n/a"}]},
        {"imaging": [{"modality": "MRI 2024-01-02", "findings": "seen 01/02/2024"}]},
        {"med_trials": [{"medication": "Drug 1234567", "dose": "phone me", "outcome": "ok"}]},
    ],
)
def test_any_record_yields_firewall_safe_packet(record):
    packet = deidentify("FAC-1", record)
    assert assert_no_phi(packet, skip_keys={"facility_id"}) is True


MALFORMED_RECORDS = [
    {"imaging": [{"findings": ["disc bulge", None]}]},
    {"requests": [{"cpt_codes": ["72148", None], "icd10_codes": "M54.16"}]},
    {"coverage_all": [{"is_primary": "primary"}, {"is_primary": "yes", "payer_key": "aetna"}]},
    {"requests": {"cpt_code": "72148"}},
    {"problems": [None, "back pain", {"icd10_code": "M54.5"}]},
    {"patient": {"dob": {"year": 1968}, "sex": ["F"]}},
    {"patient": "Jane Doe", "coverage": "Aetna", "request": ["x"]},
    {"therapies": "PT", "encounters": 7, "med_trials": [[]]},
    {"patient": {"dob": date(1968, 4, 12), "patient_id": 42}},
    ["not", "a", "record"],
]


@pytest.mark.parametrize("record", MALFORMED_RECORDS)
def test_malformed_record_never_raises(record):
    packet = deidentify("FAC-1", record)
    assert assert_no_phi(packet, skip_keys={"facility_id"}) is True


@pytest.mark.parametrize("record", MALFORMED_RECORDS)
def test_malformed_context_never_raises(record):
    assert isinstance(reinsert_phi("Dear {{patient_name}}, {imaging_findings} {cpt_codes}", record), str)
    assert validate_context(record).valid in (True, False)


def test_malformed_entries_are_tolerated_not_discarded():
    record = LocalClinicalRecord.model_validate(
        {
            "imaging": [{"findings": ["disc bulge", None, 3]}],
            "requests": {"cpt_codes": ["72148", None], "icd10_codes": "M54.16"},
            "coverage_all": [{"is_primary": "primary"}, {"is_primary": "yes"}],
            "problems": [None, {"icd10_code": "M54.5"}],
            "patient": {"dob": {"year": 1968}, "patient_id": 42},
        }
    )
    assert record.imaging[0].findings == ["disc bulge", "3"]
    assert record.requests[0].cpt_codes == ["72148"]
    assert record.requests[0].icd10_codes == ["M54.16"]
    assert [c.is_primary for c in record.coverage_all] == [None, True]
    assert [p.icd10_code for p in record.problems] == ["M54.5"]
    assert record.patient.dob is None
    assert record.patient.patient_id == "42"


def test_context_with_non_mapping_patient_fills_blanks():
    assert reinsert_phi("Dear {{patient_name}}.", {"patient": "Jane"}) == "Dear ."
    assert validate_context({"patient": "Jane"}).missing == [
        "patient.patient_id",
        "patient.full_name or patient.first_name",
    ]


def test_empty_record_yields_empty_sections():
    packet = deidentify("FAC-1", {})
    assert packet.patient.age_band is None
    assert packet.patient.sex is None
    assert packet.coverage.payer_key is None
    assert packet.request.cpt == []
    assert packet.request.diagnoses == []
    assert packet.request.requested_units is None
    assert packet.clinical.imaging.has_imaging is False
    assert packet.clinical.conservative_tx.activity_modification is None
    assert packet.clinical.summaries == []


def test_explicit_keys_and_units_override_record(clinical_record, fixed_now):
    packet = deidentify(
        "FAC-1",
        clinical_record,
        service_key="  MRI_Lumbar_WO ",
        payer_key="Aetna",
        requested_units=2,
        now=fixed_now,
    )
    assert packet.request.service_key == "mri_lumbar_wo"
    assert packet.coverage.payer_key == "aetna"
    assert packet.request.requested_units == 2


def test_coverage_and_request_can_be_pinned(clinical_record, fixed_now):
    clinical_record["requests"].append({"request_id": "req-2", "cpt_codes": ["97110", "97140"]})
    packet = deidentify("FAC-1", clinical_record, request_id="req-2", coverage_id="cov-1", now=fixed_now)
    assert packet.coverage.payer_key == "aetna"
    assert packet.request.cpt == ["97110", "97140"]
    assert packet.request.service_key is None


def test_case_ids_are_fresh_per_call(clinical_record):
    first = deidentify("FAC-1", clinical_record)
    second = deidentify("FAC-1", clinical_record)
    assert first.case_id != second.case_id
    assert "PAT-0042" not in first.patient.patient_ref


def test_lists_are_capped():
    record = {
        "problems": [{"description": f"Finding number {i} noted"} for i in range(20)],
        "encounters": [{"summary": f"Visit note {i}"} for i in range(15)],
        "med_trials": [{"medication": f"Drug{i}"} for i in range(12)],
        "therapies": [{"therapy_type": f"modality {i}"} for i in range(12)],
        "imaging": [{"modality": "MRI", "findings": [f"Lesion {i}" for i in range(20)]}],
    }
    clinical = deidentify("FAC-1", record).clinical
    assert len(clinical.encounter_summaries) == 10
    assert len(clinical.med_trial_summaries) == 10
    assert len(clinical.conservative_tx.other) == 10
    assert len(clinical.imaging.findings) == 12
    assert len(clinical.summaries) == 12
    assert clinical.summaries[:8] == [f"Finding number {i} noted" for i in range(8)]


def test_summaries_are_deduplicated():
    record = {
        "problems": [{"description": "Low back pain"}, {"description": "Low  back pain"}],
        "imaging": [{"modality": "MRI"}, {"modality": "MRI"}],
    }
    clinical = deidentify("FAC-1", record).clinical
    assert clinical.summaries == ["Low back pain"]
    assert clinical.imaging.modalities == ["MRI"]


def test_generator_version_comes_from_settings(monkeypatch):
    monkeypatch.setenv("PRIORAUTH_GENERATOR_VERSION", "phi-scrubber-test")
    deid.get_settings.cache_clear()
    packet = deidentify("FAC-1", {})
    assert packet.audit.generator_version == "phi-scrubber-test"
