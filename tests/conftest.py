import os
import sys
from datetime import datetime, timezone

import pytest

# Ensure the repository root is on sys.path so tests can import the priorauth package
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from priorauth.config import get_settings  # noqa: E402
from priorauth.observability import configure_logging  # noqa: E402

# Route structlog through stdlib logging so caplog sees every event.
configure_logging('INFO')


FIXED_NOW = datetime(2024, 6, 1, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def _fresh_settings(monkeypatch):
    for name in (
        'PRIORAUTH_GENERATOR_VERSION',
        'PRIORAUTH_GENERATION_URL',
        'PRIORAUTH_GENERATION_TIMEOUT',
        'PRIORAUTH_API_KEY',
        'PRIORAUTH_ALLOWED_EGRESS_HOSTS',
        'LOG_LEVEL',
    ):
        monkeypatch.delenv(name, raising=False)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def fixed_now():
    return FIXED_NOW


@pytest.fixture
def clinical_record():
    return {
        'patient': {
            'patient_id': 'PAT-0042',
            'full_name': 'Jane Doe',
            'first_name': 'Jane',
            'last_name': 'Doe',
            'dob': '1968-04-12',
            'sex': 'F',
            'phone': '555-867-5309',
            'address': '12 Oak Lane, Springfield',
            'insurance_member_id': 'W123456789',
        },
        'coverage_all': [
            {
                'coverage_id': 'cov-1',
                'payer_name': 'Aetna',
                'payer_key': ' AETNA ',
                'member_id': 'W123456789',
                'group_id': 'GRP-7788',
                'payer_fax': '1-800-555-0199',
                'is_primary': False,
            },
            {
                'coverage_id': 'cov-2',
                'payer_name': 'Blue Shield',
                'payer_key': 'BlueShield',
                'is_primary': True,
            },
        ],
        'requests': [
            {
                'request_id': 'req-1',
                'service_key': 'MRI_LUMBAR',
                'service_name': 'MRI Lumbar Spine w/o contrast',
                'cpt_code': '72148',
                'icd10_codes': ['M54.16'],
                'clinical_question': 'Persistent radicular pain after 6 weeks of PT; evaluate for disc herniation.',
                'requested_units': 1,
                'requested_dos': '2024-06-03',
            }
        ],
        'problems': [
            {'icd10_code': 'M54.16', 'description': 'Lumbar radiculopathy', 'onset_date': '2024-01-15'},
            {'icd10_code': 'M51.26', 'description': 'Disc displacement, pt phone 555-123-4567'},
        ],
        'therapies': [
            {
                'therapy_type': 'Physical Therapy',
                'weeks': 6,
                'details': 'Twice weekly PT, minimal improvement',
                'start_date': '2024-02-01',
                'end_date': '2024-03-15',
                'total_visits': 12,
                'response': 'minimal improvement',
            },
            {'therapy_type': 'NSAIDs', 'weeks': '4', 'details': 'Naproxen 500 mg BID'},
            {'therapy_type': 'Epidural steroid injection'},
            {'therapy_type': 'Activity modification'},
            {'therapy_type': 'Chiropractic care', 'weeks': 3},
        ],
        'imaging': [
            {
                'modality': 'X-ray',
                'body_part': 'lumbar spine',
                'findings': ['Mild degenerative changes at L4-L5', 'Seen 03/02/2024 at 10:30'],
                'impression': 'Mild DDD',
                'study_date': '2024-03-02',
            }
        ],
        'encounters': [
            {
                'encounter_date': '2024-04-01',
                'summary': 'Follow-up: pain 7/10 radiating to left leg.',
                'provider_name': 'Dr. Smith',
            },
            {'summary': 'Called patient at 555-222-3333 re: DOB check'},
        ],
        'med_trials': [
            {
                'medication': 'Gabapentin',
                'dose': '300 mg TID',
                'outcome': 'Partial relief, sedation',
                'start_date': '2024-02-10',
                'end_date': '2024-03-10',
            },
            {'dose': '10 mg'},
        ],
        'parent_letter': {
            'denial_reason': 'Insufficient conservative therapy documented',
            'denial_code': 'CO-50',
            'denial_date': '2024-05-01',
            'appeal_deadline': '2024-07-01',
            'auth_number': 'AUTH-99812',
        },
    }


@pytest.fixture
def facility():
    return {
        'facility_id': 'FAC-1',
        'facility_name': 'Springfield Spine Center',
        'facility_npi': '1234567893',
        'facility_phone': '2175550100',
        'facility_fax': '2175550101',
        'facility_address': '100 Main St',
        'facility_city': 'Springfield',
        'facility_state': 'IL',
        'facility_zip': '62701',
    }


@pytest.fixture
def provider():
    return {
        'provider_id': 'prov-7',
        'name': 'Alan Smith',
        'first_name': 'Alan',
        'last_name': 'Smith',
        'credentials': 'MD',
        'specialty': 'Physical Medicine',
        'npi': '1098765432',
        'signature_name': 'Alan Smith, MD',
    }
