"""Boundary firewall: the last check before a clinical payload leaves the device.

:func:`assert_no_phi` walks a payload and raises :class:`PHIDetectedError` on
the first forbidden key, linkable ``patient_ref`` or PHI-shaped string value it
finds. It has no other side effects; callers decide how to log and count a
block, and must never continue with the send.
"""

from __future__ import annotations

from typing import Any, Collection, FrozenSet, Iterable, Mapping, Optional, Sequence

from pydantic import BaseModel

from priorauth.phi_patterns import looks_like_phi_text

FORBIDDEN_KEYS: FrozenSet[str] = frozenset(
    {
        "first_name",
        "last_name",
        "full_name",
        "name",
        "dob",
        "date_of_birth",
        "address",
        "phone",
        "email",
        "member_id",
        "group_id",
        "subscriber_id",
        "account_id",
        "mrn",
        "medical_record_number",
        "medicalrecordnumber",
        "patient_id",
        "study_date",
        "onset_date",
        "requested_dos",
        "date_of_service",
        "dos",
    }
)

PATIENT_REF_KEY = "patient_ref"
_LINKABLE_REF_PREFIXES = ("LOCAL-",)
_LINKABLE_REF_MARKERS = ("PAT-", "MRN")

BLOCKED_KEY = "blocked key"
BLOCKED_TEXT = "blocked text"
BLOCKED_PATIENT_REF = "blocked patient_ref"

ERROR_PREFIX = "ERROR: PHI detected. Non-PHI packet required."
USER_MESSAGE = (
    "This request was stopped because it appeared to contain patient-identifying "
    "information. Nothing was sent. Remove identifying details and try again."
)


class PHIDetectedError(RuntimeError):
    """Raised when an outbound payload contains PHI-shaped content."""

    def __init__(self, reason: str, path: str) -> None:
        self.reason = reason
        self.path = path
        super().__init__(f"{ERROR_PREFIX} ({reason}: {path})")

    @property
    def user_message(self) -> str:
        return USER_MESSAGE


def is_linkable_patient_ref(value: Any) -> bool:
    if not isinstance(value, str):
        return False
    upper = value.upper()
    if upper.startswith(_LINKABLE_REF_PREFIXES):
        return True
    return any(marker in upper for marker in _LINKABLE_REF_MARKERS)


def _join(path: str, key: str) -> str:
    return f"{path}.{key}" if path else key


def _walk(value: Any, path: str, skip_keys: Collection[str]) -> None:
    if isinstance(value, Mapping):
        for raw_key, child in value.items():
            key = str(raw_key)
            if not path and key in skip_keys:
                continue
            child_path = _join(path, key)
            lowered = key.lower()
            if lowered in FORBIDDEN_KEYS:
                raise PHIDetectedError(BLOCKED_KEY, child_path)
            if lowered == PATIENT_REF_KEY and is_linkable_patient_ref(child):
                raise PHIDetectedError(BLOCKED_PATIENT_REF, child_path)
            if isinstance(child, str) and looks_like_phi_text(child):
                raise PHIDetectedError(BLOCKED_TEXT, child_path)
            _walk(child, child_path, skip_keys)
    elif isinstance(value, Sequence) and not isinstance(value, (str, bytes, bytearray)):
        for index, item in enumerate(value):
            _walk(item, f"{path}[{index}]", skip_keys)


def _as_plain(payload: Any) -> Any:
    if isinstance(payload, BaseModel):
        return payload.model_dump(mode="json")
    return payload


def assert_no_phi(payload: Any, skip_keys: Optional[Iterable[str]] = None) -> bool:
    """Return ``True`` if ``payload`` is safe to send, else raise.

    ``skip_keys`` exempts keys at the payload root only; the same key name
    nested anywhere deeper is still checked.

    >>> assert_no_phi({"request": {"cpt": ["72148"]}})
    True
    """

    if isinstance(skip_keys, str):
        skip_keys = [skip_keys]
    _walk(_as_plain(payload), "", frozenset(skip_keys or ()))
    return True


__all__ = [
    "FORBIDDEN_KEYS",
    "PHIDetectedError",
    "BLOCKED_KEY",
    "BLOCKED_TEXT",
    "BLOCKED_PATIENT_REF",
    "assert_no_phi",
    "is_linkable_patient_ref",
    "looks_like_phi_text",
]
