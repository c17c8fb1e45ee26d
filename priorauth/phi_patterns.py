"""Compiled PHI pattern library shared by the de-identifier and the firewall.

Both the free-text sanitizer and the boundary firewall classify text with the
patterns below, so a change here tightens (or loosens) both sides at once.
"""

from __future__ import annotations

import re
from typing import Iterable, Optional, Pattern, Tuple

EMAIL_PATTERN = re.compile(r"\b[A-Z0-9._%+-]+@[A-Z0-9.-]+\.[A-Z]{2,}\b", re.IGNORECASE)
# Leading lookbehind instead of ``\b`` so "(555) 123-4567" and "+1 555..." match.
PHONE_PATTERN = re.compile(
    r"(?<!\w)(?:\+?1[-.\s]?)?(?:\(\d{3}\)|\d{3})[-.\s]?\d{3}[-.\s]?\d{4}\b"
)
SSN_PATTERN = re.compile(r"\b\d{3}-\d{2}-\d{4}\b")
DATE_YMD_PATTERN = re.compile(r"\b\d{4}[-/]\d{1,2}[-/]\d{1,2}\b")
DATE_MDY_PATTERN = re.compile(r"\b\d{1,2}[-/]\d{1,2}[-/]\d{2,4}\b")
TIME_PATTERN = re.compile(r"\b\d{1,2}:\d{2}(?::\d{2})?\b")
ZIP_PATTERN = re.compile(r"\b\d{5}(?:-\d{4})?\b")
LONG_ID_PATTERN = re.compile(r"\b\d{6,}\b")

REDACTED = "[redacted]"
REDACTED_DATE = "[redacted-date]"
REDACTED_TIME = "[redacted-time]"

# Applied in order; earlier patterns consume digits later ones would misread
# (an SSN must not be split into a ZIP and a long numeral).
REDACTION_ORDER: Tuple[Tuple[str, Pattern[str], str], ...] = (
    ("email", EMAIL_PATTERN, REDACTED),
    ("phone", PHONE_PATTERN, REDACTED),
    ("ssn", SSN_PATTERN, REDACTED),
    ("date_ymd", DATE_YMD_PATTERN, REDACTED_DATE),
    ("date_mdy", DATE_MDY_PATTERN, REDACTED_DATE),
    ("time", TIME_PATTERN, REDACTED_TIME),
    ("zip", ZIP_PATTERN, REDACTED),
    ("long_id", LONG_ID_PATTERN, REDACTED),
)

# Patterns the firewall treats as PHI in any outbound string. Clock times are
# redacted from free text but are not identifying on their own.
DETECTION_PATTERNS: Tuple[Tuple[str, Pattern[str]], ...] = (
    ("email", EMAIL_PATTERN),
    ("phone", PHONE_PATTERN),
    ("ssn", SSN_PATTERN),
    ("date_ymd", DATE_YMD_PATTERN),
    ("date_mdy", DATE_MDY_PATTERN),
    ("zip", ZIP_PATTERN),
    ("long_id", LONG_ID_PATTERN),
)

# A sanitized field still containing one of these words is dropped whole.
LABELED_PHI_KEYWORDS: Tuple[str, ...] = (
    "dob",
    "date of birth",
    "mrn",
    "member id",
    "member_id",
    "address",
    "phone",
    "ssn",
)

# Explicit labels that mark a transmitted string as PHI.
PHI_LABELS: Tuple[str, ...] = (
    "dob:",
    "date of birth",
    "mrn:",
    "member id",
    "member_id",
    "ssn:",
    "address:",
    "phone:",
)


def redact_patterns(text: str) -> str:
    """Replace every pattern hit in ``text`` with its redaction marker."""

    for _, pattern, marker in REDACTION_ORDER:
        text = pattern.sub(marker, text)
    return text


def contains_keyword(text: str, keywords: Iterable[str] = LABELED_PHI_KEYWORDS) -> bool:
    lowered = text.lower()
    return any(keyword in lowered for keyword in keywords)


def match_phi_pattern(text: str) -> Optional[str]:
    """Return the name of the first detection pattern matching ``text``."""

    for name, pattern in DETECTION_PATTERNS:
        if pattern.search(text):
            return name
    return None


def looks_like_phi_text(text: str) -> bool:
    """Return ``True`` when ``text`` carries a PHI label or PHI-shaped token."""

    if not text:
        return False
    if contains_keyword(text, PHI_LABELS):
        return True
    return match_phi_pattern(text) is not None


__all__ = [
    "EMAIL_PATTERN",
    "PHONE_PATTERN",
    "SSN_PATTERN",
    "DATE_YMD_PATTERN",
    "DATE_MDY_PATTERN",
    "TIME_PATTERN",
    "ZIP_PATTERN",
    "LONG_ID_PATTERN",
    "REDACTION_ORDER",
    "DETECTION_PATTERNS",
    "LABELED_PHI_KEYWORDS",
    "PHI_LABELS",
    "redact_patterns",
    "contains_keyword",
    "match_phi_pattern",
    "looks_like_phi_text",
]
