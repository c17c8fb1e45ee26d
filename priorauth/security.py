"""Helpers for keeping identifiers out of logs."""

from __future__ import annotations

import hashlib
from typing import Any, Dict, Mapping, Optional


def hash_identifier(value: Optional[str]) -> Optional[str]:
    """Return a stable SHA256 hash prefix for identifiers."""

    if not value:
        return None
    digest = hashlib.sha256(str(value).encode("utf-8")).hexdigest()
    return digest[:16]


def log_identifiers(**identifiers: Optional[str]) -> Dict[str, Any]:
    """Build log fields ``<name>_hash`` for each identifier passed in.

    >>> sorted(log_identifiers(patient="p-1"))
    ['patient_hash']
    """

    return {f"{name}_hash": hash_identifier(value) for name, value in identifiers.items()}


def describe_payload(payload: Mapping[str, Any]) -> Dict[str, Any]:
    """Summarise a payload's shape for logs without including any values."""

    return {"keys": sorted(str(key) for key in payload.keys()), "size": len(payload)}


__all__ = ["hash_identifier", "log_identifiers", "describe_payload"]
