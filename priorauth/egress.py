"""Hardened HTTP egress for clinical payloads.

Every send goes through :func:`send_clinical_payload`, which runs the PHI
firewall on the exact JSON body before any socket is opened, then dispatches
with TLS verification, a timeout and a host allowlist.
"""

from __future__ import annotations

from typing import Any, Iterable, Mapping, Optional, Set
from urllib.parse import urlparse

import requests
import structlog

from priorauth.config import get_settings
from priorauth.firewall import PHIDetectedError, assert_no_phi
from priorauth.observability import EGRESS_FAILURES, FIREWALL_BLOCKS
from priorauth.security import describe_payload

logger = structlog.get_logger(__name__)


class EgressBlockedError(RuntimeError):
    """Raised when a request targets a host outside the allowlist."""


def _allowed_hosts() -> Set[str]:
    hosts = set(get_settings().egress_hosts())
    if not hosts:
        hosts.update({"localhost", "127.0.0.1"})
    return hosts


def _verify_host(url: str) -> None:
    host = (urlparse(url).hostname or "").lower()
    if host not in _allowed_hosts():
        EGRESS_FAILURES.labels(reason="disallowed_host").inc()
        raise EgressBlockedError(f"Egress to host '{host}' is not permitted")


def secure_request(method: str, url: str, **kwargs: Any) -> requests.Response:
    """Dispatch a HTTP request enforcing TLS verification and allowlists."""

    _verify_host(url)
    kwargs.setdefault("timeout", get_settings().generation_timeout)
    kwargs.setdefault("verify", True)
    try:
        response = requests.request(method=method, url=url, **kwargs)
        response.raise_for_status()
        return response
    except requests.exceptions.SSLError:
        EGRESS_FAILURES.labels(reason="tls_failure").inc()
        raise
    except requests.exceptions.Timeout:
        EGRESS_FAILURES.labels(reason="timeout").inc()
        raise
    except requests.exceptions.RequestException:
        EGRESS_FAILURES.labels(reason="network_failure").inc()
        raise


def guard_payload(payload: Any, skip_keys: Optional[Iterable[str]] = None) -> None:
    """Run the firewall, recording and re-raising any block."""

    try:
        assert_no_phi(payload, skip_keys=skip_keys)
    except PHIDetectedError as exc:
        FIREWALL_BLOCKS.labels(reason=exc.reason).inc()
        logger.warning("egress.phi_blocked", reason=exc.reason, path=exc.path)
        raise


def send_clinical_payload(
    url: str,
    payload: Mapping[str, Any],
    *,
    skip_keys: Optional[Iterable[str]] = None,
    headers: Optional[Mapping[str, str]] = None,
    **kwargs: Any,
) -> requests.Response:
    """POST ``payload`` as JSON after it clears the firewall."""

    guard_payload(payload, skip_keys=skip_keys)
    logger.info("egress.dispatch", host=urlparse(url).hostname, **describe_payload(payload))
    return secure_request("POST", url, json=dict(payload), headers=dict(headers or {}), **kwargs)


__all__ = [
    "EgressBlockedError",
    "secure_request",
    "guard_payload",
    "send_clinical_payload",
]
