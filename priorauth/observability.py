"""Structured logging setup and pipeline counters."""

from __future__ import annotations

import logging
from typing import Optional

import structlog
from prometheus_client import Counter

PACKETS_BUILT = Counter(
    "priorauth_packets_built_total",
    "De-identified packets produced for remote generation",
)

FIREWALL_BLOCKS = Counter(
    "priorauth_firewall_blocks_total",
    "Outbound payloads rejected by the PHI firewall",
    ("reason",),
)

FREE_TEXT_DROPPED = Counter(
    "priorauth_free_text_dropped_total",
    "Free-text fields discarded because labeled PHI survived redaction",
)

DOCUMENTS_FILLED = Counter(
    "priorauth_documents_filled_total",
    "Returned templates processed by local reinsertion",
    ("status",),
)

EGRESS_FAILURES = Counter(
    "priorauth_egress_failures_total",
    "Outbound HTTP calls blocked or failed security checks",
    ("reason",),
)


def configure_logging(level: Optional[str] = None) -> None:
    """Route stdlib logging through structlog's JSON renderer."""

    if level is None:
        from priorauth.config import get_settings

        level = get_settings().log_level
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format="%(message)s")
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


__all__ = [
    "PACKETS_BUILT",
    "FIREWALL_BLOCKS",
    "FREE_TEXT_DROPPED",
    "DOCUMENTS_FILLED",
    "EGRESS_FAILURES",
    "configure_logging",
]
