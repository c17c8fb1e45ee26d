"""End-to-end letter generation across the PHI boundary.

The flow is: de-identify the cached record, check the packet and the full
request envelope with the firewall, hand the envelope to a
:class:`TemplateGenerator`, then fill the returned template locally and report
what could not be filled. A :class:`~priorauth.firewall.PHIDetectedError`
aborts the whole call; it is logged and counted, never swallowed.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Protocol, Union

import structlog
from pydantic import BaseModel, ConfigDict, Field, field_validator
from structlog.contextvars import bind_contextvars, unbind_contextvars

from priorauth.config import get_settings
from priorauth.deid import deidentify, sanitize_free_text, select_coverage, select_request
from priorauth.egress import guard_payload, send_clinical_payload
from priorauth.models import (
    DeidentifiedPacket,
    Facility,
    LocalClinicalRecord,
    ParentLetter,
    PHIReinsertionContext,
    Provider,
    coerce_context,
    coerce_record,
)
from priorauth.observability import DOCUMENTS_FILLED
from priorauth.placeholders import extract_unfilled_placeholders, has_placeholders, scan_placeholders
from priorauth.reinsert import looks_like_document, reinsert_phi, validate_context
from priorauth.sanitizer import sanitize_text
from priorauth.security import log_identifiers

logger = structlog.get_logger(__name__)

# Root-level keys that are administrative rather than clinical.
ENVELOPE_SKIP_KEYS = frozenset({"facility_id"})
PACKET_SKIP_KEYS = frozenset({"facility_id"})

DENIAL_REASON_MAX_LEN = 200
RESPONSE_TEXT_FIELDS = ("text", "output", "message", "reply", "content")

RecordLike = Union[LocalClinicalRecord, Mapping[str, Any]]


class AppealSummary(BaseModel):
    model_config = ConfigDict(extra="forbid")

    denial_reason: Optional[str] = None
    denial_code: Optional[str] = None

    @field_validator("denial_reason", mode="before")
    @classmethod
    def _sanitize_reason(cls, value: Any) -> Optional[str]:  # noqa: N805
        text = sanitize_free_text(value, DENIAL_REASON_MAX_LEN)
        return text or None


class GenerationRequest(BaseModel):
    """Envelope POSTed to the generation service."""

    model_config = ConfigDict(extra="forbid")

    facility_id: str
    case_id: str
    intent: str = "prior_auth_letter"
    message: str = ""
    letter_type: str = "initial"
    template_key: Optional[str] = None
    policy_key: Optional[str] = None
    non_phi_packet: DeidentifiedPacket
    appeal: Optional[AppealSummary] = None
    file_ids: List[str] = Field(default_factory=list)

    def to_payload(self) -> Dict[str, Any]:
        data = self.model_dump(mode="json")
        return {key: value for key, value in data.items() if value is not None}


class TemplateGenerator(Protocol):
    def generate(self, envelope: Mapping[str, Any]) -> str:
        ...


def _extract_text(body: Any) -> str:
    if isinstance(body, str):
        return body
    if isinstance(body, Mapping):
        for name in RESPONSE_TEXT_FIELDS:
            value = body.get(name)
            if isinstance(value, str) and value.strip():
                return value
    return ""


class RemoteTemplateGenerator:
    """Template generator backed by the remote HTTP generation endpoint."""

    def __init__(
        self,
        url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> None:
        settings = get_settings()
        self.url = url or settings.generation_url
        self.api_key = api_key if api_key is not None else settings.api_key
        self.timeout = timeout or settings.generation_timeout
        if not self.url:
            raise ValueError("PRIORAUTH_GENERATION_URL is not configured")

    def generate(self, envelope: Mapping[str, Any]) -> str:
        headers = {"Accept": "application/json, text/plain"}
        if self.api_key:
            headers["X-API-Key"] = self.api_key
        response = send_clinical_payload(
            self.url,
            envelope,
            skip_keys=ENVELOPE_SKIP_KEYS,
            headers=headers,
            timeout=self.timeout,
        )
        content_type = (response.headers.get("content-type") or "").lower()
        if "json" in content_type:
            return _extract_text(response.json())
        return response.text


def build_case_packet(
    facility_id: str,
    record: RecordLike,
    *,
    service_key: Optional[str] = None,
    payer_key: Optional[str] = None,
    requested_units: Optional[float] = None,
    request_id: Optional[str] = None,
    coverage_id: Optional[str] = None,
    now: Union[date, datetime, None] = None,
) -> DeidentifiedPacket:
    """De-identify ``record`` and confirm the result clears the firewall."""

    packet = deidentify(
        facility_id,
        record,
        service_key,
        payer_key,
        requested_units,
        request_id=request_id,
        coverage_id=coverage_id,
        now=now,
    )
    guard_payload(packet.to_payload(), skip_keys=PACKET_SKIP_KEYS)
    return packet


def build_envelope(
    packet: DeidentifiedPacket,
    *,
    message: str = "",
    letter_type: str = "initial",
    parent_letter: Optional[ParentLetter] = None,
    template_key: Optional[str] = None,
    policy_key: Optional[str] = None,
    file_ids: Iterable[str] = (),
) -> GenerationRequest:
    appeal = None
    if parent_letter is not None and (parent_letter.denial_reason or parent_letter.denial_code):
        appeal = AppealSummary(
            denial_reason=parent_letter.denial_reason,
            denial_code=parent_letter.denial_code,
        )
    return GenerationRequest(
        facility_id=packet.facility_id,
        case_id=packet.case_id,
        message=message,
        letter_type=letter_type,
        template_key=template_key,
        policy_key=policy_key,
        non_phi_packet=packet,
        appeal=appeal,
        file_ids=list(file_ids),
    )


def build_reinsertion_context(
    record: RecordLike,
    facility: Union[Facility, Mapping[str, Any], None] = None,
    provider: Union[Provider, Mapping[str, Any], None] = None,
    *,
    request_id: Optional[str] = None,
    coverage_id: Optional[str] = None,
) -> PHIReinsertionContext:
    """Assemble the local fill context using the same selection as the packet."""

    local = coerce_record(record)
    return coerce_context(
        {
            "patient": local.patient,
            "facility": facility,
            "coverage": select_coverage(local, coverage_id),
            "request": select_request(local, request_id),
            "provider": provider,
            "parent_letter": local.parent_letter,
            "problems": local.problems,
            "therapies": local.therapies,
            "imaging": local.imaging,
            "encounters": local.encounters,
            "med_trials": local.med_trials,
            "requests": local.requests,
            "coverage_all": local.coverage_all,
        }
    )


@dataclass
class FilledDocument:
    text: str
    reinserted: bool
    unfilled: List[str] = field(default_factory=list)
    unknown: List[str] = field(default_factory=list)
    context_missing: List[str] = field(default_factory=list)

    @property
    def needs_review(self) -> bool:
        return bool(self.unfilled or self.context_missing)


def fill_document(
    template: Optional[str],
    context: Union[PHIReinsertionContext, Mapping[str, Any]],
    today: Optional[date] = None,
) -> FilledDocument:
    """Fill ``template`` locally and report anything left for manual review."""

    ctx = coerce_context(context)
    text = sanitize_text(template)
    reinserted = False
    if looks_like_document(text) and has_placeholders(text):
        text = reinsert_phi(text, ctx, today)
        reinserted = True

    scan = scan_placeholders(text)
    validation = validate_context(ctx)
    document = FilledDocument(
        text=text,
        reinserted=reinserted,
        unfilled=extract_unfilled_placeholders(text),
        unknown=list(scan.unknown),
        context_missing=list(validation.missing),
    )
    status = "review" if document.needs_review else ("filled" if reinserted else "passthrough")
    DOCUMENTS_FILLED.labels(status=status).inc()
    if document.needs_review:
        logger.warning(
            "reinsert.needs_review",
            unfilled=len(document.unfilled),
            unknown=len(document.unknown),
            context_missing=document.context_missing,
        )
    return document


@dataclass
class GeneratedLetter:
    case_id: str
    packet: DeidentifiedPacket
    document: FilledDocument


def generate_letter(
    facility_id: str,
    record: RecordLike,
    generator: TemplateGenerator,
    *,
    message: str = "",
    letter_type: str = "initial",
    facility: Union[Facility, Mapping[str, Any], None] = None,
    provider: Union[Provider, Mapping[str, Any], None] = None,
    service_key: Optional[str] = None,
    payer_key: Optional[str] = None,
    requested_units: Optional[float] = None,
    request_id: Optional[str] = None,
    coverage_id: Optional[str] = None,
    template_key: Optional[str] = None,
    policy_key: Optional[str] = None,
    file_ids: Iterable[str] = (),
    now: Union[date, datetime, None] = None,
) -> GeneratedLetter:
    """Run one generation: packet, firewall, remote template, local fill."""

    local = coerce_record(record)
    packet = build_case_packet(
        facility_id,
        local,
        service_key=service_key,
        payer_key=payer_key,
        requested_units=requested_units,
        request_id=request_id,
        coverage_id=coverage_id,
        now=now,
    )
    bind_contextvars(case_id=packet.case_id)
    try:
        logger.info(
            "pipeline.packet_ready",
            letter_type=letter_type,
            **log_identifiers(patient=local.patient.patient_id),
        )
        envelope = build_envelope(
            packet,
            message=message,
            letter_type=letter_type,
            parent_letter=local.parent_letter,
            template_key=template_key,
            policy_key=policy_key,
            file_ids=file_ids,
        ).to_payload()
        guard_payload(envelope, skip_keys=ENVELOPE_SKIP_KEYS)

        template = generator.generate(envelope)

        context = build_reinsertion_context(
            local,
            facility,
            provider,
            request_id=request_id,
            coverage_id=coverage_id,
        )
        today = now.date() if isinstance(now, datetime) else now
        document = fill_document(template, context, today)
        logger.info(
            "pipeline.letter_ready",
            reinserted=document.reinserted,
            needs_review=document.needs_review,
        )
        return GeneratedLetter(case_id=packet.case_id, packet=packet, document=document)
    finally:
        unbind_contextvars("case_id")


__all__ = [
    "AppealSummary",
    "GenerationRequest",
    "TemplateGenerator",
    "RemoteTemplateGenerator",
    "build_case_packet",
    "build_envelope",
    "build_reinsertion_context",
    "FilledDocument",
    "fill_document",
    "GeneratedLetter",
    "generate_letter",
]
