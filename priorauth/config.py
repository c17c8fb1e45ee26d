"""Environment-driven settings for the PHI boundary pipeline."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from functools import lru_cache
from typing import FrozenSet, Optional
from urllib.parse import urlparse

DEFAULT_GENERATOR_VERSION = "phi-scrubber-2.1"
DEFAULT_GENERATION_TIMEOUT = 90.0


@dataclass(frozen=True)
class PipelineSettings:
    """Resolved configuration for packet generation and remote egress."""

    generator_version: str = DEFAULT_GENERATOR_VERSION
    generation_url: Optional[str] = None
    generation_timeout: float = DEFAULT_GENERATION_TIMEOUT
    api_key: Optional[str] = None
    allowed_hosts: FrozenSet[str] = field(default_factory=frozenset)
    log_level: str = "INFO"

    def egress_hosts(self) -> FrozenSet[str]:
        """Hosts the egress layer may contact, including the generation host."""

        hosts = set(self.allowed_hosts)
        if self.generation_url:
            parsed = urlparse(self.generation_url)
            if parsed.hostname:
                hosts.add(parsed.hostname.lower())
        return frozenset(hosts)


def _get_float_env(name: str) -> Optional[float]:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return None
    try:
        value = float(raw)
    except ValueError as exc:
        raise ValueError(f"Environment variable {name} must be a number") from exc
    if value <= 0:
        raise ValueError(f"Environment variable {name} must be positive")
    return value


def _get_hosts_env(name: str) -> FrozenSet[str]:
    raw = os.getenv(name) or ""
    return frozenset(host.strip().lower() for host in raw.split(",") if host.strip())


@lru_cache(maxsize=1)
def get_settings() -> PipelineSettings:
    """Return the cached pipeline settings resolved from the environment."""

    timeout = _get_float_env("PRIORAUTH_GENERATION_TIMEOUT")
    return PipelineSettings(
        generator_version=os.getenv("PRIORAUTH_GENERATOR_VERSION") or DEFAULT_GENERATOR_VERSION,
        generation_url=os.getenv("PRIORAUTH_GENERATION_URL") or None,
        generation_timeout=timeout if timeout is not None else DEFAULT_GENERATION_TIMEOUT,
        api_key=os.getenv("PRIORAUTH_API_KEY") or None,
        allowed_hosts=_get_hosts_env("PRIORAUTH_ALLOWED_EGRESS_HOSTS"),
        log_level=(os.getenv("LOG_LEVEL") or "INFO").upper(),
    )


__all__ = ["PipelineSettings", "get_settings", "DEFAULT_GENERATOR_VERSION"]
