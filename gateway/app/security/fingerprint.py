"""Passive device fingerprinting for abuse mitigation.

The fingerprint identifies a client instance for rate limiting only. It is
never an authentication signal.
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import Request
from slowapi.util import get_remote_address  # type: ignore[import]

from gateway.app import config

logger = logging.getLogger("security.fingerprint")

UNKNOWN_FINGERPRINT = "unknown"
FINGERPRINT_LENGTH = 32


@dataclass(frozen=True)
class DeviceInfo:
    fingerprint: str
    ip: str
    user_agent: str = ""
    language: str = ""
    encoding: str = ""

    @property
    def is_known(self) -> bool:
        return self.fingerprint != UNKNOWN_FINGERPRINT


def resolve_client_ip(request: Request) -> str:
    if config.TRUST_PROXY_HEADERS:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            # A comma-separated chain of IPs may be present; use the originating address.
            return forwarded.split(",")[0].strip()
    return get_remote_address(request)


def compute_fingerprint(user_agent: str, accept_language: str, accept_encoding: str, ip: str) -> str:
    material = f"{user_agent}|{accept_language}|{accept_encoding}|{ip}"
    return hashlib.sha256(material.encode("utf-8")).hexdigest()[:FINGERPRINT_LENGTH]


def fingerprint_request(request: Request) -> DeviceInfo:
    ip: Optional[str] = None
    try:
        ip = resolve_client_ip(request)
        user_agent = request.headers.get("user-agent", "")
        language = request.headers.get("accept-language", "")
        encoding = request.headers.get("accept-encoding", "")
        return DeviceInfo(
            fingerprint=compute_fingerprint(user_agent, language, encoding, ip),
            ip=ip,
            user_agent=user_agent,
            language=language.split(",")[0].strip(),
            encoding=encoding,
        )
    except Exception:  # any failure degrades to the IP-only path
        logger.exception(
            "Device fingerprint failed",
            extra={"json_fields": {"context": "device_fingerprint"}},
        )
        return DeviceInfo(fingerprint=UNKNOWN_FINGERPRINT, ip=ip or "unknown")


__all__ = [
    "DeviceInfo",
    "FINGERPRINT_LENGTH",
    "UNKNOWN_FINGERPRINT",
    "compute_fingerprint",
    "fingerprint_request",
    "resolve_client_ip",
]
