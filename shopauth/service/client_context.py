from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from fastapi import Request

USER_AGENT_MAX_LENGTH = 100

# Checked in order; the first usable value wins
PROXY_IP_HEADERS = (
    "X-Forwarded-For",
    "Proxy-Client-IP",
    "WL-Proxy-Client-IP",
    "HTTP_X_FORWARDED_FOR",
)

_BROWSERS = (
    ("Edg/", "Edge"),
    ("OPR/", "Opera"),
    ("Firefox/", "Firefox"),
    ("Chrome/", "Chrome"),
    ("Safari/", "Safari"),
)
_PLATFORMS = (
    ("Windows", "Windows"),
    ("Android", "Android"),
    ("iPhone", "iOS"),
    ("iPad", "iOS"),
    ("Mac OS X", "macOS"),
    ("Linux", "Linux"),
)


def device_label(user_agent: Optional[str]) -> str:
    """Short human-readable device name, e.g. ``Chrome on Windows``."""
    if not user_agent:
        return "Unknown device"
    browser = next((name for marker, name in _BROWSERS if marker in user_agent), None)
    platform = next((name for marker, name in _PLATFORMS if marker in user_agent), None)
    if browser and platform:
        return f"{browser} on {platform}"
    return browser or platform or user_agent[:USER_AGENT_MAX_LENGTH]


def client_ip(request: Request, *, trust_proxy_headers: bool = True) -> Optional[str]:
    """Originating client address.

    With proxy headers trusted, the leftmost address of the first non-blank,
    non-"unknown" header is used; appended hops are ignored.
    """
    if trust_proxy_headers:
        for header in PROXY_IP_HEADERS:
            value = request.headers.get(header)
            if value and value.strip() and value.strip().lower() != "unknown":
                return value.split(",")[0].strip()
    return request.client.host if request.client else None


@dataclass(frozen=True)
class ClientContext:
    """Client metadata attached to a session and to security events."""

    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    device_name: Optional[str] = None

    @classmethod
    def from_request(
        cls, request: Request, *, trust_proxy_headers: bool = True
    ) -> "ClientContext":
        return cls.build(
            client_ip(request, trust_proxy_headers=trust_proxy_headers),
            request.headers.get("User-Agent"),
        )

    @classmethod
    def build(cls, ip_address: Optional[str], user_agent: Optional[str]) -> "ClientContext":
        return cls(
            ip_address=ip_address,
            user_agent=user_agent[:USER_AGENT_MAX_LENGTH] if user_agent else None,
            device_name=device_label(user_agent),
        )
