from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

# First match wins, so Edge user agents (which also mention Chrome) report Chrome
_BROWSERS = ("Chrome", "Firefox", "Safari", "Edge", "Opera")
# Mobile markers first: Android UAs also say "Linux", iOS UAs say "Mac OS X"
_OPERATING_SYSTEMS = (
    ("Windows", "Windows"),
    ("Android", "Android"),
    ("iPhone", "iOS"),
    ("iPad", "iOS"),
    ("iOS", "iOS"),
    ("Mac", "macOS"),
    ("Linux", "Linux"),
)


def extract_browser(user_agent: str) -> str:
    for browser in _BROWSERS:
        if browser in user_agent:
            return browser
    return "Unknown Browser"


def extract_os(user_agent: str) -> str:
    for marker, name in _OPERATING_SYSTEMS:
        if marker in user_agent:
            return name
    return "Unknown OS"


@dataclass(frozen=True)
class DeviceFingerprint:
    """Identity of the client presenting credentials.

    Two fingerprints are equal iff their ``device_id`` values are equal. The id
    is derived from the user agent together with the source IP, so a client
    whose address changes (mobile networks, NAT pools) is seen as a new device
    and loses its trusted status.
    """

    device_id: str
    browser: str = field(compare=False)
    os: str = field(compare=False)
    ip: Optional[str] = field(default=None, compare=False)
    location: Optional[str] = field(default=None, compare=False)
    user_agent: str = field(default="", compare=False, repr=False)

    @classmethod
    def from_request(
        cls,
        user_agent: Optional[str],
        ip: Optional[str],
        location: Optional[str] = None,
    ) -> "DeviceFingerprint":
        ua = user_agent or ""
        device_id = hashlib.sha256(f"{ua}{ip or ''}".encode()).hexdigest()
        return cls(
            device_id=device_id,
            browser=extract_browser(ua),
            os=extract_os(ua),
            ip=ip,
            location=location,
            user_agent=ua,
        )

    @property
    def device_name(self) -> str:
        return f"{self.browser} on {self.os}"

    def session_fields(self) -> Dict[str, Any]:
        return {
            "device_id": self.device_id,
            "device_name": self.device_name,
            "browser": self.browser,
            "os": self.os,
            "ip": self.ip,
            "location": self.location,
        }
