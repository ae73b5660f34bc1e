from __future__ import annotations

import ipaddress
import re
from typing import Dict, Optional

from sysauth.storage.models import DeviceInfo, GeoLocation

# Order matters: Edge and Opera also advertise Chrome, Chrome advertises Safari.
_BROWSER_PATTERNS = [
    ("Edge", re.compile(r"Edg(?:e|A|iOS)?/(\d+(?:\.\d+){0,2})")),
    ("Opera", re.compile(r"(?:OPR|Opera)/(\d+(?:\.\d+){0,2})")),
    ("Firefox", re.compile(r"(?:Firefox|FxiOS)/(\d+(?:\.\d+){0,2})")),
    ("Chrome", re.compile(r"(?:Chrome|CriOS)/(\d+(?:\.\d+){0,2})")),
    ("Safari", re.compile(r"Version/(\d+(?:\.\d+){0,2}).*Safari/")),
]

_OS_PATTERNS = [
    ("iOS", re.compile(r"(?:iPhone|iPad|iPod).*?OS (\d+(?:_\d+){0,2})")),
    ("Android", re.compile(r"Android (\d+(?:\.\d+){0,2})")),
    ("Windows", re.compile(r"Windows NT (\d+(?:\.\d+)?)")),
    ("Mac OS X", re.compile(r"Mac OS X (\d+(?:[_.]\d+){0,2})")),
    ("Chrome OS", re.compile(r"CrOS \S+ (\d+(?:\.\d+){0,2})")),
    ("Linux", re.compile(r"Linux()")),
]


def _device_type(user_agent: str) -> str:
    ua = user_agent.lower()
    if "ipad" in ua or "tablet" in ua:
        return "Tablet"
    if "mobile" in ua or "iphone" in ua or "android" in ua:
        return "Mobile"
    if "smart-tv" in ua or "smarttv" in ua:
        return "TV"
    if "bot" in ua or "crawler" in ua or "spider" in ua:
        return "Bot"
    if "windows" in ua or "macintosh" in ua or "linux" in ua or "cros" in ua:
        return "Desktop"
    return "Unknown"


class UserAgentParser:
    """Regex user-agent parser covering the mainstream browser families."""

    def parse(self, user_agent: Optional[str]) -> DeviceInfo:
        if not user_agent:
            return DeviceInfo()
        browser = browser_version = None
        for name, pattern in _BROWSER_PATTERNS:
            match = pattern.search(user_agent)
            if match:
                browser, browser_version = name, match.group(1)
                break
        os_name = os_version = None
        for name, pattern in _OS_PATTERNS:
            match = pattern.search(user_agent)
            if match:
                os_name = name
                os_version = match.group(1).replace("_", ".") or None
                break
        return DeviceInfo(
            browser=browser,
            browser_version=browser_version,
            operating_system=os_name,
            os_version=os_version,
            device_type=_device_type(user_agent),
        )


class StaticGeoLocator:
    """Resolve IPs from a fixed table; private and loopback ranges stay unknown."""

    def __init__(self, table: Optional[Dict[str, GeoLocation]] = None) -> None:
        self._table = dict(table or {})

    def register(self, ip_address: str, location: GeoLocation) -> None:
        self._table[ip_address] = location

    def locate(self, ip_address: Optional[str]) -> GeoLocation:
        if not ip_address:
            return GeoLocation()
        try:
            parsed = ipaddress.ip_address(ip_address)
        except ValueError:
            return GeoLocation()
        if parsed.is_private or parsed.is_loopback:
            return GeoLocation()
        return self._table.get(ip_address, GeoLocation())
