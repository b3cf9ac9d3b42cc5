from __future__ import annotations

import re
from ipaddress import ip_address
from typing import Optional, Tuple

import httpx

from authsession.logging import get_logger
from authsession.storage.models import DeviceInfo

logger = get_logger(__name__)

UNKNOWN = "Unknown"

# Order matters: Edge and Opera carry "Chrome", Chrome carries "Safari"
_BROWSER_PATTERNS: Tuple[Tuple[str, re.Pattern], ...] = (
    ("Edge", re.compile(r"Edg(?:e|A|iOS)?/([\d.]+)")),
    ("Opera", re.compile(r"(?:OPR|Opera)/([\d.]+)")),
    ("Samsung Browser", re.compile(r"SamsungBrowser/([\d.]+)")),
    ("Firefox", re.compile(r"(?:Firefox|FxiOS)/([\d.]+)")),
    ("Chrome", re.compile(r"(?:Chrome|CriOS)/([\d.]+)")),
    ("Safari", re.compile(r"Version/([\d.]+).*Safari/")),
    ("curl", re.compile(r"curl/([\d.]+)")),
)

_OS_PATTERNS: Tuple[Tuple[str, re.Pattern], ...] = (
    ("Windows", re.compile(r"Windows NT ([\d.]+)")),
    ("iOS", re.compile(r"(?:iPhone|iPad|iPod).*? OS ([\d_]+)")),
    ("Mac OS", re.compile(r"Mac OS X ([\d_.]+)")),
    ("Android", re.compile(r"Android ([\d.]+)")),
    ("Chrome OS", re.compile(r"CrOS \S+ ([\d.]+)")),
    ("Linux", re.compile(r"Linux()")),
)

_TABLET_RE = re.compile(r"iPad|Tablet", re.IGNORECASE)
_MOBILE_RE = re.compile(r"Mobi|iPhone|iPod|Android.*Mobile|Windows Phone", re.IGNORECASE)


def _match(patterns, user_agent: str) -> str:
    for name, pattern in patterns:
        found = pattern.search(user_agent)
        if found:
            version = (found.group(1) or "").replace("_", ".")
            return f"{name} {version}".strip()
    return UNKNOWN


def parse_user_agent(user_agent: Optional[str]) -> Tuple[str, str, str]:
    """Return ``(browser, os, device_type)`` for a User-Agent header.

    Browser and OS read "Name version"; device type is Mobile, Tablet or
    the Desktop default.
    """
    if not user_agent:
        return UNKNOWN, UNKNOWN, "Desktop"
    browser = _match(_BROWSER_PATTERNS, user_agent)
    os_name = _match(_OS_PATTERNS, user_agent)
    # iPads also send "Mobile/", so tablets are checked first
    if _TABLET_RE.search(user_agent) or (
        "Android" in user_agent and "Mobile" not in user_agent
    ):
        device_type = "Tablet"
    elif _MOBILE_RE.search(user_agent):
        device_type = "Mobile"
    else:
        device_type = "Desktop"
    return browser, os_name, device_type


def _is_public_ip(raw_ip: str) -> bool:
    try:
        addr = ip_address(raw_ip)
    except ValueError:
        return False
    return not (addr.is_private or addr.is_loopback or addr.is_reserved or addr.is_link_local)


class IPLocator:
    """Resolve "City, Country" for an IP through the ip-api.com JSON endpoint.

    Lookups never raise; any failure yields ``Unknown``.
    """

    BASE_URL = "http://ip-api.com/json"

    def __init__(
        self,
        *,
        timeout: float = 2.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.timeout = timeout
        self._transport = transport

    async def locate(self, raw_ip: str) -> str:
        if not raw_ip or not _is_public_ip(raw_ip):
            return UNKNOWN
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self._transport
            ) as client:
                resp = await client.get(
                    f"{self.BASE_URL}/{raw_ip}",
                    params={"fields": "status,country,regionName,city"},
                )
                resp.raise_for_status()
                data = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("geolocation_lookup_failed", ip=raw_ip, error=str(exc))
            return UNKNOWN
        if data.get("status") != "success":
            return UNKNOWN
        country = data.get("country") or UNKNOWN
        return f"{data.get('city') or UNKNOWN}, {country}"


async def describe_device(
    user_agent: Optional[str],
    ip: str,
    locator: Optional[IPLocator] = None,
) -> DeviceInfo:
    browser, os_name, device_type = parse_user_agent(user_agent)
    location = await locator.locate(ip) if locator else UNKNOWN
    return DeviceInfo(
        browser=browser,
        os=os_name,
        device_type=device_type,
        ip_address=ip or "",
        location=location,
    )
