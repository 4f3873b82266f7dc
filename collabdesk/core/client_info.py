"""
Client IP and device helpers for the public brand endpoints.

Device detection is a user-agent substring heuristic. It is best-effort
context for the signature audit trail and must not be treated as
authoritative.
"""
import hashlib
import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple

from fastapi import Request

from collabdesk.core.timeutil import utcnow

UNKNOWN_IP = "unknown"

_IPV4_PATTERN = re.compile(r"^(\d+\.\d+\.\d+)\.\d+$")


class DeviceType(str, Enum):
    MOBILE = "mobile"
    TABLET = "tablet"
    DESKTOP = "desktop"


class BrowserFamily(str, Enum):
    CHROME = "chrome"
    FIREFOX = "firefox"
    SAFARI = "safari"
    EDGE = "edge"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class RequestContext:
    """What the services need to know about the caller."""
    ip_address: str = UNKNOWN_IP
    user_agent: Optional[str] = None


def get_client_ip(request: Request) -> str:
    """X-Forwarded-For (first entry) > X-Real-IP > socket peer > "unknown"."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first

    real_ip = request.headers.get("x-real-ip")
    if real_ip and real_ip.strip():
        return real_ip.strip()

    if request.client and request.client.host:
        return request.client.host

    return UNKNOWN_IP


def get_request_context(request: Request) -> RequestContext:
    return RequestContext(
        ip_address=get_client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )


def hash_ip_address(ip: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
    """
    Return ``(hash, partial)`` for storage.

    hash: first 16 hex chars of SHA-256 of the raw IP.
    partial: IPv4 with the last octet masked, e.g. ``192.168.1.xxx``; None otherwise.
    """
    if not ip or ip == UNKNOWN_IP:
        return None, None

    match = _IPV4_PATTERN.match(ip)
    partial = f"{match.group(1)}.xxx" if match else None
    digest = hashlib.sha256(ip.encode("utf-8")).hexdigest()[:16]
    return digest, partial


def detect_device_type(user_agent: str) -> DeviceType:
    ua = user_agent.lower()
    if "ipad" in ua or "tablet" in ua:
        return DeviceType.TABLET
    if "mobile" in ua or "android" in ua or "iphone" in ua:
        return DeviceType.MOBILE
    return DeviceType.DESKTOP


def detect_browser(user_agent: str) -> BrowserFamily:
    ua = user_agent.lower()
    is_edge = "edg" in ua
    if is_edge:
        return BrowserFamily.EDGE
    if "firefox" in ua or "fxios" in ua:
        return BrowserFamily.FIREFOX
    if "chrome" in ua or "crios" in ua:
        return BrowserFamily.CHROME
    if "safari" in ua:
        return BrowserFamily.SAFARI
    return BrowserFamily.UNKNOWN


def get_device_info(user_agent: Optional[str]) -> dict:
    """Closed-vocabulary device summary stored alongside a signature."""
    ua = user_agent or ""
    return {
        "user_agent": ua or None,
        "type": detect_device_type(ua).value,
        "browser": detect_browser(ua).value,
        "timestamp": utcnow().isoformat(),
    }
