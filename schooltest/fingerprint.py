import hashlib
import ipaddress
import logging
from typing import List, Mapping, Optional

import httpx

from schooltest.schemas import DeviceSignals

logger = logging.getLogger(__name__)

COMPONENT_SEPARATOR = "|||"

_EMPTY_SIGNALS = DeviceSignals().model_dump(exclude={"ip"})


def _js(value) -> str:
    """Format a value the way the browser stringifies it"""
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "null"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def fingerprint_components(signals: DeviceSignals) -> List[str]:
    return [
        f"{signals.screen_width}x{signals.screen_height}x{signals.color_depth}",
        f"{signals.avail_width}x{signals.avail_height}",
        f"dpr:{_js(signals.pixel_ratio)}",
        signals.timezone,
        str(signals.timezone_offset),
        signals.language,
        ",".join(signals.languages),
        signals.platform or "unknown",
        signals.user_agent,
        _js(signals.hardware_concurrency) if signals.hardware_concurrency else "unknown",
        _js(signals.device_memory) if signals.device_memory else "unknown",
        ",".join(signals.plugins) or "no-plugins",
        f"touch:{signals.max_touch_points}",
        signals.canvas,
        signals.webgl,
        signals.audio,
        f"ls:{_js(signals.local_storage)}",
        f"ss:{_js(signals.session_storage)}",
        f"idb:{_js(signals.indexed_db)}",
        f"dnt:{_js(signals.do_not_track)}",
        f"cookie:{_js(signals.cookie_enabled)}",
        f"ip:{signals.ip}",
    ]


def build_fingerprint(signals: DeviceSignals) -> str:
    """SHA-256 hex digest of the joined device components"""
    raw = COMPONENT_SEPARATOR.join(fingerprint_components(signals))
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def device_signal_key(signals: DeviceSignals) -> Optional[str]:
    """
    Coarse key (screen size, timezone, cores) shared by many devices of one model.
    None when the client reported none of them.
    """
    if not (signals.screen_width or signals.screen_height or signals.timezone or signals.hardware_concurrency):
        return None
    return f"{signals.screen_width}x{signals.screen_height}|{signals.timezone}|{signals.hardware_concurrency}"


def has_device_signals(signals: DeviceSignals) -> bool:
    """True when anything besides the IP differs from an empty report"""
    return signals.model_dump(exclude={"ip"}) != _EMPTY_SIGNALS


def client_ip(headers: Mapping[str, str], client_host: Optional[str] = None) -> str:
    forwarded = headers.get("x-forwarded-for") or headers.get("X-Forwarded-For") or ""
    first_hop = forwarded.split(",")[0].strip()
    return first_hop or (client_host or "")


def is_public_ip(value: str) -> bool:
    """False for private, loopback and link-local addresses and for anything unparsable"""
    try:
        return ipaddress.ip_address(value).is_global
    except ValueError:
        return False


async def lookup_ip(url: str, timeout: float = 2.0) -> str:
    """
    Ask an external service for the caller's public IP.
    Best effort only: any failure (timeout, HTTP error, odd payload) gives "".
    """
    if not url:
        return ""
    try:
        async with httpx.AsyncClient(timeout=timeout) as client:
            response = await client.get(url)
            response.raise_for_status()
            if "json" in response.headers.get("content-type", ""):
                ip = response.json().get("ip", "")
            else:
                ip = response.text
        return str(ip).strip()
    except Exception as e:
        logger.warning(f"IP lookup via {url} failed: {e}")
        return ""
