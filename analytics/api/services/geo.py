"""
Site Analytics — IP geolocation via IPinfo.io.

Best-effort only: every failure path returns None and the page view is
recorded without location data.
"""

import ipaddress
import logging

import aiohttp

from api.config import settings

logger = logging.getLogger(__name__)


def is_public_ip(ip: str | None) -> bool:
    if not ip:
        return False
    try:
        addr = ipaddress.ip_address(ip.strip())
    except ValueError:
        return False
    return addr.is_global


async def lookup_ip(ip: str | None) -> dict | None:
    """Return ``{"country_code", "region", "city", "timezone"}`` or None."""
    if not settings.geo_lookup_enabled or not is_public_ip(ip):
        return None

    url = f"{settings.ipinfo_url.rstrip('/')}/{ip}/json"
    params = {"token": settings.ipinfo_token} if settings.ipinfo_token else None
    try:
        timeout = aiohttp.ClientTimeout(total=settings.geo_timeout_secs)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.get(
                url, params=params, headers={"User-Agent": "Site-Analytics/1.0"},
            ) as resp:
                if resp.status != 200:
                    logger.warning("⚠️  IPinfo %s for %s", resp.status, ip)
                    return None
                raw = await resp.json(content_type=None)
    except Exception as e:
        logger.warning("⚠️  Geolocation failed for %s: %s", ip, e)
        return None

    if not isinstance(raw, dict) or not raw.get("country"):
        return None

    return {
        "country_code": raw["country"],
        "region": raw.get("region") or "Unknown",
        "city": raw.get("city") or "Unknown",
        "timezone": raw.get("timezone") or "Unknown",
    }
