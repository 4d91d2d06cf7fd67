"""Full-OUI vendor resolution for devices found by the subnet sweep.

Router adapters usually report a vendor, and the static table in
``fingerprint`` covers the common prefixes; this lookup is only consulted
when both are silent. It may read (and on first use download) the IEEE OUI
list, so it stays off the fingerprint hot path and every call is bounded
by a timeout.
"""

from __future__ import annotations

import asyncio
import logging

from mac_vendor_lookup import AsyncMacLookup, VendorNotFoundError

logger = logging.getLogger(__name__)

_lookup_instance: AsyncMacLookup | None = None


def _get_lookup() -> AsyncMacLookup:
    """Lazily create the shared OUI lookup."""
    global _lookup_instance
    if _lookup_instance is None:
        _lookup_instance = AsyncMacLookup()
    return _lookup_instance


async def lookup_vendor(mac: str, timeout: float = 10.0) -> str | None:
    """Resolve a MAC address to its vendor/manufacturer name.

    Returns None if the vendor is unknown, the OUI database is unavailable,
    or the lookup does not finish within ``timeout`` seconds.
    """
    try:
        result = await asyncio.wait_for(_get_lookup().lookup(mac), timeout=timeout)
        return result if result else None
    except VendorNotFoundError:
        return None
    except asyncio.TimeoutError:
        logger.warning("Vendor lookup for %s timed out after %.0fs", mac, timeout)
        return None
    except Exception as exc:
        logger.debug("Vendor lookup failed for %s: %s", mac, exc)
        return None
