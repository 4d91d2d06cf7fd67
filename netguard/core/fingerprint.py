"""Device fingerprinting from the hardware-address prefix.

Everything here is pure: a static OUI table, string normalization and
keyword matching. No network or disk access, so ``identify`` can be called
for every row of a device list.
"""

from __future__ import annotations

import re
from functools import lru_cache

from netguard.core.errors import InvalidTargetError
from netguard.core.models import Confidence, DeviceCategory, Fingerprint

UNKNOWN_VENDOR = "Unknown Vendor"
UNKNOWN_DEVICE = "Unknown Device"

_MAC_RE = re.compile(r"^[0-9A-F]{1,2}(:[0-9A-F]{1,2}){5}$")
_BARE_MAC_RE = re.compile(r"^[0-9A-F]{12}$")

# (vendor, device type, icon) keyed by the first three octets
_OUI_TABLE: dict[str, tuple[str, str, str]] = {
    # Apple
    "00:1A:2B": ("Apple", "iPhone/iPad/Mac", "📱"),
    "A4:C3:F0": ("Apple", "iPhone", "📱"),
    "F0:18:98": ("Apple", "MacBook", "💻"),
    "3C:22:FB": ("Apple", "Apple Device", "🍎"),
    # Samsung
    "00:16:32": ("Samsung", "Samsung Device", "📱"),
    "8C:77:12": ("Samsung", "Samsung Phone", "📱"),
    "CC:07:AB": ("Samsung", "Samsung TV", "📺"),
    # Huawei
    "00:E0:FC": ("Huawei", "Huawei Router", "📡"),
    "48:DB:50": ("Huawei", "Huawei Device", "📱"),
    "28:31:52": ("Huawei", "Huawei Router", "📡"),
    # Xiaomi
    "28:6C:07": ("Xiaomi", "Xiaomi Device", "📱"),
    "F8:A4:5F": ("Xiaomi", "Xiaomi Phone", "📱"),
    # Dell
    "00:14:22": ("Dell", "Dell Computer", "💻"),
    "14:FE:B5": ("Dell", "Dell Laptop", "💻"),
    # HP
    "00:1F:29": ("HP", "HP Computer", "💻"),
    "3C:D9:2B": ("HP", "HP Printer", "🖨️"),
    # Cisco
    "00:1B:54": ("Cisco", "Cisco Switch", "🔀"),
    "00:0F:23": ("Cisco", "Cisco Router", "📡"),
    "00:05:69": ("Cisco", "Network Device", "📡"),
    # TP-Link
    "50:C7:BF": ("TP-Link", "TP-Link Router", "📡"),
    "14:CC:20": ("TP-Link", "TP-Link Device", "📡"),
    # Netgear
    "00:14:6C": ("Netgear", "Netgear Router", "📡"),
    "A0:21:B7": ("Netgear", "Netgear Device", "📡"),
    # Raspberry Pi
    "B8:27:EB": ("Raspberry Pi", "Raspberry Pi", "🖥️"),
    "DC:A6:32": ("Raspberry Pi", "Raspberry Pi", "🖥️"),
    # Amazon
    "FC:65:DE": ("Amazon", "Amazon Echo/Fire", "🔊"),
    "74:C2:46": ("Amazon", "Amazon Device", "📦"),
    # Google
    "F4:F5:D8": ("Google", "Google Device", "🔊"),
    "54:60:09": ("Google", "Chromecast", "📺"),
    # Sony
    "00:1A:80": ("Sony", "Sony PlayStation", "🎮"),
    "AC:9B:0A": ("Sony", "Sony Device", "📺"),
    # Nintendo
    "00:19:FD": ("Nintendo", "Nintendo Switch", "🎮"),
    "98:B6:E9": ("Nintendo", "Nintendo Device", "🎮"),
    # Microsoft / virtual machines
    "00:50:F2": ("Microsoft", "Windows Device", "💻"),
    "00:0C:29": ("VMware", "Virtual Machine", "🖥️"),
    "08:00:27": ("Oracle VirtualBox", "Virtual Machine", "🖥️"),
    "52:54:00": ("QEMU", "Virtual Machine", "🖥️"),
}

# Checked in order; first matching keyword wins.
_CATEGORY_KEYWORDS: list[tuple[DeviceCategory, tuple[str, ...]]] = [
    (DeviceCategory.PHONE, ("phone", "iphone", "android")),
    (DeviceCategory.TABLET, ("ipad", "tablet")),
    (DeviceCategory.GAMING, ("playstation", "xbox", "nintendo")),
    (DeviceCategory.COMPUTER, ("mac", "laptop", "computer", "pc", "windows", "virtual machine")),
    (DeviceCategory.ROUTER, ("router", "switch", "gateway", "network device")),
    (DeviceCategory.TV, ("tv", "chromecast", "fire")),
    (DeviceCategory.PRINTER, ("printer",)),
    (DeviceCategory.IOT, ("echo", "raspberry", "iot", "camera")),
]


def canonical_mac(mac: str, *, strict: bool = False) -> str:
    """Normalize a MAC address to uppercase colon-separated form.

    Accepts ``-`` or ``.`` separators and bare 12-digit strings. With
    ``strict`` a malformed address raises :class:`InvalidTargetError`;
    otherwise the best-effort normalization is returned.
    """
    value = mac.strip().upper().replace("-", ":")
    if "." in value and ":" not in value:
        value = value.replace(".", "")
    if _BARE_MAC_RE.match(value):
        value = ":".join(value[i:i + 2] for i in range(0, 12, 2))
    if _MAC_RE.match(value):
        return ":".join(p.zfill(2) for p in value.split(":"))
    if strict:
        raise InvalidTargetError(f"Invalid MAC address: {mac!r}")
    return value


def categorize(device_type: str) -> DeviceCategory:
    """Derive a coarse category from a device-type label."""
    lower = device_type.lower()
    for category, keywords in _CATEGORY_KEYWORDS:
        if any(k in lower for k in keywords):
            return category
    return DeviceCategory.UNKNOWN


@lru_cache(maxsize=4096)
def identify(mac: str) -> Fingerprint:
    """Best-guess vendor, device type and category for a hardware address."""
    if not mac or not mac.strip():
        return Fingerprint(
            mac="",
            vendor="Unknown",
            device_type=UNKNOWN_DEVICE,
            icon="❓",
            confidence=Confidence.LOW,
            device_category=DeviceCategory.UNKNOWN,
        )

    normalized = canonical_mac(mac)
    prefix = normalized[:8]

    match = _OUI_TABLE.get(prefix)
    if match:
        vendor, device_type, icon = match
        return Fingerprint(
            mac=normalized,
            vendor=vendor,
            device_type=device_type,
            icon=icon,
            confidence=Confidence.HIGH,
            device_category=categorize(device_type),
        )

    short_prefix = normalized[:5]
    for key, (vendor, device_type, icon) in _OUI_TABLE.items():
        if key.startswith(short_prefix):
            return Fingerprint(
                mac=normalized,
                vendor=vendor,
                device_type=device_type,
                icon=icon,
                confidence=Confidence.MEDIUM,
                device_category=categorize(device_type),
            )

    return Fingerprint(
        mac=normalized,
        vendor=UNKNOWN_VENDOR,
        device_type=UNKNOWN_DEVICE,
        icon="🖥️",
        confidence=Confidence.LOW,
        device_category=DeviceCategory.UNKNOWN,
    )


def enrich_device_info(mac: str | None, vendor: str | None = None) -> dict[str, str]:
    """Fingerprint fields for a device row, keeping a vendor the router reported."""
    if mac:
        fp = identify(mac)
        return {
            "vendor": vendor or fp.vendor,
            "device_type": fp.device_type,
            "icon": fp.icon,
            "device_category": fp.device_category.value,
        }
    return {
        "vendor": vendor or "Unknown",
        "device_type": UNKNOWN_DEVICE,
        "icon": "🖥️",
        "device_category": DeviceCategory.UNKNOWN.value,
    }
