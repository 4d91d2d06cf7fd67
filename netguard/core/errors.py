"""Exception types raised by the NetGuard core.

Transient network failures (timeouts, unreachable hosts, routers that
refuse a login) are never raised; they are encoded in result models.
"""

from __future__ import annotations


class NetGuardError(Exception):
    """Base class for all NetGuard errors."""


class InvalidTargetError(NetGuardError, ValueError):
    """Malformed host, address, port list, count or record type."""


class ConfigurationError(NetGuardError):
    """Required configuration is missing or unsupported."""


class RegistryError(NetGuardError):
    """The device registry or alert store could not complete an operation."""


class RouterAuthError(NetGuardError):
    """A router capability was invoked without an authenticated session."""


class DeviceNotFoundError(NetGuardError, LookupError):
    """No device with the given id exists for the account."""
