# backend/networking/__init__.py
from __future__ import annotations

from typing import Dict, Optional, Type

from .base import FirewallBackend, NetworkingBackend, NetworkingError
from .iptables import IptablesFirewall
from .linux_bridge import LinuxBridgeBackend
from .memory import MemoryFirewall, MemoryNetworkingBackend
from .provisioner import NetworkProvisioner

# Map of supported drivers
_BACKENDS: Dict[str, Type[NetworkingBackend]] = {
    "linux-bridge": LinuxBridgeBackend,
    "memory": MemoryNetworkingBackend,
}

_FIREWALLS: Dict[str, Type[FirewallBackend]] = {
    "iptables": IptablesFirewall,
    "memory": MemoryFirewall,
}


def get_backend_by_driver(driver: str, uplink: Optional[str] = None) -> NetworkingBackend:
    """
    Returns a bridge/TAP backend instance for the specified 'driver'.
    """
    key = (driver or "").strip().lower()
    cls = _BACKENDS.get(key)
    if not cls:
        raise NetworkingError(f"Unsupported networking driver '{driver}'")
    return cls(uplink=uplink)


def get_firewall_by_driver(driver: str) -> FirewallBackend:
    """
    Returns a firewall backend instance for the specified 'driver'.
    """
    key = (driver or "").strip().lower()
    cls = _FIREWALLS.get(key)
    if not cls:
        raise NetworkingError(f"Unsupported firewall driver '{driver}'")
    return cls()


__all__ = [
    "FirewallBackend",
    "NetworkingBackend",
    "NetworkingError",
    "NetworkProvisioner",
    "get_backend_by_driver",
    "get_firewall_by_driver",
]
