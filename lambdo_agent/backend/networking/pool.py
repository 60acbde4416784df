"""
Address pool for guest IPv4 leases.
The pool is a fixed CIDR; network and broadcast addresses and any reserved
address (typically the bridge gateway) are never handed out.
"""

from __future__ import annotations

import ipaddress
from typing import Dict, Iterable, List, Optional

from lambdo_agent.errors import ConflictError, ResourceExhausted, ValidationError


class AddressPool:
    """Fixed-size set of assignable addresses. Not thread-safe; the provisioner serializes access."""

    def __init__(self, cidr: str, reserved: Iterable[str] = ()):
        try:
            self.network = ipaddress.IPv4Network(cidr, strict=False)
        except ValueError as e:
            raise ValidationError(f"Invalid address pool '{cidr}': {e}") from e
        reserved_set = {ipaddress.IPv4Address(r) for r in reserved}
        self._usable: List[ipaddress.IPv4Address] = [h for h in self.network.hosts() if h not in reserved_set]
        self._members = set(self._usable)
        self._allocated: Dict[ipaddress.IPv4Address, str] = {}

    @property
    def size(self) -> int:
        return len(self._usable)

    @property
    def free_count(self) -> int:
        return self.size - len(self._allocated)

    def acquire(self, owner: str) -> str:
        """Allocate the lowest free address to `owner`."""
        for address in self._usable:
            if address not in self._allocated:
                self._allocated[address] = owner
                return str(address)
        raise ResourceExhausted(f"Address pool {self.network} exhausted ({self.size} addresses in use)", vm_id=owner)

    def claim(self, address: str, owner: str) -> None:
        """Mark a specific address as allocated (used when adopting running guests)."""
        addr = ipaddress.IPv4Address(address)
        if addr not in self._members:
            raise ConflictError(f"Address {address} is outside pool {self.network}", vm_id=owner)
        holder = self._allocated.get(addr)
        if holder is not None and holder != owner:
            raise ConflictError(f"Address {address} already allocated to {holder}", vm_id=owner)
        self._allocated[addr] = owner

    def release(self, address: str) -> None:
        self._allocated.pop(ipaddress.IPv4Address(address), None)

    def owner_of(self, address: str) -> Optional[str]:
        return self._allocated.get(ipaddress.IPv4Address(address))

    def allocated(self) -> Dict[str, str]:
        return {str(a): owner for a, owner in sorted(self._allocated.items())}
