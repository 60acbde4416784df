# backend/networking/base.py
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional, Tuple


class NetworkingError(Exception):
    """Networking backend error."""


class DeviceExistsError(NetworkingError):
    """A device with the requested name already exists on the host."""


class FirewallError(NetworkingError):
    """A firewall rule could not be installed, listed or removed."""


@dataclass(frozen=True)
class RuleRef:
    """Identifier of an installed rule: table, chain and the unique comment tag."""

    table: str
    chain: str
    tag: str

    def __str__(self) -> str:
        return f"{self.table}:{self.chain}:{self.tag}"

    @classmethod
    def parse(cls, value: str) -> "RuleRef":
        parts = value.split(":", 2)
        if len(parts) != 3 or not all(parts):
            raise ValueError(f"Malformed rule id '{value}'")
        return cls(*parts)


@dataclass(frozen=True)
class FirewallRule:
    """A rule to install. `match` and `target` are iptables argument lists."""

    table: str
    chain: str
    match: Tuple[str, ...]
    target: Tuple[str, ...]
    tag: str

    @property
    def ref(self) -> RuleRef:
        return RuleRef(self.table, self.chain, self.tag)


class NetworkingBackend(ABC):
    """Common interface for bridge/tap backends."""

    @abstractmethod
    def prepare_bridge(self, bridge: str, gateway: str, prefix_len: int, uplink: Optional[str] = None) -> None:
        """Ensure the bridge exists, is up and carries the gateway address. Must be idempotent."""
        raise NotImplementedError

    @abstractmethod
    def tap_exists(self, name: str) -> bool:
        raise NotImplementedError

    @abstractmethod
    def create_tap(self, name: str, bridge: str, mac: Optional[str] = None) -> None:
        """Create a tap, attach it to the bridge and bring it up.
        Raises DeviceExistsError when the name is taken."""
        raise NotImplementedError

    @abstractmethod
    def delete_tap(self, name: str) -> None:
        """Detach and delete a tap. Must be idempotent."""
        raise NotImplementedError

    @abstractmethod
    def list_taps(self, prefix: str) -> List[str]:
        raise NotImplementedError


class FirewallBackend(ABC):
    """Common interface for packet-filter backends. Rules are addressed by tag only."""

    @abstractmethod
    def insert_rule(self, rule: FirewallRule) -> None:
        raise NotImplementedError

    @abstractmethod
    def rule_exists(self, ref: RuleRef) -> bool:
        raise NotImplementedError

    @abstractmethod
    def delete_rule(self, ref: RuleRef) -> bool:
        """Delete every rule carrying the tag. Returns False if none was present."""
        raise NotImplementedError

    @abstractmethod
    def list_rules(self, tag_prefix: str) -> List[RuleRef]:
        raise NotImplementedError
