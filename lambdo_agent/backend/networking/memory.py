"""
In-memory networking backends
=============================
Bridge/TAP and firewall backends that keep their state in process memory.
They back the agent's dry-run drivers and the test-suite, and can be told
to fail specific operations.
"""

from __future__ import annotations

import threading
from typing import Dict, List, Optional, Set

from .base import (
    DeviceExistsError,
    FirewallBackend,
    FirewallError,
    FirewallRule,
    NetworkingBackend,
    NetworkingError,
    RuleRef,
)


class MemoryNetworkingBackend(NetworkingBackend):
    """Bridge/TAP namespace held in a dict."""

    def __init__(self, uplink: Optional[str] = None):
        self.uplink = uplink
        self._lock = threading.Lock()
        self.bridges: Dict[str, str] = {}
        self.taps: Dict[str, str] = {}
        self.created: List[str] = []
        self.deleted: List[str] = []
        self.fail_create: Set[str] = set()
        self.fail_delete: Set[str] = set()

    def prepare_bridge(self, bridge: str, gateway: str, prefix_len: int, uplink: Optional[str] = None) -> None:
        with self._lock:
            self.bridges[bridge] = f"{gateway}/{prefix_len}"

    def tap_exists(self, name: str) -> bool:
        with self._lock:
            return name in self.taps

    def create_tap(self, name: str, bridge: str, mac: Optional[str] = None) -> None:
        with self._lock:
            if name in self.fail_create:
                raise NetworkingError(f"TAP creation failed for {name}")
            if name in self.taps:
                raise DeviceExistsError(f"TAP {name} already exists")
            if bridge not in self.bridges:
                raise NetworkingError(f"Bridge not found: {bridge}")
            self.taps[name] = bridge
            self.created.append(name)

    def delete_tap(self, name: str) -> None:
        with self._lock:
            if name in self.fail_delete:
                raise NetworkingError(f"Failed to delete TAP {name}")
            if self.taps.pop(name, None) is not None:
                self.deleted.append(name)

    def list_taps(self, prefix: str) -> List[str]:
        with self._lock:
            return sorted(n for n in self.taps if n.startswith(prefix))


class MemoryFirewall(FirewallBackend):
    """Firewall rules held in a dict keyed by tag."""

    def __init__(self):
        self._lock = threading.Lock()
        self.rules: Dict[str, FirewallRule] = {}
        self.installed: List[RuleRef] = []
        self.removed: List[RuleRef] = []
        self.fail_insert: Set[str] = set()
        self.fail_delete: Set[str] = set()
        # rules accepted by insert_rule but never listed (a silently dropped insert)
        self.drop_insert: Set[str] = set()

    def insert_rule(self, rule: FirewallRule) -> None:
        with self._lock:
            if rule.tag in self.fail_insert:
                raise FirewallError(f"Failed to install rule {rule.ref}")
            if rule.tag in self.drop_insert:
                return
            self.rules[rule.tag] = rule
            self.installed.append(rule.ref)

    def rule_exists(self, ref: RuleRef) -> bool:
        with self._lock:
            rule = self.rules.get(ref.tag)
            return rule is not None and rule.ref == ref

    def delete_rule(self, ref: RuleRef) -> bool:
        with self._lock:
            if ref.tag in self.fail_delete:
                raise FirewallError(f"Failed to remove rule {ref}")
            rule = self.rules.get(ref.tag)
            if rule is None or rule.ref != ref:
                return False
            del self.rules[ref.tag]
            self.removed.append(ref)
            return True

    def list_rules(self, tag_prefix: str) -> List[RuleRef]:
        with self._lock:
            return [r.ref for tag, r in sorted(self.rules.items()) if tag.startswith(tag_prefix)]
