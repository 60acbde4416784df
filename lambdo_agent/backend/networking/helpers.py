"""
Networking Helper Functions
==========================
This module contains helper functions shared by the networking drivers and
the provisioner: device naming, MAC derivation and firewall rule shapes.
"""

from __future__ import annotations

import ipaddress
import re
from typing import List, Tuple

from .base import FirewallRule

IFNAMSIZ = 15


def tap_name(prefix: str, vm_id: str, attempt: int = 0) -> str:
    """Candidate TAP name for a VM id.
    Format: <prefix><sanitized id>[<attempt>]
    - sanitize: keep only [A-Za-z0-9], lowercase
    - attempt > 0 swaps the id tail for a two-digit counter
    - total ifname must stay <=15 chars
    """
    v = re.sub(r"[^a-zA-Z0-9]", "", vm_id or "").lower()
    room = IFNAMSIZ - len(prefix)
    if room < 4:
        raise ValueError(f"TAP prefix '{prefix}' leaves no room for an id")
    if attempt:
        return f"{prefix}{v[: room - 2]}{attempt % 100:02d}"
    return f"{prefix}{v[:room]}"


def mac_for_address(address: str) -> str:
    """Locally administered MAC derived from the guest IPv4 address (06:00:a:b:c:d)."""
    octets = ipaddress.IPv4Address(address).packed
    return "06:00:" + ":".join(f"{b:02x}" for b in octets)


def rule_tag(prefix: str, token: str, index: int) -> str:
    return f"{prefix}{token}-{index}"


def guest_rules(
    address: str,
    bridge: str,
    network: str,
    port_mapping: List[Tuple[int, int]],
    tag_prefix: str,
    token: str,
) -> List[FirewallRule]:
    """Rules granting one guest outbound NAT, forwarding and its port forwards.
    The masquerade and forward-allow rules always come first."""
    host = f"{address}/32"
    rules = [
        FirewallRule(
            "nat",
            "POSTROUTING",
            ("-s", host, "!", "-d", network),
            ("-j", "MASQUERADE"),
            rule_tag(tag_prefix, token, 0),
        ),
        FirewallRule(
            "filter",
            "FORWARD",
            ("-s", host, "-i", bridge),
            ("-j", "ACCEPT"),
            rule_tag(tag_prefix, token, 1),
        ),
    ]
    index = 2
    for host_port, guest_port in port_mapping:
        rules.append(
            FirewallRule(
                "nat",
                "PREROUTING",
                ("-p", "tcp", "--dport", str(host_port)),
                ("-j", "DNAT", "--to-destination", f"{address}:{guest_port}"),
                rule_tag(tag_prefix, token, index),
            )
        )
        rules.append(
            FirewallRule(
                "filter",
                "FORWARD",
                ("-p", "tcp", "-d", host, "--dport", str(guest_port), "-o", bridge),
                ("-j", "ACCEPT"),
                rule_tag(tag_prefix, token, index + 1),
            )
        )
        index += 2
    return rules
