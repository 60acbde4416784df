#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Validation utilities for the lambdo agent.
This module contains common checks used by the API and the lifecycle core.
"""
from typing import Any, Dict, Iterable, Tuple

from lambdo_agent.errors import ValidationError
from lambdo_agent.models import VMSpec


def validate_port_mapping(port_mapping: Iterable[Tuple[int, int]]) -> None:
    """Ports must be in 1..65535 and each host port may appear once."""
    seen = set()
    for host_port, guest_port in port_mapping:
        for label, port in (("host", host_port), ("guest", guest_port)):
            if not isinstance(port, int) or not 1 <= port <= 65535:
                raise ValidationError(f"Invalid {label} port {port!r}")
        if host_port in seen:
            raise ValidationError(f"Host port {host_port} mapped twice")
        seen.add(host_port)


def validate_spec(spec: VMSpec) -> None:
    """Shape checks that need no filesystem access."""
    if not isinstance(spec.vcpu_count, int) or spec.vcpu_count <= 0:
        raise ValidationError(f"vcpu_count must be a positive integer, got {spec.vcpu_count!r}")
    if not isinstance(spec.mem_size_mib, int) or spec.mem_size_mib <= 0:
        raise ValidationError(f"mem_size_mib must be a positive integer, got {spec.mem_size_mib!r}")
    if not spec.image or not spec.image.strip():
        raise ValidationError("image reference is required")
    validate_port_mapping(spec.port_mapping)
    for port in spec.requested_ports:
        if not isinstance(port, int) or not 1 <= port <= 65535:
            raise ValidationError(f"Invalid guest port {port!r}")


def deep_update(dst: Dict[str, Any], src: Dict[str, Any]) -> Dict[str, Any]:
    """Deep-merge src into dst and return dst. Dicts are merged recursively; lists/scalars are replaced."""
    for k, v in (src or {}).items():
        if isinstance(v, dict) and isinstance(dst.get(k), dict):
            deep_update(dst[k], v)
        else:
            dst[k] = v
    return dst
