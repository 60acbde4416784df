#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Data models for the lambdo agent.
This module contains the data classes used throughout the application.
"""
import dataclasses
import enum
from typing import Any, Dict, FrozenSet, List, Optional, Tuple

from pydantic import BaseModel, Field

DEFAULT_BOOT_ARGS = "console=ttyS0 reboot=k panic=1 pci=off"


class VMState(str, enum.Enum):
    """Lifecycle states of a microVM."""

    PENDING = "Pending"
    NETWORK_ALLOCATED = "NetworkAllocated"
    LAUNCHING = "Launching"
    RUNNING = "Running"
    STOPPING = "Stopping"
    STOPPED = "Stopped"
    DELETED = "Deleted"
    FAILED = "Failed"


_TRANSITIONS: Dict[VMState, FrozenSet[VMState]] = {
    VMState.PENDING: frozenset({VMState.NETWORK_ALLOCATED, VMState.FAILED}),
    VMState.NETWORK_ALLOCATED: frozenset({VMState.LAUNCHING, VMState.FAILED}),
    VMState.LAUNCHING: frozenset({VMState.RUNNING, VMState.FAILED}),
    VMState.RUNNING: frozenset({VMState.STOPPING, VMState.FAILED}),
    VMState.STOPPING: frozenset({VMState.STOPPED, VMState.FAILED}),
    VMState.STOPPED: frozenset({VMState.DELETED, VMState.FAILED}),
    # cleanup of a parked VM can be retried through stop/delete
    VMState.FAILED: frozenset({VMState.STOPPING, VMState.DELETED}),
    VMState.DELETED: frozenset(),
}


def can_transition(current: VMState, target: VMState) -> bool:
    """Return True if the state machine allows current -> target."""
    return target in _TRANSITIONS.get(current, frozenset())


@dataclasses.dataclass(frozen=True)
class VMSpec:
    """Guest shape requested by a client."""

    vcpu_count: int
    mem_size_mib: int
    image: str
    kernel: Optional[str] = None
    boot_args: Optional[str] = None
    port_mapping: Tuple[Tuple[int, int], ...] = ()
    # guest ports forwarded from host ports picked by the agent
    requested_ports: Tuple[int, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "vcpu_count": self.vcpu_count,
            "mem_size_mib": self.mem_size_mib,
            "image": self.image,
            "kernel": self.kernel,
            "boot_args": self.boot_args,
            "port_mapping": [list(p) for p in self.port_mapping],
            "requested_ports": list(self.requested_ports),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VMSpec":
        return cls(
            vcpu_count=int(data.get("vcpu_count", 0)),
            mem_size_mib=int(data.get("mem_size_mib", 0)),
            image=str(data.get("image") or ""),
            kernel=data.get("kernel"),
            boot_args=data.get("boot_args"),
            port_mapping=tuple((int(h), int(g)) for h, g in data.get("port_mapping") or ()),
            requested_ports=tuple(int(p) for p in data.get("requested_ports") or ()),
        )


@dataclasses.dataclass
class NetworkLease:
    """Network resources granted to one VM: address, tap device and firewall rules."""

    vm_id: str
    address: str
    prefix_len: int
    gateway: str
    bridge: str
    mac: str
    tap_name: str = ""
    rule_ids: List[str] = dataclasses.field(default_factory=list)
    port_mapping: Tuple[Tuple[int, int], ...] = ()
    released: bool = False

    @property
    def netmask(self) -> str:
        bits = (0xFFFFFFFF << (32 - self.prefix_len)) & 0xFFFFFFFF
        return ".".join(str((bits >> shift) & 0xFF) for shift in (24, 16, 8, 0))

    def boot_arg(self, iface: str = "eth0") -> str:
        """Kernel `ip=` argument configuring the guest interface statically."""
        return f"ip={self.address}::{self.gateway}:{self.netmask}::{iface}:off"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "vm_id": self.vm_id,
            "address": self.address,
            "prefix_len": self.prefix_len,
            "gateway": self.gateway,
            "bridge": self.bridge,
            "mac": self.mac,
            "tap_name": self.tap_name,
            "rule_ids": list(self.rule_ids),
            "port_mapping": [list(p) for p in self.port_mapping],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NetworkLease":
        return cls(
            vm_id=str(data["vm_id"]),
            address=str(data["address"]),
            prefix_len=int(data["prefix_len"]),
            gateway=str(data["gateway"]),
            bridge=str(data["bridge"]),
            mac=str(data["mac"]),
            tap_name=str(data.get("tap_name") or ""),
            rule_ids=[str(r) for r in data.get("rule_ids") or []],
            port_mapping=tuple((int(h), int(g)) for h, g in data.get("port_mapping") or ()),
        )


@dataclasses.dataclass
class VMDescriptor:
    """Lifecycle record of one VM."""

    id: str
    spec: VMSpec
    state: VMState = VMState.PENDING
    created_at: float = 0.0
    lease: Optional[NetworkLease] = None
    pid: Optional[int] = None
    exit_code: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "state": self.state.value,
            "created_at": self.created_at,
            "spec": self.spec.to_dict(),
            "network": self.lease.to_dict() if self.lease else None,
            "pid": self.pid,
            "exit_code": self.exit_code,
        }


class VMCreateRequest(BaseModel):
    """FastAPI model for the create endpoint."""

    vcpu_count: int
    mem_size_mib: int
    image: str
    kernel: Optional[str] = None
    boot_args: Optional[str] = None
    port_mapping: List[Tuple[int, int]] = Field(default_factory=list)
    requested_ports: List[int] = Field(default_factory=list)
    timeout: Optional[float] = None

    def to_spec(self) -> VMSpec:
        return VMSpec(
            vcpu_count=self.vcpu_count,
            mem_size_mib=self.mem_size_mib,
            image=self.image,
            kernel=self.kernel,
            boot_args=self.boot_args,
            port_mapping=tuple((int(h), int(g)) for h, g in self.port_mapping),
            requested_ports=tuple(int(p) for p in self.requested_ports),
        )


class VMSpawnRequest(BaseModel):
    """FastAPI model for the spawn endpoint: an image and the guest ports to expose."""

    image: str
    requested_ports: List[int] = Field(default_factory=list)
    vcpu_count: int = 1
    mem_size_mib: int = 128
    timeout: Optional[float] = None

    def to_spec(self) -> VMSpec:
        return VMSpec(
            vcpu_count=self.vcpu_count,
            mem_size_mib=self.mem_size_mib,
            image=self.image,
            requested_ports=tuple(int(p) for p in self.requested_ports),
        )
