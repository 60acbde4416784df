# hypervisor/base.py
from __future__ import annotations

import abc
import dataclasses
from enum import Enum
from typing import Any, Dict, List, Optional


class HypervisorError(Exception):
    """Base error for hypervisor adapter failures."""


class InvalidConfig(HypervisorError):
    pass


class ResourceUnavailable(HypervisorError):
    pass


class ProcessFailedToStart(HypervisorError):
    pass


class AlreadyStopped(HypervisorError):
    pass


class TerminateTimeout(HypervisorError):
    pass


class HealthState(str, Enum):
    RUNNING = "running"
    EXITED = "exited"
    UNKNOWN = "unknown"


@dataclasses.dataclass(frozen=True)
class Health:
    state: HealthState
    exit_code: Optional[int] = None


@dataclasses.dataclass
class LaunchConfig:
    """Everything an adapter needs to boot one guest."""

    vm_id: str
    vcpu_count: int
    mem_size_mib: int
    kernel: str
    rootfs: str
    boot_args: str
    tap_name: str
    mac: str
    # persisted next to the guest so a restarted agent can adopt it
    metadata: Dict[str, Any] = dataclasses.field(default_factory=dict)


@dataclasses.dataclass
class VMHandle:
    vm_id: str
    pid: Optional[int] = None
    socket_path: Optional[str] = None
    session: Optional[str] = None


@dataclasses.dataclass
class GuestRecord:
    handle: VMHandle
    metadata: Dict[str, Any] = dataclasses.field(default_factory=dict)


class HypervisorAdapter(abc.ABC):
    """Blocking contract every hypervisor driver implements; callers run it off the event loop."""

    @abc.abstractmethod
    def launch(self, config: LaunchConfig) -> VMHandle:
        """Boot a guest. Raises InvalidConfig, ResourceUnavailable or ProcessFailedToStart."""

    @abc.abstractmethod
    def terminate(self, handle: VMHandle, graceful: bool, timeout: float) -> None:
        """Stop a guest. Raises AlreadyStopped or TerminateTimeout."""

    @abc.abstractmethod
    def health_check(self, handle: VMHandle) -> Health:
        ...

    @abc.abstractmethod
    def list_guests(self) -> List[GuestRecord]:
        """Live guests this adapter can account for, with their launch metadata."""
