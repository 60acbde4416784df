# hypervisor/__init__.py
from __future__ import annotations

from typing import Any, Dict

from .base import (
    AlreadyStopped,
    GuestRecord,
    Health,
    HealthState,
    HypervisorAdapter,
    HypervisorError,
    InvalidConfig,
    LaunchConfig,
    ProcessFailedToStart,
    ResourceUnavailable,
    TerminateTimeout,
    VMHandle,
)
from .fake import FakeHypervisor
from .firecracker import FirecrackerAdapter


def get_adapter_by_driver(driver: str, host: Dict[str, Any]) -> HypervisorAdapter:
    """
    Returns a hypervisor adapter for the specified 'driver'.
    `host` is the defaults.host config section.
    """
    key = (driver or "").strip().lower()
    if key == "firecracker":
        return FirecrackerAdapter(
            firecracker_bin=host["firecracker_bin"],
            conf_dir=host["conf_dir"],
            run_dir=host["run_dir"],
            log_dir=host["log_dir"],
        )
    if key == "fake":
        return FakeHypervisor()
    raise HypervisorError(f"Unsupported hypervisor driver '{driver}'")


__all__ = [
    "AlreadyStopped",
    "FakeHypervisor",
    "FirecrackerAdapter",
    "GuestRecord",
    "Health",
    "HealthState",
    "HypervisorAdapter",
    "HypervisorError",
    "InvalidConfig",
    "LaunchConfig",
    "ProcessFailedToStart",
    "ResourceUnavailable",
    "TerminateTimeout",
    "VMHandle",
    "get_adapter_by_driver",
]
