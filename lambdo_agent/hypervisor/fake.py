# hypervisor/fake.py
"""
In-process hypervisor used by the `fake` driver and the test-suite.
Guests are plain records; faults are injected through public attributes.
"""
from __future__ import annotations

import dataclasses
import itertools
import threading
import time
from typing import Any, Dict, List, Optional, Tuple

from .base import (
    AlreadyStopped,
    GuestRecord,
    Health,
    HealthState,
    HypervisorAdapter,
    HypervisorError,
    LaunchConfig,
    TerminateTimeout,
    VMHandle,
)


@dataclasses.dataclass
class FakeGuest:
    handle: VMHandle
    config: Optional[LaunchConfig]
    metadata: Dict[str, Any]
    running: bool = True
    exit_code: Optional[int] = None


class FakeHypervisor(HypervisorAdapter):
    def __init__(self):
        self._lock = threading.Lock()
        self._pids = itertools.count(1000)
        self.guests: Dict[str, FakeGuest] = {}
        self.launches: List[str] = []
        self.terminations: List[Tuple[str, bool]] = []
        # faults
        self.fail_next_launch: Optional[HypervisorError] = None
        self.launch_delay = 0.0
        self.ignore_graceful = False
        self.fail_terminate: Optional[HypervisorError] = None
        self.unknown_health: set = set()
        self.health_delay: Dict[str, float] = {}

    def launch(self, config: LaunchConfig) -> VMHandle:
        if self.launch_delay:
            time.sleep(self.launch_delay)
        with self._lock:
            self.launches.append(config.vm_id)
            if self.fail_next_launch is not None:
                err, self.fail_next_launch = self.fail_next_launch, None
                raise err
            handle = VMHandle(vm_id=config.vm_id, pid=next(self._pids), session=f"fake-{config.vm_id}")
            self.guests[config.vm_id] = FakeGuest(handle, config, dict(config.metadata, vm_id=config.vm_id))
            return handle

    def terminate(self, handle: VMHandle, graceful: bool, timeout: float) -> None:
        with self._lock:
            self.terminations.append((handle.vm_id, graceful))
            guest = self.guests.get(handle.vm_id)
            if guest is None or not guest.running:
                raise AlreadyStopped(f"vm {handle.vm_id} is not running")
            if self.fail_terminate is not None:
                raise self.fail_terminate
            if graceful and self.ignore_graceful:
                raise TerminateTimeout(f"graceful stop of vm {handle.vm_id} timed out after {timeout}s")
            guest.running = False
            guest.exit_code = 0 if graceful else -9

    def health_check(self, handle: VMHandle) -> Health:
        delay = self.health_delay.get(handle.vm_id)
        if delay:
            time.sleep(delay)
        with self._lock:
            if handle.vm_id in self.unknown_health:
                return Health(HealthState.UNKNOWN)
            guest = self.guests.get(handle.vm_id)
            if guest is None:
                return Health(HealthState.EXITED)
            if guest.running:
                return Health(HealthState.RUNNING)
            return Health(HealthState.EXITED, guest.exit_code)

    def list_guests(self) -> List[GuestRecord]:
        with self._lock:
            return [GuestRecord(g.handle, dict(g.metadata)) for g in self.guests.values() if g.running]

    # ------------------------------------------------------------------
    # test helpers
    # ------------------------------------------------------------------

    def crash(self, vm_id: str, exit_code: int = 1) -> None:
        """Make a running guest exit on its own."""
        with self._lock:
            guest = self.guests[vm_id]
            guest.running = False
            guest.exit_code = exit_code

    def add_guest(self, vm_id: str, metadata: Dict[str, Any]) -> VMHandle:
        """Register a guest as if it had been left running by a previous agent."""
        with self._lock:
            handle = VMHandle(vm_id=vm_id, pid=next(self._pids), session=f"fake-{vm_id}")
            self.guests[vm_id] = FakeGuest(handle, None, dict(metadata, vm_id=vm_id))
            return handle

    def running(self) -> List[str]:
        with self._lock:
            return sorted(vm_id for vm_id, g in self.guests.items() if g.running)
