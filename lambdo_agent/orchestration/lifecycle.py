#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
VM Lifecycle module for the lambdo agent.
This module drives a VM through its states: create (network lease, launch,
registration), stop, delete, the liveness path that handles guest exits, and
the startup reconciliation that adopts guests left running by a previous
agent.
"""
import asyncio
import contextlib
import logging
import time
import uuid
from typing import Any, Callable, Dict, List, Optional, Set

from lambdo_agent.backend.networking import NetworkProvisioner
from lambdo_agent.errors import (
    AdapterError,
    ConflictError,
    DegradedCleanup,
    LambdoError,
    NotFoundError,
    OperationTimeout,
)
from lambdo_agent.hypervisor import (
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
from lambdo_agent.images import ImageResolver
from lambdo_agent.models import DEFAULT_BOOT_ARGS, NetworkLease, VMDescriptor, VMSpec, VMState, can_transition
from lambdo_agent.state import Registry, RegistryEntry
from lambdo_agent.utils.validation import validate_spec

from .saga import Saga

logger = logging.getLogger("lambdo-agent")

# slack on top of the timeout handed to the adapter before the call itself is abandoned
CALL_GRACE = 1.0


class LifecycleManager:
    """Owns the VM state machine; the only component that mutates registry entries."""

    def __init__(
        self,
        provisioner: NetworkProvisioner,
        adapter: HypervisorAdapter,
        resolver: ImageResolver,
        registry: Optional[Registry] = None,
        launch_timeout: float = 30.0,
        stop_timeout: float = 10.0,
        kill_timeout: float = 5.0,
        exit_timeout: float = 5.0,
        health_interval: float = 2.0,
        health_timeout: float = 2.0,
        exit_poll: float = 0.1,
    ):
        self.provisioner = provisioner
        self.adapter = adapter
        self.resolver = resolver
        self.registry = registry if registry is not None else Registry()
        self.launch_timeout = launch_timeout
        self.stop_timeout = stop_timeout
        self.kill_timeout = kill_timeout
        self.exit_timeout = exit_timeout
        self.health_interval = health_interval
        self.health_timeout = health_timeout
        self.exit_poll = exit_poll
        self._locks: Dict[str, asyncio.Lock] = {}
        self._monitor: Optional[asyncio.Task] = None
        self._background: Set[asyncio.Future] = set()

    def _lock_for(self, vm_id: str) -> asyncio.Lock:
        return self._locks.setdefault(vm_id, asyncio.Lock())

    @contextlib.asynccontextmanager
    async def _registered_lock(self, vm_id: str):
        """Hold the per-VM lock of an id that is still registered once the lock is acquired."""
        self._require(vm_id)
        lock = self._lock_for(vm_id)
        async with lock:
            if vm_id not in self.registry:
                if self._locks.get(vm_id) is lock:
                    del self._locks[vm_id]
                raise NotFoundError("Unknown VM id", vm_id=vm_id)
            yield

    # ------------------------------------------------------------------
    # create
    # ------------------------------------------------------------------

    async def create(self, spec: VMSpec, timeout: Optional[float] = None) -> VMDescriptor:
        """Validate, lease network, launch and register a new VM.

        `timeout` is an overall deadline; on expiry the in-flight step is
        cancelled, compensation still runs and OperationTimeout is raised.
        """
        validate_spec(spec)
        kernel, rootfs = await asyncio.to_thread(self.resolver.resolve, spec)
        vm_id = str(uuid.uuid4())
        descriptor = VMDescriptor(id=vm_id, spec=spec, created_at=time.time())
        logger.info("Creating VM %s (vcpu=%d, mem=%dMiB, image=%s)", vm_id, spec.vcpu_count, spec.mem_size_mib, spec.image)
        try:
            async with self._lock_for(vm_id):
                work = self._create(RegistryEntry(descriptor), str(kernel), str(rootfs))
                try:
                    if timeout is None:
                        result = await work
                    else:
                        result = await asyncio.wait_for(work, timeout)
                except LambdoError:
                    raise
                except asyncio.TimeoutError as e:
                    raise OperationTimeout(f"create did not finish within {timeout}s", vm_id=vm_id) from e
        except BaseException:
            if vm_id not in self.registry:
                self._locks.pop(vm_id, None)
            raise
        logger.info("VM %s running at %s", vm_id, result.lease.address if result.lease else "-")
        return result

    async def _create(self, entry: RegistryEntry, kernel: str, rootfs: str) -> VMDescriptor:
        descriptor = entry.descriptor
        # cleared once launch returned a handle, set again when that guest was terminated
        guest = {"stopped": True}

        async def allocate() -> NetworkLease:
            lease = await self.provisioner.allocate(
                descriptor.id, descriptor.spec.port_mapping, descriptor.spec.requested_ports
            )
            entry.lease = descriptor.lease = lease
            self._advance(descriptor, VMState.NETWORK_ALLOCATED)
            return lease

        async def release(lease: NetworkLease) -> None:
            if not guest["stopped"]:
                raise AdapterError("guest may still be running, lease kept", vm_id=descriptor.id)
            await self.provisioner.release(lease)

        async def launch() -> VMHandle:
            handle = await self._launch(entry, kernel, rootfs)
            guest["stopped"] = False
            return handle

        async def terminate(handle: VMHandle) -> None:
            await self._force_terminate(handle)
            guest["stopped"] = True

        async def register() -> RegistryEntry:
            self._advance(descriptor, VMState.RUNNING)
            self.registry.insert(entry)
            return entry

        async def unregister(registered: RegistryEntry) -> None:
            self.registry.remove(registered.descriptor.id)

        saga = Saga(f"create {descriptor.id}", descriptor.id)
        saga.step("allocate-network", allocate, release)
        saga.step("launch", launch, terminate)
        saga.step("register", register, unregister)
        try:
            await saga.run()
        except DegradedCleanup as exc:
            self._park(entry, exc)
            raise
        return self.registry.get(descriptor.id).descriptor

    async def _launch(self, entry: RegistryEntry, kernel: str, rootfs: str) -> VMHandle:
        descriptor = entry.descriptor
        spec = descriptor.spec
        lease = entry.lease
        self._advance(descriptor, VMState.LAUNCHING)
        boot_args = f"{spec.boot_args or DEFAULT_BOOT_ARGS} {lease.boot_arg()}"
        config = LaunchConfig(
            vm_id=descriptor.id,
            vcpu_count=spec.vcpu_count,
            mem_size_mib=spec.mem_size_mib,
            kernel=kernel,
            rootfs=rootfs,
            boot_args=boot_args,
            tap_name=lease.tap_name,
            mac=lease.mac,
            metadata={"spec": spec.to_dict(), "lease": lease.to_dict(), "created_at": descriptor.created_at},
        )
        call = asyncio.ensure_future(asyncio.to_thread(self.adapter.launch, config))
        try:
            handle = await asyncio.wait_for(asyncio.shield(call), self.launch_timeout)
        except HypervisorError as e:
            raise AdapterError(f"launch failed: {e}", vm_id=descriptor.id) from e
        except (asyncio.TimeoutError, asyncio.CancelledError) as e:
            # the adapter call keeps running in its thread; reap whatever it returns
            call.add_done_callback(self._reap_late_launch)
            if isinstance(e, asyncio.CancelledError):
                raise
            raise OperationTimeout(f"launch did not finish within {self.launch_timeout}s", vm_id=descriptor.id) from e
        entry.handle = handle
        descriptor.pid = handle.pid
        return handle

    def _reap_late_launch(self, call: "asyncio.Future[VMHandle]") -> None:
        if call.cancelled() or call.exception() is not None:
            return
        handle = call.result()
        logger.warning("Launch of VM %s returned after its deadline, terminating the guest", handle.vm_id)
        self._spawn(self._force_terminate(handle))

    def _spawn(self, coro) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background_done)

    def _background_done(self, task: asyncio.Future) -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Background cleanup failed: %s", task.exception())

    def _park(self, entry: RegistryEntry, exc: DegradedCleanup) -> None:
        """Keep a VM whose compensation failed visible as Failed, with whatever it still holds."""
        descriptor = entry.descriptor
        lease = exc.lease if exc.lease is not None else entry.lease
        if lease is not None and lease.released:
            lease = None
        entry.lease = descriptor.lease = lease
        descriptor.state = VMState.FAILED
        if descriptor.id in self.registry:
            self.registry.update(descriptor.id, lambda e: setattr(e.descriptor, "state", VMState.FAILED))
        else:
            self.registry.insert(entry)
        logger.error("VM %s parked as Failed: %s", descriptor.id, exc.failures)

    # ------------------------------------------------------------------
    # stop / delete
    # ------------------------------------------------------------------

    async def stop(self, vm_id: str) -> VMDescriptor:
        """Stop a VM and release its lease. Idempotent once Stopped."""
        async with self._registered_lock(vm_id):
            return await self._teardown(vm_id)

    async def delete(self, vm_id: str) -> None:
        """Stop the VM if needed, then drop it from the registry."""
        async with self._registered_lock(vm_id):
            entry = self._require(vm_id)
            if entry.descriptor.state is not VMState.STOPPED:
                await self._teardown(vm_id)
            self._update(vm_id, VMState.DELETED)
            self.registry.remove(vm_id)
        self._locks.pop(vm_id, None)
        logger.info("VM %s deleted", vm_id)

    async def handle_guest_exit(self, vm_id: str, exit_code: Optional[int] = None) -> Optional[VMDescriptor]:
        """Liveness path: a running guest exited on its own. Same teardown as stop."""
        if vm_id not in self.registry:
            return None
        lock = self._lock_for(vm_id)
        async with lock:
            entry = self.registry.get(vm_id)
            if entry is None and self._locks.get(vm_id) is lock:
                del self._locks[vm_id]
            if entry is None or entry.descriptor.state is not VMState.RUNNING:
                # a stop or delete already dealt with it
                return None
            logger.warning("VM %s exited on its own (code=%s)", vm_id, exit_code)
            self._update(vm_id, exit_code=exit_code)
            return await self._teardown(vm_id, exit_code=exit_code)

    async def _teardown(self, vm_id: str, exit_code: Optional[int] = None) -> VMDescriptor:
        entry = self._require(vm_id)
        if entry.descriptor.state in (VMState.STOPPED, VMState.DELETED):
            return entry.descriptor
        self._update(vm_id, VMState.STOPPING)
        failures: Dict[str, str] = {}
        if entry.handle is not None:
            try:
                await self._stop_guest(entry.handle)
                observed = await self._wait_exited(entry.handle)
                if exit_code is None:
                    exit_code = observed
            except Exception as e:
                failures["terminate"] = str(e)
        if not failures and entry.lease is not None:
            try:
                await self.provisioner.release(entry.lease)
            except Exception as e:
                failures["release"] = str(e)
        if failures:
            self._update(vm_id, VMState.FAILED)
            logger.error("Stop of VM %s incomplete, lease quarantined: %s", vm_id, failures)
            raise DegradedCleanup("stop did not complete", vm_id=vm_id, failures=failures)
        descriptor = self._update(vm_id, VMState.STOPPED, exit_code=exit_code, lease=None).descriptor
        logger.info("VM %s stopped (exit_code=%s)", vm_id, exit_code)
        return descriptor

    async def _stop_guest(self, handle: VMHandle) -> None:
        """Graceful terminate bounded by stop_timeout, then forced terminate."""
        try:
            await self._call(self.adapter.terminate, handle, True, self.stop_timeout, bound=self.stop_timeout)
            return
        except AlreadyStopped:
            return
        except (TerminateTimeout, OperationTimeout) as e:
            logger.warning("Graceful stop of VM %s timed out (%s), killing it", handle.vm_id, e)
        except HypervisorError as e:
            logger.warning("Graceful stop of VM %s failed (%s), killing it", handle.vm_id, e)
        await self._force_terminate(handle)

    async def _force_terminate(self, handle: VMHandle) -> None:
        try:
            await self._call(self.adapter.terminate, handle, False, self.kill_timeout, bound=self.kill_timeout)
        except AlreadyStopped:
            return
        except HypervisorError as e:
            raise AdapterError(f"force stop failed: {e}", vm_id=handle.vm_id) from e

    async def _wait_exited(self, handle: VMHandle) -> Optional[int]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.exit_timeout
        while True:
            bound = min(self.health_timeout, max(deadline - loop.time(), self.exit_poll))
            try:
                health = await self._health(handle, bound)
            except HypervisorError as e:
                raise AdapterError(f"health check failed: {e}", vm_id=handle.vm_id) from e
            if health.state is HealthState.EXITED:
                return health.exit_code
            if loop.time() >= deadline:
                raise OperationTimeout(f"guest exit not confirmed within {self.exit_timeout}s", vm_id=handle.vm_id)
            await asyncio.sleep(self.exit_poll)

    async def _health(self, handle: VMHandle, bound: float) -> Health:
        """health_check in a worker thread; no answer within `bound` counts as Unknown."""
        try:
            return await asyncio.wait_for(asyncio.to_thread(self.adapter.health_check, handle), bound)
        except asyncio.TimeoutError:
            logger.warning("Health check of VM %s did not return within %ss", handle.vm_id, bound)
            return Health(HealthState.UNKNOWN)

    async def _call(self, func: Callable[..., Any], *args: Any, bound: float) -> Any:
        """Run a blocking adapter call in a worker thread, abandoning it after `bound` seconds."""
        try:
            return await asyncio.wait_for(asyncio.to_thread(func, *args), bound + CALL_GRACE)
        except HypervisorError:
            raise
        except asyncio.TimeoutError as e:
            raise OperationTimeout(f"{func.__name__} did not return within {bound}s") from e

    # ------------------------------------------------------------------
    # read side
    # ------------------------------------------------------------------

    def get(self, vm_id: str) -> VMDescriptor:
        return self._require(vm_id).descriptor

    def list(self) -> List[VMDescriptor]:
        return sorted((e.descriptor for e in self.registry.list()), key=lambda d: d.created_at)

    # ------------------------------------------------------------------
    # liveness
    # ------------------------------------------------------------------

    async def check_liveness(self) -> List[str]:
        """One pass over running guests; returns ids whose exit was handled."""
        running = [
            e.handle for e in self.registry.list() if e.descriptor.state is VMState.RUNNING and e.handle is not None
        ]

        async def probe(handle: VMHandle) -> Health:
            try:
                return await self._health(handle, self.health_timeout)
            except HypervisorError as e:
                logger.warning("Health check of VM %s failed: %s", handle.vm_id, e)
                return Health(HealthState.UNKNOWN)

        results = await asyncio.gather(*(probe(h) for h in running))
        handled = []
        for handle, health in zip(running, results):
            if health.state is not HealthState.EXITED:
                continue
            vm_id = handle.vm_id
            try:
                if await self.handle_guest_exit(vm_id, health.exit_code) is not None:
                    handled.append(vm_id)
            except LambdoError as e:
                logger.error("Cleanup after exit of VM %s failed: %s", vm_id, e)
        return handled

    async def _monitor_loop(self) -> None:
        while True:
            await asyncio.sleep(self.health_interval)
            try:
                await self.check_liveness()
            except Exception as e:  # keep the monitor alive; the next pass retries
                logger.error("Liveness check failed: %s", e)

    def start_monitor(self) -> None:
        if self._monitor is None or self._monitor.done():
            self._monitor = asyncio.ensure_future(self._monitor_loop())
            logger.info("Liveness monitor started (interval=%ss)", self.health_interval)

    async def stop_monitor(self) -> None:
        task, self._monitor = self._monitor, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Liveness monitor stopped")

    # ------------------------------------------------------------------
    # startup reconciliation
    # ------------------------------------------------------------------

    async def reconcile(self) -> Dict[str, Any]:
        """Prepare the bridge, adopt or reap live guests, then sweep orphaned network state."""
        logger.info("Reconciling host state...")
        await self.provisioner.prepare()
        adopted: List[str] = []
        reaped: List[str] = []
        try:
            guests = await self._call(self.adapter.list_guests, bound=self.launch_timeout)
        except HypervisorError as e:
            raise AdapterError(f"cannot list guests: {e}") from e
        for record in guests:
            vm_id = record.handle.vm_id
            try:
                await self._adopt(record)
                adopted.append(vm_id)
                continue
            except LambdoError as e:
                logger.warning("Guest %s cannot be adopted (%s), reaping it", vm_id, e)
            try:
                await self._force_terminate(record.handle)
                reaped.append(vm_id)
            except LambdoError as e:
                logger.error("Failed to reap guest %s: %s", vm_id, e)
        swept = await self.provisioner.sweep_orphans()
        logger.info("Reconcile done: %d adopted, %d reaped", len(adopted), len(reaped))
        return {"adopted": adopted, "reaped": reaped, "swept": swept}

    async def _adopt(self, record: GuestRecord) -> None:
        handle = record.handle
        meta = record.metadata or {}
        if handle.vm_id in self.registry:
            raise ConflictError("VM id already registered", vm_id=handle.vm_id)
        if not isinstance(meta.get("lease"), dict) or not isinstance(meta.get("spec"), dict):
            raise ConflictError("guest metadata carries no usable lease", vm_id=handle.vm_id)
        try:
            spec = VMSpec.from_dict(meta["spec"])
        except (TypeError, ValueError) as e:
            raise ConflictError(f"guest metadata carries no usable spec: {e}", vm_id=handle.vm_id) from e
        validate_spec(spec)
        lease = await self.provisioner.adopt(handle.vm_id, meta["lease"])
        descriptor = VMDescriptor(
            id=handle.vm_id,
            spec=spec,
            state=VMState.RUNNING,
            created_at=float(meta.get("created_at") or time.time()),
            lease=lease,
            pid=handle.pid,
        )
        self.registry.insert(RegistryEntry(descriptor, lease, handle))
        logger.info("Adopted running VM %s at %s", handle.vm_id, lease.address)

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    def _require(self, vm_id: str) -> RegistryEntry:
        entry = self.registry.get(vm_id)
        if entry is None:
            raise NotFoundError("Unknown VM id", vm_id=vm_id)
        return entry

    @staticmethod
    def _advance(descriptor: VMDescriptor, target: VMState) -> None:
        if not can_transition(descriptor.state, target):
            raise ConflictError(f"transition {descriptor.state.value} -> {target.value} not allowed", vm_id=descriptor.id)
        descriptor.state = target

    def _update(self, vm_id: str, state: Optional[VMState] = None, **fields: Any) -> RegistryEntry:
        def mutate(entry: RegistryEntry) -> None:
            if state is not None and state is not entry.descriptor.state:
                self._advance(entry.descriptor, state)
            for key, value in fields.items():
                setattr(entry.descriptor, key, value)
            if "lease" in fields:
                entry.lease = fields["lease"]

        return self.registry.update(vm_id, mutate)
