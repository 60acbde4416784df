"""
Tests for lambdo_agent.orchestration.lifecycle against the fake hypervisor
and the in-memory networking backends.
"""

import asyncio
import time
from unittest.mock import Mock

import pytest

from lambdo_agent.backend.networking import NetworkingError
from lambdo_agent.errors import (
    AdapterError,
    ConflictError,
    DegradedCleanup,
    NotFoundError,
    OperationTimeout,
    ResourceExhausted,
    ValidationError,
)
from lambdo_agent.hypervisor import HypervisorError, ProcessFailedToStart
from lambdo_agent.models import DEFAULT_BOOT_ARGS, VMSpec, VMState


class TestCreate:
    """Happy path and the failure modes of create."""

    @pytest.mark.asyncio
    async def test_create_returns_running_descriptor(self, lifecycle, hypervisor, spec):
        vm = await lifecycle.create(spec)
        assert vm.state is VMState.RUNNING
        assert vm.lease.address == "192.168.10.2"
        assert vm.pid is not None
        assert hypervisor.running() == [vm.id]
        assert lifecycle.get(vm.id).state is VMState.RUNNING

    @pytest.mark.asyncio
    async def test_launch_config_carries_network(self, lifecycle, hypervisor, spec):
        vm = await lifecycle.create(spec)
        config = hypervisor.guests[vm.id].config
        assert config.boot_args == f"{DEFAULT_BOOT_ARGS} {vm.lease.boot_arg()}"
        assert config.tap_name == vm.lease.tap_name
        assert config.mac == vm.lease.mac
        assert config.metadata["lease"]["address"] == vm.lease.address

    @pytest.mark.asyncio
    async def test_custom_boot_args(self, lifecycle, hypervisor):
        vm = await lifecycle.create(VMSpec(1, 128, "alpine", boot_args="console=ttyS0 quiet"))
        assert hypervisor.guests[vm.id].config.boot_args.startswith("console=ttyS0 quiet ip=")

    @pytest.mark.asyncio
    async def test_invalid_spec_touches_nothing(self, lifecycle, netns, hypervisor):
        pool = lifecycle.provisioner.pool
        free = pool.free_count
        with pytest.raises(ValidationError):
            await lifecycle.create(VMSpec(vcpu_count=0, mem_size_mib=128, image="alpine"))
        assert pool.free_count == free
        assert netns.created == []
        assert hypervisor.launches == []

    @pytest.mark.asyncio
    async def test_missing_image(self, lifecycle, hypervisor):
        with pytest.raises(ValidationError):
            await lifecycle.create(VMSpec(1, 128, "debian"))
        assert hypervisor.launches == []

    @pytest.mark.asyncio
    async def test_launch_failure_frees_address(self, make_provisioner, make_lifecycle, hypervisor, netns, spec):
        provisioner = make_provisioner()
        lifecycle = make_lifecycle(provisioner)
        hypervisor.fail_next_launch = ProcessFailedToStart("firecracker exited")
        with pytest.raises(AdapterError):
            await lifecycle.create(spec)
        assert provisioner.leases() == []
        assert netns.taps == {}
        assert lifecycle.list() == []
        # the address is handed out again
        vm = await lifecycle.create(spec)
        assert vm.lease.address == "192.168.10.2"

    @pytest.mark.asyncio
    async def test_host_port_conflict(self, lifecycle, hypervisor):
        await lifecycle.create(VMSpec(1, 128, "alpine", port_mapping=((8080, 80),)))
        with pytest.raises(ConflictError):
            await lifecycle.create(VMSpec(1, 128, "alpine", port_mapping=((8080, 8080),)))
        assert len(hypervisor.launches) == 1
        assert len(lifecycle.list()) == 1

    @pytest.mark.asyncio
    async def test_requested_ports_are_forwarded(self, make_provisioner, make_lifecycle, hypervisor):
        provisioner = make_provisioner(auto_port_range=(10000, 10001))
        lifecycle = make_lifecycle(provisioner)
        vm = await lifecycle.create(VMSpec(1, 128, "alpine", requested_ports=(22,)))
        assert vm.lease.port_mapping == ((10000, 22),)
        assert hypervisor.guests[vm.id].metadata["spec"]["requested_ports"] == [22]
        with pytest.raises(ResourceExhausted):
            await lifecycle.create(VMSpec(1, 128, "alpine", requested_ports=(80,)))
        await lifecycle.stop(vm.id)
        again = await lifecycle.create(VMSpec(1, 128, "alpine", requested_ports=(80,)))
        assert again.lease.port_mapping == ((10000, 80),)

    @pytest.mark.asyncio
    async def test_small_pool_exhaustion_and_reuse(self, make_provisioner, make_lifecycle, spec):
        lifecycle = make_lifecycle(make_provisioner(bridge_address="10.0.0.254/24", pool="10.0.0.0/29"))
        vms = [await lifecycle.create(spec) for _ in range(6)]
        assert sorted(vm.lease.address for vm in vms) == [f"10.0.0.{i}" for i in range(1, 7)]
        with pytest.raises(ResourceExhausted):
            await lifecycle.create(spec)
        await lifecycle.delete(vms[2].id)
        again = await lifecycle.create(spec)
        assert again.lease.address == vms[2].lease.address

    @pytest.mark.asyncio
    async def test_parallel_creates_get_distinct_addresses(self, lifecycle, spec):
        vms = await asyncio.gather(*(lifecycle.create(spec) for _ in range(5)))
        assert len({vm.lease.address for vm in vms}) == 5
        assert len({vm.lease.tap_name for vm in vms}) == 5
        assert len(lifecycle.list()) == 5

    @pytest.mark.asyncio
    async def test_deadline_compensates_and_reaps_late_guest(self, make_provisioner, make_lifecycle, hypervisor, spec):
        provisioner = make_provisioner()
        lifecycle = make_lifecycle(provisioner)
        hypervisor.launch_delay = 0.3
        with pytest.raises(OperationTimeout):
            await lifecycle.create(spec, timeout=0.1)
        assert provisioner.leases() == []
        assert lifecycle.list() == []
        # the launch thread finishes later; its guest must not survive
        await asyncio.sleep(0.6)
        assert len(hypervisor.launches) == 1
        assert hypervisor.running() == []

    @pytest.mark.asyncio
    async def test_failed_compensation_parks_vm(self, make_provisioner, make_lifecycle, hypervisor, netns, spec):
        provisioner = make_provisioner()
        lifecycle = make_lifecycle(provisioner)
        hypervisor.fail_next_launch = ProcessFailedToStart("firecracker exited")
        netns.delete_tap = Mock(side_effect=NetworkingError("device busy"))
        with pytest.raises(DegradedCleanup):
            await lifecycle.create(spec)
        (parked,) = lifecycle.list()
        assert parked.state is VMState.FAILED
        assert parked.lease is not None
        assert len(provisioner.leases()) == 1

        del netns.delete_tap
        await lifecycle.delete(parked.id)
        assert provisioner.leases() == []
        assert netns.taps == {}
        with pytest.raises(NotFoundError):
            lifecycle.get(parked.id)


class TestStopAndDelete:
    """Stop, delete and their idempotency."""

    @pytest.mark.asyncio
    async def test_stop_releases_lease(self, make_provisioner, make_lifecycle, hypervisor, netns, firewall, spec):
        provisioner = make_provisioner()
        lifecycle = make_lifecycle(provisioner)
        vm = await lifecycle.create(VMSpec(1, 128, "alpine", port_mapping=((2222, 22),)))
        stopped = await lifecycle.stop(vm.id)
        assert stopped.state is VMState.STOPPED
        assert stopped.exit_code == 0
        assert stopped.lease is None
        assert hypervisor.running() == []
        assert provisioner.leases() == []
        assert netns.taps == {}
        assert firewall.rules == {}

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self, lifecycle, hypervisor, netns, spec):
        vm = await lifecycle.create(spec)
        await lifecycle.stop(vm.id)
        again = await lifecycle.stop(vm.id)
        assert again.state is VMState.STOPPED
        assert hypervisor.terminations == [(vm.id, True)]
        assert netns.deleted == [vm.lease.tap_name]

    @pytest.mark.asyncio
    async def test_concurrent_stops_release_once(self, lifecycle, netns, spec):
        vm = await lifecycle.create(spec)
        results = await asyncio.gather(lifecycle.stop(vm.id), lifecycle.stop(vm.id))
        assert all(r.state is VMState.STOPPED for r in results)
        assert netns.deleted == [vm.lease.tap_name]

    @pytest.mark.asyncio
    async def test_graceful_timeout_falls_back_to_kill(self, lifecycle, hypervisor, spec):
        vm = await lifecycle.create(spec)
        hypervisor.ignore_graceful = True
        stopped = await lifecycle.stop(vm.id)
        assert hypervisor.terminations == [(vm.id, True), (vm.id, False)]
        assert stopped.exit_code == -9

    @pytest.mark.asyncio
    async def test_terminate_failure_quarantines_lease(self, make_provisioner, make_lifecycle, hypervisor, spec):
        provisioner = make_provisioner()
        lifecycle = make_lifecycle(provisioner)
        vm = await lifecycle.create(spec)
        hypervisor.fail_terminate = HypervisorError("socket gone")
        with pytest.raises(DegradedCleanup) as excinfo:
            await lifecycle.stop(vm.id)
        assert "terminate" in excinfo.value.failures
        assert lifecycle.get(vm.id).state is VMState.FAILED
        assert [lease.address for lease in provisioner.leases()] == [vm.lease.address]

        # a later stop retries the cleanup
        hypervisor.fail_terminate = None
        stopped = await lifecycle.stop(vm.id)
        assert stopped.state is VMState.STOPPED
        assert provisioner.leases() == []

    @pytest.mark.asyncio
    async def test_unexpected_release_error_quarantines_lease(
        self, make_provisioner, make_lifecycle, hypervisor, netns, spec
    ):
        provisioner = make_provisioner()
        lifecycle = make_lifecycle(provisioner)
        vm = await lifecycle.create(spec)
        netns.delete_tap = Mock(side_effect=OSError(16, "Device or resource busy"))
        with pytest.raises(DegradedCleanup) as excinfo:
            await lifecycle.stop(vm.id)
        assert "release" in excinfo.value.failures
        assert lifecycle.get(vm.id).state is VMState.FAILED
        assert len(provisioner.leases()) == 1

        del netns.delete_tap
        stopped = await lifecycle.stop(vm.id)
        assert stopped.state is VMState.STOPPED
        assert provisioner.leases() == []

    @pytest.mark.asyncio
    async def test_slow_health_check_does_not_stall_stop(self, make_provisioner, make_lifecycle, hypervisor, spec):
        provisioner = make_provisioner()
        lifecycle = make_lifecycle(provisioner, exit_timeout=0.3)
        vm = await lifecycle.create(spec)
        hypervisor.health_delay[vm.id] = 1.0
        started = time.monotonic()
        with pytest.raises(DegradedCleanup) as excinfo:
            await lifecycle.stop(vm.id)
        assert time.monotonic() - started < 0.9
        assert "terminate" in excinfo.value.failures
        assert lifecycle.get(vm.id).state is VMState.FAILED
        assert len(provisioner.leases()) == 1

        del hypervisor.health_delay[vm.id]
        assert (await lifecycle.stop(vm.id)).state is VMState.STOPPED

    @pytest.mark.asyncio
    async def test_stop_racing_delete_leaves_no_lock(self, lifecycle, spec):
        vm = await lifecycle.create(spec)
        results = await asyncio.gather(
            lifecycle.delete(vm.id),
            lifecycle.stop(vm.id),
            lifecycle.handle_guest_exit(vm.id, 0),
            return_exceptions=True,
        )
        assert results[0] is None
        assert isinstance(results[1], NotFoundError)
        assert results[2] is None
        assert vm.id not in lifecycle._locks

    @pytest.mark.asyncio
    async def test_delete_running_vm(self, lifecycle, hypervisor, spec):
        vm = await lifecycle.create(spec)
        await lifecycle.delete(vm.id)
        assert hypervisor.running() == []
        assert lifecycle.list() == []
        with pytest.raises(NotFoundError):
            lifecycle.get(vm.id)

    @pytest.mark.asyncio
    async def test_unknown_id(self, lifecycle):
        with pytest.raises(NotFoundError):
            await lifecycle.stop("nope")
        with pytest.raises(NotFoundError):
            await lifecycle.delete("nope")

    @pytest.mark.asyncio
    async def test_list_is_ordered_by_creation(self, lifecycle, spec):
        first = await lifecycle.create(spec)
        second = await lifecycle.create(spec)
        assert [vm.id for vm in lifecycle.list()] == [first.id, second.id]

    @pytest.mark.asyncio
    async def test_snapshots_do_not_leak_state(self, lifecycle, spec):
        vm = await lifecycle.create(spec)
        vm.state = VMState.DELETED
        vm.lease.address = "0.0.0.0"
        current = lifecycle.get(vm.id)
        assert current.state is VMState.RUNNING
        assert current.lease.address == "192.168.10.2"


class TestLiveness:
    """Guests that exit on their own."""

    @pytest.mark.asyncio
    async def test_crash_is_torn_down(self, make_provisioner, make_lifecycle, hypervisor, spec):
        provisioner = make_provisioner()
        lifecycle = make_lifecycle(provisioner)
        vm = await lifecycle.create(spec)
        hypervisor.crash(vm.id, exit_code=3)
        assert await lifecycle.check_liveness() == [vm.id]
        current = lifecycle.get(vm.id)
        assert current.state is VMState.STOPPED
        assert current.exit_code == 3
        assert provisioner.leases() == []

    @pytest.mark.asyncio
    async def test_exit_after_stop_is_ignored(self, lifecycle, spec):
        vm = await lifecycle.create(spec)
        await lifecycle.stop(vm.id)
        assert await lifecycle.handle_guest_exit(vm.id, 1) is None
        assert lifecycle.get(vm.id).exit_code == 0

    @pytest.mark.asyncio
    async def test_unknown_health_is_left_alone(self, lifecycle, hypervisor, spec):
        vm = await lifecycle.create(spec)
        hypervisor.unknown_health.add(vm.id)
        assert await lifecycle.check_liveness() == []
        assert lifecycle.get(vm.id).state is VMState.RUNNING

    @pytest.mark.asyncio
    async def test_slow_guest_does_not_delay_others(self, lifecycle, hypervisor, spec):
        slow = await lifecycle.create(spec)
        crashed = await lifecycle.create(spec)
        hypervisor.health_delay[slow.id] = 1.0
        hypervisor.crash(crashed.id)
        started = time.monotonic()
        assert await lifecycle.check_liveness() == [crashed.id]
        assert time.monotonic() - started < 0.8
        assert lifecycle.get(slow.id).state is VMState.RUNNING
        assert lifecycle.get(crashed.id).state is VMState.STOPPED

    @pytest.mark.asyncio
    async def test_monitor_handles_crash(self, lifecycle, hypervisor, spec):
        vm = await lifecycle.create(spec)
        lifecycle.start_monitor()
        try:
            hypervisor.crash(vm.id)
            for _ in range(50):
                if lifecycle.get(vm.id).state is VMState.STOPPED:
                    break
                await asyncio.sleep(0.02)
        finally:
            await lifecycle.stop_monitor()
        assert lifecycle.get(vm.id).state is VMState.STOPPED
        assert lifecycle.get(vm.id).exit_code == 1


class TestReconcile:
    """Adoption of guests left running by a previous agent."""

    @pytest.mark.asyncio
    async def test_adopts_guests_with_metadata(self, make_provisioner, make_lifecycle, hypervisor, netns, spec):
        previous = make_lifecycle(make_provisioner())
        vm = await previous.create(VMSpec(1, 128, "alpine", port_mapping=((8080, 80),)))

        provisioner = make_provisioner()
        lifecycle = make_lifecycle(provisioner)
        report = await lifecycle.reconcile()
        assert report["adopted"] == [vm.id]
        assert report["reaped"] == []
        assert report["swept"] == {"taps": [], "rules": []}

        adopted = lifecycle.get(vm.id)
        assert adopted.state is VMState.RUNNING
        assert adopted.lease.address == vm.lease.address
        assert adopted.created_at == vm.created_at
        # the adopted address and host port stay taken
        with pytest.raises(ConflictError):
            await lifecycle.create(VMSpec(1, 128, "alpine", port_mapping=((8080, 81),)))
        other = await lifecycle.create(spec)
        assert other.lease.address != vm.lease.address

        await lifecycle.stop(vm.id)
        assert vm.lease.tap_name not in netns.taps

    @pytest.mark.asyncio
    async def test_reaps_guests_without_metadata(self, lifecycle, hypervisor):
        hypervisor.add_guest("stray", {})
        report = await lifecycle.reconcile()
        assert report["reaped"] == ["stray"]
        assert hypervisor.running() == []
        assert lifecycle.list() == []

    @pytest.mark.asyncio
    async def test_hung_guest_listing_times_out(self, make_lifecycle, hypervisor):
        lifecycle = make_lifecycle(launch_timeout=0.1)
        hypervisor.list_guests = Mock(side_effect=lambda: time.sleep(1.5) or [])
        with pytest.raises(OperationTimeout):
            await lifecycle.reconcile()

    @pytest.mark.asyncio
    async def test_reaps_guest_whose_tap_is_gone(self, make_provisioner, make_lifecycle, hypervisor, netns, spec):
        previous = make_lifecycle(make_provisioner())
        vm = await previous.create(spec)
        del netns.taps[vm.lease.tap_name]

        provisioner = make_provisioner()
        lifecycle = make_lifecycle(provisioner)
        report = await lifecycle.reconcile()
        assert report["reaped"] == [vm.id]
        assert provisioner.leases() == []
        assert sorted(report["swept"]["rules"]) == sorted(vm.lease.rule_ids)

    @pytest.mark.asyncio
    async def test_sweeps_orphaned_taps(self, make_provisioner, make_lifecycle, hypervisor, netns, spec):
        previous = make_lifecycle(make_provisioner())
        vm = await previous.create(spec)
        hypervisor.crash(vm.id)

        lifecycle = make_lifecycle(make_provisioner())
        report = await lifecycle.reconcile()
        assert report["adopted"] == []
        assert report["swept"]["taps"] == [vm.lease.tap_name]
        assert netns.taps == {}


def test_descriptor_to_dict(spec):
    from lambdo_agent.models import VMDescriptor

    data = VMDescriptor(id="vm-1", spec=spec, state=VMState.RUNNING).to_dict()
    assert data["state"] == "Running"
    assert data["network"] is None
    assert data["spec"]["image"] == "alpine"
