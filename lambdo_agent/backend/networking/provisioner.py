"""
Network Provisioner
===================
Sole owner of the guest address pool, the TAP namespace, the guest firewall
rules and the forwarded host ports. Every mutation of that shared state goes
through the exclusive-access methods below; blocking OS work runs in worker
threads so unrelated VM operations keep making progress.
"""

from __future__ import annotations

import asyncio
import ipaddress
import logging
import uuid
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from lambdo_agent.errors import AdapterError, ConflictError, DegradedCleanup, LambdoError, ResourceExhausted
from lambdo_agent.models import NetworkLease
from lambdo_agent.orchestration.saga import Saga

from .base import DeviceExistsError, FirewallBackend, FirewallRule, NetworkingBackend, NetworkingError, RuleRef
from .helpers import guest_rules, mac_for_address, tap_name
from .pool import AddressPool

logger = logging.getLogger(__name__)

DEFAULT_TAP_PREFIX = "lbd-"
DEFAULT_RULE_PREFIX = "lambdo-"
DEFAULT_TAP_NAME_ATTEMPTS = 4
# host ports handed out for requested guest ports, end exclusive
DEFAULT_AUTO_PORT_RANGE = (10000, 20000)


class NetworkProvisioner:
    """Allocate and release network leases for guests."""

    def __init__(
        self,
        backend: NetworkingBackend,
        firewall: FirewallBackend,
        bridge: str,
        bridge_address: str,
        pool_cidr: Optional[str] = None,
        tap_prefix: str = DEFAULT_TAP_PREFIX,
        rule_prefix: str = DEFAULT_RULE_PREFIX,
        tap_name_attempts: int = DEFAULT_TAP_NAME_ATTEMPTS,
        auto_port_range: Tuple[int, int] = DEFAULT_AUTO_PORT_RANGE,
    ):
        iface = ipaddress.IPv4Interface(bridge_address)
        self.backend = backend
        self.firewall = firewall
        self.bridge = bridge
        self.gateway = str(iface.ip)
        self.prefix_len = iface.network.prefixlen
        self.bridge_network = str(iface.network)
        self.pool = AddressPool(pool_cidr or self.bridge_network, reserved=[self.gateway])
        self.tap_prefix = tap_prefix
        self.rule_prefix = rule_prefix
        self.tap_name_attempts = max(1, int(tap_name_attempts))
        self.auto_port_range = (int(auto_port_range[0]), int(auto_port_range[1]))
        self._lock = asyncio.Lock()
        self._leases: Dict[str, NetworkLease] = {}
        self._taps: Set[str] = set()
        self._host_ports: Dict[int, str] = {}
        self._releasing: Dict[str, "asyncio.Future[None]"] = {}

    # ------------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------------

    async def prepare(self) -> None:
        """Bring up the managed bridge with the gateway address."""
        try:
            await asyncio.to_thread(self.backend.prepare_bridge, self.bridge, self.gateway, self.prefix_len)
        except NetworkingError as e:
            raise AdapterError(f"Bridge {self.bridge} could not be prepared: {e}") from e

    # ------------------------------------------------------------------
    # Allocate
    # ------------------------------------------------------------------

    async def allocate(
        self, vm_id: str, port_mapping: Iterable[Tuple[int, int]] = (), requested_ports: Iterable[int] = ()
    ) -> NetworkLease:
        """Reserve an address, create the TAP and install confirmed firewall rules.

        Each of `requested_ports` is forwarded from the first free host port of
        `auto_port_range`; the lease's port_mapping lists explicit and picked
        pairs alike.

        Raises ResourceExhausted (pool empty, no free host port), ConflictError
        (host port taken, TAP names exhausted), AdapterError (host networking
        failure, after compensation) or DegradedCleanup (compensation failed).
        """
        port_mapping = tuple((int(h), int(g)) for h, g in port_mapping)
        requested_ports = tuple(int(p) for p in requested_ports)
        ctx: Dict[str, Any] = {}

        async def reserve() -> NetworkLease:
            ctx["lease"], ctx["rules"] = await self._reserve(vm_id, port_mapping, requested_ports)
            return ctx["lease"]

        saga = Saga(f"allocate-network {vm_id}", vm_id)
        saga.step("reserve-address", reserve, self._unreserve)
        saga.step("create-tap", lambda: self._create_tap(ctx["lease"]), self._remove_tap)
        for i in range(2 + 2 * (len(port_mapping) + len(requested_ports))):
            saga.step(
                f"install-rule-{i}",
                lambda i=i: self._install_rule(ctx["lease"], ctx["rules"][i]),
                self._remove_rule,
            )
        saga.step("confirm-rules", lambda: self._confirm_rules(ctx["lease"]))
        try:
            await saga.run()
        except DegradedCleanup as exc:
            exc.lease = ctx.get("lease")
            raise
        lease = ctx["lease"]
        logger.info("Allocated %s (tap %s, %d rules) to VM %s", lease.address, lease.tap_name, len(lease.rule_ids), vm_id)
        return lease

    async def _reserve(
        self, vm_id: str, port_mapping: Tuple[Tuple[int, int], ...], requested_ports: Tuple[int, ...] = ()
    ) -> Tuple[NetworkLease, List[FirewallRule]]:
        async with self._lock:
            if vm_id in self._leases:
                raise ConflictError("VM already holds a network lease", vm_id=vm_id)
            taken = sorted(h for h, _ in port_mapping if h in self._host_ports)
            if taken:
                raise ConflictError(f"Host port(s) already forwarded: {taken}", vm_id=vm_id)
            port_mapping = port_mapping + self._pick_host_ports(vm_id, requested_ports, {h for h, _ in port_mapping})
            address = self.pool.acquire(vm_id)
            for host_port, _ in port_mapping:
                self._host_ports[host_port] = vm_id
            lease = NetworkLease(
                vm_id=vm_id,
                address=address,
                prefix_len=self.prefix_len,
                gateway=self.gateway,
                bridge=self.bridge,
                mac=mac_for_address(address),
                port_mapping=port_mapping,
            )
            self._leases[vm_id] = lease
        token = uuid.uuid4().hex[:10]
        rules = guest_rules(address, self.bridge, self.bridge_network, list(port_mapping), self.rule_prefix, token)
        return lease, rules

    def _pick_host_ports(
        self, vm_id: str, guest_ports: Tuple[int, ...], exclude: Set[int]
    ) -> Tuple[Tuple[int, int], ...]:
        """First free host port of the auto range for each guest port. Caller holds the lock."""
        start, end = self.auto_port_range
        free = (p for p in range(start, end) if p not in self._host_ports and p not in exclude)
        picked = []
        for guest_port in guest_ports:
            host_port = next(free, None)
            if host_port is None:
                raise ResourceExhausted(f"No free host port in {start}-{end - 1}", vm_id=vm_id)
            picked.append((host_port, guest_port))
        return tuple(picked)

    async def _unreserve(self, lease: NetworkLease) -> None:
        async with self._lock:
            if lease.rule_ids or lease.tap_name in self._taps:
                # something could not be removed: keep the address out of circulation
                logger.error(
                    "Lease of VM %s quarantined: tap=%s rules=%s still present", lease.vm_id, lease.tap_name, lease.rule_ids
                )
                return
            self._free(lease)

    def _free(self, lease: NetworkLease) -> None:
        """Return address, TAP name and host ports. Caller holds the lock."""
        self.pool.release(lease.address)
        self._taps.discard(lease.tap_name)
        for host_port, _ in lease.port_mapping:
            if self._host_ports.get(host_port) == lease.vm_id:
                del self._host_ports[host_port]
        if self._leases.get(lease.vm_id) is lease:
            del self._leases[lease.vm_id]
        lease.released = True

    async def _create_tap(self, lease: NetworkLease) -> NetworkLease:
        for attempt in range(self.tap_name_attempts):
            name = tap_name(self.tap_prefix, lease.vm_id, attempt)
            async with self._lock:
                if name in self._taps:
                    logger.info("TAP name %s in use by another lease, trying next", name)
                    continue
                self._taps.add(name)
            try:
                await asyncio.to_thread(self.backend.create_tap, name, self.bridge, lease.mac)
            except DeviceExistsError:
                async with self._lock:
                    self._taps.discard(name)
                logger.warning("TAP %s already exists on host, trying next name", name)
                continue
            except NetworkingError as e:
                async with self._lock:
                    self._taps.discard(name)
                raise AdapterError(f"TAP creation failed: {e}", vm_id=lease.vm_id) from e
            lease.tap_name = name
            return lease
        raise ConflictError(f"No free TAP name after {self.tap_name_attempts} attempts", vm_id=lease.vm_id)

    async def _remove_tap(self, lease: NetworkLease) -> None:
        await asyncio.to_thread(self.backend.delete_tap, lease.tap_name)
        async with self._lock:
            self._taps.discard(lease.tap_name)

    async def _install_rule(self, lease: NetworkLease, rule: FirewallRule) -> Tuple[NetworkLease, RuleRef]:
        try:
            await asyncio.to_thread(self.firewall.insert_rule, rule)
        except NetworkingError as e:
            raise AdapterError(f"Firewall rule {rule.ref} not installed: {e}", vm_id=lease.vm_id) from e
        lease.rule_ids.append(str(rule.ref))
        return lease, rule.ref

    async def _remove_rule(self, installed: Tuple[NetworkLease, RuleRef]) -> None:
        lease, ref = installed
        await asyncio.to_thread(self.firewall.delete_rule, ref)
        if str(ref) in lease.rule_ids:
            lease.rule_ids.remove(str(ref))

    async def _confirm_rules(self, lease: NetworkLease) -> None:
        missing = []
        for rule_id in lease.rule_ids:
            if not await asyncio.to_thread(self.firewall.rule_exists, RuleRef.parse(rule_id)):
                missing.append(rule_id)
        if missing:
            raise AdapterError(f"Firewall rules not confirmed: {missing}", vm_id=lease.vm_id)

    # ------------------------------------------------------------------
    # Release
    # ------------------------------------------------------------------

    async def release(self, lease: NetworkLease) -> None:
        """Remove rules by recorded id, delete the TAP and return the address.

        The live lease is looked up by VM id, so a snapshot copy works too.
        Idempotent: releasing a released (or unknown) lease is a no-op, and
        concurrent callers share a single in-flight release. Raises
        NetworkingError if something could not be removed; the lease then
        stays live with only the remaining rule ids and can be released again.
        """
        async with self._lock:
            live = self._leases.get(lease.vm_id)
            if lease.released or live is None or live.released:
                return
            task = self._releasing.get(lease.vm_id)
            if task is None:
                task = asyncio.ensure_future(self._teardown(live))
                self._releasing[lease.vm_id] = task
        await asyncio.shield(task)

    async def _teardown(self, lease: NetworkLease) -> None:
        try:
            errors: List[str] = []
            for rule_id in list(reversed(lease.rule_ids)):
                try:
                    await asyncio.to_thread(self.firewall.delete_rule, RuleRef.parse(rule_id))
                except (NetworkingError, ValueError) as e:
                    errors.append(f"{rule_id}: {e}")
                    continue
                lease.rule_ids.remove(rule_id)
            if lease.tap_name:
                try:
                    await asyncio.to_thread(self.backend.delete_tap, lease.tap_name)
                except NetworkingError as e:
                    errors.append(f"{lease.tap_name}: {e}")
            if errors:
                raise NetworkingError(f"Release of lease for VM {lease.vm_id} incomplete: {'; '.join(errors)}")
            async with self._lock:
                self._free(lease)
            logger.info("Released %s (tap %s) from VM %s", lease.address, lease.tap_name, lease.vm_id)
        finally:
            self._releasing.pop(lease.vm_id, None)

    # ------------------------------------------------------------------
    # Recovery
    # ------------------------------------------------------------------

    async def adopt(self, vm_id: str, lease_data: Dict[str, Any]) -> NetworkLease:
        """Re-register the lease of a guest that survived an agent restart."""
        try:
            lease = NetworkLease.from_dict(lease_data)
        except (KeyError, TypeError, ValueError) as e:
            raise ConflictError(f"Unusable lease record: {e}", vm_id=vm_id) from e
        if lease.vm_id != vm_id or lease.bridge != self.bridge or not lease.tap_name:
            raise ConflictError("Lease record does not match this host's network", vm_id=vm_id)
        async with self._lock:
            if vm_id in self._leases:
                raise ConflictError("VM already holds a network lease", vm_id=vm_id)
            if lease.tap_name in self._taps:
                raise ConflictError(f"TAP {lease.tap_name} already leased", vm_id=vm_id)
            taken = sorted(h for h, _ in lease.port_mapping if h in self._host_ports)
            if taken:
                raise ConflictError(f"Host port(s) already forwarded: {taken}", vm_id=vm_id)
            self.pool.claim(lease.address, vm_id)
            self._taps.add(lease.tap_name)
            for host_port, _ in lease.port_mapping:
                self._host_ports[host_port] = vm_id
            self._leases[vm_id] = lease
        try:
            await self._restore_attachment(lease)
        except (LambdoError, NetworkingError):
            async with self._lock:
                self._taps.discard(lease.tap_name)
                self._free(lease)
            lease.released = False
            raise
        logger.info("Adopted lease %s (tap %s) for VM %s", lease.address, lease.tap_name, vm_id)
        return lease

    async def _restore_attachment(self, lease: NetworkLease) -> None:
        if not await asyncio.to_thread(self.backend.tap_exists, lease.tap_name):
            raise ConflictError(f"TAP {lease.tap_name} no longer exists", vm_id=lease.vm_id)
        present = []
        for rule_id in lease.rule_ids:
            ref = RuleRef.parse(rule_id)
            if await asyncio.to_thread(self.firewall.rule_exists, ref):
                present.append(ref)
        expected = 2 + 2 * len(lease.port_mapping)
        if len(present) == expected:
            return
        logger.warning("VM %s: %d of %d firewall rules present, reinstalling", lease.vm_id, len(present), expected)
        for ref in present:
            await asyncio.to_thread(self.firewall.delete_rule, ref)
        lease.rule_ids = []
        token = uuid.uuid4().hex[:10]
        for rule in guest_rules(
            lease.address, self.bridge, self.bridge_network, list(lease.port_mapping), self.rule_prefix, token
        ):
            await asyncio.to_thread(self.firewall.insert_rule, rule)
            lease.rule_ids.append(str(rule.ref))
        await self._confirm_rules(lease)

    async def sweep_orphans(self) -> Dict[str, List[str]]:
        """Delete managed TAPs and tagged rules that no live lease accounts for."""
        removed: Dict[str, List[str]] = {"taps": [], "rules": []}
        async with self._lock:
            live_rules = {rid for lease in self._leases.values() for rid in lease.rule_ids}
            for tap in await asyncio.to_thread(self.backend.list_taps, self.tap_prefix):
                if tap in self._taps:
                    continue
                await asyncio.to_thread(self.backend.delete_tap, tap)
                removed["taps"].append(tap)
            for ref in await asyncio.to_thread(self.firewall.list_rules, self.rule_prefix):
                if str(ref) in live_rules:
                    continue
                await asyncio.to_thread(self.firewall.delete_rule, ref)
                removed["rules"].append(str(ref))
        if removed["taps"] or removed["rules"]:
            logger.warning("Removed orphaned network state: %s", removed)
        return removed

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def leases(self) -> List[NetworkLease]:
        return list(self._leases.values())

    def stats(self) -> Dict[str, Any]:
        return {
            "bridge": self.bridge,
            "gateway": self.gateway,
            "pool": str(self.pool.network),
            "size": self.pool.size,
            "free": self.pool.free_count,
            "allocated": self.pool.allocated(),
            "taps": sorted(self._taps),
            "host_ports": {str(p): owner for p, owner in sorted(self._host_ports.items())},
        }
