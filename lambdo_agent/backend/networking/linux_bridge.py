"""
Linux Bridge Networking Backend
===============================
This module implements the linux-bridge networking backend for Firecracker VMs.
It provides bridge bring-up, TAP interface creation and bridge attachment via
netlink (pyroute2).
"""

from __future__ import annotations

import logging
from typing import List, Optional

from pyroute2 import IPRoute, NetlinkError

from .base import DeviceExistsError, NetworkingBackend, NetworkingError

logger = logging.getLogger(__name__)

IP_FORWARD = "/proc/sys/net/ipv4/ip_forward"


def _lookup(ip: IPRoute, name: str) -> Optional[int]:
    idx_list = ip.link_lookup(ifname=name)
    return idx_list[0] if idx_list else None


def _get_mtu(ip: IPRoute, ifname: Optional[str]) -> Optional[int]:
    """Get MTU from an interface (the uplink) to avoid fragmentation."""
    if not ifname:
        return None
    try:
        for link in ip.get_links():
            if link.get_attr("IFLA_IFNAME") == ifname:
                mtu = link.get_attr("IFLA_MTU")
                if mtu and mtu > 0:
                    return mtu
        return None
    except NetlinkError as e:
        logger.warning("LinuxBridgeBackend: failed to get MTU for %s: %s", ifname, e)
        return None


class LinuxBridgeBackend(NetworkingBackend):
    """Linux bridge + TAP networking backend."""

    def __init__(self, uplink: Optional[str] = None):
        self.uplink = uplink
        self._mtu: Optional[int] = None

    def prepare_bridge(self, bridge: str, gateway: str, prefix_len: int, uplink: Optional[str] = None) -> None:
        """Create the bridge if missing, assign the gateway address, bring it up and enable forwarding."""
        uplink = uplink or self.uplink
        try:
            ip = IPRoute()
            try:
                br_idx = _lookup(ip, bridge)
                if br_idx is None:
                    logger.info("Creating bridge %s", bridge)
                    ip.link("add", ifname=bridge, kind="bridge")
                    br_idx = _lookup(ip, bridge)
                if br_idx is None:
                    raise NetworkingError(f"Bridge not found after creation: {bridge}")
                ip.link("set", index=br_idx, state="up")
                existing = [a.get_attr("IFA_ADDRESS") for a in ip.get_addr(index=br_idx)]
                if gateway not in existing:
                    logger.info("Adding %s/%d to bridge %s", gateway, prefix_len, bridge)
                    ip.addr("add", index=br_idx, address=gateway, prefixlen=prefix_len)
                self._mtu = _get_mtu(ip, uplink)
            finally:
                ip.close()
        except NetlinkError as e:
            raise NetworkingError(f"Bridge preparation failed for {bridge}: {e}") from e
        try:
            with open(IP_FORWARD, "w") as f:
                f.write("1")
        except OSError as e:
            logger.warning("Failed to enable IP forwarding: %s", e)
        logger.info("Bridge %s ready (%s/%d)", bridge, gateway, prefix_len)

    def tap_exists(self, name: str) -> bool:
        ip = IPRoute()
        try:
            return _lookup(ip, name) is not None
        except NetlinkError as e:
            raise NetworkingError(f"Failed to look up {name}: {e}") from e
        finally:
            ip.close()

    def create_tap(self, name: str, bridge: str, mac: Optional[str] = None) -> None:
        """Create a TAP, attach it to the bridge and bring it up.
        An existing device with the same name is never reused."""
        ip = IPRoute()
        try:
            if _lookup(ip, name) is not None:
                raise DeviceExistsError(f"TAP {name} already exists")
            try:
                ip.link("add", ifname=name, kind="tuntap", mode="tap")
            except NetlinkError as e:
                # EEXIST: lost a race against another creator
                if e.code == 17:
                    raise DeviceExistsError(f"TAP {name} already exists") from e
                raise
            tap_idx = _lookup(ip, name)
            br_idx = _lookup(ip, bridge)
            if tap_idx is None:
                raise NetworkingError(f"TAP {name} not found after creation")
            if br_idx is None:
                raise NetworkingError(f"Bridge not found: {bridge}")
            if self._mtu:
                try:
                    ip.link("set", index=tap_idx, mtu=self._mtu)
                except NetlinkError as e:
                    logger.warning("Failed to set MTU on TAP %s: %s", name, e)
            ip.link("set", index=tap_idx, master=br_idx)
            ip.link("set", index=tap_idx, state="up")
            logger.info("TAP %s attached to bridge %s", name, bridge)
        except NetlinkError as e:
            raise NetworkingError(f"TAP creation failed for {name}: {e}") from e
        finally:
            ip.close()

    def delete_tap(self, name: str) -> None:
        """Down, detach and delete a TAP; absent devices are ignored."""
        ip = IPRoute()
        try:
            try:
                idx = _lookup(ip, name)
            except NetlinkError as e:
                raise NetworkingError(f"Failed to look up TAP {name}: {e}") from e
            if idx is None:
                logger.debug("TAP %s not found for deletion", name)
                return
            try:
                ip.link("set", index=idx, state="down")
            except NetlinkError:
                pass
            try:
                ip.link("set", index=idx, master=0)
            except NetlinkError:
                pass
            try:
                ip.link("del", index=idx)
            except NetlinkError as e:
                # ENODEV: already gone
                if e.code != 19:
                    raise NetworkingError(f"Failed to delete TAP {name}: {e}") from e
            logger.info("Deleted TAP %s", name)
        finally:
            ip.close()

    def list_taps(self, prefix: str) -> List[str]:
        ip = IPRoute()
        try:
            names = [link.get_attr("IFLA_IFNAME") for link in ip.get_links()]
        except NetlinkError as e:
            raise NetworkingError(f"Failed to list links: {e}") from e
        finally:
            ip.close()
        return sorted(n for n in names if n and n.startswith(prefix))
