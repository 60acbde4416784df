#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Firecracker hypervisor adapter.
Each guest gets a rendered config file, an API socket and a detached tmux
session running `firecracker --api-sock ... --config-file ...`. A metadata
file next to the socket lets a restarted agent find and adopt the guest.
"""
import dataclasses
import json
import logging
import socket
import time
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import psutil

from lambdo_agent.utils.tmux import TmuxManager, find_firecracker_pid

from .base import (
    AlreadyStopped,
    GuestRecord,
    Health,
    HealthState,
    HypervisorAdapter,
    InvalidConfig,
    LaunchConfig,
    ProcessFailedToStart,
    ResourceUnavailable,
    TerminateTimeout,
    VMHandle,
)

logger = logging.getLogger("lambdo-agent")

SESSION_PREFIX = "lambdo-"
META_SUFFIX = ".meta.json"


@dataclasses.dataclass(frozen=True)
class GuestPaths:
    config_file: Path
    socket_file: Path
    pid_file: Path
    meta_file: Path
    log_file: Path


def api_request(socket_path: Path, method: str, path: str, body: Optional[bytes] = None) -> Tuple[int, bytes]:
    """HTTP/1.1 request to the Firecracker API over its UNIX socket.
    Returns (status, body); status 0 when the socket does not answer.
    Reads only up to the end of the headers so keep-alive sockets never block us.
    """
    payload = body or b""
    head = f"{method} {path} HTTP/1.1\r\nHost: localhost\r\n"
    if payload:
        head += f"Content-Type: application/json\r\nContent-Length: {len(payload)}\r\n"
    head += "Connection: close\r\n\r\n"
    data = b""
    try:
        with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as sock:
            sock.settimeout(2.0)
            sock.connect(str(socket_path))
            sock.sendall(head.encode("ascii") + payload)
            while b"\r\n\r\n" not in data:
                chunk = sock.recv(4096)
                if not chunk:
                    break
                data += chunk
    except OSError as e:
        logger.debug("API request %s %s on %s failed: %s", method, path, socket_path, e)
        return 0, b""
    header, _, rest = data.partition(b"\r\n\r\n")
    status_line = header.split(b"\r\n", 1)[0].split()
    try:
        return int(status_line[1]), rest
    except (IndexError, ValueError):
        return 0, rest


def render_config(config: LaunchConfig, log_file: Path) -> Dict[str, Any]:
    """Firecracker --config-file document for one guest."""
    return {
        "boot-source": {
            "kernel_image_path": config.kernel,
            "boot_args": config.boot_args,
            "initrd_path": None,
        },
        "drives": [
            {
                "drive_id": "rootfs",
                "is_root_device": True,
                "is_read_only": False,
                "path_on_host": config.rootfs,
            }
        ],
        "machine-config": {
            "vcpu_count": config.vcpu_count,
            "mem_size_mib": config.mem_size_mib,
            "smt": False,
        },
        "network-interfaces": [
            {
                "iface_id": "eth0",
                "guest_mac": config.mac,
                "host_dev_name": config.tap_name,
            }
        ],
        "logger": {
            "log_path": str(log_file),
            "level": "Info",
            "show_level": False,
            "show_log_origin": False,
        },
    }


class FirecrackerAdapter(HypervisorAdapter):
    """Runs Firecracker under tmux and tracks it with psutil."""

    def __init__(
        self,
        firecracker_bin: str,
        conf_dir: str,
        run_dir: str,
        log_dir: str,
        start_grace: float = 2.0,
        tmux: Optional[TmuxManager] = None,
    ):
        self.firecracker_bin = firecracker_bin
        self.conf_dir = Path(conf_dir)
        self.run_dir = Path(run_dir)
        self.log_dir = Path(log_dir)
        self.start_grace = start_grace
        self._tmux = tmux

    @property
    def tmux(self) -> TmuxManager:
        if self._tmux is None:
            self._tmux = TmuxManager()
        return self._tmux

    def paths(self, vm_id: str) -> GuestPaths:
        return GuestPaths(
            config_file=self.conf_dir / f"{vm_id}.json",
            socket_file=self.run_dir / f"{vm_id}.socket",
            pid_file=self.run_dir / f"{vm_id}.pid",
            meta_file=self.run_dir / f"{vm_id}{META_SUFFIX}",
            log_file=self.log_dir / f"{vm_id}.log",
        )

    # ------------------------------------------------------------------
    # launch
    # ------------------------------------------------------------------

    def launch(self, config: LaunchConfig) -> VMHandle:
        for label, path in (("kernel", config.kernel), ("rootfs", config.rootfs)):
            if not path or not Path(path).exists():
                raise InvalidConfig(f"{label} image not found: {path}")
        if not Path(self.firecracker_bin).exists():
            raise ResourceUnavailable(f"firecracker binary not found: {self.firecracker_bin}")
        p = self.paths(config.vm_id)
        session = f"{SESSION_PREFIX}{config.vm_id}"
        if self.tmux.session_exists(session):
            raise ResourceUnavailable(f"tmux session {session} already exists")
        try:
            for d in (self.conf_dir, self.run_dir, self.log_dir):
                d.mkdir(parents=True, exist_ok=True)
            p.socket_file.unlink(missing_ok=True)
            p.log_file.touch(exist_ok=True)
            with p.config_file.open("w", encoding="utf-8") as f:
                json.dump(render_config(config, p.log_file), f, indent=2)
        except OSError as e:
            raise ResourceUnavailable(f"cannot prepare files for {config.vm_id}: {e}") from e
        cmd = [self.firecracker_bin, "--api-sock", str(p.socket_file), "--config-file", str(p.config_file)]
        try:
            self.tmux.new_session(session, "fc", cmd)
        except RuntimeError as e:
            raise ProcessFailedToStart(str(e)) from e
        deadline = time.monotonic() + self.start_grace
        while True:
            pid = find_firecracker_pid(str(p.socket_file), self.firecracker_bin)
            if pid is not None or time.monotonic() >= deadline:
                break
            time.sleep(0.1)
        if pid is None:
            self.tmux.kill_session(session)
            self._cleanup(p)
            raise ProcessFailedToStart(f"firecracker did not start for {config.vm_id} (see {p.log_file})")
        handle = VMHandle(vm_id=config.vm_id, pid=pid, socket_path=str(p.socket_file), session=session)
        p.pid_file.write_text(str(pid))
        meta = dict(config.metadata, vm_id=config.vm_id, pid=pid, socket=str(p.socket_file), session=session)
        with p.meta_file.open("w", encoding="utf-8") as f:
            json.dump(meta, f, indent=2)
        logger.info("firecracker started (pid=%s) for vm=%s", pid, config.vm_id)
        return handle

    # ------------------------------------------------------------------
    # terminate / health
    # ------------------------------------------------------------------

    def terminate(self, handle: VMHandle, graceful: bool, timeout: float) -> None:
        pid = handle.pid
        if not pid or not psutil.pid_exists(pid):
            self._cleanup(self.paths(handle.vm_id), handle.session)
            raise AlreadyStopped(f"vm {handle.vm_id} is not running")
        try:
            proc = psutil.Process(pid)
            if graceful:
                status = 0
                if handle.socket_path:
                    body = json.dumps({"action_type": "SendCtrlAltDel"}).encode("utf-8")
                    status, _ = api_request(Path(handle.socket_path), "PUT", "/actions", body=body)
                if status not in (200, 204):
                    proc.terminate()
            else:
                proc.kill()
            proc.wait(timeout=timeout)
        except psutil.NoSuchProcess:
            pass
        except psutil.TimeoutExpired as e:
            kind = "graceful" if graceful else "forced"
            raise TerminateTimeout(f"{kind} stop of vm {handle.vm_id} timed out after {timeout}s") from e
        self._cleanup(self.paths(handle.vm_id), handle.session)
        logger.info("firecracker stopped (pid=%s, graceful=%s) for vm=%s", pid, graceful, handle.vm_id)

    def health_check(self, handle: VMHandle) -> Health:
        if not handle.pid:
            return Health(HealthState.UNKNOWN)
        try:
            proc = psutil.Process(handle.pid)
            if proc.status() == psutil.STATUS_ZOMBIE:
                return Health(HealthState.EXITED)
        except psutil.NoSuchProcess:
            return Health(HealthState.EXITED)
        except psutil.AccessDenied:
            return Health(HealthState.UNKNOWN)
        return Health(HealthState.RUNNING)

    # ------------------------------------------------------------------
    # discovery
    # ------------------------------------------------------------------

    def list_guests(self) -> List[GuestRecord]:
        guests = []
        if not self.run_dir.is_dir():
            return guests
        for meta_file in sorted(self.run_dir.glob(f"*{META_SUFFIX}")):
            try:
                meta = json.loads(meta_file.read_text(encoding="utf-8"))
            except (OSError, ValueError) as e:
                logger.warning("Ignoring unreadable guest metadata %s: %s", meta_file, e)
                continue
            vm_id = meta.get("vm_id") or meta_file.name[: -len(META_SUFFIX)]
            socket_path = meta.get("socket") or str(self.paths(vm_id).socket_file)
            pid = find_firecracker_pid(socket_path, self.firecracker_bin)
            if pid is None:
                logger.info("Guest %s is gone, removing its runtime files", vm_id)
                self._cleanup(self.paths(vm_id), meta.get("session"))
                continue
            handle = VMHandle(vm_id=vm_id, pid=pid, socket_path=socket_path, session=meta.get("session"))
            guests.append(GuestRecord(handle=handle, metadata=meta))
        return guests

    def _cleanup(self, p: GuestPaths, session: Optional[str] = None) -> None:
        if session and self.tmux.session_exists(session):
            self.tmux.kill_session(session)
        for f in (p.pid_file, p.socket_file, p.meta_file, p.config_file):
            f.unlink(missing_ok=True)
