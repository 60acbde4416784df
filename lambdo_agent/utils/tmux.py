#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Tmux helpers for the lambdo agent.
Firecracker runs inside a detached tmux session so its console survives the agent.
"""
import logging
import shlex
from typing import List, Optional

import psutil
from libtmux import Server as TmuxServer
from libtmux.exc import LibTmuxException

logger = logging.getLogger("lambdo-agent")


class TmuxManager:
    """Session operations through `server.cmd`, avoiding deprecated libtmux helpers."""

    def __init__(self, server: Optional[TmuxServer] = None):
        self.server = server or TmuxServer()

    def session_exists(self, name: str) -> bool:
        try:
            res = self.server.cmd("has-session", "-t", name)
        except LibTmuxException:
            return False
        return getattr(res, "returncode", 1) == 0

    def kill_session(self, name: str) -> None:
        """Kill a session; a missing session is not an error."""
        try:
            self.server.cmd("kill-session", "-t", name)
        except LibTmuxException as e:
            logger.debug("kill-session %s: %s", name, e)

    def new_session(self, name: str, window_name: str, command: List[str]) -> None:
        # `sh -lc` so $PATH behaves as in a login shell
        cmd_str = " ".join(shlex.quote(x) for x in command)
        try:
            res = self.server.cmd("new-session", "-d", "-s", name, "-n", window_name, "sh", "-lc", cmd_str)
        except LibTmuxException as e:
            raise RuntimeError(f"Failed to create tmux session {name}: {e}") from e
        if getattr(res, "returncode", 0) not in (0, None):
            raise RuntimeError(f"Failed to create tmux session {name}: {' '.join(getattr(res, 'stderr', []) or [])}")


def find_firecracker_pid(socket_path: str, firecracker_bin: str) -> Optional[int]:
    """PID of the firecracker process serving `socket_path`, matched on its command line."""
    for proc in psutil.process_iter(["pid", "cmdline"]):
        try:
            cmdline = proc.info.get("cmdline") or []
        except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
            continue
        if cmdline and firecracker_bin in cmdline[0] and any(socket_path in arg for arg in cmdline):
            return proc.info["pid"]
    return None
