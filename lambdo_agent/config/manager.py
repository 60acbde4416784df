#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Configuration management module for the lambdo agent.
This module loads the agent JSON config, fills in defaults, validates it and
builds the runtime components (provisioner, hypervisor adapter, lifecycle)
from the `defaults` sections.
"""
import copy
import ipaddress
import json
import logging
import os
from pathlib import Path
from typing import Any, Dict

from lambdo_agent.backend.networking import (
    NetworkingError,
    NetworkProvisioner,
    get_backend_by_driver,
    get_firewall_by_driver,
)
from lambdo_agent.hypervisor import HypervisorError, get_adapter_by_driver
from lambdo_agent.images import ImageResolver
from lambdo_agent.orchestration.lifecycle import LifecycleManager
from lambdo_agent.utils.validation import deep_update

logger = logging.getLogger("lambdo-agent")

DEFAULT_CONFIG_PATH = "/etc/lambdo/agent.json"

# Values used when the config file does not set them
BUILTIN_DEFAULTS: Dict[str, Any] = {
    "host": {
        "firecracker_bin": "/usr/bin/firecracker",
        "conf_dir": "/etc/lambdo/vms",
        "run_dir": "/var/run/lambdo",
        "log_dir": "/var/log/lambdo",
        "image_dir": "/var/lib/lambdo/images",
        "kernel": "vmlinux.bin",
    },
    "net": {
        "driver": "linux-bridge",
        "firewall": "iptables",
        "bridge": "lambdo0",
        "bridge_address": "192.168.10.1/24",
        "pool": None,
        "tap_prefix": "lbd-",
        "tap_name_attempts": 4,
        "auto_port_range": [10000, 20000],
        "uplink": None,
    },
    "hypervisor": {
        "driver": "firecracker",
        "launch_timeout": 30.0,
        "stop_timeout": 10.0,
        "kill_timeout": 5.0,
        "exit_timeout": 5.0,
        "health_interval": 2.0,
        "health_timeout": 2.0,
    },
}

_TIMEOUT_KEYS = (
    "launch_timeout",
    "stop_timeout",
    "kill_timeout",
    "exit_timeout",
    "health_interval",
    "health_timeout",
)


class ConfigManager:
    """Manager for configuration operations."""

    def __init__(self, agent_defaults: Dict[str, Any]):
        self.agent_defaults = agent_defaults

    def load_agent_config(self) -> Dict[str, Any]:
        """Load agent config from $LAMBDO_AGENT_CONFIG and validate it.
        Precedence: env > JSON file > built-in defaults, for bind host/port.
        Any parse error or invalid value is fatal: the agent must not start
        with a config it does not understand.
        """
        cfg: Dict[str, Any] = {
            "bind_host": "0.0.0.0",
            "bind_port": 8080,
            "logging": {"level": "INFO"},
        }
        cfg_path = os.environ.get("LAMBDO_AGENT_CONFIG", DEFAULT_CONFIG_PATH)
        file_cfg: Dict[str, Any] = {}
        p = Path(cfg_path)
        if p.exists():
            with p.open("r", encoding="utf-8") as f:
                try:
                    file_cfg = json.load(f)
                except ValueError as e:
                    raise RuntimeError(f"Invalid JSON in LAMBDO_AGENT_CONFIG='{cfg_path}': {e}") from e
            if not isinstance(file_cfg, dict):
                raise RuntimeError(f"LAMBDO_AGENT_CONFIG='{cfg_path}' must contain a JSON object")
        else:
            logger.info("Config file %s not found, using built-in defaults", cfg_path)
        defaults = copy.deepcopy(BUILTIN_DEFAULTS)
        file_defaults = file_cfg.get("defaults", {})
        if not isinstance(file_defaults, dict):
            raise RuntimeError("'defaults' must be an object")
        deep_update(defaults, file_defaults)
        for key, value in file_cfg.items():
            if key == "defaults":
                continue
            cfg[key] = value
        cfg["defaults"] = defaults
        # env overrides for the listening address
        if os.environ.get("LAMBDO_AGENT_BIND_HOST"):
            cfg["bind_host"] = os.environ["LAMBDO_AGENT_BIND_HOST"]
        if os.environ.get("LAMBDO_AGENT_BIND_PORT"):
            cfg["bind_port"] = os.environ["LAMBDO_AGENT_BIND_PORT"]
        self.validate(cfg)
        self.agent_defaults = cfg["defaults"]
        return cfg

    @staticmethod
    def validate(cfg: Dict[str, Any]) -> None:
        """Normalize value types in place; raise RuntimeError on anything unusable."""
        try:
            cfg["bind_port"] = int(cfg["bind_port"])
        except (TypeError, ValueError) as e:
            raise RuntimeError(f"Invalid bind_port {cfg.get('bind_port')!r}") from e
        if not 0 < cfg["bind_port"] < 65536:
            raise RuntimeError(f"bind_port out of range: {cfg['bind_port']}")
        if not isinstance(cfg.get("logging"), dict):
            raise RuntimeError("'logging' must be an object")
        net = cfg["defaults"]["net"]
        hyp = cfg["defaults"]["hypervisor"]
        try:
            iface = ipaddress.IPv4Interface(net["bridge_address"])
        except (ValueError, TypeError) as e:
            raise RuntimeError(f"Invalid net.bridge_address {net.get('bridge_address')!r}: {e}") from e
        if iface.ip == iface.network.network_address:
            raise RuntimeError(f"net.bridge_address {iface} must be a host address")
        if net.get("pool"):
            try:
                ipaddress.IPv4Network(net["pool"], strict=False)
            except ValueError as e:
                raise RuntimeError(f"Invalid net.pool {net['pool']!r}: {e}") from e
        if not isinstance(net.get("bridge"), str) or not 0 < len(net["bridge"]) <= 15:
            raise RuntimeError(f"Invalid net.bridge {net.get('bridge')!r}")
        if not isinstance(net.get("tap_prefix"), str) or len(net["tap_prefix"]) > 11:
            raise RuntimeError(f"net.tap_prefix must be a string of at most 11 characters, got {net.get('tap_prefix')!r}")
        try:
            net["tap_name_attempts"] = int(net["tap_name_attempts"])
        except (TypeError, ValueError) as e:
            raise RuntimeError(f"Invalid net.tap_name_attempts {net.get('tap_name_attempts')!r}") from e
        if net["tap_name_attempts"] < 1:
            raise RuntimeError("net.tap_name_attempts must be at least 1")
        try:
            low, high = (int(v) for v in net["auto_port_range"])
        except (TypeError, ValueError) as e:
            raise RuntimeError(f"Invalid net.auto_port_range {net.get('auto_port_range')!r}") from e
        if not 0 < low < high <= 65536:
            raise RuntimeError(f"net.auto_port_range must satisfy 0 < start < end <= 65536, got [{low}, {high}]")
        net["auto_port_range"] = [low, high]
        for key in _TIMEOUT_KEYS:
            try:
                hyp[key] = float(hyp[key])
            except (TypeError, ValueError) as e:
                raise RuntimeError(f"Invalid hypervisor.{key} {hyp.get(key)!r}") from e
            if hyp[key] <= 0:
                raise RuntimeError(f"hypervisor.{key} must be positive")

    # ------------------------------------------------------------------
    # component builders
    # ------------------------------------------------------------------

    def build_provisioner(self) -> NetworkProvisioner:
        net = self.agent_defaults["net"]
        try:
            backend = get_backend_by_driver(net["driver"], uplink=net.get("uplink"))
            firewall = get_firewall_by_driver(net["firewall"])
        except NetworkingError as e:
            raise RuntimeError(str(e)) from e
        return NetworkProvisioner(
            backend,
            firewall,
            bridge=net["bridge"],
            bridge_address=net["bridge_address"],
            pool_cidr=net.get("pool"),
            tap_prefix=net["tap_prefix"],
            tap_name_attempts=net["tap_name_attempts"],
            auto_port_range=tuple(net["auto_port_range"]),
        )

    def build_lifecycle(self) -> LifecycleManager:
        host = self.agent_defaults["host"]
        hyp = self.agent_defaults["hypervisor"]
        try:
            adapter = get_adapter_by_driver(hyp["driver"], host)
        except (HypervisorError, KeyError) as e:
            raise RuntimeError(f"Hypervisor configuration error: {e}") from e
        return LifecycleManager(
            provisioner=self.build_provisioner(),
            adapter=adapter,
            resolver=ImageResolver(host.get("image_dir"), host.get("kernel")),
            launch_timeout=hyp["launch_timeout"],
            stop_timeout=hyp["stop_timeout"],
            kill_timeout=hyp["kill_timeout"],
            exit_timeout=hyp["exit_timeout"],
            health_interval=hyp["health_interval"],
            health_timeout=hyp["health_timeout"],
        )
