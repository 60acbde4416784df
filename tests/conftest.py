"""
Pytest configuration and shared fixtures for lambdo agent tests.
Everything runs against the in-memory networking backends and the fake
hypervisor; no test touches the host network or starts a real guest.
"""

import pytest

from lambdo_agent.backend.networking.memory import MemoryFirewall, MemoryNetworkingBackend
from lambdo_agent.backend.networking.provisioner import NetworkProvisioner
from lambdo_agent.hypervisor.fake import FakeHypervisor
from lambdo_agent.images import ImageResolver
from lambdo_agent.models import VMSpec
from lambdo_agent.orchestration.lifecycle import LifecycleManager

BRIDGE = "lambdo0"


@pytest.fixture
def image_dir(tmp_path):
    """Image folder holding a kernel and one root filesystem."""
    images = tmp_path / "images"
    images.mkdir()
    (images / "vmlinux.bin").write_bytes(b"\x7fELF")
    (images / "alpine.ext4").write_bytes(b"\x00" * 16)
    return images


@pytest.fixture
def resolver(image_dir):
    return ImageResolver(str(image_dir), "vmlinux.bin")


@pytest.fixture
def netns():
    return MemoryNetworkingBackend()


@pytest.fixture
def firewall():
    return MemoryFirewall()


@pytest.fixture
def make_provisioner(netns, firewall):
    """Factory for a provisioner whose bridge already exists."""

    def _make(bridge_address="192.168.10.1/24", pool=None, **kwargs):
        provisioner = NetworkProvisioner(
            netns, firewall, bridge=BRIDGE, bridge_address=bridge_address, pool_cidr=pool, **kwargs
        )
        netns.prepare_bridge(BRIDGE, provisioner.gateway, provisioner.prefix_len)
        return provisioner

    return _make


@pytest.fixture
def provisioner(make_provisioner):
    return make_provisioner()


@pytest.fixture
def hypervisor():
    return FakeHypervisor()


@pytest.fixture
def make_lifecycle(make_provisioner, hypervisor, resolver):
    """Factory for a lifecycle manager with short timeouts."""

    def _make(provisioner=None, **kwargs):
        options = dict(
            launch_timeout=1.0,
            stop_timeout=0.2,
            kill_timeout=0.2,
            exit_timeout=0.3,
            health_interval=0.05,
            health_timeout=0.2,
            exit_poll=0.01,
        )
        options.update(kwargs)
        return LifecycleManager(provisioner or make_provisioner(), hypervisor, resolver, **options)

    return _make


@pytest.fixture
def lifecycle(make_lifecycle):
    return make_lifecycle()


@pytest.fixture
def spec():
    return VMSpec(vcpu_count=1, mem_size_mib=128, image="alpine")
