"""lambdo agent: microVM lifecycle and network provisioning for Firecracker hosts."""

__version__ = "0.1.0"
