#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Image resolution for the lambdo agent.
Kernel and rootfs references are either absolute paths or names relative to
the configured image directory. Nothing is downloaded or copied here.
"""
import logging
from pathlib import Path
from typing import Optional, Tuple

from lambdo_agent.errors import ValidationError
from lambdo_agent.models import VMSpec

logger = logging.getLogger("lambdo-agent")

_ROOTFS_SUFFIXES = ("", ".ext4", ".img")


class ImageResolver:
    """Resolve image references against a folder of kernels and root filesystems."""

    def __init__(self, image_dir: Optional[str], default_kernel: Optional[str] = None):
        self.image_dir = Path(image_dir) if image_dir else None
        self.default_kernel = default_kernel

    def _find(self, reference: str, suffixes=("",)) -> Optional[Path]:
        ref = Path(reference)
        if ref.is_absolute():
            return ref if ref.is_file() else None
        if self.image_dir is None:
            return None
        for suffix in suffixes:
            candidate = (self.image_dir / f"{reference}{suffix}").resolve()
            # references must not escape the image directory
            if self.image_dir.resolve() not in candidate.parents:
                return None
            if candidate.is_file():
                return candidate
        return None

    def resolve_rootfs(self, reference: str) -> Path:
        path = self._find(reference, _ROOTFS_SUFFIXES)
        if path is None:
            raise ValidationError(f"Image '{reference}' not found")
        return path

    def resolve_kernel(self, reference: Optional[str]) -> Path:
        ref = reference or self.default_kernel
        if not ref:
            raise ValidationError("No kernel given and no default kernel configured")
        path = self._find(ref)
        if path is None:
            raise ValidationError(f"Kernel '{ref}' not found")
        return path

    def resolve(self, spec: VMSpec) -> Tuple[Path, Path]:
        """Return (kernel, rootfs) host paths for a spec or raise ValidationError."""
        kernel = self.resolve_kernel(spec.kernel)
        rootfs = self.resolve_rootfs(spec.image)
        logger.debug("Resolved image %s -> %s (kernel %s)", spec.image, rootfs, kernel)
        return kernel, rootfs
