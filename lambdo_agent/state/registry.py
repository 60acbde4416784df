#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
VM registry for the lambdo agent.
Maps VM ids to their descriptor, network lease and adapter handle.
Readers always get a copy; the live entries never leave this module.
"""
import copy
import dataclasses
import logging
import threading
from typing import Any, Callable, Dict, List, Optional

from lambdo_agent.errors import ConflictError, NotFoundError
from lambdo_agent.models import NetworkLease, VMDescriptor

logger = logging.getLogger("lambdo-agent")


@dataclasses.dataclass
class RegistryEntry:
    descriptor: VMDescriptor
    lease: Optional[NetworkLease] = None
    handle: Optional[Any] = None

    def snapshot(self) -> "RegistryEntry":
        # the handle is owned by the adapter and treated as opaque
        descriptor, lease = copy.deepcopy((self.descriptor, self.lease))
        return RegistryEntry(descriptor, lease, self.handle)


class Registry:
    """Thread-safe id -> entry map."""

    def __init__(self):
        self._lock = threading.Lock()
        self._entries: Dict[str, RegistryEntry] = {}

    def insert(self, entry: RegistryEntry) -> None:
        vm_id = entry.descriptor.id
        with self._lock:
            if vm_id in self._entries:
                raise ConflictError("VM id already registered", vm_id=vm_id)
            self._entries[vm_id] = entry
        logger.debug("Registered VM %s", vm_id)

    def remove(self, vm_id: str) -> RegistryEntry:
        with self._lock:
            entry = self._entries.pop(vm_id, None)
        if entry is None:
            raise NotFoundError("Unknown VM id", vm_id=vm_id)
        logger.debug("Unregistered VM %s", vm_id)
        return entry

    def update(self, vm_id: str, mutate: Callable[[RegistryEntry], None]) -> RegistryEntry:
        """Apply `mutate` to the live entry under the lock; return a snapshot."""
        with self._lock:
            entry = self._entries.get(vm_id)
            if entry is None:
                raise NotFoundError("Unknown VM id", vm_id=vm_id)
            mutate(entry)
            return entry.snapshot()

    def get(self, vm_id: str) -> Optional[RegistryEntry]:
        with self._lock:
            entry = self._entries.get(vm_id)
            return entry.snapshot() if entry is not None else None

    def list(self) -> List[RegistryEntry]:
        with self._lock:
            return [e.snapshot() for e in self._entries.values()]

    def __contains__(self, vm_id: str) -> bool:
        with self._lock:
            return vm_id in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
