#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Error taxonomy for the lambdo agent.
Every error surfaced by the core carries its kind and the VM id it concerns.
"""
from typing import Any, Dict, Optional


class LambdoError(Exception):
    """Base class for errors surfaced by the lifecycle core."""

    kind = "Error"

    def __init__(self, message: str, vm_id: Optional[str] = None):
        self.message = message
        self.vm_id = vm_id
        super().__init__(message)

    def __str__(self) -> str:
        if self.vm_id:
            return f"{self.kind} [vm={self.vm_id}]: {self.message}"
        return f"{self.kind}: {self.message}"

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.kind, "vm_id": self.vm_id, "detail": self.message}


class ValidationError(LambdoError):
    """The request was rejected before any resource was touched."""

    kind = "ValidationError"


class ResourceExhausted(LambdoError):
    """An exhaustible pool (addresses) has no free entry."""

    kind = "ResourceExhausted"


class ConflictError(LambdoError):
    """A name/port is already taken, or a state transition is not allowed."""

    kind = "ConflictError"


class AdapterError(LambdoError):
    """The hypervisor adapter failed to launch or control a guest."""

    kind = "AdapterError"


class OperationTimeout(LambdoError, TimeoutError):
    """A bounded call or an operation deadline expired."""

    kind = "TimeoutError"


class NotFoundError(LambdoError):
    """Unknown VM id."""

    kind = "NotFoundError"


class DegradedCleanup(LambdoError):
    """A compensating or teardown action failed; manual intervention may be needed."""

    kind = "DegradedCleanup"

    def __init__(self, message: str, vm_id: Optional[str] = None, failures: Optional[Dict[str, str]] = None):
        super().__init__(message, vm_id)
        self.failures = failures or {}
        # network lease left behind by the failed compensation, if any
        self.lease: Optional[Any] = None

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        if self.failures:
            data["failures"] = dict(self.failures)
        return data
