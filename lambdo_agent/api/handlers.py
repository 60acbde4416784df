#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
API handlers module for the lambdo agent.
This module contains the endpoint handlers and the mapping from core error
kinds to HTTP status codes.
"""
import logging
import platform
import time
from typing import Any, Dict

from starlette.responses import JSONResponse

from lambdo_agent import __version__
from lambdo_agent.errors import LambdoError
from lambdo_agent.models import VMCreateRequest, VMSpawnRequest
from lambdo_agent.orchestration.lifecycle import LifecycleManager

logger = logging.getLogger("lambdo-agent")

STATUS_BY_KIND: Dict[str, int] = {
    "ValidationError": 400,
    "NotFoundError": 404,
    "ConflictError": 409,
    "ResourceExhausted": 503,
    "AdapterError": 502,
    "TimeoutError": 504,
    "DegradedCleanup": 500,
}


def error_response(exc: LambdoError) -> JSONResponse:
    status = STATUS_BY_KIND.get(exc.kind, 500)
    if status >= 500:
        logger.error("%s", exc)
    else:
        logger.info("%s", exc)
    return JSONResponse(status_code=status, content=exc.to_dict())


class APIHandlers:

    def __init__(self, lifecycle: LifecycleManager):
        self.lifecycle = lifecycle
        self.started_at = time.time()

    def healthz(self) -> Dict[str, Any]:
        return {"status": "ok"}

    def v1_version(self) -> Dict[str, Any]:
        return {
            "status": "success",
            "version": __version__,
            "python": platform.python_version(),
            "hypervisor": type(self.lifecycle.adapter).__name__,
            "uptime_seconds": round(time.time() - self.started_at, 1),
        }

    async def create(self, req: VMCreateRequest) -> Dict[str, Any]:
        """Create and boot a VM; errors propagate to the LambdoError handler."""
        descriptor = await self.lifecycle.create(req.to_spec(), timeout=req.timeout)
        return {"status": "success", "vm": descriptor.to_dict()}

    async def spawn(self, req: VMSpawnRequest) -> Dict[str, Any]:
        """Boot an image with host ports picked for the requested guest ports."""
        descriptor = await self.lifecycle.create(req.to_spec(), timeout=req.timeout)
        mapping = descriptor.lease.port_mapping if descriptor.lease else ()
        return {
            "status": "success",
            "vm": descriptor.to_dict(),
            "port_mapping": [[h, g] for h, g in mapping],
        }

    def list_vms(self) -> Dict[str, Any]:
        vms = [d.to_dict() for d in self.lifecycle.list()]
        return {"status": "success", "vms": vms, "count": len(vms)}

    def get_vm(self, vm_id: str) -> Dict[str, Any]:
        return {"status": "success", "vm": self.lifecycle.get(vm_id).to_dict()}

    async def stop_vm(self, vm_id: str) -> Dict[str, Any]:
        descriptor = await self.lifecycle.stop(vm_id)
        return {"status": "success", "vm": descriptor.to_dict()}

    async def delete_vm(self, vm_id: str) -> Dict[str, Any]:
        await self.lifecycle.delete(vm_id)
        return {"status": "success", "message": f"VM {vm_id} deleted"}

    def network(self) -> Dict[str, Any]:
        return {"status": "success", "network": self.lifecycle.provisioner.stats()}
