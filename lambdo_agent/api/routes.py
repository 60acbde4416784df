#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""API routes module for the lambdo agent."""
from fastapi import FastAPI

from lambdo_agent.models import VMCreateRequest, VMSpawnRequest
from lambdo_agent.orchestration.lifecycle import LifecycleManager

from .handlers import APIHandlers


def register_routes(app: FastAPI, lifecycle: LifecycleManager) -> APIHandlers:
    """Register all API routes with the FastAPI application."""
    handlers = APIHandlers(lifecycle)

    # Health and info endpoints
    @app.get("/healthz")
    def healthz():
        return handlers.healthz()

    @app.get("/v1/version")
    def v1_version():
        return handlers.v1_version()

    @app.get("/v1/network")
    async def v1_network():
        return handlers.network()

    # VM management endpoints
    @app.post("/v1/vms", status_code=201)
    async def v1_create_vm(req: VMCreateRequest):
        return await handlers.create(req)

    @app.post("/v1/spawn", status_code=201)
    async def v1_spawn_vm(req: VMSpawnRequest):
        return await handlers.spawn(req)

    @app.get("/v1/vms")
    def v1_list_vms():
        return handlers.list_vms()

    @app.get("/v1/vms/{vm_id}")
    def v1_get_vm(vm_id: str):
        return handlers.get_vm(vm_id)

    @app.post("/v1/vms/{vm_id}/stop")
    async def v1_stop_vm(vm_id: str):
        return await handlers.stop_vm(vm_id)

    @app.delete("/v1/vms/{vm_id}")
    async def v1_delete_vm(vm_id: str):
        return await handlers.delete_vm(vm_id)

    return handlers
