#!/usr/bin/env python3
# -*- coding: utf-8 -*-
# Licensed to the Apache Software Foundation (ASF) under one
# or more contributor license agreements.  See the NOTICE file
# distributed with this work for additional information
# regarding copyright ownership.  The ASF licenses this file
# to you under the Apache License, Version 2.0 (the
# "License"); you may not use this file except in compliance
# with the License.  You may obtain a copy of the License at
#
#   http://www.apache.org/licenses/LICENSE/2.0
#
# Unless required by applicable law or agreed to in writing,
# software distributed under the License is distributed on an
# "AS IS" BASIS, WITHOUT WARRANTIES OR CONDITIONS OF ANY
# KIND, either express or implied.  See the License for the
# specific language governing permissions and limitations
# under the License.
from __future__ import annotations

import json
import logging
import os
from typing import Any, Dict, Optional

import typer
import uvicorn
from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from starlette.responses import JSONResponse

from lambdo_agent import __version__
from lambdo_agent.api import error_response, register_routes
from lambdo_agent.config import ConfigManager
from lambdo_agent.errors import LambdoError
from lambdo_agent.orchestration.lifecycle import LifecycleManager

logger = logging.getLogger("lambdo-agent")
logger.setLevel(logging.INFO)
_DEF_HANDLER_SET = False


def _apply_logging_from_cfg(cfg: Dict[str, Any]) -> None:
    """Apply logging configuration from agent config."""
    global _DEF_HANDLER_SET
    if _DEF_HANDLER_SET:
        return
    log_cfg = cfg.get("logging", {})
    level = str(log_cfg.get("level", "INFO")).upper()
    logger.setLevel(getattr(logging, level, logging.INFO))
    # driver modules log under lambdo_agent.*
    logging.getLogger("lambdo_agent").setLevel(logger.level)
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s"))
        logger.addHandler(handler)
        logging.getLogger("lambdo_agent").addHandler(handler)
    _DEF_HANDLER_SET = True


def create_app(cfg: Optional[Dict[str, Any]] = None, lifecycle: Optional[LifecycleManager] = None) -> FastAPI:
    """Build the FastAPI application.
    Without arguments the config is loaded and the components are built at startup.
    """
    app = FastAPI(title="lambdo agent", version=__version__)
    app.state.cfg = cfg
    app.state.lifecycle = lifecycle

    @app.on_event("startup")
    async def startup_event():
        logger.info("Starting lambdo agent...")
        if app.state.cfg is None:
            app.state.cfg = ConfigManager({}).load_agent_config()
        _apply_logging_from_cfg(app.state.cfg)
        if app.state.lifecycle is None:
            app.state.lifecycle = ConfigManager(app.state.cfg["defaults"]).build_lifecycle()
        lifecycle_mgr: LifecycleManager = app.state.lifecycle
        # host state is reconciled before the first request is served
        await lifecycle_mgr.reconcile()
        register_routes(app, lifecycle_mgr)
        lifecycle_mgr.start_monitor()
        logger.info("lambdo agent started")

    @app.on_event("shutdown")
    async def shutdown_event():
        logger.info("Shutting down lambdo agent (VMs left running)...")
        if app.state.lifecycle is not None:
            await app.state.lifecycle.stop_monitor()
        logger.info("lambdo agent shut down")

    @app.middleware("http")
    async def request_logging_middleware(request: Request, call_next):
        """Log incoming requests immediately upon receipt."""
        logger.info("%s %s", request.method, request.url.path)
        return await call_next(request)

    @app.exception_handler(LambdoError)
    async def lambdo_error_handler(request: Request, exc: LambdoError):
        return error_response(exc)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        logger.info("Request validation error: %s", exc)
        return JSONResponse(
            status_code=400,
            content={"error": "ValidationError", "vm_id": None, "detail": jsonable_encoder(exc.errors())},
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        logger.exception("Unhandled exception: %s", exc)
        return JSONResponse(status_code=500, content={"error": "InternalError", "vm_id": None, "detail": str(exc)})

    return app


app = create_app()

# CLI interface
cli = typer.Typer()


@cli.command()
def serve(host: Optional[str] = None, port: Optional[int] = None):
    """Run the HTTP API."""
    cfg = ConfigManager({}).load_agent_config()
    _apply_logging_from_cfg(cfg)
    uvicorn.run(create_app(cfg), host=host or cfg["bind_host"], port=port or cfg["bind_port"], reload=False)


@cli.command("show-config")
def show_config():
    """Print the effective configuration."""
    cfg = ConfigManager({}).load_agent_config()
    typer.echo(json.dumps(cfg, indent=2))


def main():
    """Main entry point."""
    # Run API by default; set LAMBDO_AGENT_MODE=cli to use the local CLI instead
    mode = os.environ.get("LAMBDO_AGENT_MODE", "api").lower()
    if mode == "cli":
        cli()
    else:
        cfg = ConfigManager({}).load_agent_config()
        _apply_logging_from_cfg(cfg)
        uvicorn.run(create_app(cfg), host=cfg["bind_host"], port=cfg["bind_port"], reload=False)


if __name__ == "__main__":
    main()
