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
#   http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing,
# software distributed under the License is distributed on an
# "AS IS" BASIS, WITHOUT WARRANTIES OR CONDITIONS OF ANY
# KIND, either express or implied.  See the License for the
# specific language governing permissions and limitations
# under the License.

"""
lambdo client (HTTP/REST)

Talks to a remote lambdo agent over HTTP:

    lambdo.py create <spec.json> [timeout]
    lambdo.py spawn <image> [guest-port ...]
    lambdo.py get|stop|delete <vm-id>
    lambdo.py list
    lambdo.py network

The spec file holds the create body: vcpu_count, mem_size_mib, image and
optionally kernel, boot_args and port_mapping ([[host, guest], ...]).
spawn boots an image with default sizing; the agent picks a free host port
for each guest port and reports the pairs in port_mapping.

Environment:
- LAMBDO_AGENT_URL      agent base URL (default: http://127.0.0.1:8080)
- LAMBDO_AGENT_TIMEOUT  HTTP timeout in seconds (default: 60)

Every command prints one JSON object; the exit code is 0 on success and 1
on any error.
"""

import json
import os
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import requests

DEFAULT_URL = "http://127.0.0.1:8080"


# -------------------------- small helpers --------------------------
def _ok(payload: Dict[str, Any]) -> None:
    """Print a JSON object and exit 0."""
    print(json.dumps(payload, ensure_ascii=False))
    sys.exit(0)


def _fail(message: str, code: int = 1, **extra: Any) -> None:
    """Print an error JSON object and exit non-zero."""
    print(json.dumps(dict({"error": message}, **extra), ensure_ascii=False))
    sys.exit(code)


def _read_json(path: str) -> Dict[str, Any]:
    try:
        data = json.loads(Path(path).read_text())
    except FileNotFoundError:
        _fail(f"JSON file not found: {path}")
    except json.JSONDecodeError as e:
        _fail(f"Invalid JSON in file: {e}")
    if not isinstance(data, dict):
        _fail(f"Spec file must contain a JSON object: {path}")
    return data


# -------------------------- agent endpoint --------------------------
class Agent(object):
    """HTTP agent endpoint and request options."""

    def __init__(self, base_url: str, timeout: float) -> None:
        base_url = base_url.strip().rstrip("/")
        if "://" not in base_url:
            base_url = f"http://{base_url}"
        self.base_url = base_url
        self.timeout = float(timeout)

    @classmethod
    def from_env(cls) -> "Agent":
        timeout_val = os.getenv("LAMBDO_AGENT_TIMEOUT", "60")
        try:
            timeout = float(timeout_val)
        except ValueError:
            _fail(f"Invalid LAMBDO_AGENT_TIMEOUT value: {timeout_val}")
        return cls(os.getenv("LAMBDO_AGENT_URL", DEFAULT_URL), timeout)

    def url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    def headers(self) -> Dict[str, str]:
        return {"Accept": "application/json"}


# -------------------------- HTTP helpers --------------------------
def _req(agent: Agent, method: str, path: str, json_body: Optional[Dict[str, Any]] = None, timeout: Optional[float] = None):
    """Perform an HTTP request and map transport errors."""
    try:
        return requests.request(
            method,
            agent.url(path),
            json=json_body,
            headers=agent.headers(),
            timeout=timeout or agent.timeout,
        )
    except requests.exceptions.RequestException as e:
        _fail(f"HTTP error contacting agent: {e}")


def _json_or_fail(resp) -> Dict[str, Any]:
    """Return parsed JSON or fail with the agent's error kind and detail."""
    try:
        data = resp.json()
    except ValueError:
        data = {"raw": resp.text[:500]}
    if resp.status_code >= 400:
        if isinstance(data, dict) and data.get("error"):
            _fail(
                f"Agent error ({resp.status_code}): {data['error']}",
                kind=data.get("error"),
                vm_id=data.get("vm_id"),
                detail=data.get("detail"),
            )
        _fail(f"Agent error ({resp.status_code}): {data}")
    if not isinstance(data, dict):
        _fail("Agent returned non-JSON or unexpected payload")
    return data


# -------------------------- operations (HTTP) --------------------------
def op_create(agent: Agent, spec_file: str, timeout: Optional[float] = None) -> None:
    """POST /v1/vms: create and boot a microVM."""
    body = _read_json(spec_file)
    if timeout is not None:
        body["timeout"] = timeout
    # the HTTP call must outlive the agent-side deadline
    http_timeout = max(agent.timeout, (body.get("timeout") or 0) + 5)
    _ok(_json_or_fail(_req(agent, "POST", "/v1/vms", json_body=body, timeout=http_timeout)))


def op_spawn(agent: Agent, image: str, guest_ports: List[int]) -> None:
    """POST /v1/spawn: boot an image and forward agent-picked host ports."""
    body = {"image": image, "requested_ports": guest_ports}
    _ok(_json_or_fail(_req(agent, "POST", "/v1/spawn", json_body=body)))


def op_get(agent: Agent, vm_id: str) -> None:
    """GET /v1/vms/{id}"""
    _ok(_json_or_fail(_req(agent, "GET", f"/v1/vms/{vm_id}")))


def op_stop(agent: Agent, vm_id: str) -> None:
    """POST /v1/vms/{id}/stop: graceful, then forced stop."""
    _ok(_json_or_fail(_req(agent, "POST", f"/v1/vms/{vm_id}/stop")))


def op_delete(agent: Agent, vm_id: str) -> None:
    """DELETE /v1/vms/{id}: stop if needed and forget the VM."""
    _ok(_json_or_fail(_req(agent, "DELETE", f"/v1/vms/{vm_id}")))


def op_list(agent: Agent) -> None:
    _ok(_json_or_fail(_req(agent, "GET", "/v1/vms")))


def op_network(agent: Agent) -> None:
    _ok(_json_or_fail(_req(agent, "GET", "/v1/network")))


# -------------------------- main --------------------------
USAGE = (
    "Usage: lambdo.py <create <spec.json> [timeout]|spawn <image> [port ...]"
    "|get <id>|stop <id>|delete <id>|list|network>"
)


def main(argv=None):
    """Parse CLI and dispatch the operation over HTTP."""
    args = list(sys.argv[1:] if argv is None else argv)
    if not args:
        _fail(USAGE)
    operation = args[0].lower()
    agent = Agent.from_env()
    try:
        if operation == "create":
            if len(args) < 2:
                _fail(USAGE)
            timeout = None
            if len(args) > 2:
                try:
                    timeout = float(args[2])
                except ValueError:
                    _fail(f"Invalid timeout value: {args[2]}")
            op_create(agent, args[1], timeout)
        elif operation == "spawn":
            if len(args) < 2:
                _fail(USAGE)
            try:
                ports = [int(p) for p in args[2:]]
            except ValueError:
                _fail(f"Invalid guest port in: {args[2:]}")
            op_spawn(agent, args[1], ports)
        elif operation in ("get", "status", "stop", "delete"):
            if len(args) < 2:
                _fail(USAGE)
            ops = {"get": op_get, "status": op_get, "stop": op_stop, "delete": op_delete}
            ops[operation](agent, args[1])
        elif operation == "list":
            op_list(agent)
        elif operation == "network":
            op_network(agent)
        else:
            _fail("Invalid action")
    except SystemExit:
        raise
    except Exception as e:
        _fail(str(e))


if __name__ == "__main__":
    main()
