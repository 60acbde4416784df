#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Saga interpreter for multi-step provisioning.

A saga is an ordered list of (action, compensation) pairs. Actions run in
order; when one fails (or the running task is cancelled) the compensations
of every completed step run in reverse order before the error propagates.
A compensation receives the result of its own action.
"""
import asyncio
import dataclasses
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from lambdo_agent.errors import DegradedCleanup

logger = logging.getLogger("lambdo-agent")

Action = Callable[[], Awaitable[Any]]
Compensation = Callable[[Any], Awaitable[None]]


@dataclasses.dataclass
class SagaStep:
    name: str
    action: Action
    compensation: Optional[Compensation] = None


class Saga:
    """Ordered forward steps with paired compensating steps."""

    def __init__(self, name: str, vm_id: Optional[str] = None):
        self.name = name
        self.vm_id = vm_id
        self.steps: List[SagaStep] = []
        self.results: Dict[str, Any] = {}

    def step(self, name: str, action: Action, compensation: Optional[Compensation] = None) -> "Saga":
        self.steps.append(SagaStep(name, action, compensation))
        return self

    async def run(self) -> Dict[str, Any]:
        """Run every step; return results keyed by step name.

        Re-raises the failing step's exception after a successful unwind, or
        raises DegradedCleanup (chained to it) when a compensation failed.
        """
        completed: List[Tuple[SagaStep, Any]] = []
        for step in self.steps:
            try:
                result = await step.action()
            except BaseException as exc:
                logger.warning("%s: step '%s' failed (%s), compensating %d step(s)", self.name, step.name, exc, len(completed))
                failures = await self._unwind_shielded(completed)
                if failures:
                    raise DegradedCleanup(
                        f"{self.name}: step '{step.name}' failed and compensation did not complete",
                        vm_id=self.vm_id,
                        failures=failures,
                    ) from exc
                raise
            completed.append((step, result))
            self.results[step.name] = result
        return self.results

    async def _unwind_shielded(self, completed: List[Tuple[SagaStep, Any]]) -> Dict[str, str]:
        # cancellation of the caller must not interrupt the unwind
        task = asyncio.ensure_future(self._unwind(completed))
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            failures = await task
            if not failures:
                raise
            logger.error("%s: compensation failed during cancellation: %s", self.name, failures)
            return failures

    async def _unwind(self, completed: List[Tuple[SagaStep, Any]]) -> Dict[str, str]:
        failures: Dict[str, str] = {}
        for step, result in reversed(completed):
            if step.compensation is None:
                continue
            try:
                await step.compensation(result)
                logger.debug("%s: compensated step '%s'", self.name, step.name)
            except Exception as exc:  # collected and reported as DegradedCleanup
                logger.error("%s: compensation of step '%s' failed: %s", self.name, step.name, exc)
                failures[step.name] = str(exc)
        return failures
