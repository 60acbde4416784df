"""
Unit tests for lambdo_agent.orchestration.saga.
"""

import asyncio

import pytest

from lambdo_agent.errors import AdapterError, DegradedCleanup
from lambdo_agent.orchestration.saga import Saga


def _recorder(log, name, result=None, fail=None):
    async def _step(*args):
        log.append((name, args))
        if fail is not None:
            raise fail
        return result

    return _step


class TestSagaRun:
    """Forward execution and compensation order."""

    @pytest.mark.asyncio
    async def test_all_steps_succeed(self):
        log = []
        saga = Saga("test")
        saga.step("a", _recorder(log, "a", 1), _recorder(log, "undo-a"))
        saga.step("b", _recorder(log, "b", 2), _recorder(log, "undo-b"))
        results = await saga.run()
        assert results == {"a": 1, "b": 2}
        assert [name for name, _ in log] == ["a", "b"]

    @pytest.mark.asyncio
    async def test_failure_compensates_in_reverse_with_results(self):
        log = []
        saga = Saga("test", vm_id="vm-1")
        saga.step("a", _recorder(log, "a", "ra"), _recorder(log, "undo-a"))
        saga.step("b", _recorder(log, "b", "rb"), _recorder(log, "undo-b"))
        saga.step("c", _recorder(log, "c", fail=AdapterError("boom")), _recorder(log, "undo-c"))
        with pytest.raises(AdapterError):
            await saga.run()
        assert log == [("a", ()), ("b", ()), ("c", ()), ("undo-b", ("rb",)), ("undo-a", ("ra",))]

    @pytest.mark.asyncio
    async def test_failed_compensation_raises_degraded_cleanup(self):
        log = []
        saga = Saga("test", vm_id="vm-1")
        saga.step("a", _recorder(log, "a", "ra"), _recorder(log, "undo-a"))
        saga.step("b", _recorder(log, "b", "rb"), _recorder(log, "undo-b", fail=RuntimeError("stuck")))
        saga.step("c", _recorder(log, "c", fail=AdapterError("boom")))
        with pytest.raises(DegradedCleanup) as exc_info:
            await saga.run()
        # unwinding continues past the failed compensation
        assert ("undo-a", ("ra",)) in log
        assert exc_info.value.failures == {"b": "stuck"}
        assert exc_info.value.vm_id == "vm-1"
        assert isinstance(exc_info.value.__cause__, AdapterError)

    @pytest.mark.asyncio
    async def test_steps_without_compensation_are_skipped(self):
        log = []
        saga = Saga("test")
        saga.step("a", _recorder(log, "a"))
        saga.step("b", _recorder(log, "b", fail=ValueError("x")))
        with pytest.raises(ValueError):
            await saga.run()
        assert [name for name, _ in log] == ["a", "b"]


class TestSagaCancellation:
    """Cancellation of the running task still unwinds."""

    @pytest.mark.asyncio
    async def test_cancel_runs_compensation(self):
        log = []
        started = asyncio.Event()

        async def slow():
            started.set()
            await asyncio.sleep(10)

        saga = Saga("test")
        saga.step("a", _recorder(log, "a", "ra"), _recorder(log, "undo-a"))
        saga.step("b", slow)
        task = asyncio.ensure_future(saga.run())
        await started.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert ("undo-a", ("ra",)) in log

    @pytest.mark.asyncio
    async def test_timeout_runs_compensation(self):
        log = []
        saga = Saga("test")
        saga.step("a", _recorder(log, "a", "ra"), _recorder(log, "undo-a"))
        saga.step("b", lambda: asyncio.sleep(10))
        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(saga.run(), 0.05)
        assert ("undo-a", ("ra",)) in log
