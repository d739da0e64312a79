"""Bounded pool of worker processes that run user preprocessors.

Layout:

    WorkerPool(size=4)
      ├── asyncio.Queue of pending calls (unbounded, FIFO)
      ├── one dispatcher task per slot, each owning at most one unit
      └── unit = multiprocessing.Process + Pipe running ``worker.unit_main``

Rules:
- a call is handed to the first free slot; no ordering across slots
- the call-time budget starts at hand-off; when it runs out the unit is
  killed, that call fails with ``WorkerTimeoutError``, the slot respawns
- a unit that dies mid-call fails only that call (``WorkerCrashedError``)
- a unit is retired after ``max_calls_per_unit`` calls
- units spawn lazily, on the first call a slot receives

Units never share state; rebuilding the pool is the way to make them forget
code they already loaded.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import multiprocessing
from dataclasses import dataclass
from typing import Any, Optional

from pagesmith.core.metrics import observe_preprocess, observe_worker_restart
from pagesmith.domain.errors import (
    PoolClosedError,
    PreprocessError,
    WorkerCrashedError,
    WorkerTimeoutError,
)
from pagesmith.domain.preprocessing.worker import READY, SELF_DESTRUCT_TIMEOUT, unit_main

logger = logging.getLogger(__name__)

POOL_SIZE = 4
MAX_CALLS_PER_UNIT = 100
MAX_CALL_TIME = 1.0
UNIT_STARTUP_TIMEOUT = 30.0


@dataclass
class _Call:
    call_id: int
    module_path: str
    view: str
    context: Any
    future: asyncio.Future


class _Unit:
    """One worker process and the parent's end of its pipe."""

    def __init__(self, mp_context, index: int, unit_timeout: float):
        parent_conn, child_conn = mp_context.Pipe()
        self.process = mp_context.Process(
            target=unit_main,
            args=(child_conn, unit_timeout),
            name=f"pagesmith-unit-{index}",
            daemon=True,
        )
        self.process.start()
        child_conn.close()
        self.conn = parent_conn
        self.calls = 0

        # Call budgets start once the unit is listening, not while it imports.
        try:
            if not parent_conn.poll(UNIT_STARTUP_TIMEOUT) or parent_conn.recv() != READY:
                raise RuntimeError(f"worker unit {index} did not start")
        except (EOFError, OSError) as exc:
            self.kill()
            raise RuntimeError(f"worker unit {index} exited during startup") from exc
        except RuntimeError:
            self.kill()
            raise

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid

    @property
    def alive(self) -> bool:
        return self.process.is_alive()

    def exitcode(self, wait: float = 0.2) -> Optional[int]:
        self.process.join(wait)
        return self.process.exitcode

    def stop(self, timeout: float = 1.0) -> None:
        """Ask the unit to exit, then terminate/kill it if it does not."""

        if self.process.is_alive():
            try:
                self.conn.send(None)
            except (BrokenPipeError, EOFError, OSError):
                pass
            self.process.join(timeout)
        self.kill()

    def kill(self) -> None:
        if self.process.is_alive():
            self.process.terminate()
            self.process.join(1.0)
        if self.process.is_alive():
            self.process.kill()
            self.process.join(1.0)
        self.conn.close()


class WorkerPool:
    def __init__(
        self,
        *,
        size: int = POOL_SIZE,
        max_calls_per_unit: int = MAX_CALLS_PER_UNIT,
        max_call_time: float = MAX_CALL_TIME,
        unit_timeout: float = SELF_DESTRUCT_TIMEOUT,
        start_method: str = "spawn",
    ):
        if size < 1:
            raise ValueError("size must be at least 1")
        self.size = size
        self.max_calls_per_unit = max_calls_per_unit
        self.max_call_time = max_call_time
        self.unit_timeout = unit_timeout
        self._mp = multiprocessing.get_context(start_method)
        self._queue: Optional[asyncio.Queue[_Call]] = None
        self._slots: list[asyncio.Task] = []
        self._units: dict[int, _Unit] = {}
        self._ids = itertools.count(1)
        self._closed = False

    @classmethod
    async def create(cls, **options: Any) -> "WorkerPool":
        pool = cls(**options)
        await pool.start()
        return pool

    @property
    def started(self) -> bool:
        return bool(self._slots)

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pids(self) -> list[int]:
        """PIDs of units currently alive."""
        return [unit.pid for unit in self._units.values() if unit.alive and unit.pid]

    async def start(self) -> None:
        if self._closed:
            raise RuntimeError("Cannot start a pool that was shut down")
        if self._slots:
            return
        self._queue = asyncio.Queue()
        self._slots = [
            asyncio.create_task(self._run_slot(index), name=f"worker_slot_{index}")
            for index in range(self.size)
        ]
        logger.info(
            "Worker pool started: %d units, %d calls per unit, %.2fs per call",
            self.size,
            self.max_calls_per_unit,
            self.max_call_time,
        )

    async def invoke(self, module_path: str, view: str, context: Any) -> Any:
        """Run ``view``'s preprocessor from ``module_path`` on ``context`` in some unit.

        Raises:
            PreprocessError: the transform raised (unit keeps serving).
            WorkerTimeoutError: the call ran out of time; its unit was killed.
            WorkerCrashedError: the unit died during the call.
            PoolClosedError: the pool is shut down.
        """

        if self._closed:
            observe_preprocess("closed")
            raise PoolClosedError(view)
        if not self._slots:
            await self.start()
        assert self._queue is not None

        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._queue.put_nowait(_Call(next(self._ids), str(module_path), view, context, future))
        return await future

    async def shutdown(self) -> None:
        """Stop all dispatchers and units; queued and in-flight calls fail with ``PoolClosedError``."""

        if self._closed:
            return
        self._closed = True

        for task in self._slots:
            task.cancel()
        await asyncio.gather(*self._slots, return_exceptions=True)
        self._slots = []

        if self._queue is not None:
            while not self._queue.empty():
                call = self._queue.get_nowait()
                _fail(call, PoolClosedError(call.view))

        loop = asyncio.get_running_loop()
        units = list(self._units.values())
        self._units.clear()
        await asyncio.gather(
            *(loop.run_in_executor(None, unit.stop) for unit in units),
            return_exceptions=True,
        )
        logger.info("Worker pool shut down (%d units stopped)", len(units))

    # ------------------------------------------------------------------

    async def _spawn(self, index: int) -> _Unit:
        loop = asyncio.get_running_loop()
        unit = await loop.run_in_executor(None, _Unit, self._mp, index, self.unit_timeout)
        self._units[index] = unit
        logger.debug("Worker unit %d started (pid %s)", index, unit.pid)
        return unit

    async def _discard(self, index: int, unit: _Unit, reason: str, *, graceful: bool) -> None:
        self._units.pop(index, None)
        observe_worker_restart(reason)
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, unit.stop if graceful else unit.kill)
        logger.info("Worker unit %d (pid %s) replaced: %s", index, unit.pid, reason)

    async def _drop_current(self, index: int) -> None:
        unit = self._units.get(index)
        if unit is None:
            return
        try:
            await self._discard(index, unit, "crash", graceful=False)
        except Exception:
            logger.exception("Could not stop worker unit %d", index)

    async def _run_slot(self, index: int) -> None:
        assert self._queue is not None
        unit: Optional[_Unit] = None
        while True:
            call = await self._queue.get()
            if call.future.done():
                # The caller already gave up (cancelled render).
                continue
            try:
                unit = await self._serve(index, unit, call)
            except asyncio.CancelledError:
                _fail(call, PoolClosedError(call.view))
                raise
            except Exception:
                logger.exception("Worker slot %d failed serving %s", index, call.view)
                observe_preprocess("crash")
                _fail(call, WorkerCrashedError(call.view))
                await self._drop_current(index)
                unit = None

    async def _serve(self, index: int, unit: Optional[_Unit], call: _Call) -> Optional[_Unit]:
        """Run one call on this slot's unit; returns the unit the slot keeps."""

        if unit is not None and not unit.alive:
            await self._discard(index, unit, "crash", graceful=False)
            unit = None
        if unit is None:
            try:
                unit = await self._spawn(index)
            except Exception:
                logger.exception("Could not start worker unit %d", index)
                observe_preprocess("crash")
                _fail(call, WorkerCrashedError(call.view))
                return None

        try:
            result = await self._execute(unit, call)
        except WorkerTimeoutError as exc:
            observe_preprocess("timeout")
            logger.warning("%s", exc, extra={"view": call.view})
            _fail(call, exc)
            await self._discard(index, unit, "timeout", graceful=False)
            return None
        except WorkerCrashedError as exc:
            observe_preprocess("crash")
            logger.warning("%s", exc, extra={"view": call.view})
            _fail(call, exc)
            await self._discard(index, unit, "crash", graceful=False)
            return None
        except PreprocessError as exc:
            observe_preprocess("error")
            _fail(call, exc)
        else:
            observe_preprocess("ok")
            if not call.future.done():
                call.future.set_result(result)

        unit.calls += 1
        if unit.calls >= self.max_calls_per_unit:
            await self._discard(index, unit, "exhausted", graceful=True)
            return None
        return unit

    async def _execute(self, unit: _Unit, call: _Call) -> Any:
        try:
            unit.conn.send((call.call_id, call.module_path, call.view, call.context))
        except (BrokenPipeError, EOFError, OSError) as exc:
            raise WorkerCrashedError(call.view, unit.exitcode()) from exc
        except Exception as exc:
            raise PreprocessError(call.view, f"Context for {call.view!r} cannot be sent to a worker: {exc!r}") from exc

        loop = asyncio.get_running_loop()
        ready = await loop.run_in_executor(None, unit.conn.poll, self.max_call_time)
        if not ready:
            raise WorkerTimeoutError(call.view, self.max_call_time)

        try:
            call_id, ok, payload = unit.conn.recv()
        except (EOFError, OSError) as exc:
            raise WorkerCrashedError(call.view, unit.exitcode()) from exc
        except Exception as exc:
            # The whole reply was read; only rebuilding it failed.
            raise PreprocessError(call.view, f"Result of {call.view!r} cannot be read back: {exc!r}") from exc
        if call_id != call.call_id:
            raise WorkerCrashedError(call.view, unit.exitcode(0))
        if ok:
            return payload

        last_line = payload.strip().splitlines()[-1] if payload.strip() else "unknown error"
        raise PreprocessError(
            call.view,
            f"Preprocessor {call.view!r} raised: {last_line}",
            remote_traceback=payload,
        )


def _fail(call: _Call, exc: BaseException) -> None:
    if not call.future.done():
        call.future.set_exception(exc)


__all__ = ["MAX_CALLS_PER_UNIT", "MAX_CALL_TIME", "POOL_SIZE", "WorkerPool"]
