"""Worker pool tests against real unit processes."""

from __future__ import annotations

import asyncio
import time

import pytest

from pagesmith.domain.errors import (
    PoolClosedError,
    PreprocessError,
    WorkerCrashedError,
    WorkerTimeoutError,
)
from pagesmith.domain.preprocessing.pool import WorkerPool

PREPROCESSORS = """
import os
import time


def pid():
    def process(context):
        context["pid"] = os.getpid()
        return context

    return {"process": process}


def double():
    def process(context):
        context["value"] = context["value"] * 2
        return context

    return {"process": process}


def hang():
    def process(context):
        time.sleep(60)
        return context

    return {"process": process}


def explode():
    def process(context):
        raise ValueError("preprocessor exploded")

    return {"process": process}


def crash():
    def process(context):
        os._exit(3)

    return {"process": process}


def unpicklable():
    def process(context):
        return {"lock": __import__("threading").Lock()}

    return {"process": process}


PREPROCESSORS = {
    "pid.html": pid,
    "double.html": double,
    "hang.html": hang,
    "explode.html": explode,
    "crash.html": crash,
    "unpicklable.html": unpicklable,
    "plain.html": lambda: {"resources": {}},
}
"""


@pytest.fixture
def module_path(make_site) -> str:
    return str(make_site({"preprocessors.py": PREPROCESSORS}) / "preprocessors.py")


@pytest.mark.asyncio
async def test_invoke_runs_transform_in_another_process(module_path):
    pool = await WorkerPool.create(size=1, max_call_time=10.0)
    try:
        result = await pool.invoke(module_path, "pid.html", {"a": 1})
        assert result["a"] == 1
        assert result["pid"] in pool.pids
        assert await pool.invoke(module_path, "plain.html", {"a": 1}) == {"a": 1}
    finally:
        await pool.shutdown()


@pytest.mark.asyncio
async def test_calls_spread_over_units(module_path):
    pool = await WorkerPool.create(size=3, max_call_time=10.0)
    try:
        results = await asyncio.gather(
            *(pool.invoke(module_path, "double.html", {"value": n}) for n in range(12))
        )
        assert [r["value"] for r in results] == [n * 2 for n in range(12)]
        assert 1 <= len(pool.pids) <= 3
    finally:
        await pool.shutdown()


@pytest.mark.asyncio
async def test_hung_transform_is_killed_and_the_slot_recovers(module_path):
    pool = await WorkerPool.create(size=1, max_call_time=0.5)
    try:
        # Warm the unit so spawn time does not count against the budget.
        first = await pool.invoke(module_path, "pid.html", {})

        started = time.monotonic()
        with pytest.raises(WorkerTimeoutError):
            await pool.invoke(module_path, "hang.html", {})
        assert time.monotonic() - started < 5

        after = await pool.invoke(module_path, "pid.html", {})
        assert after["pid"] != first["pid"]
    finally:
        await pool.shutdown()


@pytest.mark.asyncio
async def test_unit_self_destructs_when_dispatcher_budget_is_larger(module_path):
    pool = await WorkerPool.create(size=1, max_call_time=30.0, unit_timeout=0.5)
    try:
        await pool.invoke(module_path, "pid.html", {})

        started = time.monotonic()
        with pytest.raises(WorkerCrashedError):
            await pool.invoke(module_path, "hang.html", {})
        assert time.monotonic() - started < 5

        assert (await pool.invoke(module_path, "double.html", {"value": 2}))["value"] == 4
    finally:
        await pool.shutdown()


@pytest.mark.asyncio
async def test_transform_exception_keeps_unit_alive(module_path):
    pool = await WorkerPool.create(size=1, max_call_time=10.0)
    try:
        before = await pool.invoke(module_path, "pid.html", {})

        with pytest.raises(PreprocessError) as excinfo:
            await pool.invoke(module_path, "explode.html", {"keep": True})
        assert not isinstance(excinfo.value, (WorkerCrashedError, WorkerTimeoutError))
        assert "ValueError: preprocessor exploded" in excinfo.value.remote_traceback

        after = await pool.invoke(module_path, "pid.html", {})
        assert after["pid"] == before["pid"]
    finally:
        await pool.shutdown()


@pytest.mark.asyncio
async def test_crashed_unit_is_replaced(module_path):
    pool = await WorkerPool.create(size=1, max_call_time=10.0)
    try:
        before = await pool.invoke(module_path, "pid.html", {})

        with pytest.raises(WorkerCrashedError):
            await pool.invoke(module_path, "crash.html", {})

        after = await pool.invoke(module_path, "pid.html", {})
        assert after["pid"] != before["pid"]
    finally:
        await pool.shutdown()


@pytest.mark.asyncio
async def test_unpicklable_result_is_an_error_not_a_crash(module_path):
    pool = await WorkerPool.create(size=1, max_call_time=10.0)
    try:
        with pytest.raises(PreprocessError) as excinfo:
            await pool.invoke(module_path, "unpicklable.html", {})
        assert not isinstance(excinfo.value, WorkerCrashedError)
        assert (await pool.invoke(module_path, "double.html", {"value": 1}))["value"] == 2
    finally:
        await pool.shutdown()


@pytest.mark.asyncio
async def test_result_the_host_cannot_rebuild_fails_only_that_call(make_site):
    # The unit has the site directory on its import path while the host does
    # not, so pickling the Marker succeeds and unpickling it here fails.
    root = make_site(
        {
            "marker_types.py": """
                class Marker:
                    pass
            """,
            "preprocessors.py": """
                import os

                import marker_types

                PREPROCESSORS = {
                    "marker.html": lambda: {"process": lambda ctx: {"marker": marker_types.Marker()}},
                    "pid.html": lambda: {"process": lambda ctx: {"pid": os.getpid()}},
                }
            """,
        }
    )
    path = str(root / "preprocessors.py")
    pool = await WorkerPool.create(size=1, max_call_time=10.0)
    try:
        for _ in range(2):
            with pytest.raises(PreprocessError) as excinfo:
                await asyncio.wait_for(pool.invoke(path, "marker.html", {}), timeout=10)
            assert "cannot be read back" in str(excinfo.value)

        result = await asyncio.wait_for(pool.invoke(path, "pid.html", {}), timeout=10)
        assert result["pid"] in pool.pids
    finally:
        await pool.shutdown()


@pytest.mark.asyncio
async def test_slot_survives_an_unexpected_dispatch_error(module_path, monkeypatch):
    pool = await WorkerPool.create(size=1, max_call_time=10.0)
    serve = pool._serve
    failures = []

    async def serve_once_broken(index, unit, call):
        if not failures:
            failures.append(call.view)
            raise RuntimeError("dispatch went wrong")
        return await serve(index, unit, call)

    monkeypatch.setattr(pool, "_serve", serve_once_broken)
    try:
        with pytest.raises(WorkerCrashedError):
            await asyncio.wait_for(pool.invoke(module_path, "pid.html", {}), timeout=10)

        result = await asyncio.wait_for(pool.invoke(module_path, "double.html", {"value": 3}), timeout=10)
        assert result["value"] == 6
        assert failures == ["pid.html"]
    finally:
        await pool.shutdown()


@pytest.mark.asyncio
async def test_unit_recycles_after_max_calls(module_path):
    pool = await WorkerPool.create(size=1, max_calls_per_unit=2, max_call_time=10.0)
    try:
        pids = [(await pool.invoke(module_path, "pid.html", {}))["pid"] for _ in range(5)]

        assert pids[0] == pids[1]
        assert pids[2] == pids[3]
        assert pids[1] != pids[2]
        assert pids[3] != pids[4]
    finally:
        await pool.shutdown()


@pytest.mark.asyncio
async def test_module_is_reloaded_per_call(make_site):
    root = make_site(
        {
            "preprocessors.py": """
                VERSION = 1

                PREPROCESSORS = {"v.html": lambda: {"process": lambda ctx: {"version": VERSION}}}
            """
        }
    )
    path = root / "preprocessors.py"
    pool = await WorkerPool.create(size=1, max_call_time=10.0)
    try:
        assert await pool.invoke(str(path), "v.html", {}) == {"version": 1}
        path.write_text(
            path.read_text(encoding="utf-8").replace("VERSION = 1", "VERSION = 22"),
            encoding="utf-8",
        )
        assert await pool.invoke(str(path), "v.html", {}) == {"version": 22}
    finally:
        await pool.shutdown()


@pytest.mark.asyncio
async def test_shutdown_stops_units_and_rejects_calls(module_path):
    pool = await WorkerPool.create(size=2, max_call_time=10.0)
    await pool.invoke(module_path, "pid.html", {})
    assert pool.pids

    await pool.shutdown()

    assert pool.closed
    assert pool.pids == []
    with pytest.raises(PoolClosedError):
        await pool.invoke(module_path, "pid.html", {})
    await pool.shutdown()


@pytest.mark.asyncio
async def test_shutdown_fails_queued_and_running_calls(module_path):
    pool = await WorkerPool.create(size=1, max_call_time=3.0)
    await pool.invoke(module_path, "pid.html", {})

    busy = asyncio.create_task(pool.invoke(module_path, "hang.html", {}))
    queued = asyncio.create_task(pool.invoke(module_path, "pid.html", {}))
    await asyncio.sleep(0.2)

    await pool.shutdown()

    with pytest.raises(PoolClosedError):
        await queued
    with pytest.raises(PoolClosedError):
        await busy


def test_pool_size_must_be_positive():
    with pytest.raises(ValueError):
        WorkerPool(size=0)
