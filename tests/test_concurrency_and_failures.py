# tests/test_concurrency_and_failures.py
"""
Exactly-once fan-in under concurrent sibling completions, and failure paths.

The in-memory DB runs with `interleave` so every repository call yields to
the loop: concurrent completions interleave between count, claim and dispatch.
"""

from __future__ import annotations

import asyncio
from dataclasses import replace

import pytest

from tasktree.api.errors import ConflictError, DownstreamDispatchError, InvalidParent
from tasktree.coordinator.coordinator import Coordinator

pytestmark = pytest.mark.flow


def _fan_ins(kafka, worker: str) -> list[dict]:
    return [v for v in kafka.values(f"tasks.{worker}.v1") if v["kind"] == "fan_in"]


@pytest.mark.asyncio
@pytest.mark.interleave
@pytest.mark.parametrize("n_children", [2, 7, 25])
async def test_concurrent_siblings_fire_exactly_one_fan_in(coord, kafka, n_children, tlog):
    parent = await coord.create_task(worker="reporter", payload={"job": "batch"})
    kids = [await coord.create_task(worker="parser", payload={"i": i}, parent_id=parent) for i in range(n_children)]

    reports = await asyncio.gather(*(coord.complete_task(k, {"i": i}) for i, k in enumerate(kids)))
    tlog.debug("test.fan_in.reports", event="test.fan_in.reports", claimed=sum(r.fan_in_claimed for r in reports))

    assert sum(r.fan_in_claimed for r in reports) == 1
    assert sum(r.fan_in_dispatched for r in reports) == 1

    fan_ins = _fan_ins(kafka, "reporter")
    assert len(fan_ins) == 1
    results = fan_ins[0]["payload"]["subtasks"]
    assert len(results) == n_children
    assert results == [{"i": i} for i in range(n_children)]
    assert coord.metrics.sample("tasktree_fan_in_total", result="dispatched") == 1.0


@pytest.mark.asyncio
@pytest.mark.interleave
async def test_concurrent_duplicate_completions_apply_once(coord):
    tid = await coord.create_task(worker="parser", payload={})

    outcomes = await asyncio.gather(*(coord.complete_task(tid, i) for i in range(10)), return_exceptions=True)

    applied = [o for o in outcomes if not isinstance(o, BaseException)]
    conflicts = [o for o in outcomes if isinstance(o, ConflictError)]
    assert len(applied) == 1
    assert len(conflicts) == 9
    assert (await coord.get_task(tid)).completed is True


@pytest.mark.asyncio
@pytest.mark.interleave
async def test_independent_parents_each_fan_in_once(coord, kafka):
    parents = [await coord.create_task(worker="reporter", payload={"p": p}) for p in range(3)]
    kids = []
    for p in parents:
        kids += [(p, await coord.create_task(worker="parser", payload={}, parent_id=p)) for _ in range(4)]

    await asyncio.gather(*(coord.complete_task(k, p) for p, k in kids))

    fan_ins = _fan_ins(kafka, "reporter")
    assert sorted(e["id"] for e in fan_ins) == sorted(parents)
    for e in fan_ins:
        assert e["payload"]["subtasks"] == [e["id"]] * 4


# ───────────────────────── Dispatch failures ─────────────────────────


@pytest.mark.asyncio
async def test_creation_dispatch_failure_keeps_the_record(coord, kafka):
    kafka.fail_topic("tasks.parser.v1")

    with pytest.raises(DownstreamDispatchError) as ei:
        await coord.create_task(worker="parser", payload={"x": 1})

    tid = ei.value.task_id
    assert tid is not None
    rec = await coord.get_task(tid)
    assert rec.payload == {"x": 1}
    assert rec.dispatched_on_create is False
    assert coord.metrics.sample("tasktree_dispatch_failures_total", kind="created") == 1.0

    # the task is still a normal task: it can be completed
    await coord.complete_task(tid, "ok")
    assert (await coord.get_task(tid)).completed is True


@pytest.mark.asyncio
async def test_fan_in_dispatch_failure_does_not_undo_completion(coord, kafka):
    parent = await coord.create_task(worker="reporter", payload={})
    child = await coord.create_task(worker="parser", payload={}, parent_id=parent)
    kafka.fail_topic("tasks.reporter.v1")

    report = await coord.complete_task(child, "r")

    assert report.fan_in_claimed is True
    assert report.fan_in_dispatched is False
    assert (await coord.get_task(child)).completed is True
    assert (await coord.get_task(parent)).fan_in_fired is True
    assert _fan_ins(kafka, "reporter") == []
    assert coord.metrics.sample("tasktree_fan_in_total", result="failed") == 1.0
    assert coord.metrics.sample("tasktree_dispatch_failures_total", kind="fan_in") == 1.0


@pytest.mark.asyncio
async def test_fan_in_lookup_failure_is_logged_not_raised(coord, inmemory_db, kafka, caplog):
    parent = await coord.create_task(worker="reporter", payload={})
    child = await coord.create_task(worker="parser", payload={}, parent_id=parent)
    inmemory_db.fail("tasks", "count_documents")

    caplog.set_level("WARNING")
    report = await coord.complete_task(child, "r")

    assert report.parent_id == parent
    assert report.fan_in_claimed is False
    assert (await coord.get_task(child)).completed is True
    assert _fan_ins(kafka, "reporter") == []
    assert any(getattr(r, "event", "") == "coord.fan_in.count_failed" for r in caplog.records)


@pytest.mark.asyncio
async def test_completion_latency_is_observed(coord):
    tid = await coord.create_task(worker="parser", payload={})
    await coord.complete_task(tid, 1)
    assert coord.metrics.sample("tasktree_complete_latency_ms_count") == 1.0


# ───────────────────────── Late children ─────────────────────────


@pytest.mark.asyncio
@pytest.mark.interleave
async def test_child_created_while_last_sibling_completes_is_never_dropped(coord, kafka):
    parent = await coord.create_task(worker="reporter", payload={"job": "race"})
    first = await coord.create_task(worker="parser", payload={}, parent_id=parent)

    report, late = await asyncio.gather(
        coord.complete_task(first, "c1-result"),
        coord.create_task(worker="parser", payload={}, parent_id=parent),
        return_exceptions=True,
    )
    assert not isinstance(report, BaseException)

    if isinstance(late, InvalidParent):
        # the fan-in claimed the parent first: nothing was stored for the late child
        assert late.reason == "sealed"
        assert await coord.repo.count_incomplete_children(parent) == 0
        expected = ["c1-result"]
    else:
        assert isinstance(late, str)
        assert _fan_ins(kafka, "reporter") == []
        await coord.complete_task(late, "late-result")
        expected = ["c1-result", "late-result"]

    fan_ins = _fan_ins(kafka, "reporter")
    assert len(fan_ins) == 1
    assert fan_ins[0]["payload"]["subtasks"] == expected
    assert None not in fan_ins[0]["payload"]["subtasks"]


@pytest.mark.asyncio
async def test_open_child_holds_off_fan_in_until_it_completes(coord, kafka):
    parent = await coord.create_task(worker="reporter", payload={})
    first = await coord.create_task(worker="parser", payload={}, parent_id=parent)
    second = await coord.create_task(worker="parser", payload={}, parent_id=parent)
    assert (await coord.get_task(parent)).open_children == 2

    report = await coord.complete_task(first, "a")
    assert report.fan_in_claimed is False
    assert (await coord.get_task(parent)).open_children == 1

    report = await coord.complete_task(second, "b")
    assert report.fan_in_dispatched is True
    assert (await coord.get_task(parent)).open_children == 0
    assert [e["payload"]["subtasks"] for e in _fan_ins(kafka, "reporter")] == [["a", "b"]]


@pytest.mark.asyncio
async def test_slot_release_failure_is_logged_not_raised(coord, inmemory_db, kafka, caplog):
    parent = await coord.create_task(worker="reporter", payload={})
    child = await coord.create_task(worker="parser", payload={}, parent_id=parent)
    real = inmemory_db.tasks.find_one_and_update

    async def _completion_only(flt, upd):
        if "open_children" in flt:
            raise ConnectionError("tasks unavailable")
        return await real(flt, upd)

    inmemory_db.tasks.find_one_and_update = _completion_only
    caplog.set_level("WARNING")
    report = await coord.complete_task(child, "r")

    assert report.fan_in_claimed is False
    assert (await coord.get_task(child)).completed is True
    assert _fan_ins(kafka, "reporter") == []
    assert any(getattr(r, "event", "") == "coord.fan_in.release_failed" for r in caplog.records)


# ───────────────────────── Destinations ─────────────────────────


@pytest.mark.asyncio
async def test_worker_registered_by_another_coordinator_is_provisioned_on_demand(
    coord, inmemory_db, coord_cfg, clock, kafka, caplog
):
    other = Coordinator(db=inmemory_db, cfg=coord_cfg, clock=clock)
    await other.start()
    try:
        await coord.register_worker("shared-archiver")
        assert other.channel.is_provisioned("shared-archiver") is False

        caplog.set_level("WARNING")
        tid = await other.create_task(worker="shared-archiver", payload={"k": 1})

        assert other.channel.is_provisioned("shared-archiver") is True
        assert [v["id"] for v in kafka.values("tasks.shared-archiver.v1")] == [tid]
        codes = [getattr(r, "code", None) for r in caplog.records]
        assert codes.count("dispatch.provisioned_on_demand.shared-archiver") == 1
    finally:
        await other.stop()


@pytest.mark.asyncio
async def test_fan_in_to_unregistered_worker_fails_softly(coord, inmemory_db, coord_cfg, clock, kafka):
    parent = await coord.create_task(worker="reporter", payload={})
    child = await coord.create_task(worker="parser", payload={}, parent_id=parent)

    other = Coordinator(db=inmemory_db, cfg=replace(coord_cfg, workers=["parser"]), clock=clock)
    await other.start()
    try:
        inmemory_db.workers.rows[:] = [w for w in inmemory_db.workers.rows if w["name"] != "reporter"]

        report = await other.complete_task(child, "r")

        assert report.fan_in_claimed is True
        assert report.fan_in_dispatched is False
        assert other.channel.is_provisioned("reporter") is False
        assert _fan_ins(kafka, "reporter") == []
        assert other.metrics.sample("tasktree_fan_in_total", result="failed") == 1.0
    finally:
        await other.stop()
