# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

"""
Mongo-backed task repository.

`db` is injected (e.g., a Motor database handle); only the collection API is
used: insert_one / find_one / find / count_documents / update_one /
find_one_and_update / create_index. Tests pass an in-memory stand-in.

Atomicity comes from single-document conditional updates:
- completion: `{"id": X, "completed": False}` -> `$set completed=True`
- child reservation: `{"id": P, "fan_in_fired": {"$ne": True}}` -> `$inc open_children=+1`
- child release: `{"id": P, "open_children": {"$gt": 0}}` -> `$inc open_children=-1`
- fan-in claim: `{"id": P, "open_children": 0, "fan_in_fired": {"$ne": True}}` -> `$set fan_in_fired=True`
`find_one_and_update` returns the pre-image on a match and None otherwise,
so at most one concurrent caller sees a document back.
"""

import logging
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from typing import Any

from ..api.errors import InvalidParent, InvalidWorker, NotFoundError, RepositoryError, TaskTreeError
from ..core.config import CoordinatorConfig
from ..core.log import get_logger, swallow
from ..core.time import Clock, SystemClock
from ..core.utils import clone_json, new_task_id
from .tasks import CompleteOutcome, TaskRecord, TaskRepository

_log = get_logger("storage.mongo")


@contextmanager
def _guard(op: str) -> Iterator[None]:
    """Re-raise driver failures as RepositoryError; domain errors pass through."""
    try:
        yield
    except TaskTreeError:
        raise
    except Exception as e:  # noqa: BLE001
        raise RepositoryError(op, e) from e


class MongoTaskRepository(TaskRepository):
    def __init__(self, *, db, cfg: CoordinatorConfig | None = None, clock: Clock | None = None) -> None:
        self.db = db
        self.cfg = cfg or CoordinatorConfig()
        self.clock: Clock = clock or SystemClock()

    @property
    def tasks(self):
        return getattr(self.db, self.cfg.tasks_collection)

    @property
    def workers(self):
        return getattr(self.db, self.cfg.workers_collection)

    async def ensure_indexes(self) -> None:
        with _guard("ensure_indexes"):
            await self.tasks.create_index([("id", 1)], unique=True, name="uniq_task_id")
            await self.tasks.create_index([("parent_id", 1), ("completed", 1)], name="parent_completed")
            await self.workers.create_index([("name", 1)], unique=True, name="uniq_worker_name")

    # ---- workers

    async def register_worker(self, name: str) -> None:
        with _guard("register_worker"):
            await self.workers.update_one(
                {"name": name},
                {"$setOnInsert": {"name": name, "created_ms": self.clock.now_ms()}},
                upsert=True,
            )

    async def worker_exists(self, name: str) -> bool:
        with _guard("worker_exists"):
            return await self.workers.find_one({"name": name}) is not None

    # ---- tasks

    async def create(self, *, worker: str, payload: Mapping[str, Any], parent_id: str | None = None) -> str:
        if not await self.worker_exists(worker):
            raise InvalidWorker(worker)

        if parent_id is not None:
            await self._reserve_child(parent_id)

        rec = TaskRecord(
            id=new_task_id(),
            worker=worker,
            payload=clone_json(dict(payload)),
            parent_id=parent_id,
            created_ms=self.clock.now_ms(),
        )
        with _guard("create.insert"):
            try:
                await self.tasks.insert_one(rec.to_doc())
            except Exception:
                if parent_id is not None:
                    with swallow(logger=_log, code="repo.create.unreserve", level=logging.WARNING):
                        await self.release_child(parent_id)
                raise
        _log.debug("task.inserted", event="repo.task.inserted", task_id=rec.id, parent_id=parent_id, worker=worker)
        return rec.id

    async def _reserve_child(self, parent_id: str) -> None:
        """Take an open-child slot on the parent; fails once the parent is sealed."""
        flt: dict[str, Any] = {"id": parent_id}
        if self.cfg.reject_children_after_fan_in:
            flt["fan_in_fired"] = {"$ne": True}
        with _guard("create.reserve_parent"):
            before = await self.tasks.find_one_and_update(flt, {"$inc": {"open_children": 1}})
            if before is not None:
                return
            parent = await self.tasks.find_one({"id": parent_id}, {"id": 1})
        raise InvalidParent(parent_id, reason="sealed" if parent is not None else "not_found")

    async def get(self, task_id: str) -> TaskRecord:
        with _guard("get"):
            doc = await self.tasks.find_one({"id": task_id})
        if doc is None:
            raise NotFoundError(task_id)
        return TaskRecord.from_doc(clone_json(doc))

    async def try_complete(self, task_id: str, result: Any) -> CompleteOutcome:
        with _guard("try_complete"):
            before = await self.tasks.find_one_and_update(
                {"id": task_id, "completed": False},
                {"$set": {"completed": True, "result": clone_json(result), "completed_ms": self.clock.now_ms()}},
            )
            if before is not None:
                return CompleteOutcome.APPLIED
            existing = await self.tasks.find_one({"id": task_id}, {"id": 1})
        return CompleteOutcome.ALREADY_COMPLETED if existing is not None else CompleteOutcome.NOT_FOUND

    async def count_incomplete_children(self, parent_id: str) -> int:
        with _guard("count_incomplete_children"):
            return int(await self.tasks.count_documents({"parent_id": parent_id, "completed": False}))

    async def collect_child_results(self, parent_id: str) -> list[Any]:
        out: list[Any] = []
        with _guard("collect_child_results"):
            cur = self.tasks.find({"parent_id": parent_id, "completed": True}, {"result": 1})
            async for doc in cur.sort([("created_ms", 1), ("_id", 1)]):
                out.append(clone_json(doc.get("result")))
        return out

    async def release_child(self, parent_id: str) -> int:
        """Give back one open-child slot; returns the parent's remaining open children."""
        with _guard("release_child"):
            before = await self.tasks.find_one_and_update(
                {"id": parent_id, "open_children": {"$gt": 0}},
                {"$inc": {"open_children": -1}},
            )
        if before is None:
            return 0
        return int(before.get("open_children") or 0) - 1

    async def claim_fan_in(self, parent_id: str) -> bool:
        with _guard("claim_fan_in"):
            before = await self.tasks.find_one_and_update(
                {"id": parent_id, "open_children": 0, "fan_in_fired": {"$ne": True}},
                {"$set": {"fan_in_fired": True, "fan_in_ms": self.clock.now_ms()}},
            )
        return before is not None

    async def mark_create_dispatched(self, task_id: str) -> None:
        with _guard("mark_create_dispatched"):
            await self.tasks.update_one({"id": task_id}, {"$set": {"dispatched_on_create": True}})
