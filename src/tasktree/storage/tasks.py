# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

"""
Task repository interface (DB-agnostic).

Responsibilities:
- Persist task records and the worker registry.
- Provide the atomic primitives the coordinator sequences: conditional
  completion and the one-time fan-in claim on a parent.

No business logic beyond per-call atomicity lives here.
"""

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol, runtime_checkable

__all__ = [
    "CompleteOutcome",
    "TaskRecord",
    "TaskRepository",
]


class CompleteOutcome(str, Enum):
    """Result of `TaskRepository.try_complete`."""

    APPLIED = "applied"
    ALREADY_COMPLETED = "already_completed"
    NOT_FOUND = "not_found"


@dataclass
class TaskRecord:
    """
    A persisted task.

    Attributes:
        id: Opaque unique identifier assigned at creation.
        worker: Destination worker (dispatch channel) name.
        payload: Data set at creation; never modified afterwards.
        parent_id: Optional parent task id.
        result: Set exactly once by the completing call.
        completed: Monotonic completion flag.
        dispatched_on_create: The creation dispatch was accepted by the channel.
        fan_in_fired: The one-time fan-in claim on this task (as a parent) was taken.
        open_children: Children reserved on this task (as a parent) and not yet released
            by their completion. The fan-in claim requires it to be zero.
        created_ms / completed_ms / fan_in_ms: Epoch-ms timestamps.
    """

    id: str
    worker: str
    payload: dict[str, Any] = field(default_factory=dict)
    parent_id: str | None = None
    result: Any = None
    completed: bool = False
    dispatched_on_create: bool = False
    fan_in_fired: bool = False
    open_children: int = 0
    created_ms: int = 0
    completed_ms: int | None = None
    fan_in_ms: int | None = None

    @classmethod
    def from_doc(cls, doc: Mapping[str, Any]) -> TaskRecord:
        return cls(
            id=doc["id"],
            worker=doc["worker"],
            payload=dict(doc.get("payload") or {}),
            parent_id=doc.get("parent_id"),
            result=doc.get("result"),
            completed=bool(doc.get("completed", False)),
            dispatched_on_create=bool(doc.get("dispatched_on_create", False)),
            fan_in_fired=bool(doc.get("fan_in_fired", False)),
            open_children=int(doc.get("open_children") or 0),
            created_ms=int(doc.get("created_ms") or 0),
            completed_ms=doc.get("completed_ms"),
            fan_in_ms=doc.get("fan_in_ms"),
        )

    def to_doc(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "parent_id": self.parent_id,
            "worker": self.worker,
            "payload": self.payload,
            "result": self.result,
            "completed": self.completed,
            "dispatched_on_create": self.dispatched_on_create,
            "fan_in_fired": self.fan_in_fired,
            "open_children": self.open_children,
            "created_ms": self.created_ms,
            "completed_ms": self.completed_ms,
            "fan_in_ms": self.fan_in_ms,
        }


@runtime_checkable
class TaskRepository(Protocol):
    """
    Async primitives over task records.

    Notes:
        - `try_complete` MUST be a single atomic conditional update: for any
          number of concurrent calls on one id exactly one returns APPLIED.
        - `claim_fan_in` MUST be atomic in the same way: True for exactly one caller,
          and only while the parent has no open children.
        - `create` reserves an open-child slot on the parent in the same atomic
          update that checks the seal; `release_child` gives it back once.
        - `create` MUST NOT leave a record behind when it raises.
    """

    async def ensure_indexes(self) -> None: ...

    # ---- workers

    async def register_worker(self, name: str) -> None: ...
    async def worker_exists(self, name: str) -> bool: ...

    # ---- tasks

    async def create(self, *, worker: str, payload: Mapping[str, Any], parent_id: str | None = None) -> str:
        """
        Insert a new task and return its id.

        Raises:
            InvalidWorker: `worker` is not registered.
            InvalidParent: `parent_id` is set and unknown (or sealed by a fired fan-in).
        """
        ...

    async def get(self, task_id: str) -> TaskRecord:
        """Raises NotFoundError for unknown ids."""
        ...

    async def try_complete(self, task_id: str, result: Any) -> CompleteOutcome: ...
    async def count_incomplete_children(self, parent_id: str) -> int: ...
    async def collect_child_results(self, parent_id: str) -> list[Any]: ...
    async def release_child(self, parent_id: str) -> int: ...
    async def claim_fan_in(self, parent_id: str) -> bool: ...
    async def mark_create_dispatched(self, task_id: str) -> None: ...
