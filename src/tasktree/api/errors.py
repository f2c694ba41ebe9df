# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

"""
Error taxonomy for the tasktree public API.

The request layer maps these to transport-level responses:
client errors (validation, referential, conflict, not-found) are never
retried; dispatch and repository failures are server-side.
"""

from typing import Any


class TaskTreeError(Exception):
    """Base class for all tasktree errors."""

    ...


class ValidationError(TaskTreeError):
    """Input has the wrong shape (non-object payload, empty worker name, bad JSON)."""

    ...


class ReferentialError(TaskTreeError):
    """A referenced parent or worker does not exist."""

    ...


class InvalidParent(ReferentialError):
    """
    `parent_id` does not resolve to an existing task, or the parent no longer
    accepts children because its fan-in has already fired (`reason="sealed"`).
    """

    def __init__(self, parent_id: str, *, reason: str = "not_found") -> None:
        self.parent_id = parent_id
        self.reason = reason
        if reason == "sealed":
            super().__init__(f"parent task {parent_id} already fanned in; it accepts no more children")
        else:
            super().__init__(f"parent task {parent_id} does not exist")


class InvalidWorker(ReferentialError):
    """The worker name is not a registered dispatch destination."""

    def __init__(self, worker: str) -> None:
        self.worker = worker
        super().__init__(f"worker {worker!r} does not exist")


class ConflictError(TaskTreeError):
    """Duplicate completion attempt for an already-completed task."""

    def __init__(self, task_id: str) -> None:
        self.task_id = task_id
        super().__init__(f"task {task_id} already completed")


class NotFoundError(TaskTreeError):
    """Unknown task id."""

    def __init__(self, task_id: str) -> None:
        self.task_id = task_id
        super().__init__(f"task {task_id} not found")


class DownstreamDispatchError(TaskTreeError):
    """
    The dispatch channel failed to enqueue a message. The task record that
    triggered the dispatch stays committed; `task_id` names it when known.
    """

    def __init__(self, message: str, *, worker: str, task_id: str | None = None) -> None:
        self.worker = worker
        self.task_id = task_id
        super().__init__(message)


class RepositoryError(TaskTreeError):
    """The task repository failed (driver/network error)."""

    def __init__(self, op: str, cause: Any = None) -> None:
        self.op = op
        super().__init__(f"repository operation {op!r} failed: {cause}" if cause is not None else op)
