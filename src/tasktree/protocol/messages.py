# src/tasktree/protocol/messages.py
from __future__ import annotations

"""
tasktree protocol messages
==========================

Wire-level models:
- `Envelope`: what a worker receives on its dispatch topic.
- `CreateTaskRequest` / `CompleteTaskRequest`: request bodies accepted by the
  request layer.

Pydantic v2 models with `extra="forbid"` fail fast on unknown fields.
All timestamps are epoch milliseconds (UTC).
"""

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class DispatchKind(str, Enum):
    """Why a task was sent to its worker."""

    created = "created"
    fan_in = "fan_in"


class Envelope(BaseModel):
    """
    Dispatch message delivered to a worker's topic.

    Fields:
        v: Protocol schema version.
        kind: `created` for the creation dispatch, `fan_in` once all children finished.
        id: Task identifier (for fan-in: the parent's id).
        worker: Destination worker name.
        dedup_id: Stable id for consumer-side de-duplication of at-least-once delivery.
        ts_ms: Creation timestamp of the message.
        payload: The task payload; fan-in payloads also carry the children's results.
    """

    model_config = ConfigDict(extra="forbid")

    v: int = Field(default=1)
    kind: DispatchKind
    id: str
    worker: str
    dedup_id: str
    ts_ms: int
    payload: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def build(cls, *, kind: DispatchKind, task_id: str, worker: str, payload: dict[str, Any], ts_ms: int) -> Envelope:
        return cls(
            kind=kind,
            id=task_id,
            worker=worker,
            dedup_id=f"{kind.value}:{task_id}",
            ts_ms=ts_ms,
            payload=payload,
        )


class CreateTaskRequest(BaseModel):
    """Body of a task creation request. The worker comes from the route."""

    model_config = ConfigDict(extra="forbid")

    parent_id: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)


class CompleteTaskRequest(BaseModel):
    """Body of a task completion request. `result` is any JSON value."""

    model_config = ConfigDict(extra="forbid")

    result: Any = None
