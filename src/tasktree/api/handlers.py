# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

"""
Transport-neutral request handlers.

A web framework adapter routes:
    POST /tasks/{worker}          -> TaskHandlers.create_task(worker, body)
    POST /tasks/{task_id}/complete -> TaskHandlers.complete_task(task_id, body)
and writes `Response.status` / `Response.body` back as JSON.

Status mapping:
    ValidationError, ReferentialError -> 400
    NotFoundError                     -> 404
    ConflictError                     -> 409
    DownstreamDispatchError           -> 500 (task created; body carries its id)
    RepositoryError                   -> 500
"""

import json
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

import pydantic

from ..core.log import get_logger
from ..protocol.messages import CompleteTaskRequest, CreateTaskRequest
from .errors import (
    ConflictError,
    DownstreamDispatchError,
    NotFoundError,
    ReferentialError,
    RepositoryError,
    ValidationError,
)

__all__ = ["Response", "TaskHandlers"]

Body = bytes | str | Mapping[str, Any] | None


@dataclass(frozen=True)
class Response:
    status: int
    body: dict[str, Any] = field(default_factory=dict)


def _error(status: int, message: str, **extra: Any) -> Response:
    return Response(status, {"error": message, **extra})


def _parse(model: type[pydantic.BaseModel], body: Body) -> Any:
    """Decode a JSON request body into `model`; raises ValidationError."""
    if body is None or body == b"" or body == "":
        raw: Any = {}
    elif isinstance(body, (bytes, str)):
        try:
            raw = json.loads(body)
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise ValidationError(f"invalid JSON body: {e}") from e
    else:
        raw = dict(body)
    if not isinstance(raw, dict):
        raise ValidationError("request body must be a JSON object")
    try:
        return model.model_validate(raw)
    except pydantic.ValidationError as e:
        raise ValidationError(f"invalid request body: {e.errors(include_url=False)}") from e


class TaskHandlers:
    """Maps request bodies onto a `Coordinator` and its errors onto statuses."""

    def __init__(self, coordinator) -> None:
        self.coordinator = coordinator
        self.log = get_logger("api")

    async def create_task(self, worker_name: str, body: Body) -> Response:
        try:
            req = _parse(CreateTaskRequest, body)
            task_id = await self.coordinator.create_task(
                worker=worker_name, payload=req.payload, parent_id=req.parent_id
            )
        except (ValidationError, ReferentialError) as e:
            return _error(400, str(e))
        except DownstreamDispatchError as e:
            return _error(500, "task created but failed to queue", id=e.task_id)
        except RepositoryError:
            self.log.error("api.create.repository_failed", event="api.create.repository_failed", exc_info=True)
            return _error(500, "internal error")
        return Response(201, {"id": task_id})

    async def complete_task(self, task_id: str, body: Body) -> Response:
        try:
            req = _parse(CompleteTaskRequest, body)
            await self.coordinator.complete_task(task_id, req.result)
        except ValidationError as e:
            return _error(400, str(e))
        except NotFoundError as e:
            return _error(404, str(e))
        except ConflictError as e:
            return _error(409, str(e))
        except RepositoryError:
            self.log.error("api.complete.repository_failed", event="api.complete.repository_failed", exc_info=True)
            return _error(500, "internal error")
        return Response(200, {"id": task_id, "completed": True})
