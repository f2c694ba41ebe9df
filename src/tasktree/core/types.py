from __future__ import annotations

"""
tasktree.core.types
===================

Shared type aliases and small constants used across the codebase.
Keep this module **tiny** and dependency-free.
"""

from typing import Final, Union

# ---- JSON-like value aliases -------------------------------------------------

JSONScalar = Union[str, int, float, bool, None]
JSONValue = Union[JSONScalar, "JSONArray", "JSONDict"]
JSONArray = list[JSONValue]
JSONDict = dict[str, JSONValue]

# ---- Time & IDs --------------------------------------------------------------

Millis = int
TimestampMs = int  # wall-clock epoch timestamp (ms)
MonotonicMs = int  # process-local monotonic time (ms)

TopicName = str
TaskId = str
WorkerName = str

# ---- Constants ---------------------------------------------------------------

# Field under which a parent's fan-in dispatch carries its children's results.
DEFAULT_FAN_IN_FIELD: Final[str] = "subtasks"

# Per-worker dispatch topic.
DEFAULT_TOPIC_DISPATCH_FMT: Final[str] = "tasks.{worker}.v1"


__all__ = [
    "JSONScalar",
    "JSONValue",
    "JSONArray",
    "JSONDict",
    "Millis",
    "TimestampMs",
    "MonotonicMs",
    "TopicName",
    "TaskId",
    "WorkerName",
    "DEFAULT_FAN_IN_FIELD",
    "DEFAULT_TOPIC_DISPATCH_FMT",
]
