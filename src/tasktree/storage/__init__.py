# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

"""
Task storage: DB-agnostic repository protocol and the Mongo implementation.
"""

from .mongo import MongoTaskRepository
from .tasks import CompleteOutcome, TaskRecord, TaskRepository

__all__ = [
    "CompleteOutcome",
    "MongoTaskRepository",
    "TaskRecord",
    "TaskRepository",
]
