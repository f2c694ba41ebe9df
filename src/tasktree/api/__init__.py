# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

"""
tasktree public API: error taxonomy and request handlers.
"""

from .errors import (
    ConflictError,
    DownstreamDispatchError,
    InvalidParent,
    InvalidWorker,
    NotFoundError,
    ReferentialError,
    RepositoryError,
    TaskTreeError,
    ValidationError,
)
from .handlers import Response, TaskHandlers

__all__ = [
    "ConflictError",
    "DownstreamDispatchError",
    "InvalidParent",
    "InvalidWorker",
    "NotFoundError",
    "ReferentialError",
    "RepositoryError",
    "Response",
    "TaskHandlers",
    "TaskTreeError",
    "ValidationError",
]
