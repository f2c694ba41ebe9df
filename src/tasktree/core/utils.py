from __future__ import annotations

"""
tasktree.core.utils
===================

Low-level helpers with **no external dependencies**:
- Compact JSON (de)serialization for bus payloads.
- Task id generation.
- Deep-copy of JSON-like payloads so stored documents are never aliased.
"""

import copy
import json
import uuid
from typing import Any


def dumps(x: Any) -> bytes:
    """
    Compact JSON dump to UTF-8 bytes (ensure_ascii=False, no spaces).
    Used as the Kafka value serializer. NaN and infinities are not JSON and
    raise ValueError.
    """
    return json.dumps(x, ensure_ascii=False, separators=(",", ":"), allow_nan=False).encode("utf-8")


def loads(b: bytes) -> Any:
    """Inverse of dumps(): parse UTF-8 JSON bytes back to Python objects."""
    return json.loads(b.decode("utf-8"))


def new_task_id() -> str:
    """Fresh opaque task identifier (UUID4, canonical string form)."""
    return str(uuid.uuid4())


def clone_json(x: Any) -> Any:
    """Independent copy of a JSON-like value."""
    return copy.deepcopy(x)
