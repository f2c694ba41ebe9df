from __future__ import annotations

"""
tasktree.core.config
====================

Strongly-typed configuration for the Coordinator.
- No external deps; optional JSON file loading.
- Derives millisecond fields from seconds to avoid repeated conversions.
- Small env overrides for container deployments.

If a config file path is not provided or not found, defaults are used.
"""

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .log import get_logger
from .types import DEFAULT_FAN_IN_FIELD, DEFAULT_TOPIC_DISPATCH_FMT

_log = get_logger("config")


def _parse_csv_env(name: str) -> list[str]:
    val = os.getenv(name)
    if not val:
        return []
    return [s.strip() for s in val.split(",") if s.strip()]


def _try_load_json(path: Path | None) -> dict[str, Any]:
    if not path or not path.exists():
        return {}
    data = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ValueError(f"config file {path} must contain a JSON object")
    return data


@dataclass
class CoordinatorConfig:
    """Coordinator configuration loaded from JSON/env with derived millisecond fields."""

    # ---- Bus / Kafka
    kafka_bootstrap: str = "kafka:9092"
    topic_dispatch_fmt: str = DEFAULT_TOPIC_DISPATCH_FMT

    # ---- Workers registered (and provisioned on the dispatch channel) at start
    workers: list[str] = field(default_factory=list)

    # ---- Storage
    tasks_collection: str = "tasks"
    workers_collection: str = "workers"

    # ---- Fan-in
    fan_in_field: str = DEFAULT_FAN_IN_FIELD
    reject_children_after_fan_in: bool = True

    # ---- Timings (seconds)
    send_timeout_sec: float = 5.0

    # ---- Derived (ms)
    send_timeout_ms: int = 0

    def __post_init__(self) -> None:
        if not self.kafka_bootstrap:
            raise ValueError("kafka_bootstrap must be a non-empty string")
        if not isinstance(self.workers, list) or not all(isinstance(x, str) and x for x in self.workers):
            raise ValueError("workers must be a list of non-empty strings")
        if "{worker}" not in self.topic_dispatch_fmt:
            raise ValueError("topic_dispatch_fmt must contain the '{worker}' placeholder")
        if not self.fan_in_field:
            raise ValueError("fan_in_field must be a non-empty string")
        if self.send_timeout_sec <= 0:
            raise ValueError("send_timeout_sec must be positive")
        self.send_timeout_ms = int(self.send_timeout_sec * 1000)

    def topic_dispatch(self, worker: str) -> str:
        return self.topic_dispatch_fmt.format(worker=worker)

    @classmethod
    def load(cls, path: Path | str | None = None, *, overrides: dict[str, Any] | None = None) -> CoordinatorConfig:
        """
        Load config from JSON file (if provided), then apply env and overrides.

        Env overrides:
          - KAFKA_BOOTSTRAP_SERVERS
          - TASKTREE_WORKERS (comma-separated)
          - TASKTREE_FAN_IN_FIELD
        """
        data: dict[str, Any] = {}

        file_path: Path | None = Path(path) if path else None
        data.update(_try_load_json(file_path))

        if os.getenv("KAFKA_BOOTSTRAP_SERVERS"):
            data["kafka_bootstrap"] = os.environ["KAFKA_BOOTSTRAP_SERVERS"]
        workers = _parse_csv_env("TASKTREE_WORKERS")
        if workers:
            data["workers"] = workers
        if os.getenv("TASKTREE_FAN_IN_FIELD"):
            data["fan_in_field"] = os.environ["TASKTREE_FAN_IN_FIELD"]

        if overrides:
            data.update(overrides)

        cfg = cls(**data)
        _log.debug("config.loaded", event="config.loaded", source=str(file_path) if file_path else None)
        return cfg
