# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

"""
Low-cardinality Prometheus metrics for the coordinator.

Labels are conservative (outcome/kind) and never carry task ids or worker names.
Each coordinator gets its own registry unless one is passed in, so several
instances can live in one process (tests, embedded use).
"""

from dataclasses import dataclass
from typing import Any

from prometheus_client import CollectorRegistry, Counter, Histogram


@dataclass
class CoordinatorMetrics:
    registry: CollectorRegistry
    created_total: Any
    completed_total: Any
    fan_in_total: Any
    dispatch_failures_total: Any
    complete_latency_ms: Any

    @classmethod
    def create(cls, registry: CollectorRegistry | None = None) -> CoordinatorMetrics:
        reg = registry if registry is not None else CollectorRegistry()
        return cls(
            registry=reg,
            created_total=Counter("tasktree_tasks_created_total", "Tasks created", registry=reg),
            completed_total=Counter(
                "tasktree_tasks_completed_total", "Completion requests by outcome", ["result"], registry=reg
            ),
            fan_in_total=Counter("tasktree_fan_in_total", "Fan-in attempts by outcome", ["result"], registry=reg),
            dispatch_failures_total=Counter(
                "tasktree_dispatch_failures_total", "Dispatch channel failures", ["kind"], registry=reg
            ),
            complete_latency_ms=Histogram(
                "tasktree_complete_latency_ms",
                "Latency of a completion request including fan-in (ms)",
                buckets=(1, 5, 10, 25, 50, 100, 250, 500, 1000, 5000),
                registry=reg,
            ),
        )

    def sample(self, name: str, **labels: str) -> float:
        """Current value of a sample (0.0 if it was never touched)."""
        return self.registry.get_sample_value(name, labels or None) or 0.0
