from __future__ import annotations

"""
tasktree.coordinator.coordinator
================================

Completion fan-in engine.

Every task passes two independent signal points:

1. creation dispatch: right after `create_task` the task (id + original
   payload) goes to its worker's channel, whether or not it has a parent or
   will have children;
2. fan-in dispatch: when the last incomplete child of a parent completes, the
   parent's payload merged with all children's results goes to the parent's
   worker, exactly once per parent.

Completion of a task is the durable source of truth. Everything after the
atomic completion (parent lookup, child count, fan-in claim, aggregation,
dispatch) is best-effort: failures are logged and never undo the completion.

Concurrency: the parent row carries an `open_children` counter. Creating a
child takes a slot (refused once the parent's fan-in fired), completing a
child gives it back, and the one-time `fan_in_fired` claim only matches at
zero open slots. A child created while its last sibling completes either
lands before the claim and holds it off until it completes itself, or is
rejected as sealed. Siblings releasing their last slots at the same time
race on the claim; only the winner aggregates and dispatches.

Cascading is not recursive: the fan-in dispatch only notifies the parent's
worker. The parent completes later through its own `complete_task` call,
which repeats the same sequence one level up.
"""

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from ..api.errors import ConflictError, DownstreamDispatchError, NotFoundError, RepositoryError, ValidationError
from ..core.config import CoordinatorConfig
from ..core.log import bind_context, get_logger, log_context, swallow, warn_once
from ..core.time import Clock, SystemClock
from ..core.utils import clone_json, dumps
from ..dispatch.channel import DispatchChannel
from ..observability.tracing import trace
from ..protocol.messages import DispatchKind
from ..storage.mongo import MongoTaskRepository
from ..storage.tasks import CompleteOutcome, TaskRecord, TaskRepository
from ..transport.bus import Bus
from ..transport.kafka_bus import KafkaBus
from .metrics import CoordinatorMetrics

_OUTCOME_LABELS = {
    CompleteOutcome.APPLIED: "applied",
    CompleteOutcome.ALREADY_COMPLETED: "conflict",
    CompleteOutcome.NOT_FOUND: "not_found",
}


@dataclass
class CompletionReport:
    """What a successful `complete_task` call did beyond the completion itself."""

    task_id: str
    parent_id: str | None = None
    fan_in_claimed: bool = False
    fan_in_dispatched: bool = False


class Coordinator:
    """
    Sequences repository primitives and the dispatch channel.

    `db` is injected (e.g., a Motor database) unless a ready `repository` is
    given. `bus` defaults to a KafkaBus built from the config. `clock` is
    injectable for tests. The coordinator keeps no task state between calls.
    """

    def __init__(
        self,
        *,
        db=None,
        repository: TaskRepository | None = None,
        cfg: CoordinatorConfig | None = None,
        bus: Bus | None = None,
        clock: Clock | None = None,
        metrics_registry=None,
    ) -> None:
        if db is None and repository is None:
            raise ValueError("either db or repository must be provided")
        self.cfg = cfg if cfg is not None else CoordinatorConfig.load()
        self.clock: Clock = clock or SystemClock()
        self.repo: TaskRepository = repository or MongoTaskRepository(db=db, cfg=self.cfg, clock=self.clock)
        self.bus: Bus = bus or KafkaBus(self.cfg.kafka_bootstrap, send_timeout_ms=self.cfg.send_timeout_ms)
        self.channel = DispatchChannel(bus=self.bus, cfg=self.cfg, workers=self.cfg.workers, clock=self.clock)
        self.metrics = CoordinatorMetrics.create(metrics_registry)
        self._running = False

        self.log = get_logger("coordinator")
        bind_context(role="coordinator")

    # ---- lifecycle

    async def start(self) -> None:
        self.log.debug("coordinator.start", event="coord.start", workers=list(self.cfg.workers))
        await self.repo.ensure_indexes()
        for name in self.cfg.workers:
            await self.register_worker(name)
        await self.bus.start()
        self._running = True
        self.log.info("coordinator.started", event="coord.started")

    async def stop(self) -> None:
        self._running = False
        with swallow(logger=self.log, code="bus.stop", msg="bus stop failed", level=logging.ERROR, expected=False):
            await self.bus.stop()
        self.log.info("coordinator.stopped", event="coord.stopped")

    # ---- workers

    async def register_worker(self, name: str) -> None:
        """Register `name` as a valid task destination and provision its channel."""
        if not isinstance(name, str) or not name:
            raise ValidationError("worker name must be a non-empty string")
        await self.repo.register_worker(name)
        topic = self.channel.provision(name)
        self.log.debug("worker.registered", event="coord.worker.registered", worker=name, topic=topic)

    # ---- reads

    async def get_task(self, task_id: str) -> TaskRecord:
        return await self.repo.get(task_id)

    # ---- create

    @trace("tasktree.create")
    async def create_task(
        self,
        *,
        worker: str,
        payload: Mapping[str, Any] | None = None,
        parent_id: str | None = None,
    ) -> str:
        """
        Persist a task and send its creation dispatch.

        Raises:
            ValidationError: empty worker, non-object or non-JSON payload, bad parent id type.
            InvalidWorker / InvalidParent: referential checks failed; nothing was stored.
            DownstreamDispatchError: the task WAS stored (see `.task_id`) but its
                creation dispatch could not be enqueued.
        """
        payload = {} if payload is None else payload
        self._validate_create(worker=worker, payload=payload, parent_id=parent_id)

        task_id = await self.repo.create(worker=worker, payload=payload, parent_id=parent_id)
        self.metrics.created_total.inc()

        with log_context(task_id=task_id, parent_id=parent_id, worker=worker):
            self.log.info("task.created", event="coord.task.created")
            try:
                await self._dispatch(worker, task_id, dict(payload), kind=DispatchKind.created)
            except DownstreamDispatchError:
                self.metrics.dispatch_failures_total.labels(kind=DispatchKind.created.value).inc()
                self.log.error("task.dispatch.failed", event="coord.task.dispatch_failed", exc_info=True)
                raise
            with swallow(
                logger=self.log,
                code="task.mark_dispatched",
                msg="failed to record creation dispatch",
                level=logging.WARNING,
            ):
                await self.repo.mark_create_dispatched(task_id)
        return task_id

    def _validate_create(self, *, worker: Any, payload: Any, parent_id: Any) -> None:
        if not isinstance(worker, str) or not worker:
            raise ValidationError("worker must be a non-empty string")
        if not isinstance(payload, Mapping):
            raise ValidationError("payload must be a JSON object")
        if parent_id is not None and (not isinstance(parent_id, str) or not parent_id):
            raise ValidationError("parent_id must be a non-empty string when given")
        try:
            dumps(dict(payload))
        except (TypeError, ValueError) as e:
            raise ValidationError(f"payload is not JSON-serializable: {e}") from e

    # ---- complete

    @trace("tasktree.complete")
    async def complete_task(self, task_id: str, result: Any = None) -> CompletionReport:
        """
        Atomically complete `task_id` and, if it was the last incomplete child
        of its parent, fire the parent's fan-in dispatch.

        Raises:
            ValidationError: `result` is not JSON-serializable.
            ConflictError: the task was already completed (no side effects).
            NotFoundError: unknown task id (no side effects).
        """
        try:
            dumps(result)
        except (TypeError, ValueError) as e:
            raise ValidationError(f"result is not JSON-serializable: {e}") from e

        started = self.clock.mono_ms()
        with log_context(task_id=task_id):
            outcome = await self.repo.try_complete(task_id, result)
            self.metrics.completed_total.labels(result=_OUTCOME_LABELS[outcome]).inc()
            if outcome is CompleteOutcome.ALREADY_COMPLETED:
                self.log.info("task.complete.conflict", event="coord.task.complete_conflict")
                raise ConflictError(task_id)
            if outcome is CompleteOutcome.NOT_FOUND:
                raise NotFoundError(task_id)

            self.log.info("task.completed", event="coord.task.completed")
            report = CompletionReport(task_id=task_id)
            try:
                await self._maybe_fan_in(task_id, report)
            finally:
                self.metrics.complete_latency_ms.observe(self.clock.mono_ms() - started)
            return report

    async def _maybe_fan_in(self, task_id: str, report: CompletionReport) -> None:
        try:
            task = await self.repo.get(task_id)
        except Exception:  # noqa: BLE001
            self.log.warning("fan_in.task_lookup_failed", event="coord.fan_in.lookup_failed", exc_info=True)
            return
        if task.parent_id is None:
            return

        parent_id = task.parent_id
        report.parent_id = parent_id
        with log_context(parent_id=parent_id):
            try:
                open_left = await self.repo.release_child(parent_id)
            except Exception:  # noqa: BLE001
                self.log.warning("fan_in.release_failed", event="coord.fan_in.release_failed", exc_info=True)
                return
            if open_left > 0:
                self.log.debug("fan_in.pending", event="coord.fan_in.pending", remaining=open_left)
                return

            try:
                remaining = await self.repo.count_incomplete_children(parent_id)
            except Exception:  # noqa: BLE001
                self.log.warning("fan_in.count_failed", event="coord.fan_in.count_failed", exc_info=True)
                return
            if remaining > 0:
                self.log.debug("fan_in.pending", event="coord.fan_in.pending", remaining=remaining)
                return

            try:
                claimed = await self.repo.claim_fan_in(parent_id)
            except Exception:  # noqa: BLE001
                self.log.warning("fan_in.claim_failed", event="coord.fan_in.claim_failed", exc_info=True)
                return
            if not claimed:
                self.metrics.fan_in_total.labels(result="claim_lost").inc()
                self.log.debug("fan_in.claim_lost", event="coord.fan_in.claim_lost")
                return
            report.fan_in_claimed = True

            try:
                results = await self.repo.collect_child_results(parent_id)
                parent = await self.repo.get(parent_id)
            except Exception:  # noqa: BLE001
                self.metrics.fan_in_total.labels(result="failed").inc()
                self.log.error("fan_in.aggregate_failed", event="coord.fan_in.aggregate_failed", exc_info=True)
                return

            merged = clone_json(parent.payload)
            merged[self.cfg.fan_in_field] = results
            try:
                await self._dispatch(parent.worker, parent.id, merged, kind=DispatchKind.fan_in)
            except DownstreamDispatchError:
                self.metrics.fan_in_total.labels(result="failed").inc()
                self.metrics.dispatch_failures_total.labels(kind=DispatchKind.fan_in.value).inc()
                self.log.error("fan_in.dispatch_failed", event="coord.fan_in.dispatch_failed", exc_info=True)
                return

            report.fan_in_dispatched = True
            self.metrics.fan_in_total.labels(result="dispatched").inc()
            self.log.info(
                "fan_in.dispatched",
                event="coord.fan_in.dispatched",
                worker=parent.worker,
                children=len(results),
            )

    # ---- dispatch

    async def _dispatch(self, worker: str, task_id: str, payload: dict[str, Any], *, kind: DispatchKind) -> None:
        if not self.channel.is_provisioned(worker):
            # registered by another coordinator sharing the repository
            try:
                known = await self.repo.worker_exists(worker)
            except RepositoryError as e:
                raise DownstreamDispatchError(
                    f"cannot resolve destination for worker {worker!r}: {e}", worker=worker, task_id=task_id
                ) from e
            if known:
                self.channel.provision(worker)
                warn_once(
                    self.log,
                    f"dispatch.provisioned_on_demand.{worker}",
                    "worker provisioned on first dispatch",
                    worker=worker,
                )
        await self.channel.send(worker, task_id, payload, kind=kind)
