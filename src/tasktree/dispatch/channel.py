from __future__ import annotations

"""
tasktree.dispatch.channel
=========================

Named dispatch channel per worker: one bus topic per provisioned worker.

`send()` either returns after the bus acknowledged the message or raises
`DownstreamDispatchError`; there is no partial-send state and no retry here.

The provisioned set is local to this process. The coordinator provisions a
worker it has not seen only after finding it in the worker registry, so a
send to a worker missing from both is refused here.
"""

from collections.abc import Iterable
from ..api.errors import DownstreamDispatchError
from ..core.config import CoordinatorConfig
from ..core.log import get_logger
from ..core.time import Clock, SystemClock
from ..core.types import JSONDict, TaskId, TopicName, WorkerName
from ..core.utils import clone_json
from ..protocol.messages import DispatchKind, Envelope
from ..transport.bus import Bus


class DispatchChannel:
    def __init__(
        self,
        *,
        bus: Bus,
        cfg: CoordinatorConfig | None = None,
        workers: Iterable[str] = (),
        clock: Clock | None = None,
    ) -> None:
        self.bus = bus
        self.cfg = cfg or CoordinatorConfig()
        self.clock: Clock = clock or SystemClock()
        self._provisioned: set[WorkerName] = set(workers)
        self.log = get_logger("dispatch")

    def provision(self, worker: WorkerName) -> TopicName:
        """Make `worker` a valid destination; returns its topic."""
        self._provisioned.add(worker)
        return self.cfg.topic_dispatch(worker)

    def is_provisioned(self, worker: WorkerName) -> bool:
        return worker in self._provisioned

    @property
    def workers(self) -> frozenset[WorkerName]:
        return frozenset(self._provisioned)

    async def send(
        self,
        worker: WorkerName,
        task_id: TaskId,
        payload: JSONDict,
        *,
        kind: DispatchKind = DispatchKind.created,
    ) -> Envelope:
        """Enqueue `payload` for `worker`, tagged with `task_id`. Returns the sent envelope."""
        if worker not in self._provisioned:
            raise DownstreamDispatchError(
                f"worker {worker!r} has no provisioned destination", worker=worker, task_id=task_id
            )

        topic = self.cfg.topic_dispatch(worker)
        env = Envelope.build(
            kind=kind,
            task_id=task_id,
            worker=worker,
            payload=clone_json(payload),
            ts_ms=self.clock.now_ms(),
        )
        try:
            await self.bus.send(topic, task_id.encode("utf-8"), env)
        except Exception as e:  # noqa: BLE001
            raise DownstreamDispatchError(
                f"failed to send {kind.value} dispatch for task {task_id} to {topic}: {e}",
                worker=worker,
                task_id=task_id,
            ) from e

        self.log.info(
            "dispatch.sent",
            event="dispatch.sent",
            task_id=task_id,
            worker=worker,
            topic=topic,
            kind=kind.value,
        )
        return env
