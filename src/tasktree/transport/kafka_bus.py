# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

"""
Kafka-backed implementation of the transport bus using aiokafka.

Features:
- JSON (de)serialization via tasktree.core.utils.dumps/loads
- idempotent producer; `send()` waits for the broker acknowledgement
- manual commit consumers (default), used by workers and integration tooling

This module stays config-agnostic: callers pass the bootstrap servers and a
send timeout, then create topic/group-bound consumers as needed.
"""

import asyncio
import logging
from collections.abc import AsyncIterator, Mapping
from typing import cast

from aiokafka import AIOKafkaConsumer, AIOKafkaProducer

from ..core.log import get_logger, swallow
from ..core.utils import dumps, loads
from ..protocol.messages import Envelope
from .bus import Bus, Consumer, Received


class _KafkaConsumerWrapper(Consumer):
    """Thin adapter over AIOKafkaConsumer yielding `Received`."""

    def __init__(self, inner: AIOKafkaConsumer, *, log) -> None:
        self._c = inner
        self._log = log

    async def stop(self) -> None:
        with swallow(
            logger=self._log,
            code="bus.kafka.consumer.stop",
            msg="consumer stop failed",
            level=logging.WARNING,
        ):
            await self._c.stop()

    async def commit(self) -> None:
        with swallow(
            logger=self._log,
            code="bus.kafka.consumer.commit",
            msg="commit failed",
            level=logging.WARNING,
        ):
            await self._c.commit()

    def __aiter__(self) -> AsyncIterator[Received]:
        return self._iter_messages()

    async def _iter_messages(self) -> AsyncIterator[Received]:
        async for rec in self._c:
            try:
                env = Envelope.model_validate(cast(Mapping[str, object], rec.value))
            except Exception:  # noqa: BLE001
                # Bad payloads are skipped, not fatal for the stream.
                self._log.warning("failed to decode envelope", exc_info=True, topic=rec.topic)
                continue
            yield Received(
                topic=rec.topic,
                partition=rec.partition,
                offset=rec.offset,
                key=rec.key,
                envelope=env,
            )


class KafkaBus(Bus):
    """
    A minimal Kafka bus:
      - producer with idempotence, bounded by `send_timeout_ms` per message,
      - consumer factory (manual commit by default).
    """

    def __init__(self, bootstrap: str, *, send_timeout_ms: int = 5000) -> None:
        self.bootstrap = bootstrap
        self.send_timeout_ms = send_timeout_ms
        self._producer: AIOKafkaProducer | None = None
        self._consumers: list[_KafkaConsumerWrapper] = []
        self.log = get_logger("transport.kafka")

    # ---- lifecycle

    async def start(self) -> None:
        if self._producer is not None:
            return
        producer = AIOKafkaProducer(
            bootstrap_servers=self.bootstrap,
            value_serializer=dumps,
            enable_idempotence=True,
        )
        await producer.start()
        self._producer = producer
        self.log.debug("bus.started", event="bus.kafka.started", bootstrap=self.bootstrap)

    async def stop(self) -> None:
        for cw in list(self._consumers):
            await cw.stop()
        self._consumers.clear()
        if self._producer:
            with swallow(
                logger=self.log,
                code="bus.kafka.producer.stop",
                msg="producer stop failed",
                level=logging.WARNING,
            ):
                await self._producer.stop()
        self._producer = None

    # ---- consumer factory

    async def new_consumer(
        self,
        topics: list[str],
        group_id: str,
        *,
        manual_commit: bool = True,
        from_beginning: bool = False,
    ) -> Consumer:
        c = AIOKafkaConsumer(
            *topics,
            bootstrap_servers=self.bootstrap,
            group_id=group_id,
            value_deserializer=loads,
            enable_auto_commit=not manual_commit,
            auto_offset_reset="earliest" if from_beginning else "latest",
        )
        await c.start()
        wrapper = _KafkaConsumerWrapper(c, log=self.log)
        self._consumers.append(wrapper)
        return wrapper

    # ---- send

    async def send(self, topic: str, key: bytes | None, env: Envelope) -> None:
        """
        Serialize and send an Envelope; returns once the broker acknowledged it.

        Raises:
            RuntimeError: `start()` was not called.
            asyncio.TimeoutError: no acknowledgement within `send_timeout_ms`.
        """
        if self._producer is None:
            raise RuntimeError("KafkaBus producer is not initialized; call start() first")
        await asyncio.wait_for(
            self._producer.send_and_wait(topic, env.model_dump(mode="json"), key=key),
            timeout=self.send_timeout_ms / 1000.0,
        )
