# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

"""
Transport abstraction over a message bus.

This module defines:
- `Bus` protocol: lifecycle + send + consumer factory.
- `Consumer` protocol: async-iterable stream of `Received` messages and manual commits.
- `Received`: parsed dispatch envelope + delivery metadata.

Concrete implementations (e.g., Kafka) live in their own modules.
"""

from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from ..protocol.messages import Envelope


@dataclass(frozen=True)
class Received:
    """
    A single message fetched from the bus.

    Attributes:
        topic: Source topic name.
        partition: Zero-based partition index (if the backend supports partitions).
        offset: Offset within the partition (if applicable).
        key: Optional message key (raw bytes).
        envelope: Parsed dispatch `Envelope`.
    """

    topic: str
    partition: int | None
    offset: int | None
    key: bytes | None
    envelope: Envelope


@runtime_checkable
class Consumer(Protocol):
    """An async-iterable message consumer; call `commit()` once it is safe to advance offsets."""

    async def stop(self) -> None: ...
    async def commit(self) -> None: ...
    def __aiter__(self) -> AsyncIterator[Received]: ...


@runtime_checkable
class Bus(Protocol):
    """
    Abstract bus used by the dispatch channel.

    Implementations should:
      - provide idempotent `start()`/`stop()`,
      - return from `send()` only once the broker acknowledged the message,
      - expose a consumer factory with manual commit support.
    """

    async def start(self) -> None: ...
    async def stop(self) -> None: ...

    async def send(self, topic: str, key: bytes | None, env: Envelope) -> None: ...

    async def new_consumer(
        self,
        topics: list[str],
        group_id: str,
        *,
        manual_commit: bool = True,
        from_beginning: bool = False,
    ) -> Consumer: ...
