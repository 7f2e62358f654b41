"""Task transports feeding the per-instrument executor.

Both transports hand out one ``Delivery`` at a time and rely on the consumer
to ``ack`` or ``nack`` it. A nack with ``requeue=True`` schedules the task
again after ``delay_seconds``; this delayed redelivery is how a task whose
instrument is busy waits its turn.
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, AsyncIterator, Optional

from core.logging import get_logger
from core.trading.models import Task

logger = get_logger(__name__, component="streaming")


@dataclass
class Delivery:
    task: Task
    handle: Any = None  # transport specific (e.g. the Kafka ConsumerRecord)


def bump_attempts(task: Task, error: Optional[BaseException]) -> Task:
    """Count a redelivery against the task only when it follows a failure."""
    if error is None:
        return task
    return task.model_copy(update={"attempts": task.attempts + 1})


class TaskTransport(ABC):
    """Durable or in-process source of tasks with nack/requeue semantics."""

    name: str = "transport"
    # Whether several deliveries may be handled at once without breaking
    # the transport's acknowledgement ordering.
    supports_concurrent_handlers: bool = True

    async def start(self) -> None:
        pass

    async def stop(self) -> None:
        pass

    @abstractmethod
    async def publish(self, task: Task, delay_seconds: float = 0.0) -> None:
        ...

    @abstractmethod
    def deliveries(self) -> AsyncIterator[Delivery]:
        ...

    @abstractmethod
    async def ack(self, delivery: Delivery) -> None:
        ...

    @abstractmethod
    async def nack(self, delivery: Delivery, requeue: bool = True, delay_seconds: float = 0.0,
                   error: Optional[BaseException] = None) -> None:
        ...


class LocalTaskTransport(TaskTransport):
    """In-process FIFO queue used for directly submitted intents."""

    name = "local"

    def __init__(self, maxsize: int = 0):
        self._queue: asyncio.Queue[Optional[Task]] = asyncio.Queue(maxsize=maxsize)
        self._timers: set[asyncio.TimerHandle] = set()
        self._closed = False
        self.dead_letters: list[Task] = []

    async def stop(self) -> None:
        self._closed = True
        for timer in self._timers:
            timer.cancel()
        self._timers.clear()
        # Wake up the consumer loop
        self._queue.put_nowait(None)

    async def publish(self, task: Task, delay_seconds: float = 0.0) -> None:
        if self._closed:
            raise RuntimeError("Transport is stopped")
        if delay_seconds <= 0:
            await self._queue.put(task)
            return

        loop = asyncio.get_running_loop()
        timer: Optional[asyncio.TimerHandle] = None

        def _release() -> None:
            self._timers.discard(timer)
            if not self._closed:
                self._queue.put_nowait(task)

        timer = loop.call_later(delay_seconds, _release)
        self._timers.add(timer)

    async def deliveries(self) -> AsyncIterator[Delivery]:
        while True:
            task = await self._queue.get()
            if task is None:
                return
            yield Delivery(task=task)

    async def ack(self, delivery: Delivery) -> None:
        return None

    async def nack(self, delivery: Delivery, requeue: bool = True, delay_seconds: float = 0.0,
                   error: Optional[BaseException] = None) -> None:
        task = bump_attempts(delivery.task, error)
        if requeue and not self._closed:
            await self.publish(task, delay_seconds)
            return
        self.dead_letters.append(task)
        logger.warning("Task dead-lettered", task_id=task.task_id, instrument=task.instrument,
                       error=str(error) if error else None)

    @property
    def pending(self) -> int:
        return self._queue.qsize() + len(self._timers)
