"""Per-instrument exclusive executor over a task transport."""

import asyncio
from typing import Any, Awaitable, Callable, Dict, Optional

from core.config.settings import ExecutorSettings
from core.logging import get_trading_logger_safe
from core.monitoring.prometheus_metrics import GatewayMetrics
from core.streaming.task_transport import Delivery, TaskTransport
from core.trading.models import Task
from core.utils.exceptions import InstrumentLockedError, PermanentError
from services.executor.locks import InstrumentLockRegistry
from services.executor.throttle import JitteredThrottle

logger = get_trading_logger_safe(__name__)

TaskHandler = Callable[[Task], Awaitable[Any]]


class InstrumentExecutor:
    """Drains a transport so that no two tasks for one instrument run at once.

    Each delivery must win the instrument's lock in the shared
    ``InstrumentLockRegistry``; a delivery that finds it held is nacked for
    delayed redelivery without counting as a failure. The winner waits out the
    throttle, runs the handler, and is acked. Handler failures are redelivered
    until ``max_redeliveries``; permanent errors are dead-lettered at once.

    Exclusivity across processes holds only when the transport delivers each
    instrument's tasks to a single consumer one at a time.
    """

    def __init__(
        self,
        transport: TaskTransport,
        locks: InstrumentLockRegistry,
        throttle: JitteredThrottle,
        settings: Optional[ExecutorSettings] = None,
        metrics: Optional[GatewayMetrics] = None,
    ):
        self.transport = transport
        self.locks = locks
        self.throttle = throttle
        self.settings = settings or ExecutorSettings()
        self.metrics = metrics
        self._handler: Optional[TaskHandler] = None
        self._runner: Optional[asyncio.Task] = None
        self._in_flight: set[asyncio.Task] = set()
        self._pending: Dict[str, asyncio.Future] = {}
        max_in_flight = self.settings.max_in_flight if transport.supports_concurrent_handlers else 1
        self._slots = asyncio.Semaphore(max(1, max_in_flight))

    @property
    def running(self) -> bool:
        return self._runner is not None and not self._runner.done()

    async def submit(self, task: Task) -> asyncio.Future:
        """Publish ``task``; the returned future completes with the handler result."""
        future = asyncio.get_running_loop().create_future()
        self._pending[task.task_id] = future
        try:
            await self.transport.publish(task)
        except Exception:
            self._pending.pop(task.task_id, None)
            raise
        return future

    async def start(self, handler: TaskHandler) -> None:
        if self.running:
            return
        self._handler = handler
        await self.transport.start()
        self._runner = asyncio.create_task(self._run(), name=f"executor-{self.transport.name}")
        logger.info("Executor started", transport=self.transport.name)

    async def stop(self) -> None:
        if self._runner is not None:
            self._runner.cancel()
            try:
                await self._runner
            except asyncio.CancelledError:
                pass
            self._runner = None
        if self._in_flight:
            await asyncio.gather(*self._in_flight, return_exceptions=True)
        await self.transport.stop()
        for future in self._pending.values():
            if not future.done():
                future.cancel()
        self._pending.clear()
        logger.info("Executor stopped", transport=self.transport.name)

    async def _run(self) -> None:
        async for delivery in self.transport.deliveries():
            await self._slots.acquire()
            job = asyncio.create_task(self._process(delivery))
            self._in_flight.add(job)
            job.add_done_callback(self._job_done)

    def _job_done(self, job: asyncio.Task) -> None:
        self._in_flight.discard(job)
        self._slots.release()
        if not job.cancelled() and job.exception() is not None:
            logger.error("Executor job crashed", error=str(job.exception()))

    async def _process(self, delivery: Delivery) -> None:
        task = delivery.task
        try:
            async with self.locks.hold(task.instrument):
                await self.throttle.wait()
                result = await self._handler(task)
        except InstrumentLockedError:
            # Control-flow signal, not a failure
            logger.debug("Instrument locked, requeueing", task_id=task.task_id, instrument=task.instrument)
            if self.metrics is not None:
                self.metrics.lock_rejections.labels(instrument=task.instrument).inc()
            await self.transport.nack(delivery, requeue=True,
                                      delay_seconds=self.settings.locked_retry_delay_ms / 1000)
            return
        except Exception as e:
            await self._handle_failure(delivery, e)
            return

        await self.transport.ack(delivery)
        self._record(task, "succeeded")
        future = self._pending.pop(task.task_id, None)
        if future is not None and not future.done():
            future.set_result(result)

    async def _handle_failure(self, delivery: Delivery, error: Exception) -> None:
        task = delivery.task
        exhausted = task.attempts + 1 >= self.settings.max_redeliveries
        if isinstance(error, PermanentError) or exhausted:
            logger.error("Task failed permanently", task_id=task.task_id, kind=task.kind.value,
                         instrument=task.instrument, attempts=task.attempts + 1,
                         error_type=type(error).__name__, error=str(error))
            await self.transport.nack(delivery, requeue=False, error=error)
            self._record(task, "dead_lettered")
            if self.metrics is not None:
                self.metrics.tasks_dead_lettered.labels(kind=task.kind.value).inc()
            future = self._pending.pop(task.task_id, None)
            if future is not None and not future.done():
                future.set_exception(error)
            return

        logger.warning("Task failed, redelivering", task_id=task.task_id, kind=task.kind.value,
                       instrument=task.instrument, attempts=task.attempts + 1,
                       error_type=type(error).__name__, error=str(error))
        self._record(task, "retried")
        await self.transport.nack(delivery, requeue=True,
                                  delay_seconds=self.settings.failure_retry_delay_ms / 1000, error=error)

    def _record(self, task: Task, outcome: str) -> None:
        if self.metrics is not None:
            self.metrics.tasks_processed.labels(kind=task.kind.value, outcome=outcome).inc()
