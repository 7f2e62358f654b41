"""Trade gateway: task entry points feeding the lifecycle engine."""

from typing import Optional

from core.services.base_service import BaseService
from core.trading.models import ExecutionResult, Task, TaskKind, TradeIntent
from core.utils.ids import generate_task_id
from services.executor.executor import InstrumentExecutor
from services.lifecycle.engine import PositionLifecycleEngine
from services.positions.cache import OpenPositionsCache


class TradeGatewayService(BaseService):
    """Runs the executors and dispatches their tasks to the engine.

    Direct submissions go through the in-process executor; the optional
    durable executor drains the Redpanda task topic. Both share one
    instrument lock registry, so a task on an instrument never runs
    alongside another from either entry point.
    """

    def __init__(
        self,
        engine: PositionLifecycleEngine,
        cache: OpenPositionsCache,
        local_executor: InstrumentExecutor,
        durable_executor: Optional[InstrumentExecutor] = None,
    ):
        super().__init__("gateway")
        self.engine = engine
        self.cache = cache
        self.local_executor = local_executor
        self.durable_executor = durable_executor

    async def _start_implementation(self) -> None:
        await self.cache.rebuild(self.engine.store)
        await self.local_executor.start(self.handle)
        if self.durable_executor is not None:
            await self.durable_executor.start(self.handle)

    async def _stop_implementation(self) -> None:
        if self.durable_executor is not None:
            await self.durable_executor.stop()
        await self.local_executor.stop()

    async def submit_intent(self, intent: TradeIntent, kind: TaskKind = TaskKind.REVERSE,
                            description: str = "") -> ExecutionResult:
        """Queue ``intent`` behind its instrument and wait for the outcome."""
        task = Task(task_id=generate_task_id(), kind=kind, payload=intent,
                    description=description or f"{kind.value} {intent.side.value} {intent.instrument}")
        future = await self.local_executor.submit(task)
        return await future

    async def handle(self, task: Task) -> ExecutionResult:
        intent = task.payload
        self.logger.info("Handling task", task_id=task.task_id, kind=task.kind.value, broker=intent.broker.value,
                         strategy=intent.strategy, instrument=intent.instrument, side=intent.side.value,
                         attempts=task.attempts)

        if task.kind is TaskKind.OPEN:
            position = await self.engine.open(intent)
            return ExecutionResult(kind=task.kind, broker=intent.broker.value, strategy=intent.strategy,
                                   instrument=intent.instrument, status="opened", opened=position)

        if task.kind is TaskKind.CLOSE:
            report = await self.engine.close(intent.strategy, intent.market, intent.broker,
                                             held_instrument=intent.instrument)
            result = ExecutionResult(kind=task.kind, broker=intent.broker.value, strategy=intent.strategy,
                                     instrument=intent.instrument, status="closed", closed=report.closed)
            if not report.ok:
                result.status = "close_failed"
                result.error_message = f"{len(report.failed)} position(s) failed to close"
                result.data["failed"] = report.failed
            return result

        return await self.engine.reverse(intent)
