"""Redpanda-backed durable task transport.

Tasks are keyed by instrument so every task for an instrument lands on the
same partition; with a consumer group, ``max_poll_records=1`` and manual
commits each partition has a single consumer handling one task at a time,
which is the delivery contract the executor's exclusivity depends on.

Delayed redelivery republishes the task with ``not_before_ms`` and commits the
original record; the consumer holds a record back until that time.
"""

import json
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, Optional

from aiokafka import AIOKafkaConsumer, AIOKafkaProducer
from aiokafka.structs import TopicPartition
from pydantic import ValidationError as PydanticValidationError

from core.config.settings import RedpandaSettings
from core.logging import get_logger
from core.streaming.task_transport import Delivery, TaskTransport, bump_attempts
from core.trading.models import Task
from core.utils.clock import Clock, SystemClock, to_epoch_millis
from core.utils.exceptions import StreamingError

logger = get_logger(__name__, component="streaming")


def _serialize(value: Dict[str, Any]) -> bytes:
    return json.dumps(value, default=str).encode("utf-8")


class KafkaTaskTransport(TaskTransport):
    name = "kafka"
    supports_concurrent_handlers = False

    def __init__(self, config: RedpandaSettings, consume: bool = True, clock: Optional[Clock] = None):
        self.config = config
        self.topic = config.task_topic
        self.dlq_topic = f"{config.task_topic}.dlq"
        self.consume = consume
        self.clock = clock or SystemClock()
        self._producer: Optional[AIOKafkaProducer] = None
        self._consumer: Optional[AIOKafkaConsumer] = None
        self._running = False

    async def start(self) -> None:
        if self._running:
            return
        self._producer = AIOKafkaProducer(
            bootstrap_servers=self.config.bootstrap_servers,
            client_id=f"{self.config.client_id}-producer",
            enable_idempotence=True,
            acks='all',
            value_serializer=_serialize,
        )
        await self._producer.start()

        if self.consume:
            self._consumer = AIOKafkaConsumer(
                self.topic,
                bootstrap_servers=self.config.bootstrap_servers,
                client_id=f"{self.config.client_id}-consumer",
                group_id=f"{self.config.group_id_prefix}.{self.config.consumer_group}",
                auto_offset_reset='earliest',
                enable_auto_commit=False,  # Manual commits only
                max_poll_records=1,
                session_timeout_ms=30000,
                heartbeat_interval_ms=10000,
            )
            await self._consumer.start()

        self._running = True
        logger.info("Kafka task transport started", topic=self.topic, consume=self.consume)

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        if self._consumer is not None:
            await self._consumer.stop()
            self._consumer = None
        if self._producer is not None:
            try:
                await self._producer.flush()
            finally:
                await self._producer.stop()
                self._producer = None
        logger.info("Kafka task transport stopped", topic=self.topic)

    async def publish(self, task: Task, delay_seconds: float = 0.0) -> None:
        if self._producer is None:
            raise StreamingError("Producer not started", topic=self.topic, operation="publish")
        if delay_seconds > 0:
            not_before = to_epoch_millis(self.clock.now()) + int(delay_seconds * 1000)
            task = task.model_copy(update={"not_before_ms": not_before})
        await self._producer.send_and_wait(
            self.topic,
            key=task.instrument.encode("utf-8"),
            value=task.model_dump(mode="json"),
        )

    async def deliveries(self) -> AsyncIterator[Delivery]:
        if self._consumer is None:
            raise StreamingError("Consumer not started", topic=self.topic, operation="consume")

        async for record in self._consumer:
            try:
                task = Task.model_validate(json.loads(record.value.decode("utf-8")))
            except (ValueError, PydanticValidationError) as e:
                logger.error("Undecodable task dead-lettered", offset=record.offset, error=str(e))
                await self._send_to_dlq(record.value.decode("utf-8", errors="replace"), record, e)
                await self._commit(record)
                continue

            if task.not_before_ms:
                wait_ms = task.not_before_ms - to_epoch_millis(self.clock.now())
                if wait_ms > 0:
                    await self.clock.sleep(wait_ms / 1000)
            yield Delivery(task=task, handle=record)

    async def _commit(self, record: Any) -> None:
        tp = TopicPartition(record.topic, record.partition)
        await self._consumer.commit({tp: record.offset + 1})

    async def ack(self, delivery: Delivery) -> None:
        await self._commit(delivery.handle)

    async def nack(self, delivery: Delivery, requeue: bool = True, delay_seconds: float = 0.0,
                   error: Optional[BaseException] = None) -> None:
        task = bump_attempts(delivery.task, error)
        if requeue:
            await self.publish(task.model_copy(update={"not_before_ms": None}), delay_seconds)
        else:
            await self._send_to_dlq(task.model_dump(mode="json"), delivery.handle, error)
        # Republished copy now carries the task; release the original record
        await self._commit(delivery.handle)

    async def _send_to_dlq(self, payload: Any, record: Any, error: Optional[BaseException]) -> None:
        dlq_event = {
            "dlq_metadata": {
                "original_topic": record.topic,
                "original_partition": record.partition,
                "original_offset": record.offset,
                "dlq_timestamp": datetime.now(timezone.utc).isoformat(),
            },
            "failure_info": {
                "error_class": type(error).__name__ if error else None,
                "error_message": str(error) if error else None,
            },
            "original_message": payload,
        }
        await self._producer.send_and_wait(self.dlq_topic, key=record.key, value=dlq_event)
        logger.warning("Task sent to DLQ", dlq_topic=self.dlq_topic, offset=record.offset)
