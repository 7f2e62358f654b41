"""Task transports for the per-instrument executor.

This __init__ does not eagerly import ``kafka_transport`` so that the
in-process transport stays importable without a broker client configured:
  - core.streaming.task_transport import LocalTaskTransport
  - core.streaming.kafka_transport import KafkaTaskTransport
"""

__all__ = []
