"""
Centralized identifier generation for tasks and history events.

Identifiers are a millisecond timestamp hex prefix plus a uuid4 suffix, which
keeps them unique and coarsely ordered by creation time.
"""

from __future__ import annotations

import time
from uuid import uuid4


def generate_event_id() -> str:
    """Generate a time-prefixed, globally unique identifier."""
    ts_ms = int(time.time() * 1000)
    return f"{ts_ms:013x}-{str(uuid4())[13:]}"


def generate_task_id() -> str:
    return f"task-{generate_event_id()}"
