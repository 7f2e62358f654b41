"""Fixed-interval throttle with symmetric jitter."""

import random
from typing import Optional

from core.utils.clock import Clock, SystemClock


class JitteredThrottle:
    """Waits ``base_delay_ms`` +/- ``jitter_ratio`` before each broker mutation.

    Spaces out requests to rate-limited brokers and staggers bursts. Sleep
    and randomness come from the injected clock and rng.
    """

    def __init__(self, base_delay_ms: int = 300, jitter_ratio: float = 0.1,
                 clock: Optional[Clock] = None, rng: Optional[random.Random] = None):
        if base_delay_ms < 0:
            raise ValueError("base_delay_ms must be >= 0")
        if not 0 <= jitter_ratio < 1:
            raise ValueError("jitter_ratio must be in [0, 1)")
        self.base_delay_ms = base_delay_ms
        self.jitter_ratio = jitter_ratio
        self.clock = clock or SystemClock()
        self.rng = rng or random.Random()

    def next_delay(self) -> float:
        """Next delay in seconds."""
        jitter = self.rng.uniform(-self.jitter_ratio, self.jitter_ratio)
        return self.base_delay_ms * (1 + jitter) / 1000

    async def wait(self) -> float:
        delay = self.next_delay()
        if delay > 0:
            await self.clock.sleep(delay)
        return delay
