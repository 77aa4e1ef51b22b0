from __future__ import annotations
from typing import Optional

# Below this many seconds between readings a rate is too noisy to publish.
MIN_SAMPLE_INTERVAL_S = 0.5


def rate(previous_value: float, previous_time: float,
         current_value: float, current_time: float,
         min_interval: float = MIN_SAMPLE_INTERVAL_S) -> Optional[float]:
    """
    Per-second rate between two cumulative counter readings.

    Returns None when the readings are closer than `min_interval` (the caller
    keeps its last rate), and 0.0 when the counter went backwards (wraparound
    or source reset).
    """
    elapsed = current_time - previous_time
    if elapsed < min_interval or elapsed <= 0:
        return None
    if current_value < previous_value:
        return 0.0
    return (current_value - previous_value) / elapsed


class RateCounter:
    """Remembers the last (value, time) reading so callers can feed raw counters."""

    def __init__(self, min_interval: float = MIN_SAMPLE_INTERVAL_S):
        self.min_interval = min_interval
        self._last_value: Optional[float] = None
        self._last_time: float = 0.0
        self._last_rate: float = 0.0

    @property
    def last_rate(self) -> float:
        return self._last_rate

    def update(self, value: float, now: float) -> float:
        if self._last_value is None:
            self._last_value = value
            self._last_time = now
            return 0.0

        r = rate(self._last_value, self._last_time, value, now, self.min_interval)
        if r is None:
            # too soon: keep the previous baseline so the next delta spans the full gap
            return self._last_rate

        self._last_rate = r
        self._last_value = value
        self._last_time = now
        return r

    def reset(self) -> None:
        self._last_value = None
        self._last_time = 0.0
        self._last_rate = 0.0
