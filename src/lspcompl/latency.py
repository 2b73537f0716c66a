"""Round-trip latency estimate used to size the subsequent debounce window."""
from __future__ import annotations


class LatencyEstimator:
    """Exponential moving average of request round-trip times (ms).

    The first *window* samples seed the average with their arithmetic mean;
    after that each sample moves it by ``2 / (window + 1)``.
    """

    def __init__(self, window: int = 10):
        self.window = window
        self.alpha = 2 / (window + 1)
        self.count = 0
        self._value: float | None = None

    @property
    def value(self) -> float | None:
        return self._value

    def add(self, sample_ms: float) -> float:
        self.count += 1
        if self._value is None:
            self._value = float(sample_ms)
        elif self.count <= self.window:
            self._value += (sample_ms - self._value) / self.count
        else:
            self._value += self.alpha * (sample_ms - self._value)
        return self._value

    def get(self, default: float) -> float:
        return default if self._value is None else self._value
