"""Stage latency tracking for job runs."""

import time
from contextlib import contextmanager
from typing import Iterator


class StageTimer:
    """Collects per-stage latencies for a single job run."""

    def __init__(self):
        self._start_times: dict[str, float] = {}
        self.durations: dict[str, float] = {}

    def start_timer(self, name: str) -> None:
        """Start a named timer."""
        self._start_times[name] = time.perf_counter()

    def stop_timer(self, name: str) -> float:
        """Stop a named timer, record and return elapsed time."""
        if name not in self._start_times:
            return 0.0
        elapsed = time.perf_counter() - self._start_times.pop(name)
        self.durations[name] = self.durations.get(name, 0.0) + elapsed
        return elapsed

    @contextmanager
    def stage(self, name: str) -> Iterator[None]:
        self.start_timer(name)
        try:
            yield
        finally:
            self.stop_timer(name)

    @property
    def total(self) -> float:
        return sum(self.durations.values())

    def summary(self) -> str:
        """One-line summary, e.g. "extract=1.204s, embed=0.310s (total 1.514s)"."""
        parts = [f"{name}={seconds:.3f}s" for name, seconds in self.durations.items()]
        return f"{', '.join(parts)} (total {self.total:.3f}s)"
