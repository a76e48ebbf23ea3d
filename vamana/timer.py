"""Wall-clock stopwatch with microsecond resolution."""

import time


class Timer:
    """Measures time elapsed since creation or the last reset."""

    def __init__(self) -> None:
        self._check_point = time.perf_counter_ns()

    def reset(self) -> None:
        """Restart the measurement from now."""
        self._check_point = time.perf_counter_ns()

    def elapsed(self) -> int:
        """Return the whole microseconds elapsed since the check point."""
        return (time.perf_counter_ns() - self._check_point) // 1000