from __future__ import annotations

COUNTERS = (
    "render_requested",
    "stages_dispatched",
    "readback_requested",
    "readback_completed",
    "readback_failed",
    "delivered",
    "triggers_deferred",
    "triggers_dropped",
)


class PipelineMetrics:
    """
    Monotonic liveness counters the pipeline reports to.

    Only the thread driving the pipeline records, so no locking is needed.
    """

    def __init__(self) -> None:
        self._counts = {name: 0 for name in COUNTERS}

    def record(self, name: str, n: int = 1) -> None:
        if name not in self._counts:
            raise KeyError(f"unknown counter {name!r}")
        if n < 0:
            raise ValueError("counters are monotonic")
        self._counts[name] += int(n)

    def __getitem__(self, name: str) -> int:
        return self._counts[name]

    def snapshot(self) -> dict[str, int]:
        return dict(self._counts)
