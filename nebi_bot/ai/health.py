from __future__ import annotations

import time
from dataclasses import dataclass


@dataclass(slots=True)
class HealthStats:
    total_requests: int
    total_errors: int
    avg_latency_ms: int
    queue_depth: int
    active_workers: int
    completed_tasks: int
    measured_at: int

    @classmethod
    def zeroed(cls) -> "HealthStats":
        return cls(0, 0, 0, 0, 0, 0, int(time.time() * 1000))


class HealthCounters:
    """Request, error and latency totals owned by one orchestrator.

    Mutated only from coroutines on the owning event loop, so plain ints are enough.
    """

    def __init__(self) -> None:
        self.total_requests = 0
        self.total_errors = 0
        self.total_latency_ms = 0

    def record_request(self) -> None:
        self.total_requests += 1

    def record_error(self) -> None:
        self.total_errors += 1

    def record_latency(self, latency_ms: int) -> None:
        self.total_latency_ms += max(0, int(latency_ms))

    @property
    def avg_latency_ms(self) -> int:
        if self.total_requests <= 0:
            return 0
        return self.total_latency_ms // self.total_requests
