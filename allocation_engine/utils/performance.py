# allocation_engine/utils/performance.py

"""
Lightweight performance tracking for optimizer and forecaster runs.
Collects stage timings and process memory so they can be logged at the end
of a request.
"""

import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional

import psutil

from ..config import get_logger

logger = get_logger("performance")


@dataclass
class TimingMetrics:
    """Timing of a single stage"""

    stage: str
    start_time: float
    end_time: Optional[float] = None
    cpu_time: Optional[float] = None

    @property
    def duration(self) -> float:
        if self.end_time is None:
            return time.perf_counter() - self.start_time
        return self.end_time - self.start_time


@dataclass
class MemoryMetrics:
    rss_mb: float
    vms_mb: float
    percent: float


@dataclass
class PerformanceMonitor:
    """Collects per-stage timings for one request"""

    name: str
    timings: List[TimingMetrics] = field(default_factory=list)
    started_at: float = field(default_factory=time.perf_counter)

    @contextmanager
    def stage(self, stage: str) -> Iterator[TimingMetrics]:
        cpu_start = time.process_time()
        metric = TimingMetrics(stage=stage, start_time=time.perf_counter())
        try:
            yield metric
        finally:
            metric.end_time = time.perf_counter()
            metric.cpu_time = time.process_time() - cpu_start
            self.timings.append(metric)
            logger.debug(f"{self.name}: stage '{stage}' took {metric.duration:.3f}s")

    @property
    def elapsed_ms(self) -> float:
        return (time.perf_counter() - self.started_at) * 1000.0

    def stage_durations(self) -> Dict[str, float]:
        return {t.stage: round(t.duration, 4) for t in self.timings}

    def summary(self) -> Dict[str, object]:
        memory = current_memory()
        return {
            "name": self.name,
            "elapsed_ms": round(self.elapsed_ms, 2),
            "stages": self.stage_durations(),
            "rss_mb": round(memory.rss_mb, 1),
        }


def current_memory() -> MemoryMetrics:
    process = psutil.Process()
    info = process.memory_info()
    return MemoryMetrics(
        rss_mb=info.rss / (1024 * 1024),
        vms_mb=info.vms / (1024 * 1024),
        percent=process.memory_percent(),
    )
