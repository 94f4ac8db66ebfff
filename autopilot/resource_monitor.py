"""
Resource Monitor

Samples this process's CPU time and resident memory before and after each
orchestrator cycle and keeps a rolling window of per-cycle deltas.

Sampling never breaks a cycle: if psutil cannot read the process, the
sample is recorded as unavailable and the cycle carries on.
"""

import logging
import threading
import time
from collections import deque
from dataclasses import asdict, dataclass
from typing import Any, Deque, Dict, Optional

import psutil

logger = logging.getLogger("resource_monitor")

DEFAULT_WINDOW = 100


@dataclass(frozen=True)
class ResourceSample:
    cpu_seconds: float
    rss_bytes: int
    taken_at: float

    def __post_init__(self):
        if self.cpu_seconds < 0 or self.rss_bytes < 0:
            raise ValueError("Resource sample values must be non-negative")


@dataclass(frozen=True)
class CycleUsage:
    cpu_seconds: float
    wall_seconds: float
    rss_bytes: int
    rss_delta_bytes: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class ResourceMonitor:
    """Per-cycle CPU and memory accounting over a bounded window."""

    def __init__(self, window: int = DEFAULT_WINDOW, process: Optional[psutil.Process] = None):
        self._process = process or psutil.Process()
        self._cycles: Deque[CycleUsage] = deque(maxlen=window)
        self._lock = threading.Lock()
        self._unavailable = 0

    def sample(self) -> Optional[ResourceSample]:
        try:
            cpu = self._process.cpu_times()
            memory = self._process.memory_info()
        except (psutil.Error, OSError) as e:
            self._unavailable += 1
            logger.warning(f"Resource sample unavailable: {e}")
            return None
        return ResourceSample(
            cpu_seconds=cpu.user + cpu.system,
            rss_bytes=memory.rss,
            taken_at=time.monotonic(),
        )

    def record_cycle(self, before: Optional[ResourceSample], after: Optional[ResourceSample]) -> Optional[CycleUsage]:
        """Record the delta between two samples of the same cycle."""
        if before is None or after is None:
            return None

        usage = CycleUsage(
            cpu_seconds=max(0.0, after.cpu_seconds - before.cpu_seconds),
            wall_seconds=max(0.0, after.taken_at - before.taken_at),
            rss_bytes=after.rss_bytes,
            rss_delta_bytes=after.rss_bytes - before.rss_bytes,
        )
        with self._lock:
            self._cycles.append(usage)
        return usage

    def summary(self) -> Dict[str, Any]:
        with self._lock:
            cycles = list(self._cycles)

        if not cycles:
            return {"cycles": 0, "unavailable_samples": self._unavailable}

        cpu = [c.cpu_seconds for c in cycles]
        wall = [c.wall_seconds for c in cycles]
        return {
            "cycles": len(cycles),
            "unavailable_samples": self._unavailable,
            "cpu_seconds_total": round(sum(cpu), 4),
            "cpu_seconds_avg": round(sum(cpu) / len(cpu), 4),
            "cpu_seconds_max": round(max(cpu), 4),
            "wall_seconds_avg": round(sum(wall) / len(wall), 4),
            "rss_bytes_current": cycles[-1].rss_bytes,
            "rss_bytes_peak": max(c.rss_bytes for c in cycles),
        }
