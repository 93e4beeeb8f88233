"""
Performance monitoring for sampling runs.

Tracks per-stage timings (denoiser passes, scheduler steps, tile decodes)
and tensor pool traffic, then turns them into a report and a short list of
tuning suggestions.
"""

import time
import statistics
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Deque, Dict, Iterator, List, Optional

from diffusion_core.utils.tensor_pool import PoolStats


@dataclass
class StageMetrics:
    """Aggregated timings of one named stage."""
    name: str
    calls: int
    total: float
    average: float
    minimum: float
    maximum: float
    percentage: float


class PerformanceMonitor:
    """
    Collects stage timings for one generation session.

    Each generation owns its monitor; nothing here is global.

    Example:
        monitor = PerformanceMonitor()
        monitor.start_session()

        for step in range(steps):
            with monitor.stage("unet"):
                eps = denoiser.predict(...)
            with monitor.stage("scheduler_step"):
                latent = scheduler.step(...)

        report = monitor.report()
    """

    def __init__(self, window_size: int = 20, enabled: bool = True):
        """
        Args:
            window_size: Number of recent step timings kept for rolling averages
            enabled: When False every recording call is a no-op
        """
        self.enabled = enabled
        self.window_size = window_size
        self._stage_times: Dict[str, List[float]] = {}
        self.recent_steps: Deque[float] = deque(maxlen=window_size)
        self.tensor_ops: Dict[str, int] = {"create": 0, "dispose": 0, "reuse": 0}
        self._session_start: Optional[float] = None
        self._session_end: Optional[float] = None

    def start_session(self) -> None:
        """Clear previous measurements and start the session clock."""
        self._stage_times.clear()
        self.recent_steps.clear()
        for key in self.tensor_ops:
            self.tensor_ops[key] = 0
        self._session_start = time.perf_counter()
        self._session_end = None

    def end_session(self) -> float:
        """Stop the session clock and return the total elapsed seconds."""
        self._session_end = time.perf_counter()
        return self.total_time

    @property
    def total_time(self) -> float:
        if self._session_start is None:
            return 0.0
        end = self._session_end if self._session_end is not None else time.perf_counter()
        return end - self._session_start

    @contextmanager
    def stage(self, name: str) -> Iterator[None]:
        """Time the enclosed block under a stage name."""
        if not self.enabled:
            yield
            return
        start = time.perf_counter()
        try:
            yield
        finally:
            self.record_stage(name, time.perf_counter() - start)

    def record_stage(self, name: str, elapsed: float) -> None:
        """Record an externally measured stage duration."""
        if not self.enabled:
            return
        self._stage_times.setdefault(name, []).append(elapsed)

    def record_step(self, elapsed: float) -> None:
        """Record one full sampling step."""
        if not self.enabled:
            return
        self.recent_steps.append(elapsed)
        self.record_stage("step", elapsed)

    def record_tensor_op(self, operation: str, count: int = 1) -> None:
        """Count a tensor create/dispose/reuse event."""
        if not self.enabled:
            return
        if operation not in self.tensor_ops:
            raise ValueError(f"Unknown tensor operation: {operation}")
        self.tensor_ops[operation] += count

    def stage_metrics(self) -> List[StageMetrics]:
        """Per-stage aggregates sorted by total time, slowest first."""
        total = self.total_time or sum(sum(t) for t in self._stage_times.values()) or 1.0
        metrics = []
        for name, times in self._stage_times.items():
            stage_total = sum(times)
            metrics.append(StageMetrics(
                name=name,
                calls=len(times),
                total=stage_total,
                average=statistics.mean(times),
                minimum=min(times),
                maximum=max(times),
                percentage=(stage_total / total) * 100,
            ))
        return sorted(metrics, key=lambda m: m.total, reverse=True)

    def rolling_step_time(self) -> Optional[float]:
        """Mean of the most recent step timings."""
        if not self.recent_steps:
            return None
        return statistics.mean(self.recent_steps)

    def report(self, pool_stats: Optional[PoolStats] = None) -> Dict:
        """Get a dictionary summary of the session."""
        report = {
            "total_time_seconds": self.total_time,
            "stages": {m.name: m for m in self.stage_metrics()},
            "tensor_ops": dict(self.tensor_ops),
            "rolling_step_time": self.rolling_step_time(),
        }
        if pool_stats is not None:
            report["pool"] = pool_stats
        return report

    def optimization_suggestions(self, pool_stats: Optional[PoolStats] = None) -> List[str]:
        """Heuristic hints derived from the recorded session."""
        suggestions = []

        if pool_stats is not None and pool_stats.hits + pool_stats.misses > 0:
            if pool_stats.hit_rate < 70.0:
                suggestions.append(
                    f"Low tensor pool hit rate ({pool_stats.hit_rate:.1f}%). "
                    "Consider a larger pool capacity or releasing buffers sooner."
                )

        stages = [m for m in self.stage_metrics() if m.name != "step"]
        if stages and stages[0].percentage > 60:
            suggestions.append(
                f"{stages[0].name} is taking {stages[0].percentage:.1f}% of total time."
            )

        if self.tensor_ops["dispose"] > self.tensor_ops["reuse"] * 2:
            suggestions.append("Low tensor reuse detected. More buffers could go back to the pool.")

        return suggestions

    def format_report(self, pool_stats: Optional[PoolStats] = None) -> str:
        """Human readable report used by the CLI and debug logging."""
        lines = [
            "=" * 60,
            "PERFORMANCE REPORT",
            "=" * 60,
            f"Total Time:           {self.total_time * 1000:.2f}ms",
        ]
        rolling = self.rolling_step_time()
        if rolling is not None:
            lines.append(f"Rolling Step Time:    {rolling * 1000:.2f}ms")
        lines.append(
            f"Tensor Ops:           created={self.tensor_ops['create']} "
            f"disposed={self.tensor_ops['dispose']} reused={self.tensor_ops['reuse']}"
        )
        if pool_stats is not None:
            lines.append(f"Pool Hit Rate:        {pool_stats.hit_rate:.1f}%")
        lines.append("")
        lines.append("Stage Breakdown:")
        for m in self.stage_metrics():
            lines.append(f"  {m.name}: {m.total * 1000:.2f}ms ({m.percentage:.1f}%)")
            if m.calls > 1:
                lines.append(f"    {m.calls} calls, avg: {m.average * 1000:.2f}ms")
        lines.append("=" * 60)
        return "\n".join(lines)
