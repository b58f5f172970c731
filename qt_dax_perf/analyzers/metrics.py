"""FE/SE decomposition of an ExecutionRun.

SE time is the union of scan intervals, not their sum: concurrent scans
must not be counted twice. FE time is whatever part of the run no scan
covers.
"""

import logging
from typing import Iterable, List, Optional, Sequence, Tuple

from ..schemas import ExecutionRun, Metrics, ScanEvent, ScanParallelism

logger = logging.getLogger(__name__)


def interval_union(intervals: Iterable[Tuple[float, float]],
                   lower: float = 0.0, upper: Optional[float] = None) -> float:
    """Total length covered by ``intervals`` after clipping to [lower, upper]."""
    clipped = []
    for start, end in intervals:
        start = max(start, lower)
        if upper is not None:
            end = min(end, upper)
        if end > start:
            clipped.append((start, end))
    clipped.sort()

    covered = 0.0
    current_start = current_end = None
    for start, end in clipped:
        if current_end is None or start > current_end:
            if current_end is not None:
                covered += current_end - current_start
            current_start, current_end = start, end
        else:
            current_end = max(current_end, end)
    if current_end is not None:
        covered += current_end - current_start
    return covered


class MetricsAggregator:
    """Computes Metrics from one run. Pure; safe to call from any thread."""

    def aggregate(self, run: ExecutionRun) -> Optional[Metrics]:
        """Metrics for ``run``, or None for a degraded (trace-less) run."""
        if run.degraded:
            return None
        return self.aggregate_events(run.scan_events, run.total_ms)

    def aggregate_events(self, events: Sequence[ScanEvent], total_ms: float) -> Metrics:
        scans = [e for e in events if not e.cache_hit]
        hits = len(events) - len(scans)
        total = max(total_ms, 0.0)

        se_ms = interval_union(((e.start_ms, e.end_ms) for e in scans), 0.0, total)
        fe_ms = max(total - se_ms, 0.0)
        se_sum = sum(e.duration_ms for e in scans)
        se_cpu = sum(e.cpu_ms for e in scans)

        per_scan = tuple(
            ScanParallelism(
                index=e.index,
                duration_ms=e.duration_ms,
                cpu_ms=e.cpu_ms,
                factor=(e.cpu_ms / e.duration_ms) if e.duration_ms > 0 else None,
            )
            for e in scans
        )
        lookups = hits + len(scans)

        metrics = Metrics(
            total_ms=total,
            fe_ms=fe_ms,
            se_ms=se_ms,
            fe_pct=fe_ms / total if total > 0 else 0.0,
            se_pct=se_ms / total if total > 0 else 0.0,
            se_sum_ms=se_sum,
            se_cpu_ms=se_cpu,
            se_query_count=len(scans),
            cache_hits=hits,
            cache_hit_ratio=hits / lookups if lookups else None,
            parallelism=se_cpu / se_ms if se_ms > 0 else None,
            scan_parallelism=per_scan,
        )
        logger.debug(
            "Metrics: total=%.1fms FE=%.1fms SE=%.1fms (sum %.1fms) over %d scans",
            total, fe_ms, se_ms, se_sum, len(scans),
        )
        return metrics


def low_parallelism_scans(metrics: Metrics, settings) -> List[ScanParallelism]:
    """Scans long enough to matter whose CPU/duration factor is low."""
    return [
        s for s in metrics.scan_parallelism
        if s.factor is not None
        and s.duration_ms >= settings.low_parallelism_min_scan_ms
        and s.factor < settings.low_parallelism_factor
    ]
