"""Repeated cold-cache execution of a query definition.

Each repetition is ClearCache -> Execute -> CaptureTrace, strictly one
after another on the session's connection. The fastest traced repetition
becomes the canonical run.
"""

import logging
import time
from dataclasses import dataclass, replace
from typing import List, Optional

from ..analyzers.metrics import MetricsAggregator
from ..config import get_settings
from ..connections.session import CancellationToken, Session
from ..errors import (
    BaselineUnavailableError,
    ExecutionFailure,
    MalformedEventError,
    TraceCaptureFailure,
)
from ..parsers.trace_parser import ParseContext, TraceEventParser, parse_trace
from ..schemas import CacheState, ExecutionRun, QueryDefinition, ResultSet

logger = logging.getLogger(__name__)


@dataclass
class _Repetition:
    number: int
    total_ms: float
    result: ResultSet
    events: Optional[tuple]  # None when no trace was captured


class BaselineRunner:
    """Runs a definition N times and keeps the fastest run."""

    def __init__(self, settings=None, parser: Optional[TraceEventParser] = None,
                 aggregator: Optional[MetricsAggregator] = None, table_cardinalities=None):
        self.settings = settings or get_settings()
        self.parser = parser or TraceEventParser()
        self.aggregator = aggregator or MetricsAggregator()
        self.table_cardinalities = dict(table_cardinalities or {})

    def run_baseline(
        self,
        session: Session,
        definition: QueryDefinition,
        repetitions: Optional[int] = None,
        timeout_s: Optional[float] = None,
        cancel_token: Optional[CancellationToken] = None,
        cache_state: CacheState = CacheState.COLD,
    ) -> ExecutionRun:
        """Execute ``definition`` and return its canonical ExecutionRun.

        Raises:
            InvalidQueryError: The engine rejected the query text (never retried).
            EngineConnectionError: The connection was lost.
            BaselineUnavailableError: Every repetition failed to execute.
            OptimizationCancelled: Cancellation was requested between repetitions.
        """
        repetitions = repetitions or self.settings.baseline_repetitions
        timeout_s = timeout_s if timeout_s is not None else self.settings.execution_timeout_s
        text = definition.render()

        completed: List[_Repetition] = []
        failures: List[str] = []
        warnings: List[str] = []

        for number in range(1, repetitions + 1):
            if cancel_token is not None:
                cancel_token.raise_if_cancelled()
            session.ensure_active()
            try:
                repetition = self._run_once(session, text, number, timeout_s, cache_state, warnings)
            except ExecutionFailure as e:
                logger.warning("Repetition %d/%d failed, dropped: %s", number, repetitions, e)
                failures.append(f"repetition {number}: {e}")
                continue
            completed.append(repetition)
            logger.info(
                "Repetition %d/%d: %.1fms%s", number, repetitions, repetition.total_ms,
                "" if repetition.events is not None else " (no trace)",
            )

        if not completed:
            raise BaselineUnavailableError(
                f"All {repetitions} repetitions failed", failures=tuple(failures)
            )
        warnings.extend(failures)

        traced = [r for r in completed if r.events is not None]
        degraded = not traced
        if degraded:
            warnings.append("No trace captured in any repetition; duration-only run")
            logger.warning("Degraded run: no repetition captured a trace")
        candidates = traced or completed
        canonical = min(candidates, key=lambda r: r.total_ms)

        run = ExecutionRun(
            definition=definition,
            total_ms=canonical.total_ms,
            result=canonical.result,
            cache_state=cache_state,
            scan_events=canonical.events or (),
            repetition_ms=tuple(r.total_ms for r in completed),
            dropped_repetitions=repetitions - len(candidates),
            degraded=degraded,
            warnings=tuple(warnings),
        )
        metrics = self.aggregator.aggregate(run)
        if metrics is not None:
            run = replace(
                run,
                fe_ms=metrics.fe_ms,
                se_ms=metrics.se_ms,
                se_query_count=metrics.se_query_count,
                se_cpu_ms=metrics.se_cpu_ms,
                cache_hit_count=metrics.cache_hits,
            )
        return run

    def _run_once(self, session: Session, text: str, number: int, timeout_s: float,
                  cache_state: CacheState, warnings: List[str]) -> _Repetition:
        with session.exclusive() as connection:
            if cache_state == CacheState.COLD:
                connection.clear_cache()

            start = time.perf_counter()
            raw = connection.execute(text, want_trace=True, timeout_s=timeout_s)
            wall_ms = (time.perf_counter() - start) * 1000
            result = ResultSet.from_records(raw.columns, raw.rows)

            events = raw.trace_events
            if events is None:
                events = self._fetch_trace(connection, number, warnings)

        elapsed = raw.elapsed_ms or wall_ms
        if events is None:
            return _Repetition(number, elapsed, result, None)

        context = ParseContext.from_settings(
            self.settings, result_cardinality=result.row_count, table_cardinalities=self.table_cardinalities
        )
        try:
            parsed = parse_trace(events, context, self.parser)
        except MalformedEventError as e:
            warnings.append(f"repetition {number}: malformed trace ({e}); dropped")
            logger.warning("Repetition %d trace is malformed: %s", number, e)
            return _Repetition(number, elapsed, result, None)

        total = parsed.engine_total_ms if parsed.engine_total_ms is not None else elapsed
        return _Repetition(number, total, result, parsed.events)

    def _fetch_trace(self, connection, number: int, warnings: List[str]) -> Optional[list]:
        attempts = 1 + self.settings.trace_retries
        for attempt in range(1, attempts + 1):
            try:
                return list(connection.fetch_trace())
            except TraceCaptureFailure as e:
                logger.warning("Trace capture %d/%d for repetition %d failed: %s", attempt, attempts, number, e)
                last_error = e
        warnings.append(f"repetition {number}: trace capture failed ({last_error}); dropped")
        return None
