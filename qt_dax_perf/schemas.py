"""Data models for DAX query performance analysis.

Every type here is an immutable value. Runs, findings and attempts are
captured once and never mutated; derived values (metrics, verdicts) are
recomputed from their source run instead of being stored alongside it.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field, replace
from enum import Enum, IntEnum
from typing import Any, Iterable, Mapping, Optional, Sequence


# =============================================================================
# ENUMS
# =============================================================================

class Pattern(str, Enum):
    """Structural tag attached to scans and findings."""
    ROW_CALLBACK = "RowCallback"
    ENCODE_CALLBACK = "EncodeCallback"
    FULL_SCAN = "FullScan"
    SEMI_JOIN_BATCH = "SemiJoinBatch"
    FUSION_BLOCKED_VERTICAL = "FusionBlockedVertical"
    FUSION_BLOCKED_HORIZONTAL = "FusionBlockedHorizontal"
    DENSE_GROUPBY_ON_KEY = "DenseGroupByOnKey"
    REPEATED_SCAN = "RepeatedScan"
    LOW_PARALLELISM = "LowParallelism"


class CacheState(str, Enum):
    COLD = "cold"
    WARM = "warm"


class RemediationTier(IntEnum):
    """Fixed remediation priority. Lower values are attempted first."""
    CALLBACK = 1
    FUSION = 2
    DATA_VOLUME = 3
    PARALLELISM = 4  # reported only, never acted on


class FindingStatus(str, Enum):
    RAW = "raw"
    CONFIRMED = "confirmed"
    UNCONFIRMED = "unconfirmed"


class ControllerState(str, Enum):
    BASELINED = "baselined"
    PROPOSING = "proposing"
    VERIFYING = "verifying"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    EXHAUSTED = "exhausted"
    CANCELLED = "cancelled"


class AttemptOutcome(str, Enum):
    ACCEPTED = "accepted"
    REJECTED = "rejected"


class RejectionReason(str, Enum):
    PERFORMANCE_INSUFFICIENT = "performance_insufficient"
    SEMANTICALLY_DIFFERENT = "semantically_different"
    EXECUTION_FAILED = "execution_failed"
    SHAPE_CHANGED = "shape_changed"


# =============================================================================
# TRACE & RESULT DATA
# =============================================================================

@dataclass(frozen=True)
class ScanEvent:
    """One storage-engine scan (or storage-engine cache match)."""
    index: int
    text: str
    duration_ms: float
    cpu_ms: float = 0.0
    rows: Optional[int] = None
    bytes: Optional[int] = None
    patterns: frozenset = frozenset()
    start_ms: float = 0.0
    end_ms: float = 0.0
    cache_hit: bool = False
    semijoin_rows: Optional[int] = None
    low_selectivity: Optional[bool] = None
    event_class: str = ""
    subclass: str = ""

    def has(self, pattern: Pattern) -> bool:
        return pattern in self.patterns

    def with_patterns(self, extra: Iterable[Pattern]) -> "ScanEvent":
        """Return a copy carrying the union of current and extra tags."""
        return replace(self, patterns=self.patterns | frozenset(extra))

    def to_dict(self) -> dict:
        return {
            "index": self.index,
            "duration_ms": round(self.duration_ms, 3),
            "cpu_ms": round(self.cpu_ms, 3),
            "rows": self.rows,
            "bytes": self.bytes,
            "start_ms": round(self.start_ms, 3),
            "end_ms": round(self.end_ms, 3),
            "cache_hit": self.cache_hit,
            "patterns": sorted(p.value for p in self.patterns),
            "semijoin_rows": self.semijoin_rows,
            "low_selectivity": self.low_selectivity,
            "text": self.text,
        }


@dataclass(frozen=True)
class ResultSet:
    """Materialized query result. Columns are compared by name and position."""
    columns: tuple = ()
    rows: tuple = ()

    @classmethod
    def from_records(cls, columns: Sequence[str], records: Iterable[Any]) -> "ResultSet":
        """Build from dict rows (keyed by column) or sequence rows."""
        cols = tuple(columns)
        rows = []
        for record in records:
            if isinstance(record, Mapping):
                rows.append(tuple(record.get(c) for c in cols))
            else:
                rows.append(tuple(record))
        return cls(columns=cols, rows=tuple(rows))

    @property
    def row_count(self) -> int:
        return len(self.rows)

    def to_records(self) -> list[dict]:
        return [dict(zip(self.columns, row)) for row in self.rows]


# =============================================================================
# QUERY DEFINITIONS
# =============================================================================

_ORDER_BY_RE = re.compile(r"\bORDER\s+BY\b", re.IGNORECASE)
_STRIP_RE = re.compile(r'"(?:""|[^"])*"|//[^\n]*|--[^\n]*|/\*[\s\S]*?\*/')


def _quote_table(table: str) -> str:
    return "'" + table.replace("'", "''") + "'"


@dataclass(frozen=True)
class MeasureDefinition:
    """A named sub-expression: a measure or a user-defined function."""
    name: str
    expression: str
    table: str = ""
    kind: str = "measure"  # measure | function
    parameters: str = ""  # function parameter list, without parentheses

    @property
    def key(self) -> str:
        return self.name.lower()

    def render(self) -> str:
        if self.kind == "function":
            return f"FUNCTION {self.name} = ( {self.parameters} ) =>\n{self.expression.strip()}"
        target = f"{_quote_table(self.table)}[{self.name}]" if self.table else f"[{self.name}]"
        return f"MEASURE {target} =\n{self.expression.strip()}"


@dataclass(frozen=True)
class QueryDefinition:
    """An executable query plus the closed set of definitions it references.

    ``evaluate`` holds the externally observable part (``EVALUATE ...`` with
    any ``ORDER BY``). Rewrites only ever replace measure/function bodies.
    """
    evaluate: str
    measures: tuple = ()
    preamble: tuple = ()  # other DEFINE entries (VAR, TABLE, COLUMN), kept verbatim

    @property
    def has_explicit_order(self) -> bool:
        return bool(_ORDER_BY_RE.search(_STRIP_RE.sub(" ", self.evaluate)))

    @property
    def names(self) -> tuple:
        return tuple(m.name for m in self.measures)

    def get(self, name: str) -> Optional[MeasureDefinition]:
        key = name.lower()
        for measure in self.measures:
            if measure.key == key:
                return measure
        return None

    def with_expression(self, name: str, expression: str) -> "QueryDefinition":
        """Return a new definition with one body replaced."""
        key = name.lower()
        if self.get(name) is None:
            raise KeyError(f"Unknown definition: {name}")
        measures = tuple(
            replace(m, expression=expression) if m.key == key else m
            for m in self.measures
        )
        return replace(self, measures=measures)

    def render(self) -> str:
        """Render as an executable DAX query."""
        entries = list(self.preamble) + [m.render() for m in self.measures]
        if not entries:
            return self.evaluate.strip()
        body = "\n".join(entries)
        return f"DEFINE\n{body}\n{self.evaluate.strip()}"

    def changed_measures(self, other: "QueryDefinition") -> list[str]:
        """Names whose body differs between self and other."""
        changed = []
        for measure in self.measures:
            counterpart = other.get(measure.name)
            if counterpart is None or counterpart.expression.strip() != measure.expression.strip():
                changed.append(measure.name)
        return changed


# =============================================================================
# RUNS & METRICS
# =============================================================================

@dataclass(frozen=True)
class ExecutionRun:
    """The canonical (fastest) repetition of a query under a cache state."""
    definition: QueryDefinition
    total_ms: float
    result: ResultSet
    cache_state: CacheState = CacheState.COLD
    fe_ms: Optional[float] = None
    se_ms: Optional[float] = None
    se_query_count: int = 0
    se_cpu_ms: float = 0.0
    cache_hit_count: int = 0
    scan_events: tuple = ()
    repetition_ms: tuple = ()
    dropped_repetitions: int = 0
    degraded: bool = False
    warnings: tuple = ()

    def patterns(self) -> frozenset:
        """Union of every tag observed in this run."""
        seen: set = set()
        for event in self.scan_events:
            seen.update(event.patterns)
        return frozenset(seen)

    def to_dict(self) -> dict:
        return {
            "total_ms": round(self.total_ms, 3),
            "fe_ms": None if self.fe_ms is None else round(self.fe_ms, 3),
            "se_ms": None if self.se_ms is None else round(self.se_ms, 3),
            "se_query_count": self.se_query_count,
            "se_cpu_ms": round(self.se_cpu_ms, 3),
            "cache_hit_count": self.cache_hit_count,
            "cache_state": self.cache_state.value,
            "row_count": self.result.row_count,
            "repetition_ms": [round(t, 3) for t in self.repetition_ms],
            "dropped_repetitions": self.dropped_repetitions,
            "degraded": self.degraded,
            "warnings": list(self.warnings),
            "scan_events": [e.to_dict() for e in self.scan_events],
        }


@dataclass(frozen=True)
class ScanParallelism:
    index: int
    duration_ms: float
    cpu_ms: float
    factor: Optional[float]  # None when the scan has zero duration


@dataclass(frozen=True)
class Metrics:
    """FE/SE decomposition of one run."""
    total_ms: float
    fe_ms: float
    se_ms: float
    fe_pct: float
    se_pct: float
    se_sum_ms: float
    se_cpu_ms: float
    se_query_count: int
    cache_hits: int
    cache_hit_ratio: Optional[float]
    parallelism: Optional[float]
    scan_parallelism: tuple = ()

    @property
    def parallelism_meaningful(self) -> bool:
        return self.parallelism is not None

    def to_dict(self) -> dict:
        return {
            "total_ms": round(self.total_ms, 3),
            "fe_ms": round(self.fe_ms, 3),
            "se_ms": round(self.se_ms, 3),
            "fe_pct": round(self.fe_pct * 100, 1),
            "se_pct": round(self.se_pct * 100, 1),
            "se_sum_ms": round(self.se_sum_ms, 3),
            "se_cpu_ms": round(self.se_cpu_ms, 3),
            "se_query_count": self.se_query_count,
            "cache_hits": self.cache_hits,
            "cache_hit_ratio": None if self.cache_hit_ratio is None else round(self.cache_hit_ratio, 3),
            "parallelism": None if self.parallelism is None else round(self.parallelism, 2),
            "parallelism_meaningful": self.parallelism_meaningful,
            "scan_parallelism": [
                {
                    "index": s.index,
                    "duration_ms": round(s.duration_ms, 3),
                    "cpu_ms": round(s.cpu_ms, 3),
                    "factor": None if s.factor is None else round(s.factor, 2),
                }
                for s in self.scan_parallelism
            ],
        }


# =============================================================================
# FINDINGS & VERDICTS
# =============================================================================

@dataclass(frozen=True)
class Finding:
    """A detected anti-pattern with its evidence and suggested remediation."""
    pattern: Pattern
    rule_id: str
    evidence: str
    tier: RemediationTier
    remediation_id: Optional[str] = None
    measure: Optional[str] = None
    status: FindingStatus = FindingStatus.RAW
    scan_indexes: tuple = ()
    corroborated_by: frozenset = frozenset()

    @property
    def actionable(self) -> bool:
        return (
            self.status == FindingStatus.CONFIRMED
            and self.remediation_id is not None
            and self.tier != RemediationTier.PARALLELISM
        )

    @property
    def key(self) -> tuple:
        return (self.rule_id, (self.measure or "").lower(), self.evidence)

    def to_dict(self) -> dict:
        return {
            "pattern": self.pattern.value,
            "rule_id": self.rule_id,
            "measure": self.measure,
            "evidence": self.evidence,
            "tier": self.tier.name.lower(),
            "remediation_id": self.remediation_id,
            "status": self.status.value,
            "scan_indexes": list(self.scan_indexes),
            "corroborated_by": sorted(p.value for p in self.corroborated_by),
        }


@dataclass(frozen=True)
class ResultDiff:
    kind: str  # columns | row_count | values | order
    message: str
    sample_mismatches: tuple = ()

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "message": self.message,
            "sample_mismatches": [dict(m) for m in self.sample_mismatches],
        }


@dataclass(frozen=True)
class EquivalenceVerdict:
    equal: bool
    diff: Optional[ResultDiff] = None

    def to_dict(self) -> dict:
        return {
            "equal": self.equal,
            "diff": self.diff.to_dict() if self.diff else None,
        }


# =============================================================================
# ATTEMPTS & REPORTS
# =============================================================================

@dataclass(frozen=True)
class OptimizationAttempt:
    sequence: int
    findings: tuple
    remediation_ids: tuple
    baseline: ExecutionRun
    candidate: QueryDefinition
    outcome: AttemptOutcome
    improvement_ratio: float = 0.0
    candidate_run: Optional[ExecutionRun] = None
    verdict: Optional[EquivalenceVerdict] = None
    rejection_reasons: tuple = ()
    description: str = ""
    error: Optional[str] = None

    @property
    def improvement_pct(self) -> float:
        return self.improvement_ratio * 100

    def to_dict(self) -> dict:
        return {
            "sequence": self.sequence,
            "outcome": self.outcome.value,
            "remediation_ids": list(self.remediation_ids),
            "findings": [f.to_dict() for f in self.findings],
            "description": self.description,
            "baseline_ms": round(self.baseline.total_ms, 3),
            "candidate_ms": None if self.candidate_run is None else round(self.candidate_run.total_ms, 3),
            "improvement_pct": round(self.improvement_pct, 2),
            "verdict": self.verdict.to_dict() if self.verdict else None,
            "rejection_reasons": [r.value for r in self.rejection_reasons],
            "changed_measures": self.baseline.definition.changed_measures(self.candidate),
            "error": self.error,
        }


@dataclass
class OptimizationReport:
    """Terminal report of one optimization session."""
    state: ControllerState
    baseline: Optional[ExecutionRun] = None
    baseline_metrics: Optional[Metrics] = None
    final_definition: Optional[QueryDefinition] = None
    attempts: list = field(default_factory=list)
    confirmed_findings: list = field(default_factory=list)
    unconfirmed_findings: list = field(default_factory=list)
    report_only_findings: list = field(default_factory=list)
    skipped_findings: list = field(default_factory=list)
    warnings: list = field(default_factory=list)

    @property
    def accepted_attempts(self) -> list:
        return [a for a in self.attempts if a.outcome == AttemptOutcome.ACCEPTED]

    @property
    def rejected_attempts(self) -> list:
        return [a for a in self.attempts if a.outcome == AttemptOutcome.REJECTED]

    @property
    def improvement_pct(self) -> float:
        """Overall improvement of the final definition over the first baseline."""
        accepted = self.accepted_attempts
        if not accepted or self.baseline is None or self.baseline.total_ms <= 0:
            return 0.0
        final_ms = accepted[-1].candidate_run.total_ms
        return (self.baseline.total_ms - final_ms) / self.baseline.total_ms * 100

    def to_dict(self) -> dict:
        return {
            "state": self.state.value,
            "improvement_pct": round(self.improvement_pct, 2),
            "baseline": self.baseline.to_dict() if self.baseline else None,
            "baseline_metrics": self.baseline_metrics.to_dict() if self.baseline_metrics else None,
            "final_definition": self.final_definition.render() if self.final_definition else None,
            "attempts": [a.to_dict() for a in self.attempts],
            "confirmed_findings": [f.to_dict() for f in self.confirmed_findings],
            "unconfirmed_findings": [f.to_dict() for f in self.unconfirmed_findings],
            "report_only_findings": [f.to_dict() for f in self.report_only_findings],
            "skipped_findings": [f.to_dict() for f in self.skipped_findings],
            "warnings": list(self.warnings),
        }
