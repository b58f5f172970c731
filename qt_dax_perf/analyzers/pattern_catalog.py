#!/usr/bin/env python3
"""
Pattern Catalog
===============
Registry of anti-pattern detectors.

Structural rules inspect the resolved measure/function bodies and never
execute anything; they may produce false positives, so each names the trace
patterns that would corroborate it. Trace rules lift patterns observed in
the scans of a run into findings. Run-level detectors compare scans with
each other (fusion, repetition, dense group-by) and tag them.
"""

import logging
import re
from collections import defaultdict
from dataclasses import replace
from typing import Dict, Iterable, List, Optional, Sequence, Tuple, Union

from ..parsers.dax_parser import (
    AGGREGATING_ITERATORS,
    CONDITIONAL_FUNCTIONS,
    CONTEXT_MODIFIERS,
    analyze_dax,
    normalize_dax,
)
from ..parsers.query_parser import parse_query
from ..parsers.trace_parser import ParseContext
from ..schemas import (
    Finding,
    FindingStatus,
    Metrics,
    Pattern,
    QueryDefinition,
    RemediationTier,
    ScanEvent,
)
from .metrics import low_parallelism_scans

logger = logging.getLogger(__name__)


# =============================================================================
# RULE TABLES
# =============================================================================

STRUCTURAL_RULES = {
    "ITERATOR_MEASURE_REEVALUATION": {
        "description": "Aggregating iterator re-evaluates another measure for every row",
        "pattern": Pattern.ROW_CALLBACK,
        "corroborated_by": frozenset({
            Pattern.ROW_CALLBACK, Pattern.REPEATED_SCAN, Pattern.SEMI_JOIN_BATCH,
        }),
        "remediation": "cache_measure_in_iterator",
        "tier": RemediationTier.CALLBACK,
        "recommendation": "Materialize the measure once per row with ADDCOLUMNS and aggregate the column",
    },
    "CONDITIONAL_BRANCH_SELECTION": {
        "description": "IF/SWITCH selects between whole sub-expressions, blocking fusion",
        "pattern": Pattern.FUSION_BLOCKED_VERTICAL,
        "corroborated_by": frozenset({
            Pattern.FUSION_BLOCKED_VERTICAL, Pattern.FUSION_BLOCKED_HORIZONTAL, Pattern.REPEATED_SCAN,
        }),
        "remediation": "eager_branch_variables",
        "tier": RemediationTier.FUSION,
        "recommendation": "Evaluate the branches into variables before the conditional",
    },
    "PROTECTED_DIVISION_IN_ITERATOR": {
        "description": "DIVIDE inside a per-row iteration forces a storage-engine callback",
        "pattern": Pattern.ROW_CALLBACK,
        "corroborated_by": frozenset({Pattern.ROW_CALLBACK}),
        "remediation": "native_division",
        "tier": RemediationTier.CALLBACK,
        "recommendation": "Use the / operator guarded by IF so the engine can push it down",
    },
    "DUPLICATE_FILTER": {
        "description": "The same filter table expression is evaluated more than once",
        "pattern": Pattern.REPEATED_SCAN,
        "corroborated_by": frozenset({Pattern.REPEATED_SCAN, Pattern.FUSION_BLOCKED_VERTICAL}),
        "remediation": "hoist_duplicate_filter",
        "tier": RemediationTier.DATA_VOLUME,
        "recommendation": "Compute the filter once into a variable and reuse it",
    },
}

TRACE_RULES = {
    "UNEXPLAINED_ROW_CALLBACK": {
        "description": "Scans call back into the formula engine per row",
        "pattern": Pattern.ROW_CALLBACK,
        "tier": RemediationTier.CALLBACK,
    },
    "ENCODE_CALLBACK": {
        "description": "Scans group by a value the storage engine had to encode on the fly",
        "pattern": Pattern.ENCODE_CALLBACK,
        "tier": RemediationTier.CALLBACK,
    },
    "FUSION_BLOCKED_VERTICAL": {
        "description": "Scans over the same filter and grain were not fused into one",
        "pattern": Pattern.FUSION_BLOCKED_VERTICAL,
        "tier": RemediationTier.FUSION,
    },
    "FUSION_BLOCKED_HORIZONTAL": {
        "description": "Scans differing only by filter values were not fused into one",
        "pattern": Pattern.FUSION_BLOCKED_HORIZONTAL,
        "tier": RemediationTier.FUSION,
    },
    "REPEATED_SCAN": {
        "description": "The same storage-engine query ran more than once",
        "pattern": Pattern.REPEATED_SCAN,
        "tier": RemediationTier.FUSION,
    },
    "FULL_SCAN": {
        "description": "Unfiltered scan returns far more rows than the query result",
        "pattern": Pattern.FULL_SCAN,
        "tier": RemediationTier.DATA_VOLUME,
    },
    "LOW_SELECTIVITY_SEMIJOIN": {
        "description": "Semi-join filter set is a large share of the filtered table",
        "pattern": Pattern.SEMI_JOIN_BATCH,
        "tier": RemediationTier.DATA_VOLUME,
    },
    "DENSE_GROUPBY_ON_KEY": {
        "description": "Scan groups by a key column and materializes a dense result",
        "pattern": Pattern.DENSE_GROUPBY_ON_KEY,
        "tier": RemediationTier.DATA_VOLUME,
    },
    "LOW_PARALLELISM": {
        "description": "Long scan used little more than one core",
        "pattern": Pattern.LOW_PARALLELISM,
        "tier": RemediationTier.PARALLELISM,
    },
}


# =============================================================================
# XMSQL SHAPE
# =============================================================================

_COMMENT_RE = re.compile(r"/\*[\s\S]*?\*/|//[^\n]*|--[^\n]*")
_SIZE_TAIL_RE = re.compile(r"\[?\s*Estimated\s+size[^\n\]]*\]?", re.IGNORECASE)
_LITERAL_RE = re.compile(r"(=|<>|<=|>=|<|>)\s*('(?:''|[^'])*'|-?\d+(?:\.\d+)?)")
_IN_LIST_RE = re.compile(r"\bIN\s*\(\s*[^)]*\)", re.IGNORECASE)
_KEY_COLUMN_RE = re.compile(r"\[[^\]]*(?:Key|ID|Id)\]$")


def normalize_scan(text: str) -> str:
    """Whitespace-collapsed xmSQL text without comments or size annotations."""
    text = _SIZE_TAIL_RE.sub(" ", _COMMENT_RE.sub(" ", text))
    return " ".join(text.split()).rstrip(" ;")


def _split_top_level(text: str) -> List[str]:
    parts, depth, start = [], 0, 0
    for i, ch in enumerate(text):
        if ch == '(':
            depth += 1
        elif ch == ')':
            depth -= 1
        elif ch == ',' and depth == 0:
            parts.append(text[start:i].strip())
            start = i + 1
    tail = text[start:].strip()
    if tail:
        parts.append(tail)
    return parts


def scan_shape(text: str) -> Optional[Tuple[tuple, tuple, str, str]]:
    """(group_by, aggregations, from, where) of the final SELECT, or None."""
    flat = normalize_scan(text)
    upper = flat.upper()
    select_at = upper.rfind("SELECT ")
    if select_at < 0:
        return None
    from_at = upper.find(" FROM ", select_at)
    if from_at < 0:
        return None
    where_at = upper.find(" WHERE ", from_at)
    select_list = flat[select_at + len("SELECT "):from_at]
    source = flat[from_at + len(" FROM "):where_at if where_at >= 0 else len(flat)].strip()
    where = flat[where_at + len(" WHERE "):].strip() if where_at >= 0 else ""

    group_by, aggregations = [], []
    for item in _split_top_level(select_list):
        (aggregations if '(' in item else group_by).append(item)
    return tuple(group_by), tuple(sorted(aggregations)), source, where


def where_template(where: str) -> str:
    """WHERE clause with literal values replaced by placeholders."""
    return _IN_LIST_RE.sub("IN ( ? )", _LITERAL_RE.sub(r"\1 ?", where))


# =============================================================================
# CATALOG
# =============================================================================

class PatternCatalog:
    """Classifies a definition plus its scan events into Findings."""

    def __init__(self, settings=None):
        self.settings = settings
        self.structural_rules = STRUCTURAL_RULES
        self.trace_rules = TRACE_RULES
        logger.debug(
            "Initialized PatternCatalog with %d structural and %d trace rules",
            len(self.structural_rules), len(self.trace_rules),
        )

    # -- entry points ---------------------------------------------------------

    def classify(
        self,
        definition: Union[QueryDefinition, str],
        events: Sequence[ScanEvent] = (),
        context: Optional[ParseContext] = None,
        metrics: Optional[Metrics] = None,
    ) -> List[Finding]:
        """Structural findings (status raw) followed by trace findings.

        Events are run through the run-level detectors first, so the caller
        should pass the same annotated events on to ``corroborate``.
        """
        if isinstance(definition, str):
            definition = parse_query(definition)
        events = self.annotate(events, context)

        findings = self.structural_findings(definition)
        findings += self.trace_findings(events, findings, metrics)
        logger.info(
            "Classified %d structural and %d trace findings",
            sum(1 for f in findings if f.rule_id in self.structural_rules),
            sum(1 for f in findings if f.rule_id in self.trace_rules),
        )
        return findings

    def annotate(self, events: Sequence[ScanEvent],
                 context: Optional[ParseContext] = None) -> Tuple[ScanEvent, ...]:
        """Apply the run-level detectors, returning re-tagged events."""
        context = context or self._context()
        extra: Dict[int, set] = defaultdict(set)
        scans = [e for e in events if not e.cache_hit]

        for detector in (self._detect_repeated, self._detect_fusion, self._detect_dense_groupby):
            for index, pattern in detector(scans, context):
                extra[index].add(pattern)

        return tuple(e.with_patterns(extra[e.index]) if e.index in extra else e for e in events)

    # -- structural rules -----------------------------------------------------

    def structural_findings(self, definition: QueryDefinition) -> List[Finding]:
        findings = []
        for measure in definition.measures:
            if not measure.expression.strip():
                continue
            structure = analyze_dax(measure.expression)
            for rule_id, rule in self.structural_rules.items():
                evidence = self._check_rule(rule_id, structure, definition)
                if evidence:
                    findings.append(Finding(
                        pattern=rule["pattern"],
                        rule_id=rule_id,
                        evidence="; ".join(evidence),
                        tier=rule["tier"],
                        remediation_id=rule["remediation"],
                        measure=measure.name,
                    ))
        return findings

    def _check_rule(self, rule_id: str, structure, definition: QueryDefinition) -> List[str]:
        """Evidence strings for one rule over one body (empty = not violated)."""
        code = structure.code
        evidence: List[str] = []

        if rule_id == "ITERATOR_MEASURE_REEVALUATION":
            for call in structure.calls:
                if call.name not in AGGREGATING_ITERATORS or call.arg_count < 2:
                    continue
                start, end = call.args[1]
                for ref in structure.references_within(start, end):
                    target = definition.get(ref.name)
                    if ref.qualified and (target is None or not target.table
                                          or target.table.lower() != ref.table.lower()):
                        continue
                    if target is not None and target.kind == "measure":
                        evidence.append(f"{call.name} re-evaluates [{ref.name}] per row (line {call.line})")

        elif rule_id == "CONDITIONAL_BRANCH_SELECTION":
            for call in structure.calls:
                if call.name not in CONDITIONAL_FUNCTIONS:
                    continue
                branches = self._branch_indexes(call)
                heavy = [i for i in branches if self._is_subexpression(structure, call, i, definition)]
                if len(heavy) >= 2:
                    evidence.append(f"{call.name} selects between {len(heavy)} sub-expressions (line {call.line})")

        elif rule_id == "PROTECTED_DIVISION_IN_ITERATOR":
            for call in structure.calls_named("DIVIDE"):
                if call.in_row_context():
                    evidence.append(f"DIVIDE evaluated per row (line {call.line})")

        elif rule_id == "DUPLICATE_FILTER":
            seen: Dict[str, list] = defaultdict(list)
            for call in structure.calls_named("FILTER", "CALCULATETABLE"):
                seen[normalize_dax(call.text(code))].append(call)
            duplicated = {id(c) for calls in seen.values() if len(calls) > 1 for c in calls}
            for text, calls in seen.items():
                if len(calls) < 2:
                    continue
                # nested inside a larger duplicated expression
                if all(any(id(a) in duplicated for a, _ in c.ancestors()) for c in calls):
                    continue
                evidence.append(f"{calls[0].name} repeated {len(calls)} times: {text[:80]}")

        return evidence

    @staticmethod
    def _branch_indexes(call) -> List[int]:
        if call.name in ("IF", "IF.EAGER"):
            return [i for i in (1, 2) if i < call.arg_count]
        # SWITCH(expr, v1, r1, v2, r2, ..., [else])
        indexes = list(range(2, call.arg_count, 2))
        if call.arg_count > 2 and call.arg_count % 2 == 0:
            indexes.append(call.arg_count - 1)
        return indexes

    @staticmethod
    def _is_subexpression(structure, call, arg: int, definition: QueryDefinition) -> bool:
        start, end = call.args[arg]
        for ref in structure.references_within(start, end):
            target = definition.get(ref.name)
            if target is not None and target.kind == "measure" and not ref.qualified:
                return True
        for inner in structure.calls_within(start, end):
            if inner.name in CONTEXT_MODIFIERS or inner.name in AGGREGATING_ITERATORS:
                return True
            target = definition.get(inner.name)
            if target is not None and target.kind == "function":
                return True
        return False

    # -- trace rules ----------------------------------------------------------

    def trace_findings(self, events: Sequence[ScanEvent], static: Sequence[Finding] = (),
                       metrics: Optional[Metrics] = None) -> List[Finding]:
        """Findings for patterns observed in the scans (status confirmed)."""
        explained = set()
        for finding in static:
            explained |= self.structural_rules[finding.rule_id]["corroborated_by"]

        findings = []
        for rule_id, rule in self.trace_rules.items():
            pattern = rule["pattern"]
            if rule_id == "UNEXPLAINED_ROW_CALLBACK" and pattern in explained:
                continue
            if rule_id == "LOW_PARALLELISM":
                if metrics is None or self.settings is None:
                    continue
                indexes = tuple(s.index for s in low_parallelism_scans(metrics, self.settings))
            elif rule_id == "LOW_SELECTIVITY_SEMIJOIN":
                indexes = tuple(e.index for e in events if e.has(pattern) and e.low_selectivity)
            else:
                indexes = tuple(e.index for e in events if e.has(pattern))
            if not indexes:
                continue
            findings.append(Finding(
                pattern=pattern,
                rule_id=rule_id,
                evidence=f"{rule['description']} (scans {', '.join(str(i) for i in indexes)})",
                tier=rule["tier"],
                status=FindingStatus.CONFIRMED,
                scan_indexes=indexes,
                corroborated_by=frozenset({pattern}),
            ))
        return findings

    # -- run-level detectors ---------------------------------------------------

    def _detect_repeated(self, scans: Sequence[ScanEvent], context: ParseContext):
        groups: Dict[str, list] = defaultdict(list)
        for scan in scans:
            groups[normalize_scan(scan.text)].append(scan.index)
        for indexes in groups.values():
            if len(indexes) > 1:
                for index in indexes:
                    yield index, Pattern.REPEATED_SCAN

    def _detect_fusion(self, scans: Sequence[ScanEvent], context: ParseContext):
        shapes = {}
        for scan in scans:
            if scan.has(Pattern.SEMI_JOIN_BATCH):
                continue
            shape = scan_shape(scan.text)
            if shape is not None:
                shapes[scan.index] = shape

        vertical: Dict[tuple, list] = defaultdict(list)
        horizontal: Dict[tuple, list] = defaultdict(list)
        for index, (group_by, aggregations, source, where) in shapes.items():
            vertical[(group_by, source, where)].append((index, aggregations))
            horizontal[(group_by, aggregations, source, where_template(where))].append((index, where))

        for members in vertical.values():
            if len({aggs for _, aggs in members}) > 1:
                for index, _ in members:
                    yield index, Pattern.FUSION_BLOCKED_VERTICAL
        for members in horizontal.values():
            if len({where for _, where in members}) > 1:
                for index, _ in members:
                    yield index, Pattern.FUSION_BLOCKED_HORIZONTAL

    def _detect_dense_groupby(self, scans: Sequence[ScanEvent], context: ParseContext):
        if context.result_cardinality is None:
            return
        limit = context.full_scan_ratio * max(context.result_cardinality, 1)
        for scan in scans:
            if scan.rows is None or scan.rows <= limit:
                continue
            shape = scan_shape(scan.text)
            if shape and any(_KEY_COLUMN_RE.search(column) for column in shape[0]):
                yield scan.index, Pattern.DENSE_GROUPBY_ON_KEY

    def _context(self) -> ParseContext:
        if self.settings is None:
            return ParseContext()
        return ParseContext.from_settings(self.settings)


def corroborate(findings: Iterable[Finding], events: Sequence[ScanEvent]) -> List[Finding]:
    """Confirm static findings whose corroborating patterns were observed.

    A finding with no corroborating pattern in the same run is downgraded to
    unconfirmed and must never be auto-applied. Already-confirmed findings
    pass through unchanged.
    """
    observed: Dict[Pattern, list] = defaultdict(list)
    for event in events:
        for pattern in event.patterns:
            observed[pattern].append(event.index)

    result = []
    for finding in findings:
        if finding.status == FindingStatus.CONFIRMED:
            result.append(finding)
            continue
        rule = STRUCTURAL_RULES.get(finding.rule_id)
        wanted = rule["corroborated_by"] if rule else frozenset({finding.pattern})
        hits = frozenset(p for p in wanted if p in observed)
        if hits:
            indexes = tuple(sorted({i for p in hits for i in observed[p]}))
            result.append(replace(
                finding,
                status=FindingStatus.CONFIRMED,
                scan_indexes=indexes,
                corroborated_by=hits,
            ))
        else:
            logger.warning(
                "Finding %s on '%s' has no corroborating trace pattern; marked unconfirmed",
                finding.rule_id, finding.measure,
            )
            result.append(replace(finding, status=FindingStatus.UNCONFIRMED))
    return result
