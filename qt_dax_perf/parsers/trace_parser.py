"""Storage-engine trace event parser.

Turns raw Server Timings events (dicts, as DAX Studio exports them) into
ScanEvent values. Detection runs an ordered list of independent predicates
over a normalized token stream of the xmSQL text; callback markers are a
data table so new markers need no control-flow changes.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, List, Mapping, NamedTuple, Optional, Sequence, Tuple

from ..errors import MalformedEventError
from ..schemas import Pattern, ScanEvent

logger = logging.getLogger(__name__)


# =============================================================================
# MARKERS & EVENT CLASSES
# =============================================================================

# marker token -> tag; matched case-insensitively against word tokens
CALLBACK_MARKERS: Tuple[Tuple[str, Pattern], ...] = (
    ('CallbackDataID', Pattern.ROW_CALLBACK),
    ('LogAbsValueCallback', Pattern.ROW_CALLBACK),
    ('RoundValueCallback', Pattern.ROW_CALLBACK),
    ('MinMaxColumnPositionCallback', Pattern.ROW_CALLBACK),
    ('EncodeCallback', Pattern.ENCODE_CALLBACK),
)

SCAN_CLASSES = frozenset({'VertiPaqSEQueryEnd', 'DirectQueryEnd'})
CACHE_CLASSES = frozenset({'VertiPaqSEQueryCacheMatch'})
QUERY_END_CLASSES = frozenset({'QueryEnd'})
SKIPPED_SUBCLASSES = frozenset({'VertiPaqScanInternal'})

TEXT_FIELDS = ('Query', 'TextData')
CPU_FIELDS = ('CpuTime', 'CPUTime', 'Cpu')

SIZE_RE = re.compile(
    r"Estimated\s+size\s*\(\s*volume\s*,\s*marshalling\s+bytes\s*\)\s*:\s*(\d+)\s*,\s*(\d+)",
    re.IGNORECASE,
)
_TOKEN_RE = re.compile(r"'(?:''|[^'])*'|\$?[A-Za-z_][\w$]*|\d+(?:\.\d+)?|\S")
_DEFINE_TABLE_RE = re.compile(r"DEFINE\s+TABLE\s+'(\$T[^']*)'", re.IGNORECASE)
_FROM_RE = re.compile(r"\bFROM\s+('(?:''|[^'])*'|[A-Za-z_][\w$]*)", re.IGNORECASE)


@dataclass(frozen=True)
class ParseContext:
    """Run-level facts and thresholds the per-event predicates need."""
    result_cardinality: Optional[int] = None
    full_scan_ratio: float = 100.0
    full_scan_min_rows: int = 10_000
    semijoin_selectivity_ratio: float = 0.5
    table_cardinalities: Mapping[str, int] = field(default_factory=dict)

    @classmethod
    def from_settings(cls, settings, result_cardinality: Optional[int] = None,
                      table_cardinalities: Optional[Mapping[str, int]] = None) -> "ParseContext":
        return cls(
            result_cardinality=result_cardinality,
            full_scan_ratio=settings.full_scan_ratio,
            full_scan_min_rows=settings.full_scan_min_rows,
            semijoin_selectivity_ratio=settings.semijoin_selectivity_ratio,
            table_cardinalities={k.lower(): v for k, v in (table_cardinalities or {}).items()},
        )

    def table_cardinality(self, table: str) -> Optional[int]:
        wanted = table.lower()
        for name, cardinality in self.table_cardinalities.items():
            if name.lower() == wanted:
                return cardinality
        return None


@dataclass
class ScanText:
    """Normalized view of one event's xmSQL text."""
    raw: str
    tokens: List[str]
    words: frozenset
    rows: Optional[int]
    bytes: Optional[int]


def normalize_scan_text(text: str) -> List[str]:
    """Token stream of xmSQL text, comments and whitespace dropped."""
    return _TOKEN_RE.findall(text)


def parse_size_annotation(text: str) -> Optional[Tuple[int, int]]:
    """Last ``Estimated size ( volume, marshalling bytes ) : R, B`` in text."""
    matches = SIZE_RE.findall(text)
    if not matches:
        return None
    rows, size = matches[-1]
    return int(rows), int(size)


def _unquote(name: str) -> str:
    if name.startswith("'") and name.endswith("'"):
        return name[1:-1].replace("''", "'")
    return name


# =============================================================================
# PREDICATES
# =============================================================================

Predicate = Callable[[ScanText, ParseContext], Optional[Pattern]]


def _marker_predicate(pattern: Pattern) -> Predicate:
    markers = frozenset(m.upper() for m, tag in CALLBACK_MARKERS if tag == pattern)

    def detect(scan: ScanText, context: ParseContext) -> Optional[Pattern]:
        return pattern if scan.words & markers else None

    detect.__name__ = f"detect_{pattern.value}"
    return detect


def detect_full_scan(scan: ScanText, context: ParseContext) -> Optional[Pattern]:
    """No filter at all and far more rows than the query returns."""
    if 'WHERE' in scan.words or scan.rows is None or context.result_cardinality is None:
        return None
    if scan.rows < context.full_scan_min_rows:
        return None
    if scan.rows > context.full_scan_ratio * max(context.result_cardinality, 1):
        return Pattern.FULL_SCAN
    return None


def detect_semijoin(scan: ScanText, context: ParseContext) -> Optional[Pattern]:
    """A ``DEFINE TABLE '$T..'`` stage later used as a membership filter."""
    for match in _DEFINE_TABLE_RE.finditer(scan.raw):
        if f"'{match.group(1)}'" in scan.raw[match.end():]:
            return Pattern.SEMI_JOIN_BATCH
    return None


def _ordered_markers() -> List[Pattern]:
    seen: List[Pattern] = []
    for _, tag in CALLBACK_MARKERS:
        if tag not in seen:
            seen.append(tag)
    return seen


PREDICATES: Tuple[Predicate, ...] = tuple(
    [_marker_predicate(tag) for tag in _ordered_markers()] + [detect_full_scan, detect_semijoin]
)


def semijoin_details(text: str, context: ParseContext) -> Tuple[Optional[int], Optional[bool]]:
    """Preliminary-set rows and the low-selectivity flag of a semi-join batch.

    The preliminary rows come from the size annotation of the first define
    stage; the filtered table is the one in the final FROM. The flag stays
    None when that table's cardinality is unknown.
    """
    define = _DEFINE_TABLE_RE.search(text)
    if define is None:
        return None, None
    next_define = _DEFINE_TABLE_RE.search(text, define.end())
    stage = text[define.end():next_define.start() if next_define else len(text)]
    size = SIZE_RE.search(stage)
    if size is None:
        return None, None
    preliminary = int(size.group(1))

    sources = _FROM_RE.findall(text)
    if not sources:
        return preliminary, None
    cardinality = context.table_cardinality(_unquote(sources[-1]))
    if cardinality is None:
        return preliminary, None
    return preliminary, preliminary > context.semijoin_selectivity_ratio * cardinality


# =============================================================================
# PARSER
# =============================================================================

def _field(raw: Mapping[str, Any], names: Sequence[str]) -> Any:
    for name in names:
        value = raw.get(name)
        if value is not None and value != '':
            return value
    return None


def _number(raw: Mapping[str, Any], name: str, value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        raise MalformedEventError(f"Field '{name}' is not numeric: {value!r}", missing=(name,))


class TraceEventParser:
    """Parses one raw event into a ScanEvent. Pure; never fails on unknown text."""

    def __init__(self, predicates: Sequence[Predicate] = PREDICATES):
        self.predicates = tuple(predicates)

    def parse(self, raw: Mapping[str, Any], context: Optional[ParseContext] = None,
              index: int = 0, start_hint: float = 0.0) -> ScanEvent:
        """Parse a scan or cache-match event.

        ``start_hint`` places the event when it carries no offsets.

        Raises:
            MalformedEventError: Duration or query text is absent.
        """
        context = context or ParseContext()
        event_class = str(raw.get('Class', '') or '')
        subclass = str(raw.get('Subclass', '') or '')
        cache_hit = event_class in CACHE_CLASSES or 'CacheMatch' in subclass

        text = _field(raw, TEXT_FIELDS)
        duration = raw.get('Duration')
        missing = tuple(
            name for name, value in (('Duration', duration), ('Query', text))
            if value is None or value == ''
        )
        if cache_hit:
            missing = tuple(m for m in missing if m != 'Duration')
            duration = 0.0
        if missing:
            raise MalformedEventError(
                f"Trace event missing required field(s): {', '.join(missing)}", missing=missing
            )
        duration_ms = _number(raw, 'Duration', duration)
        text = str(text)

        cpu = _field(raw, CPU_FIELDS)
        cpu_ms = _number(raw, 'CpuTime', cpu) if cpu is not None else 0.0

        start = raw.get('StartOffset')
        end = raw.get('EndOffset')
        start_ms = _number(raw, 'StartOffset', start) if start is not None else None
        end_ms = _number(raw, 'EndOffset', end) if end is not None else None
        if start_ms is None and end_ms is not None:
            start_ms = end_ms - duration_ms
        if start_ms is None:
            start_ms = start_hint
        if end_ms is None:
            end_ms = start_ms + duration_ms

        rows, size = self._sizes(raw, text)
        tokens = normalize_scan_text(text)
        scan = ScanText(
            raw=text,
            tokens=tokens,
            words=frozenset(t.upper() for t in tokens),
            rows=rows,
            bytes=size,
        )

        patterns = set()
        if not cache_hit:
            for predicate in self.predicates:
                tag = predicate(scan, context)
                if tag is not None:
                    patterns.add(tag)

        semijoin_rows, low_selectivity = (None, None)
        if Pattern.SEMI_JOIN_BATCH in patterns:
            semijoin_rows, low_selectivity = semijoin_details(text, context)

        return ScanEvent(
            index=index,
            text=text,
            duration_ms=duration_ms,
            cpu_ms=cpu_ms,
            rows=rows,
            bytes=size,
            patterns=frozenset(patterns),
            start_ms=start_ms,
            end_ms=max(end_ms, start_ms),
            cache_hit=cache_hit,
            semijoin_rows=semijoin_rows,
            low_selectivity=low_selectivity,
            event_class=event_class,
            subclass=subclass,
        )

    def _sizes(self, raw: Mapping[str, Any], text: str) -> Tuple[Optional[int], Optional[int]]:
        rows = raw.get('Rows')
        size = raw.get('Bytes')
        if size is None and raw.get('KB') is not None:
            size = float(raw['KB']) * 1024
        annotation = parse_size_annotation(text)
        if rows is None and annotation:
            rows = annotation[0]
        if size is None and annotation:
            size = annotation[1]
        return (
            int(rows) if rows is not None else None,
            int(size) if size is not None else None,
        )


class ParsedTrace(NamedTuple):
    events: Tuple[ScanEvent, ...]
    engine_total_ms: Optional[float]


def parse_trace(raw_events: Sequence[Mapping[str, Any]],
                context: Optional[ParseContext] = None,
                parser: Optional[TraceEventParser] = None) -> ParsedTrace:
    """Split a raw trace into scan events and the engine-reported total.

    Events without offsets are laid out one after another in trace order.
    """
    parser = parser or TraceEventParser()
    context = context or ParseContext()
    events: List[ScanEvent] = []
    engine_total: Optional[float] = None
    cursor = 0.0
    skipped = 0

    for raw in raw_events:
        event_class = str(raw.get('Class', '') or '')
        subclass = str(raw.get('Subclass', '') or '')
        if event_class in QUERY_END_CLASSES:
            if raw.get('Duration') is None:
                raise MalformedEventError("QueryEnd event has no Duration", missing=('Duration',))
            engine_total = _number(raw, 'Duration', raw['Duration'])
            continue
        if subclass in SKIPPED_SUBCLASSES:
            skipped += 1
            continue
        if event_class and event_class not in SCAN_CLASSES and event_class not in CACHE_CLASSES:
            skipped += 1
            continue

        event = parser.parse(raw, context, index=len(events), start_hint=cursor)
        cursor = max(cursor, event.end_ms)
        events.append(event)

    logger.debug(
        "Parsed trace: %d events (%d cache hits), %d skipped, engine total %s",
        len(events), sum(1 for e in events if e.cache_hit), skipped, engine_total,
    )
    return ParsedTrace(events=tuple(events), engine_total_ms=engine_total)
