"""Pytest configuration and fixtures for qt-dax-perf tests."""

from typing import Optional

import pytest

from qt_dax_perf.config import Settings
from qt_dax_perf.connections import RawExecution, SessionManager
from qt_dax_perf.errors import TraceCaptureFailure
from qt_dax_perf.parsers import parse_query


# =============================================================================
# SCRIPTED ENGINE
# =============================================================================

class ScriptedConnection:
    """In-memory engine connection.

    Responses are scripted per query marker: the first rule whose marker
    occurs in the executed text answers. Each rule holds a list of
    responses consumed in order; the last one repeats. A response may be
    a RawExecution or an exception to raise.
    """

    def __init__(self):
        self.rules = []
        self.traces = []
        self.calls = []
        self.executed = []
        self.connected = False
        self.closed = False

    def on(self, marker: str, *responses) -> "ScriptedConnection":
        self.rules.append((marker, list(responses)))
        return self

    def queue_trace(self, *traces) -> "ScriptedConnection":
        """Responses for fetch_trace (event lists or exceptions)."""
        self.traces.extend(traces)
        return self

    def connect(self):
        self.connected = True
        return self

    def close(self) -> None:
        self.closed = True

    def clear_cache(self) -> None:
        self.calls.append("clear_cache")

    def execute(self, text: str, want_trace: bool = True, timeout_s: Optional[float] = None):
        self.calls.append("execute")
        self.executed.append(text)
        for marker, responses in self.rules:
            if marker in text:
                response = responses.pop(0) if len(responses) > 1 else responses[0]
                if isinstance(response, Exception):
                    raise response
                return response
        raise AssertionError(f"No scripted response for query: {text[:120]}")

    def fetch_trace(self) -> list:
        self.calls.append("fetch_trace")
        if not self.traces:
            raise TraceCaptureFailure("No trace available")
        trace = self.traces.pop(0)
        if isinstance(trace, Exception):
            raise trace
        return trace


def scan_event(text: str, duration: float, start: Optional[float] = None, cpu: Optional[float] = None,
               rows: Optional[int] = None, event_class: str = "VertiPaqSEQueryEnd",
               subclass: str = "VertiPaqScan") -> dict:
    event = {"Class": event_class, "Subclass": subclass, "Query": text, "Duration": duration}
    if start is not None:
        event["StartOffset"] = start
        event["EndOffset"] = start + duration
    if cpu is not None:
        event["CpuTime"] = cpu
    if rows is not None:
        event["Rows"] = rows
    return event


def make_trace(total_ms: float, *scans: dict) -> list:
    return list(scans) + [{"Class": "QueryEnd", "Duration": total_ms}]


def execution(columns, rows, trace=None, elapsed_ms: float = 0.0) -> RawExecution:
    return RawExecution(columns=tuple(columns), rows=tuple(tuple(r) for r in rows),
                        trace_events=trace, elapsed_ms=elapsed_ms)


# =============================================================================
# XMSQL FIXTURES
# =============================================================================

CALLBACK_SCAN = """SET DC_KIND="AUTO";
SELECT 'Product'[Category],
SUM ( [CallbackDataID ( DIVIDE ( 'Sales'[Amount] - 'Sales'[Cost], 'Sales'[Amount] ) )] ( PFDATAID ( 'Sales'[Amount] ), PFDATAID ( 'Sales'[Cost] ) ) )
FROM 'Sales'
LEFT OUTER JOIN 'Product' ON 'Sales'[ProductKey]='Product'[ProductKey];
Estimated size ( volume, marshalling bytes ) : 12, 192"""

PLAIN_SCAN = """SET DC_KIND="AUTO";
SELECT 'Product'[Category], SUM ( 'Sales'[Amount] ), SUM ( 'Sales'[Cost] )
FROM 'Sales'
LEFT OUTER JOIN 'Product' ON 'Sales'[ProductKey]='Product'[ProductKey];
Estimated size ( volume, marshalling bytes ) : 12, 192"""

SEMIJOIN_SCAN = """DEFINE TABLE '$TTable3' := SELECT 'Customer'[CustomerKey] FROM 'Customer'
WHERE 'Customer'[Country] = 'Italy';
[Estimated size (volume, marshalling bytes): 40000, 320000]
SELECT SUM ( 'Sales'[Amount] )
FROM 'Sales'
WHERE 'Sales'[CustomerKey] ININDEX '$TTable3'[$SemijoinProjection];"""


# =============================================================================
# QUERY FIXTURES
# =============================================================================

DIVISION_QUERY = """DEFINE
    MEASURE Sales[Margin %] =
        AVERAGEX (
            Sales,
            DIVIDE ( Sales[Amount] - Sales[Cost], Sales[Amount] )
        )
EVALUATE
SUMMARIZECOLUMNS ( 'Product'[Category], "Margin", [Margin %] )
"""

ITERATOR_QUERY = """DEFINE
    MEASURE Sales[Total Sales] = SUM ( Sales[Amount] )
    MEASURE Sales[Customer Sales] =
        SUMX ( VALUES ( Customer[CustomerKey] ), [Total Sales] * 1.1 )
EVALUATE
SUMMARIZECOLUMNS ( 'Date'[Year], "Sales", [Customer Sales] )
ORDER BY 'Date'[Year]
"""

SWITCH_QUERY = """DEFINE
    MEASURE Sales[Total Sales] = SUM ( Sales[Amount] )
    MEASURE Sales[Total Cost] = SUM ( Sales[Cost] )
    MEASURE Sales[Selected] =
        SWITCH (
            SELECTEDVALUE ( Metric[Name] ),
            "Sales", [Total Sales],
            "Cost", [Total Cost],
            BLANK ()
        )
EVALUATE
SUMMARIZECOLUMNS ( 'Product'[Category], "Value", [Selected] )
"""

FILTER_QUERY = """DEFINE
    MEASURE Sales[Big Orders] =
        COUNTROWS ( FILTER ( Sales, Sales[Amount] > 1000 ) )
            + SUMX ( FILTER ( Sales, Sales[Amount] > 1000 ), Sales[Quantity] )
EVALUATE
ROW ( "Big", [Big Orders] )
"""

CATEGORY_COLUMNS = ("Product[Category]", "[Margin]")
CATEGORY_ROWS = (("Bikes", 0.4125), ("Clothing", 0.3), ("Accessories", 0.625))


@pytest.fixture
def settings() -> Settings:
    """Deterministic settings: one repetition, default thresholds."""
    return Settings(baseline_repetitions=1, execution_timeout_s=30, llm_model="")


@pytest.fixture
def connection() -> ScriptedConnection:
    return ScriptedConnection()


@pytest.fixture
def session_manager(connection):
    return SessionManager(lambda target: connection)


@pytest.fixture
def session(session_manager):
    return session_manager.connect("localhost:54321")


@pytest.fixture
def division_definition():
    return parse_query(DIVISION_QUERY)


@pytest.fixture
def iterator_definition():
    return parse_query(ITERATOR_QUERY)


@pytest.fixture
def switch_definition():
    return parse_query(SWITCH_QUERY)


@pytest.fixture
def filter_definition():
    return parse_query(FILTER_QUERY)


@pytest.fixture
def callback_trace():
    """1000ms query whose only scan calls back into the formula engine."""
    return make_trace(1000, scan_event(CALLBACK_SCAN, 400, start=100, cpu=420))


@pytest.fixture
def plain_trace():
    return make_trace(850, scan_event(PLAIN_SCAN, 300, start=100, cpu=900))


# =============================================================================
# MARKERS
# =============================================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
    config.addinivalue_line(
        "markers", "integration: marks tests that run the full optimization loop"
    )
    config.addinivalue_line(
        "markers", "windows: marks tests that require Windows and Power BI Desktop"
    )
