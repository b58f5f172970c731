"""Power BI Desktop connection tests (no engine required)."""

import sys

import pytest

from qt_dax_perf.connections import pbi_desktop
from qt_dax_perf.connections.pbi_desktop import (
    PBIDesktopConnection,
    classify_engine_error,
    find_pbi_instances,
    parse_target,
)
from qt_dax_perf.errors import (
    EngineConnectionError,
    ExecutionFailure,
    ExecutionTimeout,
    InvalidQueryError,
    TraceCaptureFailure,
)


class FakeCursor:
    def __init__(self, owner):
        self.owner = owner
        self.description = []

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def execute(self, command):
        self.owner.commands.append(command)
        if self.owner.error is not None:
            raise self.owner.error
        self.columns, self.rows = self.owner.answer(command)
        self.description = [(c,) for c in self.columns]

    def fetchall(self):
        return list(self.rows)


class FakeAdomd:
    def __init__(self, columns=(), rows=(), error=None, responses=None):
        self.columns = columns
        self.rows = rows
        self.error = error
        self.responses = responses or {}
        self.commands = []

    def answer(self, command):
        for marker, response in self.responses.items():
            if marker in command:
                return response
        return self.columns, self.rows

    def cursor(self):
        return FakeCursor(self)

    def close(self):
        pass


def connected(fake, **kwargs):
    conn = PBIDesktopConnection(54321, **kwargs)
    conn._connection = fake
    return conn


class TestHelpers:
    @pytest.mark.parametrize("target,port", [
        ("localhost:54321", 54321),
        ("54321", 54321),
        (54321, 54321),
        (" localhost:1 ", 1),
    ])
    def test_parse_target(self, target, port):
        assert parse_target(target) == port

    def test_parse_invalid_target(self):
        with pytest.raises(EngineConnectionError):
            parse_target("localhost:abc")

    @pytest.mark.parametrize("message,expected", [
        ("Query (1, 5) The syntax for 'EVALUTE' is incorrect.", InvalidQueryError),
        ("Failed to resolve name 'Foo'.", InvalidQueryError),
        ("The operation has been cancelled because of timeout", ExecutionTimeout),
        ("No connection could be made because the target machine actively refused it", EngineConnectionError),
        ("Memory error: allocation failure", ExecutionFailure),
        ("The database with the ID of 'db-guid' cannot be found", ExecutionFailure),
        ("Query (1, 1) A table of multiple values was supplied", ExecutionFailure),
    ])
    def test_classify_engine_error(self, message, expected):
        classified = classify_engine_error(RuntimeError(message), query="EVALUATE x", timeout_s=5)
        assert type(classified) is expected
        assert str(classified) == message

    def test_classified_timeout_keeps_limit(self):
        assert classify_engine_error(RuntimeError("timed out"), timeout_s=5).timeout_s == 5

    def test_find_instances_requires_windows(self, monkeypatch):
        monkeypatch.setattr(pbi_desktop.platform, "system", lambda: "Linux")
        with pytest.raises(OSError):
            find_pbi_instances()

    def test_find_instances_reads_port_files(self, monkeypatch, tmp_path):
        data = tmp_path / "Microsoft" / "Power BI Desktop" / "AnalysisServicesWorkspaces" / "AnalysisServicesWorkspace_1" / "Data"
        data.mkdir(parents=True)
        (data / "msmdsrv.port.txt").write_bytes("54321".encode("utf-16"))
        monkeypatch.setattr(pbi_desktop.platform, "system", lambda: "Windows")
        monkeypatch.setenv("LOCALAPPDATA", str(tmp_path))
        monkeypatch.setattr(pbi_desktop.os.path, "expanduser", lambda p: str(tmp_path / "home"))

        found = find_pbi_instances()
        assert [(i.port, i.name) for i in found] == [(54321, "AnalysisServicesWorkspace_1")]


class TestPBIDesktopConnection:
    def test_connection_string(self):
        assert PBIDesktopConnection(1).connection_string == "Provider=MSOLAP;Data Source=localhost:1"
        assert PBIDesktopConnection(1, timeout_s=30).connection_string.endswith(";Timeout=30")

    def test_execute(self):
        fake = FakeAdomd(columns=["Product[Category]", "[Margin]"], rows=[("Bikes", 0.4)])
        raw = connected(fake).execute('EVALUATE ROW ( "x", 1 )')
        assert raw.columns == ("Product[Category]", "[Margin]")
        assert raw.rows == (("Bikes", 0.4),)
        assert raw.trace_events is None

    def test_execute_not_connected(self):
        with pytest.raises(EngineConnectionError):
            PBIDesktopConnection(1).execute("EVALUATE {1}")

    def test_engine_error_classified(self):
        fake = FakeAdomd(error=RuntimeError("The syntax for ')' is incorrect"))
        with pytest.raises(InvalidQueryError) as exc_info:
            connected(fake).execute("EVALUATE {1")
        assert exc_info.value.query == "EVALUATE {1"

    def test_clear_cache_targets_loaded_database(self):
        fake = FakeAdomd(columns=["CATALOG_NAME"], rows=[("db-guid",)])
        connected(fake).clear_cache()
        assert "<DatabaseID>db-guid</DatabaseID>" in fake.commands[-1]

    def test_clear_cache_failure_is_not_an_invalid_query(self):
        fake = FakeAdomd(error=RuntimeError("The syntax for 'ClearCache' is incorrect"))
        with pytest.raises(ExecutionFailure, match="ClearCache failed") as exc_info:
            connected(fake).clear_cache()
        assert not isinstance(exc_info.value, InvalidQueryError)

    def test_fetch_trace_without_reader(self):
        with pytest.raises(TraceCaptureFailure):
            PBIDesktopConnection(1).fetch_trace()

    def test_fetch_trace_wraps_reader_errors(self):
        def reader(conn):
            raise RuntimeError("session ended")

        with pytest.raises(TraceCaptureFailure, match="session ended"):
            PBIDesktopConnection(1, trace_reader=reader).fetch_trace()

    def test_fetch_trace_from_reader(self):
        events = [{"Class": "QueryEnd", "Duration": 5}]
        assert PBIDesktopConnection(1, trace_reader=lambda conn: iter(events)).fetch_trace() == events

    def test_model_metadata(self):
        fake = FakeAdomd(
            columns=["Table", "RowCount"],
            rows=[("[Sales]", 1_000_000), ("[Empty]", None)],
        )
        assert connected(fake).get_table_cardinalities() == {"Sales": 1_000_000}

    def test_measures(self):
        fake = FakeAdomd(responses={
            "TMSCHEMA_TABLES": (["ID", "Name"], [(1, "Sales")]),
            "TMSCHEMA_MEASURES": (["TableID", "Name", "Expression"], [
                (1, "Total", "SUM ( Sales[A] )"),
                (1, "_Helper", "[Total] * 2"),
            ]),
        })
        assert connected(fake).get_measures() == [
            {"name": "Total", "table": "Sales", "expression": "SUM ( Sales[A] )"},
            {"name": "_Helper", "table": "Sales", "expression": "[Total] * 2"},
        ]
        assert "MEASURE_IS_VISIBLE" not in fake.commands[-1]

    def test_columns(self):
        fake = FakeAdomd(responses={
            "TMSCHEMA_TABLES": (["ID", "Name"], [(1, "Sales"), (2, "Date")]),
            "TMSCHEMA_COLUMNS": (["TableID", "ExplicitName", "InferredName", "Type"], [
                (1, "RowNumber-2662979B", None, 3),
                (1, "Quantity", None, 1),
                (1, None, "Net Price", 4),
                (2, "Date", None, 1),
            ]),
        })
        conn = connected(fake)
        assert conn.get_columns() == [
            {"table": "Sales", "column": "Quantity"},
            {"table": "Sales", "column": "Net Price"},
            {"table": "Date", "column": "Date"},
        ]
        assert conn.get_columns("Date") == [{"table": "Date", "column": "Date"}]

    def test_missing_pyadomd(self, monkeypatch):
        monkeypatch.setattr(pbi_desktop, "_pyadomd", None)
        monkeypatch.setitem(sys.modules, "pyadomd", None)
        with pytest.raises(ImportError, match="pip install qt-dax-perf\\[desktop\\]"):
            PBIDesktopConnection(1).connect()
