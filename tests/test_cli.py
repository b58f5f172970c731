"""CLI tests using click's CliRunner."""

import json

import pytest
from click.testing import CliRunner

from cli import main as cli_main
from cli.main import cli
from qt_dax_perf import __version__

from conftest import (
    CALLBACK_SCAN,
    CATEGORY_COLUMNS,
    CATEGORY_ROWS,
    DIVISION_QUERY,
    PLAIN_SCAN,
    ScriptedConnection,
    execution,
    make_trace,
    scan_event,
)


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def query_file(tmp_path):
    path = tmp_path / "margin.dax"
    path.write_text(DIVISION_QUERY, encoding="utf-8")
    return path


@pytest.fixture
def trace_file(tmp_path):
    path = tmp_path / "timings.json"
    trace = make_trace(1000, scan_event(CALLBACK_SCAN, 400, start=100, cpu=420))
    path.write_text(json.dumps({"events": trace}), encoding="utf-8")
    return path


@pytest.fixture
def scripted(monkeypatch):
    connection = ScriptedConnection()
    callback = make_trace(1000, scan_event(CALLBACK_SCAN, 400, start=100, cpu=420))
    connection.on("<> 0", execution(
        CATEGORY_COLUMNS, CATEGORY_ROWS, trace=make_trace(850, scan_event(PLAIN_SCAN, 100, start=0)),
    ))
    connection.on("DIVIDE", execution(CATEGORY_COLUMNS, CATEGORY_ROWS, trace=callback))
    monkeypatch.setattr(cli_main, "make_connection", lambda target, settings: connection)
    return connection


class TestCLIBasics:
    def test_help(self, runner):
        result = runner.invoke(cli, ["--help"])
        assert result.exit_code == 0
        for command in ("analyze", "optimize", "analyze-trace", "instances"):
            assert command in result.output

    def test_version(self, runner):
        result = runner.invoke(cli, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.output

    def test_missing_file(self, runner):
        result = runner.invoke(cli, ["analyze", "does-not-exist.dax"])
        assert result.exit_code != 0

    def test_wrong_extension(self, runner, tmp_path):
        path = tmp_path / "query.sql"
        path.write_text("SELECT 1", encoding="utf-8")
        result = runner.invoke(cli, ["analyze", str(path), "--port", "1"])
        assert result.exit_code != 0
        assert "Expected .dax file" in result.output


class TestAnalyzeTrace:
    def test_json_output(self, runner, trace_file):
        result = runner.invoke(cli, ["analyze-trace", str(trace_file), "--json"])
        assert result.exit_code == 0, result.output
        data = json.loads(result.stdout)
        assert data["metrics"]["se_ms"] == 400
        assert data["metrics"]["fe_ms"] == 600
        assert data["scan_events"][0]["patterns"] == ["RowCallback"]
        assert "UNEXPLAINED_ROW_CALLBACK" in {f["rule_id"] for f in data["findings"]}

    def test_with_query_corroborates(self, runner, trace_file, query_file):
        result = runner.invoke(cli, ["analyze-trace", str(trace_file), "-q", str(query_file), "--json"])
        assert result.exit_code == 0, result.output
        findings = {f["rule_id"]: f for f in json.loads(result.stdout)["findings"]}
        assert findings["PROTECTED_DIVISION_IN_ITERATOR"]["status"] == "confirmed"

    def test_invalid_json(self, runner, tmp_path):
        path = tmp_path / "bad.json"
        path.write_text("{not json", encoding="utf-8")
        result = runner.invoke(cli, ["analyze-trace", str(path)])
        assert result.exit_code != 0
        assert "Invalid trace JSON" in result.output

    def test_rich_output(self, runner, trace_file):
        result = runner.invoke(cli, ["analyze-trace", str(trace_file)])
        assert result.exit_code == 0, result.output
        assert "Timings" in result.output


class TestEngineCommands:
    def test_analyze(self, runner, query_file, scripted):
        result = runner.invoke(cli, ["analyze", str(query_file), "--port", "54321", "-n", "1", "--json"])
        assert result.exit_code == 0, result.output
        data = json.loads(result.stdout)
        assert data["state"] == "baselined"
        assert data["baseline"]["total_ms"] == 1000
        assert [f["rule_id"] for f in data["confirmed_findings"]] == [
            "PROTECTED_DIVISION_IN_ITERATOR", "LOW_PARALLELISM",
        ]
        assert scripted.closed

    def test_optimize_writes_output(self, runner, query_file, scripted, tmp_path):
        output = tmp_path / "optimized.dax"
        report = tmp_path / "report.md"
        result = runner.invoke(cli, [
            "optimize", str(query_file), "--port", "54321", "-n", "1", "--json",
            "-o", str(output), "--report", str(report),
        ])
        assert result.exit_code == 0, result.output
        data = json.loads(result.stdout)
        assert data["state"] == "accepted"
        assert data["attempts"][0]["outcome"] == "accepted"
        assert "<> 0" in output.read_text(encoding="utf-8")
        assert "## Optimized Query" in report.read_text(encoding="utf-8")

    def test_invalid_threshold(self, runner, query_file, scripted):
        result = runner.invoke(cli, ["optimize", str(query_file), "--port", "1", "--threshold", "2"])
        assert result.exit_code != 0


REVENUE_QUERY = """DEFINE
    MEASURE Sales[Revenue] = SUMX ( Sales, [Quantity] * [Net Price] ) + [_Adjustment]
EVALUATE
SUMMARIZECOLUMNS ( 'Product'[Category], "Revenue", [Revenue] )
"""


class ModelConnection(ScriptedConnection):
    """Scripted connection that also serves model metadata."""

    def get_measures(self):
        return [{"name": "_Adjustment", "table": "Sales", "expression": "SUM ( Sales[Freight] )"}]

    def get_columns(self):
        return [
            {"table": "Sales", "column": "Quantity"},
            {"table": "Sales", "column": "Net Price"},
            {"table": "Sales", "column": "Freight"},
            {"table": "Product", "column": "Category"},
        ]

    def get_table_cardinalities(self):
        return {"Sales": 1_000_000}


class TestRowContextColumns:
    @pytest.fixture
    def revenue_file(self, tmp_path):
        path = tmp_path / "revenue.dax"
        path.write_text(REVENUE_QUERY, encoding="utf-8")
        return path

    def connect(self, monkeypatch, connection):
        connection.on("SUMX", execution(
            CATEGORY_COLUMNS, CATEGORY_ROWS, trace=make_trace(300, scan_event(PLAIN_SCAN, 100, start=0)),
        ))
        monkeypatch.setattr(cli_main, "make_connection", lambda target, settings: connection)
        return connection

    def test_unqualified_columns_without_model_metadata(self, runner, revenue_file, monkeypatch):
        self.connect(monkeypatch, ScriptedConnection())
        revenue_file.write_text(REVENUE_QUERY.replace(" + [_Adjustment]", ""), encoding="utf-8")
        result = runner.invoke(cli, ["analyze", str(revenue_file), "--port", "1", "-n", "1", "--json"])
        assert result.exit_code == 0, result.output
        assert json.loads(result.stdout)["state"] == "baselined"

    def test_hidden_measure_and_model_columns(self, runner, revenue_file, monkeypatch):
        connection = self.connect(monkeypatch, ModelConnection())
        result = runner.invoke(cli, ["analyze", str(revenue_file), "--port", "1", "-n", "1", "--json"])
        assert result.exit_code == 0, result.output
        assert "MEASURE 'Sales'[_Adjustment]" in connection.executed[0]
