"""QueryTorque DAX Performance CLI.

Command-line interface for trace-driven DAX query analysis and optimization.

Commands:
    qt-dax-perf instances                  List running Power BI Desktop instances
    qt-dax-perf analyze <query.dax>        Cold-cache baseline, metrics and findings
    qt-dax-perf optimize <query.dax>       Verified rewrite loop
    qt-dax-perf analyze-trace <trace.json> Offline analysis of an exported trace
"""

import json
import logging
import sys
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.panel import Panel
from rich.syntax import Syntax
from rich.table import Table

from qt_dax_perf import __version__
from qt_dax_perf.analyzers import MetricsAggregator, PatternCatalog, corroborate, resolve_query_definition
from qt_dax_perf.config import Settings, get_settings
from qt_dax_perf.connections import (
    PBIDesktopConnection,
    SessionManager,
    find_pbi_instances,
    parse_target,
)
from qt_dax_perf.errors import DefinitionError, MalformedEventError, QTDaxPerfError
from qt_dax_perf.optimization import (
    BaselineRunner,
    ChainedProposer,
    DSPyRewriteProposer,
    OptimizationController,
    RuleBasedProposer,
)
from qt_dax_perf.parsers import ParseContext, parse_query, parse_trace
from qt_dax_perf.renderers import render_markdown
from qt_dax_perf.schemas import (
    ControllerState,
    ExecutionRun,
    FindingStatus,
    Metrics,
    OptimizationReport,
    QueryDefinition,
)

console = Console()
logger = logging.getLogger(__name__)

STATE_COLORS = {
    "accepted": "green",
    "exhausted": "yellow",
    "cancelled": "yellow",
    "baselined": "cyan",
}

STATUS_COLORS = {
    FindingStatus.CONFIRMED.value: "green",
    FindingStatus.UNCONFIRMED.value: "yellow",
    FindingStatus.RAW.value: "dim",
}


def read_query_file(file_path: str) -> QueryDefinition:
    """Read and parse a DAX query file."""
    path = Path(file_path)
    if not path.exists():
        raise click.ClickException(f"File not found: {file_path}")
    if path.suffix.lower() not in (".dax", ".txt"):
        raise click.ClickException(f"Expected .dax file, got: {path.suffix}")
    try:
        return parse_query(path.read_text(encoding="utf-8"))
    except DefinitionError as e:
        raise click.ClickException(str(e))


def read_trace_file(file_path: str) -> list:
    """Read exported trace events (a list, or an object with an ``events`` list)."""
    try:
        data = json.loads(Path(file_path).read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise click.ClickException(f"Invalid trace JSON: {e}")
    if isinstance(data, dict):
        data = data.get("events", data.get("Events"))
    if not isinstance(data, list):
        raise click.ClickException("Expected a list of trace events")
    return data


def build_settings(**overrides) -> Settings:
    """Current settings with CLI overrides applied (and validated)."""
    values = get_settings().model_dump()
    values.update({k: v for k, v in overrides.items() if v is not None})
    try:
        return Settings(**values)
    except ValueError as e:
        raise click.ClickException(str(e))


def make_connection(target: str, settings: Settings):
    """Engine connection for ``target``."""
    return PBIDesktopConnection(parse_target(target), timeout_s=settings.execution_timeout_s)


def resolve_target(port: Optional[int], settings: Settings) -> str:
    if port:
        return f"localhost:{port}"
    if settings.pbi_port:
        return f"localhost:{settings.pbi_port}"
    try:
        instances = find_pbi_instances()
    except OSError as e:
        raise click.ClickException(str(e))
    if not instances:
        raise click.ClickException(
            "No Power BI Desktop instances found. Open a model in Power BI Desktop and retry."
        )
    return f"localhost:{instances[0].port}"


def load_model(session, definition: QueryDefinition):
    """Close the definition over model measures; return it with table cardinalities."""
    connection = session.connection
    if not hasattr(connection, "get_measures"):
        return resolve_query_definition(definition), {}
    with session.exclusive() as conn:
        measures = conn.get_measures()
        columns = None
        if hasattr(conn, "get_columns"):
            columns = [f"'{c['table']}'[{c['column']}]" for c in conn.get_columns()]
        cardinalities = conn.get_table_cardinalities()
    return resolve_query_definition(definition, measures, known_columns=columns), cardinalities


def build_proposer(settings: Settings):
    rules = RuleBasedProposer()
    if settings.has_llm_provider:
        return ChainedProposer([rules, DSPyRewriteProposer.from_settings(settings)])
    return rules


# =============================================================================
# DISPLAY
# =============================================================================

def display_metrics(run: Optional[ExecutionRun], metrics: Optional[Metrics]) -> None:
    """Display the FE/SE decomposition of a run."""
    table = Table(show_header=False, box=None)
    table.add_column("Metric", style="dim")
    table.add_column("Value")
    if run is not None:
        table.add_row("Total", f"{run.total_ms:,.1f} ms")
        table.add_row("Rows", str(run.result.row_count))
        if run.repetition_ms:
            table.add_row("Repetitions", ", ".join(f"{t:,.1f}" for t in run.repetition_ms))
    if metrics is not None:
        table.add_row("Formula engine", f"{metrics.fe_ms:,.1f} ms ({metrics.fe_pct * 100:.1f}%)")
        table.add_row("Storage engine", f"{metrics.se_ms:,.1f} ms ({metrics.se_pct * 100:.1f}%)")
        table.add_row("SE queries", str(metrics.se_query_count))
        table.add_row("SE CPU", f"{metrics.se_cpu_ms:,.1f} ms")
        table.add_row("Cache hits", str(metrics.cache_hits))
        table.add_row(
            "Parallelism",
            f"{metrics.parallelism:.2f}x" if metrics.parallelism is not None else "n/a",
        )
    console.print(Panel(table, title="Timings", border_style="cyan"))

    if run is not None and run.degraded:
        console.print("[yellow]Degraded run: no trace captured, metrics and trace findings unavailable.[/yellow]")


def display_findings(findings: list) -> None:
    if not findings:
        console.print("\n[green]No anti-patterns detected.[/green]")
        return

    table = Table(title="Findings", show_header=True, header_style="bold")
    table.add_column("Status", width=12)
    table.add_column("Rule", width=30)
    table.add_column("Measure", width=20)
    table.add_column("Evidence")

    for finding in findings:
        color = STATUS_COLORS.get(finding.status.value, "white")
        table.add_row(
            f"[{color}]{finding.status.value.upper()}[/{color}]",
            finding.rule_id,
            finding.measure or "-",
            finding.evidence[:80] + "..." if len(finding.evidence) > 80 else finding.evidence,
        )
    console.print(table)


def display_report(report: OptimizationReport) -> None:
    """Display an optimization report with rich formatting."""
    color = STATE_COLORS.get(report.state.value, "white")
    console.print(Panel(
        f"State: [bold {color}]{report.state.value.upper()}[/bold {color}]\n"
        f"Attempts: {len(report.attempts)} "
        f"(accepted {len(report.accepted_attempts)}, rejected {len(report.rejected_attempts)})\n"
        f"Improvement: {report.improvement_pct:.1f}%",
        title="DAX Optimization Result",
        border_style=color,
    ))
    display_metrics(report.baseline, report.baseline_metrics)
    display_findings(
        report.confirmed_findings + report.unconfirmed_findings + report.report_only_findings
    )

    if report.attempts:
        console.print()
        table = Table(title="Attempts", show_header=True, header_style="bold")
        table.add_column("#", justify="right")
        table.add_column("Rewrite")
        table.add_column("Candidate", justify="right")
        table.add_column("Improvement", justify="right")
        table.add_column("Outcome")
        for attempt in report.attempts:
            accepted = attempt.outcome.value == "accepted"
            outcome = "[green]ACCEPTED[/green]" if accepted else (
                "[red]REJECTED[/red] " + ", ".join(r.value for r in attempt.rejection_reasons)
            )
            table.add_row(
                str(attempt.sequence),
                attempt.description,
                "-" if attempt.candidate_run is None else f"{attempt.candidate_run.total_ms:,.1f} ms",
                f"{attempt.improvement_pct:.1f}%",
                outcome,
            )
        console.print(table)

    for warning in report.warnings:
        console.print(f"[yellow]Warning:[/yellow] {warning}")

    if report.accepted_attempts and report.final_definition is not None:
        console.print("\n[bold]Optimized query:[/bold]")
        console.print(Syntax(report.final_definition.render(), "sql", theme="monokai", word_wrap=True))


# =============================================================================
# COMMANDS
# =============================================================================

@click.group()
@click.version_option(version=__version__, prog_name="qt-dax-perf")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
def cli(verbose: bool):
    """QueryTorque DAX Performance - trace-driven DAX query optimization CLI."""
    level = "DEBUG" if verbose else get_settings().log_level
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@cli.command()
def instances():
    """List running Power BI Desktop instances.

    Requires Windows (instances are discovered from msmdsrv.port.txt files).
    """
    try:
        found = find_pbi_instances()
    except OSError as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)

    if not found:
        console.print("[yellow]No Power BI Desktop instances found.[/yellow]")
        console.print("[dim]Make sure Power BI Desktop is running with a model loaded.[/dim]")
        return

    console.print(f"\n[bold]Found {len(found)} Power BI Desktop instance(s):[/bold]\n")
    table = Table(show_header=True, header_style="bold")
    table.add_column("Port", justify="right")
    table.add_column("Workspace")
    table.add_column("Path")
    for inst in found:
        table.add_row(str(inst.port), inst.name, inst.workspace_path)
    console.print(table)


@cli.command()
@click.argument("query_file", type=click.Path(exists=True))
@click.option("--port", "-p", type=int, default=None, help="Power BI Desktop port")
@click.option("--repetitions", "-n", type=int, default=None, help="Cold-cache repetitions")
@click.option("--json", "output_json", is_flag=True, help="Output as JSON")
@click.option("--report", "report_path", type=click.Path(), help="Write a Markdown report")
def analyze(query_file: str, port: Optional[int], repetitions: Optional[int],
            output_json: bool, report_path: Optional[str]):
    """Measure a DAX query and classify its anti-patterns.

    Runs a cold-cache baseline, decomposes formula and storage engine time,
    and reports findings with their trace corroboration status.

    Examples:
        qt-dax-perf analyze query.dax
        qt-dax-perf analyze query.dax --port 54000 -n 5 --json
    """
    definition = read_query_file(query_file)
    settings = build_settings(baseline_repetitions=repetitions)
    target = resolve_target(port, settings)

    manager = SessionManager(lambda t: make_connection(t, settings))
    try:
        session = manager.connect(target)
        definition, cardinalities = load_model(session, definition)
        runner = BaselineRunner(settings, table_cardinalities=cardinalities)
        controller = OptimizationController(settings, runner=runner)
        run = runner.run_baseline(session, definition)
        findings, _ = controller.analyze(run)
    except QTDaxPerfError as e:
        _fail(e, output_json)
    finally:
        manager.close()

    report = OptimizationReport(
        state=ControllerState.BASELINED,
        baseline=run,
        baseline_metrics=controller.aggregator.aggregate(run),
        final_definition=definition,
        confirmed_findings=[f for f in findings if f.status == FindingStatus.CONFIRMED],
        unconfirmed_findings=[f for f in findings if f.status == FindingStatus.UNCONFIRMED],
        warnings=list(run.warnings),
    )
    _emit(report, output_json, report_path)


@cli.command()
@click.argument("query_file", type=click.Path(exists=True))
@click.option("--port", "-p", type=int, default=None, help="Power BI Desktop port")
@click.option("--repetitions", "-n", type=int, default=None, help="Cold-cache repetitions")
@click.option("--threshold", "-t", type=float, default=None,
              help="Minimum improvement to accept, as a fraction (default 0.10)")
@click.option("--continue", "continue_iteration", is_flag=True,
              help="Keep optimizing after an accepted rewrite")
@click.option("--json", "output_json", is_flag=True, help="Output as JSON")
@click.option("--output", "-o", type=click.Path(), help="Write the optimized query to a file")
@click.option("--report", "report_path", type=click.Path(), help="Write a Markdown report")
def optimize(query_file: str, port: Optional[int], repetitions: Optional[int],
             threshold: Optional[float], continue_iteration: bool, output_json: bool,
             output: Optional[str], report_path: Optional[str]):
    """Optimize a DAX query with verified rewrites.

    Every candidate is executed cold and compared with the baseline result;
    it is accepted only if it is faster by the threshold and returns the
    same result.

    Examples:
        qt-dax-perf optimize query.dax
        qt-dax-perf optimize query.dax --threshold 0.2 --continue -o optimized.dax
    """
    definition = read_query_file(query_file)
    settings = build_settings(baseline_repetitions=repetitions, acceptance_threshold=threshold)
    target = resolve_target(port, settings)

    if not output_json:
        console.print(f"\n[bold]Optimizing:[/bold] {query_file}")
        console.print(f"Target: {target}\n")

    manager = SessionManager(lambda t: make_connection(t, settings))
    try:
        session = manager.connect(target)
        definition, cardinalities = load_model(session, definition)
        controller = OptimizationController(
            settings,
            runner=BaselineRunner(settings, table_cardinalities=cardinalities),
            proposer=build_proposer(settings),
        )
        _, report = controller.optimize(session, definition, continue_iteration=continue_iteration)
    except QTDaxPerfError as e:
        _fail(e, output_json)
    finally:
        manager.close()

    if output and report.accepted_attempts:
        output_path = Path(output)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        output_path.write_text(report.final_definition.render() + "\n", encoding="utf-8")
        if not output_json:
            console.print(f"[green]Optimized query written to: {output_path}[/green]")

    _emit(report, output_json, report_path)


@cli.command("analyze-trace")
@click.argument("trace_file", type=click.Path(exists=True))
@click.option("--query", "-q", "query_file", type=click.Path(exists=True),
              help="Query the trace was captured for (enables structural findings)")
@click.option("--result-rows", type=int, default=None, help="Row count of the query result")
@click.option("--total-ms", type=float, default=None, help="Total query duration in ms")
@click.option("--json", "output_json", is_flag=True, help="Output as JSON")
def analyze_trace(trace_file: str, query_file: Optional[str], result_rows: Optional[int],
                  total_ms: Optional[float], output_json: bool):
    """Analyze an exported server-timings trace without a live engine.

    Examples:
        qt-dax-perf analyze-trace timings.json
        qt-dax-perf analyze-trace timings.json -q query.dax --result-rows 120
    """
    settings = get_settings()
    raw_events = read_trace_file(trace_file)
    definition = read_query_file(query_file) if query_file else None

    context = ParseContext.from_settings(settings, result_cardinality=result_rows)
    try:
        parsed = parse_trace(raw_events, context)
    except MalformedEventError as e:
        _fail(e, output_json)

    if total_ms is None:
        total_ms = parsed.engine_total_ms
    if total_ms is None:
        total_ms = max((e.end_ms for e in parsed.events), default=0.0)

    catalog = PatternCatalog(settings)
    events = catalog.annotate(parsed.events, context)
    metrics = MetricsAggregator().aggregate_events(events, total_ms)
    if definition is not None:
        findings = corroborate(catalog.classify(definition, events, context, metrics), events)
    else:
        findings = catalog.trace_findings(events, metrics=metrics)

    if output_json:
        console.print_json(json.dumps({
            "metrics": metrics.to_dict(),
            "findings": [f.to_dict() for f in findings],
            "scan_events": [e.to_dict() for e in events],
        }, default=str))
        return

    display_metrics(None, metrics)
    display_findings(findings)


def _fail(error: Exception, output_json: bool) -> None:
    if output_json:
        console.print_json(json.dumps({"status": "error", "error": str(error)}))
    else:
        console.print(f"[red]Error: {error}[/red]")
    sys.exit(1)


def _emit(report: OptimizationReport, output_json: bool, report_path: Optional[str]) -> None:
    if report_path:
        path = Path(report_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(render_markdown(report), encoding="utf-8")

    if output_json:
        console.print_json(json.dumps(report.to_dict(), default=str))
        return
    display_report(report)
    if report_path:
        console.print(f"[green]Report saved to: {report_path}[/green]")


def main():
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
