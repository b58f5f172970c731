"""Optimization report renderer.

Transforms an OptimizationReport into Markdown using the
optimization_report.md.j2 Jinja2 template.
"""

from pathlib import Path
from typing import Any, Optional

from jinja2 import Environment, FileSystemLoader

from ..schemas import ControllerState, OptimizationReport
from ..templates import TEMPLATE_DIR


def format_ms(value: Optional[float]) -> str:
    """Format a duration in milliseconds."""
    if value is None:
        return "-"
    return f"{value:,.1f} ms"


def format_pct(value: Optional[float]) -> str:
    if value is None:
        return "-"
    return f"{value:.1f}%"


class ReportRenderer:
    """Render optimization reports as Markdown."""

    template_name = "optimization_report.md.j2"

    def __init__(self, template_dir: Path = TEMPLATE_DIR):
        self.env = Environment(
            loader=FileSystemLoader(template_dir),
            autoescape=False,
            trim_blocks=True,
            lstrip_blocks=True,
            keep_trailing_newline=True,
        )
        self.env.filters['ms'] = format_ms
        self.env.filters['pct'] = format_pct

    def render(self, report: OptimizationReport) -> str:
        template = self.env.get_template(self.template_name)
        return template.render(**self._build_template_context(report))

    def render_to_file(self, report: OptimizationReport, output_path: Path) -> Path:
        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        output_path.write_text(self.render(report), encoding='utf-8')
        return output_path

    def _build_template_context(self, report: OptimizationReport) -> dict[str, Any]:
        data = report.to_dict()
        metrics = data.get('baseline_metrics')
        baseline = data.get('baseline')

        # Join per-scan parallelism onto the scan rows
        factors = {s['index']: s['factor'] for s in (metrics or {}).get('scan_parallelism', [])}
        scans = []
        for event in (baseline or {}).get('scan_events', []):
            if event['cache_hit']:
                continue
            scans.append({**event, 'factor': factors.get(event['index'])})

        return {
            'state': data['state'],
            'improvement_pct': data['improvement_pct'],
            'baseline': baseline,
            'metrics': metrics,
            'scans': scans,
            'finding_groups': [
                ("Confirmed Findings", data['confirmed_findings']),
                ("Unconfirmed Findings (manual review)", data['unconfirmed_findings']),
                ("Report-only Findings", data['report_only_findings']),
                ("Findings Without an Applicable Rewrite", data['skipped_findings']),
            ],
            'attempts': data['attempts'],
            'warnings': data['warnings'],
            'accepted': report.state == ControllerState.ACCEPTED and bool(report.accepted_attempts),
            'final_definition': data['final_definition'],
        }


def render_markdown(report: OptimizationReport) -> str:
    """Render ``report`` as a Markdown document."""
    return ReportRenderer().render(report)
