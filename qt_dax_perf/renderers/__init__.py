"""Report rendering."""

from .report_renderer import ReportRenderer, format_ms, format_pct, render_markdown

__all__ = [
    "ReportRenderer",
    "format_ms",
    "format_pct",
    "render_markdown",
]
