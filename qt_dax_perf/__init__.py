"""QueryTorque DAX Performance - trace-driven DAX query optimization.

This package measures and optimizes DAX queries against a live engine:
- Server-timing trace parsing and FE/SE decomposition
- Anti-pattern classification corroborated by trace evidence
- Verified rewrite loop (performance threshold plus result equivalence)
- Power BI Desktop connection (Windows only)
- Markdown report generation
"""

__version__ = "0.1.0"

from .analyzers.pattern_catalog import PatternCatalog
from .optimization.baseline_runner import BaselineRunner
from .optimization.controller import OptimizationController
from .validation.equivalence import EquivalenceChecker

__all__ = [
    "PatternCatalog",
    "BaselineRunner",
    "OptimizationController",
    "EquivalenceChecker",
]
