"""Dependency resolution, metrics and anti-pattern classification."""

from .measure_dependencies import (
    DefinitionResolver,
    DependencyCycle,
    MeasureNode,
    resolve_query_definition,
)
from .metrics import MetricsAggregator, interval_union, low_parallelism_scans
from .pattern_catalog import (
    STRUCTURAL_RULES,
    TRACE_RULES,
    PatternCatalog,
    corroborate,
    normalize_scan,
    scan_shape,
    where_template,
)

__all__ = [
    "DefinitionResolver",
    "DependencyCycle",
    "MeasureNode",
    "resolve_query_definition",
    "MetricsAggregator",
    "interval_union",
    "low_parallelism_scans",
    "STRUCTURAL_RULES",
    "TRACE_RULES",
    "PatternCatalog",
    "corroborate",
    "normalize_scan",
    "scan_shape",
    "where_template",
]
