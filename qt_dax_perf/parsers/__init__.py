"""Parsers for DAX expressions, DAX queries and storage-engine traces."""

from .dax_parser import (
    DAXLexer,
    DAXParser,
    DAXStructure,
    FunctionCall,
    Reference,
    Token,
    analyze_dax,
    normalize_dax,
)
from .query_parser import parse_query
from .trace_parser import (
    CALLBACK_MARKERS,
    PREDICATES,
    ParseContext,
    ParsedTrace,
    TraceEventParser,
    normalize_scan_text,
    parse_size_annotation,
    parse_trace,
)

__all__ = [
    "DAXLexer",
    "DAXParser",
    "DAXStructure",
    "FunctionCall",
    "Reference",
    "Token",
    "analyze_dax",
    "normalize_dax",
    "parse_query",
    "CALLBACK_MARKERS",
    "PREDICATES",
    "ParseContext",
    "ParsedTrace",
    "TraceEventParser",
    "normalize_scan_text",
    "parse_size_annotation",
    "parse_trace",
]
