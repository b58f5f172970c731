"""Parse a DAX query into a QueryDefinition.

Splits the ``DEFINE`` block into MEASURE / FUNCTION entries (which rewrites
may change) and any other entries (VAR, TABLE, COLUMN) kept verbatim, and
keeps everything from the first top-level ``EVALUATE`` as the query body.
"""

import logging
import re
from typing import List, Tuple

from ..errors import DefinitionError
from ..schemas import MeasureDefinition, QueryDefinition
from .dax_parser import DAXLexer

logger = logging.getLogger(__name__)

_MEASURE_RE = re.compile(
    r"""^MEASURE\s+
        (?:'(?P<qtable>(?:''|[^'])*)'|(?P<table>[A-Za-z_][\w.]*))?
        \s*\[(?P<name>[^\]]+)\]
        \s*=\s*(?P<body>.*)$""",
    re.IGNORECASE | re.DOTALL | re.VERBOSE,
)

_FUNCTION_RE = re.compile(
    r"^FUNCTION\s+(?P<name>[A-Za-z_][\w.]*)\s*=\s*\((?P<params>[^)]*)\)\s*=>\s*(?P<body>.*)$",
    re.IGNORECASE | re.DOTALL,
)


def _entry_boundaries(code: str) -> List[Tuple[int, str]]:
    """Offsets of top-level entry keywords as (offset, KEYWORD)."""
    tokens = DAXLexer().tokenize(code)
    boundaries: List[Tuple[int, str]] = []
    depth = 0
    # A VAR belongs to the current body until its RETURN has been seen
    open_vars = 0
    body_started = False
    prev = None

    for token in tokens:
        if token.type in ('PAREN_OPEN', 'BRACE_OPEN'):
            depth += 1
        elif token.type in ('PAREN_CLOSE', 'BRACE_CLOSE'):
            depth = max(0, depth - 1)
        elif token.type == 'FUNC' and depth == 0:
            word = token.value.upper()
            if word == 'EVALUATE':
                boundaries.append((token.pos, word))
                break
            if word in ('MEASURE', 'FUNCTION', 'TABLE', 'COLUMN'):
                boundaries.append((token.pos, word))
                open_vars, body_started = 0, False
                prev = token
                continue
            if word == 'VAR':
                assigning = prev is not None and prev.type == 'OPERATOR' and prev.value.endswith('=')
                if open_vars or assigning:
                    open_vars += 1
                elif body_started or not boundaries:
                    # DEFINE-level VAR: a new entry with no RETURN of its own
                    boundaries.append((token.pos, word))
                    open_vars, body_started = 0, False
                else:
                    open_vars += 1
                prev = token
                continue
            if word == 'RETURN' and open_vars:
                open_vars = 0
        if prev is not None and prev.type == 'OPERATOR' and prev.value.endswith('='):
            body_started = True
        prev = token

    return boundaries


def parse_query(code: str) -> QueryDefinition:
    """Parse DAX query text into a QueryDefinition.

    Raises:
        DefinitionError: If the text has no top-level EVALUATE.
    """
    boundaries = _entry_boundaries(code)
    evaluate_at = next((pos for pos, word in boundaries if word == 'EVALUATE'), None)
    if evaluate_at is None:
        raise DefinitionError("Query has no top-level EVALUATE")

    measures: List[MeasureDefinition] = []
    preamble: List[str] = []
    entries = [b for b in boundaries if b[1] != 'EVALUATE']

    for i, (pos, word) in enumerate(entries):
        end = entries[i + 1][0] if i + 1 < len(entries) else evaluate_at
        text = code[pos:end].strip()
        if word == 'MEASURE':
            match = _MEASURE_RE.match(text)
            if not match:
                raise DefinitionError(f"Cannot parse measure definition: {text[:80]}")
            table = match.group('qtable')
            table = table.replace("''", "'") if table is not None else (match.group('table') or "")
            measures.append(MeasureDefinition(
                name=match.group('name').strip(),
                table=table,
                expression=match.group('body').strip(),
            ))
        elif word == 'FUNCTION':
            match = _FUNCTION_RE.match(text)
            if not match:
                raise DefinitionError(f"Cannot parse function definition: {text[:80]}")
            measures.append(MeasureDefinition(
                name=match.group('name'),
                expression=match.group('body').strip(),
                kind="function",
                parameters=match.group('params').strip(),
            ))
        else:
            preamble.append(text)

    logger.debug(
        "Parsed query: %d definitions, %d preamble entries", len(measures), len(preamble)
    )
    return QueryDefinition(
        evaluate=code[evaluate_at:].strip(),
        measures=tuple(measures),
        preamble=tuple(preamble),
    )
