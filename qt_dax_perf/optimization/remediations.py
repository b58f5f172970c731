"""
Rewrites that fix detected anti-patterns.

Each remediation is a pure function ``(QueryDefinition, Finding) ->
Optional[QueryDefinition]``. It only ever replaces a measure or function
body, and returns None when the rewrite cannot be applied without changing
what the expression means (for example when the site sits in a row or
modified filter context the rewrite would not preserve).
"""

import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from ..parsers.dax_parser import (
    AGGREGATING_ITERATORS,
    CONDITIONAL_FUNCTIONS,
    CONTEXT_MODIFIERS,
    ITERATOR_FUNCTIONS,
    DAXStructure,
    FunctionCall,
    analyze_dax,
    normalize_dax,
)
from ..schemas import Finding, QueryDefinition

logger = logging.getLogger(__name__)

Edit = Tuple[int, int, str]
Remediation = Callable[[QueryDefinition, Finding], Optional[QueryDefinition]]


@dataclass(frozen=True)
class RewriteProposal:
    """A candidate definition and what produced it."""
    remediation_ids: tuple
    findings: tuple
    candidate: QueryDefinition
    description: str = ""


# =============================================================================
# TEXT HELPERS
# =============================================================================

def apply_edits(code: str, edits: Sequence[Edit]) -> str:
    """Replace non-overlapping spans, applied back to front."""
    for start, end, text in sorted(edits, key=lambda e: e[0], reverse=True):
        code = code[:start] + text + code[end:]
    return code


def prepend_variables(expression: str, variables: Sequence[Tuple[str, str]]) -> str:
    """Declare ``variables`` ahead of the body, adding RETURN when needed."""
    body = expression.strip()
    declarations = "\n".join(f"VAR {name} =\n    {text}" for name, text in variables)
    tokens = analyze_dax(body).tokens
    if tokens and tokens[0].type == 'FUNC' and tokens[0].value.upper() == 'VAR':
        return f"{declarations}\n{body}"
    return f"{declarations}\nRETURN\n    {body}"


def unique_name(structure: DAXStructure, base: str, reserved: Sequence[str] = ()) -> str:
    taken = {v.lower() for v in list(structure.variable_names) + list(reserved)}
    n = 1
    while f"{base}{n}".lower() in taken:
        n += 1
    return f"{base}{n}"


def uses_variables(structure: DAXStructure, start: int, end: int) -> bool:
    """True when the span mentions a VAR declared in the same body."""
    names = {v.lower() for v in structure.variable_names}
    return any(
        t.type == 'FUNC' and t.value.lower() in names
        for t in structure.tokens if t.pos >= start and t.end <= end
    )


def _enclosing_calls(structure: DAXStructure, start: int, end: int) -> List[FunctionCall]:
    return [c for c in structure.calls if c.start < start and end <= c.end]


def _measure_refs(structure: DAXStructure, definition: QueryDefinition, start: int, end: int):
    for ref in structure.references_within(start, end):
        target = definition.get(ref.name)
        if target is None or target.kind != "measure":
            continue
        if ref.qualified and (not target.table or target.table.lower() != ref.table.lower()):
            continue
        yield ref


def _target(definition: QueryDefinition, finding: Finding):
    if not finding.measure:
        return None, None
    measure = definition.get(finding.measure)
    if measure is None or not measure.expression.strip():
        return None, None
    return measure, analyze_dax(measure.expression)


# =============================================================================
# REMEDIATIONS
# =============================================================================

def cache_measure_in_iterator(definition: QueryDefinition, finding: Finding) -> Optional[QueryDefinition]:
    """SUMX(T, ..[M]..) -> SUMX(ADDCOLUMNS(T, "@M", [M]), ..[@M]..)."""
    measure, structure = _target(definition, finding)
    if measure is None:
        return None
    code = structure.code

    for call in structure.calls:
        if call.name not in AGGREGATING_ITERATORS or call.arg_count < 2:
            continue
        arg_start, arg_end = call.args[1]
        refs = []
        for ref in _measure_refs(structure, definition, arg_start, arg_end):
            between = [c for c in _enclosing_calls(structure, ref.start, ref.end)
                       if c.start >= arg_start and c.end <= arg_end]
            # a nested iterator or context modifier would evaluate [M] in another context
            if any(c.name in ITERATOR_FUNCTIONS or c.name in CONTEXT_MODIFIERS for c in between):
                continue
            refs.append(ref)
        if not refs:
            continue

        names: List[str] = []
        for ref in refs:
            if ref.name not in names:
                names.append(ref.name)
        table_start, table_end = call.args[0]
        columns = ", ".join(f'"@{name}", [{name}]' for name in names)
        edits: List[Edit] = [(table_start, table_end, f"ADDCOLUMNS ( {code[table_start:table_end]}, {columns} )")]
        edits += [(ref.start, ref.end, f"[@{ref.name}]") for ref in refs]

        logger.debug("Caching %s inside %s of '%s'", names, call.name, measure.name)
        return definition.with_expression(measure.name, apply_edits(code, edits))
    return None


def eager_branch_variables(definition: QueryDefinition, finding: Finding) -> Optional[QueryDefinition]:
    """Evaluate whole-expression branches of IF/SWITCH into VARs up front."""
    measure, structure = _target(definition, finding)
    if measure is None:
        return None
    code = structure.code

    for call in structure.calls:
        if call.name not in CONDITIONAL_FUNCTIONS:
            continue
        if call.in_row_context() or call.in_modified_context():
            continue
        if call.name in ("IF", "IF.EAGER"):
            branches = [i for i in (1, 2) if i < call.arg_count]
        else:
            branches = list(range(2, call.arg_count, 2))
            if call.arg_count > 2 and call.arg_count % 2 == 0:
                branches.append(call.arg_count - 1)

        heavy = []
        for i in branches:
            start, end = call.args[i]
            if start == end or uses_variables(structure, start, end):
                continue
            has_refs = any(True for _ in _measure_refs(structure, definition, start, end))
            has_calls = any(c.name in CONTEXT_MODIFIERS or c.name in AGGREGATING_ITERATORS
                            for c in structure.calls_within(start, end))
            if has_refs or has_calls:
                heavy.append(i)
        if len(heavy) < 2:
            continue

        variables, edits = [], []
        for i in heavy:
            start, end = call.args[i]
            name = unique_name(structure, "__Branch", [n for n, _ in variables])
            variables.append((name, code[start:end]))
            edits.append((start, end, name))

        logger.debug("Hoisting %d branches of %s in '%s'", len(variables), call.name, measure.name)
        rewritten = prepend_variables(apply_edits(code, edits), variables)
        return definition.with_expression(measure.name, rewritten)
    return None


def native_division(definition: QueryDefinition, finding: Finding) -> Optional[QueryDefinition]:
    """DIVIDE(a, b[, alt]) inside an iterator -> IF(b <> 0, a / b[, alt])."""
    measure, structure = _target(definition, finding)
    if measure is None:
        return None
    code = structure.code

    edits: List[Edit] = []
    for call in structure.calls_named("DIVIDE"):
        if not call.in_row_context() or call.arg_count not in (2, 3):
            continue
        if any(call.start >= s and call.end <= e for s, e, _ in edits):
            continue
        numerator = call.arg_text(code, 0)
        denominator = call.arg_text(code, 1)
        replacement = f"IF ( ( {denominator} ) <> 0, ( {numerator} ) / ( {denominator} )"
        if call.arg_count == 3:
            replacement += f", {call.arg_text(code, 2)}"
        edits.append((call.start, call.end, replacement + " )"))

    if not edits:
        return None
    logger.debug("Replacing %d DIVIDE call(s) in '%s'", len(edits), measure.name)
    return definition.with_expression(measure.name, apply_edits(code, edits))


def hoist_duplicate_filter(definition: QueryDefinition, finding: Finding) -> Optional[QueryDefinition]:
    """Compute a repeated FILTER/CALCULATETABLE once into a VAR."""
    measure, structure = _target(definition, finding)
    if measure is None:
        return None
    code = structure.code

    groups: Dict[str, List[FunctionCall]] = {}
    for call in structure.calls_named("FILTER", "CALCULATETABLE"):
        groups.setdefault(normalize_dax(call.text(code)), []).append(call)

    for calls in sorted(groups.values(), key=lambda g: g[0].start):
        if len(calls) < 2:
            continue
        if any(c.in_row_context() or c.in_modified_context() for c in calls):
            continue
        if uses_variables(structure, calls[0].start, calls[0].end):
            continue
        name = unique_name(structure, "__Filter")
        edits = [(c.start, c.end, name) for c in calls]
        logger.debug("Hoisting %d copies of %s in '%s'", len(calls), calls[0].name, measure.name)
        rewritten = prepend_variables(apply_edits(code, edits), [(name, calls[0].text(code))])
        return definition.with_expression(measure.name, rewritten)
    return None


REMEDIATIONS: Dict[str, Remediation] = {
    "cache_measure_in_iterator": cache_measure_in_iterator,
    "eager_branch_variables": eager_branch_variables,
    "native_division": native_division,
    "hoist_duplicate_filter": hoist_duplicate_filter,
}

DESCRIPTIONS = {
    "cache_measure_in_iterator": "Materialized per-row measure values with ADDCOLUMNS",
    "eager_branch_variables": "Evaluated conditional branches into variables",
    "native_division": "Replaced DIVIDE with a guarded / operator inside the iterator",
    "hoist_duplicate_filter": "Computed the repeated filter once into a variable",
}


# =============================================================================
# PROPOSERS
# =============================================================================

class RuleBasedProposer:
    """Maps a finding to its registered remediation."""

    name = "rules"

    def __init__(self, remediations: Optional[Dict[str, Remediation]] = None):
        self.remediations = remediations if remediations is not None else REMEDIATIONS

    def propose(self, definition: QueryDefinition, finding: Finding) -> Optional[RewriteProposal]:
        remediation = self.remediations.get(finding.remediation_id or "")
        if remediation is None:
            return None
        candidate = remediation(definition, finding)
        if candidate is None or not definition.changed_measures(candidate):
            logger.info("Remediation %s does not apply to '%s'", finding.remediation_id, finding.measure)
            return None
        return RewriteProposal(
            remediation_ids=(finding.remediation_id,),
            findings=(finding,),
            candidate=candidate,
            description=f"{DESCRIPTIONS.get(finding.remediation_id, finding.remediation_id)} in '{finding.measure}'",
        )


class ChainedProposer:
    """Tries proposers in order; the first proposal wins."""

    name = "chain"

    def __init__(self, proposers: Sequence):
        self.proposers = list(proposers)

    def propose(self, definition: QueryDefinition, finding: Finding) -> Optional[RewriteProposal]:
        for proposer in self.proposers:
            proposal = proposer.propose(definition, finding)
            if proposal is not None:
                return proposal
        return None
