"""
Measure Dependency Resolver
===========================
Closes a query's reference graph over the measures and functions it
(transitively) references, so that a QueryDefinition is self-contained:
every bracket reference resolves to an included definition or to a base
column, and no definitions reference each other in a cycle.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Set, Union

from ..errors import DanglingReferenceError, ReferenceCycleError
from ..parsers.dax_parser import analyze_dax
from ..schemas import MeasureDefinition, QueryDefinition

logger = logging.getLogger(__name__)

ModelEntry = Union[MeasureDefinition, Mapping]


# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass
class MeasureNode:
    """Node in the dependency graph representing a measure or function."""
    name: str
    kind: str
    depends_on: Set[str] = field(default_factory=set)   # keys this one references
    depended_by: Set[str] = field(default_factory=set)  # keys that reference this one
    depth: int = 0  # longest path to a leaf (0 = base measure)


@dataclass
class DependencyCycle:
    """A detected circular dependency."""
    measures: List[str]
    cycle_path: str = ""

    def __post_init__(self):
        # A -> B -> C -> A
        self.cycle_path = " -> ".join(self.measures + [self.measures[0]])


def _to_definition(entry: ModelEntry) -> MeasureDefinition:
    if isinstance(entry, MeasureDefinition):
        return entry
    return MeasureDefinition(
        name=entry['name'],
        expression=entry.get('expression', '') or '',
        table=entry.get('table', '') or '',
        kind=entry.get('kind', 'measure') or 'measure',
        parameters=entry.get('parameters', '') or '',
    )


# =============================================================================
# RESOLVER
# =============================================================================

class DefinitionResolver:
    """
    Resolves a query's definitions to a fixed point.

    Usage:
        resolver = DefinitionResolver(model_measures, known_columns)
        closed = resolver.resolve(parse_query(text))

    Args:
        model_measures: Measures/functions available in the model, as
            MeasureDefinition values or dicts with name/table/expression.
        known_columns: Base columns as ``Table[Column]`` strings or bare
            column names. When omitted, every reference that is not a
            measure is taken to be a base column (qualified or, inside a
            row context, unqualified).
    """

    def __init__(
        self,
        model_measures: Sequence[ModelEntry] = (),
        known_columns: Optional[Iterable[str]] = None,
    ):
        self.model: Dict[str, MeasureDefinition] = {}
        for entry in model_measures:
            definition = _to_definition(entry)
            self.model[definition.key] = definition

        self.known_columns: Optional[Set[str]] = None
        self.known_column_names: Set[str] = set()
        if known_columns is not None:
            self.known_columns = set()
            for column in known_columns:
                text = column.strip().lower()
                self.known_columns.add(text)
                name = text[text.rfind('[') + 1:].rstrip(']') if '[' in text else text
                self.known_column_names.add(name)

    def resolve(self, definition: QueryDefinition) -> QueryDefinition:
        """Return a definition closed over every transitively referenced measure.

        Raises:
            DanglingReferenceError: A reference resolves to nothing.
            ReferenceCycleError: Definitions reference each other in a cycle.
        """
        available: Dict[str, MeasureDefinition] = dict(self.model)
        for measure in definition.measures:
            available[measure.key] = measure  # query-local definitions win

        included: Dict[str, MeasureDefinition] = {m.key: m for m in definition.measures}
        pulled: List[MeasureDefinition] = []

        roots = [("EVALUATE", definition.evaluate)] + [("DEFINE", p) for p in definition.preamble]
        worklist = [(source, text) for source, text in roots]
        worklist += [(m.name, m.expression) for m in definition.measures]

        while worklist:
            source, text = worklist.pop(0)
            for key in self._dependencies(source, text, available):
                if key in included:
                    continue
                target = available[key]
                included[key] = target
                pulled.append(target)
                worklist.append((target.name, target.expression))
                logger.debug("Pulled %s '%s' into the definition (via %s)", target.kind, target.name, source)

        resolved = QueryDefinition(
            evaluate=definition.evaluate,
            measures=tuple(definition.measures) + tuple(pulled),
            preamble=definition.preamble,
        )
        nodes = self.build_graph(resolved)
        cycles = self._detect_cycles(nodes)
        if cycles:
            cycle = cycles[0]
            raise ReferenceCycleError(
                f"Circular reference: {cycle.cycle_path}", cycle=tuple(cycle.measures)
            )
        return resolved

    def build_graph(self, definition: QueryDefinition) -> Dict[str, MeasureNode]:
        """Dependency graph over the definitions included in ``definition``."""
        available = {m.key: m for m in definition.measures}
        nodes = {m.key: MeasureNode(name=m.name, kind=m.kind) for m in definition.measures}
        for measure in definition.measures:
            for key in self._dependencies(measure.name, measure.expression, available):
                nodes[measure.key].depends_on.add(key)
                nodes[key].depended_by.add(measure.key)
        self._calculate_depths(nodes)
        return nodes

    def _dependencies(
        self, source: str, text: str, available: Mapping[str, MeasureDefinition]
    ) -> List[str]:
        """Keys of definitions referenced by ``text``, in order of appearance."""
        structure = analyze_dax(text)
        local_columns = {s.lower() for s in structure.string_literals}
        keys: List[str] = []

        for ref in structure.references:
            key = ref.name.lower()
            target = available.get(key)
            if target is not None and target.kind == 'measure':
                if ref.table is None or not target.table or ref.table.lower() == target.table.lower():
                    keys.append(key)
                    continue
            if ref.qualified:
                qualified = f"{ref.table}[{ref.name}]".lower()
                if self.known_columns is None or qualified in self.known_columns \
                        or f"'{ref.table.lower()}'[{key}]" in self.known_columns:
                    continue
            elif self.known_columns is None or key in local_columns \
                    or key in self.known_column_names:
                continue
            raise DanglingReferenceError(
                f"'{source}' references [{ref.name}] which is neither a definition nor a column",
                source=source,
                reference=f"{ref.table}[{ref.name}]" if ref.qualified else f"[{ref.name}]",
            )

        for call in structure.calls:
            key = call.name.lower()
            target = available.get(key)
            if target is not None and target.kind == 'function':
                keys.append(key)

        seen: Set[str] = set()
        return [k for k in keys if not (k in seen or seen.add(k))]

    def _detect_cycles(self, nodes: Dict[str, MeasureNode]) -> List[DependencyCycle]:
        """Detect circular dependencies with a depth-first search."""
        cycles = []
        visited = set()
        rec_stack = set()
        path = []

        def dfs(node_key: str):
            visited.add(node_key)
            rec_stack.add(node_key)
            path.append(node_key)

            for dep_key in sorted(nodes[node_key].depends_on):
                if dep_key not in visited:
                    dfs(dep_key)
                elif dep_key in rec_stack:
                    cycle_start = path.index(dep_key)
                    cycles.append(DependencyCycle(
                        measures=[nodes[k].name for k in path[cycle_start:]]
                    ))

            path.pop()
            rec_stack.remove(node_key)

        for key in nodes:
            if key not in visited:
                dfs(key)

        return cycles

    def _calculate_depths(self, nodes: Dict[str, MeasureNode]) -> None:
        """Depth of each node (longest path to a leaf), memoized."""
        memo: Dict[str, int] = {}

        def get_depth(key: str, visiting: Set[str]) -> int:
            if key in memo:
                return memo[key]
            if key in visiting:
                return 0
            node = nodes[key]
            if not node.depends_on:
                memo[key] = 0
                return 0
            visiting.add(key)
            depth = 1 + max(get_depth(dep, visiting) for dep in node.depends_on)
            visiting.remove(key)
            memo[key] = depth
            return depth

        for key, node in nodes.items():
            node.depth = get_depth(key, set())


def resolve_query_definition(
    definition: QueryDefinition,
    model_measures: Sequence[ModelEntry] = (),
    known_columns: Optional[Iterable[str]] = None,
) -> QueryDefinition:
    """Convenience wrapper around DefinitionResolver.resolve."""
    return DefinitionResolver(model_measures, known_columns).resolve(definition)
