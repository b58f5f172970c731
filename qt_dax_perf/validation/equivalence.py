"""Result-set equivalence for optimized DAX queries.

Compares a candidate's materialized result with the baseline's: same
columns (by name and position), same row count, and the same cell values
under a relative floating-point tolerance. Row order only matters when the
query asked for it with ORDER BY.

Usage:
    checker = EquivalenceChecker(relative_tolerance=1e-9)
    verdict = checker.compare(baseline.result, candidate.result, ordered=False)
    if not verdict.equal:
        print(verdict.diff.message)
"""

import math
from collections import defaultdict
from decimal import Decimal
from typing import Any, Dict, List, Sequence, Tuple

from ..schemas import EquivalenceVerdict, ResultDiff, ResultSet


class EquivalenceChecker:
    """Decides whether two result sets are semantically identical."""

    def __init__(
        self,
        relative_tolerance: float = 1e-9,
        absolute_tolerance: float = 1e-12,
        sample_limit: int = 5,
    ):
        """Initialize the checker.

        Args:
            relative_tolerance: Allowed difference as a fraction of the larger magnitude
            absolute_tolerance: Floor for values near zero, where a relative bound vanishes
            sample_limit: Max mismatches to include in the diff
        """
        self.relative_tolerance = relative_tolerance
        self.absolute_tolerance = absolute_tolerance
        self.sample_limit = sample_limit

    @classmethod
    def from_settings(cls, settings) -> "EquivalenceChecker":
        return cls(
            relative_tolerance=settings.relative_tolerance,
            absolute_tolerance=settings.absolute_tolerance,
            sample_limit=settings.sample_mismatch_limit,
        )

    def compare(self, baseline: ResultSet, candidate: ResultSet, ordered: bool = False) -> EquivalenceVerdict:
        """Compare two results; column or row-count mismatches short-circuit."""
        if tuple(baseline.columns) != tuple(candidate.columns):
            return EquivalenceVerdict(False, ResultDiff(
                kind="columns",
                message=f"Column mismatch: baseline={list(baseline.columns)}, candidate={list(candidate.columns)}",
            ))
        if baseline.row_count != candidate.row_count:
            return EquivalenceVerdict(False, ResultDiff(
                kind="row_count",
                message=f"Row count mismatch: baseline={baseline.row_count}, candidate={candidate.row_count}",
            ))

        if ordered:
            mismatches = self._mismatches(baseline.columns, baseline.rows, candidate.rows)
            if not mismatches:
                return EquivalenceVerdict(True)
            if not self._unordered_mismatches(baseline.columns, baseline.rows, candidate.rows):
                return EquivalenceVerdict(False, ResultDiff(
                    kind="order",
                    message="Same rows in a different order, but the query requested an explicit order",
                    sample_mismatches=tuple(mismatches[:self.sample_limit]),
                ))
        else:
            mismatches = self._unordered_mismatches(baseline.columns, baseline.rows, candidate.rows)
            if not mismatches:
                return EquivalenceVerdict(True)

        return EquivalenceVerdict(False, ResultDiff(
            kind="values",
            message=f"{len(mismatches)} cell(s) differ",
            sample_mismatches=tuple(mismatches[:self.sample_limit]),
        ))

    def _mismatches(self, columns: Sequence[str], left: Sequence[tuple], right: Sequence[tuple]) -> List[dict]:
        found = []
        for i, (a_row, b_row) in enumerate(zip(left, right)):
            for col, a, b in zip(columns, a_row, b_row):
                if not self.values_equal(a, b):
                    found.append({
                        "row": i,
                        "column": col,
                        "baseline": self._format_value(a),
                        "candidate": self._format_value(b),
                    })
        return found

    def _unordered_mismatches(self, columns: Sequence[str], left: Sequence[tuple],
                              right: Sequence[tuple]) -> List[dict]:
        """Pair rows regardless of order.

        Rows are grouped by their non-numeric cells, so a number drifting
        within tolerance never moves a row into another group. Inside a group
        rows pair up positionally after sorting, and the rows that fail to
        pair that way are matched against each other by tolerant equality.
        """
        groups: Dict[tuple, Tuple[List[tuple], List[tuple]]] = defaultdict(lambda: ([], []))
        for row in left:
            groups[self._group_key(row)][0].append(row)
        for row in right:
            groups[self._group_key(row)][1].append(row)

        unmatched_left: List[tuple] = []
        unmatched_right: List[tuple] = []
        for key in sorted(groups):
            a_rows, b_rows = (self._sort_rows(rows) for rows in groups[key])
            pending_a = a_rows[len(b_rows):]
            pending_b = b_rows[len(a_rows):]
            for a, b in zip(a_rows, b_rows):
                if not self._rows_equal(a, b):
                    pending_a.append(a)
                    pending_b.append(b)
            for a in pending_a:
                for j, b in enumerate(pending_b):
                    if self._rows_equal(a, b):
                        del pending_b[j]
                        break
                else:
                    unmatched_left.append(a)
            unmatched_right.extend(pending_b)

        return self._mismatches(columns, unmatched_left, unmatched_right)

    def _rows_equal(self, a_row: tuple, b_row: tuple) -> bool:
        return all(self.values_equal(a, b) for a, b in zip(a_row, b_row))

    def _group_key(self, row: tuple) -> tuple:
        return tuple(
            (2, 0.0) if self._is_number(v) else self._sortable_value(v)
            for v in row
        )

    @staticmethod
    def _is_number(val: Any) -> bool:
        return isinstance(val, (int, float, Decimal)) and not isinstance(val, bool)

    def _sort_rows(self, rows: Sequence[tuple]) -> List[tuple]:
        """Deterministic order by the full row tuple."""
        return sorted(rows, key=lambda row: tuple(self._sortable_value(v) for v in row))

    def _sortable_value(self, val: Any) -> tuple:
        """Normalize values into sortable tuples; each rank holds one type."""
        if val is None:
            return (0, "")
        if isinstance(val, bool):
            return (1, int(val))
        if isinstance(val, (int, float, Decimal)):
            number = float(val)
            if math.isnan(number):
                return (3, "nan")
            if math.isinf(number):
                return (3, "inf" if number > 0 else "-inf")
            return (2, number)
        if isinstance(val, str):
            return (4, val)
        return (5, str(val))

    def values_equal(self, a: Any, b: Any) -> bool:
        """Type-aware cell comparison.

        BLANK only equals BLANK; numbers (int, float, Decimal) compare with
        the relative tolerance; everything else compares exactly.
        """
        if a is None and b is None:
            return True
        if a is None or b is None:
            return False
        if isinstance(a, bool) or isinstance(b, bool):
            return a == b
        if isinstance(a, (int, float, Decimal)) and isinstance(b, (int, float, Decimal)):
            return self._float_equal(float(a), float(b))
        if type(a) == type(b):
            return a == b
        return str(a) == str(b)

    def _float_equal(self, a: float, b: float) -> bool:
        if math.isnan(a) and math.isnan(b):
            return True
        if math.isnan(a) or math.isnan(b):
            return False
        if math.isinf(a) or math.isinf(b):
            return a == b
        return math.isclose(a, b, rel_tol=self.relative_tolerance, abs_tol=self.absolute_tolerance)

    def _format_value(self, val: Any) -> str:
        """Format a value for display in the mismatch sample."""
        if val is None:
            return "BLANK"
        if isinstance(val, float):
            if math.isnan(val):
                return "NaN"
            return f"{val:.6f}"
        if isinstance(val, str) and len(val) > 50:
            return val[:47] + "..."
        return str(val)
