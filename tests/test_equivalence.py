"""Equivalence checker tests."""

import math
from decimal import Decimal

import pytest

from qt_dax_perf.schemas import ResultSet
from qt_dax_perf.validation.equivalence import EquivalenceChecker

from conftest import CATEGORY_COLUMNS, CATEGORY_ROWS


@pytest.fixture
def checker():
    return EquivalenceChecker()


def result(rows, columns=CATEGORY_COLUMNS):
    return ResultSet(columns=tuple(columns), rows=tuple(tuple(r) for r in rows))


class TestEquivalenceChecker:
    """Tests for result-set comparison."""

    def test_identical_results(self, checker):
        verdict = checker.compare(result(CATEGORY_ROWS), result(CATEGORY_ROWS))
        assert verdict.equal
        assert verdict.diff is None

    def test_empty_results_are_equal(self, checker):
        assert checker.compare(ResultSet(), ResultSet()).equal
        assert checker.compare(result([]), result([]), ordered=True).equal

    def test_order_ignored_without_order_by(self, checker):
        shuffled = list(reversed(CATEGORY_ROWS))
        assert checker.compare(result(CATEGORY_ROWS), result(shuffled)).equal

    def test_order_enforced_with_order_by(self, checker):
        shuffled = list(reversed(CATEGORY_ROWS))
        verdict = checker.compare(result(CATEGORY_ROWS), result(shuffled), ordered=True)
        assert not verdict.equal
        assert verdict.diff.kind == "order"

    def test_column_mismatch_short_circuits(self, checker):
        verdict = checker.compare(
            result(CATEGORY_ROWS), result(CATEGORY_ROWS, columns=("Product[Category]", "[Margin %]")),
        )
        assert not verdict.equal
        assert verdict.diff.kind == "columns"

    def test_column_order_matters(self, checker):
        swapped = result([(b, a) for a, b in CATEGORY_ROWS], columns=tuple(reversed(CATEGORY_COLUMNS)))
        assert checker.compare(result(CATEGORY_ROWS), swapped).diff.kind == "columns"

    def test_row_count_mismatch(self, checker):
        verdict = checker.compare(result(CATEGORY_ROWS), result(CATEGORY_ROWS[:2]))
        assert verdict.diff.kind == "row_count"
        assert "3" in verdict.diff.message and "2" in verdict.diff.message

    def test_value_mismatch_sample(self, checker):
        changed = [CATEGORY_ROWS[0], ("Clothing", 0.31), CATEGORY_ROWS[2]]
        verdict = checker.compare(result(CATEGORY_ROWS), result(changed))
        assert verdict.diff.kind == "values"
        assert verdict.diff.message == "1 cell(s) differ"
        mismatch = verdict.diff.sample_mismatches[0]
        assert mismatch["column"] == "[Margin]"
        assert mismatch["baseline"] == "0.300000"
        assert mismatch["candidate"] == "0.310000"

    def test_sample_limit(self):
        checker = EquivalenceChecker(sample_limit=2)
        base = result([(str(i), float(i)) for i in range(10)])
        other = result([(str(i), float(i) + 1) for i in range(10)])
        verdict = checker.compare(base, other)
        assert verdict.diff.message == "10 cell(s) differ"
        assert len(verdict.diff.sample_mismatches) == 2

    def test_relative_tolerance(self, checker):
        base = result([("Bikes", 1_000_000.0)])
        assert checker.compare(base, result([("Bikes", 1_000_000.0000001)])).equal
        assert not checker.compare(base, result([("Bikes", 1_000_000.01)])).equal

    def test_tolerance_from_settings(self, settings):
        checker = EquivalenceChecker.from_settings(settings)
        assert checker.relative_tolerance == settings.relative_tolerance
        assert checker.sample_limit == settings.sample_mismatch_limit

    def test_blank_only_equals_blank(self, checker):
        assert checker.values_equal(None, None)
        assert not checker.values_equal(None, 0)
        assert not checker.values_equal("", None)

    def test_nan_equals_nan(self, checker):
        assert checker.values_equal(math.nan, float("nan"))
        assert not checker.values_equal(math.nan, 0.0)
        assert checker.compare(result([("a", math.nan)]), result([("a", math.nan)])).equal

    def test_infinities(self, checker):
        assert checker.values_equal(math.inf, math.inf)
        assert not checker.values_equal(math.inf, -math.inf)

    def test_numeric_types_compare_by_value(self, checker):
        assert checker.values_equal(1, 1.0)
        assert checker.values_equal(Decimal("0.1"), 0.1)
        assert not checker.values_equal(True, "True")

    def test_strings_compare_exactly(self, checker):
        assert not checker.values_equal("Bikes", "bikes")

    def test_mixed_types_sort_without_error(self, checker):
        rows = [("a", None), ("b", 1.5), ("c", "text"), ("d", True)]
        assert checker.compare(result(rows), result(list(reversed(rows)))).equal

    def test_near_equal_floats_pair_up_when_sorting(self, checker):
        base = result([("x", 0.1 + 0.2), ("x", 0.5)])
        other = result([("x", 0.5), ("x", 0.3)])
        assert checker.compare(base, other).equal

    def test_drift_across_a_rounding_boundary_pairs_rows(self, checker):
        columns = ("v", "k")
        base = result([(1.00000000049, "a"), (1.00000000049, "b")], columns=columns)
        other = result([(1.00000000051, "a"), (1.00000000049, "b")], columns=columns)
        assert checker.values_equal(1.00000000049, 1.00000000051)
        assert checker.compare(base, other).equal

    def test_numeric_rows_matched_within_tolerance(self, checker):
        columns = ("a", "b")
        base = result([(1.0000000004, 9), (1.0000000006, 1)], columns=columns)
        other = result([(1.0000000006, 9), (1.0000000004, 1)], columns=columns)
        assert checker.compare(base, other).equal
        assert not checker.compare(base, result([(1.0, 9), (1.0, 2)], columns=columns)).equal

    def test_reflexive(self, checker):
        for rows in ([], CATEGORY_ROWS, [(None, math.nan)]):
            res = result(rows)
            assert checker.compare(res, res).equal
            assert checker.compare(res, res, ordered=True).equal
