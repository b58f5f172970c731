"""Optimization controller tests: the propose/verify loop end to end."""

from dataclasses import replace

import pytest

from qt_dax_perf.connections import CancellationToken
from qt_dax_perf.errors import EngineConnectionError, InvalidQueryError
from qt_dax_perf.optimization import (
    ChainedProposer,
    DSPyRewriteProposer,
    OptimizationController,
    RuleBasedProposer,
    improvement_ratio,
    priority_key,
)
from qt_dax_perf.optimization.remediations import RewriteProposal
from qt_dax_perf.parsers import parse_query
from qt_dax_perf.schemas import (
    AttemptOutcome,
    ControllerState,
    Finding,
    FindingStatus,
    Pattern,
    RejectionReason,
    RemediationTier,
)
from qt_dax_perf.validation.equivalence import EquivalenceChecker

from conftest import (
    CALLBACK_SCAN,
    CATEGORY_COLUMNS,
    CATEGORY_ROWS,
    PLAIN_SCAN,
    execution,
    make_trace,
    scan_event,
)

# native_division turns DIVIDE ( a, b ) into IF ( ( b ) <> 0, ... )
CANDIDATE_MARKER = "<> 0"
BASELINE_MARKER = "DIVIDE"


def baseline_response(trace):
    return execution(CATEGORY_COLUMNS, CATEGORY_ROWS, trace=trace)


def candidate_response(total_ms, rows=CATEGORY_ROWS):
    return execution(CATEGORY_COLUMNS, rows, trace=make_trace(total_ms, scan_event(PLAIN_SCAN, 100, start=0)))


def script(connection, callback_trace, candidate):
    connection.on(CANDIDATE_MARKER, candidate)
    connection.on(BASELINE_MARKER, baseline_response(callback_trace))


class SpyChecker(EquivalenceChecker):
    def __init__(self):
        super().__init__()
        self.calls = 0

    def compare(self, baseline, candidate, ordered=False):
        self.calls += 1
        return super().compare(baseline, candidate, ordered)


@pytest.mark.integration
class TestOptimizationScenarios:
    """End-to-end sessions against a scripted engine."""

    def test_faster_equivalent_candidate_accepted(self, settings, session, connection,
                                                  division_definition, callback_trace):
        script(connection, callback_trace, candidate_response(850))
        session, report = OptimizationController(settings).optimize(session, division_definition)

        assert report.state == ControllerState.ACCEPTED
        assert len(report.attempts) == 1
        attempt = report.attempts[0]
        assert attempt.outcome == AttemptOutcome.ACCEPTED
        assert attempt.remediation_ids == ("native_division",)
        assert attempt.improvement_ratio == pytest.approx(0.15)
        assert attempt.verdict.equal
        assert report.final_definition == attempt.candidate
        assert "DIVIDE" not in report.final_definition.get("Margin %").expression
        assert report.improvement_pct == pytest.approx(15.0)
        assert [f.rule_id for f in report.confirmed_findings] == ["PROTECTED_DIVISION_IN_ITERATOR"]
        assert session.attempts == tuple(report.attempts)

    def test_insufficient_improvement_rejected(self, settings, session, connection,
                                               division_definition, callback_trace):
        script(connection, callback_trace, candidate_response(950))
        _, report = OptimizationController(settings).optimize(session, division_definition)

        assert report.state == ControllerState.EXHAUSTED
        attempt = report.attempts[0]
        assert attempt.outcome == AttemptOutcome.REJECTED
        assert attempt.rejection_reasons == (RejectionReason.PERFORMANCE_INSUFFICIENT,)
        assert attempt.verdict.equal
        assert report.final_definition == division_definition
        assert report.improvement_pct == 0.0

    def test_fast_but_different_candidate_rejected(self, settings, session, connection,
                                                   division_definition, callback_trace):
        wrong = (CATEGORY_ROWS[0], ("Clothing", 0.31), CATEGORY_ROWS[2])
        script(connection, callback_trace, candidate_response(10, rows=wrong))
        _, report = OptimizationController(settings).optimize(session, division_definition)

        attempt = report.attempts[0]
        assert attempt.improvement_ratio == pytest.approx(0.99)
        assert attempt.rejection_reasons == (RejectionReason.SEMANTICALLY_DIFFERENT,)
        assert attempt.verdict.diff.kind == "values"
        assert report.state == ControllerState.EXHAUSTED

    def test_no_actionable_findings(self, settings, session, connection, division_definition, plain_trace):
        connection.on(BASELINE_MARKER, baseline_response(plain_trace))
        _, report = OptimizationController(settings).optimize(session, division_definition)

        assert report.state == ControllerState.EXHAUSTED
        assert report.attempts == []
        assert [f.status for f in report.unconfirmed_findings] == [FindingStatus.UNCONFIRMED]
        assert connection.calls.count("execute") == 1

    def test_equivalence_checked_on_every_candidate(self, settings, session, connection,
                                                    division_definition, callback_trace):
        script(connection, callback_trace, candidate_response(990))
        checker = SpyChecker()
        OptimizationController(settings, checker=checker).optimize(session, division_definition)
        assert checker.calls == 1

    def test_continue_mode_rebaselines_on_candidate(self, settings, session, connection,
                                                    division_definition, callback_trace):
        script(connection, callback_trace, candidate_response(850))
        session, report = OptimizationController(settings).optimize(
            session, division_definition, continue_iteration=True,
        )
        assert report.state == ControllerState.ACCEPTED
        assert len(report.attempts) == 1
        assert session.baseline.total_ms == 850

    def test_candidate_invalid_query_is_a_rejection(self, settings, session, connection,
                                                    division_definition, callback_trace):
        script(connection, callback_trace, InvalidQueryError("Unknown function", query="..."))
        _, report = OptimizationController(settings).optimize(session, division_definition)

        attempt = report.attempts[0]
        assert attempt.rejection_reasons == (RejectionReason.EXECUTION_FAILED,)
        assert "Unknown function" in attempt.error
        assert attempt.candidate_run is None
        assert report.state == ControllerState.EXHAUSTED

    def test_shape_change_rejected_without_execution(self, settings, session, connection,
                                                     division_definition, callback_trace):
        class ShapeChanger:
            def propose(self, definition, finding):
                changed = replace(definition, evaluate="EVALUATE ROW ( \"x\", 1 )")
                return RewriteProposal(("bad",), (finding,), changed, "changes the query")

        connection.on(BASELINE_MARKER, baseline_response(callback_trace))
        _, report = OptimizationController(settings, proposer=ShapeChanger()).optimize(
            session, division_definition,
        )
        assert report.attempts[0].rejection_reasons == (RejectionReason.SHAPE_CHANGED,)
        assert connection.calls.count("execute") == 1

    def test_unapplicable_finding_skipped(self, settings, session, connection,
                                          division_definition, callback_trace):
        class Declining:
            def propose(self, definition, finding):
                return None

        connection.on(BASELINE_MARKER, baseline_response(callback_trace))
        _, report = OptimizationController(settings, proposer=Declining()).optimize(session, division_definition)
        assert report.state == ControllerState.EXHAUSTED
        assert [f.rule_id for f in report.skipped_findings] == ["PROTECTED_DIVISION_IN_ITERATOR"]

    def test_attempt_limit(self, settings, session, connection):
        query = """DEFINE
    MEASURE Sales[Margin %] = AVERAGEX ( Sales, DIVIDE ( Sales[Amount] - Sales[Cost], Sales[Amount] ) )
    MEASURE Sales[Cost %] = AVERAGEX ( Sales, DIVIDE ( Sales[Cost], Sales[Amount] ) )
EVALUATE
SUMMARIZECOLUMNS ( 'Product'[Category], "Margin", [Margin %], "Cost", [Cost %] )
"""
        trace = make_trace(1000, scan_event(CALLBACK_SCAN, 400, start=100))
        script(connection, trace, candidate_response(950))
        settings.max_attempts = 1
        _, report = OptimizationController(settings).optimize(session, parse_query(query))

        assert len(report.confirmed_findings) == 2
        assert len(report.attempts) == 1
        assert report.warnings[-1] == "Stopped after 1 attempts"
        assert report.state == ControllerState.EXHAUSTED


class TestFailureHandling:
    def test_cancellation_returns_partial_report(self, settings, session, connection,
                                                 division_definition, callback_trace):
        token = CancellationToken()

        class CancellingProposer(RuleBasedProposer):
            def propose(self, definition, finding):
                token.cancel()
                return super().propose(definition, finding)

        script(connection, callback_trace, candidate_response(850))
        _, report = OptimizationController(settings, proposer=CancellingProposer()).optimize(
            session, division_definition, cancel_token=token,
        )
        assert report.state == ControllerState.CANCELLED
        assert report.attempts == []
        assert report.baseline is not None

    def test_failing_language_model_skips_finding(self, settings, session, connection,
                                                  division_definition, callback_trace):
        def predictor(**kwargs):
            raise RuntimeError("rate limit exceeded")

        proposer = ChainedProposer([DSPyRewriteProposer(model="test/model", predictor=predictor)])
        connection.on(BASELINE_MARKER, baseline_response(callback_trace))
        _, report = OptimizationController(settings, proposer=proposer).optimize(session, division_definition)

        assert report.state == ControllerState.EXHAUSTED
        assert report.attempts == []
        assert [f.rule_id for f in report.skipped_findings] == ["PROTECTED_DIVISION_IN_ITERATOR"]
        assert any("rate limit exceeded" in w for w in report.warnings)

    def test_invalid_original_query_is_fatal(self, settings, session, connection, division_definition):
        connection.on(BASELINE_MARKER, InvalidQueryError("Syntax error", query="..."))
        with pytest.raises(InvalidQueryError) as exc_info:
            OptimizationController(settings).optimize(session, division_definition)
        report = exc_info.value.report
        assert report is not None
        assert report.state == ControllerState.BASELINED
        assert report.baseline is None

    def test_connection_loss_carries_attempt_history(self, settings, session, connection,
                                                     division_definition, callback_trace):
        script(connection, callback_trace, EngineConnectionError("connection reset"))
        with pytest.raises(EngineConnectionError) as exc_info:
            OptimizationController(settings).optimize(session, division_definition)
        report = exc_info.value.report
        assert report.state == ControllerState.VERIFYING
        assert report.baseline.total_ms == 1000


class TestHelpers:
    def test_improvement_ratio(self):
        assert improvement_ratio(1000, 850) == pytest.approx(0.15)
        assert improvement_ratio(1000, 1100) == pytest.approx(-0.1)
        assert improvement_ratio(0, 10) == 0.0

    def test_priority_order(self):
        def finding(rule_id, tier, measure="m"):
            return Finding(pattern=Pattern.ROW_CALLBACK, rule_id=rule_id, evidence="",
                           tier=tier, measure=measure)

        findings = [
            finding("DUPLICATE_FILTER", RemediationTier.DATA_VOLUME),
            finding("CONDITIONAL_BRANCH_SELECTION", RemediationTier.FUSION),
            finding("PROTECTED_DIVISION_IN_ITERATOR", RemediationTier.CALLBACK, "b"),
            finding("ITERATOR_MEASURE_REEVALUATION", RemediationTier.CALLBACK, "z"),
            finding("PROTECTED_DIVISION_IN_ITERATOR", RemediationTier.CALLBACK, "a"),
        ]
        ordered = sorted(findings, key=priority_key)
        assert [(f.rule_id, f.measure) for f in ordered] == [
            ("ITERATOR_MEASURE_REEVALUATION", "z"),
            ("PROTECTED_DIVISION_IN_ITERATOR", "a"),
            ("PROTECTED_DIVISION_IN_ITERATOR", "b"),
            ("CONDITIONAL_BRANCH_SELECTION", "m"),
            ("DUPLICATE_FILTER", "m"),
        ]
