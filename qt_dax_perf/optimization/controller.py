"""
Optimization Controller
=======================
Drives one optimization session through the controller state machine:

    Baselined -> Proposing -> Verifying -> {Accepted, Rejected} ... -> Exhausted

Only confirmed, actionable findings are acted on. Every candidate is
executed and compared against the original baseline result; a candidate is
accepted only when it is both fast enough and equivalent.
"""

import logging
from typing import List, Optional, Sequence, Set, Tuple

from ..analyzers.metrics import MetricsAggregator
from ..analyzers.pattern_catalog import STRUCTURAL_RULES, TRACE_RULES, PatternCatalog, corroborate
from ..config import get_settings
from ..connections.session import CancellationToken, Session
from ..errors import (
    BaselineUnavailableError,
    ExecutionFailure,
    InvalidQueryError,
    OptimizationCancelled,
    QTDaxPerfError,
)
from ..parsers.trace_parser import ParseContext
from ..schemas import (
    AttemptOutcome,
    ControllerState,
    ExecutionRun,
    Finding,
    FindingStatus,
    OptimizationAttempt,
    OptimizationReport,
    QueryDefinition,
    RejectionReason,
)
from ..validation.equivalence import EquivalenceChecker
from .baseline_runner import BaselineRunner
from .remediations import RewriteProposal, RuleBasedProposer
from .state_machine import ControllerStateMachine, is_valid_transition

logger = logging.getLogger(__name__)

_RULE_ORDER = {rule_id: i for i, rule_id in enumerate(list(STRUCTURAL_RULES) + list(TRACE_RULES))}


def priority_key(finding: Finding) -> tuple:
    """Callbacks first, then fusion, then data volume; stable within a tier."""
    return (int(finding.tier), _RULE_ORDER.get(finding.rule_id, len(_RULE_ORDER)), (finding.measure or "").lower())


def improvement_ratio(baseline_ms: float, candidate_ms: float) -> float:
    if baseline_ms <= 0:
        return 0.0
    return (baseline_ms - candidate_ms) / baseline_ms


def shape_preserved(original: QueryDefinition, candidate: QueryDefinition) -> bool:
    """The observable query part and the set of definitions are unchanged."""
    return (
        candidate.evaluate.strip() == original.evaluate.strip()
        and tuple(p.strip() for p in candidate.preamble) == tuple(p.strip() for p in original.preamble)
        and [n.lower() for n in candidate.names] == [n.lower() for n in original.names]
    )


class OptimizationController:
    """Runs baseline, classification and the propose/verify loop."""

    def __init__(
        self,
        settings=None,
        runner: Optional[BaselineRunner] = None,
        catalog: Optional[PatternCatalog] = None,
        checker: Optional[EquivalenceChecker] = None,
        proposer=None,
        aggregator: Optional[MetricsAggregator] = None,
    ):
        self.settings = settings or get_settings()
        self.aggregator = aggregator or MetricsAggregator()
        self.runner = runner or BaselineRunner(self.settings, aggregator=self.aggregator)
        self.catalog = catalog or PatternCatalog(self.settings)
        self.checker = checker or EquivalenceChecker.from_settings(self.settings)
        self.proposer = proposer or RuleBasedProposer()

    # -- analysis --------------------------------------------------------------

    def analyze(self, run: ExecutionRun) -> Tuple[List[Finding], Tuple]:
        """Classify and corroborate the findings of one run.

        Returns the findings and the annotated scan events. A degraded run
        yields structural findings only, all unconfirmed.
        """
        metrics = self.aggregator.aggregate(run)
        context = ParseContext.from_settings(
            self.settings,
            result_cardinality=run.result.row_count,
            table_cardinalities=self.runner.table_cardinalities,
        )
        events = self.catalog.annotate(run.scan_events, context)
        findings = self.catalog.classify(run.definition, events, context, metrics)
        return corroborate(findings, events), events

    def _queue(self, run: ExecutionRun, report: OptimizationReport, applied: Set[tuple]) -> List[Finding]:
        findings, _ = self.analyze(run)
        queue = []
        for finding in findings:
            if finding.key in applied:
                continue
            if finding.actionable:
                queue.append(finding)
                _add_once(report.confirmed_findings, finding)
            elif finding.status == FindingStatus.UNCONFIRMED:
                _add_once(report.unconfirmed_findings, finding)
            else:
                _add_once(report.report_only_findings, finding)
        queue.sort(key=priority_key)
        logger.info(
            "Finding queue: %d actionable, %d unconfirmed, %d report-only",
            len(queue), len(report.unconfirmed_findings), len(report.report_only_findings),
        )
        return queue

    # -- session loop ------------------------------------------------------------

    def optimize(
        self,
        session: Session,
        definition: QueryDefinition,
        continue_iteration: Optional[bool] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> Tuple[Session, OptimizationReport]:
        """Optimize ``definition`` on ``session``.

        Returns the updated Session value and the terminal report (state
        accepted, exhausted or cancelled).

        Raises:
            InvalidQueryError: The original definition is not valid DAX.
            EngineConnectionError: The connection was lost.
            BaselineUnavailableError: The original definition never executed.
            StaleSessionError: The session was replaced by a newer connect.
            Every raised error carries the partial report as ``.report``.
        """
        if continue_iteration is None:
            continue_iteration = self.settings.continue_after_accept
        machine = ControllerStateMachine()
        report = OptimizationReport(state=machine.state, final_definition=definition)

        try:
            original = self.runner.run_baseline(session, definition, cancel_token=cancel_token)
            session = session.with_baseline(original)
            report.baseline = original
            report.baseline_metrics = self.aggregator.aggregate(original)
            report.warnings.extend(original.warnings)
            logger.info("Baseline: %.1fms (%d rows)", original.total_ms, original.result.row_count)

            current = original
            applied: Set[tuple] = set()
            queue = self._queue(current, report, applied)

            while True:
                _check(cancel_token)
                if not queue:
                    break
                if len(report.attempts) >= self.settings.max_attempts:
                    report.warnings.append(f"Stopped after {self.settings.max_attempts} attempts")
                    logger.warning("Attempt limit of %d reached", self.settings.max_attempts)
                    break

                finding = queue.pop(0)
                applied.add(finding.key)
                machine.transition(ControllerState.PROPOSING)
                try:
                    proposal = self.proposer.propose(current.definition, finding)
                except QTDaxPerfError:
                    raise
                except Exception as e:
                    # proposer failures (LLM transport, bad output) only lose this finding
                    logger.warning("Proposer failed for %s: %s", finding.rule_id, e)
                    report.warnings.append(f"Proposer failed for {finding.rule_id}: {e}")
                    proposal = None
                if proposal is None:
                    _add_once(report.skipped_findings, finding)
                    machine.transition(ControllerState.BASELINED)
                    continue
                for extra in proposal.findings:
                    applied.add(extra.key)

                _check(cancel_token)
                machine.transition(ControllerState.VERIFYING)
                attempt = self.verify(
                    session, len(report.attempts) + 1, current, original, proposal, cancel_token
                )
                report.attempts.append(attempt)
                session = session.with_attempts(report.attempts)

                if attempt.outcome == AttemptOutcome.ACCEPTED:
                    machine.transition(ControllerState.ACCEPTED)
                    report.final_definition = attempt.candidate
                    if not continue_iteration:
                        break
                    machine.transition(ControllerState.BASELINED)
                    current = attempt.candidate_run
                    session = session.with_baseline(current)
                    queue = self._queue(current, report, applied)
                else:
                    machine.transition(ControllerState.REJECTED)
                    machine.transition(ControllerState.BASELINED)

            if machine.state == ControllerState.BASELINED:
                machine.transition(
                    ControllerState.ACCEPTED if report.accepted_attempts else ControllerState.EXHAUSTED
                )
        except OptimizationCancelled:
            logger.warning("Optimization cancelled in state %s", machine.state.value)
            if is_valid_transition(machine.state, ControllerState.CANCELLED):
                machine.transition(ControllerState.CANCELLED)
            else:
                machine.state = ControllerState.CANCELLED
            report.state = machine.state
            return session, report
        except QTDaxPerfError as e:
            report.state = machine.state
            e.report = report
            raise

        report.state = machine.state
        logger.info(
            "Optimization finished: %s, %d attempt(s), %.1f%% improvement",
            report.state.value, len(report.attempts), report.improvement_pct,
        )
        return session, report

    def verify(
        self,
        session: Session,
        sequence: int,
        current: ExecutionRun,
        original: ExecutionRun,
        proposal: RewriteProposal,
        cancel_token: Optional[CancellationToken] = None,
    ) -> OptimizationAttempt:
        """Execute one candidate and decide accept/reject.

        Speed is measured against ``current``; results are always compared
        with ``original`` so tolerance never accumulates across accepts.
        """
        def rejected(reasons: Sequence[RejectionReason], **kwargs) -> OptimizationAttempt:
            attempt = OptimizationAttempt(
                sequence=sequence,
                findings=proposal.findings,
                remediation_ids=proposal.remediation_ids,
                baseline=current,
                candidate=proposal.candidate,
                outcome=AttemptOutcome.REJECTED,
                rejection_reasons=tuple(reasons),
                description=proposal.description,
                **kwargs,
            )
            diff = attempt.verdict.diff if attempt.verdict is not None else None
            logger.warning(
                "Attempt %d rejected (%s): %s%s",
                sequence,
                ", ".join(r.value for r in reasons),
                proposal.description,
                f"; diff: {diff.message}" if diff is not None else "",
            )
            return attempt

        if not shape_preserved(current.definition, proposal.candidate):
            return rejected([RejectionReason.SHAPE_CHANGED])

        try:
            candidate_run = self.runner.run_baseline(session, proposal.candidate, cancel_token=cancel_token)
        except (ExecutionFailure, BaselineUnavailableError, InvalidQueryError) as e:
            # InvalidQuery is fatal only for the original definition; a broken
            # candidate is a rejected attempt
            return rejected([RejectionReason.EXECUTION_FAILED], error=str(e))

        ratio = improvement_ratio(current.total_ms, candidate_run.total_ms)
        verdict = self.checker.compare(
            original.result, candidate_run.result, ordered=original.definition.has_explicit_order
        )
        logger.info(
            "Attempt %d: %.1fms -> %.1fms (%.1f%%), results %s",
            sequence, current.total_ms, candidate_run.total_ms, ratio * 100,
            "equal" if verdict.equal else "differ",
        )

        reasons = []
        if ratio < self.settings.acceptance_threshold:
            reasons.append(RejectionReason.PERFORMANCE_INSUFFICIENT)
        if not verdict.equal:
            reasons.append(RejectionReason.SEMANTICALLY_DIFFERENT)
        if reasons:
            return rejected(reasons, improvement_ratio=ratio, candidate_run=candidate_run, verdict=verdict)

        return OptimizationAttempt(
            sequence=sequence,
            findings=proposal.findings,
            remediation_ids=proposal.remediation_ids,
            baseline=current,
            candidate=proposal.candidate,
            outcome=AttemptOutcome.ACCEPTED,
            improvement_ratio=ratio,
            candidate_run=candidate_run,
            verdict=verdict,
            description=proposal.description,
        )


def _check(cancel_token: Optional[CancellationToken]) -> None:
    if cancel_token is not None:
        cancel_token.raise_if_cancelled()


def _add_once(findings: list, finding: Finding) -> None:
    if all(f.key != finding.key for f in findings):
        findings.append(finding)
