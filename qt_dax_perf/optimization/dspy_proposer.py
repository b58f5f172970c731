"""DSPy-based rewrite proposer for findings the rule table cannot fix.

Requires the optional ``llm`` extra (``pip install qt-dax-perf[llm]``).
The proposer never validates its own output: the controller verifies every
candidate like any other rewrite.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Callable, Optional

from ..schemas import Finding, QueryDefinition
from .remediations import RewriteProposal

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"^```[a-zA-Z]*\s*|\s*```$")
_MEASURE_PREFIX_RE = re.compile(r"^MEASURE\s+(?:'(?:''|[^'])*'|[\w.]+)?\s*\[[^\]]+\]\s*=\s*", re.IGNORECASE)
_QUERY_KEYWORDS_RE = re.compile(r"^\s*(EVALUATE|DEFINE)\b", re.IGNORECASE | re.MULTILINE)

CONSTRAINTS = (
    "Preserve semantics exactly. Return only the DAX expression of this measure "
    "(no measure name, no EVALUATE, no DEFINE). Do not rename or remove other measures. "
    "Keep it compatible with Power BI."
)


def _get_dspy():
    """Lazy load dspy, with a helpful error if the extra is not installed."""
    try:
        import dspy
    except ImportError as e:
        raise ImportError(
            "dspy is required for the LLM rewrite proposer.\n"
            "Install with: pip install qt-dax-perf[llm]"
        ) from e
    return dspy


def build_predictor(model: str, api_key: Optional[str] = None) -> Callable[..., Any]:
    """Configure the DSPy language model and return a chain-of-thought predictor.

    ``model`` uses litellm naming, e.g. ``deepseek/deepseek-chat`` or
    ``anthropic/claude-3-5-sonnet-20241022``.
    """
    dspy = _get_dspy()

    class DAXMeasureRewrite(dspy.Signature):
        """Rewrite one DAX measure to remove a storage-engine performance anti-pattern."""

        measure_name: str = dspy.InputField(desc="Name of the DAX measure")
        original_dax: str = dspy.InputField(desc="Current DAX expression of the measure")
        issues: str = dspy.InputField(desc="Detected anti-pattern and trace evidence")
        constraints: str = dspy.InputField(desc="Hard constraints that must be preserved")

        optimized_dax: str = dspy.OutputField(desc="Optimized DAX expression only")
        rationale: str = dspy.OutputField(desc="Brief rationale for changes")

    dspy.configure(lm=dspy.LM(model, api_key=api_key) if api_key else dspy.LM(model))
    return dspy.ChainOfThought(DAXMeasureRewrite)


def clean_expression(text: str) -> str:
    """Strip code fences and a leading ``MEASURE T[M] =`` from model output."""
    text = _FENCE_RE.sub("", (text or "").strip()).strip()
    return _MEASURE_PREFIX_RE.sub("", text).strip()


class DSPyRewriteProposer:
    """Asks a language model for a new body of the implicated measure."""

    name = "llm"

    def __init__(self, model: str = "", api_key: Optional[str] = None,
                 predictor: Optional[Callable[..., Any]] = None):
        self.model = model
        self.api_key = api_key
        self._predictor = predictor

    @classmethod
    def from_settings(cls, settings) -> "DSPyRewriteProposer":
        return cls(model=settings.llm_model, api_key=settings.llm_api_key or None)

    @property
    def predictor(self):
        if self._predictor is None:
            self._predictor = build_predictor(self.model, self.api_key)
        return self._predictor

    def propose(self, definition: QueryDefinition, finding: Finding) -> Optional[RewriteProposal]:
        if not finding.measure:
            return None
        measure = definition.get(finding.measure)
        if measure is None:
            return None

        prediction = self.predictor(
            measure_name=measure.name,
            original_dax=measure.expression,
            issues=f"{finding.rule_id}: {finding.evidence}",
            constraints=CONSTRAINTS,
        )
        rewritten = clean_expression(getattr(prediction, "optimized_dax", ""))
        if not rewritten or _QUERY_KEYWORDS_RE.search(rewritten):
            logger.warning("LLM proposal for '%s' is empty or not a measure body; ignored", measure.name)
            return None
        if rewritten == measure.expression.strip():
            return None

        rationale = (getattr(prediction, "rationale", "") or "").strip()
        return RewriteProposal(
            remediation_ids=("llm_rewrite",),
            findings=(finding,),
            candidate=definition.with_expression(measure.name, rewritten),
            description=f"LLM rewrite of '{measure.name}': {rationale[:200]}" if rationale
            else f"LLM rewrite of '{measure.name}'",
        )
