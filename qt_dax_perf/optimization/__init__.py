"""QueryTorque DAX performance optimization loop."""

from .baseline_runner import BaselineRunner
from .controller import OptimizationController, improvement_ratio, priority_key, shape_preserved
from .dspy_proposer import DSPyRewriteProposer, build_predictor
from .remediations import (
    DESCRIPTIONS,
    REMEDIATIONS,
    ChainedProposer,
    RewriteProposal,
    RuleBasedProposer,
)
from .state_machine import (
    ALLOWED_TRANSITIONS,
    TERMINAL_STATES,
    ControllerStateMachine,
    is_terminal_state,
    is_valid_transition,
)

__all__ = [
    "BaselineRunner",
    "OptimizationController",
    "improvement_ratio",
    "priority_key",
    "shape_preserved",
    "DSPyRewriteProposer",
    "build_predictor",
    "DESCRIPTIONS",
    "REMEDIATIONS",
    "ChainedProposer",
    "RewriteProposal",
    "RuleBasedProposer",
    "ALLOWED_TRANSITIONS",
    "TERMINAL_STATES",
    "ControllerStateMachine",
    "is_terminal_state",
    "is_valid_transition",
]
