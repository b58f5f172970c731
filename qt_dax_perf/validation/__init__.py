"""Semantic equivalence checking of query results."""

from .equivalence import EquivalenceChecker

__all__ = ["EquivalenceChecker"]
