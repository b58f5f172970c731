"""Exception taxonomy for the DAX performance engine.

Fatal errors (connection loss, invalid query text) propagate to the caller.
Errors local to one repetition or attempt (execution failures, timeouts,
trace capture failures) are absorbed by the runner and the controller.
"""

from __future__ import annotations

from typing import Any, Optional


class QTDaxPerfError(Exception):
    """Base class for every error raised by qt_dax_perf.

    ``report`` carries the partial OptimizationReport when the error
    aborted an optimization session, so the caller still receives the
    attempt history.
    """

    def __init__(self, message: str = "", *, report: Optional[Any] = None):
        super().__init__(message)
        self.message = message
        self.report = report


class EngineConnectionError(QTDaxPerfError, ConnectionError):
    """The analytics engine could not be reached or the connection dropped."""


class InvalidQueryError(QTDaxPerfError):
    """The engine rejected the query text (syntax or name resolution)."""

    def __init__(self, message: str = "", *, query: str = "", report: Optional[Any] = None):
        super().__init__(message, report=report)
        self.query = query


class ExecutionFailure(QTDaxPerfError):
    """An execution failed for a reason other than invalid query text."""


class ExecutionTimeout(ExecutionFailure):
    """An execution exceeded its caller-supplied timeout."""

    def __init__(self, message: str = "", *, timeout_s: Optional[float] = None):
        super().__init__(message)
        self.timeout_s = timeout_s


class TraceCaptureFailure(QTDaxPerfError):
    """Trace events could not be captured after a successful execution."""


class MalformedEventError(QTDaxPerfError):
    """A raw trace event is missing a required field."""

    def __init__(self, message: str = "", *, missing: tuple[str, ...] = ()):
        super().__init__(message)
        self.missing = missing


class DefinitionError(QTDaxPerfError):
    """A query definition's reference graph cannot be closed."""


class DanglingReferenceError(DefinitionError):
    """A reference resolves to neither a definition nor a base column."""

    def __init__(self, message: str = "", *, source: str = "", reference: str = ""):
        super().__init__(message)
        self.source = source
        self.reference = reference


class ReferenceCycleError(DefinitionError):
    """Measures or functions reference each other in a cycle."""

    def __init__(self, message: str = "", *, cycle: tuple[str, ...] = ()):
        super().__init__(message)
        self.cycle = cycle


class BaselineUnavailableError(QTDaxPerfError):
    """Every repetition of a run failed to execute."""

    def __init__(self, message: str = "", *, failures: tuple[str, ...] = ()):
        super().__init__(message)
        self.failures = failures


class ConcurrentExecutionError(QTDaxPerfError):
    """A second execution was attempted while the session was busy."""


class StaleSessionError(QTDaxPerfError):
    """The session was replaced by a newer connection."""


class OptimizationCancelled(QTDaxPerfError):
    """Cooperative cancellation was requested."""
