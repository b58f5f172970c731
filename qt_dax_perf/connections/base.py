"""The analytics-engine boundary: what the runner needs from a connection."""

from dataclasses import dataclass
from typing import Any, Optional, Protocol, runtime_checkable


@dataclass(frozen=True)
class RawExecution:
    """What one engine call returned, before any parsing.

    ``trace_events`` is None when the connection does not return the trace
    inline; the caller must then use ``fetch_trace`` before the next call.
    """
    columns: tuple
    rows: tuple
    trace_events: Optional[list] = None
    elapsed_ms: float = 0.0


@runtime_checkable
class EngineConnection(Protocol):
    """Connection to one analytics engine instance."""

    def connect(self) -> Any:
        ...

    def close(self) -> None:
        ...

    def clear_cache(self) -> None:
        ...

    def execute(self, text: str, want_trace: bool = True,
                timeout_s: Optional[float] = None) -> RawExecution:
        ...

    def fetch_trace(self) -> list:
        ...
