"""Sessions: one connected target plus its in-flight optimization.

A Session is an immutable value. Updating the baseline or attempt history
returns a new Session sharing the same guard; connecting to a new target
invalidates the old guard, so every value derived from the old session
becomes stale at once.
"""

import itertools
import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Optional

from ..errors import (
    ConcurrentExecutionError,
    EngineConnectionError,
    OptimizationCancelled,
    StaleSessionError,
)
from .base import EngineConnection

logger = logging.getLogger(__name__)

_session_ids = itertools.count(1)


class SessionGuard:
    """Shared liveness flag and execution lock of one connection."""

    def __init__(self):
        self._lock = threading.Lock()
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def invalidate(self) -> None:
        self._active = False

    @contextmanager
    def exclusive(self):
        if not self._lock.acquire(blocking=False):
            raise ConcurrentExecutionError("Another execution is in flight on this session")
        try:
            yield
        finally:
            self._lock.release()


@dataclass(frozen=True)
class Session:
    """Immutable view of a connected target and its optimization state."""
    session_id: int
    target: str
    connection: Any
    guard: SessionGuard = field(repr=False, compare=False)
    baseline: Optional[Any] = None  # ExecutionRun
    attempts: tuple = ()

    @property
    def active(self) -> bool:
        return self.guard.active

    def ensure_active(self) -> None:
        if not self.guard.active:
            raise StaleSessionError(
                f"Session {self.session_id} for '{self.target}' was replaced by a newer connection"
            )

    @contextmanager
    def exclusive(self):
        """Run one engine operation; a second concurrent one is refused."""
        self.ensure_active()
        with self.guard.exclusive():
            yield self.connection

    def with_baseline(self, baseline) -> "Session":
        return replace(self, baseline=baseline)

    def with_attempts(self, attempts) -> "Session":
        return replace(self, attempts=tuple(attempts))


class SessionManager:
    """Holds the one current Session and replaces it atomically on connect."""

    def __init__(self, connection_factory: Callable[[str], EngineConnection]):
        self._factory = connection_factory
        self._lock = threading.Lock()
        self._current: Optional[Session] = None

    @property
    def current(self) -> Optional[Session]:
        return self._current

    def connect(self, target: str) -> Session:
        """Connect to ``target``, discarding any previous session.

        Raises:
            EngineConnectionError: The new target could not be reached. The
                previous session is discarded regardless.
        """
        with self._lock:
            self._discard()
            connection = self._factory(target)
            try:
                connection.connect()
            except EngineConnectionError:
                raise
            except Exception as e:
                raise EngineConnectionError(f"Cannot connect to '{target}': {e}") from e

            session = Session(
                session_id=next(_session_ids),
                target=str(target),
                connection=connection,
                guard=SessionGuard(),
            )
            self._current = session
            logger.info("Session %d connected to %s", session.session_id, target)
            return session

    def close(self) -> None:
        with self._lock:
            self._discard()

    def _discard(self) -> None:
        previous, self._current = self._current, None
        if previous is None:
            return
        previous.guard.invalidate()
        try:
            previous.connection.close()
        except Exception as e:
            logger.warning("Closing connection of session %d failed: %s", previous.session_id, e)
        logger.info("Session %d discarded", previous.session_id)


class CancellationToken:
    """Cooperative cancellation, observed between engine calls."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OptimizationCancelled("Cancellation requested")
