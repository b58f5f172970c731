"""Engine connections and session management.

Provides the EngineConnection protocol, the Power BI Desktop connection via
the local XMLA endpoint, and the Session values the runner operates on.
"""

from .base import EngineConnection, RawExecution
from .pbi_desktop import (
    PBIDesktopConnection,
    PBIInstance,
    classify_engine_error,
    find_pbi_instances,
    parse_target,
)
from .session import CancellationToken, Session, SessionGuard, SessionManager

__all__ = [
    "EngineConnection",
    "RawExecution",
    "PBIDesktopConnection",
    "PBIInstance",
    "classify_engine_error",
    "find_pbi_instances",
    "parse_target",
    "CancellationToken",
    "Session",
    "SessionGuard",
    "SessionManager",
]
