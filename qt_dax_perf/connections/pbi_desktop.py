"""
Power BI Desktop local connection.

Connects to running Power BI Desktop instances via the localhost XMLA
endpoint, the same way DAX Studio does: no auth for local connections.

Requirements:
- Windows (PBI Desktop is Windows-only)
- pyadomd package: pip install qt-dax-perf[desktop]
- Power BI Desktop running with a model loaded

Usage:
    from qt_dax_perf.connections import PBIDesktopConnection, find_pbi_instances

    instances = find_pbi_instances()
    with PBIDesktopConnection(instances[0].port) as conn:
        conn.clear_cache()
        raw = conn.execute("EVALUATE ROW(\"x\", 1)", timeout_s=60)

Server Timings events are not exposed through ADOMD queries; pass a
``trace_reader`` (a callable taking the connection and returning the raw
events of the last query) to capture them. Without one, ``fetch_trace``
raises TraceCaptureFailure and runs fall back to duration-only mode.
"""

import glob
import logging
import os
import platform
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from ..errors import (
    EngineConnectionError,
    ExecutionFailure,
    ExecutionTimeout,
    InvalidQueryError,
    TraceCaptureFailure,
)
from .base import RawExecution

logger = logging.getLogger(__name__)

# Lazy import - pyadomd is Windows-only and optional
_pyadomd = None


def _get_pyadomd():
    """Lazy load pyadomd, with helpful error if not available."""
    global _pyadomd
    if _pyadomd is None:
        try:
            import pyadomd
            _pyadomd = pyadomd
        except ImportError as e:
            if "AdomdClient" in str(e):
                raise ImportError(
                    "pyadomd found but ADOMD client libraries are missing.\n\n"
                    "Install the Analysis Services client libraries:\n"
                    "  1. Download from: https://learn.microsoft.com/en-us/analysis-services/client-libraries\n"
                    "  2. Run the MSOLAP (amd64) installer\n"
                    "  3. Restart Python"
                ) from e
            raise ImportError(
                "pyadomd is required for Power BI Desktop connection.\n"
                "Install with: pip install qt-dax-perf[desktop]\n"
                "Note: Windows only, requires .NET Framework."
            ) from e
    return _pyadomd


# Engine message fragment -> exception type, first match wins
ERROR_MARKERS = (
    (("timeout", "timed out", "operation was cancelled", "operation has been cancelled"), ExecutionTimeout),
    (("no connection could be made", "connection was closed", "forcibly closed",
      "cannot connect", "connection cannot be made", "server is not running"), EngineConnectionError),
    (("syntax for", "syntax error", "failed to resolve name", "cannot find table",
      "cannot be found or may not be used", "unexpected token"), InvalidQueryError),
)

CLEAR_CACHE_XMLA = (
    '<ClearCache xmlns="http://schemas.microsoft.com/analysisservices/2003/engine">'
    "<Object><DatabaseID>{database}</DatabaseID></Object>"
    "</ClearCache>"
)


def classify_engine_error(error: Exception, query: str = "", timeout_s: Optional[float] = None) -> Exception:
    """Map a raw engine exception onto the error taxonomy."""
    message = str(error)
    lowered = message.lower()
    for markers, error_type in ERROR_MARKERS:
        if any(marker in lowered for marker in markers):
            if error_type is ExecutionTimeout:
                return ExecutionTimeout(message, timeout_s=timeout_s)
            if error_type is InvalidQueryError:
                return InvalidQueryError(message, query=query)
            return error_type(message)
    return ExecutionFailure(message)


def parse_target(target) -> int:
    """Port from ``localhost:<port>``, a bare port string, or an int."""
    if isinstance(target, int):
        return target
    text = str(target).strip()
    if ":" in text:
        text = text.rsplit(":", 1)[1]
    try:
        return int(text)
    except ValueError:
        raise EngineConnectionError(f"Invalid target '{target}': expected localhost:<port> or a port")


@dataclass
class PBIInstance:
    """A running Power BI Desktop instance."""
    port: int
    name: str
    workspace_path: str


def find_pbi_instances() -> list[PBIInstance]:
    """
    Find all running Power BI Desktop instances.

    Scans for msmdsrv.port.txt files created by PBI Desktop's
    local Analysis Services instance. Supports both:
    - Classic installer: AppData/Local/Microsoft/Power BI Desktop/
    - Microsoft Store: [User]/Microsoft/Power BI Desktop Store App/

    Returns:
        List of PBIInstance objects for each running instance.
    """
    if platform.system() != "Windows":
        raise OSError("Power BI Desktop connection only supported on Windows")

    instances = []
    search_patterns = []

    local_app_data = os.environ.get("LOCALAPPDATA", "")
    if local_app_data:
        search_patterns.append(os.path.join(
            local_app_data, "Microsoft", "Power BI Desktop",
            "AnalysisServicesWorkspaces", "*", "Data", "msmdsrv.port.txt",
        ))
    search_patterns.append(os.path.join(
        os.path.expanduser("~"), "Microsoft", "Power BI Desktop Store App",
        "AnalysisServicesWorkspaces", "*", "Data", "msmdsrv.port.txt",
    ))

    for pattern in search_patterns:
        for port_file in glob.glob(pattern):
            try:
                with open(port_file, "rb") as f:
                    content = f.read()
                # Port file is usually UTF-16
                try:
                    port_str = content.decode("utf-16").strip()
                except UnicodeDecodeError:
                    port_str = content.decode("utf-8").strip()
                port = int(port_str.replace(" ", "").replace("\x00", ""))

                workspace_path = Path(port_file).parent.parent
                instances.append(PBIInstance(
                    port=port,
                    name=workspace_path.name,
                    workspace_path=str(workspace_path),
                ))
            except (ValueError, IOError):
                logger.debug("Skipping unreadable port file %s", port_file)
                continue

    return instances


class PBIDesktopConnection:
    """
    Connection to a local Power BI Desktop instance.

    Implements the EngineConnection protocol on top of ADOMD.NET.
    """

    def __init__(
        self,
        port: int,
        timeout_s: Optional[float] = None,
        trace_reader: Optional[Callable[["PBIDesktopConnection"], list]] = None,
    ):
        """
        Args:
            port: Local port number (from find_pbi_instances)
            timeout_s: Default command timeout applied through the connection string
            trace_reader: Callable returning the raw trace events of the last query
        """
        self.port = port
        self.timeout_s = timeout_s
        self.trace_reader = trace_reader
        self._connection = None
        self._database: Optional[str] = None

    @property
    def connection_string(self) -> str:
        conn_str = f"Provider=MSOLAP;Data Source=localhost:{self.port}"
        if self.timeout_s:
            conn_str += f";Timeout={int(self.timeout_s)}"
        return conn_str

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def connect(self):
        """Open connection to PBI Desktop."""
        pyadomd = _get_pyadomd()
        try:
            self._connection = pyadomd.Pyadomd(self.connection_string)
            self._connection.open()
        except Exception as e:
            self._connection = None
            raise EngineConnectionError(f"Cannot connect to localhost:{self.port}: {e}") from e
        logger.info("Connected to Power BI Desktop on port %d", self.port)
        return self

    def close(self):
        """Close the connection."""
        if self._connection:
            self._connection.close()
            self._connection = None
            self._database = None

    def clear_cache(self) -> None:
        """Drop the storage-engine cache of the loaded model (XMLA ClearCache)."""
        try:
            database = self._current_database()
            self._run(CLEAR_CACHE_XMLA.format(database=database), fetch=False)
        except InvalidQueryError as e:
            # not the user's query: never an InvalidQuery
            raise ExecutionFailure(f"ClearCache failed: {e}") from e
        logger.debug("Cleared cache of database %s", database)

    def execute(self, text: str, want_trace: bool = True,
                timeout_s: Optional[float] = None) -> RawExecution:
        """
        Execute a DAX query.

        The trace is never returned inline; call fetch_trace before the
        next execution.

        Raises:
            InvalidQueryError: Syntax or name-resolution failure.
            ExecutionTimeout: The call exceeded ``timeout_s``.
            ExecutionFailure: Any other engine-side failure.
            EngineConnectionError: The connection dropped.
        """
        if timeout_s and timeout_s != self.timeout_s and self._connection is not None:
            # Command timeout lives in the connection string
            self.timeout_s = timeout_s
            self.close()
            self.connect()

        start = time.perf_counter()
        columns, rows = self._run(text, fetch=True)
        elapsed_ms = (time.perf_counter() - start) * 1000

        if timeout_s and elapsed_ms > timeout_s * 1000:
            raise ExecutionTimeout(
                f"Query took {elapsed_ms:.0f}ms, over the {timeout_s:.0f}s timeout", timeout_s=timeout_s
            )
        return RawExecution(columns=tuple(columns), rows=tuple(rows), trace_events=None, elapsed_ms=elapsed_ms)

    def fetch_trace(self) -> list:
        """Raw Server Timings events of the last query."""
        if self.trace_reader is None:
            raise TraceCaptureFailure("No trace reader configured for this connection")
        try:
            return list(self.trace_reader(self))
        except TraceCaptureFailure:
            raise
        except Exception as e:
            raise TraceCaptureFailure(f"Trace capture failed: {e}") from e

    def get_tables(self) -> list[dict]:
        """Tables with their row counts."""
        return self._execute_dmv("""
        SELECT
            [DIMENSION_UNIQUE_NAME] AS [Table],
            [DIMENSION_CARDINALITY] AS [RowCount]
        FROM $SYSTEM.MDSCHEMA_DIMENSIONS
        WHERE [DIMENSION_TYPE] = 3
        """)

    def get_table_cardinalities(self) -> dict[str, int]:
        """Table name -> row count, for semi-join selectivity checks."""
        cardinalities = {}
        for row in self.get_tables():
            name = str(row.get("Table", "")).strip("[]")
            if name and row.get("RowCount") is not None:
                cardinalities[name] = int(row["RowCount"])
        return cardinalities

    def _table_names(self) -> dict:
        rows = self._execute_dmv("SELECT [ID], [Name] FROM $SYSTEM.TMSCHEMA_TABLES")
        return {r.get("ID"): r.get("Name", "") for r in rows}

    def get_columns(self, table_name: Optional[str] = None) -> list[dict]:
        """
        Get columns, hidden ones included, optionally filtered by table.

        Args:
            table_name: Optional table name filter

        Returns:
            List of dicts with table and column names.
        """
        tables = self._table_names()
        rows = self._execute_dmv("""
        SELECT [TableID], [ExplicitName], [InferredName], [Type]
        FROM $SYSTEM.TMSCHEMA_COLUMNS
        """)
        columns = []
        for r in rows:
            if r.get("Type") == 3:  # RowNumber
                continue
            name = r.get("ExplicitName") or r.get("InferredName")
            table = tables.get(r.get("TableID"), "")
            if not name or (table_name and table != table_name):
                continue
            columns.append({"table": table, "column": name})
        return columns

    def get_measures(self) -> list[dict]:
        """Model measures, hidden helpers included, as dicts with name, table and expression."""
        tables = self._table_names()
        rows = self._execute_dmv("""
        SELECT [TableID], [Name], [Expression]
        FROM $SYSTEM.TMSCHEMA_MEASURES
        """)
        return [
            {"name": r.get("Name", ""), "table": tables.get(r.get("TableID"), ""),
             "expression": r.get("Expression", "") or ""}
            for r in rows
        ]

    def _current_database(self) -> str:
        if self._database is None:
            rows = self._execute_dmv("SELECT [CATALOG_NAME] FROM $SYSTEM.DBSCHEMA_CATALOGS")
            if not rows:
                raise ExecutionFailure("No database loaded in Power BI Desktop")
            self._database = str(rows[0]["CATALOG_NAME"])
        return self._database

    def _run(self, command: str, fetch: bool):
        if not self._connection:
            raise EngineConnectionError("Not connected. Call connect() first or use context manager.")
        try:
            with self._connection.cursor() as cursor:
                cursor.execute(command)
                if not fetch:
                    return [], []
                columns = [col[0] for col in cursor.description]
                return columns, [tuple(row) for row in cursor.fetchall()]
        except Exception as e:
            raise classify_engine_error(e, query=command, timeout_s=self.timeout_s) from e

    def _execute_dmv(self, query: str) -> list[dict]:
        """Execute a DMV query against $SYSTEM tables."""
        columns, rows = self._run(query, fetch=True)
        return [dict(zip(columns, row)) for row in rows]
