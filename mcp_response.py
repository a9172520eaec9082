"""Standard response envelope for every tool.

Verbosity tiers are cumulative:

- ``silent``: ``{success, data}``
- ``compact``: adds ``meta`` (timestamp, request_id, execution_time_ms, score)
- ``diagnostic``: adds ``diagnostics`` (narrative, warnings, root_cause) and ``recovery``
- ``debug``: adds ``debug`` (logs, sql_queries)
"""
import uuid
from enum import Enum
from typing import Any, Dict, List, Optional

from models import RecoveryAction
from utils import utc_now_iso

DEFAULT_SUCCESS_NARRATIVE = "Operation completed successfully."
DEFAULT_FAILURE_NARRATIVE = "Operation failed. Check diagnostics for details."


class VerbosityLevel(str, Enum):
    SILENT = "silent"
    COMPACT = "compact"
    DIAGNOSTIC = "diagnostic"
    DEBUG = "debug"

    @property
    def rank(self) -> int:
        return _VERBOSITY_ORDER.index(self)

    @classmethod
    def parse(cls, value: Any, default: "VerbosityLevel" = None) -> "VerbosityLevel":
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            try:
                return cls(value.strip().lower())
            except ValueError:
                pass
        return default or cls.DIAGNOSTIC


_VERBOSITY_ORDER = [
    VerbosityLevel.SILENT,
    VerbosityLevel.COMPACT,
    VerbosityLevel.DIAGNOSTIC,
    VerbosityLevel.DEBUG,
]


def build_response(
    success: bool,
    data: Any,
    verbosity: Any = VerbosityLevel.DIAGNOSTIC,
    *,
    narrative: Optional[str] = None,
    warnings: Optional[List[str]] = None,
    root_cause: Optional[str] = None,
    recovery: Optional[RecoveryAction | Dict[str, Any]] = None,
    score: Optional[float] = None,
    execution_time_ms: float = 0,
    logs: Optional[List[str]] = None,
    sql_queries: Optional[List[str]] = None,
) -> Dict[str, Any]:
    """Build an MCP response envelope for the requested verbosity tier."""
    level = VerbosityLevel.parse(verbosity)
    response: Dict[str, Any] = {"success": success, "data": data}

    if level.rank >= VerbosityLevel.COMPACT.rank:
        response["meta"] = {
            "timestamp": utc_now_iso(),
            "request_id": str(uuid.uuid4()),
            "execution_time_ms": int(round(execution_time_ms or 0)),
            "score": score if score is not None else (1.0 if success else 0.0),
        }

    if level.rank >= VerbosityLevel.DIAGNOSTIC.rank:
        diagnostics: Dict[str, Any] = {
            "narrative": narrative or (DEFAULT_SUCCESS_NARRATIVE if success else DEFAULT_FAILURE_NARRATIVE),
            "warnings": list(warnings or []),
        }
        if root_cause:
            diagnostics["root_cause"] = root_cause
        response["diagnostics"] = diagnostics
        if recovery is not None:
            response["recovery"] = recovery.to_dict() if isinstance(recovery, RecoveryAction) else dict(recovery)

    if level.rank >= VerbosityLevel.DEBUG.rank:
        response["debug"] = {
            "logs": list(logs or []),
            "sql_queries": list(sql_queries or []),
        }

    return response


def get_action_type(tool_name: str) -> str:
    """Classify a tool for the audit log: write, validate, simulate or read."""
    name = tool_name or ""
    if name.startswith(("create_", "update_", "delete_")):
        return "write"
    if "validate" in name or "introspect" in name:
        return "validate"
    if any(token in name for token in ("simulate", "dry_run", "replay", "seed")) or name.startswith("drive_"):
        return "simulate"
    return "read"
