import os
import json
import time
import sqlite3
import threading
from abc import ABC, abstractmethod
from collections import deque
from typing import Any, Dict, List, Optional

from mcp_response import get_action_type
from utils import logger, safe_dumps, utc_now_iso

IDEMPOTENCY_BACKEND = os.environ.get("IDEMPOTENCY_BACKEND", "memory")
IDEMPOTENCY_DB_PATH = os.environ.get("IDEMPOTENCY_DB_PATH", "xerodev_idempotency.db")
IDEMPOTENCY_TTL_HOURS = float(os.environ.get("IDEMPOTENCY_TTL_HOURS", "24"))

AUDIT_MAX_ENTRIES = 1000


class IdempotencyStore(ABC):
    """Cached write results keyed by (tenant_id, idempotency_key)."""

    def __init__(self, ttl_hours: Optional[float] = None):
        self.ttl_seconds = (IDEMPOTENCY_TTL_HOURS if ttl_hours is None else ttl_hours) * 3600

    @abstractmethod
    def get(self, tenant_id: str, key: str) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    def put(self, tenant_id: str, key: str, result: Dict[str, Any], entity_type: Optional[str] = None):
        ...

    @abstractmethod
    def delete(self, tenant_id: str, key: str) -> bool:
        ...

    @abstractmethod
    def stats(self) -> Dict[str, Any]:
        ...


class InMemoryIdempotencyStore(IdempotencyStore):
    backend = "memory"

    def __init__(self, ttl_hours: Optional[float] = None):
        super().__init__(ttl_hours)
        self._entries: Dict[tuple, Dict[str, Any]] = {}
        self._lock = threading.Lock()

    def get(self, tenant_id: str, key: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            entry = self._entries.get((tenant_id, key))
            if entry is None:
                return None
            if entry["expires_at"] <= time.time():
                del self._entries[(tenant_id, key)]
                return None
            return json.loads(entry["result_data"])

    def put(self, tenant_id: str, key: str, result: Dict[str, Any], entity_type: Optional[str] = None):
        now = time.time()
        with self._lock:
            self._entries[(tenant_id, key)] = {
                "result_data": safe_dumps(result),
                "entity_type": entity_type,
                "created_at": now,
                "expires_at": now + self.ttl_seconds,
            }

    def delete(self, tenant_id: str, key: str) -> bool:
        with self._lock:
            return self._entries.pop((tenant_id, key), None) is not None

    def stats(self) -> Dict[str, Any]:
        now = time.time()
        with self._lock:
            active = sum(1 for e in self._entries.values() if e["expires_at"] > now)
            return {"backend": self.backend, "total_entries": len(self._entries), "active_entries": active}


class SqliteIdempotencyStore(IdempotencyStore):
    backend = "sqlite"

    def __init__(self, db_path: Optional[str] = None, ttl_hours: Optional[float] = None):
        super().__init__(ttl_hours)
        self.db_path = db_path or IDEMPOTENCY_DB_PATH
        self._init_db()

    def _connect(self):
        conn = sqlite3.connect(self.db_path, timeout=30.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA busy_timeout=5000;")
        return conn

    def _init_db(self):
        conn = self._connect()
        try:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS idempotency_store (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    tenant_id TEXT NOT NULL,
                    idempotency_key TEXT NOT NULL,
                    result_data TEXT NOT NULL,
                    entity_type TEXT,
                    created_at REAL NOT NULL,
                    expires_at REAL NOT NULL,
                    UNIQUE(tenant_id, idempotency_key)
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_idempotency_expires ON idempotency_store(expires_at)")
            conn.commit()
        finally:
            conn.close()

    def get(self, tenant_id: str, key: str) -> Optional[Dict[str, Any]]:
        conn = self._connect()
        try:
            conn.execute("DELETE FROM idempotency_store WHERE expires_at <= ?", (time.time(),))
            conn.commit()
            row = conn.execute(
                "SELECT result_data FROM idempotency_store WHERE tenant_id = ? AND idempotency_key = ?",
                (tenant_id, key),
            ).fetchone()
        finally:
            conn.close()
        return json.loads(row["result_data"]) if row else None

    def put(self, tenant_id: str, key: str, result: Dict[str, Any], entity_type: Optional[str] = None):
        now = time.time()
        conn = self._connect()
        try:
            conn.execute(
                """
                INSERT INTO idempotency_store (tenant_id, idempotency_key, result_data, entity_type, created_at, expires_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(tenant_id, idempotency_key) DO UPDATE SET
                    result_data = excluded.result_data,
                    entity_type = excluded.entity_type,
                    created_at = excluded.created_at,
                    expires_at = excluded.expires_at
                """,
                (tenant_id, key, safe_dumps(result), entity_type, now, now + self.ttl_seconds),
            )
            conn.commit()
        finally:
            conn.close()

    def delete(self, tenant_id: str, key: str) -> bool:
        conn = self._connect()
        try:
            cur = conn.execute(
                "DELETE FROM idempotency_store WHERE tenant_id = ? AND idempotency_key = ?", (tenant_id, key))
            conn.commit()
            return cur.rowcount > 0
        finally:
            conn.close()

    def stats(self) -> Dict[str, Any]:
        conn = self._connect()
        try:
            total = conn.execute("SELECT COUNT(*) FROM idempotency_store").fetchone()[0]
            active = conn.execute(
                "SELECT COUNT(*) FROM idempotency_store WHERE expires_at > ?", (time.time(),)).fetchone()[0]
        finally:
            conn.close()
        return {"backend": self.backend, "total_entries": total, "active_entries": active, "db_path": self.db_path}


def create_idempotency_store(backend: Optional[str] = None) -> IdempotencyStore:
    backend = (backend or IDEMPOTENCY_BACKEND or "memory").strip().lower()
    if backend == "sqlite":
        logger.info("Using SQLite idempotency store at %s", IDEMPOTENCY_DB_PATH)
        return SqliteIdempotencyStore()
    if backend != "memory":
        logger.warning("Unknown IDEMPOTENCY_BACKEND %r, using in-memory store", backend)
    return InMemoryIdempotencyStore()


class AuditLog:
    """Bounded in-memory record of tool invocations, most recent first."""

    def __init__(self, max_entries: int = AUDIT_MAX_ENTRIES):
        self._entries: deque = deque(maxlen=max_entries)
        self._lock = threading.Lock()

    def record(self, tool_name: str, tenant_id: Optional[str], success: bool, execution_time_ms: float = 0,
               arguments: Optional[Dict[str, Any]] = None, error: Optional[str] = None,
               score: Optional[float] = None) -> Optional[Dict[str, Any]]:
        try:
            entry = {
                "timestamp": utc_now_iso(),
                "tool_name": tool_name,
                "action_type": get_action_type(tool_name),
                "tenant_id": tenant_id,
                "success": bool(success),
                "execution_time_ms": int(round(execution_time_ms or 0)),
                "score": score,
                "arguments": json.loads(safe_dumps(arguments or {})),
                "error": error,
            }
            with self._lock:
                self._entries.appendleft(entry)
            return entry
        except Exception as e:
            logger.warning("Failed to record audit entry for %s: %s", tool_name, e)
            return None

    def _filtered(self, tenant_id=None, tool_name=None, success=None) -> List[Dict[str, Any]]:
        with self._lock:
            entries = list(self._entries)
        return [
            e for e in entries
            if (tenant_id is None or e["tenant_id"] == tenant_id)
            and (tool_name is None or e["tool_name"] == tool_name)
            and (success is None or e["success"] == success)
        ]

    def entries(self, tenant_id: Optional[str] = None, tool_name: Optional[str] = None,
                success: Optional[bool] = None, limit: int = 20, offset: int = 0) -> Dict[str, Any]:
        matched = self._filtered(tenant_id, tool_name, success)
        page = matched[offset:offset + limit]
        return {
            "entries": page,
            "total": len(matched),
            "has_more": offset + len(page) < len(matched),
        }

    def stats(self, tenant_id: Optional[str] = None) -> Dict[str, Any]:
        entries = self._filtered(tenant_id)
        total = len(entries)
        successful = sum(1 for e in entries if e["success"])
        by_tool: Dict[str, int] = {}
        by_action: Dict[str, int] = {}
        for e in entries:
            by_tool[e["tool_name"]] = by_tool.get(e["tool_name"], 0) + 1
            by_action[e["action_type"]] = by_action.get(e["action_type"], 0) + 1
        return {
            "total_entries": total,
            "successful": successful,
            "failed": total - successful,
            "success_rate": round(successful / total, 4) if total else 0.0,
            "by_tool": by_tool,
            "by_action": by_action,
            "avg_execution_time_ms": round(sum(e["execution_time_ms"] for e in entries) / total, 2) if total else 0.0,
        }

    def clear(self):
        with self._lock:
            self._entries.clear()

    def __len__(self):
        return len(self._entries)
