from __future__ import annotations

import json
import os
import sqlite3
import threading
from typing import Any, Dict, List, Optional, Protocol

from fulfillment.core.activity.models import ActivityEvent


class ActivitySink(Protocol):
    """
    Append-only activity feed. Callers treat `record` as fire-and-forget.
    """

    def record(self, event: ActivityEvent) -> None: ...


class NullActivitySink:
    def record(self, event: ActivityEvent) -> None:
        return None


class SqliteActivitySink:
    def __init__(self, *, path: str):
        self.path = str(path)
        self._lock = threading.Lock()
        os.makedirs(os.path.dirname(self.path) or ".", exist_ok=True)
        self._init()

    def _conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.path, check_same_thread=False)
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA synchronous=NORMAL;")
        return conn

    def _init(self) -> None:
        with self._lock:
            conn = self._conn()
            try:
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS request_activities (
                      activity_id TEXT PRIMARY KEY,
                      ts REAL NOT NULL,
                      tenant_id TEXT NOT NULL,
                      request_id TEXT NOT NULL,
                      task_id TEXT,
                      activity_type TEXT NOT NULL,
                      correlation_id TEXT,
                      json TEXT NOT NULL
                    )
                    """
                )
                conn.execute("CREATE INDEX IF NOT EXISTS idx_activities_request ON request_activities(tenant_id, request_id, ts);")
                conn.execute("CREATE INDEX IF NOT EXISTS idx_activities_task ON request_activities(task_id);")
                conn.commit()
            finally:
                conn.close()

    def record(self, event: ActivityEvent) -> None:
        blob = event.model_dump_json()
        with self._lock:
            conn = self._conn()
            try:
                conn.execute(
                    """
                    INSERT INTO request_activities(activity_id, ts, tenant_id, request_id, task_id, activity_type, correlation_id, json)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        event.activity_id,
                        float(event.timestamp),
                        event.tenant_id,
                        event.request_id,
                        event.task_id,
                        event.activity_type.value,
                        event.correlation_id,
                        blob,
                    ),
                )
                conn.commit()
            finally:
                conn.close()

    def query(
        self,
        *,
        tenant_id: str,
        request_id: Optional[str] = None,
        task_id: Optional[str] = None,
        activity_type: Optional[str] = None,
        limit: int = 200,
        offset: int = 0,
    ) -> List[ActivityEvent]:
        where = ["tenant_id = ?"]
        params: List[Any] = [str(tenant_id)]
        if request_id:
            where.append("request_id = ?")
            params.append(str(request_id))
        if task_id:
            where.append("task_id = ?")
            params.append(str(task_id))
        if activity_type:
            where.append("activity_type = ?")
            params.append(str(activity_type))
        sql = "SELECT json FROM request_activities WHERE " + " AND ".join(where) + " ORDER BY ts ASC, rowid ASC LIMIT ? OFFSET ?"
        params.extend([int(limit), int(offset)])
        out: List[ActivityEvent] = []
        with self._lock:
            conn = self._conn()
            try:
                for (blob,) in conn.execute(sql, params):
                    out.append(ActivityEvent.model_validate(json.loads(blob)))
            finally:
                conn.close()
        return out

    def count(self, *, tenant_id: str) -> int:
        with self._lock:
            conn = self._conn()
            try:
                row = conn.execute("SELECT COUNT(1) FROM request_activities WHERE tenant_id = ?", (str(tenant_id),)).fetchone()
                return int(row[0] if row else 0)
            finally:
                conn.close()

    def counts_by_type(self, *, tenant_id: str, request_id: str) -> Dict[str, int]:
        with self._lock:
            conn = self._conn()
            try:
                rows = conn.execute(
                    "SELECT activity_type, COUNT(1) FROM request_activities WHERE tenant_id = ? AND request_id = ? GROUP BY activity_type",
                    (str(tenant_id), str(request_id)),
                ).fetchall()
            finally:
                conn.close()
        return {str(t): int(n) for t, n in rows}
