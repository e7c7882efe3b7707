from __future__ import annotations

import contextlib
import json
import os
import sqlite3
import threading
import time
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

from pydantic import ValidationError as PydanticValidationError

from fulfillment.core.errors import (
    ConcurrentModificationError,
    NotFoundError,
    StoreUnavailableError,
    ValidationError,
)
from fulfillment.core.locations.models import ExecutionType, Location, RequestType, SystemType
from fulfillment.core.scope import Scope
from fulfillment.core.tasks.models import (
    RequestRecord,
    RequestStatus,
    Task,
    TaskFilters,
    TaskOrder,
    TaskStatus,
)


LOCATION_UPDATABLE = {
    "name",
    "description",
    "execution_type",
    "supported_request_types",
    "priority_order",
    "action_config",
    "owner_email",
    "owner_team",
    "pii_fields",
    "data_categories",
    "is_active",
    "last_verified_at",
    "metadata",
}

_LOCATION_ORDER = {"priority_order", "name", "created_at", "updated_at"}


def _as_list(v: Any) -> List[Any]:
    if v is None:
        return []
    if isinstance(v, (list, tuple, set, frozenset)):
        return list(v)
    return [v]


def _enum_values(v: Any) -> List[str]:
    return [str(getattr(x, "value", x)) for x in _as_list(v)]


class SqliteRecordStore:
    """
    Record store for locations, tasks and parent requests (SQLite).

    NOTES:
    - every row carries tenant_id and every read filters on it
    - task writes are compare-and-swap on `version`
    - sqlite3 errors surface as StoreUnavailableError, constraint violations
      as ValidationError
    """

    def __init__(self, *, db_path: str, logger: Any = None):
        self.db_path = str(db_path)
        self.logger = logger
        self._lock = threading.Lock()
        os.makedirs(os.path.dirname(self.db_path) or ".", exist_ok=True)
        self._init_db()

    # ---- sqlite helpers ----
    def _conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA synchronous=NORMAL;")
        return conn

    @contextlib.contextmanager
    def _tx(self, op: str) -> Iterator[sqlite3.Connection]:
        with self._lock:
            try:
                conn = self._conn()
            except sqlite3.Error as e:
                raise StoreUnavailableError(f"Record store unavailable during {op}.", op=op, error=str(e)) from e
            try:
                yield conn
                conn.commit()
            except sqlite3.IntegrityError as e:
                conn.rollback()
                raise ValidationError(f"Constraint violated during {op}: {e}", op=op) from e
            except sqlite3.Error as e:
                conn.rollback()
                if self.logger:
                    self.logger.error(f"Record store failure during {op}: {e}")
                raise StoreUnavailableError(f"Record store unavailable during {op}.", op=op, error=str(e)) from e
            finally:
                conn.close()

    def _init_db(self) -> None:
        with self._tx("init") as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS locations (
                  id TEXT PRIMARY KEY,
                  tenant_id TEXT NOT NULL,
                  name TEXT NOT NULL,
                  description TEXT,
                  system_type TEXT NOT NULL,
                  execution_type TEXT NOT NULL,
                  supported_request_types TEXT NOT NULL,
                  priority_order INTEGER NOT NULL DEFAULT 100,
                  action_config_json TEXT NOT NULL,
                  owner_email TEXT,
                  owner_team TEXT,
                  pii_fields_json TEXT,
                  data_categories_json TEXT,
                  is_active INTEGER NOT NULL DEFAULT 1,
                  last_verified_at REAL,
                  metadata_json TEXT,
                  created_at REAL NOT NULL,
                  updated_at REAL NOT NULL,
                  UNIQUE(tenant_id, name)
                )
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_locations_active ON locations(tenant_id, is_active, priority_order)")

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS tasks (
                  id TEXT PRIMARY KEY,
                  tenant_id TEXT NOT NULL,
                  request_id TEXT NOT NULL,
                  location_id TEXT NOT NULL,
                  task_type TEXT NOT NULL,
                  status TEXT NOT NULL,
                  assigned_to TEXT,
                  assigned_at REAL,
                  started_at REAL,
                  completed_at REAL,
                  attempt_count INTEGER NOT NULL DEFAULT 0,
                  max_attempts INTEGER NOT NULL DEFAULT 3,
                  last_attempt_at REAL,
                  next_retry_at REAL,
                  execution_result_json TEXT NOT NULL,
                  notes TEXT,
                  verified_by TEXT,
                  verified_at REAL,
                  verification_notes TEXT,
                  correlation_id TEXT NOT NULL,
                  version INTEGER NOT NULL DEFAULT 1,
                  created_at REAL NOT NULL,
                  updated_at REAL NOT NULL
                )
                """
            )
            conn.execute("CREATE UNIQUE INDEX IF NOT EXISTS idx_tasks_correlation ON tasks(correlation_id)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_tasks_request ON tasks(tenant_id, request_id, status)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_tasks_status ON tasks(tenant_id, status, created_at)")
            # speed: retry sweep
            conn.execute("CREATE INDEX IF NOT EXISTS idx_tasks_retry ON tasks(next_retry_at) WHERE status = 'failed'")

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS requests (
                  id TEXT PRIMARY KEY,
                  tenant_id TEXT NOT NULL,
                  request_type TEXT NOT NULL,
                  status TEXT NOT NULL,
                  subject_json TEXT,
                  created_at REAL NOT NULL,
                  updated_at REAL NOT NULL
                )
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_requests_tenant ON requests(tenant_id, status)")

    @staticmethod
    def _check_scope(scope: Scope, tenant_id: str) -> None:
        if scope.tenant_id != tenant_id:
            raise ValidationError("Record belongs to a different tenant.", scope=scope.tenant_id, record_tenant=tenant_id)

    # ---- locations ----
    @staticmethod
    def _location_from_row(row: sqlite3.Row) -> Location:
        return Location.model_validate(
            {
                "id": row["id"],
                "tenant_id": row["tenant_id"],
                "name": row["name"],
                "description": row["description"],
                "system_type": row["system_type"],
                "execution_type": row["execution_type"],
                "supported_request_types": json.loads(row["supported_request_types"] or "[]"),
                "priority_order": int(row["priority_order"]),
                "action_config": json.loads(row["action_config_json"] or "{}"),
                "owner_email": row["owner_email"],
                "owner_team": row["owner_team"],
                "pii_fields": json.loads(row["pii_fields_json"] or "[]"),
                "data_categories": json.loads(row["data_categories_json"] or "[]"),
                "is_active": bool(row["is_active"]),
                "last_verified_at": row["last_verified_at"],
                "metadata": json.loads(row["metadata_json"] or "{}"),
                "created_at": row["created_at"],
                "updated_at": row["updated_at"],
            }
        )

    @staticmethod
    def _location_params(loc: Location) -> Dict[str, Any]:
        return {
            "id": loc.id,
            "tenant_id": loc.tenant_id,
            "name": loc.name,
            "description": loc.description,
            "system_type": loc.system_type.value,
            "execution_type": loc.execution_type.value,
            "supported_request_types": json.dumps([rt.value for rt in loc.supported_request_types]),
            "priority_order": int(loc.priority_order),
            "action_config_json": json.dumps(loc.action_config.model_dump(mode="json"), ensure_ascii=False),
            "owner_email": loc.owner_email,
            "owner_team": loc.owner_team,
            "pii_fields_json": json.dumps(loc.pii_fields, ensure_ascii=False),
            "data_categories_json": json.dumps(loc.data_categories, ensure_ascii=False),
            "is_active": 1 if loc.is_active else 0,
            "last_verified_at": loc.last_verified_at,
            "metadata_json": json.dumps(loc.metadata, ensure_ascii=False),
            "created_at": float(loc.created_at),
            "updated_at": float(loc.updated_at),
        }

    def create_location(self, scope: Scope, loc: Location) -> Location:
        self._check_scope(scope, loc.tenant_id)
        p = self._location_params(loc)
        cols = ", ".join(p.keys())
        marks = ", ".join(f":{k}" for k in p.keys())
        with self._tx("create location") as conn:
            conn.execute(f"INSERT INTO locations({cols}) VALUES ({marks})", p)
        return loc

    def get_location(self, scope: Scope, location_id: str) -> Optional[Location]:
        with self._tx("find location") as conn:
            row = conn.execute("SELECT * FROM locations WHERE id=? AND tenant_id=?", (str(location_id), scope.tenant_id)).fetchone()
        return self._location_from_row(row) if row else None

    def get_locations(self, scope: Scope, location_ids: Iterable[str]) -> Dict[str, Location]:
        ids = sorted({str(x) for x in location_ids})
        if not ids:
            return {}
        marks = ", ".join("?" for _ in ids)
        with self._tx("find locations") as conn:
            rows = conn.execute(f"SELECT * FROM locations WHERE tenant_id=? AND id IN ({marks})", [scope.tenant_id, *ids]).fetchall()
        return {r["id"]: self._location_from_row(r) for r in rows}

    def update_location(self, scope: Scope, location_id: str, fields: Dict[str, Any]) -> Location:
        unknown = set(fields or {}) - LOCATION_UPDATABLE
        if unknown:
            raise ValidationError(f"Location fields not updatable: {sorted(unknown)}", fields=sorted(unknown))
        cur = self.get_location(scope, location_id)
        if cur is None:
            raise NotFoundError("Location", location_id)
        merged = cur.model_dump(mode="json")
        for k, v in (fields or {}).items():
            if k == "metadata":
                merged["metadata"] = {**(merged.get("metadata") or {}), **dict(v or {})}
            elif hasattr(v, "model_dump"):
                merged[k] = v.model_dump(mode="json")
            else:
                merged[k] = v
        merged["updated_at"] = time.time()
        try:
            loc = Location.model_validate(merged)
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid location update: {e}", location_id=location_id) from e
        p = self._location_params(loc)
        sets = ", ".join(f"{k}=:{k}" for k in p.keys() if k not in {"id", "tenant_id", "created_at"})
        with self._tx("update location") as conn:
            conn.execute(f"UPDATE locations SET {sets} WHERE id=:id AND tenant_id=:tenant_id", p)
        return loc

    def deactivate_location(self, scope: Scope, location_id: str) -> Location:
        return self.update_location(scope, location_id, {"is_active": False})

    def mark_location_verified(self, scope: Scope, location_id: str, *, at: float) -> Location:
        return self.update_location(scope, location_id, {"last_verified_at": float(at)})

    def query_locations(
        self,
        scope: Scope,
        *,
        system_type: Any = None,
        execution_type: Any = None,
        supported_request_type: Optional[RequestType] = None,
        is_active: Optional[bool] = None,
        owner_team: Optional[str] = None,
        search: Optional[str] = None,
        order_by: str = "priority_order",
        order_direction: str = "asc",
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[Location], int]:
        where = ["tenant_id = ?"]
        params: List[Any] = [scope.tenant_id]
        if system_type:
            vals = _enum_values(system_type)
            where.append(f"system_type IN ({', '.join('?' for _ in vals)})")
            params.extend(vals)
        if execution_type:
            vals = _enum_values(execution_type)
            where.append(f"execution_type IN ({', '.join('?' for _ in vals)})")
            params.extend(vals)
        if supported_request_type is not None:
            where.append("EXISTS (SELECT 1 FROM json_each(locations.supported_request_types) WHERE json_each.value = ?)")
            params.append(str(getattr(supported_request_type, "value", supported_request_type)))
        if is_active is not None:
            where.append("is_active = ?")
            params.append(1 if is_active else 0)
        if owner_team:
            where.append("owner_team = ?")
            params.append(str(owner_team))
        if search:
            where.append("(name LIKE ? OR IFNULL(description, '') LIKE ?)")
            like = f"%{search}%"
            params.extend([like, like])

        col = order_by if order_by in _LOCATION_ORDER else "priority_order"
        direction = "DESC" if str(order_direction).lower() == "desc" else "ASC"
        where_sql = " AND ".join(where)
        with self._tx("query locations") as conn:
            total = int(conn.execute(f"SELECT COUNT(1) FROM locations WHERE {where_sql}", params).fetchone()[0])
            rows = conn.execute(
                f"SELECT * FROM locations WHERE {where_sql} ORDER BY {col} {direction}, created_at ASC, id ASC LIMIT ? OFFSET ?",
                [*params, int(limit), int(offset)],
            ).fetchall()
        return [self._location_from_row(r) for r in rows], total

    def location_stats_rows(self, scope: Scope) -> List[Tuple[bool, SystemType, ExecutionType, Optional[float]]]:
        with self._tx("location summary") as conn:
            rows = conn.execute(
                "SELECT is_active, system_type, execution_type, last_verified_at FROM locations WHERE tenant_id=?",
                (scope.tenant_id,),
            ).fetchall()
        return [(bool(r["is_active"]), SystemType(r["system_type"]), ExecutionType(r["execution_type"]), r["last_verified_at"]) for r in rows]

    # ---- tasks ----
    _TASK_COLUMNS = (
        "id",
        "tenant_id",
        "request_id",
        "location_id",
        "task_type",
        "status",
        "assigned_to",
        "assigned_at",
        "started_at",
        "completed_at",
        "attempt_count",
        "max_attempts",
        "last_attempt_at",
        "next_retry_at",
        "execution_result_json",
        "notes",
        "verified_by",
        "verified_at",
        "verification_notes",
        "correlation_id",
        "version",
        "created_at",
        "updated_at",
    )

    @staticmethod
    def _task_params(t: Task) -> Dict[str, Any]:
        return {
            "id": t.id,
            "tenant_id": t.tenant_id,
            "request_id": t.request_id,
            "location_id": t.location_id,
            "task_type": t.task_type.value,
            "status": t.status.value,
            "assigned_to": t.assigned_to,
            "assigned_at": t.assigned_at,
            "started_at": t.started_at,
            "completed_at": t.completed_at,
            "attempt_count": int(t.attempt_count),
            "max_attempts": int(t.max_attempts),
            "last_attempt_at": t.last_attempt_at,
            "next_retry_at": t.next_retry_at,
            "execution_result_json": json.dumps(t.execution_result, ensure_ascii=False, default=str),
            "notes": t.notes,
            "verified_by": t.verified_by,
            "verified_at": t.verified_at,
            "verification_notes": t.verification_notes,
            "correlation_id": t.correlation_id,
            "version": int(t.version),
            "created_at": float(t.created_at),
            "updated_at": float(t.updated_at),
        }

    @staticmethod
    def _task_from_row(row: sqlite3.Row) -> Task:
        data = {k: row[k] for k in SqliteRecordStore._TASK_COLUMNS if k != "execution_result_json"}
        data["execution_result"] = json.loads(row["execution_result_json"] or "{}")
        return Task.model_validate(data)

    def create_tasks(self, scope: Scope, tasks: Sequence[Task]) -> List[Task]:
        """
        Insert all tasks in one transaction: either every task exists afterwards or none does.
        """
        if not tasks:
            return []
        for t in tasks:
            self._check_scope(scope, t.tenant_id)
        cols = ", ".join(self._TASK_COLUMNS)
        marks = ", ".join(f":{k}" for k in self._TASK_COLUMNS)
        with self._tx("create tasks") as conn:
            conn.executemany(f"INSERT INTO tasks({cols}) VALUES ({marks})", [self._task_params(t) for t in tasks])
        return list(tasks)

    def get_task(self, scope: Scope, task_id: str) -> Optional[Task]:
        with self._tx("find task") as conn:
            row = conn.execute("SELECT * FROM tasks WHERE id=? AND tenant_id=?", (str(task_id), scope.tenant_id)).fetchone()
        return self._task_from_row(row) if row else None

    def find_task_by_correlation_id(self, scope: Scope, correlation_id: str) -> Optional[Task]:
        with self._tx("find task by correlation id") as conn:
            row = conn.execute(
                "SELECT * FROM tasks WHERE correlation_id=? AND tenant_id=?",
                (str(correlation_id), scope.tenant_id),
            ).fetchone()
        return self._task_from_row(row) if row else None

    def update_task(self, scope: Scope, task: Task, *, expected_version: int) -> Task:
        """
        Write `task` only if the stored row is still at `expected_version`.
        """
        self._check_scope(scope, task.tenant_id)
        p = self._task_params(task)
        p["expected_version"] = int(expected_version)
        sets = ", ".join(f"{k}=:{k}" for k in self._TASK_COLUMNS if k not in {"id", "tenant_id", "correlation_id", "created_at"})
        with self._tx("update task") as conn:
            cur = conn.execute(
                f"UPDATE tasks SET {sets} WHERE id=:id AND tenant_id=:tenant_id AND version=:expected_version",
                p,
            )
            changed = int(cur.rowcount or 0)
        if changed != 1:
            if self.get_task(scope, task.id) is None:
                raise NotFoundError("Task", task.id)
            raise ConcurrentModificationError(
                f"Task {task.id} changed since version {expected_version}.",
                task_id=task.id,
                expected_version=int(expected_version),
            )
        return task

    def query_tasks(
        self,
        scope: Scope,
        filters: Optional[TaskFilters] = None,
        *,
        now: Optional[float] = None,
        order_by: TaskOrder = TaskOrder.CREATED_AT,
        order_direction: str = "desc",
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[Task], int]:
        f = filters or TaskFilters()
        where = ["t.tenant_id = ?"]
        params: List[Any] = [scope.tenant_id]
        if f.request_id:
            where.append("t.request_id = ?")
            params.append(f.request_id)
        if f.location_id:
            where.append("t.location_id = ?")
            params.append(f.location_id)
        if f.task_type:
            vals = _enum_values(f.task_type)
            where.append(f"t.task_type IN ({', '.join('?' for _ in vals)})")
            params.extend(vals)
        if f.status:
            vals = _enum_values(f.status)
            where.append(f"t.status IN ({', '.join('?' for _ in vals)})")
            params.extend(vals)
        if f.assigned_to:
            where.append("t.assigned_to = ?")
            params.append(f.assigned_to)
        if f.has_errors:
            where.append("t.status IN (?, ?)")
            params.extend([TaskStatus.FAILED.value, TaskStatus.BLOCKED.value])
        if f.needs_retry:
            where.append("t.status = ? AND t.attempt_count < t.max_attempts AND t.next_retry_at IS NOT NULL AND t.next_retry_at <= ?")
            params.extend([TaskStatus.FAILED.value, float(time.time() if now is None else now)])
        if f.awaiting_callback:
            where.append("t.status = ?")
            params.append(TaskStatus.AWAITING_CALLBACK.value)

        direction = "DESC" if str(order_direction).lower() == "desc" else "ASC"
        order = TaskOrder(order_by)
        join = ""
        if order == TaskOrder.PRIORITY_ORDER:
            join = "LEFT JOIN locations l ON l.id = t.location_id AND l.tenant_id = t.tenant_id"
            order_sql = f"IFNULL(l.priority_order, 2147483647) {direction}, t.created_at ASC"
        elif order == TaskOrder.STATUS:
            order_sql = f"t.status {direction}, t.created_at ASC"
        else:
            order_sql = f"t.created_at {direction}"
        where_sql = " AND ".join(where)
        with self._tx("query tasks") as conn:
            total = int(conn.execute(f"SELECT COUNT(1) FROM tasks t WHERE {where_sql}", params).fetchone()[0])
            rows = conn.execute(
                f"SELECT t.* FROM tasks t {join} WHERE {where_sql} ORDER BY {order_sql}, t.rowid ASC LIMIT ? OFFSET ?",
                [*params, int(limit), int(offset)],
            ).fetchall()
        return [self._task_from_row(r) for r in rows], total

    def list_task_statuses(self, scope: Scope, request_id: str) -> List[Tuple[str, TaskStatus, str]]:
        """
        (task_id, status, location_id) for every task of a request; the aggregator's read path.
        """
        with self._tx("task summary") as conn:
            rows = conn.execute(
                "SELECT id, status, location_id FROM tasks WHERE tenant_id=? AND request_id=? ORDER BY created_at ASC, rowid ASC",
                (scope.tenant_id, str(request_id)),
            ).fetchall()
        return [(r["id"], TaskStatus(r["status"]), r["location_id"]) for r in rows]

    def list_tenants(self) -> List[str]:
        with self._tx("list tenants") as conn:
            rows = conn.execute("SELECT DISTINCT tenant_id FROM tasks ORDER BY tenant_id").fetchall()
        return [r["tenant_id"] for r in rows]

    # ---- requests ----
    def create_request(self, scope: Scope, req: RequestRecord) -> RequestRecord:
        self._check_scope(scope, req.tenant_id)
        with self._tx("create request") as conn:
            conn.execute(
                "INSERT INTO requests(id, tenant_id, request_type, status, subject_json, created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?)",
                (
                    req.id,
                    req.tenant_id,
                    req.request_type.value,
                    req.status.value,
                    json.dumps(req.subject, ensure_ascii=False),
                    float(req.created_at),
                    float(req.updated_at),
                ),
            )
        return req

    def get_request(self, scope: Scope, request_id: str) -> Optional[RequestRecord]:
        with self._tx("find request") as conn:
            row = conn.execute("SELECT * FROM requests WHERE id=? AND tenant_id=?", (str(request_id), scope.tenant_id)).fetchone()
        if not row:
            return None
        return RequestRecord(
            id=row["id"],
            tenant_id=row["tenant_id"],
            request_type=RequestType(row["request_type"]),
            status=RequestStatus(row["status"]),
            subject=json.loads(row["subject_json"] or "{}"),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def update_request_status(self, scope: Scope, request_id: str, status: RequestStatus) -> RequestRecord:
        with self._tx("update request") as conn:
            cur = conn.execute(
                "UPDATE requests SET status=?, updated_at=? WHERE id=? AND tenant_id=?",
                (RequestStatus(status).value, time.time(), str(request_id), scope.tenant_id),
            )
            changed = int(cur.rowcount or 0)
        if changed != 1:
            raise NotFoundError("Request", request_id)
        req = self.get_request(scope, request_id)
        if req is None:
            raise NotFoundError("Request", request_id)
        return req
