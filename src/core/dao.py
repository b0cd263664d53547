"""
Repository layer - one interface, an in-memory and a SQLite implementation.

Work order `state` and operation `status` are single-writer fields: writing them
requires the StateWriter capability, which the workflow engine claims at import.
Generic update methods only accept plain fields.
"""

import copy
import json
import sqlite3
import threading
import time
import uuid
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import asdict, fields as dataclass_fields
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from . import config
from .db import create_tables
from .errors import ErrorCode, ManagerControlledError, NotFoundError, ValidationFailed
from .schema import (
    Activity,
    Agent,
    AgentSession,
    Approval,
    Operation,
    OperationStory,
    Receipt,
    StagedPackage,
    WorkOrder,
)
from util.logging import logger


class StateWriter:
    """Capability token for writing work order state / operation status."""

    __slots__ = ("owner",)

    def __init__(self, owner: str):
        self.owner = owner

    def __repr__(self):
        return f"StateWriter(owner={self.owner!r})"


_state_writer: Optional[StateWriter] = None
_writer_lock = threading.Lock()


def claim_state_writer(owner: str) -> StateWriter:
    """Claim the process-wide state writer. Can only succeed once."""
    global _state_writer
    with _writer_lock:
        if _state_writer is not None:
            raise RuntimeError(f"State writer already claimed by {_state_writer.owner}")
        _state_writer = StateWriter(owner)
        return _state_writer


def _require_writer(writer: Optional[StateWriter], code: ErrorCode, message: str):
    if writer is None or writer is not _state_writer:
        raise ManagerControlledError(code, message)


TABLES = {
    "work_orders": WorkOrder,
    "operations": Operation,
    "operation_stories": OperationStory,
    "approvals": Approval,
    "agents": Agent,
    "activities": Activity,
    "receipts": Receipt,
    "agent_sessions": AgentSession,
    "packages": StagedPackage,
}

PRIMARY_KEYS = {"agent_sessions": "session_key"}

JSON_FIELDS = {
    "tags", "assignee_agent_ids", "depends_on_operation_ids", "capabilities",
    "payload", "parsed_json", "scan", "loop_config", "acceptance_criteria", "output",
}

DATETIME_FIELDS = {
    "created_at", "updated_at", "shipped_at", "escalated_at", "claim_expires_at",
    "last_claimed_at", "resolved_at", "ts", "started_at", "ended_at", "last_used_at",
    "deployed_at",
}

# Plain fields a generic update may touch. Everything else is engine-owned.
EDITABLE_WORK_ORDER_FIELDS = {"title", "goal_md", "priority", "owner", "tags", "routing_template"}
EDITABLE_OPERATION_FIELDS = {"notes", "blocked_reason"}


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


def format_work_order_code(seq: int) -> str:
    return f"WO-{seq:04d}"


class Repository(ABC):
    """Persistence contract shared by the in-memory and SQLite backends."""

    # --- primitives implemented by each backend -------------------------

    @abstractmethod
    def transaction(self):
        """Context manager; everything inside commits together or not at all."""

    @abstractmethod
    def _insert(self, table: str, record, extra: Optional[Dict[str, Any]] = None):
        ...

    @abstractmethod
    def _get(self, table: str, key: str):
        ...

    @abstractmethod
    def _update(self, table: str, key: str, values: Dict[str, Any]):
        ...

    @abstractmethod
    def _list(self, table: str, filters: Optional[Dict[str, Any]] = None,
              order_by: Optional[str] = None, descending: bool = False,
              limit: Optional[int] = None) -> List[Any]:
        ...

    @abstractmethod
    def _next_work_order_seq(self) -> int:
        ...

    @abstractmethod
    def acquire_lease(self, name: str, owner: str, ttl_sec: float, now: Optional[float] = None) -> bool:
        """Take a named lease if free or expired. Returns False if someone else holds it."""

    @abstractmethod
    def release_lease(self, name: str, owner: str) -> bool:
        ...

    @abstractmethod
    def get_lease(self, name: str) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    def record_completion_token(self, token: str, operation_id: str) -> bool:
        """Store a completion token. Returns False if it was already seen."""

    # --- work orders ----------------------------------------------------

    def create_work_order(self, title: str, goal_md: str = "", priority: str = "P2",
                          workflow_id: Optional[str] = None, routing_template: Optional[str] = None,
                          tags: Optional[List[str]] = None, owner: str = "user") -> WorkOrder:
        """Intake a work order. New work orders always start planned."""
        if not title or not title.strip():
            raise ValidationFailed("title is required")
        with self.transaction():
            seq = self._next_work_order_seq()
            work_order = WorkOrder(
                id=new_id("wo"),
                code=format_work_order_code(seq),
                title=title.strip(),
                goal_md=goal_md,
                priority=priority,
                workflow_id=workflow_id,
                routing_template=routing_template,
                tags=list(tags or []),
                owner=owner,
            )
            self._insert("work_orders", work_order, extra={"seq": seq})
        return work_order

    def get_work_order(self, work_order_id: str) -> Optional[WorkOrder]:
        return self._get("work_orders", work_order_id)

    def require_work_order(self, work_order_id: str) -> WorkOrder:
        work_order = self.get_work_order(work_order_id)
        if not work_order:
            raise NotFoundError("Work order", work_order_id)
        return work_order

    def list_work_orders(self, state: Optional[str] = None, limit: Optional[int] = None) -> List[WorkOrder]:
        filters = {"state": state} if state else None
        return self._list("work_orders", filters, order_by="created_at", limit=limit)

    def update_work_order(self, work_order_id: str, **values) -> WorkOrder:
        """Plain field edit. `state` is manager-controlled and always rejected."""
        if "state" in values:
            raise ManagerControlledError(
                ErrorCode.MANAGER_CONTROLLED_STATE,
                "Work order state is manager-controlled",
            )
        unknown = set(values) - EDITABLE_WORK_ORDER_FIELDS
        if unknown:
            raise ValidationFailed(f"Fields not editable: {sorted(unknown)}")
        self.require_work_order(work_order_id)
        values["updated_at"] = datetime.now()
        self._update("work_orders", work_order_id, values)
        return self.get_work_order(work_order_id)

    def write_work_order(self, writer: StateWriter, work_order_id: str, **values) -> WorkOrder:
        """Engine-only write, including `state`."""
        _require_writer(writer, ErrorCode.MANAGER_CONTROLLED_STATE,
                        "Work order state is manager-controlled")
        self.require_work_order(work_order_id)
        values["updated_at"] = datetime.now()
        self._update("work_orders", work_order_id, values)
        return self.get_work_order(work_order_id)

    # --- operations -----------------------------------------------------

    def create_operation(self, writer: StateWriter, work_order_id: str, station: str,
                         title: str, **values) -> Operation:
        """Operations are expanded from workflow definitions by the engine only."""
        _require_writer(writer, ErrorCode.MANAGER_CONTROLLED_OPERATION_GRAPH,
                        "Operation graph is manager-controlled")
        operation = Operation(id=new_id("op"), work_order_id=work_order_id,
                              station=station, title=title, **values)
        self._insert("operations", operation)
        return operation

    def get_operation(self, operation_id: str) -> Optional[Operation]:
        return self._get("operations", operation_id)

    def require_operation(self, operation_id: str) -> Operation:
        operation = self.get_operation(operation_id)
        if not operation:
            raise NotFoundError("Operation", operation_id)
        return operation

    def list_operations(self, work_order_id: Optional[str] = None,
                        statuses: Optional[Iterable[str]] = None) -> List[Operation]:
        filters: Dict[str, Any] = {}
        if work_order_id:
            filters["work_order_id"] = work_order_id
        if statuses:
            filters["status"] = tuple(statuses)
        return self._list("operations", filters, order_by="created_at")

    def update_operation(self, operation_id: str, **values) -> Operation:
        """Plain field edit. `status` is manager-controlled and always rejected."""
        if "status" in values:
            raise ManagerControlledError(
                ErrorCode.MANAGER_CONTROLLED_OPERATION_STATUS,
                "Operation status transitions are manager-controlled",
            )
        unknown = set(values) - EDITABLE_OPERATION_FIELDS
        if unknown:
            raise ValidationFailed(f"Fields not editable: {sorted(unknown)}")
        self.require_operation(operation_id)
        values["updated_at"] = datetime.now()
        self._update("operations", operation_id, values)
        return self.get_operation(operation_id)

    def write_operation(self, writer: StateWriter, operation_id: str, **values) -> Operation:
        """Engine-only write, including `status`."""
        _require_writer(writer, ErrorCode.MANAGER_CONTROLLED_OPERATION_STATUS,
                        "Operation status transitions are manager-controlled")
        self.require_operation(operation_id)
        values["updated_at"] = datetime.now()
        self._update("operations", operation_id, values)
        return self.get_operation(operation_id)

    # --- loop stories ---------------------------------------------------

    def create_story(self, writer: StateWriter, operation: Operation, story_index: int,
                     story_key: str, title: str, description: str = "",
                     acceptance_criteria: Optional[List[str]] = None) -> OperationStory:
        """Stories are planned by the engine from a loop stage's first run."""
        _require_writer(writer, ErrorCode.MANAGER_CONTROLLED_OPERATION_GRAPH,
                        "Operation graph is manager-controlled")
        story = OperationStory(
            id=new_id("st"),
            operation_id=operation.id,
            work_order_id=operation.work_order_id,
            story_index=story_index,
            story_key=story_key,
            title=title,
            description=description,
            acceptance_criteria=list(acceptance_criteria or []),
            max_retries=operation.max_retries,
        )
        self._insert("operation_stories", story)
        return story

    def get_story(self, story_id: str) -> Optional[OperationStory]:
        return self._get("operation_stories", story_id)

    def require_story(self, story_id: str) -> OperationStory:
        story = self.get_story(story_id)
        if not story:
            raise NotFoundError("Story", story_id)
        return story

    def list_stories(self, operation_id: str, status: Optional[str] = None) -> List[OperationStory]:
        filters: Dict[str, Any] = {"operation_id": operation_id}
        if status:
            filters["status"] = status
        return self._list("operation_stories", filters, order_by="story_index")

    def write_story(self, writer: StateWriter, story_id: str, **values) -> OperationStory:
        """Engine-only write of story progress."""
        _require_writer(writer, ErrorCode.MANAGER_CONTROLLED_OPERATION_STATUS,
                        "Story status is manager-controlled")
        self.require_story(story_id)
        values["updated_at"] = datetime.now()
        self._update("operation_stories", story_id, values)
        return self.get_story(story_id)

    # --- approvals -------------------------------------------------------

    def create_approval(self, work_order_id: str, type: str, question_md: str,
                        operation_id: Optional[str] = None) -> Approval:
        approval = Approval(id=new_id("ap"), work_order_id=work_order_id, type=type,
                            question_md=question_md, operation_id=operation_id)
        self._insert("approvals", approval)
        return approval

    def get_approval(self, approval_id: str) -> Optional[Approval]:
        return self._get("approvals", approval_id)

    def list_approvals(self, work_order_id: Optional[str] = None, type: Optional[str] = None,
                       status: Optional[str] = None) -> List[Approval]:
        filters: Dict[str, Any] = {}
        if work_order_id:
            filters["work_order_id"] = work_order_id
        if type:
            filters["type"] = type
        if status:
            filters["status"] = status
        return self._list("approvals", filters, order_by="created_at")

    def update_approval(self, approval_id: str, **values) -> Approval:
        if not self.get_approval(approval_id):
            raise NotFoundError("Approval", approval_id)
        self._update("approvals", approval_id, values)
        return self.get_approval(approval_id)

    # --- agents ---------------------------------------------------------

    def create_agent(self, name: str, **values) -> Agent:
        agent = Agent(id=values.pop("id", None) or new_id("agent"), name=name, **values)
        self._insert("agents", agent)
        return agent

    def get_agent(self, agent_id: str) -> Optional[Agent]:
        return self._get("agents", agent_id)

    def list_agents(self, status: Optional[str] = None) -> List[Agent]:
        filters = {"status": status} if status else None
        return self._list("agents", filters, order_by="name")

    def update_agent(self, agent_id: str, **values) -> Agent:
        if not self.get_agent(agent_id):
            raise NotFoundError("Agent", agent_id)
        values["updated_at"] = datetime.now()
        self._update("agents", agent_id, values)
        return self.get_agent(agent_id)

    # --- activities -----------------------------------------------------

    def add_activity(self, type: str, actor: str, entity_type: str, entity_id: str,
                     summary: str = "", payload: Optional[Dict[str, Any]] = None,
                     actor_type: str = "system", category: str = "workflow",
                     risk_level: str = "safe") -> Activity:
        activity = Activity(
            id=new_id("act"),
            type=type,
            actor=actor,
            actor_type=actor_type,
            entity_type=entity_type,
            entity_id=entity_id,
            summary=summary,
            category=category,
            risk_level=risk_level,
            payload=payload or {},
        )
        self._insert("activities", activity)
        return activity

    def list_activities(self, entity_id: Optional[str] = None, type: Optional[str] = None,
                        limit: Optional[int] = None) -> List[Activity]:
        filters: Dict[str, Any] = {}
        if entity_id:
            filters["entity_id"] = entity_id
        if type:
            filters["type"] = type
        return self._list("activities", filters, order_by="ts", limit=limit)

    # --- receipts -------------------------------------------------------

    def create_receipt(self, receipt: Receipt) -> Receipt:
        self._insert("receipts", receipt)
        return receipt

    def get_receipt(self, receipt_id: str) -> Optional[Receipt]:
        return self._get("receipts", receipt_id)

    def update_receipt(self, receipt_id: str, **values) -> Receipt:
        self._update("receipts", receipt_id, values)
        return self.get_receipt(receipt_id)

    # --- sessions -------------------------------------------------------

    def get_session(self, session_key: str) -> Optional[AgentSession]:
        return self._get("agent_sessions", session_key)

    def save_session(self, session: AgentSession) -> AgentSession:
        if self.get_session(session.session_key):
            self._update("agent_sessions", session.session_key, {"last_used_at": session.last_used_at})
        else:
            self._insert("agent_sessions", session)
        return self.get_session(session.session_key)

    def list_sessions(self, agent_id: Optional[str] = None) -> List[AgentSession]:
        filters = {"agent_id": agent_id} if agent_id else None
        return self._list("agent_sessions", filters, order_by="created_at")

    # --- packages -------------------------------------------------------

    def save_package(self, package: StagedPackage) -> StagedPackage:
        self._insert("packages", package)
        return package

    def get_package(self, package_id: str) -> Optional[StagedPackage]:
        return self._get("packages", package_id)

    def update_package(self, package_id: str, **values) -> StagedPackage:
        self._update("packages", package_id, values)
        return self.get_package(package_id)


class InMemoryRepository(Repository):
    """Dict-backed repository for development and tests.

    Transactions snapshot every table and restore it if the block raises.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._tables: Dict[str, Dict[str, Any]] = {name: {} for name in TABLES}
        self._leases: Dict[str, Dict[str, Any]] = {}
        self._tokens: Dict[str, str] = {}
        self._seq = 0
        self._depth = 0

    @contextmanager
    def transaction(self):
        with self._lock:
            outermost = self._depth == 0
            snapshot = None
            if outermost:
                snapshot = copy.deepcopy((self._tables, self._leases, self._tokens, self._seq))
            self._depth += 1
            try:
                yield self
            except Exception:
                if outermost:
                    self._tables, self._leases, self._tokens, self._seq = snapshot
                raise
            finally:
                self._depth -= 1

    def _key(self, table: str, record) -> str:
        return getattr(record, PRIMARY_KEYS.get(table, "id"))

    def _insert(self, table, record, extra=None):
        with self._lock:
            key = self._key(table, record)
            if key in self._tables[table]:
                raise ValidationFailed(f"Duplicate key in {table}: {key}")
            self._tables[table][key] = copy.deepcopy(record)

    def _get(self, table, key):
        with self._lock:
            record = self._tables[table].get(key)
            return copy.deepcopy(record) if record is not None else None

    def _update(self, table, key, values):
        with self._lock:
            record = self._tables[table].get(key)
            if record is None:
                raise NotFoundError(table, key)
            for name, value in values.items():
                if not hasattr(record, name):
                    raise ValidationFailed(f"Unknown field for {table}: {name}")
                setattr(record, name, copy.deepcopy(value))

    def _list(self, table, filters=None, order_by=None, descending=False, limit=None):
        with self._lock:
            rows = list(self._tables[table].values())
        for name, expected in (filters or {}).items():
            if isinstance(expected, (tuple, list, set)):
                rows = [r for r in rows if getattr(r, name) in expected]
            else:
                rows = [r for r in rows if getattr(r, name) == expected]
        if order_by:
            rows.sort(key=lambda r: getattr(r, order_by), reverse=descending)
        if limit is not None:
            rows = rows[:limit]
        return [copy.deepcopy(r) for r in rows]

    def _next_work_order_seq(self):
        with self._lock:
            self._seq += 1
            return self._seq

    def acquire_lease(self, name, owner, ttl_sec, now=None):
        now = time.time() if now is None else now
        with self._lock:
            lease = self._leases.get(name)
            if lease and lease["owner"] != owner and lease["expires_at"] > now:
                return False
            self._leases[name] = {"name": name, "owner": owner, "expires_at": now + ttl_sec}
            return True

    def release_lease(self, name, owner):
        with self._lock:
            lease = self._leases.get(name)
            if lease and lease["owner"] == owner:
                del self._leases[name]
                return True
            return False

    def get_lease(self, name):
        with self._lock:
            lease = self._leases.get(name)
            return dict(lease) if lease else None

    def record_completion_token(self, token, operation_id):
        with self._lock:
            if token in self._tokens:
                return False
            self._tokens[token] = operation_id
            return True


class SQLiteRepository(Repository):
    """SQLite-backed repository. One connection per repository, serialized by a lock."""

    def __init__(self, db_path: Optional[str] = None):
        self.db_path = db_path or config.DB_PATH
        config.ensure_db_directory(self.db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._depth = 0
        create_tables(self._conn)

    def close(self):
        self._conn.close()

    @contextmanager
    def transaction(self):
        with self._lock:
            outermost = self._depth == 0
            self._depth += 1
            try:
                yield self
                if outermost:
                    self._conn.commit()
            except Exception:
                if outermost:
                    self._conn.rollback()
                raise
            finally:
                self._depth -= 1

    def _execute(self, sql: str, params: Iterable[Any] = ()):
        with self._lock:
            try:
                cursor = self._conn.execute(sql, tuple(params))
                if self._depth == 0:
                    self._conn.commit()
                return cursor
            except sqlite3.Error as e:
                logger.error(f"SQLite error executing '{sql[:60]}': {e}")
                raise

    @staticmethod
    def _to_column(name: str, value: Any) -> Any:
        if name in JSON_FIELDS:
            return json.dumps(value) if value is not None else None
        if isinstance(value, datetime):
            return value.isoformat()
        if isinstance(value, bool):
            return int(value)
        return value

    @staticmethod
    def _from_row(table: str, row: sqlite3.Row):
        record_type = TABLES[table]
        values = {}
        for f in dataclass_fields(record_type):
            value = row[f.name]
            if value is not None:
                if f.name in JSON_FIELDS:
                    value = json.loads(value)
                elif f.name in DATETIME_FIELDS:
                    value = datetime.fromisoformat(value)
                elif f.name == "blocked_by_scan":
                    value = bool(value)
            values[f.name] = value
        return record_type(**values)

    def _insert(self, table, record, extra=None):
        data = asdict(record)
        data.update(extra or {})
        columns = list(data.keys())
        placeholders = ", ".join("?" for _ in columns)
        self._execute(
            f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders})",
            [self._to_column(c, data[c]) for c in columns],
        )

    def _get(self, table, key):
        pk = PRIMARY_KEYS.get(table, "id")
        with self._lock:
            row = self._conn.execute(f"SELECT * FROM {table} WHERE {pk} = ?", (key,)).fetchone()
        return self._from_row(table, row) if row else None

    def _update(self, table, key, values):
        if not values:
            return
        allowed = {f.name for f in dataclass_fields(TABLES[table])}
        unknown = set(values) - allowed
        if unknown:
            raise ValidationFailed(f"Unknown field for {table}: {sorted(unknown)}")
        pk = PRIMARY_KEYS.get(table, "id")
        assignments = ", ".join(f"{name} = ?" for name in values)
        params = [self._to_column(name, value) for name, value in values.items()] + [key]
        cursor = self._execute(f"UPDATE {table} SET {assignments} WHERE {pk} = ?", params)
        if cursor.rowcount == 0:
            raise NotFoundError(table, key)

    def _list(self, table, filters=None, order_by=None, descending=False, limit=None):
        clauses = []
        params: List[Any] = []
        for name, expected in (filters or {}).items():
            if isinstance(expected, (tuple, list, set)):
                expected = list(expected)
                clauses.append(f"{name} IN ({', '.join('?' for _ in expected)})")
                params.extend(self._to_column(name, v) for v in expected)
            else:
                clauses.append(f"{name} = ?")
                params.append(self._to_column(name, expected))
        sql = f"SELECT * FROM {table}"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        if order_by:
            sql += f" ORDER BY {order_by} {'DESC' if descending else 'ASC'}"
            if table == "work_orders":
                sql += ", seq ASC"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(int(limit))
        with self._lock:
            rows = self._conn.execute(sql, params).fetchall()
        return [self._from_row(table, row) for row in rows]

    def _next_work_order_seq(self):
        with self._lock:
            row = self._conn.execute("SELECT COALESCE(MAX(seq), 0) FROM work_orders").fetchone()
        return int(row[0]) + 1

    def acquire_lease(self, name, owner, ttl_sec, now=None):
        now = time.time() if now is None else now
        # Check and write are one statement under the database write lock.
        cursor = self._execute(
            "INSERT INTO leases (name, owner, expires_at) VALUES (?, ?, ?) "
            "ON CONFLICT(name) DO UPDATE SET owner = excluded.owner, expires_at = excluded.expires_at "
            "WHERE leases.owner = excluded.owner OR leases.expires_at <= ?",
            (name, owner, now + ttl_sec, now),
        )
        return cursor.rowcount > 0

    def release_lease(self, name, owner):
        cursor = self._execute("DELETE FROM leases WHERE name = ? AND owner = ?", (name, owner))
        return cursor.rowcount > 0

    def get_lease(self, name):
        with self._lock:
            row = self._conn.execute("SELECT name, owner, expires_at FROM leases WHERE name = ?", (name,)).fetchone()
        return dict(row) if row else None

    def record_completion_token(self, token, operation_id):
        try:
            self._execute(
                "INSERT INTO completion_tokens (token, operation_id, created_at) VALUES (?, ?, ?)",
                (token, operation_id, datetime.now().isoformat()),
            )
            return True
        except sqlite3.IntegrityError:
            return False


_repository: Optional[Repository] = None
_repository_lock = threading.Lock()


def get_repository() -> Repository:
    """Return the process repository, creating it from REPOSITORY_BACKEND on first use."""
    global _repository
    with _repository_lock:
        if _repository is None:
            if config.REPOSITORY_BACKEND == "memory":
                _repository = InMemoryRepository()
            else:
                _repository = SQLiteRepository()
        return _repository


def set_repository(repository: Optional[Repository]) -> None:
    """Swap the process repository (tests, alternate backends)."""
    global _repository
    with _repository_lock:
        _repository = repository
