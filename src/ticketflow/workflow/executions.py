"""SQLite-backed persistence for executions, action records and audit events."""

from __future__ import annotations

import json
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from ..services import AuditSink
from .database import init_db
from .schema import ActionRecord, Execution, utcnow


def _dump(value: Any) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value, default=str)


def _load(value: Optional[str]) -> Any:
    if value is None:
        return None
    return json.loads(value)


def _ts(value: Optional[datetime]) -> Optional[str]:
    # Stored as UTC text so ORDER BY and range filters compare instants.
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    return value.isoformat()


class ExecutionStore:
    """Stores executions and their action records in SQLite."""

    def __init__(self, db_path: Path):
        self._conn = init_db(db_path)
        self._lock = threading.Lock()

    @property
    def connection(self) -> sqlite3.Connection:
        return self._conn

    @property
    def lock(self) -> threading.Lock:
        return self._lock

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    # ------------------------------------------------------------------
    # Executions
    # ------------------------------------------------------------------

    def save_execution(self, execution: Execution) -> str:
        with self._lock:
            self._conn.execute(
                """INSERT INTO executions
                   (id, workflow_id, rule_id, entity_type, entity_id, status, definition,
                    entity_data, triggered_by, started_at, completed_at, error, result,
                    resume_at, resume_state)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                   ON CONFLICT(id) DO UPDATE SET
                       status = excluded.status,
                       completed_at = excluded.completed_at,
                       error = excluded.error,
                       result = excluded.result,
                       resume_at = excluded.resume_at,
                       resume_state = excluded.resume_state""",
                (
                    execution.id,
                    execution.workflow_id,
                    execution.rule_id,
                    execution.entity_type,
                    json.dumps(execution.entity_id),
                    execution.status,
                    _dump(execution.definition),
                    _dump(execution.entity_data),
                    _dump(execution.triggered_by),
                    _ts(execution.started_at),
                    _ts(execution.completed_at),
                    execution.error,
                    _dump(execution.result),
                    _ts(execution.resume_at),
                    _dump(execution.resume_state),
                ),
            )
            self._conn.commit()
        return execution.id

    def load_execution(self, execution_id: str) -> Optional[Execution]:
        with self._lock:
            row = self._conn.execute("SELECT * FROM executions WHERE id = ?", (execution_id,)).fetchone()
        if row is None:
            return None
        return _row_to_execution(row)

    def list_executions(
        self,
        *,
        workflow_id: Optional[str] = None,
        rule_id: Optional[str] = None,
        status: Optional[str] = None,
        limit: Optional[int] = 50,
    ) -> list[Execution]:
        """List executions, most recent first. ``limit=None`` returns all of them."""
        clauses: list[str] = []
        params: list[Any] = []
        if workflow_id is not None:
            clauses.append("workflow_id = ?")
            params.append(workflow_id)
        if rule_id is not None:
            clauses.append("rule_id = ?")
            params.append(rule_id)
        if status is not None:
            clauses.append("status = ?")
            params.append(status)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        limit_clause = ""
        if limit is not None:
            limit_clause = "LIMIT ?"
            params.append(limit)

        with self._lock:
            rows = self._conn.execute(
                f"SELECT * FROM executions {where} ORDER BY started_at DESC {limit_clause}", params
            ).fetchall()
        return [_row_to_execution(row) for row in rows]

    def due_suspended(self, now: datetime) -> list[Execution]:
        """Suspended executions whose resume time has passed, oldest first.

        ``resume_at`` is stored as UTC ISO text, so ``now`` is converted to UTC
        (naive values are taken as UTC) before the text comparison.
        """
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        with self._lock:
            rows = self._conn.execute(
                """SELECT * FROM executions
                   WHERE status = 'suspended' AND resume_at IS NOT NULL AND resume_at <= ?
                   ORDER BY resume_at""",
                (_ts(now),),
            ).fetchall()
        return [_row_to_execution(row) for row in rows]

    # ------------------------------------------------------------------
    # Action records
    # ------------------------------------------------------------------

    def save_action(self, record: ActionRecord) -> str:
        with self._lock:
            self._conn.execute(
                """INSERT INTO action_records
                   (id, execution_id, seq, node_id, action_type, input_data, status,
                    result, error, created_at, started_at, completed_at)
                   VALUES (?, ?, (SELECT COALESCE(MAX(seq), 0) + 1 FROM action_records WHERE execution_id = ?),
                           ?, ?, ?, ?, ?, ?, ?, ?, ?)
                   ON CONFLICT(id) DO UPDATE SET
                       status = excluded.status,
                       result = excluded.result,
                       error = excluded.error,
                       started_at = excluded.started_at,
                       completed_at = excluded.completed_at""",
                (
                    record.id,
                    record.execution_id,
                    record.execution_id,
                    record.node_id,
                    record.action_type,
                    _dump(record.input_data),
                    record.status,
                    _dump(record.result),
                    record.error,
                    _ts(record.created_at),
                    _ts(record.started_at),
                    _ts(record.completed_at),
                ),
            )
            self._conn.commit()
        return record.id

    def list_actions(self, execution_id: str) -> list[ActionRecord]:
        """Action records of an execution in dispatch order."""
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM action_records WHERE execution_id = ? ORDER BY seq",
                (execution_id,),
            ).fetchall()
        return [_row_to_action(row) for row in rows]


class SqliteAuditSink(AuditSink):
    """Appends audit events to the ``audit_events`` table of an ExecutionStore."""

    def __init__(self, store: ExecutionStore):
        self._store = store

    def record(self, execution_id: str, action_id: Optional[str], event: str, payload: dict[str, Any]) -> None:
        with self._store.lock:
            self._store.connection.execute(
                """INSERT INTO audit_events (execution_id, action_id, event, payload, recorded_at)
                   VALUES (?, ?, ?, ?, ?)""",
                (execution_id, action_id, event, json.dumps(payload, default=str), utcnow().isoformat()),
            )
            self._store.connection.commit()

    def events_for(self, execution_id: str) -> list[dict[str, Any]]:
        with self._store.lock:
            rows = self._store.connection.execute(
                "SELECT * FROM audit_events WHERE execution_id = ? ORDER BY seq",
                (execution_id,),
            ).fetchall()
        return [
            {
                "execution_id": row["execution_id"],
                "action_id": row["action_id"],
                "event": row["event"],
                "payload": json.loads(row["payload"]),
                "recorded_at": row["recorded_at"],
            }
            for row in rows
        ]


def _row_to_execution(row: sqlite3.Row) -> Execution:
    return Execution(
        id=row["id"],
        workflow_id=row["workflow_id"],
        rule_id=row["rule_id"],
        entity_type=row["entity_type"],
        entity_id=json.loads(row["entity_id"]),
        status=row["status"],
        definition=_load(row["definition"]) or {},
        entity_data=_load(row["entity_data"]) or {},
        triggered_by=_load(row["triggered_by"]),
        started_at=datetime.fromisoformat(row["started_at"]),
        completed_at=datetime.fromisoformat(row["completed_at"]) if row["completed_at"] else None,
        error=row["error"],
        result=_load(row["result"]),
        resume_at=datetime.fromisoformat(row["resume_at"]) if row["resume_at"] else None,
        resume_state=_load(row["resume_state"]),
    )


def _row_to_action(row: sqlite3.Row) -> ActionRecord:
    return ActionRecord(
        id=row["id"],
        execution_id=row["execution_id"],
        node_id=row["node_id"],
        action_type=row["action_type"],
        input_data=_load(row["input_data"]) or {},
        status=row["status"],
        result=_load(row["result"]),
        error=row["error"],
        created_at=datetime.fromisoformat(row["created_at"]),
        started_at=datetime.fromisoformat(row["started_at"]) if row["started_at"] else None,
        completed_at=datetime.fromisoformat(row["completed_at"]) if row["completed_at"] else None,
    )
