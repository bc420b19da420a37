from __future__ import annotations

import json
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator

from homedash.automations.errors import DuplicateName, InternalError
from homedash.observability.log_manager import get_component_logger

logger = get_component_logger("automations.store")

_SCHEMA_PATH = Path(__file__).resolve().parent / "schema.sql"

# kind -> (table, {logical column: db column})
_CHILD_TABLES: dict[str, tuple[str, dict[str, str]]] = {
    "trigger": (
        "automation_triggers",
        {
            "entity_id": "entity_id",
            "attribute": "attribute",
            "state": "state",
            "time": "time",
            "offset": "offset_minutes",
            "topic": "topic",
            "payload": "payload",
        },
    ),
    "condition": (
        "automation_conditions",
        {
            "entity_id": "entity_id",
            "attribute": "attribute",
            "topic": "topic",
            "operator": "operator",
            "value": "value",
        },
    ),
    "action": (
        "automation_actions",
        {
            "service": "service",
            "entity_id": "entity_id",
            "data": "data_json",
            "topic": "topic",
            "payload": "payload",
            "scene_id": "scene_id",
        },
    ),
}
_AUTOMATION_COLUMNS = ("name", "description", "enabled", "source", "tags", "last_run")
_SORT_COLUMNS = {"createdAt": "created_at", "updatedAt": "updated_at", "name": "name"}


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class SqliteAutomationStore:
    """SQLite persistence for automations and their triggers, conditions and actions.

    One connection is shared across threads and serialized by a re-entrant
    lock, so ``:memory:`` databases behave like file databases.
    """

    def __init__(self, db_path: str | Path = ":memory:") -> None:
        self._db_path = str(db_path)
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(self._db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys = ON")
        self.apply_schema()

    def apply_schema(self) -> None:
        schema_sql = _SCHEMA_PATH.read_text(encoding="utf-8")
        with self._lock:
            try:
                self._conn.executescript(schema_sql)
            except sqlite3.Error as exc:
                raise InternalError(f"Failed to apply schema: {exc}") from exc

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            try:
                with self._conn:
                    yield self._conn
            except sqlite3.IntegrityError as exc:
                if "automations.name" in str(exc):
                    raise DuplicateName("An automation with this name already exists") from exc
                logger.error("Store integrity error error=%s", exc)
                raise InternalError(f"Storage constraint failed: {exc}") from exc
            except sqlite3.Error as exc:
                logger.error("Store operation failed error=%s", exc)
                raise InternalError(f"Storage operation failed: {exc}") from exc

    # -------------------------------------------------------------------------
    # Automations
    # -------------------------------------------------------------------------

    def insert_automation(self, record: dict[str, Any]) -> int:
        now = now_iso()
        with self._transaction() as conn:
            cur = conn.execute(
                """
                INSERT INTO automations (name, description, enabled, source, tags, last_run, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, NULL, ?, ?)
                """,
                (
                    record["name"],
                    record.get("description"),
                    1 if record.get("enabled", True) else 0,
                    record.get("source") or "local",
                    encode_tags(record.get("tags")),
                    now,
                    now,
                ),
            )
            return int(cur.lastrowid)

    def get_automation(self, automation_id: int) -> dict[str, Any] | None:
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM automations WHERE id = ?", (automation_id,)).fetchone()
        return _automation_row(row) if row else None

    def list_automations(
        self,
        *,
        search: str | None = None,
        enabled: bool | None = None,
        source: str | None = None,
        sort: str = "createdAt",
        order: str = "desc",
        limit: int = 10,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        filters: list[str] = []
        values: list[Any] = []
        if search:
            filters.append("(name LIKE ? OR description LIKE ?)")
            pattern = f"%{search}%"
            values.extend([pattern, pattern])
        if enabled is not None:
            filters.append("enabled = ?")
            values.append(1 if enabled else 0)
        if source:
            filters.append("source = ?")
            values.append(source)
        where = f"WHERE {' AND '.join(filters)}" if filters else ""
        sort_column = _SORT_COLUMNS.get(sort, "created_at")
        direction = "ASC" if str(order).lower() == "asc" else "DESC"
        query = f"SELECT * FROM automations {where} ORDER BY {sort_column} {direction}, id {direction} LIMIT ? OFFSET ?"
        values.extend([limit, offset])
        with self._transaction() as conn:
            rows = conn.execute(query, tuple(values)).fetchall()
        return [_automation_row(row) for row in rows]

    def list_automation_ids(self, *, enabled: bool | None = None) -> list[int]:
        query = "SELECT id FROM automations"
        values: tuple[Any, ...] = ()
        if enabled is not None:
            query += " WHERE enabled = ?"
            values = (1 if enabled else 0,)
        with self._transaction() as conn:
            rows = conn.execute(query + " ORDER BY id", values).fetchall()
        return [int(row["id"]) for row in rows]

    def name_exists(self, name: str, *, exclude_id: int | None = None) -> bool:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT id FROM automations WHERE name = ? AND id != ? LIMIT 1",
                (name, exclude_id if exclude_id is not None else -1),
            ).fetchone()
        return row is not None

    def names_like(self, prefix: str) -> set[str]:
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT name FROM automations WHERE substr(name, 1, ?) = ?",
                (len(prefix), prefix),
            ).fetchall()
        return {str(row["name"]) for row in rows}

    def update_automation(self, automation_id: int, changes: dict[str, Any]) -> bool:
        assignments: list[str] = []
        values: list[Any] = []
        for column in _AUTOMATION_COLUMNS:
            if column not in changes:
                continue
            value = changes[column]
            if column == "tags":
                value = encode_tags(value)
            elif column == "enabled":
                value = 1 if value else 0
            assignments.append(f"{column} = ?")
            values.append(value)
        assignments.append("updated_at = ?")
        values.append(now_iso())
        values.append(automation_id)
        with self._transaction() as conn:
            cur = conn.execute(f"UPDATE automations SET {', '.join(assignments)} WHERE id = ?", tuple(values))
        return cur.rowcount > 0

    def toggle_automation(self, automation_id: int) -> bool | None:
        """Flip ``enabled`` in one statement and return the new value."""
        with self._transaction() as conn:
            cur = conn.execute(
                """
                UPDATE automations
                SET enabled = CASE WHEN enabled = 1 THEN 0 ELSE 1 END, updated_at = ?
                WHERE id = ?
                """,
                (now_iso(), automation_id),
            )
            if cur.rowcount == 0:
                return None
            row = conn.execute("SELECT enabled FROM automations WHERE id = ?", (automation_id,)).fetchone()
        return bool(row["enabled"])

    def mark_run(self, automation_id: int, ran_at: str | None = None) -> bool:
        with self._transaction() as conn:
            cur = conn.execute(
                "UPDATE automations SET last_run = ? WHERE id = ?",
                (ran_at or now_iso(), automation_id),
            )
        return cur.rowcount > 0

    def delete_automation(self, automation_id: int) -> bool:
        with self._transaction() as conn:
            cur = conn.execute("DELETE FROM automations WHERE id = ?", (automation_id,))
        return cur.rowcount > 0

    def duplicate_automation(self, automation_id: int, new_name: str) -> int | None:
        """Copy an automation and its children as a disabled automation."""
        now = now_iso()
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM automations WHERE id = ?", (automation_id,)).fetchone()
            if row is None:
                return None
            cur = conn.execute(
                """
                INSERT INTO automations (name, description, enabled, source, tags, last_run, created_at, updated_at)
                VALUES (?, ?, 0, ?, ?, NULL, ?, ?)
                """,
                (new_name, row["description"], row["source"], row["tags"], now, now),
            )
            new_id = int(cur.lastrowid)
            for table, columns in _CHILD_TABLES.values():
                db_columns = ", ".join(["type", *columns.values()])
                conn.execute(
                    f"""
                    INSERT INTO {table} (automation_id, {db_columns}, created_at, updated_at)
                    SELECT ?, {db_columns}, ?, ? FROM {table} WHERE automation_id = ? ORDER BY id
                    """,
                    (new_id, now, now, automation_id),
                )
        return new_id

    # -------------------------------------------------------------------------
    # Triggers / conditions / actions
    # -------------------------------------------------------------------------

    def insert_child(self, kind: str, automation_id: int, child_type: str, values: dict[str, Any]) -> int | None:
        """Insert a child row; ``None`` when the parent no longer exists."""
        table, columns = _CHILD_TABLES[kind]
        now = now_iso()
        db_columns = list(columns.values())
        params = [_to_db(logical, values.get(logical)) for logical in columns]
        placeholders = ", ".join("?" for _ in range(len(db_columns) + 4))
        with self._transaction() as conn:
            cur = conn.execute(
                f"""
                INSERT INTO {table} (automation_id, type, {', '.join(db_columns)}, created_at, updated_at)
                SELECT {placeholders}
                WHERE EXISTS (SELECT 1 FROM automations WHERE id = ?)
                """,
                (automation_id, child_type, *params, now, now, automation_id),
            )
            if cur.rowcount == 0:
                return None
            return int(cur.lastrowid)

    def get_child(self, kind: str, child_id: int) -> dict[str, Any] | None:
        table, columns = _CHILD_TABLES[kind]
        with self._transaction() as conn:
            row = conn.execute(f"SELECT * FROM {table} WHERE id = ?", (child_id,)).fetchone()
        return _child_row(row, columns) if row else None

    def list_children(self, kind: str, automation_id: int) -> list[dict[str, Any]]:
        table, columns = _CHILD_TABLES[kind]
        with self._transaction() as conn:
            rows = conn.execute(
                f"SELECT * FROM {table} WHERE automation_id = ? ORDER BY id",
                (automation_id,),
            ).fetchall()
        return [_child_row(row, columns) for row in rows]

    def update_child(
        self,
        kind: str,
        child_id: int,
        automation_id: int,
        child_type: str,
        values: dict[str, Any],
    ) -> bool:
        table, columns = _CHILD_TABLES[kind]
        assignments = ["type = ?"] + [f"{db_column} = ?" for db_column in columns.values()] + ["updated_at = ?"]
        params = [child_type] + [_to_db(logical, values.get(logical)) for logical in columns] + [now_iso()]
        with self._transaction() as conn:
            cur = conn.execute(
                f"UPDATE {table} SET {', '.join(assignments)} WHERE id = ? AND automation_id = ?",
                (*params, child_id, automation_id),
            )
        return cur.rowcount > 0

    def delete_child(self, kind: str, child_id: int, automation_id: int) -> bool:
        table, _ = _CHILD_TABLES[kind]
        with self._transaction() as conn:
            cur = conn.execute(
                f"DELETE FROM {table} WHERE id = ? AND automation_id = ?",
                (child_id, automation_id),
            )
        return cur.rowcount > 0


def encode_tags(tags: Any) -> str:
    return json.dumps(list(tags or []), ensure_ascii=False)


def decode_tags(raw: Any) -> tuple[str, ...]:
    if not raw:
        return ()
    try:
        parsed = json.loads(raw)
    except (TypeError, ValueError):
        logger.warning("Undecodable tags value; reading as empty raw=%s", str(raw)[:80])
        return ()
    if not isinstance(parsed, list):
        return ()
    return tuple(str(item) for item in parsed if isinstance(item, str))


def _automation_row(row: sqlite3.Row) -> dict[str, Any]:
    return {
        "id": int(row["id"]),
        "name": row["name"],
        "description": row["description"],
        "enabled": bool(row["enabled"]),
        "source": row["source"],
        "tags": decode_tags(row["tags"]),
        "last_run": row["last_run"],
        "created_at": row["created_at"],
        "updated_at": row["updated_at"],
    }


def _child_row(row: sqlite3.Row, columns: dict[str, str]) -> dict[str, Any]:
    record: dict[str, Any] = {
        "id": int(row["id"]),
        "automation_id": int(row["automation_id"]),
        "type": row["type"],
        "created_at": row["created_at"],
        "updated_at": row["updated_at"],
    }
    for logical, db_column in columns.items():
        record[logical] = _from_db(logical, row[db_column])
    return record


def _to_db(logical: str, value: Any) -> Any:
    if logical == "data":
        return None if value is None else json.dumps(value, ensure_ascii=False)
    return value


def _from_db(logical: str, value: Any) -> Any:
    if logical != "data" or value is None:
        return value
    try:
        return json.loads(value)
    except (TypeError, ValueError):
        logger.warning("Undecodable action data; reading as empty")
        return None
