"""
Task Service layer: all task mutations go through here.
Scheduling decisions (completion, visibility) are delegated to occurrence/recurrence;
this module loads rows, applies the returned field changes with a version check, and logs history.
"""
from __future__ import annotations

import json
import logging
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Any

from ulid import ULID

import occurrence
from database import get_connection, init_database
from date_utils import format_instant, parse_instant, utc_now
from recurrence import (
    RepetitionRule,
    parse_rule,
    recurrence_label,
    rule_from_columns,
    rule_to_columns,
)

logger = logging.getLogger("task_service")

IMPORTANCE_MIN, IMPORTANCE_MAX = 1, 10
DEFAULT_IMPORTANCE = 5
SOURCES = frozenset({"ai", "manual"})
SORT_FIELDS = {"created_at": "created_at", "importance": "importance", "due_date": "due_date"}

# Sentinel: pass for optional params to mean "don't change"; None means "set to null"
_UNSET = object()


class ConcurrentUpdateError(RuntimeError):
    """The task changed between read and write (version mismatch)."""

    def __init__(self, task_id: str, expected: int | None = None, actual: int | None = None):
        self.task_id = task_id
        self.expected = expected
        self.actual = actual
        detail = f"Task {task_id} was modified concurrently"
        if expected is not None and actual is not None:
            detail += f" (expected version {expected}, found {actual})"
        super().__init__(detail)


def _new_task_id() -> str:
    return str(ULID())


def _validate_importance(importance: int) -> None:
    if isinstance(importance, bool) or not isinstance(importance, int):
        raise ValueError("importance must be an integer")
    if importance < IMPORTANCE_MIN or importance > IMPORTANCE_MAX:
        raise ValueError(f"importance must be {IMPORTANCE_MIN}-{IMPORTANCE_MAX}")


def _record_history(conn: sqlite3.Connection, task_id: str, event: str, at: datetime, payload: Any = None) -> None:
    conn.execute(
        "INSERT INTO task_history (task_id, timestamp, event, payload) VALUES (?, ?, ?, ?)",
        (task_id, format_instant(at), event, json.dumps(payload) if payload is not None else None),
    )


def schedule_from_row(raw: dict[str, Any]) -> occurrence.Task:
    """Scheduling view of a stored task row."""
    return occurrence.Task(
        id=raw["id"],
        due_date=parse_instant(raw.get("due_date")),
        next_due_at=parse_instant(raw.get("next_due_at")),
        completed=bool(raw.get("completed")),
        completed_at=parse_instant(raw.get("completed_at")),
        recurrence=rule_from_columns(raw),
    )


def _schedule_to_columns(task: occurrence.Task) -> dict[str, Any]:
    return {
        "completed": 1 if task.completed else 0,
        "completed_at": format_instant(task.completed_at),
        "next_due_at": format_instant(task.next_due_at),
    }


def _task_row_to_dict(row: Any, now: datetime) -> dict[str, Any]:
    raw = dict(row)
    sched = schedule_from_row(raw)
    rule = sched.recurrence
    return {
        "id": raw["id"],
        "workspace_id": raw["workspace_id"],
        "title": raw["title"],
        "description": raw.get("description"),
        "importance": raw["importance"],
        "completed": sched.completed,
        "completed_at": raw.get("completed_at"),
        "due_date": raw.get("due_date"),
        "next_due_at": raw.get("next_due_at"),
        "recurrence": rule.to_wire() if rule else None,
        "recurrence_label": recurrence_label(rule) if rule else None,
        "state": occurrence.task_state(sched, now).value,
        "actionable": occurrence.is_actionable(sched, now),
        "source": raw["source"],
        "created_at": raw["created_at"],
        "updated_at": raw["updated_at"],
        "version": raw["version"],
    }


def _load_row(conn: sqlite3.Connection, task_id: str) -> dict[str, Any] | None:
    row = conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
    return dict(row) if row else None


def _check_expected_version(raw: dict[str, Any], expected_version: int | None) -> None:
    if expected_version is not None and raw["version"] != expected_version:
        raise ConcurrentUpdateError(raw["id"], expected_version, raw["version"])


def _write_task(conn: sqlite3.Connection, raw: dict[str, Any], fields: dict[str, Any]) -> None:
    """UPDATE guarded by the version read with the row; bumps version and updated_at."""
    assignments = ", ".join(f"{col} = ?" for col in fields)
    cur = conn.execute(
        f"UPDATE tasks SET {assignments}, version = version + 1 WHERE id = ? AND version = ?",
        [*fields.values(), raw["id"], raw["version"]],
    )
    if cur.rowcount == 0:
        raise ConcurrentUpdateError(raw["id"], raw["version"])


def ensure_db() -> Path:
    """Bootstrap database on first run. Returns the database path."""
    return init_database()


def create_task(
    workspace_id: str,
    title: str,
    *,
    description: str | None = None,
    importance: int | None = None,
    due_date: str | datetime | None = None,
    recurrence: dict | RepetitionRule | None = None,
    source: str = "manual",
    task_id: str | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    """
    Create a task in a workspace. A recurring task starts with next_due_at = now so its
    first occurrence is immediately actionable. Raises ValueError on invalid input.
    """
    if not title or not title.strip():
        raise ValueError("Task title is required.")
    eff_importance = importance if importance is not None else DEFAULT_IMPORTANCE
    _validate_importance(eff_importance)
    if source not in SOURCES:
        raise ValueError(f"source must be one of {sorted(SOURCES)}")
    rule = parse_rule(recurrence)
    now = now or utc_now()
    tid = task_id or _new_task_id()
    stamp = format_instant(now)
    next_due_at = occurrence.initial_next_due_at(rule, now)
    columns: dict[str, Any] = {
        "id": tid,
        "workspace_id": workspace_id,
        "title": title.strip(),
        "description": description or None,
        "importance": eff_importance,
        "completed": 0,
        "completed_at": None,
        "due_date": format_instant(parse_instant(due_date)),
        "next_due_at": format_instant(next_due_at),
        **rule_to_columns(rule),
        "source": source,
        "created_at": stamp,
        "updated_at": stamp,
        "version": 1,
    }
    conn = get_connection()
    try:
        if not conn.execute("SELECT 1 FROM workspaces WHERE id = ?", (workspace_id,)).fetchone():
            raise ValueError(f"Workspace {workspace_id} not found.")
        placeholders = ", ".join("?" * len(columns))
        conn.execute(
            f"INSERT INTO tasks ({', '.join(columns)}) VALUES ({placeholders})",
            list(columns.values()),
        )
        _record_history(conn, tid, "created", now, {"title": columns["title"], "recurring": rule is not None})
        conn.commit()
    finally:
        conn.close()
    logger.info("[task_service] created task %s in workspace %s (recurring=%s)", tid, workspace_id, rule is not None)
    return get_task(tid, now=now)


def get_task(task_id: str, *, now: datetime | None = None) -> dict[str, Any] | None:
    """Return one task by id, with its state evaluated at `now`."""
    conn = get_connection()
    try:
        row = conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
        return _task_row_to_dict(row, now or utc_now()) if row else None
    finally:
        conn.close()


def list_tasks(
    workspace_id: str | None = None,
    *,
    completed: bool | None = None,
    include_dormant: bool = False,
    search: str | None = None,
    sort_by: str = "created_at",
    order: str = "desc",
    limit: int = 500,
    now: datetime | None = None,
) -> list[dict[str, Any]]:
    """
    List tasks. Recurring tasks whose next occurrence is still in the future are hidden
    unless include_dormant is True. search matches title or description (case-insensitive).
    sort_by: created_at, importance, due_date. order: asc | desc.
    """
    sort_col = SORT_FIELDS.get((sort_by or "created_at").strip().lower())
    if sort_col is None:
        raise ValueError(f"sort_by must be one of {sorted(SORT_FIELDS)}")
    direction = (order or "desc").strip().upper()
    if direction not in ("ASC", "DESC"):
        raise ValueError("order must be asc or desc")
    now = now or utc_now()
    sql = "SELECT * FROM tasks WHERE 1=1"
    params: list[Any] = []
    if workspace_id:
        sql += " AND workspace_id = ?"
        params.append(workspace_id)
    if completed is not None:
        sql += " AND completed = ?"
        params.append(1 if completed else 0)
    if search and search.strip():
        s = f"%{search.strip()}%"
        sql += " AND (title LIKE ? OR description LIKE ?)"
        params.extend([s, s])
    sql += f" ORDER BY {sort_col} IS NULL, {sort_col} {direction}, created_at DESC"
    conn = get_connection()
    try:
        rows = conn.execute(sql, params).fetchall()
    finally:
        conn.close()
    out: list[dict[str, Any]] = []
    for row in rows:
        task = _task_row_to_dict(row, now)
        if not include_dormant and not task["actionable"]:
            continue
        out.append(task)
        if len(out) >= limit:
            break
    return out


def workspace_task_counts(workspace_id: str, *, now: datetime | None = None) -> dict[str, int]:
    """Number of active, dormant and completed tasks in a workspace at `now`."""
    now = now or utc_now()
    conn = get_connection()
    try:
        rows = conn.execute("SELECT * FROM tasks WHERE workspace_id = ?", (workspace_id,)).fetchall()
    finally:
        conn.close()
    counts = occurrence.count_states((schedule_from_row(dict(r)) for r in rows), now)
    return {state.value: n for state, n in counts.items()}


def update_task(
    task_id: str,
    *,
    title: str | None = None,
    description: str | None = None,
    importance: int | None = _UNSET,
    due_date: str | datetime | None = _UNSET,
    recurrence: dict | RepetitionRule | None = _UNSET,
    expected_version: int | None = None,
    now: datetime | None = None,
) -> dict[str, Any] | None:
    """
    Update task fields. Only provided fields change; edits never move next_due_at except:
    attaching a rule to a one-off task anchors it at now, removing the rule clears it.
    Replacing one rule with another keeps the current anchor.
    """
    if title is not None and not title.strip():
        raise ValueError("Task title cannot be empty.")
    if importance is not _UNSET and importance is not None:
        _validate_importance(importance)
    new_rule = parse_rule(recurrence) if recurrence is not _UNSET else None
    now = now or utc_now()
    conn = get_connection()
    try:
        raw = _load_row(conn, task_id)
        if raw is None:
            return None
        _check_expected_version(raw, expected_version)
        fields: dict[str, Any] = {"updated_at": format_instant(now)}
        if title is not None:
            fields["title"] = title.strip()
        if description is not None:
            fields["description"] = description or None
        if importance is not _UNSET:
            fields["importance"] = DEFAULT_IMPORTANCE if importance is None else importance
        if due_date is not _UNSET:
            fields["due_date"] = format_instant(parse_instant(due_date))
        if recurrence is not _UNSET:
            fields.update(rule_to_columns(new_rule))
            if new_rule is None:
                fields["next_due_at"] = None
            elif rule_from_columns(raw) is None:
                fields["next_due_at"] = format_instant(occurrence.initial_next_due_at(new_rule, now))
            logger.info("[task_service] update_task %s recurrence: %s", task_id, new_rule.to_wire() if new_rule else None)
        _write_task(conn, raw, fields)
        _record_history(conn, task_id, "updated", now, sorted(k for k in fields if k != "updated_at"))
        conn.commit()
    finally:
        conn.close()
    return get_task(task_id, now=now)


def complete_task(
    task_id: str,
    *,
    expected_version: int | None = None,
    now: datetime | None = None,
) -> dict[str, Any] | None:
    """
    Mark a task done. One-off tasks (and recurring tasks whose rule is exhausted) complete;
    recurring tasks advance next_due_at and stay incomplete. Returns None if not found.
    """
    now = now or utc_now()
    conn = get_connection()
    try:
        raw = _load_row(conn, task_id)
        if raw is None:
            return None
        _check_expected_version(raw, expected_version)
        before = schedule_from_row(raw)
        after = occurrence.complete_task(before, now)
        if after == before:
            return _task_row_to_dict(raw, now)
        _write_task(conn, raw, {**_schedule_to_columns(after), "updated_at": format_instant(now)})
        if not after.completed:
            event = "occurrence_advanced"
            payload = {
                "from": format_instant(before.next_due_at or before.due_date),
                "to": format_instant(after.next_due_at),
            }
        elif before.is_recurring:
            event = "recurrence_exhausted"
            payload = {"completed_at": format_instant(now)}
        else:
            event = "completed"
            payload = {"completed_at": format_instant(now)}
        _record_history(conn, task_id, event, now, payload)
        conn.commit()
    finally:
        conn.close()
    logger.info("[task_service] complete_task %s: %s", task_id, event)
    return get_task(task_id, now=now)


def restore_task(
    task_id: str,
    *,
    expected_version: int | None = None,
    now: datetime | None = None,
) -> dict[str, Any] | None:
    """Undo a completion (completed=False, completed_at cleared). Returns None if not found."""
    now = now or utc_now()
    conn = get_connection()
    try:
        raw = _load_row(conn, task_id)
        if raw is None:
            return None
        _check_expected_version(raw, expected_version)
        before = schedule_from_row(raw)
        if not before.completed:
            return _task_row_to_dict(raw, now)
        after = occurrence.restore_task(before)
        _write_task(conn, raw, {**_schedule_to_columns(after), "updated_at": format_instant(now)})
        _record_history(conn, task_id, "restored", now)
        conn.commit()
    finally:
        conn.close()
    logger.info("[task_service] restored task %s", task_id)
    return get_task(task_id, now=now)


def delete_task(task_id: str) -> bool:
    """Delete a task and its history. Returns True if deleted, False if not found."""
    conn = get_connection()
    try:
        row = conn.execute("SELECT id FROM tasks WHERE id = ?", (task_id,)).fetchone()
        if not row:
            return False
        conn.execute("DELETE FROM task_history WHERE task_id = ?", (task_id,))
        conn.execute("DELETE FROM tasks WHERE id = ?", (task_id,))
        conn.commit()
        return True
    finally:
        conn.close()


def get_task_history(task_id: str, limit: int = 100) -> list[dict[str, Any]]:
    """Return history events for a task, newest first."""
    conn = get_connection()
    try:
        rows = conn.execute(
            "SELECT id, task_id, timestamp, event, payload FROM task_history WHERE task_id = ? ORDER BY id DESC LIMIT ?",
            (task_id, limit),
        ).fetchall()
        out = []
        for r in rows:
            d = dict(r)
            if d.get("payload"):
                d["payload"] = json.loads(d["payload"])
            out.append(d)
        return out
    finally:
        conn.close()
