"""
Workspace service: CRUD for workspaces. Deleting a workspace removes its tasks.
"""
from __future__ import annotations

import logging
from typing import Any

from ulid import ULID

from database import get_connection
from date_utils import now_iso

logger = logging.getLogger("workspace_service")

DEFAULT_ICON = "folder"
_COLUMNS = "id, name, description, icon, created_at, updated_at"


def _new_id() -> str:
    return str(ULID())


def create_workspace(
    name: str,
    *,
    description: str | None = None,
    icon: str | None = None,
    workspace_id: str | None = None,
) -> dict[str, Any]:
    """Create a workspace. Name is required (non-blank)."""
    if not name or not name.strip():
        raise ValueError("Workspace name is required.")
    wid = workspace_id or _new_id()
    now = now_iso()
    conn = get_connection()
    try:
        conn.execute(
            f"INSERT INTO workspaces ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?)",
            (wid, name.strip(), description.strip() if description else None, icon or DEFAULT_ICON, now, now),
        )
        conn.commit()
    finally:
        conn.close()
    logger.info("[workspace_service] created workspace %s (%s)", wid, name.strip())
    return get_workspace(wid)


def list_workspaces() -> list[dict[str, Any]]:
    """List workspaces ordered by name."""
    conn = get_connection()
    try:
        rows = conn.execute(f"SELECT {_COLUMNS} FROM workspaces ORDER BY name COLLATE NOCASE").fetchall()
        return [dict(r) for r in rows]
    finally:
        conn.close()


def get_workspace(workspace_id: str) -> dict[str, Any] | None:
    conn = get_connection()
    try:
        row = conn.execute(f"SELECT {_COLUMNS} FROM workspaces WHERE id = ?", (workspace_id,)).fetchone()
        return dict(row) if row else None
    finally:
        conn.close()


def update_workspace(
    workspace_id: str,
    *,
    name: str | None = None,
    description: str | None = None,
    icon: str | None = None,
) -> dict[str, Any] | None:
    """Update workspace. Returns updated workspace or None if not found."""
    if name is not None and not name.strip():
        raise ValueError("Workspace name cannot be empty.")
    conn = get_connection()
    try:
        row = conn.execute("SELECT id FROM workspaces WHERE id = ?", (workspace_id,)).fetchone()
        if not row:
            return None
        updates: list[str] = ["updated_at = ?"]
        params: list[Any] = [now_iso()]
        if name is not None:
            updates.append("name = ?")
            params.append(name.strip())
        if description is not None:
            updates.append("description = ?")
            params.append(description.strip() if description else None)
        if icon is not None:
            updates.append("icon = ?")
            params.append(icon or DEFAULT_ICON)
        params.append(workspace_id)
        conn.execute(f"UPDATE workspaces SET {', '.join(updates)} WHERE id = ?", params)
        conn.commit()
    finally:
        conn.close()
    return get_workspace(workspace_id)


def delete_workspace(workspace_id: str) -> bool:
    """Delete workspace and all of its tasks. Returns True if deleted."""
    conn = get_connection()
    try:
        row = conn.execute("SELECT id FROM workspaces WHERE id = ?", (workspace_id,)).fetchone()
        if not row:
            return False
        conn.execute("DELETE FROM workspaces WHERE id = ?", (workspace_id,))
        conn.commit()
    finally:
        conn.close()
    logger.info("[workspace_service] deleted workspace %s", workspace_id)
    return True
