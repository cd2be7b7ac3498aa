"""SQLite-backed dispute storage."""

from __future__ import annotations

import sqlite3
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from task_escrow_service.services.database import Database


class DuplicateDisputeError(Exception):
    """Raised when a task already has an open dispute."""


class DisputeStore:
    """Row access for disputes. At most one open dispute exists per task."""

    _SELECT_SQL = (
        "SELECT dispute_id, task_id, creator_id, reason, status, resolution, favors_creator, "
        "compensation, resolved_by, created_at, resolved_at FROM disputes"
    )

    def __init__(self, database: Database) -> None:
        self._database = database
        self._init_schema()

    def _init_schema(self) -> None:
        self._database.executescript(
            """
            CREATE TABLE IF NOT EXISTS disputes (
                dispute_id INTEGER PRIMARY KEY AUTOINCREMENT,
                task_id INTEGER NOT NULL,
                creator_id TEXT NOT NULL,
                reason TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'open',
                resolution TEXT,
                favors_creator INTEGER,
                compensation INTEGER NOT NULL DEFAULT 0,
                resolved_by TEXT,
                created_at TEXT NOT NULL,
                resolved_at TEXT
            );

            CREATE UNIQUE INDEX IF NOT EXISTS ux_disputes_one_open_per_task
                ON disputes(task_id) WHERE status = 'open';
            """
        )

    @staticmethod
    def _row_to_dispute(row: sqlite3.Row) -> dict[str, Any]:
        favors_creator = row["favors_creator"]
        return {
            "dispute_id": int(row["dispute_id"]),
            "task_id": int(row["task_id"]),
            "creator_id": str(row["creator_id"]),
            "reason": str(row["reason"]),
            "status": str(row["status"]),
            "resolution": str(row["resolution"]) if row["resolution"] is not None else None,
            "favors_creator": bool(favors_creator) if favors_creator is not None else None,
            "compensation": int(row["compensation"]),
            "resolved_by": str(row["resolved_by"]) if row["resolved_by"] is not None else None,
            "created_at": str(row["created_at"]),
            "resolved_at": str(row["resolved_at"]) if row["resolved_at"] is not None else None,
        }

    def insert_dispute(self, task_id: int, creator_id: str, reason: str, created_at: str) -> int:
        """Open a dispute and return its dispute_id."""
        try:
            with self._database.transaction() as db:
                cursor = db.execute(
                    "INSERT INTO disputes (task_id, creator_id, reason, status, created_at) "
                    "VALUES (?, ?, ?, 'open', ?)",
                    (task_id, creator_id, reason, created_at),
                )
        except sqlite3.IntegrityError as exc:
            if "unique" in str(exc).lower():
                raise DuplicateDisputeError(
                    f"An open dispute already exists for task_id={task_id}"
                ) from exc
            raise
        return int(cursor.lastrowid or 0)

    def get_dispute(self, dispute_id: int) -> dict[str, Any] | None:
        """Fetch a dispute by ID."""
        with self._database.lock:
            row = self._database.connection.execute(
                self._SELECT_SQL + " WHERE dispute_id = ?",
                (dispute_id,),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_dispute(row)

    def list_disputes(self, task_id: int) -> list[dict[str, Any]]:
        """All disputes ever filed on a task, oldest first."""
        with self._database.lock:
            rows = self._database.connection.execute(
                self._SELECT_SQL + " WHERE task_id = ? ORDER BY dispute_id",
                (task_id,),
            ).fetchall()
        return [self._row_to_dispute(row) for row in rows]

    def has_open_dispute(self, task_id: int) -> bool:
        """Check whether task_id currently has an open dispute."""
        with self._database.lock:
            row = self._database.connection.execute(
                "SELECT 1 FROM disputes WHERE task_id = ? AND status = 'open'",
                (task_id,),
            ).fetchone()
        return row is not None

    def count_open(self) -> int:
        """Number of open disputes across all tasks."""
        with self._database.lock:
            row = self._database.connection.execute(
                "SELECT COUNT(*) FROM disputes WHERE status = 'open'"
            ).fetchone()
        return int(row[0]) if row is not None else 0

    def mark_resolved(
        self,
        dispute_id: int,
        *,
        resolution: str,
        favors_creator: bool,
        compensation: int,
        resolved_by: str,
        resolved_at: str,
    ) -> int:
        """Close an open dispute. Returns the number of affected rows."""
        with self._database.transaction() as db:
            cursor = db.execute(
                "UPDATE disputes SET status = 'resolved', resolution = ?, favors_creator = ?, "
                "compensation = ?, resolved_by = ?, resolved_at = ? "
                "WHERE dispute_id = ? AND status = 'open'",
                (
                    resolution,
                    1 if favors_creator else 0,
                    compensation,
                    resolved_by,
                    resolved_at,
                    dispute_id,
                ),
            )
        return int(cursor.rowcount)
