"""SQLite-backed task, application and milestone storage."""

from __future__ import annotations

import json
import sqlite3
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from task_escrow_service.services.database import Database


class DuplicateApplicationError(Exception):
    """Raised when an agent applies to the same task twice."""


class TaskStore:
    """
    Row access for tasks, applications and milestones.

    Writes join the caller's Database.transaction() when one is open, so the
    business layer decides the transaction boundary.
    """

    _TASK_COLUMNS: tuple[str, ...] = (
        "task_id",
        "creator_id",
        "title",
        "description",
        "reward",
        "reward_token",
        "deadline",
        "has_insurance",
        "insurance_premium",
        "category",
        "tags",
        "metadata_hash",
        "status",
        "assignee_id",
        "proof_hash",
        "created_at",
        "assigned_at",
        "completed_at",
        "cancelled_at",
    )
    _TASK_COLUMNS_SQL = ", ".join(_TASK_COLUMNS)
    _TASK_SELECT_BASE_SQL = "SELECT " + _TASK_COLUMNS_SQL + " FROM tasks"  # nosec B608
    _UPDATABLE_COLUMNS: frozenset[str] = frozenset(
        {
            "status",
            "assignee_id",
            "proof_hash",
            "assigned_at",
            "completed_at",
            "cancelled_at",
        }
    )

    _MILESTONE_COLUMNS: tuple[str, ...] = (
        "milestone_id",
        "task_id",
        "title",
        "description",
        "reward",
        "status",
        "created_at",
        "completed_at",
        "rejected_at",
    )
    _MILESTONE_SELECT_BASE_SQL = (
        "SELECT " + ", ".join(_MILESTONE_COLUMNS) + " FROM milestones"  # nosec B608
    )

    def __init__(self, database: Database) -> None:
        self._database = database
        self._init_schema()

    def _init_schema(self) -> None:
        self._database.executescript(
            """
            CREATE TABLE IF NOT EXISTS tasks (
                task_id INTEGER PRIMARY KEY AUTOINCREMENT,
                creator_id TEXT NOT NULL,
                title TEXT NOT NULL,
                description TEXT NOT NULL,
                reward INTEGER NOT NULL CHECK (reward > 0),
                reward_token TEXT NOT NULL,
                deadline TEXT NOT NULL,
                has_insurance INTEGER NOT NULL DEFAULT 0,
                insurance_premium INTEGER NOT NULL DEFAULT 0,
                category TEXT NOT NULL DEFAULT '',
                tags TEXT NOT NULL DEFAULT '[]',
                metadata_hash TEXT,
                status TEXT NOT NULL DEFAULT 'created',
                assignee_id TEXT,
                proof_hash TEXT,
                created_at TEXT NOT NULL,
                assigned_at TEXT,
                completed_at TEXT,
                cancelled_at TEXT
            );

            CREATE TABLE IF NOT EXISTS applications (
                task_id INTEGER NOT NULL REFERENCES tasks(task_id),
                applicant_id TEXT NOT NULL,
                proposal TEXT NOT NULL,
                applied_at TEXT NOT NULL,
                UNIQUE(task_id, applicant_id)
            );

            CREATE TABLE IF NOT EXISTS milestones (
                milestone_id INTEGER PRIMARY KEY AUTOINCREMENT,
                task_id INTEGER NOT NULL REFERENCES tasks(task_id),
                title TEXT NOT NULL,
                description TEXT NOT NULL,
                reward INTEGER NOT NULL CHECK (reward > 0),
                status TEXT NOT NULL DEFAULT 'pending',
                created_at TEXT NOT NULL,
                completed_at TEXT,
                rejected_at TEXT
            );

            CREATE INDEX IF NOT EXISTS ix_tasks_status ON tasks(status);
            CREATE INDEX IF NOT EXISTS ix_milestones_task ON milestones(task_id);
            """
        )

    def _row_to_task(self, row: sqlite3.Row) -> dict[str, Any]:
        task = {column: row[column] for column in self._TASK_COLUMNS}
        task["has_insurance"] = bool(task["has_insurance"])
        task["tags"] = json.loads(task["tags"])
        return task

    def _row_to_milestone(self, row: sqlite3.Row) -> dict[str, Any]:
        return {column: row[column] for column in self._MILESTONE_COLUMNS}

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    def insert_task(self, task_data: dict[str, Any]) -> int:
        """Insert a new task row and return its assigned task_id."""
        columns = [column for column in self._TASK_COLUMNS if column != "task_id"]
        values: list[object] = []
        for column in columns:
            value = task_data.get(column)
            if column == "tags":
                value = json.dumps(sorted(value or []))
            elif column == "has_insurance":
                value = 1 if value else 0
            values.append(value)

        placeholders = ", ".join("?" for _ in columns)
        query = (
            "INSERT INTO tasks (" + ", ".join(columns) + ") VALUES (" + placeholders + ")"  # nosec B608
        )
        with self._database.transaction() as db:
            cursor = db.execute(query, values)
        return int(cursor.lastrowid or 0)

    def get_task(self, task_id: int) -> dict[str, Any] | None:
        """Fetch a task by ID."""
        with self._database.lock:
            row = self._database.connection.execute(
                self._TASK_SELECT_BASE_SQL + " WHERE task_id = ?",
                (task_id,),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_task(row)

    def update_task(
        self,
        task_id: int,
        updates: dict[str, Any],
        *,
        expected_status: str | None,
    ) -> int:
        """Update task columns and return the number of affected rows."""
        if len(updates) == 0:
            return 0

        if any(column not in self._UPDATABLE_COLUMNS for column in updates):
            msg = "Attempted to update unknown or immutable task column"
            raise ValueError(msg)

        set_clause = ", ".join(f"{column} = ?" for column in updates)
        params: list[object] = list(updates.values())

        query = "UPDATE tasks SET " + set_clause + " WHERE task_id = ?"  # nosec B608
        params.append(task_id)
        if expected_status is not None:
            query += " AND status = ?"
            params.append(expected_status)

        with self._database.transaction() as db:
            cursor = db.execute(query, params)
        return int(cursor.rowcount)

    def list_tasks(
        self,
        status: str | None,
        creator_id: str | None,
        assignee_id: str | None,
        category: str | None,
        tag: str | None,
        limit: int | None,
        offset: int | None,
    ) -> list[dict[str, Any]]:
        """List tasks with optional filters, newest first."""
        query = self._TASK_SELECT_BASE_SQL
        clauses: list[str] = []
        params: list[object] = []

        if status is not None:
            clauses.append("status = ?")
            params.append(status)
        if creator_id is not None:
            clauses.append("creator_id = ?")
            params.append(creator_id)
        if assignee_id is not None:
            clauses.append("assignee_id = ?")
            params.append(assignee_id)
        if category is not None:
            clauses.append("category = ?")
            params.append(category)
        if tag is not None:
            clauses.append("EXISTS (SELECT 1 FROM json_each(tasks.tags) WHERE json_each.value = ?)")
            params.append(tag)

        if len(clauses) > 0:
            query += " WHERE " + " AND ".join(clauses)

        query += " ORDER BY task_id DESC"

        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
            if offset is not None:
                query += " OFFSET ?"
                params.append(offset)
        elif offset is not None:
            query += " LIMIT -1 OFFSET ?"
            params.append(offset)

        with self._database.lock:
            rows = self._database.connection.execute(query, params).fetchall()
        return [self._row_to_task(row) for row in rows]

    def count_tasks(self) -> int:
        """Count total tasks."""
        with self._database.lock:
            row = self._database.connection.execute("SELECT COUNT(*) FROM tasks").fetchone()
        return int(row[0]) if row is not None else 0

    def count_tasks_by_status(self) -> dict[str, int]:
        """Count tasks grouped by status."""
        with self._database.lock:
            rows = self._database.connection.execute(
                "SELECT status, COUNT(*) FROM tasks GROUP BY status"
            ).fetchall()
        return {str(row[0]): int(row[1]) for row in rows}

    # ------------------------------------------------------------------
    # Applications
    # ------------------------------------------------------------------

    def insert_application(self, application: dict[str, Any]) -> None:
        """Insert an application. Raises DuplicateApplicationError on a repeat."""
        try:
            with self._database.transaction() as db:
                db.execute(
                    "INSERT INTO applications (task_id, applicant_id, proposal, applied_at) "
                    "VALUES (?, ?, ?, ?)",
                    (
                        application["task_id"],
                        application["applicant_id"],
                        application["proposal"],
                        application["applied_at"],
                    ),
                )
        except sqlite3.IntegrityError as exc:
            if "unique" in str(exc).lower():
                raise DuplicateApplicationError("This agent already applied to this task") from exc
            raise

    def has_applied(self, task_id: int, applicant_id: str) -> bool:
        """Check whether applicant_id has applied to task_id."""
        with self._database.lock:
            row = self._database.connection.execute(
                "SELECT 1 FROM applications WHERE task_id = ? AND applicant_id = ?",
                (task_id, applicant_id),
            ).fetchone()
        return row is not None

    def get_applications(self, task_id: int) -> list[dict[str, Any]]:
        """Fetch all applications for a task in submission order."""
        with self._database.lock:
            rows = self._database.connection.execute(
                "SELECT task_id, applicant_id, proposal, applied_at FROM applications "
                "WHERE task_id = ? ORDER BY rowid",
                (task_id,),
            ).fetchall()
        return [
            {
                "task_id": row["task_id"],
                "applicant_id": row["applicant_id"],
                "proposal": row["proposal"],
                "applied_at": row["applied_at"],
            }
            for row in rows
        ]

    # ------------------------------------------------------------------
    # Milestones
    # ------------------------------------------------------------------

    def insert_milestone(self, milestone: dict[str, Any]) -> int:
        """Insert a milestone and return its assigned milestone_id."""
        with self._database.transaction() as db:
            cursor = db.execute(
                "INSERT INTO milestones (task_id, title, description, reward, status, created_at) "
                "VALUES (?, ?, ?, ?, 'pending', ?)",
                (
                    milestone["task_id"],
                    milestone["title"],
                    milestone["description"],
                    milestone["reward"],
                    milestone["created_at"],
                ),
            )
        return int(cursor.lastrowid or 0)

    def get_milestone(self, milestone_id: int) -> dict[str, Any] | None:
        """Fetch a milestone by ID."""
        with self._database.lock:
            row = self._database.connection.execute(
                self._MILESTONE_SELECT_BASE_SQL + " WHERE milestone_id = ?",
                (milestone_id,),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_milestone(row)

    def list_milestones(self, task_id: int) -> list[dict[str, Any]]:
        """Fetch all milestones of a task in creation order."""
        with self._database.lock:
            rows = self._database.connection.execute(
                self._MILESTONE_SELECT_BASE_SQL + " WHERE task_id = ? ORDER BY milestone_id",
                (task_id,),
            ).fetchall()
        return [self._row_to_milestone(row) for row in rows]

    def update_milestone_status(
        self,
        milestone_id: int,
        new_status: str,
        timestamp: str,
        *,
        expected_status: str,
    ) -> int:
        """Move a milestone from expected_status to new_status."""
        timestamp_column = {"completed": "completed_at", "rejected": "rejected_at"}[new_status]
        with self._database.transaction() as db:
            cursor = db.execute(
                "UPDATE milestones SET status = ?, "
                + timestamp_column
                + " = ? WHERE milestone_id = ? AND status = ?",  # nosec B608
                (new_status, timestamp, milestone_id, expected_status),
            )
        return int(cursor.rowcount)

    def committed_milestone_reward(self, task_id: int) -> int:
        """Sum of rewards of all non-rejected milestones of a task."""
        with self._database.lock:
            row = self._database.connection.execute(
                "SELECT COALESCE(SUM(reward), 0) FROM milestones "
                "WHERE task_id = ? AND status != 'rejected'",
                (task_id,),
            ).fetchone()
        return int(row[0]) if row is not None else 0

    def count_milestones_not_completed(self, task_id: int) -> int:
        """Count milestones of a task that are not in the completed state."""
        with self._database.lock:
            row = self._database.connection.execute(
                "SELECT COUNT(*) FROM milestones WHERE task_id = ? AND status != 'completed'",
                (task_id,),
            ).fetchone()
        return int(row[0]) if row is not None else 0
