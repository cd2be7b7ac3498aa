"""Per-account completion statistics."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from task_escrow_service.errors import InvalidInput

if TYPE_CHECKING:
    from task_escrow_service.services.database import Database


class StatisticsTracker:
    """
    Tracks completed tasks and earnings per account.

    Stats only ever grow. A completion recorded before a dispute is not
    reversed when the dispute is resolved.
    """

    def __init__(self, database: Database) -> None:
        self._database = database
        self._database.executescript(
            """
            CREATE TABLE IF NOT EXISTS user_stats (
                account_id TEXT PRIMARY KEY,
                tasks_completed INTEGER NOT NULL DEFAULT 0,
                total_earnings INTEGER NOT NULL DEFAULT 0
            );
            """
        )

    def record_completion(self, account_id: str, amount_paid: int) -> None:
        """Count one completed task and add amount_paid to the account's earnings."""
        if isinstance(amount_paid, bool) or not isinstance(amount_paid, int) or amount_paid < 0:
            raise InvalidInput("INVALID_AMOUNT", "amount_paid must be a non-negative integer")
        with self._database.transaction() as db:
            db.execute(
                "INSERT INTO user_stats (account_id, tasks_completed, total_earnings) "
                "VALUES (?, 1, ?) "
                "ON CONFLICT(account_id) DO UPDATE SET "
                "tasks_completed = tasks_completed + 1, "
                "total_earnings = total_earnings + excluded.total_earnings",
                (account_id, amount_paid),
            )

    def get_stats(self, account_id: str) -> dict[str, Any]:
        """Stats for account_id. Unknown accounts report zeros."""
        with self._database.lock:
            row = self._database.connection.execute(
                "SELECT tasks_completed, total_earnings FROM user_stats WHERE account_id = ?",
                (account_id,),
            ).fetchone()
        if row is None:
            return {"account_id": account_id, "tasks_completed": 0, "total_earnings": 0}
        return {
            "account_id": account_id,
            "tasks_completed": int(row["tasks_completed"]),
            "total_earnings": int(row["total_earnings"]),
        }
