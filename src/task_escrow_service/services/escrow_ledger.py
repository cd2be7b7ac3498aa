"""Escrow ledger: balances, allowances, task escrow and the insurance pool."""

from __future__ import annotations

import sqlite3
import uuid
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, cast

from task_escrow_service.errors import (
    InsufficientFunds,
    InvalidInput,
    InvalidState,
    NotFound,
    TransferFailed,
)
from task_escrow_service.logging import get_logger
from task_escrow_service.services.database import MAX_INTEGER

if TYPE_CHECKING:
    from task_escrow_service.services.database import Database


def _is_positive_int(value: object) -> bool:
    """Check if value is a positive integer (not float, not bool) that fits a column."""
    return isinstance(value, int) and not isinstance(value, bool) and 0 < value <= MAX_INTEGER


class EscrowLedger:
    """
    Holds fungible balances per (account, token) and task-scoped escrow.

    Funds enter escrow with transferFrom semantics: the payer must have
    approved the platform for at least the amount, and the allowance is
    consumed by the lock. An escrow is settled exactly once, either
    released to a recipient or refunded to the payer; the shared status
    column makes the two mutually exclusive.

    Every balance change writes a transaction log row in the same database
    transaction. Methods join an enclosing Database.transaction() so that
    callers can pair a record mutation with a fund movement.
    """

    def __init__(self, database: Database) -> None:
        self._database = database
        self._logger = get_logger(__name__)
        self._init_schema()

    def _init_schema(self) -> None:
        """Create tables if they don't exist."""
        self._database.executescript(
            """
            CREATE TABLE IF NOT EXISTS balances (
                account_id TEXT NOT NULL,
                token TEXT NOT NULL,
                balance INTEGER NOT NULL DEFAULT 0 CHECK (balance >= 0),
                PRIMARY KEY (account_id, token)
            );

            CREATE TABLE IF NOT EXISTS allowances (
                owner_id TEXT NOT NULL,
                token TEXT NOT NULL,
                amount INTEGER NOT NULL DEFAULT 0 CHECK (amount >= 0),
                updated_at TEXT NOT NULL,
                PRIMARY KEY (owner_id, token)
            );

            CREATE TABLE IF NOT EXISTS ledger_transactions (
                tx_id TEXT PRIMARY KEY,
                account_id TEXT NOT NULL,
                token TEXT NOT NULL,
                type TEXT NOT NULL,
                amount INTEGER NOT NULL CHECK (amount > 0),
                balance_after INTEGER NOT NULL,
                reference TEXT NOT NULL,
                timestamp TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS escrow (
                task_id INTEGER PRIMARY KEY,
                payer_id TEXT NOT NULL,
                token TEXT NOT NULL,
                amount INTEGER NOT NULL CHECK (amount > 0),
                status TEXT NOT NULL DEFAULT 'locked',
                recipient_id TEXT,
                created_at TEXT NOT NULL,
                settled_at TEXT
            );

            CREATE TABLE IF NOT EXISTS insurance_pool (
                token TEXT PRIMARY KEY,
                balance INTEGER NOT NULL DEFAULT 0 CHECK (balance >= 0)
            );

            CREATE UNIQUE INDEX IF NOT EXISTS ux_deposit_reference
                ON ledger_transactions(account_id, token, reference)
                WHERE type = 'deposit';

            CREATE INDEX IF NOT EXISTS ix_ledger_transactions_account
                ON ledger_transactions(account_id);
            """
        )

    @staticmethod
    def _now() -> str:
        """Current UTC timestamp in ISO 8601 format."""
        return datetime.now(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")

    @staticmethod
    def _new_tx_id() -> str:
        return f"tx-{uuid.uuid4()}"

    @staticmethod
    def _require_amount(amount: object) -> int:
        if not _is_positive_int(amount):
            raise InvalidInput("INVALID_AMOUNT", "Amount must be a positive integer")
        return cast("int", amount)

    @staticmethod
    def _require_token(token: object) -> str:
        if not isinstance(token, str) or not token.strip():
            raise InvalidInput("INVALID_TOKEN", "Token must be a non-empty string")
        return token

    # ------------------------------------------------------------------
    # Low-level balance movements (caller holds an open transaction)
    # ------------------------------------------------------------------

    def _log_tx(
        self,
        account_id: str,
        token: str,
        tx_type: str,
        amount: int,
        balance_after: int,
        reference: str,
        now: str,
    ) -> str:
        tx_id = self._new_tx_id()
        self._database.connection.execute(
            "INSERT INTO ledger_transactions "
            "(tx_id, account_id, token, type, amount, balance_after, reference, timestamp) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            (tx_id, account_id, token, tx_type, amount, balance_after, reference, now),
        )
        return tx_id

    def _balance_of(self, account_id: str, token: str) -> int:
        row = self._database.connection.execute(
            "SELECT balance FROM balances WHERE account_id = ? AND token = ?",
            (account_id, token),
        ).fetchone()
        return int(row[0]) if row is not None else 0

    def _credit(
        self,
        account_id: str,
        token: str,
        amount: int,
        tx_type: str,
        reference: str,
        now: str,
    ) -> int:
        if self._balance_of(account_id, token) > MAX_INTEGER - amount:
            raise TransferFailed(
                "TRANSFER_FAILED",
                "Credit would exceed the largest representable balance",
                {"account_id": account_id, "token": token, "amount": amount},
            )
        db = self._database.connection
        db.execute(
            "INSERT INTO balances (account_id, token, balance) VALUES (?, ?, ?) "
            "ON CONFLICT(account_id, token) DO UPDATE SET balance = balance + excluded.balance",
            (account_id, token, amount),
        )
        new_balance = self._balance_of(account_id, token)
        self._log_tx(account_id, token, tx_type, amount, new_balance, reference, now)
        return new_balance

    def _debit(
        self,
        account_id: str,
        token: str,
        amount: int,
        tx_type: str,
        reference: str,
        now: str,
    ) -> int:
        cursor = self._database.connection.execute(
            "UPDATE balances SET balance = balance - ? "
            "WHERE account_id = ? AND token = ? AND balance >= ?",
            (amount, account_id, token, amount),
        )
        if cursor.rowcount == 0:
            raise InsufficientFunds(
                "INSUFFICIENT_FUNDS",
                "Insufficient balance for transfer",
                {
                    "account_id": account_id,
                    "token": token,
                    "required": amount,
                    "available": self._balance_of(account_id, token),
                },
            )
        new_balance = self._balance_of(account_id, token)
        self._log_tx(account_id, token, tx_type, amount, new_balance, reference, now)
        return new_balance

    def _pull(
        self,
        payer_id: str,
        token: str,
        amount: int,
        tx_type: str,
        reference: str,
        now: str,
    ) -> None:
        """transferFrom: consume allowance, then debit the payer."""
        allowance = self._allowance_of(payer_id, token)
        if allowance < amount:
            raise InsufficientFunds(
                "INSUFFICIENT_ALLOWANCE",
                "Allowance granted to the escrow does not cover the amount",
                {"account_id": payer_id, "token": token, "required": amount, "approved": allowance},
            )
        self._debit(payer_id, token, amount, tx_type, reference, now)
        self._database.connection.execute(
            "UPDATE allowances SET amount = amount - ?, updated_at = ? "
            "WHERE owner_id = ? AND token = ?",
            (amount, now, payer_id, token),
        )

    def _allowance_of(self, owner_id: str, token: str) -> int:
        row = self._database.connection.execute(
            "SELECT amount FROM allowances WHERE owner_id = ? AND token = ?",
            (owner_id, token),
        ).fetchone()
        return int(row[0]) if row is not None else 0

    def _pool_balance(self, token: str) -> int:
        row = self._database.connection.execute(
            "SELECT balance FROM insurance_pool WHERE token = ?",
            (token,),
        ).fetchone()
        return int(row[0]) if row is not None else 0

    def _add_to_pool(self, token: str, amount: int) -> None:
        if self._pool_balance(token) > MAX_INTEGER - amount:
            raise TransferFailed(
                "TRANSFER_FAILED",
                "Credit would exceed the largest representable pool balance",
                {"token": token, "amount": amount},
            )
        self._database.connection.execute(
            "INSERT INTO insurance_pool (token, balance) VALUES (?, ?) "
            "ON CONFLICT(token) DO UPDATE SET balance = balance + excluded.balance",
            (token, amount),
        )

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    def deposit(self, account_id: str, token: str, amount: int, reference: str) -> dict[str, Any]:
        """
        Add funds to an account from outside the system.

        Idempotent per (account, token, reference): repeating a deposit
        returns the original transaction instead of crediting twice.

        Raises:
            InvalidInput: INVALID_AMOUNT, INVALID_TOKEN, PAYLOAD_MISMATCH.
        """
        amount = self._require_amount(amount)
        token = self._require_token(token)

        try:
            with self._database.transaction():
                now = self._now()
                new_balance = self._credit(account_id, token, amount, "deposit", reference, now)
        except sqlite3.IntegrityError as exc:
            with self._database.lock:
                existing = self._database.connection.execute(
                    "SELECT tx_id, amount, balance_after FROM ledger_transactions "
                    "WHERE account_id = ? AND token = ? AND type = 'deposit' AND reference = ?",
                    (account_id, token, reference),
                ).fetchone()
            if existing is None:
                raise TransferFailed(
                    "TRANSFER_FAILED",
                    "Deposit could not be recorded",
                    {"account_id": account_id},
                ) from exc
            if int(existing["amount"]) != amount:
                raise InvalidInput(
                    "PAYLOAD_MISMATCH",
                    "Duplicate deposit reference used with a different amount",
                    {"reference": reference},
                ) from exc
            return {
                "account_id": account_id,
                "token": token,
                "amount": amount,
                "balance_after": int(existing["balance_after"]),
                "reference": reference,
            }

        self._logger.info(
            "Deposit recorded",
            extra={"account_id": account_id, "token": token, "amount": amount},
        )
        return {
            "account_id": account_id,
            "token": token,
            "amount": amount,
            "balance_after": new_balance,
            "reference": reference,
        }

    def approve(self, owner_id: str, token: str, amount: int) -> dict[str, Any]:
        """
        Set the allowance the escrow may pull from owner_id (overwrites).

        Raises:
            InvalidInput: INVALID_AMOUNT if amount is negative or not an int.
        """
        if (
            not isinstance(amount, int)
            or isinstance(amount, bool)
            or not 0 <= amount <= MAX_INTEGER
        ):
            raise InvalidInput("INVALID_AMOUNT", "Allowance must be a non-negative integer")
        token = self._require_token(token)

        with self._database.transaction() as db:
            now = self._now()
            db.execute(
                "INSERT INTO allowances (owner_id, token, amount, updated_at) VALUES (?, ?, ?, ?) "
                "ON CONFLICT(owner_id, token) DO UPDATE SET "
                "amount = excluded.amount, updated_at = excluded.updated_at",
                (owner_id, token, amount, now),
            )
        return {"owner_id": owner_id, "token": token, "allowance": amount}

    def get_balance(self, account_id: str, token: str) -> int:
        """Balance of account_id in token (0 if never funded)."""
        with self._database.lock:
            return self._balance_of(account_id, token)

    def get_allowance(self, owner_id: str, token: str) -> int:
        """Remaining allowance owner_id granted to the escrow."""
        with self._database.lock:
            return self._allowance_of(owner_id, token)

    def get_account(self, account_id: str) -> dict[str, Any]:
        """All balances and allowances of an account, keyed by token."""
        with self._database.lock:
            db = self._database.connection
            balances = db.execute(
                "SELECT token, balance FROM balances WHERE account_id = ? ORDER BY token",
                (account_id,),
            ).fetchall()
            allowances = db.execute(
                "SELECT token, amount FROM allowances WHERE owner_id = ? ORDER BY token",
                (account_id,),
            ).fetchall()
        return {
            "account_id": account_id,
            "balances": {str(row["token"]): int(row["balance"]) for row in balances},
            "allowances": {str(row["token"]): int(row["amount"]) for row in allowances},
        }

    def get_transactions(self, account_id: str) -> list[dict[str, Any]]:
        """Transaction history for an account, oldest first."""
        with self._database.lock:
            rows = self._database.connection.execute(
                "SELECT tx_id, token, type, amount, balance_after, reference, timestamp "
                "FROM ledger_transactions WHERE account_id = ? ORDER BY rowid",
                (account_id,),
            ).fetchall()
        return [
            {
                "tx_id": row["tx_id"],
                "token": row["token"],
                "type": row["type"],
                "amount": row["amount"],
                "balance_after": row["balance_after"],
                "reference": row["reference"],
                "timestamp": row["timestamp"],
            }
            for row in rows
        ]

    # ------------------------------------------------------------------
    # Escrow
    # ------------------------------------------------------------------

    def lock(self, task_id: int, amount: int, token: str, payer_id: str) -> dict[str, Any]:
        """
        Move amount of token from payer_id into the escrow held for task_id.

        Raises:
            InvalidInput: INVALID_AMOUNT, INVALID_TOKEN.
            InsufficientFunds: INSUFFICIENT_ALLOWANCE, INSUFFICIENT_FUNDS.
            InvalidState: ESCROW_ALREADY_LOCKED if the task already has escrow.
            TransferFailed: the movement could not be written.
        """
        amount = self._require_amount(amount)
        token = self._require_token(token)

        try:
            with self._database.transaction() as db:
                if self._get_escrow_row(task_id) is not None:
                    raise InvalidState(
                        "ESCROW_ALREADY_LOCKED",
                        "Escrow already exists for this task",
                        {"task_id": task_id},
                    )
                now = self._now()
                self._pull(payer_id, token, amount, "escrow_lock", f"task:{task_id}", now)
                db.execute(
                    "INSERT INTO escrow (task_id, payer_id, token, amount, status, created_at) "
                    "VALUES (?, ?, ?, ?, 'locked', ?)",
                    (task_id, payer_id, token, amount, now),
                )
        except sqlite3.Error as exc:
            raise TransferFailed(
                "TRANSFER_FAILED",
                "Escrow lock could not be committed",
                {"task_id": task_id},
            ) from exc

        return {
            "task_id": task_id,
            "payer_id": payer_id,
            "token": token,
            "amount": amount,
            "status": "locked",
        }

    def release(self, task_id: int, recipient_id: str) -> dict[str, Any]:
        """
        Pay the full escrowed amount for task_id to recipient_id.

        Raises:
            NotFound: ESCROW_NOT_FOUND.
            InvalidState: NOTHING_LOCKED if the escrow was already settled.
            TransferFailed: the movement could not be written.
        """
        return self._settle(task_id, recipient_id, "released")

    def refund(self, task_id: int) -> dict[str, Any]:
        """
        Return the full escrowed amount for task_id to the original payer.

        Raises:
            NotFound: ESCROW_NOT_FOUND.
            InvalidState: NOTHING_LOCKED if the escrow was already settled.
            TransferFailed: the movement could not be written.
        """
        return self._settle(task_id, None, "refunded")

    def _settle(self, task_id: int, recipient_id: str | None, outcome: str) -> dict[str, Any]:
        try:
            with self._database.transaction() as db:
                escrow = self._get_escrow_row(task_id)
                if escrow is None:
                    raise NotFound(
                        "ESCROW_NOT_FOUND",
                        "No escrow exists for this task",
                        {"task_id": task_id},
                    )
                if escrow["status"] != "locked":
                    raise InvalidState(
                        "NOTHING_LOCKED",
                        f"Escrow has already been {escrow['status']}",
                        {"task_id": task_id, "escrow_status": escrow["status"]},
                    )

                recipient = recipient_id if recipient_id is not None else str(escrow["payer_id"])
                amount = int(escrow["amount"])
                token = str(escrow["token"])
                now = self._now()
                tx_type = "escrow_release" if outcome == "released" else "escrow_refund"

                self._credit(recipient, token, amount, tx_type, f"task:{task_id}", now)
                cursor = db.execute(
                    "UPDATE escrow SET status = ?, recipient_id = ?, settled_at = ? "
                    "WHERE task_id = ? AND status = 'locked'",
                    (outcome, recipient, now, task_id),
                )
                if cursor.rowcount != 1:
                    raise InvalidState(
                        "NOTHING_LOCKED",
                        "Escrow has already been settled",
                        {"task_id": task_id},
                    )
        except sqlite3.Error as exc:
            raise TransferFailed(
                "TRANSFER_FAILED",
                f"Escrow settlement ({outcome}) could not be committed",
                {"task_id": task_id},
            ) from exc

        return {
            "task_id": task_id,
            "status": outcome,
            "recipient_id": recipient,
            "token": token,
            "amount": amount,
        }

    def _get_escrow_row(self, task_id: int) -> sqlite3.Row | None:
        return cast(
            "sqlite3.Row | None",
            self._database.connection.execute(
                "SELECT task_id, payer_id, token, amount, status, recipient_id, created_at, "
                "settled_at FROM escrow WHERE task_id = ?",
                (task_id,),
            ).fetchone(),
        )

    def get_escrow(self, task_id: int) -> dict[str, Any] | None:
        """Look up the escrow record of a task. Returns None if none exists."""
        with self._database.lock:
            row = self._get_escrow_row(task_id)
        if row is None:
            return None
        return {
            "task_id": row["task_id"],
            "payer_id": row["payer_id"],
            "token": row["token"],
            "amount": row["amount"],
            "status": row["status"],
            "recipient_id": row["recipient_id"],
            "created_at": row["created_at"],
            "settled_at": row["settled_at"],
        }

    def total_escrowed(self) -> int:
        """Sum of all locked (unsettled) escrow amounts."""
        with self._database.lock:
            row = self._database.connection.execute(
                "SELECT COALESCE(SUM(amount), 0) FROM escrow WHERE status = 'locked'"
            ).fetchone()
        return int(row[0]) if row is not None else 0

    # ------------------------------------------------------------------
    # Insurance pool
    # ------------------------------------------------------------------

    def collect_premium(self, task_id: int, amount: int, token: str, payer_id: str) -> None:
        """
        Pull an insurance premium from payer_id into the pool (transferFrom).

        Raises:
            InsufficientFunds: INSUFFICIENT_ALLOWANCE, INSUFFICIENT_FUNDS.
        """
        amount = self._require_amount(amount)
        try:
            with self._database.transaction():
                now = self._now()
                self._pull(payer_id, token, amount, "insurance_premium", f"task:{task_id}", now)
                self._add_to_pool(token, amount)
        except sqlite3.Error as exc:
            raise TransferFailed(
                "TRANSFER_FAILED",
                "Insurance premium could not be committed",
                {"task_id": task_id},
            ) from exc

    def fund_insurance_pool(self, funder_id: str, token: str, amount: int) -> dict[str, Any]:
        """
        Transfer amount of token from funder_id's own balance into the pool.

        Raises:
            InvalidInput: INVALID_AMOUNT, INVALID_TOKEN.
            InsufficientFunds: INSUFFICIENT_FUNDS.
        """
        amount = self._require_amount(amount)
        token = self._require_token(token)
        try:
            with self._database.transaction():
                now = self._now()
                self._debit(funder_id, token, amount, "insurance_fund", "insurance_pool", now)
                self._add_to_pool(token, amount)
                pool_balance = self._pool_balance(token)
        except sqlite3.Error as exc:
            raise TransferFailed(
                "TRANSFER_FAILED",
                "Insurance pool funding could not be committed",
                {"funder_id": funder_id},
            ) from exc

        self._logger.info(
            "Insurance pool funded",
            extra={"funder_id": funder_id, "token": token, "amount": amount},
        )
        return {"token": token, "balance": pool_balance}

    def pay_from_insurance_pool(
        self,
        recipient_id: str,
        token: str,
        amount: int,
        reference: str,
    ) -> int:
        """
        Pay up to amount from the pool to recipient_id.

        The payout is capped at the pool balance; returns what was paid.
        """
        if amount <= 0:
            return 0
        try:
            with self._database.transaction() as db:
                paid = min(amount, self._pool_balance(token))
                if paid == 0:
                    return 0
                db.execute(
                    "UPDATE insurance_pool SET balance = balance - ? WHERE token = ?",
                    (paid, token),
                )
                self._credit(recipient_id, token, paid, "insurance_payout", reference, self._now())
        except sqlite3.Error as exc:
            raise TransferFailed(
                "TRANSFER_FAILED",
                "Insurance payout could not be committed",
                {"recipient_id": recipient_id},
            ) from exc
        return paid

    def get_insurance_pool(self, token: str) -> int:
        """Current pool balance for token."""
        with self._database.lock:
            return self._pool_balance(token)
