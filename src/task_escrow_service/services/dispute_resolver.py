"""Dispute filing and arbitration."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, cast

from task_escrow_service.errors import InvalidInput, InvalidState, NotAuthorized, NotFound
from task_escrow_service.logging import get_logger
from task_escrow_service.services.dispute_store import DuplicateDisputeError

if TYPE_CHECKING:
    from collections.abc import Iterable

    from task_escrow_service.services.database import Database
    from task_escrow_service.services.dispute_store import DisputeStore
    from task_escrow_service.services.escrow_ledger import EscrowLedger
    from task_escrow_service.services.task_registry import TaskRegistry
    from task_escrow_service.services.task_store import TaskStore


def _now_iso() -> str:
    """Return current UTC time as ISO 8601 string with Z suffix."""
    return datetime.now(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")


class DisputeResolver:
    """
    Opens disputes on behalf of a task's parties and applies arbiter rulings.

    A ruling for the creator cancels the task and refunds the escrow; an
    insured task also compensates the assignee from the insurance pool.
    A ruling for the assignee completes the task through the same path as
    a normal completion. Either way the dispute, task and fund changes
    commit in one transaction.
    """

    def __init__(
        self,
        database: Database,
        dispute_store: DisputeStore,
        task_store: TaskStore,
        task_registry: TaskRegistry,
        ledger: EscrowLedger,
        arbiter_ids: Iterable[str],
        insurance_compensation_pct: int,
        max_reason_length: int,
    ) -> None:
        self._database = database
        self._dispute_store = dispute_store
        self._task_store = task_store
        self._task_registry = task_registry
        self._ledger = ledger
        self._arbiter_ids = frozenset(arbiter_ids)
        self._insurance_compensation_pct = insurance_compensation_pct
        self._max_reason_length = max_reason_length
        self._logger = get_logger(__name__)

    def is_arbiter(self, agent_id: str) -> bool:
        """Check whether agent_id may resolve disputes."""
        return agent_id in self._arbiter_ids

    def _require_task(self, task_id: int) -> dict[str, Any]:
        task = self._task_store.get_task(task_id)
        if task is None:
            raise NotFound("TASK_NOT_FOUND", "Task not found", {"task_id": task_id})
        return task

    def create_dispute(self, task_id: int, caller_id: str, reason: str) -> dict[str, Any]:
        """
        Open a dispute on an in-progress or completed task.

        Raises:
            NotFound: TASK_NOT_FOUND.
            NotAuthorized: NOT_AUTHORIZED unless caller is creator or assignee.
            InvalidState: INVALID_TASK_STATUS, DISPUTE_ALREADY_OPEN.
            InvalidInput: INVALID_PAYLOAD for an empty or over-long reason.
        """
        if not isinstance(reason, str) or not reason.strip():
            raise InvalidInput(
                "INVALID_PAYLOAD",
                "Reason must be a non-empty string",
                {"field": "reason"},
            )
        if len(reason) > self._max_reason_length:
            raise InvalidInput(
                "INVALID_PAYLOAD",
                f"Reason must not exceed {self._max_reason_length} characters",
                {"field": "reason", "max_length": self._max_reason_length},
            )

        with self._database.transaction():
            task = self._require_task(task_id)
            if task["assignee_id"] is None or caller_id not in (
                task["creator_id"],
                task["assignee_id"],
            ):
                raise NotAuthorized(
                    "NOT_AUTHORIZED",
                    "Only the task creator or assignee can open a dispute",
                    {"task_id": task_id},
                )
            if task["status"] not in ("in_progress", "completed"):
                raise InvalidState(
                    "INVALID_TASK_STATUS",
                    f"Cannot dispute a task that is {task['status']}",
                    {"task_id": task_id, "status": task["status"]},
                )
            try:
                dispute_id = self._dispute_store.insert_dispute(
                    task_id, caller_id, reason, _now_iso()
                )
            except DuplicateDisputeError as exc:
                raise InvalidState(
                    "DISPUTE_ALREADY_OPEN",
                    "This task already has an open dispute",
                    {"task_id": task_id},
                ) from exc

        self._logger.info(
            "Dispute opened",
            extra={"task_id": task_id, "dispute_id": dispute_id, "filed_by": caller_id},
        )
        return cast("dict[str, Any]", self._dispute_store.get_dispute(dispute_id))

    def resolve_dispute(
        self,
        task_id: int,
        dispute_id: int,
        caller_id: str,
        resolution: str,
        favors_creator: bool,
    ) -> dict[str, Any]:
        """
        Apply an arbiter ruling to an open dispute.

        Raises:
            NotAuthorized: NOT_AUTHORIZED unless caller is an arbiter.
            NotFound: DISPUTE_NOT_FOUND, TASK_NOT_FOUND.
            InvalidState: ALREADY_RESOLVED, ESCROW_ALREADY_SETTLED.
            InvalidInput: INVALID_PAYLOAD for a malformed resolution or flag.
            TransferFailed: a fund movement could not be committed.
        """
        if not self.is_arbiter(caller_id):
            raise NotAuthorized(
                "NOT_AUTHORIZED",
                "Only an arbiter can resolve disputes",
                {"task_id": task_id, "dispute_id": dispute_id},
            )
        if not isinstance(resolution, str) or len(resolution) > self._max_reason_length:
            raise InvalidInput(
                "INVALID_PAYLOAD",
                f"Resolution must be a string of at most {self._max_reason_length} characters",
                {"field": "resolution"},
            )
        if not isinstance(favors_creator, bool):
            raise InvalidInput(
                "INVALID_PAYLOAD",
                "favors_creator must be a boolean",
                {"field": "favors_creator"},
            )

        with self._database.transaction():
            dispute = self._dispute_store.get_dispute(dispute_id)
            if dispute is None or dispute["task_id"] != task_id:
                raise NotFound(
                    "DISPUTE_NOT_FOUND",
                    "Dispute not found for this task",
                    {"task_id": task_id, "dispute_id": dispute_id},
                )
            if dispute["status"] != "open":
                raise InvalidState(
                    "ALREADY_RESOLVED",
                    "Dispute has already been resolved",
                    {"task_id": task_id, "dispute_id": dispute_id},
                )
            task = self._require_task(task_id)

            if favors_creator:
                compensation = self._rule_for_creator(task)
            else:
                compensation = 0
                self._rule_for_assignee(task)

            self._dispute_store.mark_resolved(
                dispute_id,
                resolution=resolution,
                favors_creator=favors_creator,
                compensation=compensation,
                resolved_by=caller_id,
                resolved_at=_now_iso(),
            )

        self._logger.info(
            "Dispute resolved",
            extra={
                "task_id": task_id,
                "dispute_id": dispute_id,
                "favors_creator": favors_creator,
                "compensation": compensation,
            },
        )
        return cast("dict[str, Any]", self._dispute_store.get_dispute(dispute_id))

    def _rule_for_creator(self, task: dict[str, Any]) -> int:
        """Cancel, refund the creator and pay insurance compensation. Returns the payout."""
        task_id = int(task["task_id"])
        escrow = self._ledger.get_escrow(task_id)
        if escrow is None or escrow["status"] != "locked":
            raise InvalidState(
                "ESCROW_ALREADY_SETTLED",
                "Escrow for this task has already been settled",
                {
                    "task_id": task_id,
                    "escrow_status": escrow["status"] if escrow is not None else None,
                },
            )

        self._task_store.update_task(
            task_id,
            {"status": "cancelled", "cancelled_at": _now_iso()},
            expected_status=str(task["status"]),
        )
        self._ledger.refund(task_id)

        compensation = 0
        if task["has_insurance"] and task["assignee_id"] is not None:
            owed = int(task["reward"]) * self._insurance_compensation_pct // 100
            compensation = self._ledger.pay_from_insurance_pool(
                str(task["assignee_id"]),
                str(task["reward_token"]),
                owed,
                f"dispute:task:{task_id}",
            )
        return compensation

    def _rule_for_assignee(self, task: dict[str, Any]) -> None:
        """Complete the task for the assignee unless it already is."""
        if task["status"] == "completed":
            return
        if task["status"] != "in_progress":
            raise InvalidState(
                "INVALID_TASK_STATUS",
                f"Cannot complete a task that is {task['status']}",
                {"task_id": task["task_id"], "status": task["status"]},
            )
        self._task_registry.settle_completion(task)

    def get_dispute(self, dispute_id: int) -> dict[str, Any]:
        """Get a dispute by id. Raises NotFound."""
        dispute = self._dispute_store.get_dispute(dispute_id)
        if dispute is None:
            raise NotFound(
                "DISPUTE_NOT_FOUND",
                "Dispute not found",
                {"dispute_id": dispute_id},
            )
        return dispute

    def list_disputes(self, task_id: int) -> list[dict[str, Any]]:
        """All disputes filed on a task. Raises NotFound for an unknown task."""
        with self._database.lock:
            self._require_task(task_id)
            return self._dispute_store.list_disputes(task_id)

    def count_open_disputes(self) -> int:
        """Open disputes across all tasks."""
        return self._dispute_store.count_open()
