"""Task lifecycle management: creation, application, assignment, milestones, completion."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, cast

from task_escrow_service.errors import InvalidInput, InvalidState, NotAuthorized, NotFound
from task_escrow_service.logging import get_logger
from task_escrow_service.services.database import MAX_INTEGER
from task_escrow_service.services.task_store import DuplicateApplicationError

if TYPE_CHECKING:
    from collections.abc import Iterable

    from task_escrow_service.config import LimitsConfig
    from task_escrow_service.services.database import Database
    from task_escrow_service.services.dispute_store import DisputeStore
    from task_escrow_service.services.escrow_ledger import EscrowLedger
    from task_escrow_service.services.stats_tracker import StatisticsTracker
    from task_escrow_service.services.task_store import TaskStore

VALID_STATUSES = frozenset({"created", "in_progress", "completed", "cancelled"})


def _now_iso() -> str:
    """Return current UTC time as ISO 8601 string with Z suffix."""
    return datetime.now(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")


def _is_positive_int(value: object) -> bool:
    """Check if value is a positive integer (not float, not bool) that fits a column."""
    return isinstance(value, int) and not isinstance(value, bool) and 0 < value <= MAX_INTEGER


def _parse_deadline(deadline: object) -> datetime:
    """
    Accept a timezone-aware datetime, a Unix timestamp, or an ISO 8601 string.

    Raises InvalidInput("INVALID_DEADLINE") for anything else.
    """
    if isinstance(deadline, datetime):
        parsed = deadline
    elif isinstance(deadline, int) and not isinstance(deadline, bool):
        try:
            parsed = datetime.fromtimestamp(deadline, tz=UTC)
        except (OverflowError, OSError, ValueError) as exc:
            raise InvalidInput("INVALID_DEADLINE", "Deadline is out of range") from exc
    elif isinstance(deadline, str):
        try:
            parsed = datetime.fromisoformat(deadline.replace("Z", "+00:00"))
        except ValueError as exc:
            raise InvalidInput(
                "INVALID_DEADLINE", "Deadline must be an ISO 8601 timestamp"
            ) from exc
    else:
        raise InvalidInput("INVALID_DEADLINE", "Deadline must be a timestamp")

    if parsed.tzinfo is None:
        raise InvalidInput("INVALID_DEADLINE", "Deadline must include a timezone")
    return parsed.astimezone(UTC)


def _to_iso(value: datetime) -> str:
    return value.isoformat(timespec="microseconds").replace("+00:00", "Z")


class TaskRegistry:
    """
    Owns task, application and milestone records.

    Every mutating method runs inside one Database.transaction(): its
    preconditions are read and its writes (including the Escrow Ledger fund
    movement and the stats update) commit together or not at all.
    """

    def __init__(
        self,
        database: Database,
        store: TaskStore,
        dispute_store: DisputeStore,
        ledger: EscrowLedger,
        stats: StatisticsTracker,
        limits: LimitsConfig,
        insurance_premium_pct: int,
    ) -> None:
        self._database = database
        self._store = store
        self._dispute_store = dispute_store
        self._ledger = ledger
        self._stats = stats
        self._limits = limits
        self._insurance_premium_pct = insurance_premium_pct
        self._logger = get_logger(__name__)

    # ------------------------------------------------------------------
    # Private helper methods
    # ------------------------------------------------------------------

    def _require_task(self, task_id: int) -> dict[str, Any]:
        task = self._store.get_task(task_id)
        if task is None:
            raise NotFound("TASK_NOT_FOUND", "Task not found", {"task_id": task_id})
        return task

    def _require_milestone(self, task_id: int, milestone_id: int) -> dict[str, Any]:
        milestone = self._store.get_milestone(milestone_id)
        if milestone is None or milestone["task_id"] != task_id:
            raise NotFound(
                "MILESTONE_NOT_FOUND",
                "Milestone not found for this task",
                {"task_id": task_id, "milestone_id": milestone_id},
            )
        return milestone

    def _require_text(
        self,
        value: object,
        field_name: str,
        max_length: int,
        *,
        allow_empty: bool = False,
    ) -> str:
        if not isinstance(value, str) or (not allow_empty and not value.strip()):
            raise InvalidInput(
                "INVALID_PAYLOAD",
                f"{field_name} must be a non-empty string",
                {"field": field_name},
            )
        if len(value) > max_length:
            raise InvalidInput(
                "INVALID_PAYLOAD",
                f"{field_name} must not exceed {max_length} characters",
                {"field": field_name, "max_length": max_length},
            )
        return value

    def _normalize_tags(self, tags: Iterable[object]) -> list[str]:
        normalized: set[str] = set()
        for tag in tags:
            if not isinstance(tag, str) or not tag.strip():
                raise InvalidInput(
                    "INVALID_PAYLOAD",
                    "Tags must be non-empty strings",
                    {"field": "tags"},
                )
            normalized.add(tag.strip())
        if len(normalized) > self._limits.max_tags:
            raise InvalidInput(
                "INVALID_PAYLOAD",
                f"At most {self._limits.max_tags} tags are allowed",
                {"field": "tags", "max_tags": self._limits.max_tags},
            )
        return sorted(normalized)

    def _require_in_progress(self, task: dict[str, Any]) -> None:
        if task["status"] != "in_progress" or task["assignee_id"] is None:
            raise InvalidState(
                "TASK_NOT_IN_PROGRESS",
                f"Task is {task['status']}, expected in_progress",
                {"task_id": task["task_id"], "status": task["status"]},
            )

    def _require_no_open_dispute(self, task_id: int) -> None:
        if self._dispute_store.has_open_dispute(task_id):
            raise InvalidState(
                "DISPUTE_OPEN",
                "Task has an open dispute awaiting resolution",
                {"task_id": task_id},
            )

    def _task_to_response(self, task: dict[str, Any]) -> dict[str, Any]:
        """Task record enriched with its escrow view."""
        escrow = self._ledger.get_escrow(task["task_id"])
        locked_amount = 0
        escrow_status = None
        if escrow is not None:
            escrow_status = escrow["status"]
            if escrow_status == "locked":
                locked_amount = int(escrow["amount"])
        response = dict(task)
        response["locked_amount"] = locked_amount
        response["escrow_status"] = escrow_status
        return response

    def _reload(self, task_id: int) -> dict[str, Any]:
        return self._task_to_response(self._require_task(task_id))

    # ------------------------------------------------------------------
    # Public methods
    # ------------------------------------------------------------------

    def create_task(
        self,
        creator_id: str,
        title: str,
        description: str,
        reward: int,
        reward_token: str,
        deadline: datetime | int | str,
        has_insurance: bool,
        category: str = "",
        tags: Iterable[object] = (),
        metadata_hash: str | None = None,
    ) -> dict[str, Any]:
        """
        Create a task and lock its reward in escrow.

        The task row exists iff the creator's funds were locked. Insured
        tasks also pay the insurance premium into the pool.

        Raises:
            InvalidInput: INVALID_REWARD, INVALID_DEADLINE, INVALID_PAYLOAD.
            InsufficientFunds: INSUFFICIENT_FUNDS, INSUFFICIENT_ALLOWANCE.
            TransferFailed: the escrow lock could not be committed.
        """
        # Validate inputs before touching storage
        if not _is_positive_int(reward):
            raise InvalidInput(
                "INVALID_REWARD",
                "Reward must be a positive integer",
                {"reward": reward},
            )
        deadline_at = _parse_deadline(deadline)
        now = datetime.now(UTC)
        if deadline_at <= now:
            raise InvalidInput(
                "INVALID_DEADLINE",
                "Deadline must be in the future",
                {"deadline": _to_iso(deadline_at)},
            )
        title = self._require_text(title, "title", self._limits.max_title_length)
        description = self._require_text(
            description,
            "description",
            self._limits.max_description_length,
            allow_empty=True,
        )
        reward_token = self._require_text(reward_token, "reward_token", 64)
        category = self._require_text(category, "category", 64, allow_empty=True)
        normalized_tags = self._normalize_tags(tags)
        if metadata_hash is not None:
            metadata_hash = self._require_text(metadata_hash, "metadata_hash", 256)
        if not isinstance(has_insurance, bool):
            raise InvalidInput(
                "INVALID_PAYLOAD",
                "has_insurance must be a boolean",
                {"field": "has_insurance"},
            )

        insurance_premium = reward * self._insurance_premium_pct // 100 if has_insurance else 0

        with self._database.transaction():
            task_id = self._store.insert_task(
                {
                    "creator_id": creator_id,
                    "title": title,
                    "description": description,
                    "reward": reward,
                    "reward_token": reward_token,
                    "deadline": _to_iso(deadline_at),
                    "has_insurance": has_insurance,
                    "insurance_premium": insurance_premium,
                    "category": category,
                    "tags": normalized_tags,
                    "metadata_hash": metadata_hash,
                    "status": "created",
                    "created_at": _to_iso(now),
                }
            )
            self._ledger.lock(task_id, reward, reward_token, creator_id)
            if insurance_premium > 0:
                self._ledger.collect_premium(task_id, insurance_premium, reward_token, creator_id)

        self._logger.info(
            "Task created",
            extra={
                "task_id": task_id,
                "creator_id": creator_id,
                "reward": reward,
                "reward_token": reward_token,
                "has_insurance": has_insurance,
            },
        )
        return self._reload(task_id)

    def apply_for_task(self, task_id: int, applicant_id: str, proposal: str) -> dict[str, Any]:
        """
        Record an application from applicant_id.

        Raises:
            NotFound: TASK_NOT_FOUND.
            InvalidState: TASK_NOT_OPEN, CREATOR_CANNOT_APPLY, ALREADY_APPLIED.
            InvalidInput: INVALID_PAYLOAD for an empty or over-long proposal.
        """
        proposal = self._require_text(proposal, "proposal", self._limits.max_proposal_length)

        with self._database.transaction():
            task = self._require_task(task_id)
            if task["status"] != "created" or task["assignee_id"] is not None:
                raise InvalidState(
                    "TASK_NOT_OPEN",
                    "Task is no longer accepting applications",
                    {"task_id": task_id, "status": task["status"]},
                )
            if applicant_id == task["creator_id"]:
                raise InvalidState(
                    "CREATOR_CANNOT_APPLY",
                    "The task creator cannot apply to their own task",
                    {"task_id": task_id},
                )

            application = {
                "task_id": task_id,
                "applicant_id": applicant_id,
                "proposal": proposal,
                "applied_at": _now_iso(),
            }
            try:
                self._store.insert_application(application)
            except DuplicateApplicationError as exc:
                raise InvalidState(
                    "ALREADY_APPLIED",
                    "This agent already applied to this task",
                    {"task_id": task_id, "applicant_id": applicant_id},
                ) from exc

        self._logger.info(
            "Application submitted",
            extra={"task_id": task_id, "applicant_id": applicant_id},
        )
        return application

    def assign_task(self, task_id: int, caller_id: str, assignee_id: str) -> dict[str, Any]:
        """
        Assign the task to one of its applicants.

        Raises:
            NotFound: TASK_NOT_FOUND.
            NotAuthorized: NOT_CREATOR.
            InvalidState: TASK_ALREADY_ASSIGNED, ASSIGNEE_HAS_NOT_APPLIED.
        """
        with self._database.transaction():
            task = self._require_task(task_id)
            if caller_id != task["creator_id"]:
                raise NotAuthorized(
                    "NOT_CREATOR",
                    "Only the task creator can assign the task",
                    {"task_id": task_id},
                )
            if task["status"] != "created" or task["assignee_id"] is not None:
                raise InvalidState(
                    "TASK_ALREADY_ASSIGNED",
                    "Task has already been assigned or is closed",
                    {"task_id": task_id, "status": task["status"]},
                )
            if not self._store.has_applied(task_id, assignee_id):
                raise InvalidState(
                    "ASSIGNEE_HAS_NOT_APPLIED",
                    "Assignee has not applied to this task",
                    {"task_id": task_id, "assignee_id": assignee_id},
                )

            updated = self._store.update_task(
                task_id,
                {"status": "in_progress", "assignee_id": assignee_id, "assigned_at": _now_iso()},
                expected_status="created",
            )
            if updated == 0:
                raise InvalidState(
                    "TASK_ALREADY_ASSIGNED",
                    "Task has already been assigned",
                    {"task_id": task_id},
                )

        self._logger.info(
            "Task assigned",
            extra={"task_id": task_id, "assignee_id": assignee_id},
        )
        return self._reload(task_id)

    def create_milestone(
        self,
        task_id: int,
        caller_id: str,
        title: str,
        description: str,
        reward: int,
    ) -> dict[str, Any]:
        """
        Add a milestone to an in-progress task.

        Non-rejected milestone rewards may not add up to more than the
        task reward.

        Raises:
            NotFound: TASK_NOT_FOUND.
            NotAuthorized: NOT_CREATOR.
            InvalidState: TASK_NOT_IN_PROGRESS, DISPUTE_OPEN.
            InvalidInput: INVALID_REWARD, INVALID_PAYLOAD, MILESTONE_REWARD_EXCEEDS_TASK.
        """
        if not _is_positive_int(reward):
            raise InvalidInput(
                "INVALID_REWARD",
                "Milestone reward must be a positive integer",
                {"reward": reward},
            )
        title = self._require_text(title, "title", self._limits.max_title_length)
        description = self._require_text(
            description,
            "description",
            self._limits.max_description_length,
            allow_empty=True,
        )

        with self._database.transaction():
            task = self._require_task(task_id)
            if caller_id != task["creator_id"]:
                raise NotAuthorized(
                    "NOT_CREATOR",
                    "Only the task creator can create milestones",
                    {"task_id": task_id},
                )
            self._require_in_progress(task)
            self._require_no_open_dispute(task_id)

            committed = self._store.committed_milestone_reward(task_id)
            if committed + reward > int(task["reward"]):
                raise InvalidInput(
                    "MILESTONE_REWARD_EXCEEDS_TASK",
                    "Milestone rewards would exceed the task reward",
                    {
                        "task_id": task_id,
                        "task_reward": task["reward"],
                        "committed": committed,
                        "requested": reward,
                    },
                )

            milestone_id = self._store.insert_milestone(
                {
                    "task_id": task_id,
                    "title": title,
                    "description": description,
                    "reward": reward,
                    "created_at": _now_iso(),
                }
            )

        self._logger.info(
            "Milestone created",
            extra={"task_id": task_id, "milestone_id": milestone_id, "reward": reward},
        )
        return cast("dict[str, Any]", self._store.get_milestone(milestone_id))

    def complete_milestone(self, task_id: int, milestone_id: int, caller_id: str) -> dict[str, Any]:
        """
        Mark a pending milestone completed.

        Raises:
            NotFound: TASK_NOT_FOUND, MILESTONE_NOT_FOUND.
            NotAuthorized: NOT_ASSIGNEE.
            InvalidState: TASK_NOT_IN_PROGRESS, DISPUTE_OPEN, INVALID_MILESTONE_STATUS.
        """
        return self._transition_milestone(
            task_id,
            milestone_id,
            caller_id,
            role="assignee_id",
            role_error="NOT_ASSIGNEE",
            from_status="pending",
            to_status="completed",
        )

    def reject_milestone(self, task_id: int, milestone_id: int, caller_id: str) -> dict[str, Any]:
        """
        Reject a completed milestone. Rejection is terminal.

        Raises:
            NotFound: TASK_NOT_FOUND, MILESTONE_NOT_FOUND.
            NotAuthorized: NOT_CREATOR.
            InvalidState: TASK_NOT_IN_PROGRESS, DISPUTE_OPEN, INVALID_MILESTONE_STATUS.
        """
        return self._transition_milestone(
            task_id,
            milestone_id,
            caller_id,
            role="creator_id",
            role_error="NOT_CREATOR",
            from_status="completed",
            to_status="rejected",
        )

    def _transition_milestone(
        self,
        task_id: int,
        milestone_id: int,
        caller_id: str,
        *,
        role: str,
        role_error: str,
        from_status: str,
        to_status: str,
    ) -> dict[str, Any]:
        with self._database.transaction():
            task = self._require_task(task_id)
            if caller_id != task[role]:
                raise NotAuthorized(
                    role_error,
                    f"Only the task {role.removesuffix('_id')} can move a milestone to {to_status}",
                    {"task_id": task_id, "milestone_id": milestone_id},
                )
            self._require_in_progress(task)
            self._require_no_open_dispute(task_id)
            milestone = self._require_milestone(task_id, milestone_id)
            if milestone["status"] != from_status:
                raise InvalidState(
                    "INVALID_MILESTONE_STATUS",
                    f"Milestone is {milestone['status']}, expected {from_status}",
                    {
                        "task_id": task_id,
                        "milestone_id": milestone_id,
                        "status": milestone["status"],
                    },
                )
            self._store.update_milestone_status(
                milestone_id,
                to_status,
                _now_iso(),
                expected_status=from_status,
            )

        self._logger.info(
            "Milestone status changed",
            extra={"task_id": task_id, "milestone_id": milestone_id, "status": to_status},
        )
        return cast("dict[str, Any]", self._store.get_milestone(milestone_id))

    def submit_proof(self, task_id: int, caller_id: str, proof_hash: str) -> dict[str, Any]:
        """
        Record an opaque proof-of-work reference on an in-progress task.

        Raises:
            NotFound: TASK_NOT_FOUND.
            NotAuthorized: NOT_ASSIGNEE.
            InvalidState: TASK_NOT_IN_PROGRESS.
            InvalidInput: INVALID_PAYLOAD for an empty proof_hash.
        """
        proof_hash = self._require_text(proof_hash, "proof_hash", 256)

        with self._database.transaction():
            task = self._require_task(task_id)
            if caller_id != task["assignee_id"]:
                raise NotAuthorized(
                    "NOT_ASSIGNEE",
                    "Only the assignee can submit proof of work",
                    {"task_id": task_id},
                )
            self._require_in_progress(task)
            self._store.update_task(
                task_id,
                {"proof_hash": proof_hash},
                expected_status="in_progress",
            )

        self._logger.info("Proof submitted", extra={"task_id": task_id})
        return self._reload(task_id)

    def complete_task(self, task_id: int, caller_id: str) -> dict[str, Any]:
        """
        Complete a task and pay the escrowed reward to the assignee.

        The creator may complete at any time while in progress; the assignee
        only once every milestone is completed. The status change, the
        escrow release and the stats update commit together.

        Raises:
            NotFound: TASK_NOT_FOUND.
            NotAuthorized: NOT_AUTHORIZED.
            InvalidState: ALREADY_COMPLETED, TASK_NOT_IN_PROGRESS, DISPUTE_OPEN,
                MILESTONES_INCOMPLETE.
            TransferFailed: the release could not be committed.
        """
        with self._database.transaction():
            task = self._require_task(task_id)
            if caller_id not in (task["creator_id"], task["assignee_id"]):
                raise NotAuthorized(
                    "NOT_AUTHORIZED",
                    "Only the creator or assignee can complete the task",
                    {"task_id": task_id},
                )
            if task["status"] == "completed":
                raise InvalidState(
                    "ALREADY_COMPLETED",
                    "Task has already been completed",
                    {"task_id": task_id},
                )
            self._require_in_progress(task)
            self._require_no_open_dispute(task_id)

            if caller_id != task["creator_id"]:
                remaining = self._store.count_milestones_not_completed(task_id)
                if remaining > 0:
                    raise InvalidState(
                        "MILESTONES_INCOMPLETE",
                        "Every milestone must be completed before the assignee can complete",
                        {"task_id": task_id, "incomplete_milestones": remaining},
                    )

            self.settle_completion(task)

        return self._reload(task_id)

    def settle_completion(self, task: dict[str, Any]) -> int:
        """
        Mark an in-progress task completed, release escrow, record stats.

        Must be called inside an open Database.transaction(). Returns the
        amount paid to the assignee.
        """
        task_id = int(task["task_id"])
        assignee_id = cast("str", task["assignee_id"])
        updated = self._store.update_task(
            task_id,
            {"status": "completed", "completed_at": _now_iso()},
            expected_status="in_progress",
        )
        if updated == 0:
            raise InvalidState(
                "ALREADY_COMPLETED",
                "Task has already been completed",
                {"task_id": task_id},
            )
        released = self._ledger.release(task_id, assignee_id)
        amount_paid = int(released["amount"])
        self._stats.record_completion(assignee_id, amount_paid)

        self._logger.info(
            "Task completed",
            extra={"task_id": task_id, "assignee_id": assignee_id, "amount_paid": amount_paid},
        )
        return amount_paid

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_task(self, task_id: int) -> dict[str, Any]:
        """Get a task with its escrow view. Raises NotFound."""
        with self._database.lock:
            return self._reload(task_id)

    def list_tasks(
        self,
        status: str | None = None,
        creator_id: str | None = None,
        assignee_id: str | None = None,
        category: str | None = None,
        tag: str | None = None,
        offset: int | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        """List tasks matching every given filter, newest first."""
        if status is not None and status not in VALID_STATUSES:
            raise InvalidInput(
                "INVALID_PAYLOAD",
                f"Unknown status filter: {status}",
                {"status": status},
            )
        for name, value in (("offset", offset), ("limit", limit)):
            if value is not None and (
                isinstance(value, bool) or not isinstance(value, int) or value < 0
            ):
                raise InvalidInput(
                    "INVALID_PAYLOAD",
                    f"{name} must be a non-negative integer",
                    {name: value},
                )
        with self._database.lock:
            rows = self._store.list_tasks(
                status=status,
                creator_id=creator_id,
                assignee_id=assignee_id,
                category=category,
                tag=tag,
                limit=limit,
                offset=offset,
            )
            return [self._task_to_response(row) for row in rows]

    def count_tasks(self) -> int:
        """Total number of tasks ever created."""
        return self._store.count_tasks()

    def count_tasks_by_status(self) -> dict[str, int]:
        """Task counts keyed by status."""
        return self._store.count_tasks_by_status()

    def get_applications(self, task_id: int) -> list[dict[str, Any]]:
        """All applications for a task. Raises NotFound for an unknown task."""
        with self._database.lock:
            self._require_task(task_id)
            return self._store.get_applications(task_id)

    def get_milestone(self, milestone_id: int) -> dict[str, Any]:
        """Get a milestone by id. Raises NotFound."""
        milestone = self._store.get_milestone(milestone_id)
        if milestone is None:
            raise NotFound(
                "MILESTONE_NOT_FOUND",
                "Milestone not found",
                {"milestone_id": milestone_id},
            )
        return milestone

    def list_milestones(self, task_id: int) -> list[dict[str, Any]]:
        """All milestones of a task. Raises NotFound for an unknown task."""
        with self._database.lock:
            self._require_task(task_id)
            return self._store.list_milestones(task_id)
