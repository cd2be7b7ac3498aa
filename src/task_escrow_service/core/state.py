"""Application state management."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from task_escrow_service.clients.identity_client import IdentityClient
    from task_escrow_service.services.database import Database
    from task_escrow_service.services.dispute_resolver import DisputeResolver
    from task_escrow_service.services.escrow_ledger import EscrowLedger
    from task_escrow_service.services.stats_tracker import StatisticsTracker
    from task_escrow_service.services.task_registry import TaskRegistry
    from task_escrow_service.services.token_validator import TokenValidator


@dataclass
class AppState:
    """Runtime application state."""

    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    database: Database | None = None
    escrow_ledger: EscrowLedger | None = None
    task_registry: TaskRegistry | None = None
    dispute_resolver: DisputeResolver | None = None
    stats_tracker: StatisticsTracker | None = None
    identity_client: IdentityClient | None = None
    token_validator: TokenValidator | None = None
    platform_agent_id: str = ""

    def __setattr__(self, name: str, value: Any) -> None:
        """Keep the token validator pointed at the current identity client."""
        super().__setattr__(name, value)

        token_validator = self.__dict__.get("token_validator")
        if name == "identity_client" and value is not None and token_validator is not None:
            token_validator.identity_client = value

    @property
    def uptime_seconds(self) -> float:
        """Calculate uptime in seconds."""
        return (datetime.now(UTC) - self.start_time).total_seconds()

    @property
    def started_at(self) -> str:
        """ISO format start time."""
        return self.start_time.isoformat(timespec="seconds").replace("+00:00", "Z")


# Global application state container
_state_container: dict[str, AppState | None] = {"app_state": None}


def get_app_state() -> AppState:
    """Get the current application state."""
    app_state = _state_container["app_state"]
    if app_state is None:
        msg = "Application state not initialized"
        raise RuntimeError(msg)
    return app_state


def init_app_state() -> AppState:
    """Initialize application state. Called during startup."""
    app_state = AppState()
    _state_container["app_state"] = app_state
    return app_state


def reset_app_state() -> None:
    """Reset application state. Used in testing."""
    _state_container["app_state"] = None
