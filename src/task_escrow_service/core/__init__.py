"""Core infrastructure components."""

from task_escrow_service.core.state import AppState, get_app_state, init_app_state

__all__ = ["AppState", "get_app_state", "init_app_state"]
