"""API routers."""

from task_escrow_service.routers import accounts, disputes, health, milestones, stats, tasks

__all__ = ["accounts", "disputes", "health", "milestones", "stats", "tasks"]
