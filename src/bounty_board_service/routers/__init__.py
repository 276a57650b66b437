"""API routers."""

from bounty_board_service.routers import health, tasks, users

__all__ = ["health", "tasks", "users"]
