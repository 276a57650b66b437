"""User profile reads and address book maintenance."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from bounty_board_service.core.exceptions import NotFoundError

if TYPE_CHECKING:
    from bounty_board_service.services.task_repository import TaskRepository


class UserDirectory:
    def __init__(self, repository: TaskRepository) -> None:
        self._repository = repository

    def get_user(self, user_id: str) -> dict[str, Any]:
        """Return the user with address book and contribution summary."""
        user = self._repository.get_user(user_id)
        if user is None:
            raise NotFoundError("User not found")
        summary = dict(user["contribution_summary"])
        summary["total_earnings"] = str(summary["total_earnings"])
        return {**user, "contribution_summary": summary}

    def add_address_book_entry(self, user_id: str, address: str, name: str) -> list[dict[str, str]]:
        """Save an address as the newest entry, evicting the oldest past the limit."""
        try:
            return self._repository.add_address_book_entry(
                user_id, {"address": address, "name": name}
            )
        except LookupError as exc:
            raise NotFoundError("User not found") from exc
