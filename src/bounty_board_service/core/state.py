"""Application state management."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from bounty_board_service.clients.issue_tracker_client import IssueTrackerClient
    from bounty_board_service.clients.ledger_client import LedgerClient
    from bounty_board_service.clients.secret_vault import SecretVault
    from bounty_board_service.services.circuit_breaker import CircuitBreakerRegistry
    from bounty_board_service.services.notifier import ActivityNotifier
    from bounty_board_service.services.provisioning import AccountProvisioner
    from bounty_board_service.services.task_orchestrator import TaskOrchestrator
    from bounty_board_service.services.token_validator import TokenValidator
    from bounty_board_service.services.user_directory import UserDirectory

_DEPENDENCY_SETTERS = {
    "ledger_client": "set_ledger",
    "issue_tracker_client": "set_issue_tracker",
    "vault": "set_vault",
    "notifier": "set_notifier",
}
_SYNCED_SERVICES = ("orchestrator", "provisioner")


@dataclass
class AppState:
    """Runtime application state."""

    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    orchestrator: TaskOrchestrator | None = None
    provisioner: AccountProvisioner | None = None
    user_directory: UserDirectory | None = None
    ledger_client: LedgerClient | None = None
    issue_tracker_client: IssueTrackerClient | None = None
    vault: SecretVault | None = None
    notifier: ActivityNotifier | None = None
    breakers: CircuitBreakerRegistry | None = None
    token_validator: TokenValidator | None = None

    def __setattr__(self, name: str, value: Any) -> None:
        """Keep the services' collaborators in sync with AppState fields."""
        super().__setattr__(name, value)
        if value is None:
            return

        if name in _SYNCED_SERVICES:
            for field_name, setter_name in _DEPENDENCY_SETTERS.items():
                dependency = self.__dict__.get(field_name)
                if dependency is not None and hasattr(value, setter_name):
                    getattr(value, setter_name)(dependency)
            return

        setter_name = _DEPENDENCY_SETTERS.get(name)
        if setter_name is None:
            return
        for service_name in _SYNCED_SERVICES:
            service = self.__dict__.get(service_name)
            if service is not None and hasattr(service, setter_name):
                getattr(service, setter_name)(value)

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
