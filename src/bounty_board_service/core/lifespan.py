"""Application lifecycle management."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from bounty_board_service.clients.issue_tracker_client import IssueTrackerClient
from bounty_board_service.clients.ledger_client import LedgerClient
from bounty_board_service.clients.secret_vault import LocalEnvelopeVault
from bounty_board_service.config import get_settings
from bounty_board_service.core.state import init_app_state
from bounty_board_service.logging import get_logger, setup_logging
from bounty_board_service.models import AssetRef
from bounty_board_service.services.circuit_breaker import BreakerSettings, CircuitBreakerRegistry
from bounty_board_service.services.notifier import ActivityNotifier
from bounty_board_service.services.provisioning import AccountProvisioner
from bounty_board_service.services.task_orchestrator import TaskOrchestrator
from bounty_board_service.services.task_repository import TaskRepository
from bounty_board_service.services.token_validator import TokenValidator
from bounty_board_service.services.user_directory import UserDirectory

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from fastapi import FastAPI


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
    """Manage application lifecycle."""
    # === STARTUP ===
    settings = get_settings()

    setup_logging(settings.logging.level, settings.service.name, settings.logging.directory)
    logger = get_logger(__name__)

    state = init_app_state()

    repository = TaskRepository(db_path=settings.database.path)

    # Generates the master key on first start
    vault = LocalEnvelopeVault.from_key_file(settings.vault.master_key_path)
    state.vault = vault

    ledger_client = LedgerClient(
        base_url=settings.ledger.base_url,
        accounts_path=settings.ledger.accounts_path,
        transfer_path=settings.ledger.transfer_path,
        refund_path=settings.ledger.refund_path,
        increase_path=settings.ledger.increase_path,
        decrease_path=settings.ledger.decrease_path,
        assign_path=settings.ledger.assign_path,
        approve_path=settings.ledger.approve_path,
        wallets_path=settings.ledger.wallets_path,
        trustline_path=settings.ledger.trustline_path,
        timeout_seconds=settings.ledger.timeout_seconds,
    )
    state.ledger_client = ledger_client

    # The app private key is read on first use
    issue_tracker_client = IssueTrackerClient(
        api_base_url=settings.issue_tracker.api_base_url,
        graphql_path=settings.issue_tracker.graphql_path,
        app_id=settings.issue_tracker.app_id,
        private_key_path=settings.issue_tracker.private_key_path,
        timeout_seconds=settings.issue_tracker.timeout_seconds,
    )
    state.issue_tracker_client = issue_tracker_client

    notifier = ActivityNotifier(
        webhook_url=settings.notifications.webhook_url,
        timeout_seconds=settings.notifications.timeout_seconds,
    )
    state.notifier = notifier

    breakers = CircuitBreakerRegistry(
        BreakerSettings(
            failure_threshold=settings.circuit_breaker.failure_threshold,
            recovery_timeout_seconds=settings.circuit_breaker.recovery_timeout_seconds,
            half_open_max_calls=settings.circuit_breaker.half_open_max_calls,
        )
    )
    state.breakers = breakers

    asset = AssetRef(code=settings.ledger.asset_code, issuer=settings.ledger.asset_issuer)
    orchestrator = TaskOrchestrator(
        repository=repository,
        ledger=ledger_client,
        issue_tracker=issue_tracker_client,
        vault=vault,
        notifier=notifier,
        breakers=breakers,
        retry=settings.retry,
        escrow_address=settings.ledger.escrow_address,
        asset=asset,
        contributor_app_url=settings.issue_tracker.contributor_app_url,
    )
    state.orchestrator = orchestrator
    state.provisioner = AccountProvisioner(
        repository=repository,
        ledger=ledger_client,
        vault=vault,
        breakers=breakers,
        retry=settings.retry,
        asset=asset,
    )
    state.user_directory = UserDirectory(repository)

    state.token_validator = TokenValidator.from_key_file(
        settings.auth.public_key_path,
        settings.auth.issuer,
    )

    logger.info(
        "Service starting",
        extra={
            "service": settings.service.name,
            "version": settings.service.version,
            "port": settings.server.port,
            "db_path": settings.database.path,
            "ledger_base_url": settings.ledger.base_url,
            "issue_tracker_base_url": settings.issue_tracker.api_base_url,
            "notifications_enabled": notifier.enabled,
        },
    )

    yield  # Application runs here

    # === SHUTDOWN ===
    logger.info("Service shutting down", extra={"uptime_seconds": state.uptime_seconds})

    # Let shielded escrow work finish before the database closes
    await orchestrator.drain()
    orchestrator.close()

    await ledger_client.close()
    await issue_tracker_client.close()
    await notifier.close()
