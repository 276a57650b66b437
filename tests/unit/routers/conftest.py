"""Router test fixtures with mocked ledger, issue tracker and notifier."""

from __future__ import annotations

from decimal import Decimal
from typing import TYPE_CHECKING, Any
from unittest.mock import AsyncMock

import pytest
from httpx import ASGITransport, AsyncClient

from bounty_board_service.app import create_app
from bounty_board_service.config import clear_settings_cache
from bounty_board_service.core.lifespan import lifespan
from bounty_board_service.core.state import get_app_state, reset_app_state
from bounty_board_service.models import (
    BalanceLine,
    InstallationStatus,
    LedgerReceipt,
    Wallet,
    WalletKeys,
)
from bounty_board_service.services.task_repository import TaskRepository
from tests.helpers import AUTH_ISSUER, generate_keypair, write_public_key

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from pathlib import Path

    from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

OWNER_ID = "u-owner"
STRANGER_ID = "u-stranger"
CONTRIBUTOR_ID = "u-dev"
INSTALLATION_ID = "inst-1"
WALLET_SECRET = "SWALLETSECRET"
COMMENT_ID = "IC_comment1"


def _receipt(tx_hash: str) -> LedgerReceipt:
    return LedgerReceipt(tx_hash=tx_hash, confirmed_at="2026-01-01T00:00:00Z")


@pytest.fixture
def auth_key() -> Ed25519PrivateKey:
    """Signing key of the test auth issuer."""
    return generate_keypair()


@pytest.fixture
async def app(tmp_path: Path, auth_key: Ed25519PrivateKey, monkeypatch) -> AsyncIterator[Any]:
    """Create a test app with temp database and mocked external systems."""
    db_path = tmp_path / "test.db"
    public_key_path = write_public_key(auth_key, tmp_path / "auth.pub.pem")
    config_content = f"""\
service:
  name: "bounty-board"
  version: "0.1.0"
server:
  host: "0.0.0.0"
  port: 8010
  log_level: "info"
logging:
  level: "WARNING"
  directory: null
database:
  path: "{db_path}"
ledger:
  base_url: "http://localhost:8020"
  accounts_path: "/accounts/{{address}}"
  transfer_path: "/escrow/fund"
  refund_path: "/escrow/refund"
  increase_path: "/escrow/increase"
  decrease_path: "/escrow/decrease"
  assign_path: "/escrow/assign"
  approve_path: "/escrow/approve"
  wallets_path: "/wallets"
  trustline_path: "/wallets/trustline"
  escrow_address: "GESCROW"
  asset_code: "USDC"
  asset_issuer: "GISSUER"
  timeout_seconds: 5
issue_tracker:
  api_base_url: "https://api.github.test"
  graphql_path: "/graphql"
  app_id: "4242"
  private_key_path: "{tmp_path / 'app.pem'}"
  contributor_app_url: "https://contrib.example"
  timeout_seconds: 5
vault:
  master_key_path: "{tmp_path / 'vault.key'}"
auth:
  public_key_path: "{public_key_path}"
  issuer: "{AUTH_ISSUER}"
notifications:
  webhook_url: null
  timeout_seconds: 5
retry:
  ledger:
    max_retries: 2
    base_delay_ms: 1
    max_delay_ms: 2
    timeout_ms: 2000
    use_circuit_breaker: true
  issue_tracker:
    max_retries: 2
    base_delay_ms: 1
    max_delay_ms: 2
    timeout_ms: 2000
    use_circuit_breaker: true
  vault:
    max_retries: 1
    base_delay_ms: 1
    max_delay_ms: 2
    timeout_ms: 2000
    use_circuit_breaker: false
circuit_breaker:
  failure_threshold: 5
  recovery_timeout_seconds: 60
  half_open_max_calls: 1
request:
  max_body_size: 4096
"""
    config_path = tmp_path / "config.yaml"
    config_path.write_text(config_content)
    monkeypatch.setenv("CONFIG_PATH", str(config_path))

    clear_settings_cache()
    reset_app_state()

    test_app = create_app()
    async with lifespan(test_app):
        state = get_app_state()

        # Seed an installation whose wallet is sealed by the running vault
        envelope = await state.vault.encrypt(WALLET_SECRET)
        seed = TaskRepository(str(db_path))
        seed.insert_installation(
            INSTALLATION_ID,
            InstallationStatus.ACTIVE,
            Wallet(address="GWALLET1", envelope=envelope),
            (OWNER_ID,),
        )
        seed.insert_user(OWNER_ID, "owner", Wallet(address="GOWNER", envelope=envelope))
        seed.insert_user(CONTRIBUTOR_ID, "dev", Wallet(address="GDEV", envelope=envelope))
        seed.close()

        # Mock ledger (default: funded account, movements confirm)
        mock_ledger = AsyncMock()
        mock_ledger.get_balances = AsyncMock(
            return_value=[BalanceLine(asset_code="USDC", amount=Decimal("1000"))]
        )
        mock_ledger.transfer = AsyncMock(return_value=_receipt("tx-fund"))
        mock_ledger.refund = AsyncMock(return_value=_receipt("tx-refund"))
        mock_ledger.increase_bounty = AsyncMock(return_value=_receipt("tx-increase"))
        mock_ledger.decrease_bounty = AsyncMock(return_value=_receipt("tx-decrease"))
        mock_ledger.assign_contributor = AsyncMock(return_value=_receipt("tx-assign"))
        mock_ledger.approve_completion = AsyncMock(return_value=_receipt("tx-payout"))
        mock_ledger.create_wallet = AsyncMock(
            return_value=WalletKeys(address="GNEWWALLET", secret="SNEWSECRET")
        )
        mock_ledger.add_trustline = AsyncMock(return_value=_receipt("tx-trust"))
        state.ledger_client = mock_ledger

        # Mock issue tracker (default: label and comment succeed)
        mock_tracker = AsyncMock()
        mock_tracker.add_bounty_label_and_comment = AsyncMock(return_value=COMMENT_ID)
        state.issue_tracker_client = mock_tracker

        state.notifier = AsyncMock()

        yield test_app

    reset_app_state()
    clear_settings_cache()


@pytest.fixture
async def client(app: Any) -> AsyncIterator[AsyncClient]:
    """Create an async HTTP client for the test app."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


@pytest.fixture
def ledger(app: Any) -> AsyncMock:
    return get_app_state().ledger_client


@pytest.fixture
def tracker(app: Any) -> AsyncMock:
    return get_app_state().issue_tracker_client
