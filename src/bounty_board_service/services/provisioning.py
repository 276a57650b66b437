"""
User and installation registration.

Both create a ledger wallet, seal its secret with the vault and store only
the address and the sealed envelope. Enabling the bounty asset on the new
wallet is best-effort: a failure there is reported as ``PartialOk``.
"""

from __future__ import annotations

import asyncio
import sqlite3
from typing import TYPE_CHECKING, Any, TypeVar

from bounty_board_service.core.exceptions import NotFoundError, ValidationError
from bounty_board_service.logging import get_logger
from bounty_board_service.models import InstallationStatus, Wallet
from bounty_board_service.services.outcome import Ok, Outcome, PartialOk
from bounty_board_service.services.retry import (
    RetryOptions,
    execute_with_retry,
    only_explicitly_retryable,
)

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from bounty_board_service.clients.ledger_client import LedgerClient
    from bounty_board_service.clients.secret_vault import SecretVault
    from bounty_board_service.config import RetryConfig, RetryPolicyConfig
    from bounty_board_service.models import AssetRef, WalletKeys
    from bounty_board_service.services.circuit_breaker import CircuitBreakerRegistry
    from bounty_board_service.services.task_repository import TaskRepository

T = TypeVar("T")

USER_CREATED_MESSAGE = "User created successfully"
INSTALLATION_CREATED_MESSAGE = "Installation created successfully"


class AccountProvisioner:
    """Creates users and installations together with their custodial wallets."""

    def __init__(
        self,
        repository: TaskRepository,
        ledger: LedgerClient,
        vault: SecretVault,
        breakers: CircuitBreakerRegistry,
        retry: RetryConfig,
        asset: AssetRef,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._repository = repository
        self._ledger = ledger
        self._vault = vault
        self._breakers = breakers
        self._retry = retry
        self._asset = asset
        self._sleep = sleep

    def set_ledger(self, ledger: LedgerClient) -> None:
        self._ledger = ledger

    def set_vault(self, vault: SecretVault) -> None:
        self._vault = vault

    async def _call(
        self,
        name: str,
        policy: RetryPolicyConfig,
        operation: Callable[[], Awaitable[T]],
        **overrides: Any,
    ) -> T:
        return await execute_with_retry(
            name,
            operation,
            RetryOptions.from_policy(policy, **overrides),
            self._breakers,
            sleep=self._sleep,
        )

    async def _new_wallet(self) -> tuple[Wallet, WalletKeys]:
        keys = await self._call(
            "ledger.create_wallet",
            self._retry.ledger,
            self._ledger.create_wallet,
            retry_condition=only_explicitly_retryable,
        )
        envelope = await self._call(
            "vault.encrypt",
            self._retry.vault,
            lambda: self._vault.encrypt(keys.secret),
        )
        return Wallet(address=keys.address, envelope=envelope), keys

    async def _add_trustline(self, keys: WalletKeys, owner: dict[str, str]) -> str | None:
        """Return a warning when the wallet could not be enabled for the bounty asset."""
        try:
            await self._call(
                "ledger.add_trustline",
                self._retry.ledger,
                lambda: self._ledger.add_trustline(keys.secret, self._asset),
                retry_condition=only_explicitly_retryable,
            )
        except Exception as exc:
            get_logger(__name__).warning(
                "Failed to add trustline",
                extra={**owner, "address": keys.address, "error_type": type(exc).__name__},
            )
            return f"Failed to add {self._asset.code} trustline for wallet."
        return None

    async def register_user(self, user_id: str, username: str, with_wallet: bool = True) -> Outcome:
        """
        Create a user, by default with a fresh custodial wallet.

        Raises:
            ValidationError: the user already exists
        """
        if self._repository.get_user(user_id) is not None:
            raise ValidationError("User already exists")

        wallet: Wallet | None = None
        keys: WalletKeys | None = None
        if with_wallet:
            wallet, keys = await self._new_wallet()

        try:
            self._repository.insert_user(user_id, username, wallet)
        except sqlite3.IntegrityError as exc:
            raise ValidationError("User already exists") from exc

        user = self._repository.get_user(user_id)
        if user is None:
            msg = f"User {user_id} not found after insert"
            raise RuntimeError(msg)
        data = {**user, "contribution_summary": _summary_view(user["contribution_summary"])}
        get_logger(__name__).info(
            "User created",
            extra={"user_id": user_id, "wallet_address": wallet.address if wallet else None},
        )

        if keys is not None:
            warning = await self._add_trustline(keys, {"user_id": user_id})
            if warning is not None:
                return PartialOk(data, USER_CREATED_MESSAGE, warning, {"trustline_added": False})
        return Ok(data, USER_CREATED_MESSAGE)

    async def register_installation(self, installation_id: str, user_id: str) -> Outcome:
        """
        Create an installation owned by ``user_id`` with its own wallet.

        Raises:
            NotFoundError: the owning user does not exist
            ValidationError: the installation already exists
        """
        if self._repository.get_user(user_id) is None:
            raise NotFoundError("User not found")
        if self._repository.find_installation(installation_id) is not None:
            raise ValidationError("Installation already exists")

        wallet, keys = await self._new_wallet()
        try:
            self._repository.insert_installation(
                installation_id, InstallationStatus.ACTIVE, wallet, (user_id,)
            )
        except sqlite3.IntegrityError as exc:
            raise ValidationError("Installation already exists") from exc
        get_logger(__name__).info(
            "Installation created",
            extra={"installation_id": installation_id, "wallet_address": wallet.address},
        )

        data = {
            "installation_id": installation_id,
            "status": str(InstallationStatus.ACTIVE),
            "wallet_address": wallet.address,
            "member_ids": [user_id],
        }
        warning = await self._add_trustline(keys, {"installation_id": installation_id})
        if warning is not None:
            return PartialOk(
                data, INSTALLATION_CREATED_MESSAGE, warning, {"trustline_added": False}
            )
        return Ok(data, INSTALLATION_CREATED_MESSAGE)


def _summary_view(summary: dict[str, Any]) -> dict[str, Any]:
    return {**summary, "total_earnings": str(summary["total_earnings"])}
