"""Async HTTP client for the escrow ledger gateway."""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation
from typing import Any

import httpx

from bounty_board_service.core.exceptions import ExternalServiceError, RateLimitError
from bounty_board_service.logging import get_logger
from bounty_board_service.models import AssetRef, BalanceLine, LedgerReceipt, WalletKeys

_SERVICE_NAME = "ledger"


def ledger_timestamp_to_iso(value: Any) -> str:
    """
    Normalize a ledger timestamp to ISO 8601 with a Z suffix.

    Accepts ISO strings (with Z or an offset) and epoch seconds.
    """
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        moment = datetime.fromtimestamp(value, tz=UTC)
    elif isinstance(value, str) and value:
        moment = datetime.fromisoformat(value.replace("Z", "+00:00"))
        if moment.tzinfo is None:
            moment = moment.replace(tzinfo=UTC)
    else:
        msg = f"Unsupported ledger timestamp: {value!r}"
        raise ValueError(msg)
    return moment.astimezone(UTC).isoformat(timespec="seconds").replace("+00:00", "Z")


def _parse_retry_after(response: httpx.Response) -> float | None:
    header = response.headers.get("retry-after")
    if header is None:
        return None
    try:
        return float(header)
    except ValueError:
        return None


def _error_body(response: httpx.Response) -> dict[str, Any]:
    try:
        body = response.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


class LedgerClient:
    """
    Client for balance reads and escrow movements.

    The gateway signs movements with the wallet secret it is handed and
    answers with the transaction hash and the ledger's own timestamp.

    Retry classification: connection failures never reached the gateway
    and are always retryable. Read timeouts and 5xx replies are retryable
    only for balance reads; for movements the outcome is unknown, so they
    are reported as non-retryable.
    """

    def __init__(
        self,
        base_url: str,
        accounts_path: str,
        transfer_path: str,
        refund_path: str,
        increase_path: str,
        decrease_path: str,
        assign_path: str,
        approve_path: str,
        wallets_path: str,
        trustline_path: str,
        timeout_seconds: int,
    ) -> None:
        self._base_url = base_url
        self._accounts_path = accounts_path
        self._transfer_path = transfer_path
        self._refund_path = refund_path
        self._increase_path = increase_path
        self._decrease_path = decrease_path
        self._assign_path = assign_path
        self._approve_path = approve_path
        self._wallets_path = wallets_path
        self._trustline_path = trustline_path
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=httpx.Timeout(timeout_seconds),
        )

    async def _send(
        self,
        method: str,
        path: str,
        *,
        operation: str,
        mutating: bool,
        json: dict[str, Any] | None = None,
    ) -> httpx.Response:
        logger = get_logger(__name__)
        try:
            return await self._client.request(method, path, json=json)
        except httpx.ConnectError as exc:
            logger.warning(
                "Ledger connection failed",
                extra={"operation": operation, "error": str(exc), "base_url": self._base_url},
            )
            raise ExternalServiceError(
                "LEDGER_UNAVAILABLE",
                "Cannot connect to ledger gateway",
                retryable=True,
                details={"operation": operation},
            ) from exc
        except httpx.TimeoutException as exc:
            logger.warning(
                "Ledger request timed out",
                extra={"operation": operation, "base_url": self._base_url},
            )
            raise ExternalServiceError(
                "LEDGER_TIMEOUT",
                "Ledger gateway did not answer in time",
                retryable=not mutating,
                details={"operation": operation},
            ) from exc
        except httpx.HTTPError as exc:
            logger.warning(
                "Ledger HTTP error",
                extra={"operation": operation, "error": str(exc), "base_url": self._base_url},
            )
            raise ExternalServiceError(
                "LEDGER_UNAVAILABLE",
                "Ledger gateway request failed",
                retryable=not mutating,
                details={"operation": operation},
            ) from exc

    def _raise_for_status(self, response: httpx.Response, operation: str, mutating: bool) -> None:
        logger = get_logger(__name__)
        status = response.status_code

        if status == 429:
            raise RateLimitError(_SERVICE_NAME, _parse_retry_after(response))

        if status == 404:
            body = _error_body(response)
            raise ExternalServiceError(
                body.get("error", "LEDGER_NOT_FOUND"),
                body.get("message", "Ledger resource not found"),
                retryable=False,
                details={"operation": operation},
            )

        if 400 <= status < 500:
            body = _error_body(response)
            raise ExternalServiceError(
                body.get("error", "LEDGER_REJECTED"),
                body.get("message", "Ledger gateway rejected the request"),
                retryable=False,
                details={"operation": operation, "status_code": status},
            )

        logger.warning(
            "Ledger unexpected status",
            extra={"operation": operation, "status_code": status, "base_url": self._base_url},
        )
        raise ExternalServiceError(
            "LEDGER_UNAVAILABLE",
            "Ledger gateway returned unexpected status",
            retryable=status == 503 or (status >= 500 and not mutating),
            details={"operation": operation, "status_code": status},
        )

    def _receipt(self, response: httpx.Response, operation: str) -> LedgerReceipt:
        body: dict[str, Any] = response.json()
        tx_hash = body.get("tx_hash")
        if not isinstance(tx_hash, str) or not tx_hash:
            raise ExternalServiceError(
                "LEDGER_INVALID_RESPONSE",
                "Ledger gateway response is missing tx_hash",
                retryable=False,
                details={"operation": operation},
            )
        created_at = body.get("created_at")
        if created_at is not None:
            return LedgerReceipt(tx_hash=tx_hash, confirmed_at=ledger_timestamp_to_iso(created_at))

        get_logger(__name__).warning(
            "Ledger receipt missing timestamp, using local clock",
            extra={"operation": operation, "tx_hash": tx_hash},
        )
        return LedgerReceipt(
            tx_hash=tx_hash,
            confirmed_at=datetime.now(UTC).isoformat(timespec="seconds").replace("+00:00", "Z"),
            clock_source="local",
        )

    async def get_balances(self, address: str) -> list[BalanceLine]:
        """
        Fetch the balance lines of an account.

        The native asset is reported with ``asset_code=None``.

        Raises:
            ExternalServiceError: gateway unreachable or account unknown
            RateLimitError: gateway asked us to slow down
        """
        operation = "get_balances"
        response = await self._send(
            "GET",
            self._accounts_path.format(address=address),
            operation=operation,
            mutating=False,
        )
        if response.status_code != 200:
            self._raise_for_status(response, operation, mutating=False)

        body: dict[str, Any] = response.json()
        lines: list[BalanceLine] = []
        for entry in body.get("balances", []):
            try:
                amount = Decimal(str(entry["balance"]))
            except (KeyError, InvalidOperation) as exc:
                raise ExternalServiceError(
                    "LEDGER_INVALID_RESPONSE",
                    "Ledger gateway returned a malformed balance line",
                    retryable=False,
                    details={"operation": operation},
                ) from exc
            asset_code = None if entry.get("asset_type") == "native" else entry.get("asset_code")
            lines.append(BalanceLine(asset_code=asset_code, amount=amount))
        return lines

    async def _move(
        self,
        operation: str,
        path: str,
        payload: dict[str, Any],
    ) -> LedgerReceipt:
        response = await self._send(
            "POST",
            path,
            operation=operation,
            mutating=True,
            json=payload,
        )
        if response.status_code not in (200, 201):
            self._raise_for_status(response, operation, mutating=True)
        return self._receipt(response, operation)

    async def transfer(
        self,
        secret: str,
        destination: str,
        asset: AssetRef,
        amount: Decimal,
        task_id: str,
    ) -> LedgerReceipt:
        """Move ``amount`` of ``asset`` from the signer's wallet into escrow for a task."""
        return await self._move(
            "transfer",
            self._transfer_path,
            {
                "secret": secret,
                "destination": destination,
                "asset_code": asset.code,
                "asset_issuer": asset.issuer,
                "amount": str(amount),
                "task_id": task_id,
            },
        )

    async def refund(self, secret: str, task_id: str) -> LedgerReceipt:
        """Return a task's escrowed funds to the signer's wallet."""
        return await self._move(
            "refund",
            self._refund_path,
            {"secret": secret, "task_id": task_id},
        )

    async def increase_bounty(self, secret: str, task_id: str, amount: Decimal) -> LedgerReceipt:
        """Add ``amount`` to a task's escrow."""
        return await self._move(
            "increase_bounty",
            self._increase_path,
            {"secret": secret, "task_id": task_id, "amount": str(amount)},
        )

    async def decrease_bounty(self, secret: str, task_id: str, amount: Decimal) -> LedgerReceipt:
        """Release ``amount`` from a task's escrow back to the signer's wallet."""
        return await self._move(
            "decrease_bounty",
            self._decrease_path,
            {"secret": secret, "task_id": task_id, "amount": str(amount)},
        )

    async def assign_contributor(
        self, secret: str, task_id: str, contributor_address: str
    ) -> LedgerReceipt:
        """Name the wallet that will receive a task's escrow on approval."""
        return await self._move(
            "assign_contributor",
            self._assign_path,
            {"secret": secret, "task_id": task_id, "contributor": contributor_address},
        )

    async def approve_completion(self, secret: str, task_id: str) -> LedgerReceipt:
        """Release a task's escrow to its assigned contributor."""
        return await self._move(
            "approve_completion",
            self._approve_path,
            {"secret": secret, "task_id": task_id},
        )

    async def create_wallet(self) -> WalletKeys:
        """
        Create and fund a new ledger account.

        The secret is returned once and must be sealed before it is stored.
        """
        operation = "create_wallet"
        response = await self._send(
            "POST",
            self._wallets_path,
            operation=operation,
            mutating=True,
        )
        if response.status_code not in (200, 201):
            self._raise_for_status(response, operation, mutating=True)

        body: dict[str, Any] = response.json()
        address = body.get("address")
        secret = body.get("secret")
        if not isinstance(address, str) or not isinstance(secret, str) or not address or not secret:
            raise ExternalServiceError(
                "LEDGER_INVALID_RESPONSE",
                "Ledger gateway response is missing the wallet keys",
                retryable=False,
                details={"operation": operation},
            )
        return WalletKeys(address=address, secret=secret)

    async def add_trustline(self, secret: str, asset: AssetRef) -> LedgerReceipt:
        """Let the signer's wallet hold ``asset``."""
        return await self._move(
            "add_trustline",
            self._trustline_path,
            {"secret": secret, "asset_code": asset.code, "asset_issuer": asset.issuer},
        )

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()
