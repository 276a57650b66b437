"""Error mapping and payload tests for LedgerClient."""

from __future__ import annotations

from decimal import Decimal
from typing import Any
from unittest.mock import AsyncMock, patch

import httpx
import pytest
from freezegun import freeze_time

from bounty_board_service.clients.ledger_client import LedgerClient, ledger_timestamp_to_iso
from bounty_board_service.core.exceptions import ExternalServiceError, RateLimitError
from bounty_board_service.models import AssetRef, BalanceLine, LedgerReceipt, WalletKeys

BASE_URL = "http://mock-ledger:8020"


def _make_client(
    response: httpx.Response | None = None,
    side_effect: Exception | None = None,
) -> LedgerClient:
    """Create a LedgerClient with a mock HTTP transport."""
    client = LedgerClient(
        base_url=BASE_URL,
        accounts_path="/accounts/{address}",
        transfer_path="/escrow/fund",
        refund_path="/escrow/refund",
        increase_path="/escrow/increase",
        decrease_path="/escrow/decrease",
        assign_path="/escrow/assign",
        approve_path="/escrow/approve",
        wallets_path="/wallets",
        trustline_path="/wallets/trustline",
        timeout_seconds=5,
    )
    mock_http = AsyncMock(spec=httpx.AsyncClient)
    mock_http.request = AsyncMock(return_value=response, side_effect=side_effect)
    client._client = mock_http
    return client


def _mock_response(
    status_code: int,
    json_body: Any,
    headers: dict[str, str] | None = None,
) -> httpx.Response:
    return httpx.Response(
        status_code=status_code,
        json=json_body,
        headers=headers,
        request=httpx.Request("POST", f"{BASE_URL}/escrow/fund"),
    )


@pytest.mark.unit
class TestTimestamps:
    def test_iso_with_offset(self):
        assert ledger_timestamp_to_iso("2026-01-01T02:00:00+02:00") == "2026-01-01T00:00:00Z"

    def test_epoch_seconds(self):
        assert ledger_timestamp_to_iso(0) == "1970-01-01T00:00:00Z"

    def test_unsupported(self):
        with pytest.raises(ValueError, match="Unsupported ledger timestamp"):
            ledger_timestamp_to_iso(None)


@pytest.mark.unit
class TestBalances:
    async def test_native_and_asset_lines(self):
        client = _make_client(
            _mock_response(
                200,
                {
                    "balances": [
                        {"asset_type": "native", "balance": "12.5"},
                        {"asset_type": "credit_alphanum4", "asset_code": "USDC", "balance": "40"},
                    ]
                },
            )
        )

        lines = await client.get_balances("GWALLET")

        assert lines == [
            BalanceLine(asset_code=None, amount=Decimal("12.5")),
            BalanceLine(asset_code="USDC", amount=Decimal("40")),
        ]
        client._client.request.assert_awaited_once_with(
            "GET", "/accounts/GWALLET", json=None
        )

    async def test_malformed_line(self):
        client = _make_client(_mock_response(200, {"balances": [{"asset_code": "USDC"}]}))

        with pytest.raises(ExternalServiceError) as exc_info:
            await client.get_balances("GWALLET")

        assert exc_info.value.error == "LEDGER_INVALID_RESPONSE"

    async def test_unknown_account_404(self):
        client = _make_client(
            _mock_response(404, {"error": "ACCOUNT_NOT_FOUND", "message": "No such account"})
        )

        with pytest.raises(ExternalServiceError) as exc_info:
            await client.get_balances("GWALLET")

        assert exc_info.value.error == "ACCOUNT_NOT_FOUND"
        assert exc_info.value.retryable is False

    async def test_read_5xx_is_retryable(self):
        client = _make_client(_mock_response(500, {}))

        with pytest.raises(ExternalServiceError) as exc_info:
            await client.get_balances("GWALLET")

        assert exc_info.value.retryable is True

    async def test_read_timeout_is_retryable(self):
        client = _make_client(side_effect=httpx.ReadTimeout("slow"))

        with pytest.raises(ExternalServiceError) as exc_info:
            await client.get_balances("GWALLET")

        assert exc_info.value.error == "LEDGER_TIMEOUT"
        assert exc_info.value.retryable is True


@pytest.mark.unit
class TestMovements:
    async def test_transfer_sends_payload_and_returns_receipt(self):
        client = _make_client(
            _mock_response(201, {"tx_hash": "abc123", "created_at": "2026-03-01T10:00:00Z"})
        )

        receipt = await client.transfer(
            "SSECRET", "GESCROW", AssetRef("USDC", "GISSUER"), Decimal("99.5"), "t-1"
        )

        assert receipt == LedgerReceipt(tx_hash="abc123", confirmed_at="2026-03-01T10:00:00Z")
        client._client.request.assert_awaited_once_with(
            "POST",
            "/escrow/fund",
            json={
                "secret": "SSECRET",
                "destination": "GESCROW",
                "asset_code": "USDC",
                "asset_issuer": "GISSUER",
                "amount": "99.5",
                "task_id": "t-1",
            },
        )

    async def test_refund_and_adjustments_use_own_paths(self):
        client = _make_client(_mock_response(200, {"tx_hash": "h", "created_at": 1767225600}))

        await client.refund("S", "t-1")
        await client.increase_bounty("S", "t-1", Decimal("5"))
        await client.decrease_bounty("S", "t-1", Decimal("2"))

        paths = [call.args[1] for call in client._client.request.await_args_list]
        assert paths == ["/escrow/refund", "/escrow/increase", "/escrow/decrease"]
        assert client._client.request.await_args.kwargs["json"] == {
            "secret": "S",
            "task_id": "t-1",
            "amount": "2",
        }

    async def test_missing_tx_hash(self):
        client = _make_client(_mock_response(200, {"created_at": "2026-03-01T10:00:00Z"}))

        with pytest.raises(ExternalServiceError) as exc_info:
            await client.refund("S", "t-1")

        assert exc_info.value.error == "LEDGER_INVALID_RESPONSE"

    async def test_connection_failure_is_retryable(self):
        client = _make_client(side_effect=httpx.ConnectError("refused"))

        with pytest.raises(ExternalServiceError) as exc_info:
            await client.refund("S", "t-1")

        assert exc_info.value.error == "LEDGER_UNAVAILABLE"
        assert exc_info.value.retryable is True

    async def test_timeout_on_movement_is_not_retryable(self):
        client = _make_client(side_effect=httpx.ReadTimeout("slow"))

        with pytest.raises(ExternalServiceError) as exc_info:
            await client.refund("S", "t-1")

        assert exc_info.value.retryable is False

    async def test_500_on_movement_is_not_retryable(self):
        client = _make_client(_mock_response(500, {}))

        with pytest.raises(ExternalServiceError) as exc_info:
            await client.increase_bounty("S", "t-1", Decimal("1"))

        assert exc_info.value.retryable is False

    async def test_503_on_movement_is_retryable(self):
        client = _make_client(_mock_response(503, {}))

        with pytest.raises(ExternalServiceError) as exc_info:
            await client.increase_bounty("S", "t-1", Decimal("1"))

        assert exc_info.value.retryable is True

    async def test_rejected_movement(self):
        client = _make_client(
            _mock_response(400, {"error": "UNDERFUNDED", "message": "Not enough funds"})
        )

        with pytest.raises(ExternalServiceError) as exc_info:
            await client.decrease_bounty("S", "t-1", Decimal("1"))

        assert exc_info.value.error == "UNDERFUNDED"
        assert exc_info.value.details["status_code"] == 400

    async def test_rate_limited(self):
        client = _make_client(_mock_response(429, {}, headers={"Retry-After": "4"}))

        with pytest.raises(RateLimitError) as exc_info:
            await client.refund("S", "t-1")

        assert exc_info.value.retry_after == 4.0

    @freeze_time("2026-05-04T03:02:01Z")
    async def test_missing_timestamp_falls_back_to_local_clock(self):
        client = _make_client(_mock_response(200, {"tx_hash": "h"}))

        with patch("bounty_board_service.clients.ledger_client.get_logger") as get_logger:
            receipt = await client.refund("S", "t-1")

        assert receipt == LedgerReceipt(
            tx_hash="h", confirmed_at="2026-05-04T03:02:01Z", clock_source="local"
        )
        warning = get_logger.return_value.warning
        warning.assert_called_once()
        assert "missing timestamp" in warning.call_args.args[0]

    async def test_ledger_timestamp_is_marked_as_ledger_clock(self):
        client = _make_client(_mock_response(200, {"tx_hash": "h", "created_at": 0}))

        receipt = await client.refund("S", "t-1")

        assert receipt.clock_source == "ledger"


@pytest.mark.unit
class TestContributorMovements:
    async def test_assign_and_approve_payloads(self):
        client = _make_client(_mock_response(200, {"tx_hash": "h", "created_at": 0}))

        await client.assign_contributor("S", "t-1", "GDEV")
        await client.approve_completion("S", "t-1")

        calls = client._client.request.await_args_list
        assert calls[0].args == ("POST", "/escrow/assign")
        assert calls[0].kwargs["json"] == {"secret": "S", "task_id": "t-1", "contributor": "GDEV"}
        assert calls[1].args == ("POST", "/escrow/approve")
        assert calls[1].kwargs["json"] == {"secret": "S", "task_id": "t-1"}

    async def test_approve_timeout_is_not_retryable(self):
        client = _make_client(side_effect=httpx.ReadTimeout("slow"))

        with pytest.raises(ExternalServiceError) as exc_info:
            await client.approve_completion("S", "t-1")

        assert exc_info.value.retryable is False


@pytest.mark.unit
class TestWallets:
    async def test_create_wallet(self):
        client = _make_client(_mock_response(201, {"address": "GNEW", "secret": "SNEW"}))

        keys = await client.create_wallet()

        assert keys == WalletKeys(address="GNEW", secret="SNEW")
        assert "SNEW" not in repr(keys)
        client._client.request.assert_awaited_once_with("POST", "/wallets", json=None)

    async def test_create_wallet_missing_secret(self):
        client = _make_client(_mock_response(201, {"address": "GNEW"}))

        with pytest.raises(ExternalServiceError) as exc_info:
            await client.create_wallet()

        assert exc_info.value.error == "LEDGER_INVALID_RESPONSE"

    async def test_create_wallet_timeout_is_not_retryable(self):
        client = _make_client(side_effect=httpx.ReadTimeout("slow"))

        with pytest.raises(ExternalServiceError) as exc_info:
            await client.create_wallet()

        assert exc_info.value.retryable is False

    async def test_add_trustline_payload(self):
        client = _make_client(_mock_response(200, {"tx_hash": "h", "created_at": 0}))

        await client.add_trustline("S", AssetRef("USDC", "GISSUER"))

        client._client.request.assert_awaited_once_with(
            "POST",
            "/wallets/trustline",
            json={"secret": "S", "asset_code": "USDC", "asset_issuer": "GISSUER"},
        )
