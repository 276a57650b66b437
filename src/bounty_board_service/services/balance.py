"""Balance and trustline checks against a ledger account."""

from __future__ import annotations

from typing import TYPE_CHECKING

from bounty_board_service.core.exceptions import ValidationError

if TYPE_CHECKING:
    from collections.abc import Iterable
    from decimal import Decimal

    from bounty_board_service.models import BalanceLine


def verify_asset_balance(
    balances: Iterable[BalanceLine],
    asset_code: str,
    required: Decimal,
) -> Decimal:
    """
    Return the account's balance of ``asset_code`` if it covers ``required``.

    A zero balance is still a valid trustline.

    Raises:
        ValidationError: no line for the asset, or the balance is too low
    """
    line = next((entry for entry in balances if entry.asset_code == asset_code), None)
    if line is None:
        raise ValidationError(f"{asset_code} trustline not found")
    if line.amount < required:
        raise ValidationError("Insufficient balance")
    return line.amount
