"""Domain enumerations and value objects shared across layers."""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from enum import StrEnum


class TaskStatus(StrEnum):
    """Task lifecycle states."""

    PENDING_PAYMENT = "PENDING_PAYMENT"
    OPEN = "OPEN"
    IN_PROGRESS = "IN_PROGRESS"
    MARKED_AS_COMPLETED = "MARKED_AS_COMPLETED"
    COMPLETED = "COMPLETED"
    ARCHIVED = "ARCHIVED"


class TimelineType(StrEnum):
    DAY = "DAY"
    WEEK = "WEEK"


class InstallationStatus(StrEnum):
    ACTIVE = "ACTIVE"
    ARCHIVED = "ARCHIVED"


class TransactionCategory(StrEnum):
    BOUNTY = "BOUNTY"
    TOP_UP = "TOP_UP"
    REFUND = "REFUND"


class EscrowMethod(StrEnum):
    """Label recorded in a task's escrow log for each ledger movement."""

    CREATION = "creation"
    INCREASE = "increase"
    DECREASE = "decrease"
    ASSIGNMENT = "assignment"
    COMPLETION = "completion"


@dataclass(frozen=True)
class AssetRef:
    """A ledger asset identified by code and issuer."""

    code: str
    issuer: str


@dataclass(frozen=True)
class WalletEnvelope:
    """Envelope-encrypted wallet secret as persisted alongside a wallet address."""

    encrypted_dek: str
    encrypted_secret: str
    iv: str
    auth_tag: str


@dataclass(frozen=True)
class Wallet:
    address: str
    envelope: WalletEnvelope


@dataclass(frozen=True)
class BalanceLine:
    """One balance entry of a ledger account; ``asset_code`` is None for the native asset."""

    asset_code: str | None
    amount: Decimal


@dataclass(frozen=True)
class WalletKeys:
    """A freshly created ledger account and its signing secret."""

    address: str
    secret: str = field(repr=False)


@dataclass(frozen=True)
class LedgerReceipt:
    """
    Result of a confirmed ledger movement.

    ``confirmed_at`` is the ledger's own timestamp. When the gateway omits it
    the local clock is used instead and ``clock_source`` is ``"local"``.
    """

    tx_hash: str
    confirmed_at: str
    clock_source: str = "ledger"
