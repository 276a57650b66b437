"""
Task lifecycle orchestration.

Each operation sequences a database change, a ledger movement and an issue
tracker side effect. Failures before money moves leave nothing behind.
Failures of the money movement are compensated and raised. Failures of the
best-effort steps after money moved are reported as ``PartialOk``.
"""

from __future__ import annotations

import asyncio
import uuid
from decimal import Decimal
from typing import TYPE_CHECKING, Any, TypeVar

from bounty_board_service.core.exceptions import (
    AuthorizationError,
    EscrowContractError,
    NotFoundError,
    ValidationError,
)
from bounty_board_service.logging import get_logger
from bounty_board_service.models import (
    AssetRef,
    EscrowMethod,
    InstallationStatus,
    TaskStatus,
    TimelineType,
    TransactionCategory,
    Wallet,
)
from bounty_board_service.services.balance import verify_asset_balance
from bounty_board_service.services.outcome import Ok, Outcome, PartialOk
from bounty_board_service.services.pipeline import Pipeline
from bounty_board_service.services.retry import (
    RetryOptions,
    execute_with_retry,
    only_explicitly_retryable,
)
from bounty_board_service.services.task_repository import (
    CreateSubmissionOp,
    CreateTransactionOp,
    DeleteTaskOp,
    TaskFilter,
    UpdateContributionOp,
    UpdateTaskOp,
)
from bounty_board_service.services.timeline import normalize_timeline

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Coroutine

    from bounty_board_service.clients.issue_tracker_client import IssueTrackerClient
    from bounty_board_service.clients.ledger_client import LedgerClient
    from bounty_board_service.clients.secret_vault import SecretVault
    from bounty_board_service.config import RetryConfig, RetryPolicyConfig
    from bounty_board_service.models import LedgerReceipt
    from bounty_board_service.services.circuit_breaker import CircuitBreakerRegistry
    from bounty_board_service.services.notifier import ActivityNotifier
    from bounty_board_service.services.task_repository import TaskRepository

T = TypeVar("T")

TASK_CREATED_MESSAGE = "Task created successfully"
TASK_DELETED_MESSAGE = "Task deleted successfully"
BOUNTY_UPDATED_MESSAGE = "Task bounty updated successfully"
TIMELINE_UPDATED_MESSAGE = "Task timeline updated successfully"
COMMENT_ATTACHED_MESSAGE = "Bounty comment attached successfully"
APPLICATION_SUBMITTED_MESSAGE = "Task application submitted"
CONTRIBUTOR_ACCEPTED_MESSAGE = "Contributor assigned successfully"
COMPLETION_SUBMITTED_MESSAGE = "Task marked as completed"
COMPLETION_APPROVED_MESSAGE = "Task completion approved and bounty paid"

ANNOTATION_WARNING = "Failed to either post bounty comment or add bounty label."
COMMENT_ID_WARNING = "Bounty comment was posted but its id could not be saved on the task."
CLEANUP_WARNING = (
    "Failed to either remove bounty label from the task issue or delete bounty comment."
)
COMMENT_UPDATE_WARNING = "Failed to update the bounty amount in the issue comment."
TRANSACTION_WARNING = (
    "Escrow was funded but recording the transaction failed; "
    "the task is pending reconciliation."
)
BOUNTY_TRANSACTION_WARNING = (
    "Escrow was adjusted but recording the transaction failed; "
    "the bounty change is pending reconciliation."
)
REFUND_RECORD_WARNING = (
    "Escrow was refunded but recording the refund failed; "
    "the refund is pending reconciliation."
)
ASSIGNMENT_RECORD_WARNING = (
    "Contributor was assigned in escrow but saving the assignment failed; "
    "the task is pending reconciliation."
)
PAYOUT_RECORD_WARNING = (
    "Bounty was paid out but recording the payout failed; "
    "the task is pending reconciliation."
)


def money_format(value: Decimal) -> str:
    """Two decimals with thousands separators, e.g. ``1,234.50``."""
    return f"{value:,.2f}"


def task_view(task: dict[str, Any]) -> dict[str, Any]:
    """JSON-safe rendering of a task row."""
    view = {key: value for key, value in task.items() if key != "installation"}
    view["bounty"] = str(task["bounty"])
    return view


class TaskOrchestrator:
    """Coordinates repository, ledger, vault and issue tracker for task operations."""

    def __init__(
        self,
        repository: TaskRepository,
        ledger: LedgerClient,
        issue_tracker: IssueTrackerClient,
        vault: SecretVault,
        notifier: ActivityNotifier,
        breakers: CircuitBreakerRegistry,
        retry: RetryConfig,
        escrow_address: str,
        asset: AssetRef,
        contributor_app_url: str,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._repository = repository
        self._ledger = ledger
        self._issue_tracker = issue_tracker
        self._vault = vault
        self._notifier = notifier
        self._breakers = breakers
        self._retry = retry
        self._escrow_address = escrow_address
        self._asset = asset
        self._contributor_app_url = contributor_app_url.rstrip("/")
        self._sleep = sleep
        self._inflight: set[asyncio.Task[Any]] = set()

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    def set_ledger(self, ledger: LedgerClient) -> None:
        self._ledger = ledger

    def set_issue_tracker(self, issue_tracker: IssueTrackerClient) -> None:
        self._issue_tracker = issue_tracker

    def set_vault(self, vault: SecretVault) -> None:
        self._vault = vault

    def set_notifier(self, notifier: ActivityNotifier) -> None:
        self._notifier = notifier

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

    async def _shielded(self, coro: Coroutine[Any, Any, T]) -> T:
        """Run ``coro`` to completion even if the awaiting request is cancelled."""
        task = asyncio.ensure_future(coro)
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        return await asyncio.shield(task)

    async def drain(self) -> None:
        """Wait for shielded work that outlived its request."""
        if self._inflight:
            await asyncio.gather(*self._inflight, return_exceptions=True)

    async def _decrypt(self, wallet: Wallet) -> str:
        return await self._call(
            "vault.decrypt",
            self._retry.vault,
            lambda: self._vault.decrypt(wallet.envelope),
        )

    async def _check_balance(self, wallet: Wallet, required: Decimal) -> None:
        balances = await self._call(
            "ledger.get_balances",
            self._retry.ledger,
            lambda: self._ledger.get_balances(wallet.address),
        )
        verify_asset_balance(balances, self._asset.code, required)

    def bounty_comment_body(self, bounty: Decimal, task_id: str) -> str:
        """Markdown posted on the issue to advertise the bounty."""
        apply_url = f"{self._contributor_app_url}/application?taskId={task_id}"
        return (
            f"\n\n\n## 💵 {money_format(bounty)} {self._asset.code} Bounty\n\n"
            "### Steps to solve:\n"
            "1. **Accept task**: Follow the link below and apply to solve this issue.\n"
            "2. **Submit work**: Once your application is accepted, submit the link to "
            "your pull request and an optional reference supporting the work done.\n"
            "3. **Receive payment**: When your pull request is approved, the full bounty "
            "is transferred to your wallet.\n\n"
            f"**To work on this task, [Apply here]({apply_url})**"
        )

    def _load_task_for_owner(self, task_id: str, user_id: str) -> dict[str, Any]:
        task = self._repository.find_task_with_installation(task_id)
        if task is None:
            raise NotFoundError("Task not found")
        if task["creator_id"] != user_id:
            raise AuthorizationError("Only task creator can perform this action")
        return task

    def _transaction_data(
        self,
        receipt: LedgerReceipt,
        category: TransactionCategory,
        amount: Decimal,
        task: dict[str, Any],
        user_id: str | None = None,
    ) -> dict[str, Any]:
        return {
            "tx_hash": receipt.tx_hash,
            "category": category,
            "amount": amount,
            "task_id": task["task_id"],
            "installation_id": task["installation_id"],
            "user_id": user_id,
            "done_at": receipt.confirmed_at,
            "done_at_source": receipt.clock_source,
        }

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    async def create_task(
        self,
        installation_id: str,
        creator_id: str,
        issue: dict[str, Any],
        bounty: Decimal,
        timeline: float | None,
        timeline_type: TimelineType | None,
        bounty_label_id: str,
    ) -> Outcome:
        """
        Create a funded task.

        Raises:
            NotFoundError: installation missing
            ValidationError: archived installation, missing wallet, no
                trustline, insufficient balance, non-positive bounty
            EscrowContractError: escrow funding failed; the task row was removed
        """
        if bounty <= 0:
            raise ValidationError("Bounty must be greater than zero")

        installation = self._repository.find_installation(installation_id)
        if installation is None:
            raise NotFoundError("Installation not found")
        if installation["status"] == InstallationStatus.ARCHIVED:
            raise ValidationError("Cannot create task for an archived installation")
        wallet: Wallet | None = installation["wallet"]
        if wallet is None:
            raise ValidationError("Installation wallet not found")

        await self._check_balance(wallet, bounty)
        secret = await self._decrypt(wallet)
        timeline, timeline_type = normalize_timeline(timeline, timeline_type)

        task_data = {
            "task_id": str(uuid.uuid4()),
            "installation_id": installation_id,
            "creator_id": creator_id,
            "issue": dict(issue),
            "bounty": bounty,
            "timeline": timeline,
            "timeline_type": timeline_type,
            "status": TaskStatus.PENDING_PAYMENT,
        }
        return await self._shielded(
            self._fund_and_annotate(task_data, secret, bounty_label_id)
        )

    async def _fund_and_annotate(
        self,
        task_data: dict[str, Any],
        secret: str,
        bounty_label_id: str,
    ) -> Outcome:
        logger = get_logger(__name__)
        task_id = str(task_data["task_id"])
        bounty: Decimal = task_data["bounty"]

        async def insert_task(_results: dict[str, Any]) -> dict[str, Any]:
            return self._repository.create_task(task_data)

        async def remove_task(_task: dict[str, Any]) -> None:
            self._repository.delete_task(task_id)

        async def fund_escrow(_results: dict[str, Any]) -> LedgerReceipt:
            try:
                return await self._call(
                    "ledger.transfer",
                    self._retry.ledger,
                    lambda: self._ledger.transfer(
                        secret, self._escrow_address, self._asset, bounty, task_id
                    ),
                    retry_condition=only_explicitly_retryable,
                )
            except EscrowContractError:
                raise
            except Exception as exc:
                raise EscrowContractError("Failed to fund escrow for task", exc) from exc

        pipeline = (
            Pipeline("create_task")
            .add("insert_task", insert_task, remove_task)
            .add("fund_escrow", fund_escrow)
        )
        results = await pipeline.run()
        task: dict[str, Any] = results["insert_task"]
        receipt: LedgerReceipt = results["fund_escrow"]
        logger.info("Escrow funded", extra={"task_id": task_id, "tx_hash": receipt.tx_hash})

        try:
            task, _transaction = self._repository.atomic(
                [
                    UpdateTaskOp(
                        task_id,
                        {
                            "status": TaskStatus.OPEN,
                            "issue": {**task["issue"], "bounty_label_id": bounty_label_id},
                        },
                        escrow_transaction={
                            "tx_hash": receipt.tx_hash,
                            "method": str(EscrowMethod.CREATION),
                        },
                    ),
                    CreateTransactionOp(
                        self._transaction_data(receipt, TransactionCategory.BOUNTY, bounty, task)
                    ),
                ]
            )
        except Exception:
            logger.exception(
                "Failed to record escrow transaction",
                extra={"task_id": task_id, "tx_hash": receipt.tx_hash},
            )
            return PartialOk(
                data=task_view(task),
                message=TASK_CREATED_MESSAGE,
                warning=TRANSACTION_WARNING,
                meta={"transaction_recorded": False, "bounty_comment_posted": False},
            )

        warning: str | None = None
        comment_posted = False
        try:
            comment_id = await self._call(
                "issue_tracker.add_bounty_label_and_comment",
                self._retry.issue_tracker,
                lambda: self._issue_tracker.add_bounty_label_and_comment(
                    str(task["installation_id"]),
                    str(task["issue"]["id"]),
                    bounty_label_id,
                    self.bounty_comment_body(bounty, task_id),
                ),
                retry_condition=only_explicitly_retryable,
            )
        except Exception as exc:
            logger.warning(
                "Failed to post bounty comment",
                extra={"task_id": task_id, "error_type": type(exc).__name__},
            )
            warning = ANNOTATION_WARNING
        else:
            comment_posted = True
            try:
                updated = self._repository.update_task(
                    task_id, {"issue": {**task["issue"], "bounty_comment_id": comment_id}}
                )
            except Exception:
                logger.exception("Failed to save bounty comment id", extra={"task_id": task_id})
                warning = COMMENT_ID_WARNING
            else:
                if updated is not None:
                    task = updated

        await self._notifier.update_activity(str(task["creator_id"]), "task", task_id)

        meta = {"transaction_recorded": True, "bounty_comment_posted": comment_posted}
        if warning is not None:
            return PartialOk(task_view(task), TASK_CREATED_MESSAGE, warning, meta)
        return Ok(task_view(task), TASK_CREATED_MESSAGE, meta)

    # ------------------------------------------------------------------
    # Delete
    # ------------------------------------------------------------------

    async def delete_task(self, task_id: str, acting_user_id: str) -> Outcome:
        """
        Refund and delete an open, unclaimed task.

        Raises:
            NotFoundError: task missing
            AuthorizationError: acting user is not the creator
            ValidationError: archived installation, task not open, contributor
                assigned, missing wallet
            EscrowContractError: refund failed; the task row is untouched
        """
        task = self._repository.find_task_with_installation(task_id)
        if task is None:
            raise NotFoundError("Task not found")
        installation = task["installation"]
        if installation["status"] == InstallationStatus.ARCHIVED:
            raise ValidationError("Cannot delete task for an archived installation")
        if task["creator_id"] != acting_user_id:
            raise AuthorizationError("Only task creator can perform this action")
        if task["status"] != TaskStatus.OPEN:
            raise ValidationError("Only open tasks can be deleted")
        if task["contributor_id"] is not None:
            raise ValidationError("Cannot delete task with assigned contributor")

        bounty: Decimal = task["bounty"]
        secret: str | None = None
        if bounty > 0:
            wallet: Wallet | None = installation["wallet"]
            if wallet is None:
                raise ValidationError("Installation wallet not found")
            secret = await self._decrypt(wallet)

        return await self._shielded(self._refund_and_cleanup(task, secret))

    def _remove_refunded_task(self, task_id: str) -> bool:
        """
        Take a refunded task out of circulation after its refund record failed.

        The row is deleted on its own; if even that fails the task is archived
        so it can never be refunded a second time.
        """
        logger = get_logger(__name__)
        try:
            return self._repository.delete_task(task_id) > 0
        except Exception:
            logger.exception("Failed to delete refunded task", extra={"task_id": task_id})
        try:
            self._repository.update_task(task_id, {"status": TaskStatus.ARCHIVED})
        except Exception:
            logger.critical(
                "Refunded task is still open and needs manual reconciliation",
                exc_info=True,
                extra={"task_id": task_id},
            )
        return False

    async def _refund_and_cleanup(self, task: dict[str, Any], secret: str | None) -> Outcome:
        logger = get_logger(__name__)
        task_id = str(task["task_id"])
        bounty: Decimal = task["bounty"]

        async def refund(_results: dict[str, Any]) -> LedgerReceipt | None:
            if secret is None:
                return None
            try:
                return await self._call(
                    "ledger.refund",
                    self._retry.ledger,
                    lambda: self._ledger.refund(secret, task_id),
                    retry_condition=only_explicitly_retryable,
                )
            except EscrowContractError:
                raise
            except Exception as exc:
                raise EscrowContractError("Failed to refund escrow for task", exc) from exc

        results = await Pipeline("delete_task").add("refund", refund).run()
        receipt: LedgerReceipt | None = results["refund"]

        warning: str | None = None
        meta: dict[str, Any] = {}
        if receipt is None:
            self._repository.atomic([DeleteTaskOp(task_id)])
        else:
            try:
                self._repository.atomic(
                    [
                        CreateTransactionOp(
                            self._transaction_data(
                                receipt, TransactionCategory.REFUND, bounty, task
                            )
                        ),
                        DeleteTaskOp(task_id),
                    ]
                )
            except Exception:
                logger.exception(
                    "Refund succeeded but recording it failed",
                    extra={"task_id": task_id, "tx_hash": receipt.tx_hash},
                )
                warning = REFUND_RECORD_WARNING
                meta = {
                    "refund_recorded": False,
                    "refund_tx_hash": receipt.tx_hash,
                    "task_removed": self._remove_refunded_task(task_id),
                }
        logger.info("Task deleted", extra={"task_id": task_id, "refunded": str(bounty)})

        data = {"refunded": f"{bounty} {self._asset.code}"}
        issue: dict[str, Any] = task["issue"]
        comment_id = issue.get("bounty_comment_id")
        if comment_id:
            try:
                await self._call(
                    "issue_tracker.remove_bounty_label_and_delete_comment",
                    self._retry.issue_tracker,
                    lambda: self._issue_tracker.remove_bounty_label_and_delete_comment(
                        str(task["installation_id"]),
                        str(issue["id"]),
                        str(comment_id),
                        issue.get("bounty_label_id"),
                    ),
                )
            except Exception as exc:
                logger.warning(
                    "Failed to clean up bounty label and comment",
                    extra={"task_id": task_id, "error_type": type(exc).__name__},
                )
                if warning is None:
                    warning = CLEANUP_WARNING

        await self._notifier.update_activity(str(task["creator_id"]), "task", task_id)

        if warning is not None:
            return PartialOk(data, TASK_DELETED_MESSAGE, warning, meta)
        return Ok(data, TASK_DELETED_MESSAGE)

    # ------------------------------------------------------------------
    # Bounty and timeline changes
    # ------------------------------------------------------------------

    def _check_editable(self, task: dict[str, Any]) -> None:
        if task["status"] != TaskStatus.OPEN:
            raise ValidationError("Only open tasks can be updated")
        if task["contributor_id"] is not None:
            raise ValidationError("Cannot update tasks with an assigned contributor")

    async def update_bounty(self, task_id: str, user_id: str, new_bounty: Decimal) -> Outcome:
        """
        Raise or lower a task's escrowed bounty.

        Raises:
            NotFoundError: task missing
            AuthorizationError: acting user is not the creator
            ValidationError: archived installation, missing wallet, task not
                open, contributor assigned, bounty unchanged or non-positive,
                insufficient balance for an increase
            EscrowContractError: the ledger movement failed
        """
        task = self._load_task_for_owner(task_id, user_id)
        installation = task["installation"]
        if installation["status"] == InstallationStatus.ARCHIVED:
            raise ValidationError("Cannot update task for an archived installation")
        wallet: Wallet | None = installation["wallet"]
        if wallet is None:
            raise ValidationError("Installation wallet not found")
        self._check_editable(task)
        if new_bounty <= 0:
            raise ValidationError("Bounty must be greater than zero")
        if new_bounty == task["bounty"]:
            raise ValidationError("New bounty is the same as current bounty")

        difference: Decimal = new_bounty - task["bounty"]
        if difference > 0:
            await self._check_balance(wallet, difference)
        secret = await self._decrypt(wallet)

        return await self._shielded(self._adjust_escrow(task, secret, new_bounty, difference))

    async def _adjust_escrow(
        self,
        task: dict[str, Any],
        secret: str,
        new_bounty: Decimal,
        difference: Decimal,
    ) -> Outcome:
        logger = get_logger(__name__)
        task_id = str(task["task_id"])
        increase = difference > 0
        amount = abs(difference)

        try:
            if increase:
                receipt = await self._call(
                    "ledger.increase_bounty",
                    self._retry.ledger,
                    lambda: self._ledger.increase_bounty(secret, task_id, amount),
                    retry_condition=only_explicitly_retryable,
                )
            else:
                receipt = await self._call(
                    "ledger.decrease_bounty",
                    self._retry.ledger,
                    lambda: self._ledger.decrease_bounty(secret, task_id, amount),
                    retry_condition=only_explicitly_retryable,
                )
        except EscrowContractError:
            raise
        except Exception as exc:
            direction = "increase" if increase else "decrease"
            raise EscrowContractError(f"Failed to {direction} bounty in escrow", exc) from exc

        method = EscrowMethod.INCREASE if increase else EscrowMethod.DECREASE
        category = TransactionCategory.BOUNTY if increase else TransactionCategory.TOP_UP
        try:
            updated, _transaction = self._repository.atomic(
                [
                    UpdateTaskOp(
                        task_id,
                        {"bounty": new_bounty},
                        escrow_transaction={"tx_hash": receipt.tx_hash, "method": str(method)},
                    ),
                    CreateTransactionOp(self._transaction_data(receipt, category, amount, task)),
                ]
            )
        except Exception:
            logger.exception(
                "Failed to record bounty adjustment",
                extra={"task_id": task_id, "tx_hash": receipt.tx_hash},
            )
            return PartialOk(
                data=task_view(task),
                message=BOUNTY_UPDATED_MESSAGE,
                warning=BOUNTY_TRANSACTION_WARNING,
                meta={"transaction_recorded": False, "bounty_comment_updated": False},
            )

        comment_id = updated["issue"].get("bounty_comment_id")
        comment_updated = False
        warning: str | None = None
        if comment_id:
            try:
                await self._call(
                    "issue_tracker.update_issue_comment",
                    self._retry.issue_tracker,
                    lambda: self._issue_tracker.update_issue_comment(
                        str(task["installation_id"]),
                        str(comment_id),
                        self.bounty_comment_body(new_bounty, task_id),
                    ),
                )
            except Exception as exc:
                logger.warning(
                    "Failed to update bounty comment",
                    extra={"task_id": task_id, "error_type": type(exc).__name__},
                )
                warning = COMMENT_UPDATE_WARNING
            else:
                comment_updated = True

        meta = {"transaction_recorded": True, "bounty_comment_updated": comment_updated}
        if warning is not None:
            return PartialOk(task_view(updated), BOUNTY_UPDATED_MESSAGE, warning, meta)
        return Ok(task_view(updated), BOUNTY_UPDATED_MESSAGE, meta)

    async def update_timeline(
        self,
        task_id: str,
        user_id: str,
        timeline: float,
        timeline_type: TimelineType,
    ) -> Outcome:
        """Change a task's time estimate, folding long day counts into weeks."""
        task = self._load_task_for_owner(task_id, user_id)
        self._check_editable(task)
        timeline_value, timeline_unit = normalize_timeline(timeline, timeline_type)
        updated = self._repository.update_task(
            task_id, {"timeline": timeline_value, "timeline_type": timeline_unit}
        )
        if updated is None:
            raise NotFoundError("Task not found")
        return Ok(task_view(updated), TIMELINE_UPDATED_MESSAGE)

    async def attach_bounty_comment(
        self,
        task_id: str,
        user_id: str,
        bounty_label_id: str,
    ) -> Outcome:
        """
        Post the bounty label and comment for a task whose comment id was never saved.

        Unlike creation, a tracker failure here is a hard failure.
        """
        task = self._load_task_for_owner(task_id, user_id)
        if task["status"] != TaskStatus.OPEN:
            raise ValidationError("Only open tasks can be updated")
        issue: dict[str, Any] = task["issue"]
        if issue.get("bounty_comment_id"):
            raise ValidationError("Bounty comment is already attached to this task")

        comment_id = await self._call(
            "issue_tracker.add_bounty_label_and_comment",
            self._retry.issue_tracker,
            lambda: self._issue_tracker.add_bounty_label_and_comment(
                str(task["installation_id"]),
                str(issue["id"]),
                bounty_label_id,
                self.bounty_comment_body(task["bounty"], task_id),
            ),
            retry_condition=only_explicitly_retryable,
        )
        updated = self._repository.update_task(
            task_id,
            {
                "issue": {
                    **issue,
                    "bounty_label_id": bounty_label_id,
                    "bounty_comment_id": comment_id,
                }
            },
        )
        if updated is None:
            raise NotFoundError("Task not found")
        return Ok(task_view(updated), COMMENT_ATTACHED_MESSAGE)

    # ------------------------------------------------------------------
    # Contributor workflow
    # ------------------------------------------------------------------

    async def _escrow_movement(
        self,
        name: str,
        movement: Callable[[], Awaitable[LedgerReceipt]],
        failure_message: str,
    ) -> LedgerReceipt:
        try:
            return await self._call(
                name,
                self._retry.ledger,
                movement,
                retry_condition=only_explicitly_retryable,
            )
        except EscrowContractError:
            raise
        except Exception as exc:
            raise EscrowContractError(failure_message, exc) from exc

    async def apply_for_task(self, task_id: str, user_id: str) -> Outcome:
        """
        Register a user's application for an open task.

        Raises:
            NotFoundError: task or user missing
            ValidationError: task not open, or the user already applied
        """
        task = self._repository.find_task(task_id, TaskFilter(exclude_pending=True))
        if task is None:
            raise NotFoundError("Task not found")
        if task["status"] != TaskStatus.OPEN:
            raise ValidationError("Task is not open")
        if self._repository.get_user(user_id) is None:
            raise NotFoundError("User not found")
        if not self._repository.add_application(task_id, user_id):
            raise ValidationError("You have already applied for this task!")

        await self._notifier.update_activity(str(task["creator_id"]), "task", task_id)
        return Ok({"task_id": task_id, "user_id": user_id}, APPLICATION_SUBMITTED_MESSAGE)

    async def accept_contributor(self, task_id: str, user_id: str, contributor_id: str) -> Outcome:
        """
        Assign an applicant as the task's contributor.

        The escrow learns the contributor's address first; the task moves to
        IN_PROGRESS and the contributor's active task count grows together.

        Raises:
            NotFoundError: task or contributor missing
            AuthorizationError: acting user is not the creator
            ValidationError: archived installation, task not open, contributor
                already assigned, no application, missing wallets
            EscrowContractError: the escrow rejected the assignment
        """
        task = self._load_task_for_owner(task_id, user_id)
        installation = task["installation"]
        if installation["status"] == InstallationStatus.ARCHIVED:
            raise ValidationError("Cannot update task for an archived installation")
        if task["status"] != TaskStatus.OPEN:
            raise ValidationError("Only open tasks can be assigned")
        if task["contributor_id"] is not None:
            raise ValidationError("Task has already been delegated to a contributor")
        if not self._repository.has_applied(task_id, contributor_id):
            raise ValidationError("User did not apply for this task")
        if self._repository.get_user(contributor_id) is None:
            raise NotFoundError("Contributor not found")
        contributor_wallet = self._repository.find_user_wallet(contributor_id)
        if contributor_wallet is None:
            raise ValidationError("Contributor does not have a wallet")
        wallet: Wallet | None = installation["wallet"]
        if wallet is None:
            raise ValidationError("Installation wallet not found")

        secret = await self._decrypt(wallet)
        return await self._shielded(
            self._assign(task, secret, contributor_id, contributor_wallet.address)
        )

    async def _assign(
        self,
        task: dict[str, Any],
        secret: str,
        contributor_id: str,
        contributor_address: str,
    ) -> Outcome:
        logger = get_logger(__name__)
        task_id = str(task["task_id"])
        receipt = await self._escrow_movement(
            "ledger.assign_contributor",
            lambda: self._ledger.assign_contributor(secret, task_id, contributor_address),
            "Failed to assign contributor in escrow",
        )
        logger.info(
            "Contributor assigned in escrow",
            extra={"task_id": task_id, "tx_hash": receipt.tx_hash},
        )

        try:
            updated, _contributor = self._repository.atomic(
                [
                    UpdateTaskOp(
                        task_id,
                        {
                            "contributor_id": contributor_id,
                            "status": TaskStatus.IN_PROGRESS,
                            "accepted_at": receipt.confirmed_at,
                        },
                        escrow_transaction={
                            "tx_hash": receipt.tx_hash,
                            "method": str(EscrowMethod.ASSIGNMENT),
                        },
                    ),
                    UpdateContributionOp(contributor_id, active_tasks=1),
                ]
            )
        except Exception:
            logger.exception(
                "Failed to save contributor assignment",
                extra={"task_id": task_id, "tx_hash": receipt.tx_hash},
            )
            return PartialOk(
                data=task_view(task),
                message=CONTRIBUTOR_ACCEPTED_MESSAGE,
                warning=ASSIGNMENT_RECORD_WARNING,
                meta={"assignment_recorded": False, "tx_hash": receipt.tx_hash},
            )

        await self._notifier.update_activity(contributor_id, "contributor")
        return Ok(task_view(updated), CONTRIBUTOR_ACCEPTED_MESSAGE)

    async def mark_as_complete(
        self,
        task_id: str,
        user_id: str,
        pull_request: str,
        attachment_url: str | None,
    ) -> Outcome:
        """
        Hand in work for the task; repeated submissions are kept.

        Raises:
            NotFoundError: task missing
            AuthorizationError: acting user is not the assigned contributor
            ValidationError: task is not in progress or awaiting review
        """
        task = self._repository.find_task(task_id)
        if task is None:
            raise NotFoundError("Task not found")
        if task["contributor_id"] != user_id:
            raise AuthorizationError("Only the active contributor can make this action")
        if task["status"] not in (TaskStatus.IN_PROGRESS, TaskStatus.MARKED_AS_COMPLETED):
            raise ValidationError("Task is not active")

        submission, updated = self._repository.atomic(
            [
                CreateSubmissionOp(task_id, user_id, pull_request, attachment_url),
                UpdateTaskOp(task_id, {"status": TaskStatus.MARKED_AS_COMPLETED}),
            ]
        )

        await self._notifier.update_activity(str(task["creator_id"]), "task", task_id)
        return Ok(
            {"task": task_view(updated), "submission": submission},
            COMPLETION_SUBMITTED_MESSAGE,
        )

    async def approve_completion(self, task_id: str, user_id: str) -> Outcome:
        """
        Release the escrowed bounty to the contributor and settle the task.

        Raises:
            NotFoundError: task missing
            AuthorizationError: acting user is not the creator
            ValidationError: task not awaiting review, contributor or wallet missing
            EscrowContractError: the escrow did not release the bounty
        """
        task = self._load_task_for_owner(task_id, user_id)
        if task["status"] != TaskStatus.MARKED_AS_COMPLETED:
            raise ValidationError("Task has not been marked as completed")
        contributor_id: str | None = task["contributor_id"]
        if contributor_id is None or self._repository.get_user(contributor_id) is None:
            raise ValidationError("Contributor not found")
        wallet: Wallet | None = task["installation"]["wallet"]
        if wallet is None:
            raise ValidationError("Installation wallet not found")

        secret = await self._decrypt(wallet)
        return await self._shielded(self._pay_out(task, secret, contributor_id))

    async def _pay_out(self, task: dict[str, Any], secret: str, contributor_id: str) -> Outcome:
        logger = get_logger(__name__)
        task_id = str(task["task_id"])
        bounty: Decimal = task["bounty"]
        receipt = await self._escrow_movement(
            "ledger.approve_completion",
            lambda: self._ledger.approve_completion(secret, task_id),
            "Failed to release bounty from escrow",
        )
        logger.info("Bounty released", extra={"task_id": task_id, "tx_hash": receipt.tx_hash})

        try:
            updated, _transaction, _contributor = self._repository.atomic(
                [
                    UpdateTaskOp(
                        task_id,
                        {
                            "status": TaskStatus.COMPLETED,
                            "completed_at": receipt.confirmed_at,
                            "settled": True,
                        },
                        escrow_transaction={
                            "tx_hash": receipt.tx_hash,
                            "method": str(EscrowMethod.COMPLETION),
                        },
                    ),
                    CreateTransactionOp(
                        self._transaction_data(
                            receipt, TransactionCategory.BOUNTY, bounty, task, contributor_id
                        )
                    ),
                    UpdateContributionOp(
                        contributor_id, active_tasks=-1, tasks_completed=1, earnings=bounty
                    ),
                ]
            )
        except Exception:
            logger.exception(
                "Failed to record bounty payout",
                extra={"task_id": task_id, "tx_hash": receipt.tx_hash},
            )
            return PartialOk(
                data=task_view(task),
                message=COMPLETION_APPROVED_MESSAGE,
                warning=PAYOUT_RECORD_WARNING,
                meta={"payout_recorded": False, "tx_hash": receipt.tx_hash},
            )

        await self._notifier.update_activity(contributor_id, "contributor")
        return Ok(task_view(updated), COMPLETION_APPROVED_MESSAGE)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_task(self, task_id: str) -> dict[str, Any]:
        """Fetch a task; tasks still awaiting payment are not visible."""
        task = self._repository.find_task(task_id, TaskFilter(exclude_pending=True))
        if task is None:
            raise NotFoundError("Task not found")
        return task_view(task)

    def get_stats(self) -> dict[str, Any]:
        tasks_by_status = self._repository.count_tasks_by_status()
        return {
            "total_tasks": sum(tasks_by_status.values()),
            "tasks_by_status": tasks_by_status,
        }

    def close(self) -> None:
        self._repository.close()
