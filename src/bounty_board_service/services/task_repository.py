"""SQLite-backed storage for installations, tasks, transactions, and users."""

from __future__ import annotations

import contextlib
import json
import sqlite3
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from threading import RLock
from typing import Any

from bounty_board_service.models import (
    InstallationStatus,
    TaskStatus,
    Wallet,
    WalletEnvelope,
)

ADDRESS_BOOK_LIMIT = 20


class DuplicateTransactionError(Exception):
    """Raised when a transaction with the same tx_hash was already recorded."""


class MissingTaskError(Exception):
    """Raised when an update inside an atomic unit targets a task that does not exist."""


class MissingUserError(Exception):
    """Raised when a contribution update inside an atomic unit targets an unknown user."""


@dataclass(frozen=True)
class TaskFilter:
    """Typed filter for single-task lookups."""

    status: TaskStatus | None = None
    creator_id: str | None = None
    exclude_pending: bool = False


@dataclass(frozen=True)
class UpdateTaskOp:
    """Patch a task and optionally append one entry to its escrow log."""

    task_id: str
    patch: dict[str, Any]
    escrow_transaction: dict[str, str] | None = None


@dataclass(frozen=True)
class CreateTransactionOp:
    """Insert one ledger transaction record."""

    data: dict[str, Any]


@dataclass(frozen=True)
class DeleteTaskOp:
    """Remove one task row."""

    task_id: str


@dataclass(frozen=True)
class CreateSubmissionOp:
    """Record the work a contributor handed in for a task."""

    task_id: str
    user_id: str
    pull_request: str
    attachment_url: str | None = None


@dataclass(frozen=True)
class UpdateContributionOp:
    """Adjust a user's contribution summary by the given deltas."""

    user_id: str
    active_tasks: int = 0
    tasks_completed: int = 0
    earnings: Decimal = Decimal("0")


RepositoryOp = (
    UpdateTaskOp | CreateTransactionOp | DeleteTaskOp | CreateSubmissionOp | UpdateContributionOp
)


def _now_iso() -> str:
    """Return current UTC time as ISO 8601 string with Z suffix."""
    return datetime.now(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")


class TaskRepository:
    """
    Durable CRUD for the marketplace entities.

    All multi-row changes that must agree with each other go through
    ``atomic``, which runs them in one SQLite transaction.
    """

    _TASK_COLUMNS: tuple[str, ...] = (
        "task_id",
        "installation_id",
        "creator_id",
        "contributor_id",
        "issue",
        "bounty",
        "settled",
        "escrow_transactions",
        "timeline",
        "timeline_type",
        "status",
        "created_at",
        "updated_at",
        "accepted_at",
        "completed_at",
    )
    _MUTABLE_TASK_COLUMNS = frozenset(
        {
            "contributor_id",
            "issue",
            "bounty",
            "settled",
            "timeline",
            "timeline_type",
            "status",
            "accepted_at",
            "completed_at",
        }
    )
    _TASK_SELECT_SQL = (
        "SELECT task_id, installation_id, creator_id, contributor_id, issue, bounty, settled, "
        "escrow_transactions, timeline, timeline_type, status, created_at, updated_at, "
        "accepted_at, completed_at FROM tasks"
    )
    _TRANSACTION_COLUMNS: tuple[str, ...] = (
        "tx_hash",
        "category",
        "amount",
        "task_id",
        "installation_id",
        "user_id",
        "done_at",
        "done_at_source",
        "created_at",
    )
    _TRANSACTION_SELECT_SQL = (
        "SELECT tx_hash, category, amount, task_id, installation_id, user_id, done_at, "
        "done_at_source, created_at FROM transactions"
    )

    def __init__(self, db_path: str) -> None:
        self._lock = RLock()
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._db = sqlite3.connect(db_path, check_same_thread=False)
        self._db.row_factory = sqlite3.Row
        self._db.execute("PRAGMA journal_mode=WAL")
        self._db.execute("PRAGMA foreign_keys=ON")
        self._db.execute("PRAGMA busy_timeout=5000")
        self._init_schema()

    def _init_schema(self) -> None:
        with self._lock:
            self._db.executescript(
                """
                CREATE TABLE IF NOT EXISTS installations (
                    installation_id TEXT PRIMARY KEY,
                    status TEXT NOT NULL DEFAULT 'ACTIVE',
                    wallet_address TEXT,
                    wallet_encrypted_dek TEXT,
                    wallet_encrypted_secret TEXT,
                    wallet_iv TEXT,
                    wallet_auth_tag TEXT,
                    created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS installation_members (
                    installation_id TEXT NOT NULL REFERENCES installations(installation_id),
                    user_id TEXT NOT NULL,
                    PRIMARY KEY (installation_id, user_id)
                );

                CREATE TABLE IF NOT EXISTS tasks (
                    task_id TEXT PRIMARY KEY,
                    installation_id TEXT NOT NULL REFERENCES installations(installation_id),
                    creator_id TEXT NOT NULL,
                    contributor_id TEXT,
                    issue TEXT NOT NULL,
                    bounty TEXT NOT NULL,
                    settled INTEGER NOT NULL DEFAULT 0,
                    escrow_transactions TEXT NOT NULL DEFAULT '[]',
                    timeline REAL,
                    timeline_type TEXT,
                    status TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    accepted_at TEXT,
                    completed_at TEXT
                );

                CREATE TABLE IF NOT EXISTS transactions (
                    tx_hash TEXT PRIMARY KEY,
                    category TEXT NOT NULL,
                    amount TEXT NOT NULL,
                    task_id TEXT,
                    installation_id TEXT,
                    user_id TEXT,
                    done_at TEXT NOT NULL,
                    done_at_source TEXT NOT NULL DEFAULT 'ledger',
                    created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS task_applications (
                    task_id TEXT NOT NULL,
                    user_id TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    PRIMARY KEY (task_id, user_id)
                );

                CREATE TABLE IF NOT EXISTS task_submissions (
                    submission_id INTEGER PRIMARY KEY AUTOINCREMENT,
                    task_id TEXT NOT NULL,
                    user_id TEXT NOT NULL,
                    pull_request TEXT NOT NULL,
                    attachment_url TEXT,
                    created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS users (
                    user_id TEXT PRIMARY KEY,
                    username TEXT NOT NULL,
                    wallet_address TEXT,
                    wallet_encrypted_dek TEXT,
                    wallet_encrypted_secret TEXT,
                    wallet_iv TEXT,
                    wallet_auth_tag TEXT,
                    address_book TEXT NOT NULL DEFAULT '[]',
                    tasks_completed INTEGER NOT NULL DEFAULT 0,
                    active_tasks INTEGER NOT NULL DEFAULT 0,
                    total_earnings TEXT NOT NULL DEFAULT '0',
                    created_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS ix_tasks_installation_status
                    ON tasks(installation_id, status);
                CREATE INDEX IF NOT EXISTS ix_transactions_task
                    ON transactions(task_id);
                """
            )
            self._db.commit()

    # ------------------------------------------------------------------
    # Row conversion
    # ------------------------------------------------------------------

    def _row_to_task(self, row: sqlite3.Row) -> dict[str, Any]:
        task = {column: row[column] for column in self._TASK_COLUMNS}
        task["issue"] = json.loads(task["issue"])
        task["bounty"] = Decimal(task["bounty"])
        task["settled"] = bool(task["settled"])
        task["escrow_transactions"] = json.loads(task["escrow_transactions"])
        return task

    def _row_to_transaction(self, row: sqlite3.Row) -> dict[str, Any]:
        transaction = {column: row[column] for column in self._TRANSACTION_COLUMNS}
        transaction["amount"] = Decimal(transaction["amount"])
        return transaction

    @staticmethod
    def _encode_task_value(column: str, value: Any) -> Any:
        if value is None:
            return None
        if column == "issue":
            return json.dumps(value, sort_keys=True)
        if column == "bounty":
            return str(Decimal(str(value)))
        if column == "settled":
            return int(bool(value))
        if column in ("status", "timeline_type"):
            return str(value)
        return value

    # ------------------------------------------------------------------
    # Installations
    # ------------------------------------------------------------------

    def insert_installation(
        self,
        installation_id: str,
        status: InstallationStatus,
        wallet: Wallet | None,
        member_ids: tuple[str, ...] = (),
    ) -> None:
        """Insert an installation with its optional wallet and members."""
        envelope = wallet.envelope if wallet is not None else None
        with self._lock:
            try:
                self._db.execute("BEGIN IMMEDIATE")
                self._db.execute(
                    """
                    INSERT INTO installations (
                        installation_id, status, wallet_address, wallet_encrypted_dek,
                        wallet_encrypted_secret, wallet_iv, wallet_auth_tag, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        installation_id,
                        str(status),
                        wallet.address if wallet is not None else None,
                        envelope.encrypted_dek if envelope is not None else None,
                        envelope.encrypted_secret if envelope is not None else None,
                        envelope.iv if envelope is not None else None,
                        envelope.auth_tag if envelope is not None else None,
                        _now_iso(),
                    ),
                )
                for user_id in member_ids:
                    self._db.execute(
                        "INSERT INTO installation_members (installation_id, user_id) VALUES (?, ?)",
                        (installation_id, user_id),
                    )
                self._db.commit()
            except Exception:
                with contextlib.suppress(sqlite3.Error):
                    self._db.execute("ROLLBACK")
                raise

    def find_installation(self, installation_id: str) -> dict[str, Any] | None:
        """Fetch an installation with its wallet and member ids."""
        with self._lock:
            row = self._db.execute(
                "SELECT installation_id, status, wallet_address, wallet_encrypted_dek, "
                "wallet_encrypted_secret, wallet_iv, wallet_auth_tag, created_at "
                "FROM installations WHERE installation_id = ?",
                (installation_id,),
            ).fetchone()
            if row is None:
                return None
            members = self._db.execute(
                "SELECT user_id FROM installation_members WHERE installation_id = ? "
                "ORDER BY user_id",
                (installation_id,),
            ).fetchall()

        wallet: Wallet | None = None
        if row["wallet_address"] is not None:
            wallet = Wallet(
                address=row["wallet_address"],
                envelope=WalletEnvelope(
                    encrypted_dek=row["wallet_encrypted_dek"],
                    encrypted_secret=row["wallet_encrypted_secret"],
                    iv=row["wallet_iv"],
                    auth_tag=row["wallet_auth_tag"],
                ),
            )
        return {
            "installation_id": row["installation_id"],
            "status": InstallationStatus(row["status"]),
            "wallet": wallet,
            "member_ids": [member["user_id"] for member in members],
            "created_at": row["created_at"],
        }

    def set_installation_status(self, installation_id: str, status: InstallationStatus) -> int:
        """Change an installation's status and return the number of affected rows."""
        with self._lock:
            cursor = self._db.execute(
                "UPDATE installations SET status = ? WHERE installation_id = ?",
                (str(status), installation_id),
            )
            self._db.commit()
        return int(cursor.rowcount)

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    def create_task(self, task_data: dict[str, Any]) -> dict[str, Any]:
        """Insert a new task row and return it."""
        now = _now_iso()
        row = {
            "contributor_id": None,
            "settled": False,
            "escrow_transactions": [],
            "timeline": None,
            "timeline_type": None,
            "accepted_at": None,
            "completed_at": None,
            "created_at": now,
            "updated_at": now,
            **task_data,
        }
        values = []
        for column in self._TASK_COLUMNS:
            if column == "escrow_transactions":
                values.append(json.dumps(row[column]))
            else:
                values.append(self._encode_task_value(column, row[column]))

        placeholders = ", ".join("?" for _ in self._TASK_COLUMNS)
        query = (
            "INSERT INTO tasks (" + ", ".join(self._TASK_COLUMNS) + ") VALUES (" + placeholders + ")"
        )  # nosec B608
        with self._lock:
            try:
                self._db.execute("BEGIN IMMEDIATE")
                self._db.execute(query, values)
                self._db.commit()
            except Exception:
                with contextlib.suppress(sqlite3.Error):
                    self._db.execute("ROLLBACK")
                raise
            created = self.find_task(str(row["task_id"]))
        if created is None:
            msg = f"Task {row['task_id']} not found after insert"
            raise RuntimeError(msg)
        return created

    def find_task(
        self,
        task_id: str,
        task_filter: TaskFilter | None = None,
    ) -> dict[str, Any] | None:
        """Fetch a task by id, optionally constrained by a filter."""
        query = self._TASK_SELECT_SQL + " WHERE task_id = ?"
        params: list[object] = [task_id]
        if task_filter is not None:
            if task_filter.status is not None:
                query += " AND status = ?"
                params.append(str(task_filter.status))
            if task_filter.creator_id is not None:
                query += " AND creator_id = ?"
                params.append(task_filter.creator_id)
            if task_filter.exclude_pending:
                query += " AND status != ?"
                params.append(str(TaskStatus.PENDING_PAYMENT))

        with self._lock:
            row = self._db.execute(query, params).fetchone()
        if row is None:
            return None
        return self._row_to_task(row)

    def find_task_with_installation(self, task_id: str) -> dict[str, Any] | None:
        """Fetch a task together with its installation (status, wallet, members)."""
        with self._lock:
            task = self.find_task(task_id)
            if task is None:
                return None
            installation = self.find_installation(str(task["installation_id"]))
        if installation is None:
            msg = f"Installation {task['installation_id']} missing for task {task_id}"
            raise RuntimeError(msg)
        task["installation"] = installation
        return task

    def _apply_task_update(
        self,
        task_id: str,
        patch: dict[str, Any],
        escrow_transaction: dict[str, str] | None,
    ) -> int:
        """Run a task UPDATE on the open connection without committing."""
        if any(column not in self._MUTABLE_TASK_COLUMNS for column in patch):
            msg = "Attempted to update unknown or immutable task column"
            raise ValueError(msg)

        updates: dict[str, Any] = {
            column: self._encode_task_value(column, value) for column, value in patch.items()
        }
        if escrow_transaction is not None:
            row = self._db.execute(
                "SELECT escrow_transactions FROM tasks WHERE task_id = ?",
                (task_id,),
            ).fetchone()
            if row is None:
                return 0
            log = json.loads(row["escrow_transactions"])
            log.append(dict(escrow_transaction))
            updates["escrow_transactions"] = json.dumps(log)
        updates["updated_at"] = _now_iso()

        set_clause = ", ".join(f"{column} = ?" for column in updates)
        query = "UPDATE tasks SET " + set_clause + " WHERE task_id = ?"  # nosec B608
        cursor = self._db.execute(query, [*updates.values(), task_id])
        return int(cursor.rowcount)

    def update_task(
        self,
        task_id: str,
        patch: dict[str, Any],
        escrow_transaction: dict[str, str] | None = None,
    ) -> dict[str, Any] | None:
        """Patch a task and return the updated row, or None when it does not exist."""
        with self._lock:
            try:
                self._db.execute("BEGIN IMMEDIATE")
                changed = self._apply_task_update(task_id, patch, escrow_transaction)
                self._db.commit()
            except Exception:
                with contextlib.suppress(sqlite3.Error):
                    self._db.execute("ROLLBACK")
                raise
            if changed == 0:
                return None
            return self.find_task(task_id)

    def delete_task(self, task_id: str) -> int:
        """Delete a task row and return the number of affected rows."""
        with self._lock:
            cursor = self._db.execute("DELETE FROM tasks WHERE task_id = ?", (task_id,))
            self._db.commit()
        return int(cursor.rowcount)

    def count_tasks_by_status(self) -> dict[str, int]:
        """Count tasks grouped by status."""
        with self._lock:
            rows = self._db.execute("SELECT status, COUNT(*) FROM tasks GROUP BY status").fetchall()
        return {str(row[0]): int(row[1]) for row in rows}

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    def _apply_transaction_insert(self, data: dict[str, Any]) -> None:
        try:
            self._db.execute(
                """
                INSERT INTO transactions (
                    tx_hash, category, amount, task_id, installation_id, user_id,
                    done_at, done_at_source, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    data["tx_hash"],
                    str(data["category"]),
                    str(Decimal(str(data["amount"]))),
                    data.get("task_id"),
                    data.get("installation_id"),
                    data.get("user_id"),
                    data["done_at"],
                    data.get("done_at_source", "ledger"),
                    _now_iso(),
                ),
            )
        except sqlite3.IntegrityError as exc:
            if "unique" in str(exc).lower():
                raise DuplicateTransactionError(
                    f"Transaction {data['tx_hash']} already recorded"
                ) from exc
            raise

    def create_transaction(self, data: dict[str, Any]) -> dict[str, Any]:
        """Insert a ledger transaction record and return it."""
        with self._lock:
            try:
                self._db.execute("BEGIN IMMEDIATE")
                self._apply_transaction_insert(data)
                self._db.commit()
            except Exception:
                with contextlib.suppress(sqlite3.Error):
                    self._db.execute("ROLLBACK")
                raise
            created = self.find_transaction(str(data["tx_hash"]))
        if created is None:
            msg = f"Transaction {data['tx_hash']} not found after insert"
            raise RuntimeError(msg)
        return created

    def find_transaction(self, tx_hash: str) -> dict[str, Any] | None:
        """Fetch a transaction by hash."""
        with self._lock:
            row = self._db.execute(
                self._TRANSACTION_SELECT_SQL + " WHERE tx_hash = ?",
                (tx_hash,),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_transaction(row)

    def list_transactions_for_task(self, task_id: str) -> list[dict[str, Any]]:
        """Fetch all transactions tied to a task, oldest first."""
        with self._lock:
            rows = self._db.execute(
                self._TRANSACTION_SELECT_SQL + " WHERE task_id = ? ORDER BY done_at",
                (task_id,),
            ).fetchall()
        return [self._row_to_transaction(row) for row in rows]

    # ------------------------------------------------------------------
    # Applications and submissions
    # ------------------------------------------------------------------

    def add_application(self, task_id: str, user_id: str) -> bool:
        """Record that a user applied for a task; False if they already had."""
        with self._lock:
            try:
                self._db.execute(
                    "INSERT INTO task_applications (task_id, user_id, created_at) VALUES (?, ?, ?)",
                    (task_id, user_id, _now_iso()),
                )
            except sqlite3.IntegrityError:
                self._db.rollback()
                return False
            self._db.commit()
        return True

    def has_applied(self, task_id: str, user_id: str) -> bool:
        with self._lock:
            row = self._db.execute(
                "SELECT 1 FROM task_applications WHERE task_id = ? AND user_id = ?",
                (task_id, user_id),
            ).fetchone()
        return row is not None

    def _apply_submission_insert(self, op: CreateSubmissionOp) -> int:
        cursor = self._db.execute(
            """
            INSERT INTO task_submissions (
                task_id, user_id, pull_request, attachment_url, created_at
            )
            VALUES (?, ?, ?, ?, ?)
            """,
            (op.task_id, op.user_id, op.pull_request, op.attachment_url, _now_iso()),
        )
        return int(cursor.lastrowid or 0)

    def find_submission(self, submission_id: int) -> dict[str, Any] | None:
        with self._lock:
            row = self._db.execute(
                "SELECT submission_id, task_id, user_id, pull_request, attachment_url, created_at "
                "FROM task_submissions WHERE submission_id = ?",
                (submission_id,),
            ).fetchone()
        if row is None:
            return None
        return dict(row)

    # ------------------------------------------------------------------
    # Atomic multi-op commit
    # ------------------------------------------------------------------

    def _apply_contribution_update(self, op: UpdateContributionOp) -> int:
        row = self._db.execute(
            "SELECT total_earnings FROM users WHERE user_id = ?",
            (op.user_id,),
        ).fetchone()
        if row is None:
            return 0
        earnings = Decimal(row["total_earnings"]) + op.earnings
        cursor = self._db.execute(
            """
            UPDATE users SET
                active_tasks = MAX(active_tasks + ?, 0),
                tasks_completed = tasks_completed + ?,
                total_earnings = ?
            WHERE user_id = ?
            """,
            (op.active_tasks, op.tasks_completed, str(earnings), op.user_id),
        )
        return int(cursor.rowcount)

    def atomic(self, ops: list[RepositoryOp]) -> list[dict[str, Any]]:
        """
        Apply all operations in one database transaction.

        Either every operation commits or none does. Results are returned in
        the order of ``ops``: the updated task for ``UpdateTaskOp``, the
        created record for ``CreateTransactionOp`` and ``CreateSubmissionOp``,
        ``{"task_id", "deleted"}`` for ``DeleteTaskOp`` and the updated user
        for ``UpdateContributionOp``.

        Raises:
            MissingTaskError: an update or delete targeted a task that does not exist
            MissingUserError: a contribution update targeted a user that does not exist
            DuplicateTransactionError: a transaction hash was already recorded
        """
        submission_ids: dict[int, int] = {}
        with self._lock:
            try:
                self._db.execute("BEGIN IMMEDIATE")
                for index, op in enumerate(ops):
                    if isinstance(op, CreateTransactionOp):
                        self._apply_transaction_insert(op.data)
                    elif isinstance(op, CreateSubmissionOp):
                        submission_ids[index] = self._apply_submission_insert(op)
                    elif isinstance(op, UpdateContributionOp):
                        if self._apply_contribution_update(op) == 0:
                            raise MissingUserError(f"User {op.user_id} does not exist")
                    else:
                        if isinstance(op, UpdateTaskOp):
                            changed = self._apply_task_update(
                                op.task_id, op.patch, op.escrow_transaction
                            )
                        else:
                            changed = int(
                                self._db.execute(
                                    "DELETE FROM tasks WHERE task_id = ?", (op.task_id,)
                                ).rowcount
                            )
                        if changed == 0:
                            raise MissingTaskError(f"Task {op.task_id} does not exist")
                self._db.commit()
            except Exception:
                with contextlib.suppress(sqlite3.Error):
                    self._db.execute("ROLLBACK")
                raise

            results: list[dict[str, Any]] = []
            for index, op in enumerate(ops):
                record: dict[str, Any] | None
                if isinstance(op, UpdateTaskOp):
                    record = self.find_task(op.task_id)
                elif isinstance(op, DeleteTaskOp):
                    record = {"task_id": op.task_id, "deleted": True}
                elif isinstance(op, CreateSubmissionOp):
                    record = self.find_submission(submission_ids[index])
                elif isinstance(op, UpdateContributionOp):
                    record = self.get_user(op.user_id)
                else:
                    record = self.find_transaction(str(op.data["tx_hash"]))
                if record is None:
                    msg = "Record missing after atomic commit"
                    raise RuntimeError(msg)
                results.append(record)
        return results

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def insert_user(self, user_id: str, username: str, wallet: Wallet | None = None) -> None:
        """
        Insert a user with an empty address book and contribution summary.

        Raises:
            sqlite3.IntegrityError: the user already exists
        """
        envelope = wallet.envelope if wallet is not None else None
        with self._lock:
            try:
                self._db.execute(
                    """
                    INSERT INTO users (
                        user_id, username, wallet_address, wallet_encrypted_dek,
                        wallet_encrypted_secret, wallet_iv, wallet_auth_tag, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        user_id,
                        username,
                        wallet.address if wallet is not None else None,
                        envelope.encrypted_dek if envelope is not None else None,
                        envelope.encrypted_secret if envelope is not None else None,
                        envelope.iv if envelope is not None else None,
                        envelope.auth_tag if envelope is not None else None,
                        _now_iso(),
                    ),
                )
            except Exception:
                self._db.rollback()
                raise
            self._db.commit()

    def get_user(self, user_id: str) -> dict[str, Any] | None:
        """Fetch a user with address book and contribution summary."""
        with self._lock:
            row = self._db.execute(
                "SELECT user_id, username, wallet_address, address_book, tasks_completed, "
                "active_tasks, total_earnings, created_at FROM users WHERE user_id = ?",
                (user_id,),
            ).fetchone()
        if row is None:
            return None
        return {
            "user_id": row["user_id"],
            "username": row["username"],
            "wallet_address": row["wallet_address"],
            "address_book": json.loads(row["address_book"]),
            "contribution_summary": {
                "tasks_completed": int(row["tasks_completed"]),
                "active_tasks": int(row["active_tasks"]),
                "total_earnings": Decimal(row["total_earnings"]),
            },
            "created_at": row["created_at"],
        }

    def find_user_wallet(self, user_id: str) -> Wallet | None:
        """Fetch a user's encrypted wallet, or None when the user has none."""
        with self._lock:
            row = self._db.execute(
                "SELECT wallet_address, wallet_encrypted_dek, wallet_encrypted_secret, "
                "wallet_iv, wallet_auth_tag FROM users WHERE user_id = ?",
                (user_id,),
            ).fetchone()
        if row is None or row["wallet_address"] is None:
            return None
        return Wallet(
            address=row["wallet_address"],
            envelope=WalletEnvelope(
                encrypted_dek=row["wallet_encrypted_dek"],
                encrypted_secret=row["wallet_encrypted_secret"],
                iv=row["wallet_iv"],
                auth_tag=row["wallet_auth_tag"],
            ),
        )

    def add_address_book_entry(self, user_id: str, entry: dict[str, str]) -> list[dict[str, str]]:
        """
        Append an entry to a user's address book and return the new book.

        An address already present moves to the newest position. The book
        keeps at most ADDRESS_BOOK_LIMIT entries, evicting the oldest.
        """
        with self._lock:
            try:
                self._db.execute("BEGIN IMMEDIATE")
                row = self._db.execute(
                    "SELECT address_book FROM users WHERE user_id = ?",
                    (user_id,),
                ).fetchone()
                if row is None:
                    raise LookupError(f"User {user_id} does not exist")
                book = [
                    item
                    for item in json.loads(row["address_book"])
                    if item.get("address") != entry["address"]
                ]
                book.append(dict(entry))
                book = book[-ADDRESS_BOOK_LIMIT:]
                self._db.execute(
                    "UPDATE users SET address_book = ? WHERE user_id = ?",
                    (json.dumps(book), user_id),
                )
                self._db.commit()
            except Exception:
                with contextlib.suppress(sqlite3.Error):
                    self._db.execute("ROLLBACK")
                raise
        return book

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self._db.close()
