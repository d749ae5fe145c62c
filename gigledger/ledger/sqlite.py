"""SQLite ledger backend.

Each write transaction takes the database write lock up front
(``BEGIN IMMEDIATE``), so concurrent writers queue on ``busy_timeout`` instead
of failing half-way. Updates are compare-and-set on the status column; an
update that matches no row means another writer moved the entity first.
"""

import contextlib
import json
import logging
import sqlite3
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from gigledger.contracts.models import (
    Bid,
    BidStatus,
    Contract,
    ContractStage,
    ContractTransition,
    Milestone,
    MilestoneStatus,
    Notification,
    Project,
    ProjectStatus,
    ProgressUpdate,
)
from gigledger.errors import (
    ConflictError,
    InvalidTransitionError,
    LifecycleError,
    ValidationError,
)
from gigledger.payments.models import Payment, PaymentStatus, can_transition_payment

from .base import format_datetime, parse_datetime, utc_now
from .schema import UPDATABLE_COLUMNS, init_db, validate_table_name

logger = logging.getLogger(__name__)


def _money(value: Optional[Decimal]) -> Optional[str]:
    return None if value is None else str(value)


def _db_value(value: Any) -> Any:
    """Convert a model value to its column representation."""
    if isinstance(value, Decimal):
        return str(value)
    if hasattr(value, "isoformat"):
        return format_datetime(value)
    if isinstance(value, bool):
        return int(value)
    if hasattr(value, "value"):
        return value.value
    return value


def translate_integrity_error(exc: sqlite3.IntegrityError) -> LifecycleError:
    """Map a constraint failure to the engine's error taxonomy."""
    message = str(exc)
    if "UNIQUE" in message:
        if "contracts.bid_id" in message:
            return ConflictError("A contract already exists for this bid")
        if "payments.milestone_id" in message:
            return ConflictError("A payment already exists for this milestone")
        return ConflictError(f"Duplicate record: {message}")
    return ValidationError(f"Constraint violated: {message}")


# === Row converters ===


def _row_to_project(row: sqlite3.Row) -> Project:
    return Project(
        id=row["id"],
        client_id=row["client_id"],
        title=row["title"],
        description=row["description"],
        budget=Decimal(row["budget"]),
        deadline=parse_datetime(row["deadline"]),
        skills=json.loads(row["skills"]) if row["skills"] else [],
        category=row["category"],
        status=row["status"],
        created_at=parse_datetime(row["created_at"]),
    )


def _row_to_bid(row: sqlite3.Row) -> Bid:
    return Bid(
        id=row["id"],
        project_id=row["project_id"],
        freelancer_id=row["freelancer_id"],
        amount=Decimal(row["amount"]),
        delivery_time_days=row["delivery_time_days"],
        cover_letter=row["cover_letter"],
        status=row["status"],
        created_at=parse_datetime(row["created_at"]),
    )


def _row_to_contract(row: sqlite3.Row) -> Contract:
    return Contract(
        id=row["id"],
        project_id=row["project_id"],
        client_id=row["client_id"],
        freelancer_id=row["freelancer_id"],
        bid_id=row["bid_id"],
        title=row["title"],
        description=row["description"],
        amount=Decimal(row["amount"]),
        stage=row["stage"],
        terms_accepted=bool(row["terms_accepted"]),
        payment_intent_id=row["payment_intent_id"],
        start_date=parse_datetime(row["start_date"]),
        end_date=parse_datetime(row["end_date"]),
        created_at=parse_datetime(row["created_at"]),
        updated_at=parse_datetime(row["updated_at"]),
    )


def _row_to_milestone(row: sqlite3.Row) -> Milestone:
    return Milestone(
        id=row["id"],
        contract_id=row["contract_id"],
        project_id=row["project_id"],
        title=row["title"],
        amount=Decimal(row["amount"]),
        description=row["description"],
        due_date=parse_datetime(row["due_date"]),
        status=row["status"],
        position=row["position"],
        created_at=parse_datetime(row["created_at"]),
        updated_at=parse_datetime(row["updated_at"]),
    )


def _row_to_progress(row: sqlite3.Row) -> ProgressUpdate:
    return ProgressUpdate(
        id=row["id"],
        milestone_id=row["milestone_id"],
        author_id=row["author_id"],
        description=row["description"],
        status=row["status"],
        created_at=parse_datetime(row["created_at"]),
    )


def _row_to_payment(row: sqlite3.Row) -> Payment:
    return Payment(
        id=row["id"],
        contract_id=row["contract_id"],
        milestone_id=row["milestone_id"],
        client_id=row["client_id"],
        freelancer_id=row["freelancer_id"],
        amount=Decimal(row["amount"]),
        status=row["status"],
        payment_intent_id=row["payment_intent_id"],
        transfer_id=row["transfer_id"],
        refund_id=row["refund_id"],
        completed_at=parse_datetime(row["completed_at"]),
        created_at=parse_datetime(row["created_at"]),
        updated_at=parse_datetime(row["updated_at"]),
    )


def _row_to_notification(row: sqlite3.Row) -> Notification:
    return Notification(
        id=row["id"],
        user_id=row["user_id"],
        type=row["type"],
        title=row["title"],
        message=row["message"],
        reference_id=row["reference_id"],
        reference_type=row["reference_type"],
        amount=Decimal(row["amount"]) if row["amount"] is not None else None,
        is_read=bool(row["is_read"]),
        created_at=parse_datetime(row["created_at"]),
    )


def _row_to_transition(row: sqlite3.Row) -> ContractTransition:
    return ContractTransition(
        id=row["id"],
        contract_id=row["contract_id"],
        from_stage=row["from_stage"],
        to_stage=row["to_stage"],
        actor_id=row["actor_id"],
        reason=row["reason"],
        created_at=parse_datetime(row["created_at"]),
    )


class SQLiteLedgerTransaction:
    """Reads and writes bound to one open connection and transaction."""

    def __init__(self, conn: sqlite3.Connection):
        self._conn = conn

    # === Reads ===

    def get_project(self, project_id: str) -> Optional[Project]:
        row = self._conn.execute("SELECT * FROM projects WHERE id = ?", (project_id,)).fetchone()
        return _row_to_project(row) if row else None

    def get_bid(self, bid_id: str) -> Optional[Bid]:
        row = self._conn.execute("SELECT * FROM bids WHERE id = ?", (bid_id,)).fetchone()
        return _row_to_bid(row) if row else None

    def get_contract(self, contract_id: str, with_milestones: bool = True) -> Optional[Contract]:
        row = self._conn.execute("SELECT * FROM contracts WHERE id = ?", (contract_id,)).fetchone()
        if not row:
            return None
        contract = _row_to_contract(row)
        if with_milestones:
            contract.milestones = self.list_milestones(contract.id)
        return contract

    def get_contract_for_bid(self, bid_id: str) -> Optional[Contract]:
        row = self._conn.execute("SELECT * FROM contracts WHERE bid_id = ?", (bid_id,)).fetchone()
        return _row_to_contract(row) if row else None

    def get_milestone(self, milestone_id: str) -> Optional[Milestone]:
        row = self._conn.execute(
            "SELECT * FROM milestones WHERE id = ?", (milestone_id,)
        ).fetchone()
        return _row_to_milestone(row) if row else None

    def list_milestones(self, contract_id: str) -> List[Milestone]:
        rows = self._conn.execute(
            "SELECT * FROM milestones WHERE contract_id = ? ORDER BY position, created_at",
            (contract_id,),
        ).fetchall()
        return [_row_to_milestone(r) for r in rows]

    def get_payment(self, payment_id: str) -> Optional[Payment]:
        row = self._conn.execute("SELECT * FROM payments WHERE id = ?", (payment_id,)).fetchone()
        return _row_to_payment(row) if row else None

    def get_payment_for_milestone(self, milestone_id: str) -> Optional[Payment]:
        row = self._conn.execute(
            "SELECT * FROM payments WHERE milestone_id = ?", (milestone_id,)
        ).fetchone()
        return _row_to_payment(row) if row else None

    def get_payment_by_intent(self, payment_intent_id: str) -> Optional[Payment]:
        row = self._conn.execute(
            "SELECT * FROM payments WHERE payment_intent_id = ?", (payment_intent_id,)
        ).fetchone()
        return _row_to_payment(row) if row else None

    def list_payments(self, contract_id: str) -> List[Payment]:
        rows = self._conn.execute(
            "SELECT * FROM payments WHERE contract_id = ? ORDER BY created_at", (contract_id,)
        ).fetchall()
        return [_row_to_payment(r) for r in rows]

    def get_payout_account(self, user_id: str) -> Optional[str]:
        row = self._conn.execute(
            "SELECT payout_account_id FROM payout_accounts WHERE user_id = ?", (user_id,)
        ).fetchone()
        return row["payout_account_id"] if row else None

    # === Inserts ===

    def insert_contract(self, contract: Contract) -> str:
        now = format_datetime(utc_now())
        self._conn.execute(
            """
            INSERT INTO contracts (
                id, project_id, client_id, freelancer_id, bid_id, title, description,
                amount, stage, terms_accepted, payment_intent_id, start_date, end_date,
                created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                contract.id,
                contract.project_id,
                contract.client_id,
                contract.freelancer_id,
                contract.bid_id,
                contract.title,
                contract.description,
                _money(contract.amount),
                contract.stage.value,
                int(contract.terms_accepted),
                contract.payment_intent_id,
                format_datetime(contract.start_date),
                format_datetime(contract.end_date),
                format_datetime(contract.created_at) or now,
                format_datetime(contract.updated_at) or now,
            ),
        )
        for position, milestone in enumerate(contract.milestones):
            self._conn.execute(
                """
                INSERT INTO milestones (
                    id, contract_id, project_id, title, description, amount, due_date,
                    status, position, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    milestone.id,
                    contract.id,
                    milestone.project_id,
                    milestone.title,
                    milestone.description,
                    _money(milestone.amount),
                    format_datetime(milestone.due_date),
                    milestone.status.value,
                    position,
                    now,
                    now,
                ),
            )
        return contract.id

    def insert_progress(self, update: ProgressUpdate) -> str:
        self._conn.execute(
            """
            INSERT INTO progress_updates
                (id, milestone_id, author_id, description, status, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                update.id,
                update.milestone_id,
                update.author_id,
                update.description,
                update.status.value,
                format_datetime(update.created_at or utc_now()),
            ),
        )
        return update.id

    def insert_payment(self, payment: Payment) -> str:
        now = format_datetime(utc_now())
        self._conn.execute(
            """
            INSERT INTO payments (
                id, contract_id, milestone_id, client_id, freelancer_id, amount, status,
                payment_intent_id, transfer_id, refund_id, completed_at, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                payment.id,
                payment.contract_id,
                payment.milestone_id,
                payment.client_id,
                payment.freelancer_id,
                _money(payment.amount),
                payment.status.value,
                payment.payment_intent_id,
                payment.transfer_id,
                payment.refund_id,
                format_datetime(payment.completed_at),
                now,
                now,
            ),
        )
        return payment.id

    def insert_notification(self, notification: Notification) -> str:
        self._conn.execute(
            """
            INSERT INTO notifications (
                id, user_id, type, title, message, reference_id, reference_type,
                amount, is_read, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                notification.id,
                notification.user_id,
                notification.type.value,
                notification.title,
                notification.message,
                notification.reference_id,
                notification.reference_type,
                _money(notification.amount),
                int(notification.is_read),
                format_datetime(notification.created_at or utc_now()),
            ),
        )
        return notification.id

    def insert_transition(self, transition: ContractTransition) -> str:
        self._conn.execute(
            """
            INSERT INTO contract_transitions (
                id, contract_id, from_stage, to_stage, actor_id, reason, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                transition.id,
                transition.contract_id,
                transition.from_stage.value if transition.from_stage else None,
                transition.to_stage.value,
                transition.actor_id,
                transition.reason,
                format_datetime(transition.created_at or utc_now()),
            ),
        )
        return transition.id

    # === Compare-and-set updates ===

    def _compare_and_set(
        self,
        table: str,
        row_id: str,
        state_column: str,
        expected: str,
        fields: Dict[str, Any],
    ) -> None:
        validate_table_name(table)
        unknown = set(fields) - UPDATABLE_COLUMNS[table]
        if unknown:
            raise ValueError(f"Cannot update {table} columns: {sorted(unknown)}")

        assignments = [f"{column} = ?" for column in fields]
        assignments.append("updated_at = ?")
        params = [_db_value(v) for v in fields.values()]
        params.extend([format_datetime(utc_now()), row_id, expected])

        cursor = self._conn.execute(
            f"UPDATE {table} SET {', '.join(assignments)} WHERE id = ? AND {state_column} = ?",
            params,
        )
        if cursor.rowcount == 0:
            raise ConflictError(
                f"{table} row {row_id} is no longer {expected}; it was changed concurrently"
            )

    def update_contract(
        self, contract_id: str, expected_stage: ContractStage, **fields: Any
    ) -> None:
        self._compare_and_set(
            "contracts", contract_id, "stage", ContractStage(expected_stage).value, fields
        )

    def update_milestone(
        self, milestone_id: str, expected_status: MilestoneStatus, **fields: Any
    ) -> None:
        self._compare_and_set(
            "milestones", milestone_id, "status", MilestoneStatus(expected_status).value, fields
        )

    def update_payment(
        self, payment_id: str, expected_status: PaymentStatus, **fields: Any
    ) -> None:
        expected_status = PaymentStatus(expected_status)
        new_status = fields.get("status")
        if (
            new_status is not None
            and PaymentStatus(new_status) != expected_status
            and not can_transition_payment(expected_status, new_status)
        ):
            raise InvalidTransitionError(
                f"Payment {payment_id} cannot move from {expected_status.value} "
                f"to {PaymentStatus(new_status).value}"
            )
        self._compare_and_set("payments", payment_id, "status", expected_status.value, fields)

    def update_bid_status(self, bid_id: str, status: BidStatus) -> None:
        self._conn.execute(
            "UPDATE bids SET status = ? WHERE id = ?", (BidStatus(status).value, bid_id)
        )

    def update_project_status(self, project_id: str, status: ProjectStatus) -> None:
        self._conn.execute(
            "UPDATE projects SET status = ?, updated_at = ? WHERE id = ?",
            (ProjectStatus(status).value, format_datetime(utc_now()), project_id),
        )


class SQLiteLedgerStore:
    """SQLite-backed ledger.

    Connections are opened per operation and closed on exit, so the store is
    safe to share between threads.
    """

    def __init__(self, db_path: Path, busy_timeout_ms: int = 5000):
        self.db_path = Path(db_path)
        self.busy_timeout_ms = busy_timeout_ms
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = self._get_conn()
        try:
            init_db(conn)
        finally:
            conn.close()

    def _get_conn(self) -> sqlite3.Connection:
        """Open a connection in autocommit mode; transactions are explicit."""
        conn = sqlite3.connect(self.db_path, isolation_level=None)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute(f"PRAGMA busy_timeout={int(self.busy_timeout_ms)}")
        conn.execute("PRAGMA foreign_keys=ON")
        return conn

    @contextlib.contextmanager
    def _connect(self, immediate: bool = False) -> Iterator[sqlite3.Connection]:
        """Context manager that handles transactions AND closes connection.

        - ``BEGIN IMMEDIATE`` for writers, plain ``BEGIN`` for readers
        - Commit on success, rollback on exception
        - Connection close in all cases
        """
        conn = self._get_conn()
        try:
            conn.execute("BEGIN IMMEDIATE" if immediate else "BEGIN")
            yield conn
            conn.execute("COMMIT")
        except Exception as e:
            logger.debug(f"Transaction failed, rolling back: {e}")
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        finally:
            conn.close()

    @contextlib.contextmanager
    def transaction(self) -> Iterator[SQLiteLedgerTransaction]:
        """Open a write transaction.

        Constraint failures roll the transaction back and surface as
        ``ConflictError`` (unique) or ``ValidationError`` (check, foreign key).
        """
        try:
            with self._connect(immediate=True) as conn:
                yield SQLiteLedgerTransaction(conn)
        except sqlite3.IntegrityError as e:
            raise translate_integrity_error(e) from e

    def close(self):
        """No persistent connections to close."""
        pass

    # === Seeding ===

    def save_project(self, project: Project) -> str:
        """Save a project. Returns the project ID."""
        now = format_datetime(utc_now())
        with self.transaction() as tx:
            tx._conn.execute(
                """
                INSERT INTO projects (
                    id, client_id, title, description, budget, deadline, skills,
                    category, status, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    project.id,
                    project.client_id,
                    project.title,
                    project.description,
                    _money(project.budget),
                    format_datetime(project.deadline),
                    json.dumps(project.skills),
                    project.category,
                    project.status.value,
                    format_datetime(project.created_at) or now,
                    now,
                ),
            )
        return project.id

    def save_bid(self, bid: Bid) -> str:
        """Save a bid. Returns the bid ID."""
        with self.transaction() as tx:
            tx._conn.execute(
                """
                INSERT INTO bids (
                    id, project_id, freelancer_id, amount, delivery_time_days,
                    cover_letter, status, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    bid.id,
                    bid.project_id,
                    bid.freelancer_id,
                    _money(bid.amount),
                    bid.delivery_time_days,
                    bid.cover_letter,
                    bid.status.value,
                    format_datetime(bid.created_at or utc_now()),
                ),
            )
        return bid.id

    def save_payout_account(self, user_id: str, payout_account_id: str) -> None:
        """Register or replace the processor account a user is paid out to."""
        with self.transaction() as tx:
            tx._conn.execute(
                """
                INSERT INTO payout_accounts (user_id, payout_account_id, created_at)
                VALUES (?, ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET payout_account_id = excluded.payout_account_id
                """,
                (user_id, payout_account_id, format_datetime(utc_now())),
            )

    # === Read models ===

    def _read(self):
        return self._connect(immediate=False)

    def get_project(self, project_id: str) -> Optional[Project]:
        with self._read() as conn:
            return SQLiteLedgerTransaction(conn).get_project(project_id)

    def get_bid(self, bid_id: str) -> Optional[Bid]:
        with self._read() as conn:
            return SQLiteLedgerTransaction(conn).get_bid(bid_id)

    def get_contract(self, contract_id: str) -> Optional[Contract]:
        with self._read() as conn:
            return SQLiteLedgerTransaction(conn).get_contract(contract_id)

    def get_milestone(self, milestone_id: str) -> Optional[Milestone]:
        with self._read() as conn:
            return SQLiteLedgerTransaction(conn).get_milestone(milestone_id)

    def get_payment(self, payment_id: str) -> Optional[Payment]:
        with self._read() as conn:
            return SQLiteLedgerTransaction(conn).get_payment(payment_id)

    def get_payment_for_milestone(self, milestone_id: str) -> Optional[Payment]:
        with self._read() as conn:
            return SQLiteLedgerTransaction(conn).get_payment_for_milestone(milestone_id)

    def list_contracts(
        self,
        user_id: Optional[str] = None,
        stage: Optional[ContractStage] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[Contract]:
        """List contracts, newest first, with their milestones."""
        query = "SELECT * FROM contracts WHERE 1 = 1"
        params: List[Any] = []
        if user_id is not None:
            query += " AND (client_id = ? OR freelancer_id = ?)"
            params.extend([user_id, user_id])
        if stage is not None:
            query += " AND stage = ?"
            params.append(ContractStage(stage).value)
        query += " ORDER BY created_at DESC LIMIT ? OFFSET ?"
        params.extend([limit, offset])

        with self._read() as conn:
            tx = SQLiteLedgerTransaction(conn)
            contracts = [_row_to_contract(r) for r in conn.execute(query, params).fetchall()]
            for contract in contracts:
                contract.milestones = tx.list_milestones(contract.id)
        return contracts

    def list_progress(self, milestone_id: str) -> List[ProgressUpdate]:
        with self._read() as conn:
            rows = conn.execute(
                "SELECT * FROM progress_updates WHERE milestone_id = ? ORDER BY created_at, rowid",
                (milestone_id,),
            ).fetchall()
        return [_row_to_progress(r) for r in rows]

    def list_payments(
        self,
        contract_id: Optional[str] = None,
        client_id: Optional[str] = None,
        freelancer_id: Optional[str] = None,
    ) -> List[Payment]:
        query = "SELECT * FROM payments WHERE 1 = 1"
        params: List[Any] = []
        if contract_id is not None:
            query += " AND contract_id = ?"
            params.append(contract_id)
        if client_id is not None:
            query += " AND client_id = ?"
            params.append(client_id)
        if freelancer_id is not None:
            query += " AND freelancer_id = ?"
            params.append(freelancer_id)
        query += " ORDER BY created_at DESC"
        with self._read() as conn:
            rows = conn.execute(query, params).fetchall()
        return [_row_to_payment(r) for r in rows]

    def list_notifications(
        self, user_id: str, unread_only: bool = False, limit: int = 100
    ) -> List[Notification]:
        query = "SELECT * FROM notifications WHERE user_id = ?"
        if unread_only:
            query += " AND is_read = 0"
        query += " ORDER BY created_at DESC, rowid DESC LIMIT ?"
        with self._read() as conn:
            rows = conn.execute(query, (user_id, limit)).fetchall()
        return [_row_to_notification(r) for r in rows]

    def mark_notifications_read(self, user_id: str, notification_ids: List[str]) -> int:
        """Mark the user's notifications read. Returns how many changed."""
        if not notification_ids:
            return 0
        placeholders = ", ".join("?" for _ in notification_ids)
        with self.transaction() as tx:
            cursor = tx._conn.execute(
                f"UPDATE notifications SET is_read = 1 "
                f"WHERE user_id = ? AND is_read = 0 AND id IN ({placeholders})",
                [user_id, *notification_ids],
            )
            return cursor.rowcount

    def get_transitions(self, contract_id: str) -> List[ContractTransition]:
        with self._read() as conn:
            rows = conn.execute(
                "SELECT * FROM contract_transitions WHERE contract_id = ? "
                "ORDER BY created_at, rowid",
                (contract_id,),
            ).fetchall()
        return [_row_to_transition(r) for r in rows]
