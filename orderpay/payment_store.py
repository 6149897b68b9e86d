"""SQLite storage for accounts, payments and the inbox/outbox of the payments service.

Every repository method takes the connection to run on, so that callers can
group several calls in one transaction and commit or roll back themselves.
"""

from __future__ import annotations

import sqlite3
from datetime import datetime, timezone

from orderpay.payment_domain import (
    Account,
    AccountAlreadyExistsError,
    AccountNotFoundError,
    InboxMessage,
    InboxMessageStatus,
    InsufficientFundsError,
    OutboxMessage,
    OutboxMessageStatus,
    Payment,
    PaymentStatus,
)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS accounts (
    id TEXT PRIMARY KEY,
    user_id INTEGER NOT NULL UNIQUE,
    balance REAL NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS payments (
    id TEXT PRIMARY KEY,
    order_id TEXT NOT NULL,
    user_id INTEGER NOT NULL,
    amount REAL NOT NULL,
    status TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_payments_order_id ON payments (order_id);
CREATE TABLE IF NOT EXISTS inbox_messages (
    id TEXT PRIMARY KEY,
    order_id TEXT NOT NULL,
    payload BLOB NOT NULL,
    status TEXT NOT NULL,
    received_at TEXT NOT NULL,
    processed_at TEXT
);
CREATE INDEX IF NOT EXISTS idx_inbox_order_id ON inbox_messages (order_id);
CREATE TABLE IF NOT EXISTS outbox_messages (
    id TEXT PRIMARY KEY,
    order_id TEXT NOT NULL,
    order_status TEXT NOT NULL,
    payload BLOB NOT NULL,
    status TEXT NOT NULL,
    created_at TEXT NOT NULL,
    sent_at TEXT
);
CREATE INDEX IF NOT EXISTS idx_outbox_status ON outbox_messages (status, created_at);
"""

_PAYMENT_COLUMNS = "id, order_id, user_id, amount, status, created_at, updated_at"


class RecordNotFoundError(LookupError):
    """A requested record does not exist in storage."""


def open_database(path: str) -> sqlite3.Connection:
    """Open (and initialise) the payments database at ``path``."""
    conn = sqlite3.connect(path, check_same_thread=False)
    conn.executescript(_SCHEMA)
    conn.commit()
    return conn


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _to_text(moment: datetime | None) -> str | None:
    if moment is None:
        return None
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _from_text(text: str | None) -> datetime | None:
    return None if text is None else datetime.fromisoformat(text)


def _payment_from_row(row: tuple) -> Payment:
    payment_id, order_id, user_id, amount, status, created_at, updated_at = row
    return Payment(
        id=payment_id,
        order_id=order_id,
        user_id=user_id,
        amount=amount,
        status=PaymentStatus(status),
        created_at=_from_text(created_at),
        updated_at=_from_text(updated_at),
    )


class AccountRepository:
    """User accounts and their balances."""

    def create_account(self, conn: sqlite3.Connection, account: Account) -> None:
        try:
            conn.execute(
                "INSERT INTO accounts (id, user_id, balance, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?)",
                (
                    account.id,
                    account.user_id,
                    account.balance,
                    _to_text(account.created_at),
                    _to_text(account.updated_at),
                ),
            )
        except sqlite3.IntegrityError as exc:
            raise AccountAlreadyExistsError() from exc

    def get_account_for_user(self, conn: sqlite3.Connection, user_id: int) -> Account:
        row = conn.execute(
            "SELECT id, user_id, balance, created_at, updated_at FROM accounts WHERE user_id = ?",
            (user_id,),
        ).fetchone()
        if row is None:
            raise AccountNotFoundError()
        account_id, owner, balance, created_at, updated_at = row
        return Account(
            id=account_id,
            user_id=owner,
            balance=balance,
            created_at=_from_text(created_at),
            updated_at=_from_text(updated_at),
        )

    def update_balance(self, conn: sqlite3.Connection, account_id: str, amount: float) -> None:
        """Add ``amount`` to the balance; refuses to go below zero."""
        row = conn.execute("SELECT balance FROM accounts WHERE id = ?", (account_id,)).fetchone()
        if row is None:
            raise AccountNotFoundError()
        if row[0] + amount < 0:
            raise InsufficientFundsError()
        cursor = conn.execute(
            "UPDATE accounts SET balance = balance + ?, updated_at = ? WHERE id = ?",
            (amount, _to_text(_now()), account_id),
        )
        if cursor.rowcount == 0:
            raise RecordNotFoundError(f"account with id {account_id} not found for update")


class InboxRepository:
    """Received events kept for idempotent processing."""

    def create_message(self, conn: sqlite3.Connection, message: InboxMessage) -> None:
        try:
            conn.execute(
                "INSERT INTO inbox_messages "
                "(id, order_id, payload, status, received_at, processed_at) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (
                    message.id,
                    message.order_id,
                    bytes(message.payload),
                    message.status.value,
                    _to_text(message.received_at),
                    _to_text(message.processed_at),
                ),
            )
        except sqlite3.IntegrityError as exc:
            raise sqlite3.IntegrityError(
                f"inbox message with id {message.id} already exists: {exc}"
            ) from exc

    def update_status(
        self, conn: sqlite3.Connection, message_id: str, status: InboxMessageStatus
    ) -> None:
        """Set the status; a COMPLETED message also gets its processing time."""
        status_text = InboxMessageStatus(status).value
        cursor = conn.execute(
            "UPDATE inbox_messages SET status = ?, "
            "processed_at = CASE WHEN ? = 'COMPLETED' THEN ? ELSE processed_at END "
            "WHERE id = ?",
            (status_text, status_text, _to_text(_now()), message_id),
        )
        if cursor.rowcount == 0:
            raise RecordNotFoundError(
                f"inbox message with id {message_id} not found for status update"
            )

    def get_message_by_order_id(self, conn: sqlite3.Connection, order_id: str) -> InboxMessage:
        row = conn.execute(
            "SELECT id, order_id, payload, status, received_at, processed_at "
            "FROM inbox_messages WHERE order_id = ?",
            (order_id,),
        ).fetchone()
        if row is None:
            raise RecordNotFoundError(f"inbox message for order {order_id} not found")
        message_id, owner, payload, status, received_at, processed_at = row
        return InboxMessage(
            id=message_id,
            order_id=owner,
            payload=bytes(payload),
            status=InboxMessageStatus(status),
            received_at=_from_text(received_at),
            processed_at=_from_text(processed_at),
        )


class OutboxRepository:
    """Messages waiting to be published."""

    def create_message(self, conn: sqlite3.Connection, message: OutboxMessage) -> None:
        conn.execute(
            "INSERT INTO outbox_messages "
            "(id, order_id, order_status, payload, status, created_at, sent_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?)",
            (
                message.id,
                message.order_id,
                message.order_status,
                bytes(message.payload),
                message.status.value,
                _to_text(message.created_at),
                _to_text(message.sent_at),
            ),
        )

    def get_pending_messages(self, conn: sqlite3.Connection, limit: int) -> list[OutboxMessage]:
        """Pending messages, oldest first, at most ``limit`` of them."""
        rows = conn.execute(
            "SELECT id, order_id, order_status, payload, status, created_at, sent_at "
            "FROM outbox_messages WHERE status = ? ORDER BY created_at ASC LIMIT ?",
            (OutboxMessageStatus.PENDING.value, limit),
        )
        return [
            OutboxMessage(
                id=message_id,
                order_id=order_id,
                order_status=order_status,
                payload=bytes(payload),
                status=OutboxMessageStatus(status),
                created_at=_from_text(created_at),
                sent_at=_from_text(sent_at),
            )
            for message_id, order_id, order_status, payload, status, created_at, sent_at in rows
        ]

    def update_message_status(
        self, conn: sqlite3.Connection, message_id: str, status: OutboxMessageStatus
    ) -> None:
        """Set the status; SENT records the send time, anything else clears it."""
        status = OutboxMessageStatus(status)
        sent_at = _to_text(_now()) if status is OutboxMessageStatus.SENT else None
        cursor = conn.execute(
            "UPDATE outbox_messages SET status = ?, sent_at = ? WHERE id = ?",
            (status.value, sent_at, message_id),
        )
        if cursor.rowcount == 0:
            raise RecordNotFoundError(f"no outbox message found with id {message_id} to update status")


class PaymentRepository:
    """Payment records."""

    def create(self, conn: sqlite3.Connection, payment: Payment) -> None:
        conn.execute(
            f"INSERT INTO payments ({_PAYMENT_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?)",
            (
                payment.id,
                payment.order_id,
                payment.user_id,
                payment.amount,
                payment.status.value,
                _to_text(payment.created_at),
                _to_text(payment.updated_at),
            ),
        )

    def get_by_id(self, conn: sqlite3.Connection, payment_id: str) -> Payment:
        row = conn.execute(
            f"SELECT {_PAYMENT_COLUMNS} FROM payments WHERE id = ?", (payment_id,)
        ).fetchone()
        if row is None:
            raise RecordNotFoundError(f"payment with id {payment_id} not found")
        return _payment_from_row(row)

    def get_by_order_id(self, conn: sqlite3.Connection, order_id: str) -> Payment:
        row = conn.execute(
            f"SELECT {_PAYMENT_COLUMNS} FROM payments WHERE order_id = ?", (order_id,)
        ).fetchone()
        if row is None:
            raise RecordNotFoundError(f"payment for order {order_id} not found")
        return _payment_from_row(row)

    def update_status(
        self, conn: sqlite3.Connection, payment_id: str, status: PaymentStatus
    ) -> None:
        cursor = conn.execute(
            "UPDATE payments SET status = ?, updated_at = ? WHERE id = ?",
            (PaymentStatus(status).value, _to_text(_now()), payment_id),
        )
        if cursor.rowcount == 0:
            raise RecordNotFoundError(f"payment with id {payment_id} not found for status update")