"""Payment processing: accounts, balance changes and order payments."""

from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator

from orderpay.outbox_processor import prepare_payment_status_update_payload
from orderpay.payment_domain import (
    Account,
    AccountAlreadyExistsError,
    AccountNotFoundError,
    InboxMessage,
    InboxMessageStatus,
    InsufficientFundsError,
    MessageAlreadyProcessedError,
    OutboxMessage,
    OutboxMessageStatus,
    Payment,
    PaymentStatus,
    generate_uuid,
)
from orderpay.payment_store import (
    AccountRepository,
    InboxRepository,
    OutboxRepository,
    PaymentRepository,
    RecordNotFoundError,
)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class PaymentServiceError(Exception):
    """A payment operation failed for a reason other than a business rule."""


class PaymentAlreadyExistsError(PaymentServiceError):
    """A payment for the order has already been recorded."""

    def __init__(self, payment: Payment) -> None:
        super().__init__(
            f"payment for order {payment.order_id} already exists "
            f"with status {payment.status.value}"
        )
        self.payment = payment


class PaymentService:
    """Business operations of the payments service over one database."""

    def __init__(
        self,
        db: sqlite3.Connection,
        account_repo: AccountRepository,
        payment_repo: PaymentRepository,
        inbox_repo: InboxRepository,
        outbox_repo: OutboxRepository,
        logger: logging.Logger | None = None,
    ) -> None:
        self._db = db
        self._accounts = account_repo
        self._payments = payment_repo
        self._inbox = inbox_repo
        self._outbox = outbox_repo
        self._log = logger or logging.getLogger(__name__)

    # -- transaction helpers -------------------------------------------------

    def _rollback(self) -> None:
        try:
            self._db.rollback()
        except sqlite3.Error as exc:
            self._log.error("Failed to roll back transaction: %s", exc)

    def _commit(self) -> None:
        try:
            self._db.commit()
        except sqlite3.Error as exc:
            self._log.error("Failed to commit transaction: %s", exc)
            raise PaymentServiceError(f"failed to commit transaction: {exc}") from exc

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Roll back whatever is uncommitted if the block raises."""
        try:
            yield self._db
        except BaseException:
            self._rollback()
            raise

    # -- order payments ------------------------------------------------------

    def _payload(
        self,
        payment_id: str,
        order_id: str,
        user_id: int,
        amount: float,
        status: PaymentStatus,
        event_time: datetime,
        error_message: str,
    ) -> bytes:
        try:
            return prepare_payment_status_update_payload(
                payment_id, order_id, user_id, amount, status, event_time, error_message
            )
        except ValueError as exc:
            self._log.error("Failed to prepare outbox payload for order %s: %s", order_id, exc)
            return b""

    def _record_failed_payment(
        self, order_id: str, user_id: int, amount: float, reason: str
    ) -> None:
        """Store a FAILED payment and its status message; failures are only logged."""
        now = _now()
        failed = Payment(
            id=generate_uuid(),
            order_id=order_id,
            user_id=user_id,
            amount=amount,
            status=PaymentStatus.FAILED,
            created_at=now,
            updated_at=now,
        )
        try:
            self._payments.create(self._db, failed)
        except Exception as exc:
            self._log.error("Failed to record failed payment for order %s: %s", order_id, exc)

        message = OutboxMessage(
            id=generate_uuid(),
            order_id=order_id,
            order_status=PaymentStatus.FAILED.value,
            payload=self._payload(
                failed.id, order_id, user_id, amount, PaymentStatus.FAILED, now, reason
            ),
            status=OutboxMessageStatus.PENDING,
            created_at=now,
        )
        try:
            self._outbox.create_message(self._db, message)
        except Exception as exc:
            self._log.error(
                "Failed to create outbox message for failed payment of order %s: %s",
                order_id,
                exc,
            )

    def _process_payment(self, order_id: str, user_id: int, amount: float) -> Payment:
        """Charge the user's account inside the current transaction."""
        conn = self._db
        try:
            existing = self._payments.get_by_order_id(conn, order_id)
        except RecordNotFoundError:
            existing = None
        except Exception as exc:
            raise PaymentServiceError(
                f"failed to check existing payment for order {order_id}: {exc}"
            ) from exc
        if existing is not None:
            self._log.info(
                "Payment %s already processed for order %s with status %s",
                existing.id,
                order_id,
                existing.status.value,
            )
            raise PaymentAlreadyExistsError(existing)

        try:
            account = self._accounts.get_account_for_user(conn, user_id)
        except AccountNotFoundError as exc:
            self._log.warning("Account for user %d not found", user_id)
            raise AccountNotFoundError(f"account for user {user_id} not found") from exc
        except Exception as exc:
            raise PaymentServiceError(
                f"failed to get account for user {user_id}: {exc}"
            ) from exc

        try:
            self._accounts.update_balance(conn, account.id, -amount)
        except InsufficientFundsError:
            self._log.warning(
                "Insufficient funds for order %s (amount %s, account %s)",
                order_id,
                amount,
                account.id,
            )
            self._record_failed_payment(order_id, user_id, amount, "insufficient_funds")
            raise
        except Exception as exc:
            raise PaymentServiceError(
                f"failed to update account balance for user {user_id}: {exc}"
            ) from exc

        now = _now()
        payment = Payment(
            id=generate_uuid(),
            order_id=order_id,
            user_id=user_id,
            amount=amount,
            status=PaymentStatus.COMPLETED,
            created_at=now,
            updated_at=now,
        )
        try:
            self._payments.create(conn, payment)
        except Exception as exc:
            raise PaymentServiceError(
                f"failed to create payment record for order {order_id}: {exc}"
            ) from exc

        message = OutboxMessage(
            id=generate_uuid(),
            order_id=order_id,
            order_status=PaymentStatus.COMPLETED.value,
            payload=self._payload(
                payment.id, order_id, user_id, amount, PaymentStatus.COMPLETED, now, ""
            ),
            status=OutboxMessageStatus.PENDING,
            created_at=now,
        )
        try:
            self._outbox.create_message(conn, message)
        except Exception as exc:
            raise PaymentServiceError(
                f"failed to create outbox message for order {order_id}: {exc}"
            ) from exc
        return payment

    def process_order_payment(self, order_id: str, user_id: int, amount: float) -> Payment:
        """Charge ``amount`` for the order.

        On insufficient funds the failed payment is still committed and
        InsufficientFundsError is raised.
        """
        with self._transaction():
            try:
                payment = self._process_payment(order_id, user_id, amount)
            except InsufficientFundsError:
                self._commit()
                raise
            except Exception as exc:
                self._log.error(
                    "Failed to process payment for order %s, rolling back: %s", order_id, exc
                )
                raise PaymentServiceError(f"failed to process order payment: {exc}") from exc
            self._commit()
        self._log.info(
            "Payment %s for order %s processed, amount %s", payment.id, order_id, amount
        )
        return payment

    # -- accounts ------------------------------------------------------------

    def create_account(self, user_id: int, initial_balance: float) -> Account:
        """Open an account; raises AccountAlreadyExistsError if the user has one."""
        with self._transaction() as conn:
            try:
                existing = self._accounts.get_account_for_user(conn, user_id)
            except AccountNotFoundError:
                existing = None
            except Exception as exc:
                raise PaymentServiceError(f"failed to check existing account: {exc}") from exc
            if existing is not None:
                self._log.warning(
                    "Account %s already exists for user %d", existing.id, user_id
                )
                self._rollback()
                error = AccountAlreadyExistsError()
                error.account = existing
                raise error

            now = _now()
            account = Account(
                id=generate_uuid(),
                user_id=user_id,
                balance=initial_balance,
                created_at=now,
                updated_at=now,
            )
            try:
                self._accounts.create_account(conn, account)
            except AccountAlreadyExistsError:
                raise
            except Exception as exc:
                raise PaymentServiceError(
                    f"failed to create account for user {user_id}: {exc}"
                ) from exc
            self._commit()
        self._log.info(
            "Account %s created for user %d with balance %s",
            account.id,
            user_id,
            initial_balance,
        )
        return account

    def get_account_for_user(self, user_id: int) -> Account:
        try:
            return self._accounts.get_account_for_user(self._db, user_id)
        except AccountNotFoundError:
            self._log.warning("Account for user %d not found", user_id)
            raise
        except Exception as exc:
            self._log.warning("Failed to get account for user %d: %s", user_id, exc)
            raise PaymentServiceError(
                f"failed to get account for user {user_id}: {exc}"
            ) from exc

    def update_user_account_balance(self, user_id: int, amount_change: float) -> Account:
        """Add ``amount_change`` to the user's balance and return the updated account."""
        with self._transaction() as conn:
            try:
                account = self._accounts.get_account_for_user(conn, user_id)
            except AccountNotFoundError:
                raise
            except Exception as exc:
                raise PaymentServiceError(
                    f"failed to get account for user {user_id} to update balance: {exc}"
                ) from exc

            if account.balance + amount_change < 0:
                raise InsufficientFundsError()

            try:
                self._accounts.update_balance(conn, account.id, amount_change)
            except (AccountNotFoundError, InsufficientFundsError):
                raise
            except Exception as exc:
                raise PaymentServiceError(
                    f"failed to update balance of account {account.id} "
                    f"(user {user_id}): {exc}"
                ) from exc
            self._commit()

        self._log.info(
            "Balance of account %s (user %d) changed from %s by %s to %s",
            account.id,
            user_id,
            account.balance,
            amount_change,
            account.balance + amount_change,
        )
        try:
            return self._accounts.get_account_for_user(self._db, user_id)
        except Exception as exc:
            self._log.error("Failed to reload account of user %d: %s", user_id, exc)
            raise PaymentServiceError(f"failed to get updated account: {exc}") from exc

    # -- incoming events -----------------------------------------------------

    def _set_inbox_status(self, event_id: str, status: InboxMessageStatus) -> None:
        try:
            self._inbox.update_status(self._db, event_id, status)
        except Exception as exc:
            self._log.error(
                "Failed to set inbox message %s to %s: %s", event_id, status.value, exc
            )
            raise PaymentServiceError(
                f"failed to mark event {event_id} as processed: {exc}"
            ) from exc

    def process_incoming_order_created_event(
        self,
        event_id: str,
        order_id: str,
        user_id: int,
        amount: float,
        raw_payload: bytes,
    ) -> None:
        """Record the event in the inbox and pay for the order in one transaction."""
        message = InboxMessage(
            id=event_id,
            order_id=order_id,
            payload=bytes(raw_payload),
            status=InboxMessageStatus.NEW,
            received_at=_now(),
        )
        with self._transaction() as conn:
            try:
                self._inbox.create_message(conn, message)
            except MessageAlreadyProcessedError:
                self._log.info(
                    "Event %s for order %s already processed", event_id, order_id
                )
                self._rollback()
                return
            except Exception as exc:
                self._log.error("Failed to create inbox message %s: %s", event_id, exc)
                raise PaymentServiceError(f"failed to record incoming event: {exc}") from exc
            self._log.info("Inbox message %s recorded for order %s", event_id, order_id)

            try:
                payment = self._process_payment(order_id, user_id, amount)
            except InsufficientFundsError:
                self._set_inbox_status(event_id, InboxMessageStatus.FAILED)
                self._commit()
                return
            except Exception as exc:
                self._log.error(
                    "Failed to process payment from event %s for order %s: %s",
                    event_id,
                    order_id,
                    exc,
                )
                try:
                    self._inbox.update_status(conn, event_id, InboxMessageStatus.FAILED)
                except Exception as update_exc:
                    self._log.error(
                        "Failed to set inbox message %s to FAILED: %s", event_id, update_exc
                    )
                raise PaymentServiceError(
                    f"failed to process payment for order {order_id} "
                    f"from event {event_id}: {exc}"
                ) from exc

            self._log.info(
                "Payment %s processed for event %s (order %s)", payment.id, event_id, order_id
            )
            self._set_inbox_status(event_id, InboxMessageStatus.COMPLETED)
            self._commit()
        self._log.info(
            "Event %s processed, payment %s for order %s completed",
            event_id,
            payment.id,
            order_id,
        )