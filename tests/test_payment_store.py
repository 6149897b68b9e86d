import sqlite3
from datetime import datetime, timedelta, timezone

import pytest

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
from orderpay.payment_store import (
    AccountRepository,
    InboxRepository,
    OutboxRepository,
    PaymentRepository,
    RecordNotFoundError,
    open_database,
)

T0 = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def conn():
    connection = open_database(":memory:")
    yield connection
    connection.close()


def _account(account_id="acc-1", user_id=7, balance=100.0):
    return Account(account_id, user_id, balance, T0, T0)


def _inbox(message_id="evt-1", order_id="ord-1"):
    return InboxMessage(message_id, order_id, b'{"order_id":"ord-1"}', InboxMessageStatus.NEW, T0)


def _outbox(message_id, created_at, order_id="ord-1"):
    return OutboxMessage(
        message_id, order_id, "SUCCESS", b"payload", OutboxMessageStatus.PENDING, created_at
    )


def _payment(payment_id="pay-1", order_id="ord-1"):
    return Payment(payment_id, order_id, 7, 25.5, PaymentStatus.COMPLETED, T0, T0)


def test_account_round_trip(conn):
    repo = AccountRepository()
    repo.create_account(conn, _account())
    assert repo.get_account_for_user(conn, 7) == _account()


def test_duplicate_account_rejected(conn):
    repo = AccountRepository()
    repo.create_account(conn, _account())
    with pytest.raises(AccountAlreadyExistsError):
        repo.create_account(conn, _account(account_id="acc-2"))


def test_missing_account(conn):
    with pytest.raises(AccountNotFoundError):
        AccountRepository().get_account_for_user(conn, 99)


def test_update_balance_adds_amount(conn):
    repo = AccountRepository()
    repo.create_account(conn, _account(balance=100.0))
    repo.update_balance(conn, "acc-1", -40.0)
    account = repo.get_account_for_user(conn, 7)
    assert account.balance == pytest.approx(60.0)
    assert account.updated_at >= T0


def test_update_balance_to_exactly_zero_allowed(conn):
    repo = AccountRepository()
    repo.create_account(conn, _account(balance=100.0))
    repo.update_balance(conn, "acc-1", -100.0)
    assert repo.get_account_for_user(conn, 7).balance == 0


def test_update_balance_insufficient_funds(conn):
    repo = AccountRepository()
    repo.create_account(conn, _account(balance=10.0))
    with pytest.raises(InsufficientFundsError):
        repo.update_balance(conn, "acc-1", -10.5)
    assert repo.get_account_for_user(conn, 7).balance == 10.0


def test_update_balance_missing_account(conn):
    with pytest.raises(AccountNotFoundError):
        AccountRepository().update_balance(conn, "nope", 5.0)


def test_inbox_round_trip(conn):
    repo = InboxRepository()
    repo.create_message(conn, _inbox())
    assert repo.get_message_by_order_id(conn, "ord-1") == _inbox()


def test_inbox_duplicate_rejected(conn):
    repo = InboxRepository()
    repo.create_message(conn, _inbox())
    with pytest.raises(sqlite3.IntegrityError, match="evt-1"):
        repo.create_message(conn, _inbox())


def test_inbox_completed_sets_processed_at(conn):
    repo = InboxRepository()
    repo.create_message(conn, _inbox())
    repo.update_status(conn, "evt-1", InboxMessageStatus.COMPLETED)
    message = repo.get_message_by_order_id(conn, "ord-1")
    assert message.status is InboxMessageStatus.COMPLETED
    assert message.processed_at >= T0


def test_inbox_failed_keeps_processed_at(conn):
    repo = InboxRepository()
    repo.create_message(conn, _inbox())
    repo.update_status(conn, "evt-1", InboxMessageStatus.FAILED)
    message = repo.get_message_by_order_id(conn, "ord-1")
    assert message.status is InboxMessageStatus.FAILED
    assert message.processed_at is None


def test_inbox_missing(conn):
    repo = InboxRepository()
    with pytest.raises(RecordNotFoundError):
        repo.update_status(conn, "evt-x", InboxMessageStatus.COMPLETED)
    with pytest.raises(RecordNotFoundError):
        repo.get_message_by_order_id(conn, "ord-x")


def test_outbox_pending_oldest_first_and_limited(conn):
    repo = OutboxRepository()
    repo.create_message(conn, _outbox("m3", T0 + timedelta(seconds=2)))
    repo.create_message(conn, _outbox("m1", T0))
    repo.create_message(conn, _outbox("m2", T0 + timedelta(seconds=1)))
    assert [m.id for m in repo.get_pending_messages(conn, 10)] == ["m1", "m2", "m3"]
    assert [m.id for m in repo.get_pending_messages(conn, 2)] == ["m1", "m2"]


def test_outbox_round_trip(conn):
    repo = OutboxRepository()
    repo.create_message(conn, _outbox("m1", T0))
    assert repo.get_pending_messages(conn, 10) == [_outbox("m1", T0)]


def test_outbox_sent_leaves_pending_set(conn):
    repo = OutboxRepository()
    repo.create_message(conn, _outbox("m1", T0))
    repo.create_message(conn, _outbox("m2", T0 + timedelta(seconds=1)))
    repo.update_message_status(conn, "m1", OutboxMessageStatus.SENT)
    assert [m.id for m in repo.get_pending_messages(conn, 10)] == ["m2"]
    row = conn.execute("SELECT status, sent_at FROM outbox_messages WHERE id = 'm1'").fetchone()
    assert row[0] == "SENT"
    assert datetime.fromisoformat(row[1]) >= T0


def test_outbox_failed_clears_sent_at(conn):
    repo = OutboxRepository()
    repo.create_message(conn, _outbox("m1", T0))
    repo.update_message_status(conn, "m1", OutboxMessageStatus.SENT)
    repo.update_message_status(conn, "m1", OutboxMessageStatus.FAILED)
    row = conn.execute("SELECT status, sent_at FROM outbox_messages WHERE id = 'm1'").fetchone()
    assert row == ("FAILED", None)


def test_outbox_update_missing(conn):
    with pytest.raises(RecordNotFoundError):
        OutboxRepository().update_message_status(conn, "nope", OutboxMessageStatus.SENT)


def test_payment_round_trip(conn):
    repo = PaymentRepository()
    repo.create(conn, _payment())
    assert repo.get_by_id(conn, "pay-1") == _payment()
    assert repo.get_by_order_id(conn, "ord-1") == _payment()


def test_payment_status_stored_as_wire_value(conn):
    PaymentRepository().create(conn, _payment())
    row = conn.execute("SELECT status FROM payments WHERE id = 'pay-1'").fetchone()
    assert row == ("SUCCESS",)


def test_payment_update_status(conn):
    repo = PaymentRepository()
    repo.create(conn, _payment())
    repo.update_status(conn, "pay-1", PaymentStatus.FAILED)
    payment = repo.get_by_id(conn, "pay-1")
    assert payment.status is PaymentStatus.FAILED
    assert payment.updated_at >= T0


def test_payment_missing(conn):
    repo = PaymentRepository()
    with pytest.raises(RecordNotFoundError):
        repo.get_by_id(conn, "nope")
    with pytest.raises(RecordNotFoundError):
        repo.get_by_order_id(conn, "nope")
    with pytest.raises(RecordNotFoundError):
        repo.update_status(conn, "nope", PaymentStatus.FAILED)


def test_open_database_persists(tmp_path):
    path = str(tmp_path / "payments.db")
    first = open_database(path)
    with first:
        AccountRepository().create_account(first, _account())
    first.close()

    second = open_database(path)
    try:
        assert AccountRepository().get_account_for_user(second, 7) == _account()
    finally:
        second.close()


def test_rollback_discards_uncommitted_writes(tmp_path):
    conn = open_database(str(tmp_path / "payments.db"))
    try:
        with pytest.raises(InsufficientFundsError):
            with conn:
                repo = AccountRepository()
                repo.create_account(conn, _account(balance=5.0))
                repo.update_balance(conn, "acc-1", -6.0)
        with pytest.raises(AccountNotFoundError):
            AccountRepository().get_account_for_user(conn, 7)
    finally:
        conn.close()