import uuid
from datetime import datetime, timezone

import pytest

from orderpay.payment_domain import (
    ZERO_TIME,
    AccountAlreadyExistsError,
    AccountNotFoundError,
    InboxMessage,
    InboxMessageStatus,
    InsufficientFundsError,
    MessageAlreadyPendingError,
    MessageAlreadyProcessedError,
    OrderCreatedEvent,
    OutboxMessage,
    OutboxMessageStatus,
    PaymentStatus,
    generate_uuid,
)


def test_payment_status_values():
    assert PaymentStatus.COMPLETED.value == "SUCCESS"
    assert PaymentStatus("FAILED") is PaymentStatus.FAILED
    assert PaymentStatus("SUCCESS") is PaymentStatus.COMPLETED


def test_message_status_values():
    assert InboxMessageStatus("COMPLETED") is InboxMessageStatus.COMPLETED
    assert OutboxMessageStatus.PENDING.value == "PENDING"


@pytest.mark.parametrize(
    "error, message",
    [
        (AccountNotFoundError, "account not found"),
        (AccountAlreadyExistsError, "account already exists"),
        (InsufficientFundsError, "insufficient funds"),
        (MessageAlreadyProcessedError, "inbox message already processed"),
        (MessageAlreadyPendingError, "inbox message already pending"),
    ],
)
def test_error_messages(error, message):
    assert str(error()) == message


def test_records_default_to_unprocessed():
    moment = datetime(2024, 1, 1, tzinfo=timezone.utc)
    inbox = InboxMessage("e-1", "o-1", b"{}", InboxMessageStatus.NEW, moment)
    outbox = OutboxMessage("m-1", "o-1", "SUCCESS", b"{}", OutboxMessageStatus.PENDING, moment)
    assert inbox.processed_at is None
    assert outbox.sent_at is None
    assert inbox.order_id == outbox.order_id == "o-1"


def test_order_created_event_from_json():
    event = OrderCreatedEvent.from_json(
        b'{"order_id":"o-1","user_id":7,"amount":12.5,"timestamp":"2024-05-01T10:00:00Z"}'
    )
    assert event.order_id == "o-1"
    assert event.user_id == 7
    assert event.amount == 12.5
    assert event.timestamp == datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc)


def test_order_created_event_missing_fields_take_zero_values():
    event = OrderCreatedEvent.from_json('{"order_id":"o-2","description":"ignored"}')
    assert event == OrderCreatedEvent(order_id="o-2")
    assert event.timestamp == ZERO_TIME
    assert event.user_id == 0


def test_order_created_event_null_document():
    assert OrderCreatedEvent.from_json("null") == OrderCreatedEvent()


def test_order_created_event_keys_match_without_case():
    event = OrderCreatedEvent.from_json('{"ORDER_ID":"o-3","User_Id":5,"amount":null}')
    assert event.order_id == "o-3"
    assert event.user_id == 5
    assert event.amount == 0.0


def test_order_created_event_integer_amount_becomes_float():
    event = OrderCreatedEvent.from_json('{"amount":100}')
    assert event.amount == 100.0
    assert isinstance(event.amount, float)


def test_order_created_event_timestamp_with_offset_and_nanoseconds():
    event = OrderCreatedEvent.from_json('{"timestamp":"2024-05-01T12:30:00.123456789+02:00"}')
    assert event.timestamp == datetime(2024, 5, 1, 10, 30, 0, 123456, tzinfo=timezone.utc)


@pytest.mark.parametrize(
    "payload",
    [
        b"not json",
        b"[1, 2]",
        b'{"user_id":"7"}',
        b'{"user_id":1.5}',
        b'{"user_id":true}',
        b'{"user_id":9223372036854775808}',
        b'{"order_id":12}',
        b'{"amount":"12"}',
        b'{"amount":NaN}',
        b'{"timestamp":"yesterday"}',
        b'{"timestamp":"2024-13-01T00:00:00Z"}',
    ],
)
def test_order_created_event_rejects_bad_input(payload):
    with pytest.raises(ValueError):
        OrderCreatedEvent.from_json(payload)


def test_generate_uuid_is_random_v4():
    first, second = generate_uuid(), generate_uuid()
    assert uuid.UUID(first).version == 4
    assert str(uuid.UUID(first)) == first
    assert first != second