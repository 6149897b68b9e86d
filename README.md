# orderpay

A payments service built as a library: user accounts with balances, order
payments that debit those accounts, a transactional outbox for payment status
messages, an inbox for incoming "order created" events, and a WSGI
application that exposes accounts and balances over HTTP. Storage is SQLite.

## Payments in Python

```python
from orderpay.payment_store import (
    open_database, AccountRepository, PaymentRepository,
    InboxRepository, OutboxRepository,
)
from orderpay.payment_service import PaymentService

db = open_database(":memory:")
service = PaymentService(
    db, AccountRepository(), PaymentRepository(), InboxRepository(), OutboxRepository()
)

service.create_account(42, 100.0)
payment = service.process_order_payment("order-1", 42, 30.0)
print(payment.status)                              # PaymentStatus.COMPLETED
print(service.get_account_for_user(42).balance)    # 70.0
```

`PaymentService` (in `orderpay.payment_service`) offers:

- `create_account(user_id, initial_balance)` – raises
  `AccountAlreadyExistsError` if the user already has an account.
- `get_account_for_user(user_id)` – raises `AccountNotFoundError` when there
  is none.
- `update_user_account_balance(user_id, amount_change)` – adds the change and
  returns the reloaded account; raises `InsufficientFundsError` if the balance
  would go below zero.
- `process_order_payment(order_id, user_id, amount)` – debits the account,
  stores a `SUCCESS` payment and a pending outbox message in one transaction.
  On insufficient funds a `FAILED` payment and its outbox message are
  committed and `InsufficientFundsError` is raised. A second payment for the
  same order raises `PaymentAlreadyExistsError`; other failures raise
  `PaymentServiceError`.
- `process_incoming_order_created_event(event_id, order_id, user_id, amount, raw_payload)`
  – records the event in the inbox and pays for the order in the same
  transaction, marking the inbox entry `COMPLETED`, or `FAILED` on
  insufficient funds.

The domain types (`Account`, `Payment`, `InboxMessage`, `OutboxMessage`,
their status enums, the error classes and the event dataclasses such as
`OrderCreatedEvent`) live in `orderpay.payment_domain`. The repositories in
`orderpay.payment_store` take the connection on every call, so several calls
can share one transaction.

## HTTP API

`orderpay.payments_http.create_payments_app(service)` returns a WSGI
application:

| Method | Path          | Body                                   | Success                 |
|--------|---------------|----------------------------------------|-------------------------|
| GET    | `/health`     |                                        | `200`, plain text       |
| POST   | `/users`      | `{"user_id": 42, "balance": 100}`      | `201`, account as JSON  |
| GET    | `/users/{id}` |                                        | `200`, `{"user_id", "balance"}` |
| PATCH  | `/users/{id}` | `{"balance_change": -25.5}`            | `200`, `{"user_id", "balance"}` |

Errors are plain-text responses: `400` for a bad body, a bad or zero user id,
a negative initial balance or insufficient funds; `404` for a missing
account; `409` for an existing account; `500` otherwise.

Any WSGI server can run it, for example:

```python
from werkzeug.serving import run_simple
from orderpay.payments_http import create_payments_app

run_simple("localhost", 8082, create_payments_app(service))
```

## Messaging

- `orderpay.outbox_processor.Processor(db, outbox_repo, producer, topic, poll_interval, poll_timeout)`
  publishes up to ten pending outbox messages per poll to `producer` (any
  object with `produce(topic, message)`) and marks each one `SENT`.
  `start()` polls in a background thread, `stop()` ends it, and
  `process_outbox_messages()` runs a single poll.
- `prepare_payment_status_update_payload(...)` builds the compact JSON payment
  status message; empty `payment_id` and `error` fields are left out.
- `orderpay.payment_events.order_created_message_handler(service)` returns a
  callable taking an `IncomingMessage`. Undecodable messages are logged and
  dropped; processing failures raise `OrderEventProcessingError`.

## Configuration

`orderpay.payments_config.load_config(environ=None)` reads `PAYMENTS_DB_*`,
`KAFKA_BROKER_URL`, `KAFKA_ORDER_EVENTS_TOPIC`, `KAFKA_PAYMENT_STATUS_TOPIC`,
`KAFKA_CONSUMER_GROUP`, `OUTBOX_POLL_INTERVAL` (default `1s`) and
`OUTBOX_POLL_TIMEOUT` (default `500ms`). Durations are parsed by
`parse_duration`, which accepts forms such as `1h30m`, `-1.5s` or `300ms`;
an invalid duration falls back to the default.

`orderpay.gateway_config.load_config(environ=None)` reads `GATEWAY_PORT`
(default `80`), `ORDERS_SERVICE_HOST` (default `http://localhost:8081`) and
`PAYMENTS_SERVICE_HOST` (default `http://localhost:8082`) into a
`GatewayConfig`.

## What this package does not do

- There is no orders service: no order storage, order API or handling of
  payment status messages on the receiving side.
- There is no gateway or reverse proxy and no command to start one;
  `GatewayConfig` only holds the settings.
- There is no message broker client. `Processor` hands messages to the
  producer object you give it, and the order event handler must be fed
  `IncomingMessage` values by your own consumer loop.
- There is no command-line program; the WSGI application is served by a
  server of your choice.

## Tests

The test suite uses pytest and is available through the `test` extra.