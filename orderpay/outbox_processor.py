"""Relay of pending outbox messages to the message broker."""

from __future__ import annotations

import json
import logging
import math
import sqlite3
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Iterator, Protocol

from orderpay.payment_domain import OutboxMessage, OutboxMessageStatus, PaymentStatus

PENDING_BATCH_LIMIT = 10

_HTML_ESCAPES = (
    ("<", "\\u003c"),
    (">", "\\u003e"),
    ("&", "\\u0026"),
    ("\u2028", "\\u2028"),
    ("\u2029", "\\u2029"),
)


def _json_string(text: str) -> str:
    encoded = json.dumps(text, ensure_ascii=False)
    for char, escaped in _HTML_ESCAPES:
        encoded = encoded.replace(char, escaped)
    return encoded


def _json_number(value: float) -> str:
    value = float(value)
    if not math.isfinite(value):
        raise ValueError(f"unsupported value: {value!r}")
    magnitude = abs(value)
    if magnitude != 0 and (magnitude < 1e-6 or magnitude >= 1e21):
        text = repr(value)
        if len(text) >= 4 and text[-4:-1] == "e-0":
            text = text[:-2] + text[-1]
        return text
    return format(Decimal(repr(value)).normalize(), "f")


def _json_timestamp(moment: datetime) -> str:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    text = (
        f"{moment.year:04d}-{moment.month:02d}-{moment.day:02d}"
        f"T{moment.hour:02d}:{moment.minute:02d}:{moment.second:02d}"
    )
    if moment.microsecond:
        text += "." + f"{moment.microsecond:06d}".rstrip("0")
    offset_minutes = int(moment.utcoffset().total_seconds()) // 60
    if offset_minutes == 0:
        return text + "Z"
    sign = "-" if offset_minutes < 0 else "+"
    hours, minutes = divmod(abs(offset_minutes), 60)
    return f"{text}{sign}{hours:02d}:{minutes:02d}"


@dataclass
class PaymentStatusUpdateEvent:
    order_id: str
    user_id: int
    amount: float
    status: str
    timestamp: datetime
    payment_id: str = ""
    error: str = ""

    def to_json(self) -> bytes:
        """Compact JSON; empty payment_id and error are left out."""
        parts = []
        if self.payment_id:
            parts.append(f'"payment_id":{_json_string(self.payment_id)}')
        parts.append(f'"order_id":{_json_string(self.order_id)}')
        parts.append(f'"user_id":{int(self.user_id)}')
        parts.append(f'"amount":{_json_number(self.amount)}')
        parts.append(f'"status":{_json_string(self.status)}')
        parts.append(f'"timestamp":{_json_string(_json_timestamp(self.timestamp))}')
        if self.error:
            parts.append(f'"error":{_json_string(self.error)}')
        return ("{" + ",".join(parts) + "}").encode("utf-8")


def prepare_payment_status_update_payload(
    payment_id: str,
    order_id: str,
    user_id: int,
    amount: float,
    status: PaymentStatus | str,
    event_time: datetime,
    error_message: str,
) -> bytes:
    """Encode the payment status update published to the orders service."""
    status_text = status.value if isinstance(status, PaymentStatus) else str(status)
    return PaymentStatusUpdateEvent(
        payment_id=payment_id,
        order_id=order_id,
        user_id=user_id,
        amount=amount,
        status=status_text,
        timestamp=event_time,
        error=error_message,
    ).to_json()


class OutboxRepository(Protocol):
    def get_pending_messages(self, conn: sqlite3.Connection, limit: int) -> list[OutboxMessage]: ...

    def update_message_status(
        self, conn: sqlite3.Connection, message_id: str, status: OutboxMessageStatus
    ) -> None: ...


class Producer(Protocol):
    def produce(self, topic: str, message: bytes) -> None: ...


def _seconds(value: timedelta | float) -> float:
    return value.total_seconds() if isinstance(value, timedelta) else float(value)


class Processor:
    """Polls the outbox and publishes pending messages, marking them as sent."""

    def __init__(
        self,
        db: sqlite3.Connection,
        outbox_repo: OutboxRepository,
        producer: Producer,
        topic: str,
        poll_interval: timedelta | float,
        poll_timeout: timedelta | float,
        logger: logging.Logger | None = None,
    ) -> None:
        self._db = db
        self._outbox = outbox_repo
        self._producer = producer
        self._topic = topic
        self._poll_interval = _seconds(poll_interval)
        self._poll_timeout = _seconds(poll_timeout)
        self._log = logger or logging.getLogger(__name__)
        self._stopping = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        """Begin polling in a background thread."""
        self._log.info("Starting outbox processor...")
        if self._thread is not None and self._thread.is_alive():
            return
        self._stopping = threading.Event()
        self._thread = threading.Thread(
            target=self._run, args=(self._stopping,), name="outbox-processor", daemon=True
        )
        self._thread.start()

    def _run(self, stopping: threading.Event) -> None:
        while not stopping.wait(self._poll_interval):
            self.process_outbox_messages()

    def stop(self) -> None:
        """Signal the polling thread to stop and wait for it."""
        thread = self._thread
        if not self._stopping.is_set():
            self._log.info("Signaling outbox processor to stop...")
            self._stopping.set()
        if thread is not None and thread is not threading.current_thread():
            thread.join()
        self._log.info("Outbox processor stop signal sent.")

    @contextmanager
    def _deadline(self) -> Iterator[None]:
        deadline = time.monotonic() + self._poll_timeout
        self._db.set_progress_handler(lambda: int(time.monotonic() >= deadline), 1000)
        try:
            yield
        finally:
            self._db.set_progress_handler(None, 0)

    def process_outbox_messages(self) -> None:
        """Publish one batch of pending messages."""
        self._log.debug("Polling for outbox messages...")
        try:
            with self._deadline():
                messages = self._outbox.get_pending_messages(self._db, PENDING_BATCH_LIMIT)
        except Exception as exc:
            self._log.error("Failed to get pending outbox messages: %s", exc)
            return

        if not messages:
            self._log.debug("No pending outbox messages found.")
            return

        self._log.info("Found %d pending outbox messages", len(messages))
        for message in messages:
            self._relay(message)

    def _relay(self, message: OutboxMessage) -> None:
        try:
            self._producer.produce(self._topic, message.payload)
        except Exception as exc:
            self._log.error(
                "Failed to send message %s to topic %s: %s", message.id, self._topic, exc
            )
            return
        self._log.info("Message %s sent to topic %s", message.id, self._topic)

        try:
            with self._db:  # commits on success, rolls back on error
                self._outbox.update_message_status(
                    self._db, message.id, OutboxMessageStatus.SENT
                )
        except Exception as exc:
            self._log.error("Failed to mark outbox message %s as SENT: %s", message.id, exc)
            return
        self._log.info("Outbox message %s processed and status updated", message.id)