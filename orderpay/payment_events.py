"""Handling of order-created events received from the message broker."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable

from orderpay.payment_domain import OrderCreatedEvent
from orderpay.payment_service import PaymentService

_log = logging.getLogger(__name__)


@dataclass(frozen=True)
class IncomingMessage:
    """A message as fetched from a topic partition."""

    value: bytes
    topic: str = ""
    partition: int = 0
    offset: int = 0
    key: bytes = b""


class OrderEventProcessingError(Exception):
    """An order-created event was decoded but could not be processed."""


def order_created_message_handler(
    payment_service: PaymentService,
) -> Callable[[IncomingMessage], None]:
    """A handler that pays for the order named in each order-created event.

    Undecodable messages are logged and dropped; processing failures raise
    OrderEventProcessingError so the message is not committed.
    """

    def handle(message: IncomingMessage) -> None:
        _log.info(
            "Received message for order processing (topic %s, partition %d, offset %d, key %r)",
            message.topic,
            message.partition,
            message.offset,
            bytes(message.key).decode("utf-8", errors="replace"),
        )
        try:
            event = OrderCreatedEvent.from_json(bytes(message.value))
        except ValueError as exc:
            _log.error(
                "Failed to decode OrderCreatedEvent from topic %s, partition %d, offset %d: "
                "%s (value %r)",
                message.topic,
                message.partition,
                message.offset,
                exc,
                message.value,
            )
            return None

        _log.info(
            "Processing OrderCreatedEvent for order %s (user %d, amount %s)",
            event.order_id,
            event.user_id,
            event.amount,
        )
        try:
            payment_service.process_incoming_order_created_event(
                event.order_id,
                event.order_id,
                event.user_id,
                event.amount,
                message.value,
            )
        except Exception as exc:
            _log.error("Failed to process order created event for order %s: %s",
                       event.order_id, exc)
            raise OrderEventProcessingError(
                f"failed to process order created event for order {event.order_id}: {exc}"
            ) from exc

        _log.info("Successfully processed order created event for order %s", event.order_id)
        return None

    return handle