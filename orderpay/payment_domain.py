"""Accounts, payments, inbox/outbox records and events of the payments service."""

from __future__ import annotations

import enum
import json
import math
import re
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

ZERO_TIME = datetime(1, 1, 1, tzinfo=timezone.utc)
_INT64_MIN, _INT64_MAX = -(2**63), 2**63 - 1

_TIMESTAMP = re.compile(
    r"([0-9]{4})-([0-9]{2})-([0-9]{2})T([0-9]{2}):([0-9]{2}):([0-9]{2})"
    r"(?:\.([0-9]+))?(Z|[+-][0-9]{2}:[0-9]{2})"
)


def generate_uuid() -> str:
    """A new random UUID as a string."""
    return str(uuid.uuid4())


class AccountNotFoundError(LookupError):
    def __init__(self, message: str = "account not found") -> None:
        super().__init__(message)


class AccountAlreadyExistsError(ValueError):
    def __init__(self, message: str = "account already exists") -> None:
        super().__init__(message)


class InsufficientFundsError(ValueError):
    def __init__(self, message: str = "insufficient funds") -> None:
        super().__init__(message)


class MessageAlreadyProcessedError(ValueError):
    def __init__(self, message: str = "inbox message already processed") -> None:
        super().__init__(message)


class MessageAlreadyPendingError(ValueError):
    def __init__(self, message: str = "inbox message already pending") -> None:
        super().__init__(message)


@dataclass
class Account:
    id: str
    user_id: int
    balance: float
    created_at: datetime
    updated_at: datetime


class InboxMessageStatus(str, enum.Enum):
    NEW = "NEW"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


@dataclass
class InboxMessage:
    """A received event recorded for idempotent processing."""

    id: str
    order_id: str
    payload: bytes
    status: InboxMessageStatus
    received_at: datetime
    processed_at: datetime | None = None


class OutboxMessageStatus(str, enum.Enum):
    PENDING = "PENDING"
    SENT = "SENT"
    FAILED = "FAILED"


@dataclass
class OutboxMessage:
    """A message waiting to be published, with its business context."""

    id: str
    order_id: str
    order_status: str
    payload: bytes
    status: OutboxMessageStatus
    created_at: datetime
    sent_at: datetime | None = None


class PaymentStatus(str, enum.Enum):
    NEW = "NEW"
    PENDING = "PENDING"
    COMPLETED = "SUCCESS"
    FAILED = "FAILED"


@dataclass
class Payment:
    id: str
    order_id: str
    user_id: int
    amount: float
    status: PaymentStatus
    created_at: datetime
    updated_at: datetime


def _parse_timestamp(text: str) -> datetime:
    match = _TIMESTAMP.fullmatch(text)
    if match is None:
        raise ValueError(f"timestamp {text!r} is not RFC 3339")
    year, month, day, hour, minute, second, fraction, offset = match.groups()
    if offset == "Z":
        zone = timezone.utc
    else:
        hours, minutes = int(offset[1:3]), int(offset[4:6])
        if hours > 23 or minutes > 59:
            raise ValueError(f"timestamp {text!r} has an invalid offset")
        delta = timedelta(hours=hours, minutes=minutes)
        zone = timezone(-delta if offset[0] == "-" else delta)
    micro = int((fraction or "")[:6].ljust(6, "0"))
    try:
        return datetime(
            int(year), int(month), int(day), int(hour), int(minute), int(second), micro,
            tzinfo=zone,
        )
    except ValueError as exc:
        raise ValueError(f"timestamp {text!r} is out of range") from exc


def _as_str(value: Any) -> str:
    if not isinstance(value, str):
        raise ValueError("expected a string")
    return value


def _as_int64(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError("expected an integer")
    if not _INT64_MIN <= value <= _INT64_MAX:
        raise ValueError("integer out of range")
    return value


def _as_float(value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError("expected a number")
    try:
        result = float(value)
    except OverflowError as exc:
        raise ValueError("number out of range") from exc
    if not math.isfinite(result):
        raise ValueError("number out of range")
    return result


def _as_timestamp(value: Any) -> datetime:
    return _parse_timestamp(_as_str(value))


def _reject_constant(name: str) -> Any:
    raise ValueError(f"invalid JSON literal {name}")


@dataclass
class OrderCreatedEvent:
    order_id: str = ""
    user_id: int = 0
    amount: float = 0.0
    timestamp: datetime = ZERO_TIME

    @classmethod
    def from_json(cls, data: bytes | str) -> "OrderCreatedEvent":
        """Decode an event; absent or null fields keep their zero values.

        Keys match field names without regard to case; later keys win.
        """
        decoded = json.loads(data, parse_constant=_reject_constant)
        if decoded is None:
            return cls()
        if not isinstance(decoded, dict):
            raise ValueError("event must be a JSON object")
        converters = {
            "order_id": _as_str,
            "user_id": _as_int64,
            "amount": _as_float,
            "timestamp": _as_timestamp,
        }
        values: dict[str, Any] = {}
        for key, value in decoded.items():
            name = key if key in converters else next(
                (field for field in converters if field == key.casefold()), None
            )
            if name is None or value is None:
                continue
            try:
                values[name] = converters[name](value)
            except ValueError as exc:
                raise ValueError(f"field {key!r}: {exc}") from exc
        return cls(**values)


@dataclass
class PaymentProcessedEvent:
    payment_id: str
    order_id: str
    user_id: int
    amount: float
    status: str
    transaction_id: str
    timestamp: datetime


@dataclass
class PaymentFailedEvent:
    payment_id: str
    order_id: str
    user_id: int
    amount: float
    reason: str
    timestamp: datetime