"""Configuration of the payments service, read from the environment."""

from __future__ import annotations

import os
import re
from dataclasses import dataclass
from datetime import timedelta
from fractions import Fraction
from typing import Mapping

_UNIT_NANOSECONDS = {
    "ns": 1,
    "us": 1_000,
    "\u00b5s": 1_000,  # micro sign
    "\u03bcs": 1_000,  # Greek small letter mu
    "ms": 1_000_000,
    "s": 1_000_000_000,
    "m": 60 * 1_000_000_000,
    "h": 3600 * 1_000_000_000,
}
_COMPONENT = re.compile(r"([0-9]*)(?:\.([0-9]*))?([^0-9.]*)")
_MAX_NANOSECONDS = 2**63 - 1

_DEFAULTS = {
    "PAYMENTS_DB_HOST": "localhost",
    "PAYMENTS_DB_PORT": "5432",
    "PAYMENTS_DB_USER": "user",
    "PAYMENTS_DB_PASSWORD": "password",
    "PAYMENTS_DB_NAME": "payments_db",
    "PAYMENTS_DB_SSLMODE": "disable",
    "KAFKA_BROKER_URL": "localhost:9092",
    "KAFKA_ORDER_EVENTS_TOPIC": "order_payment_tasks",
    "KAFKA_PAYMENT_STATUS_TOPIC": "payment_status_updates",
    "KAFKA_CONSUMER_GROUP": "payments-service-group",
}
DEFAULT_POLL_INTERVAL = timedelta(seconds=1)
DEFAULT_POLL_TIMEOUT = timedelta(milliseconds=500)


def parse_duration(text: str) -> timedelta:
    """Parse a duration such as ``"1h30m"``, ``"-1.5s"`` or ``"300ms"``.

    Units are ns, us (or µs), ms, s, m and h; precision below a microsecond
    is dropped.
    """
    rest = text
    negative = False
    if rest[:1] in ("+", "-"):
        negative = rest[0] == "-"
        rest = rest[1:]
    if rest == "0":
        return timedelta(0)
    if not rest:
        raise ValueError(f"invalid duration {text!r}")

    total = 0
    limit = _MAX_NANOSECONDS + (1 if negative else 0)
    pos = 0
    while pos < len(rest):
        match = _COMPONENT.match(rest, pos)
        whole, fraction, unit = match.groups()
        if not whole and not fraction:
            raise ValueError(f"invalid duration {text!r}")
        if not unit:
            raise ValueError(f"missing unit in duration {text!r}")
        scale = _UNIT_NANOSECONDS.get(unit)
        if scale is None:
            raise ValueError(f"unknown unit {unit!r} in duration {text!r}")
        total += int(whole or "0") * scale
        if fraction:
            total += int(Fraction(int(fraction), 10 ** len(fraction)) * scale)
        if total > limit:
            raise ValueError(f"invalid duration {text!r}")
        pos = match.end()

    result = timedelta(microseconds=total // 1000)
    return -result if negative else result


def _duration(env: Mapping[str, str], key: str, default: timedelta) -> timedelta:
    text = env.get(key)
    if text is None:
        return default
    try:
        return parse_duration(text)
    except ValueError:
        return default


@dataclass(frozen=True)
class PaymentsConfig:
    """Database, message broker and outbox settings of the payments service."""

    db_host: str
    db_port: str
    db_user: str
    db_password: str
    db_name: str
    db_sslmode: str
    kafka_broker_url: str
    kafka_order_events_topic: str
    kafka_payment_status_topic: str
    kafka_consumer_group: str
    outbox_poll_interval: timedelta
    outbox_poll_timeout: timedelta

    def db_connection_string(self) -> str:
        return (
            f"host={self.db_host} port={self.db_port} user={self.db_user} "
            f"password={self.db_password} dbname={self.db_name} sslmode={self.db_sslmode}"
        )

    def migration_connection_string(self) -> str:
        return (
            f"postgres://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}"
            f"/{self.db_name}?sslmode={self.db_sslmode}"
        )

    def kafka_brokers(self) -> list[str]:
        return self.kafka_broker_url.split(",")


def load_config(environ: Mapping[str, str] | None = None) -> PaymentsConfig:
    """Build the configuration; set variables win even when empty."""
    env = os.environ if environ is None else environ

    def get(key: str) -> str:
        return env.get(key, _DEFAULTS[key])

    return PaymentsConfig(
        db_host=get("PAYMENTS_DB_HOST"),
        db_port=get("PAYMENTS_DB_PORT"),
        db_user=get("PAYMENTS_DB_USER"),
        db_password=get("PAYMENTS_DB_PASSWORD"),
        db_name=get("PAYMENTS_DB_NAME"),
        db_sslmode=get("PAYMENTS_DB_SSLMODE"),
        kafka_broker_url=get("KAFKA_BROKER_URL"),
        kafka_order_events_topic=get("KAFKA_ORDER_EVENTS_TOPIC"),
        kafka_payment_status_topic=get("KAFKA_PAYMENT_STATUS_TOPIC"),
        kafka_consumer_group=get("KAFKA_CONSUMER_GROUP"),
        outbox_poll_interval=_duration(env, "OUTBOX_POLL_INTERVAL", DEFAULT_POLL_INTERVAL),
        outbox_poll_timeout=_duration(env, "OUTBOX_POLL_TIMEOUT", DEFAULT_POLL_TIMEOUT),
    )