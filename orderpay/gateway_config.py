"""Configuration of the API gateway, read from the environment."""

from __future__ import annotations

import os
import re
from dataclasses import dataclass
from typing import Mapping

_INTEGER = re.compile(r"[+-]?\d+")

DEFAULT_PORT = "80"
DEFAULT_ORDERS_URL = "http://localhost:8081"
DEFAULT_PAYMENTS_URL = "http://localhost:8082"


@dataclass(frozen=True)
class GatewayConfig:
    """Where the gateway listens and where it forwards requests."""

    gateway_port: int
    orders_service_url: str
    payments_service_url: str


def load_config(environ: Mapping[str, str] | None = None) -> GatewayConfig:
    """Build the gateway configuration; empty variables fall back to defaults."""
    env = os.environ if environ is None else environ

    port_text = env.get("GATEWAY_PORT") or DEFAULT_PORT
    if not _INTEGER.fullmatch(port_text):
        raise ValueError(f"invalid GATEWAY_PORT: {port_text!r}")

    return GatewayConfig(
        gateway_port=int(port_text),
        orders_service_url=env.get("ORDERS_SERVICE_HOST") or DEFAULT_ORDERS_URL,
        payments_service_url=env.get("PAYMENTS_SERVICE_HOST") or DEFAULT_PAYMENTS_URL,
    )