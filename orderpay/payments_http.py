"""HTTP interface of the payments service: user accounts and balances."""

from __future__ import annotations

import json
import logging
import math
import re
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Callable

from werkzeug.exceptions import MethodNotAllowed, NotFound
from werkzeug.routing import Map, Rule
from werkzeug.wrappers import Request, Response

from orderpay.payment_domain import (
    Account,
    AccountAlreadyExistsError,
    AccountNotFoundError,
    InsufficientFundsError,
)
from orderpay.payment_service import PaymentService

_INT64 = re.compile(r"[+-]?[0-9]+")
_INT64_MIN, _INT64_MAX = -(2**63), 2**63 - 1
_DAYS = ("Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun")
_MONTHS = ("Jan", "Feb", "Mar", "Apr", "May", "Jun",
           "Jul", "Aug", "Sep", "Oct", "Nov", "Dec")
_HTML_ESCAPES = (
    ("<", "\\u003c"),
    (">", "\\u003e"),
    ("&", "\\u0026"),
    ("\u2028", "\\u2028"),
    ("\u2029", "\\u2029"),
)


@dataclass
class CreateUserAccountRequest:
    user_id: int = 0
    balance: float = 0.0


@dataclass
class UpdateBalanceRequest:
    balance_change: float = 0.0


@dataclass
class BalanceResponse:
    user_id: int
    balance: float


@dataclass
class UserAccountResponse:
    id: str
    user_id: int
    balance: float
    created_at: str
    updated_at: str


# -- request decoding ----------------------------------------------------------

def _reject_constant(name: str) -> Any:
    raise ValueError(f"invalid JSON literal {name}")


def _int64(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError("expected an integer")
    if not _INT64_MIN <= value <= _INT64_MAX:
        raise ValueError("integer out of range")
    return value


def _float64(value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError("expected a number")
    try:
        result = float(value)
    except OverflowError as exc:
        raise ValueError("number out of range") from exc
    if not math.isfinite(result):
        raise ValueError("number out of range")
    return result


_REQUEST_FIELDS: dict[type, dict[str, Callable[[Any], Any]]] = {
    CreateUserAccountRequest: {"user_id": _int64, "balance": _float64},
    UpdateBalanceRequest: {"balance_change": _float64},
}


def _read_json(body: bytes) -> Any:
    text = body.decode("utf-8").lstrip(" \t\r\n")
    if not text:
        raise ValueError("empty request body")
    value, _ = json.JSONDecoder(parse_constant=_reject_constant).raw_decode(text)
    return value


def _decode(cls: type, body: bytes) -> Any:
    """Decode the first JSON value of ``body`` into ``cls``.

    Keys match field names exactly or, failing that, without regard to case;
    unknown keys and null values are ignored.
    """
    converters = _REQUEST_FIELDS[cls]
    data = _read_json(body)
    if data is None:
        return cls()
    if not isinstance(data, dict):
        raise ValueError("request body must be a JSON object")
    values: dict[str, Any] = {}
    for key, value in data.items():
        name = key if key in converters else next(
            (field for field in converters if field.casefold() == key.casefold()), None
        )
        if name is None or value is None:
            continue
        try:
            values[name] = converters[name](value)
        except ValueError as exc:
            raise ValueError(f"field {key!r}: {exc}") from exc
    return cls(**values)


def _parse_user_id(text: str) -> int | None:
    if not _INT64.fullmatch(text):
        return None
    value = int(text)
    return value if _INT64_MIN <= value <= _INT64_MAX else None


# -- response encoding ---------------------------------------------------------

def _number(value: Any) -> Any:
    if isinstance(value, float) and value.is_integer() and abs(value) < 1e21:
        return int(value)
    return value


def _json_response(data: dict[str, Any], status: int) -> Response:
    payload = {key: _number(value) for key, value in data.items()}
    body = json.dumps(payload, ensure_ascii=False, separators=(",", ":"))
    for char, escaped in _HTML_ESCAPES:
        body = body.replace(char, escaped)
    return Response(body + "\n", status=status, content_type="application/json")


def _text_error(message: str, status: int) -> Response:
    response = Response(message + "\n", status=status,
                        content_type="text/plain; charset=utf-8")
    response.headers["X-Content-Type-Options"] = "nosniff"
    return response


def _http_time(moment: datetime) -> str:
    return (
        f"{_DAYS[moment.weekday()]}, {moment.day:02d} {_MONTHS[moment.month - 1]} "
        f"{moment.year:04d} {moment.hour:02d}:{moment.minute:02d}:{moment.second:02d} GMT"
    )


def _account_response(account: Account) -> UserAccountResponse:
    return UserAccountResponse(
        id=account.id,
        user_id=account.user_id,
        balance=account.balance,
        created_at=_http_time(account.created_at),
        updated_at=_http_time(account.updated_at),
    )


class PaymentsApp:
    """WSGI application serving the account and balance endpoints."""

    def __init__(self, service: PaymentService, logger: logging.Logger | None = None) -> None:
        self._service = service
        self._log = logger or logging.getLogger(__name__)
        self._handlers = {
            "health": self._health,
            "create_account": self._create_account,
            "get_balance": self._get_balance,
            "update_balance": self._update_balance,
        }
        self._map = Map(
            [
                Rule("/health", methods=["GET"], endpoint="health"),
                Rule("/users", methods=["POST"], endpoint="create_account"),
                Rule("/users/<user_id>", methods=["GET"], endpoint="get_balance"),
                Rule("/users/<user_id>", methods=["PATCH"], endpoint="update_balance"),
            ],
            strict_slashes=False,
        )

    def _health(self, request: Request) -> Response:
        return Response(
            "Payments service is healthy!", status=200, content_type="text/plain; charset=utf-8"
        )

    def _create_account(self, request: Request) -> Response:
        try:
            body = _decode(CreateUserAccountRequest, request.get_data())
        except ValueError as exc:
            self._log.error("Invalid request body for CreateUserAccount: %s", exc)
            return _text_error("Invalid request body", 400)

        if body.user_id == 0:
            return _text_error("User ID is required and must be non-zero", 400)
        if body.balance < 0:
            return _text_error("Initial balance cannot be negative", 400)

        try:
            account = self._service.create_account(body.user_id, body.balance)
        except AccountAlreadyExistsError:
            self._log.warning("Attempt to create an existing account for user %d", body.user_id)
            return _text_error("Account already exists for this user", 409)
        except Exception as exc:  # noqa: BLE001 - reported as a server error
            self._log.error("Failed to create account for user %d: %s", body.user_id, exc)
            return _text_error("Internal server error", 500)
        return _json_response(asdict(_account_response(account)), 201)

    def _get_balance(self, request: Request, user_id: str) -> Response:
        if not user_id:
            return _text_error("User ID is required", 400)
        parsed = _parse_user_id(user_id)
        if parsed is None:
            self._log.error("Invalid User ID format %r", user_id)
            return _text_error("Invalid User ID format", 400)

        try:
            account = self._service.get_account_for_user(parsed)
        except AccountNotFoundError:
            self._log.warning("Account for user %d not found", parsed)
            return _text_error("Account not found for user", 404)
        except Exception as exc:  # noqa: BLE001
            self._log.error("Failed to get balance of user %d: %s", parsed, exc)
            return _text_error("Internal server error", 500)
        response = BalanceResponse(user_id=account.user_id, balance=account.balance)
        return _json_response(asdict(response), 200)

    def _update_balance(self, request: Request, user_id: str) -> Response:
        if not user_id:
            return _text_error("User ID is required", 400)
        parsed = _parse_user_id(user_id)
        if parsed is None:
            self._log.error("Invalid User ID format %r", user_id)
            return _text_error("Invalid User ID format", 400)

        try:
            body = _decode(UpdateBalanceRequest, request.get_data())
        except ValueError as exc:
            self._log.error("Invalid request body for UpdateUserBalance: %s", exc)
            return _text_error("Invalid request body", 400)

        try:
            account = self._service.update_user_account_balance(parsed, body.balance_change)
        except AccountNotFoundError:
            self._log.warning("Account for user %d not found for balance update", parsed)
            return _text_error("Account not found for user", 404)
        except InsufficientFundsError:
            self._log.warning(
                "Insufficient funds for user %d (change %s)", parsed, body.balance_change
            )
            return _text_error("Insufficient funds", 400)
        except Exception as exc:  # noqa: BLE001
            self._log.error(
                "Failed to update balance of user %d by %s: %s", parsed, body.balance_change, exc
            )
            return _text_error("Internal server error", 500)
        response = BalanceResponse(user_id=account.user_id, balance=account.balance)
        return _json_response(asdict(response), 200)

    def __call__(self, environ, start_response):
        request = Request(environ)
        try:
            endpoint, args = self._map.bind_to_environ(environ).match()
        except NotFound:
            response = _text_error("404 page not found", 404)
        except MethodNotAllowed:
            response = Response(status=405)
        else:
            response = self._handlers[endpoint](request, **args)
        return response(environ, start_response)


def create_payments_app(service: PaymentService) -> PaymentsApp:
    """The payments WSGI application bound to ``service``."""
    return PaymentsApp(service, logging.getLogger(__name__).getChild("PaymentHTTPHandler"))