"""
Gateway Error Taxonomy

Every failure that crosses the gateway boundary is raised as one of:
- GatewayConnectionError: network unreachable, gateway unavailable, stale session (retryable)
- StreamClosedByServer: server ended a push subscription on its own (retryable for streams)
- AuthenticationError: bad credentials or revoked session (fatal)
- ProtocolError / ApiError: malformed or rejected request (fatal)
- DeadlineExceeded: the attempt deadline elapsed (surfaced as-is)
- CancelledByCaller: the caller cancelled its context (surfaced immediately)

Only the two retryable kinds are recovered locally by reconnecting.
"""

import asyncio
from enum import Enum, IntEnum
from typing import Any, Dict, Optional


class ErrorKind(Enum):
    """Classification used by the retry executor and stream supervisor."""
    CONNECTION = "connection"
    STREAM_CLOSED = "stream_closed"
    AUTHENTICATION = "authentication"
    PROTOCOL = "protocol"
    DEADLINE = "deadline"
    CANCELLED = "cancelled"

    @property
    def retryable(self) -> bool:
        return self in (ErrorKind.CONNECTION, ErrorKind.STREAM_CLOSED)


# Gateway error codes that mean the terminal behind our session is gone
STALE_SESSION_CODES = frozenset({
    "TERMINAL_INSTANCE_NOT_FOUND",
    "TERMINAL_REGISTRY_TERMINAL_NOT_FOUND",
})


class GatewayError(Exception):
    """Base class for every error raised by the gateway layer."""

    kind: ErrorKind = ErrorKind.PROTOCOL

    @property
    def retryable(self) -> bool:
        return self.kind.retryable


class GatewayConnectionError(GatewayError):
    """Raised when the gateway is unreachable or the session went stale."""
    kind = ErrorKind.CONNECTION


class StreamClosedByServer(GatewayError):
    """Raised when the server ends a subscription without being asked to."""
    kind = ErrorKind.STREAM_CLOSED


class AuthenticationError(GatewayError):
    """Raised when credentials are rejected or the session was revoked."""
    kind = ErrorKind.AUTHENTICATION


class ProtocolError(GatewayError):
    """Raised when the gateway rejects a request as malformed."""
    kind = ErrorKind.PROTOCOL


class DeadlineExceeded(GatewayError):
    """Raised when the effective deadline of an attempt elapsed."""
    kind = ErrorKind.DEADLINE


class CancelledByCaller(GatewayError):
    """Raised when the caller's context was cancelled."""
    kind = ErrorKind.CANCELLED


class SessionClosedError(GatewayError):
    """Raised when a closed session is used again."""
    kind = ErrorKind.PROTOCOL


class RetriesExhausted(GatewayError):
    """Raised when a call failed on every allowed attempt."""

    def __init__(self, attempts: int, last_error: BaseException):
        self.attempts = attempts
        self.last_error = last_error
        self.last_kind = classify(last_error)
        super().__init__(f"gave up after {attempts} attempt(s): {last_error}")


class ApiError(ProtocolError):
    """
    Error payload returned by the gateway inside an otherwise valid reply.

    Wraps the raw error dict and exposes its fields. The message prefers the
    most specific description available: trade error, then MQL error, then
    the generic API code.
    """

    def __init__(self, payload: Optional[Dict[str, Any]] = None):
        self.payload = dict(payload or {})
        super().__init__(self._render())

    # --- raw fields ---

    @property
    def error_code(self) -> str:
        return self.payload.get("error_code", "") or ""

    @property
    def error_message(self) -> str:
        return self.payload.get("error_message", "") or ""

    @property
    def mql_error_code(self) -> str:
        return self.payload.get("mql_error_code", "") or ""

    @property
    def mql_error_int_code(self) -> int:
        return int(self.payload.get("mql_error_int_code", 0) or 0)

    @property
    def mql_error_description(self) -> str:
        return self.payload.get("mql_error_description", "") or ""

    @property
    def mql_error_trade_code(self) -> str:
        return self.payload.get("mql_error_trade_code", "") or ""

    @property
    def mql_error_trade_int_code(self) -> int:
        return int(self.payload.get("mql_error_trade_int_code", 0) or 0)

    @property
    def mql_error_trade_description(self) -> str:
        return self.payload.get("mql_error_trade_description", "") or ""

    @property
    def command_type_name(self) -> str:
        return self.payload.get("command_type_name", "") or ""

    @property
    def command_id(self) -> int:
        return int(self.payload.get("command_id", 0) or 0)

    @property
    def remote_stack_trace(self) -> str:
        return self.payload.get("stack_trace", "") or ""

    def _render(self) -> str:
        if self.mql_error_trade_int_code:
            return f"{self.mql_error_trade_description} ({self.mql_error_trade_code})"
        if self.mql_error_int_code:
            return f"{self.mql_error_description} ({self.mql_error_code})"
        if self.error_code:
            return f"API error: {self.error_code}"
        return "unknown API error"

    def details(self) -> str:
        """Multi-line dump of every field, for logs and bug reports."""
        return (
            f"API Exception: {self.error_code} - {self.error_message}\n"
            f"MQL: {self.mql_error_code} ({self.mql_error_int_code}) - {self.mql_error_description}\n"
            f"Trade: {self.mql_error_trade_code} ({self.mql_error_trade_int_code}) - "
            f"{self.mql_error_trade_description}\n"
            f"Command: {self.command_type_name} (ID: {self.command_id})\n"
            f"Stack: {self.remote_stack_trace}"
        )


def error_from_payload(payload: Dict[str, Any]) -> GatewayError:
    """Turn a reply's error payload into the matching exception."""
    code = payload.get("error_code", "")
    if code in STALE_SESSION_CODES:
        return GatewayConnectionError(f"stale session: {code}")
    return ApiError(payload)


def classify(exc: BaseException) -> ErrorKind:
    """
    Map any exception to an ErrorKind.

    Gateway errors carry their own kind. Foreign exceptions are mapped
    conservatively: anything not recognisably a network or timeout
    failure is treated as fatal so it is never replayed blindly.
    """
    if isinstance(exc, GatewayError):
        return exc.kind
    if isinstance(exc, asyncio.CancelledError):
        return ErrorKind.CANCELLED
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return ErrorKind.DEADLINE
    if isinstance(exc, (ConnectionError, OSError)):
        return ErrorKind.CONNECTION
    return ErrorKind.PROTOCOL


# =============================================================================
# Trade return codes
# =============================================================================

class TradeReturnCode(IntEnum):
    """Return codes of trading operations. Only DONE means full success."""
    REQUOTE = 10004
    REJECT = 10006
    CANCEL = 10007
    PLACED = 10008
    DONE = 10009
    DONE_PARTIAL = 10010
    ERROR = 10011
    TIMEOUT = 10012
    INVALID_REQUEST = 10013
    INVALID_VOLUME = 10014
    INVALID_PRICE = 10015
    INVALID_STOPS = 10016
    TRADE_DISABLED = 10017
    MARKET_CLOSED = 10018
    NO_MONEY = 10019
    PRICE_CHANGED = 10020
    NO_QUOTES = 10021
    INVALID_EXPIRATION = 10022
    ORDER_CHANGED = 10023
    TOO_MANY_REQUESTS = 10024
    NO_CHANGES = 10025
    SERVER_DISABLES_AT = 10026
    CLIENT_DISABLES_AT = 10027
    LOCKED = 10028
    FROZEN = 10029
    INVALID_FILL = 10030
    NO_CONNECTION = 10031
    ONLY_REAL = 10032
    LIMIT_ORDERS = 10033
    LIMIT_VOLUME = 10034
    INVALID_ORDER = 10035
    POSITION_CLOSED = 10036
    INVALID_CLOSE_VOLUME = 10038
    CLOSE_ORDER_EXIST = 10039
    LIMIT_POSITIONS = 10040
    REJECT_CANCEL = 10041
    LONG_ONLY = 10042
    SHORT_ONLY = 10043
    CLOSE_ONLY = 10044
    FIFO_CLOSE = 10045
    HEDGE_PROHIBITED = 10046


_RETURN_CODE_MESSAGES: Dict[int, str] = {
    TradeReturnCode.REQUOTE: "Requote (price changed, need to retry)",
    TradeReturnCode.REJECT: "Request rejected",
    TradeReturnCode.CANCEL: "Request canceled by trader",
    TradeReturnCode.PLACED: "Order placed (pending order activated)",
    TradeReturnCode.DONE: "Request completed successfully",
    TradeReturnCode.DONE_PARTIAL: "Only part of the request was completed",
    TradeReturnCode.ERROR: "Request processing error",
    TradeReturnCode.TIMEOUT: "Request canceled by timeout",
    TradeReturnCode.INVALID_REQUEST: "Invalid request",
    TradeReturnCode.INVALID_VOLUME: "Invalid volume in the request",
    TradeReturnCode.INVALID_PRICE: "Invalid price in the request",
    TradeReturnCode.INVALID_STOPS: "Invalid stops in the request (SL/TP too close)",
    TradeReturnCode.TRADE_DISABLED: "Trade is disabled",
    TradeReturnCode.MARKET_CLOSED: "Market is closed",
    TradeReturnCode.NO_MONEY: "Not enough money to complete the request (insufficient margin)",
    TradeReturnCode.PRICE_CHANGED: "Prices changed (requote)",
    TradeReturnCode.NO_QUOTES: "No quotes to process the request",
    TradeReturnCode.INVALID_EXPIRATION: "Invalid order expiration date in the request",
    TradeReturnCode.ORDER_CHANGED: "Order state changed",
    TradeReturnCode.TOO_MANY_REQUESTS: "Too frequent requests",
    TradeReturnCode.NO_CHANGES: "No changes in request",
    TradeReturnCode.SERVER_DISABLES_AT: "Autotrading disabled by server",
    TradeReturnCode.CLIENT_DISABLES_AT: "Autotrading disabled by client terminal",
    TradeReturnCode.LOCKED: "Request locked for processing",
    TradeReturnCode.FROZEN: "Order or position frozen",
    TradeReturnCode.INVALID_FILL: "Invalid order filling type",
    TradeReturnCode.NO_CONNECTION: "No connection with the trade server",
    TradeReturnCode.ONLY_REAL: "Operation is allowed only for live accounts",
    TradeReturnCode.LIMIT_ORDERS: "The number of pending orders has reached the limit",
    TradeReturnCode.LIMIT_VOLUME: "The volume of orders and positions for the symbol has reached the limit",
    TradeReturnCode.INVALID_ORDER: "Incorrect or prohibited order type",
    TradeReturnCode.POSITION_CLOSED: "Position with the specified identifier already closed",
    TradeReturnCode.INVALID_CLOSE_VOLUME: "Invalid close volume (exceeds position volume)",
    TradeReturnCode.CLOSE_ORDER_EXIST: "A close order already exists for a specified position",
    TradeReturnCode.LIMIT_POSITIONS: "The number of open positions has reached the limit",
    TradeReturnCode.REJECT_CANCEL: "Pending order activation rejected and canceled",
    TradeReturnCode.LONG_ONLY: "Only long positions allowed",
    TradeReturnCode.SHORT_ONLY: "Only short positions allowed",
    TradeReturnCode.CLOSE_ONLY: "Only position close operations allowed",
    TradeReturnCode.FIFO_CLOSE: "Position close only by FIFO rule",
    TradeReturnCode.HEDGE_PROHIBITED: "Opposite positions on same symbol prohibited (hedging disabled)",
}

_RETRYABLE_RETURN_CODES = frozenset({
    TradeReturnCode.TIMEOUT,
    TradeReturnCode.NO_CONNECTION,
    TradeReturnCode.FROZEN,
    TradeReturnCode.LOCKED,
    TradeReturnCode.TOO_MANY_REQUESTS,
    TradeReturnCode.NO_QUOTES,
})


def is_success(code: int) -> bool:
    return code == TradeReturnCode.DONE


def is_requote(code: int) -> bool:
    return code in (TradeReturnCode.REQUOTE, TradeReturnCode.PRICE_CHANGED)


def is_retryable(code: int) -> bool:
    """Temporary trade failures that may succeed on a later try."""
    return code in _RETRYABLE_RETURN_CODES


def describe(code: int) -> str:
    return _RETURN_CODE_MESSAGES.get(code, f"Unknown return code: {code}")
