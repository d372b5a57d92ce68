"""
Terminal Account

Strongly-typed facade over one Session, one RetryExecutor and one
StreamSupervisor. Every unary accessor goes through the executor (default
deadline per operation class, reconnect-and-replay), every stream through the
supervisor (two feeds, automatic resubscribe).

Usage:
    account = TerminalAccount(credentials, "https://mt5.mrpc.pro")
    async with account:
        balance = await account.account_balance()
        async with account.on_symbol_tick(["EURUSD"]) as sub:
            async for tick in sub.data:
                ...
"""

from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import structlog

from gateway_layer.backoff import DEFAULT_CALL_POLICY, DEFAULT_STREAM_POLICY, RetryPolicy
from gateway_layer.context import CallContext
from gateway_layer.deadlines import DeadlinePolicy, OperationClass
from gateway_layer.errors import (
    ProtocolError,
    describe,
    is_requote,
    is_retryable,
    is_success,
)
from gateway_layer.executor import RetryExecutor
from gateway_layer.session import Session
from gateway_layer.stream import StreamRequest, StreamSubscription, StreamSupervisor
from gateway_layer.transport import Credentials, TransportFactory
from gateway_layer.utils.http_transport import HttpGatewayTransport

log = structlog.get_logger()

IDEMPOTENCY_HEADER = "idempotency-key"


class OrderType(IntEnum):
    BUY = 0
    SELL = 1
    BUY_LIMIT = 2
    SELL_LIMIT = 3
    BUY_STOP = 4
    SELL_STOP = 5
    BUY_STOP_LIMIT = 6
    SELL_STOP_LIMIT = 7


@dataclass
class AccountSummary:
    login: int
    balance: float
    equity: float
    currency: str
    leverage: int
    credit: float = 0.0
    user_name: str = ""
    company_name: str = ""
    trade_mode: int = 0
    server_time: Optional[str] = None
    utc_shift_minutes: int = 0

    @classmethod
    def from_reply(cls, data: Mapping[str, Any]) -> "AccountSummary":
        return cls(
            login=int(data.get("account_login", 0)),
            balance=float(data.get("account_balance", 0.0)),
            equity=float(data.get("account_equity", 0.0)),
            currency=data.get("account_currency", ""),
            leverage=int(data.get("account_leverage", 0)),
            credit=float(data.get("account_credit", 0.0)),
            user_name=data.get("account_user_name", ""),
            company_name=data.get("account_company_name", ""),
            trade_mode=int(data.get("account_trade_mode", 0)),
            server_time=data.get("server_time"),
            utc_shift_minutes=int(data.get("utc_timezone_server_time_shift_minutes", 0)),
        )

    @property
    def floating_profit(self) -> float:
        return self.equity - self.balance - self.credit


@dataclass
class Tick:
    symbol: str
    bid: float
    ask: float
    last: float = 0.0
    volume: int = 0
    time: Optional[str] = None
    time_msc: int = 0

    @classmethod
    def from_reply(cls, symbol: str, data: Mapping[str, Any]) -> "Tick":
        return cls(
            symbol=symbol,
            bid=float(data.get("bid", 0.0)),
            ask=float(data.get("ask", 0.0)),
            last=float(data.get("last", 0.0)),
            volume=int(data.get("volume", 0)),
            time=data.get("time"),
            time_msc=int(data.get("time_msc", 0)),
        )

    @property
    def spread(self) -> float:
        return self.ask - self.bid


@dataclass
class TradeResult:
    """Outcome of order_check / order_send / order_modify / order_close."""
    returned_code: int
    deal: int = 0
    order: int = 0
    volume: float = 0.0
    price: float = 0.0
    bid: float = 0.0
    ask: float = 0.0
    comment: str = ""
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_reply(cls, data: Optional[Mapping[str, Any]]) -> "TradeResult":
        if not data:
            raise ProtocolError("empty trade reply")
        # order_check nests its result
        body = data.get("mql_trade_check_result", data)
        return cls(
            returned_code=int(body.get("returned_code", 0)),
            deal=int(body.get("deal", 0)),
            order=int(body.get("order", 0)),
            volume=float(body.get("volume", 0.0)),
            price=float(body.get("price", 0.0)),
            bid=float(body.get("bid", 0.0)),
            ask=float(body.get("ask", 0.0)),
            comment=body.get("comment", ""),
            raw=dict(data),
        )

    @property
    def success(self) -> bool:
        return is_success(self.returned_code)

    @property
    def requote(self) -> bool:
        return is_requote(self.returned_code)

    @property
    def retryable(self) -> bool:
        return is_retryable(self.returned_code)

    @property
    def description(self) -> str:
        return describe(self.returned_code)


class TerminalAccount:
    """
    One trading account on the gateway.

    All accessors take an optional CallContext; without one the default
    deadline for the call's operation class applies.
    """

    def __init__(
        self,
        credentials: Credentials,
        endpoint: str,
        transport_factory: Optional[TransportFactory] = None,
        call_policy: RetryPolicy = DEFAULT_CALL_POLICY,
        stream_policy: RetryPolicy = DEFAULT_STREAM_POLICY,
        deadlines: Optional[DeadlinePolicy] = None,
        stream_capacity: int = 1,
    ):
        self.deadlines = deadlines or DeadlinePolicy()
        self.session = Session(
            credentials,
            endpoint,
            transport_factory or HttpGatewayTransport.factory(),
            deadlines=self.deadlines,
        )
        self.executor = RetryExecutor(self.session, call_policy, self.deadlines)
        self.supervisor = StreamSupervisor(self.session, stream_policy, data_capacity=stream_capacity)

    # --------------------------------------------------------
    # LIFECYCLE
    # --------------------------------------------------------

    async def connect(self, timeout: Optional[float] = None) -> str:
        return await self.session.connect(timeout)

    async def close(self) -> None:
        await self.supervisor.close()
        await self.session.close()

    async def __aenter__(self) -> "TerminalAccount":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def _call(
        self,
        op_class: OperationClass,
        method: str,
        request: Optional[Mapping[str, Any]] = None,
        ctx: Optional[CallContext] = None,
        idempotency_key: Optional[str] = None,
    ) -> Any:
        headers = {IDEMPOTENCY_HEADER: idempotency_key} if idempotency_key else None
        return await self.executor.call(ctx, op_class, method, request, headers)

    # --------------------------------------------------------
    # CONNECTION
    # --------------------------------------------------------

    async def check_connect(self, ctx: Optional[CallContext] = None) -> bool:
        data = await self._call(OperationClass.HEALTH, "Connection/CheckConnect", ctx=ctx)
        return bool((data or {}).get("health_check", {}).get("is_alive", False))

    async def disconnect(self, ctx: Optional[CallContext] = None) -> None:
        """Ask the gateway to release the terminal, then close locally."""
        try:
            await self._call(OperationClass.HEALTH, "Connection/Disconnect", ctx=ctx)
        finally:
            await self.close()

    # --------------------------------------------------------
    # ACCOUNT
    # --------------------------------------------------------

    async def account_summary(self, ctx: Optional[CallContext] = None) -> AccountSummary:
        data = await self._call(OperationClass.BULK, "Account/AccountSummary", ctx=ctx)
        return AccountSummary.from_reply(data or {})

    async def _account_property(self, method: str, property_id: str, ctx: Optional[CallContext]) -> Any:
        data = await self._call(OperationClass.QUICK, method, {"property_id": property_id}, ctx=ctx)
        if not data or "requested_value" not in data:
            raise ProtocolError(f"{property_id}: missing requested_value")
        return data["requested_value"]

    async def account_balance(self, ctx: Optional[CallContext] = None) -> float:
        return float(await self._account_property("Account/AccountInfoDouble", "ACCOUNT_BALANCE", ctx))

    async def account_equity(self, ctx: Optional[CallContext] = None) -> float:
        return float(await self._account_property("Account/AccountInfoDouble", "ACCOUNT_EQUITY", ctx))

    async def account_margin(self, ctx: Optional[CallContext] = None) -> float:
        return float(await self._account_property("Account/AccountInfoDouble", "ACCOUNT_MARGIN", ctx))

    async def account_free_margin(self, ctx: Optional[CallContext] = None) -> float:
        return float(await self._account_property("Account/AccountInfoDouble", "ACCOUNT_MARGIN_FREE", ctx))

    async def account_leverage(self, ctx: Optional[CallContext] = None) -> int:
        return int(await self._account_property("Account/AccountInfoInteger", "ACCOUNT_LEVERAGE", ctx))

    async def account_login(self, ctx: Optional[CallContext] = None) -> int:
        return int(await self._account_property("Account/AccountInfoInteger", "ACCOUNT_LOGIN", ctx))

    async def account_currency(self, ctx: Optional[CallContext] = None) -> str:
        return str(await self._account_property("Account/AccountInfoString", "ACCOUNT_CURRENCY", ctx))

    async def account_company(self, ctx: Optional[CallContext] = None) -> str:
        return str(await self._account_property("Account/AccountInfoString", "ACCOUNT_COMPANY", ctx))

    # --------------------------------------------------------
    # SYMBOLS
    # --------------------------------------------------------

    async def symbols_total(self, selected_only: bool = False, ctx: Optional[CallContext] = None) -> int:
        data = await self._call(OperationClass.QUICK, "MarketInfo/SymbolsTotal", {"mode": selected_only}, ctx=ctx)
        return int((data or {}).get("total", 0))

    async def symbol_exists(self, symbol: str, ctx: Optional[CallContext] = None) -> bool:
        data = await self._call(OperationClass.QUICK, "MarketInfo/SymbolExist", {"name": symbol}, ctx=ctx)
        return bool((data or {}).get("exists", False))

    async def symbol_select(self, symbol: str, select: bool = True, ctx: Optional[CallContext] = None) -> bool:
        data = await self._call(
            OperationClass.QUICK, "MarketInfo/SymbolSelect", {"symbol": symbol, "select": select}, ctx=ctx
        )
        return bool((data or {}).get("success", False))

    async def symbol_tick(self, symbol: str, ctx: Optional[CallContext] = None) -> Tick:
        data = await self._call(OperationClass.QUICK, "MarketInfo/SymbolInfoTick", {"symbol": symbol}, ctx=ctx)
        if not data:
            raise ProtocolError(f"no tick for {symbol}")
        return Tick.from_reply(symbol, data)

    async def _symbol_property(self, method: str, symbol: str, property_id: str, ctx: Optional[CallContext]) -> Any:
        data = await self._call(
            OperationClass.QUICK, method, {"symbol": symbol, "type": property_id}, ctx=ctx
        )
        if not data or "value" not in data:
            raise ProtocolError(f"{symbol} {property_id}: missing value")
        return data["value"]

    async def symbol_digits(self, symbol: str, ctx: Optional[CallContext] = None) -> int:
        return int(await self._symbol_property("MarketInfo/SymbolInfoInteger", symbol, "SYMBOL_DIGITS", ctx))

    async def symbol_point(self, symbol: str, ctx: Optional[CallContext] = None) -> float:
        return float(await self._symbol_property("MarketInfo/SymbolInfoDouble", symbol, "SYMBOL_POINT", ctx))

    # --------------------------------------------------------
    # POSITIONS & ORDERS
    # --------------------------------------------------------

    async def positions_total(self, ctx: Optional[CallContext] = None) -> int:
        data = await self._call(OperationClass.QUICK, "Trade/PositionsTotal", ctx=ctx)
        return int((data or {}).get("total_positions", 0))

    async def opened_orders(self, sort_mode: int = 0, ctx: Optional[CallContext] = None) -> Dict[str, Any]:
        data = await self._call(OperationClass.BULK, "Account/OpenedOrders", {"input_sort_mode": sort_mode}, ctx=ctx)
        return dict(data or {})

    async def opened_orders_tickets(self, ctx: Optional[CallContext] = None) -> Tuple[List[int], List[int]]:
        """Returns (position_tickets, pending_order_tickets)."""
        data = await self._call(OperationClass.BULK, "Account/OpenedOrdersTickets", ctx=ctx) or {}
        positions = [int(t) for t in data.get("opened_position_tickets", [])]
        orders = [int(t) for t in data.get("opened_orders_tickets", [])]
        return positions, orders

    async def order_history(
        self,
        from_time: str,
        to_time: str,
        page: int = 0,
        items_per_page: int = 100,
        ctx: Optional[CallContext] = None,
    ) -> Dict[str, Any]:
        request = {
            "input_from": from_time,
            "input_to": to_time,
            "page_number": page,
            "items_per_page": items_per_page,
        }
        return dict(await self._call(OperationClass.HISTORY, "Account/OrderHistory", request, ctx=ctx) or {})

    async def positions_history(
        self,
        from_time: str,
        to_time: str,
        page: int = 0,
        items_per_page: int = 100,
        ctx: Optional[CallContext] = None,
    ) -> Dict[str, Any]:
        request = {
            "position_open_time_from": from_time,
            "position_open_time_to": to_time,
            "page_number": page,
            "items_per_page": items_per_page,
        }
        return dict(await self._call(OperationClass.HISTORY, "Account/PositionsHistory", request, ctx=ctx) or {})

    # --------------------------------------------------------
    # TRADING
    # --------------------------------------------------------

    @staticmethod
    def _order_request(
        symbol: str,
        order_type: OrderType,
        volume: float,
        price: Optional[float],
        stop_loss: Optional[float],
        take_profit: Optional[float],
        deviation: int,
        magic: int,
        comment: str,
    ) -> Dict[str, Any]:
        if volume <= 0:
            raise ValueError(f"volume must be positive, got {volume}")
        request: Dict[str, Any] = {
            "symbol": symbol,
            "operation": int(order_type),
            "volume": volume,
            "slippage": deviation,
            "expert_id": magic,
            "comment": comment,
        }
        if price is not None:
            request["price"] = price
        if stop_loss is not None:
            request["stop_loss"] = stop_loss
        if take_profit is not None:
            request["take_profit"] = take_profit
        return request

    async def order_check(
        self,
        symbol: str,
        order_type: OrderType,
        volume: float,
        price: Optional[float] = None,
        stop_loss: Optional[float] = None,
        take_profit: Optional[float] = None,
        ctx: Optional[CallContext] = None,
    ) -> TradeResult:
        request = self._order_request(symbol, order_type, volume, price, stop_loss, take_profit, 0, 0, "")
        data = await self._call(OperationClass.BULK, "Trade/OrderCheck", {"mql_trade_request": request}, ctx=ctx)
        return TradeResult.from_reply(data)

    async def order_send(
        self,
        symbol: str,
        order_type: OrderType,
        volume: float,
        price: Optional[float] = None,
        stop_loss: Optional[float] = None,
        take_profit: Optional[float] = None,
        deviation: int = 10,
        magic: int = 0,
        comment: str = "",
        idempotency_key: Optional[str] = None,
        ctx: Optional[CallContext] = None,
    ) -> TradeResult:
        """
        Place a market or pending order.

        A retried send is replayed as-is; pass `idempotency_key` so a gateway
        that supports it can drop the duplicate.
        """
        request = self._order_request(
            symbol, order_type, volume, price, stop_loss, take_profit, deviation, magic, comment
        )
        data = await self._call(OperationClass.TRADING, "Trade/OrderSend", request, ctx, idempotency_key)
        result = TradeResult.from_reply(data)
        log.info(
            "order_sent",
            symbol=symbol,
            order_type=order_type.name,
            volume=volume,
            returned_code=result.returned_code,
            order=result.order,
        )
        return result

    async def order_modify(
        self,
        ticket: int,
        stop_loss: Optional[float] = None,
        take_profit: Optional[float] = None,
        price: Optional[float] = None,
        idempotency_key: Optional[str] = None,
        ctx: Optional[CallContext] = None,
    ) -> TradeResult:
        request: Dict[str, Any] = {"ticket": ticket}
        if stop_loss is not None:
            request["stop_loss"] = stop_loss
        if take_profit is not None:
            request["take_profit"] = take_profit
        if price is not None:
            request["price"] = price
        data = await self._call(OperationClass.TRADING, "Trade/OrderModify", request, ctx, idempotency_key)
        return TradeResult.from_reply(data)

    async def order_close(
        self,
        ticket: int,
        volume: Optional[float] = None,
        deviation: int = 10,
        idempotency_key: Optional[str] = None,
        ctx: Optional[CallContext] = None,
    ) -> TradeResult:
        """Close a position (whole, or `volume` lots of it) or delete a pending order."""
        request: Dict[str, Any] = {"ticket": ticket, "slippage": deviation}
        if volume is not None:
            request["volume"] = volume
        data = await self._call(OperationClass.TRADING, "Trade/OrderClose", request, ctx, idempotency_key)
        result = TradeResult.from_reply(data)
        log.info("order_closed", ticket=ticket, returned_code=result.returned_code)
        return result

    # --------------------------------------------------------
    # STREAMS
    # --------------------------------------------------------

    def _subscribe(self, method: str, payload: Mapping[str, Any], ctx: Optional[CallContext]) -> StreamSubscription:
        return self.supervisor.subscribe(ctx, StreamRequest(method, dict(payload)))

    def on_symbol_tick(self, symbols: Sequence[str], ctx: Optional[CallContext] = None) -> StreamSubscription:
        return self._subscribe("Subscriptions/OnSymbolTick", {"symbol_names": list(symbols)}, ctx)

    def on_trade(self, ctx: Optional[CallContext] = None) -> StreamSubscription:
        return self._subscribe("Subscriptions/OnTrade", {}, ctx)

    def on_position_profit(self, interval_ms: int = 1000, ignore_empty: bool = True,
                           ctx: Optional[CallContext] = None) -> StreamSubscription:
        payload = {"timer_period_milliseconds": interval_ms, "ignore_empty_data": ignore_empty}
        return self._subscribe("Subscriptions/OnPositionProfit", payload, ctx)

    def on_positions_and_pending_orders_tickets(self, interval_ms: int = 1000,
                                                ctx: Optional[CallContext] = None) -> StreamSubscription:
        payload = {"timer_period_milliseconds": interval_ms}
        return self._subscribe("Subscriptions/OnPositionsAndPendingOrdersTickets", payload, ctx)

    def on_trade_transaction(self, ctx: Optional[CallContext] = None) -> StreamSubscription:
        return self._subscribe("Subscriptions/OnTradeTransaction", {}, ctx)
