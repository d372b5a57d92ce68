"""
Gateway Layer Utilities
"""
from .http_transport import HttpGatewayTransport, WebSocketStream
from .account import TerminalAccount, AccountSummary, Tick, TradeResult, OrderType

__all__ = [
    "HttpGatewayTransport",
    "WebSocketStream",
    "TerminalAccount",
    "AccountSummary",
    "Tick",
    "TradeResult",
    "OrderType",
]
