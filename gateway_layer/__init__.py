"""
MT5 Gateway Layer - Resilient Client Core

Core Components:
- Session: handshake, single current transport, lock-protected reconnect
- RetryExecutor: default deadlines, classification, backoff, reconnect-and-replay
- StreamSupervisor: server-push subscriptions as data/error feeds with resubscribe
- BackoffPolicy / DeadlinePolicy: pure delay schedule and immutable timeout table
"""

from gateway_layer.backoff import (
    BackoffPolicy,
    RetryPolicy,
    DEFAULT_CALL_POLICY,
    DEFAULT_STREAM_POLICY,
)
from gateway_layer.context import CallContext
from gateway_layer.deadlines import DeadlinePolicy, OperationClass
from gateway_layer.errors import (
    ApiError,
    AuthenticationError,
    CancelledByCaller,
    DeadlineExceeded,
    ErrorKind,
    GatewayConnectionError,
    GatewayError,
    ProtocolError,
    RetriesExhausted,
    SessionClosedError,
    StreamClosedByServer,
    TradeReturnCode,
    classify,
)
from gateway_layer.executor import CallAttempt, RetryExecutor
from gateway_layer.feeds import Feed, FeedClosed
from gateway_layer.session import Session
from gateway_layer.stream import (
    StreamRequest,
    StreamSubscription,
    StreamSupervisor,
    SubscriptionState,
)
from gateway_layer.transport import Credentials, Transport, TransportFactory, TransportStream

__all__ = [
    # Policies
    "BackoffPolicy",
    "RetryPolicy",
    "DEFAULT_CALL_POLICY",
    "DEFAULT_STREAM_POLICY",
    "DeadlinePolicy",
    "OperationClass",
    "CallContext",
    # Errors
    "ApiError",
    "AuthenticationError",
    "CancelledByCaller",
    "DeadlineExceeded",
    "ErrorKind",
    "GatewayConnectionError",
    "GatewayError",
    "ProtocolError",
    "RetriesExhausted",
    "SessionClosedError",
    "StreamClosedByServer",
    "TradeReturnCode",
    "classify",
    # Session & calls
    "Session",
    "CallAttempt",
    "RetryExecutor",
    # Streams
    "Feed",
    "FeedClosed",
    "StreamRequest",
    "StreamSubscription",
    "StreamSupervisor",
    "SubscriptionState",
    # Transport boundary
    "Credentials",
    "Transport",
    "TransportFactory",
    "TransportStream",
]
