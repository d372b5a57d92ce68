"""
Default Deadlines per Operation Class

Immutable table consulted by the retry executor when the caller supplied no
deadline. Build a new policy with `with_overrides()` instead of mutating one.
"""

from enum import Enum
from types import MappingProxyType
from typing import Dict, Mapping, Optional


class OperationClass(Enum):
    HEALTH = "health"          # check-connect, disconnect
    QUICK = "quick"            # single property, tick, symbol lookups
    STANDARD = "standard"      # margin rates, sessions, market book, calc
    BULK = "bulk"              # account summary, opened orders, order check
    HISTORY = "history"        # order and position history
    TRADING = "trading"        # send / modify / close
    CONNECT = "connect"        # handshake
    RECONNECT = "reconnect"


DEFAULT_TIMEOUTS: Mapping[OperationClass, float] = MappingProxyType({
    OperationClass.HEALTH: 3.0,
    OperationClass.QUICK: 3.0,
    OperationClass.STANDARD: 5.0,
    OperationClass.BULK: 10.0,
    OperationClass.HISTORY: 15.0,
    OperationClass.TRADING: 30.0,
    OperationClass.CONNECT: 30.0,
    OperationClass.RECONNECT: 10.0,
})


class DeadlinePolicy:
    """Read-only mapping of operation class -> default timeout in seconds."""

    __slots__ = ("_timeouts",)

    def __init__(self, timeouts: Optional[Mapping[OperationClass, float]] = None):
        merged: Dict[OperationClass, float] = dict(DEFAULT_TIMEOUTS)
        for op_class, seconds in (timeouts or {}).items():
            if seconds <= 0:
                raise ValueError(f"timeout for {op_class.value} must be positive")
            merged[OperationClass(op_class)] = float(seconds)
        self._timeouts = MappingProxyType(merged)

    def timeout_for(self, op_class: OperationClass) -> float:
        return self._timeouts[op_class]

    def with_overrides(self, **seconds: float) -> "DeadlinePolicy":
        """New policy with some classes changed, e.g. with_overrides(trading=60)."""
        updated = dict(self._timeouts)
        for name, value in seconds.items():
            updated[OperationClass(name)] = value
        return DeadlinePolicy(updated)

    def as_dict(self) -> Dict[str, float]:
        return {op.value: seconds for op, seconds in self._timeouts.items()}

    def __eq__(self, other) -> bool:
        return isinstance(other, DeadlinePolicy) and dict(self._timeouts) == dict(other._timeouts)

    def __repr__(self) -> str:
        return f"DeadlinePolicy({self.as_dict()})"
