"""Transport boundary between the gateway layer and the wire."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional


@dataclass(frozen=True)
class Credentials:
    """Account credentials presented during the handshake."""
    login: int
    password: str = field(repr=False)
    server_name: str = ""
    base_chart_symbol: str = "EURUSD"

    def to_request(self) -> Dict[str, Any]:
        return {
            "user": self.login,
            "password": self.password,
            "mt_cluster_name": self.server_name,
            "base_chart_symbol": self.base_chart_symbol,
        }


class TransportStream(ABC):
    """One open server-push subscription."""

    @abstractmethod
    async def recv(self) -> Dict[str, Any]:
        """Next message. Raises StreamClosedByServer when the server ends the stream."""
        ...

    @abstractmethod
    async def close(self) -> None:
        ...


class Transport(ABC):
    """A live channel to the gateway. Exactly one is current per session."""

    @abstractmethod
    async def handshake(
        self,
        credentials: Credentials,
        headers: Mapping[str, str],
        timeout: Optional[float],
    ) -> str:
        """Authenticate and return the terminal-instance identifier."""
        ...

    @abstractmethod
    async def call(
        self,
        method: str,
        request: Mapping[str, Any],
        headers: Mapping[str, str],
        timeout: Optional[float],
    ) -> Any:
        """Unary call. Returns the reply data or raises a GatewayError."""
        ...

    @abstractmethod
    async def open_stream(
        self,
        method: str,
        request: Mapping[str, Any],
        headers: Mapping[str, str],
    ) -> TransportStream:
        ...

    @abstractmethod
    async def close(self) -> None:
        ...


# Dials a fresh transport for the given endpoint
TransportFactory = Callable[[str], Awaitable[Transport]]
