"""
MT5 Gateway Client Configuration

Environment-backed settings (MT5_* and MT5_RETRY_*, .env supported) that are
turned into the immutable objects the gateway layer is constructed with.
The gateway layer itself never reads the environment.
"""
from typing import Dict, Optional

from pydantic import Field
from pydantic_settings import BaseSettings

from gateway_layer.backoff import RetryPolicy
from gateway_layer.deadlines import DeadlinePolicy
from gateway_layer.transport import Credentials


class GatewaySettings(BaseSettings):
    """Account and endpoint configuration."""

    # Account
    login: int = 0
    password: str = Field(default="", repr=False)
    server: str = ""
    base_chart_symbol: str = "EURUSD"

    # Endpoints
    endpoint: str = "https://mt5.mrpc.pro"
    ws_endpoint: str = ""  # derived from endpoint when empty
    verify_tls: bool = True

    # Per operation class overrides in seconds, e.g. MT5_TIMEOUTS='{"trading": 60}'
    timeouts: Dict[str, float] = Field(default_factory=dict)

    model_config = {
        "env_prefix": "MT5_",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    def is_configured(self) -> bool:
        """Check if minimum required config is present."""
        required = [self.password, self.server, self.endpoint]
        return self.login > 0 and all(v and v != "REPLACE_ME" for v in required)

    def credentials(self) -> Credentials:
        return Credentials(
            login=self.login,
            password=self.password,
            server_name=self.server,
            base_chart_symbol=self.base_chart_symbol,
        )

    def deadline_policy(self) -> DeadlinePolicy:
        return DeadlinePolicy().with_overrides(**self.timeouts)


class RetrySettings(BaseSettings):
    """Reconnect/backoff configuration for unary calls and streams."""

    max_attempts: int = 5
    base_delay: float = 0.5
    max_delay: float = 5.0
    multiplier: float = 2.0
    jitter: float = 0.0

    # Streams retry while the caller is alive unless a limit is set
    stream_max_attempts: Optional[int] = None
    stream_base_delay: float = 0.5
    stream_max_delay: float = 5.0

    model_config = {
        "env_prefix": "MT5_RETRY_",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    def call_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.max_attempts,
            base_delay=self.base_delay,
            max_delay=self.max_delay,
            multiplier=self.multiplier,
            jitter=self.jitter,
        )

    def stream_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.stream_max_attempts,
            base_delay=self.stream_base_delay,
            max_delay=self.stream_max_delay,
            multiplier=self.multiplier,
            jitter=self.jitter,
        )


def build_account(
    gateway: Optional[GatewaySettings] = None,
    retry: Optional[RetrySettings] = None,
):
    """Wire a TerminalAccount from settings (environment when not given)."""
    from gateway_layer.utils.account import TerminalAccount
    from gateway_layer.utils.http_transport import HttpGatewayTransport

    gateway = gateway or GatewaySettings()
    retry = retry or RetrySettings()
    factory = HttpGatewayTransport.factory(
        ws_endpoint=gateway.ws_endpoint or None,
        verify=gateway.verify_tls,
    )
    return TerminalAccount(
        gateway.credentials(),
        gateway.endpoint,
        transport_factory=factory,
        call_policy=retry.call_policy(),
        stream_policy=retry.stream_policy(),
        deadlines=gateway.deadline_policy(),
    )
