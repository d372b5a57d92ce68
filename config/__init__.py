"""
MT5 Gateway Client Configuration
"""
from .settings import GatewaySettings, RetrySettings, build_account

__all__ = ["GatewaySettings", "RetrySettings", "build_account"]
