#!/usr/bin/env python3
"""
Pre-Flight Startup Checks for the Gateway Client

Verifies the environment before a live session is opened:
1. Required configuration present (MT5_LOGIN, MT5_PASSWORD, MT5_SERVER)
2. Gateway reachable over HTTP(S)
3. Handshake succeeds within the latency budget
4. Account summary readable on the new session

Usage:
    from utils.startup_check import perform_preflight_checks
    success, issues = await perform_preflight_checks()
"""

import logging
import time
from typing import List, Optional, Tuple

import httpx

from config.settings import GatewaySettings, RetrySettings, build_account
from gateway_layer.errors import GatewayError

logger = logging.getLogger(__name__)

MAX_HANDSHAKE_MS = 3000.0


def check_configuration(settings: GatewaySettings) -> Tuple[bool, str]:
    """
    Verify required settings are set.

    Returns:
        Tuple of (passed, message)
    """
    missing = []
    if settings.login <= 0:
        missing.append("MT5_LOGIN")
    if not settings.password or settings.password == "REPLACE_ME":
        missing.append("MT5_PASSWORD")
    if not settings.server:
        missing.append("MT5_SERVER")

    if missing:
        return False, f"Missing settings: {', '.join(missing)}"
    return True, f"Configured for account {settings.login} on {settings.server}"


async def check_gateway_reachable(
    settings: GatewaySettings,
    client: Optional[httpx.AsyncClient] = None,
) -> Tuple[bool, str, float]:
    """
    Reach the gateway endpoint; any HTTP answer counts as reachable.

    Returns:
        Tuple of (passed, message, latency_ms)
    """
    owned = client is None
    client = client or httpx.AsyncClient(timeout=5.0, verify=settings.verify_tls)
    try:
        start = time.monotonic()
        resp = await client.get(settings.endpoint)
        latency_ms = (time.monotonic() - start) * 1000
        return True, f"Gateway answered HTTP {resp.status_code} in {latency_ms:.0f}ms", latency_ms
    except httpx.HTTPError as e:
        return False, f"Gateway unreachable: {e}", 9999.0
    finally:
        if owned:
            await client.aclose()


async def check_handshake(account) -> Tuple[bool, str, float]:
    """
    Perform the handshake and time it.

    Returns:
        Tuple of (passed, message, latency_ms)
    """
    try:
        start = time.monotonic()
        terminal_id = await account.connect()
        latency_ms = (time.monotonic() - start) * 1000
    except GatewayError as e:
        return False, f"Handshake failed ({e.kind.value}): {e}", 9999.0

    if latency_ms > MAX_HANDSHAKE_MS:
        return False, f"Handshake took {latency_ms:.0f}ms > {MAX_HANDSHAKE_MS:.0f}ms", latency_ms
    return True, f"Handshake OK in {latency_ms:.0f}ms (terminal {terminal_id})", latency_ms


async def check_account_summary(account) -> Tuple[bool, str]:
    """
    Read the account summary over the fresh session.

    Returns:
        Tuple of (passed, message)
    """
    try:
        summary = await account.account_summary()
    except GatewayError as e:
        return False, f"Account summary failed: {e}"
    return True, f"Balance {summary.balance:.2f} {summary.currency}, leverage 1:{summary.leverage}"


async def perform_preflight_checks(
    gateway: Optional[GatewaySettings] = None,
    retry: Optional[RetrySettings] = None,
) -> Tuple[bool, List[str]]:
    """
    Run all pre-flight checks. Stops early when configuration is missing.

    Returns:
        Tuple of (all_passed, list_of_issues)
    """
    gateway = gateway or GatewaySettings()
    issues: List[str] = []

    print("\n" + "=" * 60)
    print("PRE-FLIGHT CHECKS")
    print("=" * 60 + "\n")

    def report(step: str, passed: bool, msg: str):
        print(f"  {step} {'OK  ' if passed else 'FAIL'} {msg}")
        if not passed:
            logger.warning("Preflight %s failed: %s", step, msg)
            issues.append(msg)

    passed, msg = check_configuration(gateway)
    report("[1/4]", passed, msg)
    if not passed:
        return False, issues

    passed, msg, _ = await check_gateway_reachable(gateway)
    report("[2/4]", passed, msg)

    account = build_account(gateway, retry)
    try:
        passed, msg, _ = await check_handshake(account)
        report("[3/4]", passed, msg)
        if passed:
            passed, msg = await check_account_summary(account)
            report("[4/4]", passed, msg)
    finally:
        await account.close()

    print("\n" + "-" * 60)
    if issues:
        print(f"CHECKS FAILED - {len(issues)} issue(s)")
        for i, issue in enumerate(issues, 1):
            print(f"   {i}. {issue}")
    else:
        print("ALL CHECKS PASSED")
    print("=" * 60 + "\n")

    return not issues, issues


if __name__ == "__main__":
    import asyncio
    asyncio.run(perform_preflight_checks())
