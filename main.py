"""
MT5 Gateway Client - Main Entry Point

Modes:
- preflight: configuration, reachability, handshake and account checks
- summary:   connect and print the account summary
- ticks:     stream ticks for a few symbols, resubscribing across disconnects

Configuration comes from MT5_* / MT5_RETRY_* environment variables (.env).
"""

import argparse
import asyncio
import logging
import signal
import sys

from dotenv import load_dotenv

# Load environment variables
load_dotenv()

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)


async def run_preflight() -> bool:
    from utils.startup_check import perform_preflight_checks

    success, _ = await perform_preflight_checks()
    return success


async def run_summary() -> bool:
    from config.settings import GatewaySettings, build_account
    from gateway_layer.errors import GatewayError

    settings = GatewaySettings()
    if not settings.is_configured():
        print("Set MT5_LOGIN, MT5_PASSWORD and MT5_SERVER in .env")
        return False

    account = build_account(settings)
    try:
        terminal_id = await account.connect()
        summary = await account.account_summary()
    except GatewayError as e:
        logger.error("Summary failed (%s): %s", e.kind.value, e)
        return False
    finally:
        await account.close()

    print("\n" + "=" * 60)
    print(f"ACCOUNT {summary.login}  (terminal {terminal_id})")
    print("=" * 60)
    print(f"  Holder:    {summary.user_name}")
    print(f"  Company:   {summary.company_name}")
    print(f"  Balance:   {summary.balance:.2f} {summary.currency}")
    print(f"  Equity:    {summary.equity:.2f} {summary.currency}")
    print(f"  Floating:  {summary.floating_profit:.2f} {summary.currency}")
    print(f"  Leverage:  1:{summary.leverage}")
    print("=" * 60 + "\n")
    return True


async def run_ticks(symbols: list, duration: float) -> bool:
    from config.settings import GatewaySettings, build_account
    from gateway_layer.context import CallContext

    settings = GatewaySettings()
    if not settings.is_configured():
        print("Set MT5_LOGIN, MT5_PASSWORD and MT5_SERVER in .env")
        return False

    ctx = CallContext.background()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, ctx.cancel)
        except NotImplementedError:
            pass
    loop.call_later(duration, ctx.cancel)

    account = build_account(settings)
    sub = account.on_symbol_tick(symbols, ctx=ctx)
    print(f"\nStreaming {', '.join(symbols)} for {duration:.0f}s (Ctrl+C to stop)\n")

    try:
        async for message in sub.data:
            tick = message.get("symbol_tick", message)
            print(f"  {tick.get('symbol', '?'):<10} bid={tick.get('bid')} ask={tick.get('ask')}")
        await sub.wait_closed()
    finally:
        await account.close()

    failed = False
    async for error in sub.errors:
        logger.error("Stream ended with error: %s", error)
        failed = True

    print(f"\n{sub.messages} ticks received, {sub.reconnects} resubscribes")
    return not failed


def main():
    parser = argparse.ArgumentParser(
        description="MT5 Gateway Client - resilient session, calls and streams"
    )
    parser.add_argument(
        "--mode",
        choices=["preflight", "summary", "ticks"],
        default="preflight",
        help="Operation mode: preflight checks, account summary, or tick stream"
    )
    parser.add_argument(
        "--symbols",
        default="EURUSD,GBPUSD",
        help="Comma-separated symbols for --mode ticks"
    )
    parser.add_argument(
        "--duration",
        type=float,
        default=30.0,
        help="Seconds to stream for --mode ticks"
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose logging"
    )

    args = parser.parse_args()
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    if args.mode == "preflight":
        success = asyncio.run(run_preflight())
    elif args.mode == "summary":
        success = asyncio.run(run_summary())
    else:
        symbols = [s.strip() for s in args.symbols.split(",") if s.strip()]
        success = asyncio.run(run_ticks(symbols, args.duration))
    sys.exit(0 if success else 1)


if __name__ == "__main__":
    main()
