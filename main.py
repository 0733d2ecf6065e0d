"""
Peg Keeper - Main Entry Point

Keeps a token's V3 pool price near its USD peg:
- PriceOracle reads the pool (TWAP, spot fallback) and USD reference feeds
- DecisionEngine maps the deviation to an urgency tier and a trade size
- SafetyPolicy enforces caps, cooldown, daily volume and the circuit breaker
- TradeExecutor swaps through the router (dry run unless --mode live)

Modes:
- dry-run      full loop, nothing is signed or broadcast (default)
- once         a single dry-run cycle, then exit
- live         full loop with real transactions (pre-flight checks + CONFIRM)
- status       print price, deviation and safety state as JSON
- approve      approve the router to spend the token
- clear-pause  clear a breaker/operator pause persisted in the config
"""

import argparse
import asyncio
import json
import logging
import os
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

KILL_SWITCH_POLL_SECONDS = 5.0


async def build_controller(dry_run: bool = True):
    """Wire every component from the environment settings and the stored config."""
    from config.settings import settings
    from peg_layer import (
        BotController,
        CsvRepository,
        DecisionEngine,
        PriceOracle,
        SafetyPolicy,
        TradeExecutor,
    )
    from peg_layer.utils import ChainlinkFeedClient, HttpPriceFeedClient, Web3ChainClient

    repository = CsvRepository(settings.data_dir)
    config = await repository.load_config()
    market = config.market

    chain = Web3ChainClient.from_settings(settings, market)
    feeds = [
        ChainlinkFeedClient(
            settings.rpc_url,
            {market.native_symbol: settings.native_usd_feed, market.benchmark_symbol: settings.benchmark_usd_feed},
        ),
        HttpPriceFeedClient(
            settings.fallback_price_api,
            {market.native_symbol: settings.fallback_native_id, market.benchmark_symbol: settings.fallback_benchmark_id},
        ),
    ]

    safety = SafetyPolicy(config)
    controller = BotController(
        oracle=PriceOracle(chain, feeds, config),
        engine=DecisionEngine(config, safety),
        executor=TradeExecutor(chain, config, dry_run=dry_run),
        safety=safety,
        repository=repository,
        config=config,
    )
    await controller.restore_state()
    return controller


async def close_feeds(controller):
    for feed in controller.oracle.feeds:
        if hasattr(feed, "close"):
            await feed.close()


async def watch_kill_switch(controller, path: str, stop_event: asyncio.Event):
    """Pause the controller as soon as the kill switch file appears."""
    while not stop_event.is_set():
        if os.path.exists(path) and not controller.safety.is_paused:
            logger.critical(f"🚨 Kill switch file {path} found - pausing trading")
            await controller.pause(f"Kill switch file {path}")
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=KILL_SWITCH_POLL_SECONDS)
        except asyncio.TimeoutError:
            pass


async def run_loop(dry_run: bool = True, max_cycles=None, interval=None):
    """Run the peg loop until Ctrl+C, the kill switch or `max_cycles`."""
    from config.settings import settings
    from utils.startup_check import perform_safety_checks

    controller = await build_controller(dry_run=dry_run)

    if not dry_run:
        success, issues = await perform_safety_checks(controller, settings)
        if not success:
            print("\n❌ Pre-flight checks failed. Cannot start.")
            await close_feeds(controller)
            return False

    # Setup graceful shutdown
    shutdown_event = asyncio.Event()

    def signal_handler(sig, frame):
        print("\n\n🛑 Shutdown signal received...")
        shutdown_event.set()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    async def stop_on_shutdown():
        await shutdown_event.wait()
        await controller.stop()

    interval = interval if interval is not None else settings.loop_interval_seconds

    print("\n" + "=" * 60)
    print("PEG KEEPER LOOP STARTING")
    print(f"Mode: {'DRY RUN' if dry_run else '🔴 LIVE TRADING'}")
    print(f"Target: ${controller.config.market.target_peg_usd} per {controller.config.market.token_symbol}")
    print(f"Interval: {interval}s")
    print("Press Ctrl+C to stop")
    print("=" * 60 + "\n")

    watchers = [
        asyncio.create_task(watch_kill_switch(controller, settings.kill_switch_file, shutdown_event)),
        asyncio.create_task(stop_on_shutdown()),
    ]
    try:
        await controller.start(interval_seconds=interval, max_cycles=max_cycles)
    except asyncio.CancelledError:
        logger.info("Main loop cancelled")
    finally:
        shutdown_event.set()
        for task in watchers:
            task.cancel()
        await asyncio.gather(*watchers, return_exceptions=True)
        await close_feeds(controller)

    print_summary(controller)
    return True


def print_summary(controller):
    status = controller.get_status()
    stats = status["statistics"]
    safety = status["safety"]

    print("\n" + "=" * 60)
    print("PEG KEEPER SESSION SUMMARY")
    print("=" * 60)
    print(f"  Cycles: {stats['cycles']} (holds: {stats['holds']})")
    print(f"  Trades: {stats['successful_trades']} ok / {stats['failed_trades']} failed / {stats['reverted_trades']} reverted")
    print(f"  Daily trades: {safety['daily_trade_count']}")
    print(f"  Daily volume: {safety['daily_volume_used']}")
    print(f"  Paused: {safety['paused']} {safety['pause_reason'] or ''}")
    print(f"  Last error: {status['last_error']}")
    print("=" * 60 + "\n")


async def run_status():
    """Print one fresh price reading and the controller state."""
    from peg_layer import PegBotError

    controller = await build_controller(dry_run=True)
    output = {"controller": controller.get_status()}
    try:
        sample = await controller.oracle.get_price(force_refresh=True)
        output["price"] = sample.to_dict()
        output["deviation"] = controller.oracle.deviation_for(sample).to_dict()
        output["liquidity"] = await controller.oracle.get_liquidity_depth()
    except PegBotError as e:
        output["price_error"] = str(e)
    finally:
        await close_feeds(controller)

    print(json.dumps(output, indent=2, default=str))
    return "price_error" not in output


async def run_approve():
    controller = await build_controller(dry_run=False)
    tx_hash = await controller.executor.ensure_allowance()
    print(f"✅ Approval: {tx_hash or 'not needed'}")
    return True


async def run_clear_pause():
    controller = await build_controller(dry_run=True)
    state = controller.safety.state
    if not state.paused:
        print("✓ Bot is not paused")
        return True
    print(f"⏸️ Clearing pause: {state.pause_reason}")
    await controller.resume()
    print("✓ Pause cleared - the bot will trade on its next cycle")
    return True


def main():
    parser = argparse.ArgumentParser(
        description="Peg Keeper - V3 pool peg stabilization bot"
    )
    parser.add_argument(
        "--mode",
        choices=["dry-run", "once", "live", "status", "approve", "clear-pause"],
        default="dry-run",
        help="Operation mode: dry-run (default), once, live, status, approve, clear-pause"
    )
    parser.add_argument(
        "--max-cycles",
        type=int,
        default=None,
        help="Stop after this many cycles"
    )
    parser.add_argument(
        "--interval",
        type=float,
        default=None,
        help="Seconds between cycles (default: LOOP_INTERVAL_SECONDS)"
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose logging"
    )

    args = parser.parse_args()

    from config.settings import settings
    level = logging.DEBUG if args.verbose else getattr(logging, settings.log_level.upper(), logging.INFO)
    logging.getLogger().setLevel(level)

    print("""
    ╔═══════════════════════════════════════════════════════════╗
    ║                                                           ║
    ║   🪙 PEG KEEPER - V3 POOL PEG STABILIZATION               ║
    ║                                                           ║
    ║   PriceOracle → DecisionEngine → SafetyPolicy             ║
    ║                → TradeExecutor                            ║
    ║                                                           ║
    ╚═══════════════════════════════════════════════════════════╝
    """)

    if args.mode == "dry-run":
        success = asyncio.run(run_loop(dry_run=True, max_cycles=args.max_cycles, interval=args.interval))
    elif args.mode == "once":
        success = asyncio.run(run_loop(dry_run=True, max_cycles=1, interval=0))
    elif args.mode == "live":
        print("\n🔴 LIVE TRADING MODE")
        print("\n⚠️  WARNING: This will execute REAL swaps!")
        confirm = input("Type 'CONFIRM' to proceed: ")
        if confirm != "CONFIRM":
            print("Aborted.")
            sys.exit(1)
        success = asyncio.run(run_loop(dry_run=False, max_cycles=args.max_cycles, interval=args.interval))
    elif args.mode == "status":
        success = asyncio.run(run_status())
    elif args.mode == "approve":
        success = asyncio.run(run_approve())
    else:
        success = asyncio.run(run_clear_pause())

    sys.exit(0 if success else 1)


if __name__ == "__main__":
    main()
