#!/usr/bin/env python3
"""
Pre-Flight Startup Checks for Live Trading

Verifies all safety conditions before starting live trading:
1. Wallet wiring (key, wallet, pool and token addresses)
2. Kill switch file absent
3. RPC latency (eth_blockNumber ping < MAX_RPC_LATENCY_MS)
4. Pool tokens/decimals match the configured market
5. Native balance above the gas reserve, router allowance set
6. SafetyPolicy not paused

Usage:
    from utils.startup_check import perform_safety_checks
    success, issues = await perform_safety_checks(controller)
"""

import logging
import os
import time
from typing import List, Tuple

import httpx

from config.settings import PegBotSettings, settings as default_settings

logger = logging.getLogger(__name__)


def check_wallet_config(settings: PegBotSettings) -> Tuple[bool, str]:
    """
    Verify the minimum live wiring is present.

    Returns:
        Tuple of (passed, message)
    """
    if settings.is_live_ready():
        return True, f"Wallet configured: {settings.masked_wallet()}"

    missing = []
    for name, value in (
        ("BOT_PRIVATE_KEY", settings.private_key),
        ("BOT_WALLET_ADDRESS", settings.wallet_address),
        ("POOL_ADDRESS", settings.pool_address),
        ("TOKEN_ADDRESS", settings.token_address),
    ):
        if not value or value == "REPLACE_ME":
            missing.append(name)
    return False, f"Missing env vars: {', '.join(missing)}"


def check_kill_switch_file(settings: PegBotSettings) -> Tuple[bool, str]:
    """
    Ensure the kill switch file does not exist at startup.

    Returns:
        Tuple of (passed, message)
    """
    if os.path.exists(settings.kill_switch_file):
        return False, f"{settings.kill_switch_file} exists - remove it to start trading"

    return True, "No kill switch file found"


async def check_rpc_latency(settings: PegBotSettings) -> Tuple[bool, str, float]:
    """
    Ping the RPC endpoint (eth_blockNumber) and verify latency is under
    MAX_RPC_LATENCY_MS.

    Returns:
        Tuple of (passed, message, latency_ms)
    """
    max_latency_ms = settings.max_rpc_latency_ms

    try:
        start = time.time()
        async with httpx.AsyncClient(timeout=10.0) as client:
            resp = await client.post(settings.rpc_url, json={
                "jsonrpc": "2.0",
                "method": "eth_blockNumber",
                "params": [],
                "id": 1
            })
            resp.raise_for_status()
            block = int(resp.json()["result"], 16)
        latency_ms = (time.time() - start) * 1000
    except Exception as e:
        return False, f"RPC ping failed: {e}", 9999.0

    if latency_ms > max_latency_ms:
        return False, f"RPC latency {latency_ms:.0f}ms > {max_latency_ms:.0f}ms (too slow)", latency_ms

    return True, f"RPC latency: {latency_ms:.0f}ms (block {block})", latency_ms


async def check_pool_matches_market(controller) -> Tuple[bool, str]:
    """
    The pool must pair the configured token with the wrapped native asset,
    with the decimals the config declares.
    """
    chain = controller.executor.chain
    market = controller.config.market

    try:
        pool = await chain.get_pool_state()
    except Exception as e:
        return False, f"Pool unreadable: {e}"

    tokens = {pool.token0.lower(): pool.decimals0, pool.token1.lower(): pool.decimals1}
    token = chain.token_address.lower()
    native = chain.wrapped_native_address.lower()

    issues = []
    if token not in tokens:
        issues.append(f"pool does not contain token {chain.token_address}")
    elif tokens[token] != market.token_decimals:
        issues.append(f"token decimals {tokens[token]} != configured {market.token_decimals}")
    if native not in tokens:
        issues.append(f"pool does not contain wrapped native {chain.wrapped_native_address}")
    elif tokens[native] != market.native_decimals:
        issues.append(f"native decimals {tokens[native]} != configured {market.native_decimals}")

    if issues:
        return False, "; ".join(issues)

    return True, f"Pool OK: fee {pool.fee}, tick {pool.tick}, liquidity {pool.liquidity}"


async def check_wallet_balance(controller) -> Tuple[bool, str, List[str]]:
    """
    Native balance must cover the reserve kept for gas. A missing router
    allowance is a warning only (SELL trades will fail the funds check).

    Returns:
        Tuple of (passed, message, warnings)
    """
    limits = controller.config.limits
    warnings = []

    try:
        balances = await controller.executor.get_balances()
    except Exception as e:
        return False, f"Failed to check wallet: {e}", warnings

    if balances.native.to_decimal() <= limits.min_native_reserve:
        return (
            False,
            f"{balances.native} <= reserve {limits.min_native_reserve} {balances.native.symbol} (need gas)",
            warnings,
        )

    if balances.token_allowance.is_zero():
        warnings.append("Router allowance is zero - run with --mode approve before SELL trades")

    return True, f"Wallet OK: {balances.native}, {balances.token}", warnings


def check_safety_policy(controller) -> Tuple[bool, str]:
    """
    Verify SafetyPolicy is not paused (breaker trip or operator pause).

    Returns:
        Tuple of (passed, message)
    """
    state = controller.safety.state
    if state.paused:
        return False, f"SafetyPolicy paused: {state.pause_reason} (use --mode clear-pause)"
    if state.consecutive_error_count > 0:
        return True, f"SafetyPolicy active ({state.consecutive_error_count} recent errors)"
    return True, "SafetyPolicy active and clean"


async def perform_safety_checks(controller, settings: PegBotSettings = default_settings) -> Tuple[bool, List[str]]:
    """
    Run all pre-flight safety checks.

    Returns:
        Tuple of (all_passed, list_of_issues)
    """
    print("\n" + "=" * 60)
    print("🔍 PRE-FLIGHT SAFETY CHECKS")
    print("=" * 60 + "\n")

    all_passed = True
    issues = []

    def report(passed: bool, msg: str):
        nonlocal all_passed
        if passed:
            print(f"        ✅ {msg}")
        else:
            print(f"        ❌ {msg}")
            all_passed = False
            issues.append(msg)

    print("  [1/6] Checking wallet configuration...")
    report(*check_wallet_config(settings))

    print("  [2/6] Checking kill switch file...")
    report(*check_kill_switch_file(settings))

    print("  [3/6] Checking RPC latency...")
    passed, msg, _ = await check_rpc_latency(settings)
    report(passed, msg)

    print("  [4/6] Checking pool against market config...")
    report(*await check_pool_matches_market(controller))

    print("  [5/6] Checking wallet balance...")
    passed, msg, warnings = await check_wallet_balance(controller)
    report(passed, msg)
    for warning in warnings:
        print(f"        ⚠️  {warning}")

    print("  [6/6] Checking SafetyPolicy...")
    report(*check_safety_policy(controller))

    print("\n" + "-" * 60)

    if all_passed:
        print("✅ ALL CHECKS PASSED - Safe to proceed with live trading")
    else:
        print("❌ CHECKS FAILED - Resolve issues before trading")
        print(f"   Issues: {len(issues)}")
        for i, issue in enumerate(issues, 1):
            print(f"   {i}. {issue}")

    print("=" * 60 + "\n")

    return all_passed, issues
