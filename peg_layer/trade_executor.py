"""
Trade Executor - Decision to Signed Swap

Rules of engagement for every execute() call:
- Estimate through the pricing pool (quoter, in-range math as fallback)
- ABORT with INSUFFICIENT_LIQUIDITY if price impact > the tier's slippage
- ABORT with INSUFFICIENT_FUNDS if balance (+ gas reserve) or allowance is short
- Gas price = base * tier multiplier, capped at max_gas_price_gwei
- Exactly one signed transaction; broadcast is never retried
- Expected failures come back as a TradeResult with error_kind, not as exceptions
"""

import asyncio
import logging
from datetime import datetime
from decimal import Decimal
from typing import Callable, Optional, Tuple

from config.bot_config import BotConfig
from peg_layer import tick_math
from peg_layer.amounts import Amount
from peg_layer.errors import (
    BroadcastUncertain,
    ErrorKind,
    InsufficientFunds,
    InsufficientLiquidity,
    NetworkError,
    ReceiptTimeout,
    TradeError,
    classify_message,
    to_trade_error,
)
from peg_layer.interfaces import ChainClient, SignedTransaction, SwapRequest, TxReceipt, WalletBalances
from peg_layer.models import (
    Action,
    SwapEstimate,
    TradeDecision,
    TradeResult,
    TradeStatus,
    UrgencyTier,
    new_trade_id,
    utc_now,
)
from peg_layer.retry import RetryPolicy, call_with_retry

logger = logging.getLogger(__name__)

GWEI = 10 ** 9
MAX_UINT256 = 2 ** 256 - 1


class TradeExecutor:
    """
    Executes TradeDecisions against the V3 pool.

    Nonce safety comes from the controller's single cycle lock; this class
    never runs two submissions itself but does not guard against callers
    that do.
    """

    def __init__(
        self,
        chain: ChainClient,
        config: BotConfig,
        dry_run: bool = True,
        now_fn: Callable[[], datetime] = utc_now,
    ):
        self.chain = chain
        self.dry_run = dry_run
        self._now = now_fn
        self.configure(config)

        logger.info(
            f"⚙️ TradeExecutor initialized ({'DRY RUN' if dry_run else 'LIVE'}):\n"
            f"   • Router: {chain.router_address}\n"
            f"   • Max gas: {config.gas.max_gas_price_gwei} gwei\n"
            f"   • Gas limit buffer: {config.gas.gas_limit_buffer_pct}%"
        )

    def configure(self, config: BotConfig) -> None:
        self.config = config
        self.retry_policy = RetryPolicy(
            max_attempts=config.safety.retry_attempts,
            initial_backoff=config.safety.retry_backoff_seconds,
            timeout=config.safety.rpc_timeout_seconds,
        )

    async def _call(self, fn, label: str):
        return await call_with_retry(fn, self.retry_policy, label)

    # =========================================================================
    # READS
    # =========================================================================

    async def get_balances(self) -> WalletBalances:
        return await self._call(self.chain.get_balances, "get_balances")

    async def resolve_gas_price(self, urgency: UrgencyTier) -> int:
        """Base gas price scaled by the tier multiplier, capped at the ceiling (wei)."""
        base = await self._call(self.chain.get_gas_price, "get_gas_price")
        key = urgency.config_key if urgency is not UrgencyTier.HOLD else "low"
        multiplier = self.config.tier(key).gas_multiplier
        price = int(Decimal(base) * multiplier)
        cap = int(self.config.gas.max_gas_price_gwei * GWEI)
        if price > cap:
            logger.warning(
                f"⛽ Gas {price / GWEI:.2f} gwei ({urgency.name} x{multiplier}) "
                f"capped at {cap / GWEI:.2f} gwei"
            )
            price = cap
        return price

    def _route(self, action: Action) -> Tuple[str, str, int, str]:
        """(token_in, token_out, out_decimals, out_symbol) for a side."""
        market = self.config.market
        if action is Action.BUY:
            return (self.chain.wrapped_native_address, self.chain.token_address,
                    market.token_decimals, market.token_symbol)
        if action is Action.SELL:
            return (self.chain.token_address, self.chain.wrapped_native_address,
                    market.native_decimals, market.native_symbol)
        raise ValueError(f"No route for {action}")

    async def estimate(self, action: Action, amount_in: Amount) -> SwapEstimate:
        """
        Expected output and price impact for an exact-input swap.

        Uses the on-chain quoter when it answers; otherwise falls back to
        single-range liquidity math on the current pool state.
        """
        token_in, token_out, out_decimals, out_symbol = self._route(action)
        pool = await self._call(self.chain.get_pool_state, "get_pool_state")
        zero_for_one = token_in.lower() == pool.token0.lower()

        source = "quoter"
        try:
            amount_out = await self._call(
                lambda: self.chain.quote_exact_input(token_in, token_out, pool.fee, amount_in.raw),
                "quote_exact_input",
            )
        except TradeError as e:
            logger.warning(f"⚠️ Quoter unavailable ({e}), using in-range liquidity math")
            amount_out, _ = tick_math.estimate_in_range_output(
                pool.sqrt_price_x96, pool.liquidity, amount_in.raw, zero_for_one, pool.fee
            )
            source = "in_range"

        impact = tick_math.price_impact_bps(
            pool.sqrt_price_x96, amount_in.raw, amount_out, zero_for_one, pool.fee
        )
        return SwapEstimate(
            amount_in=amount_in,
            amount_out=Amount(amount_out, out_decimals, out_symbol),
            price_impact_bps=impact,
            fee_tier=pool.fee,
            source=source,
        )

    # =========================================================================
    # PRE-FLIGHT
    # =========================================================================

    def _native(self, raw: int) -> Amount:
        market = self.config.market
        return Amount(raw, market.native_decimals, market.native_symbol)

    def _check_funds(self, decision: TradeDecision, balances: WalletBalances,
                     gas_reserve: Optional[Amount] = None) -> None:
        amount = decision.amount_in
        gas_reserve = gas_reserve or self._native(0)

        if decision.action is Action.BUY:
            required = amount + gas_reserve
            if balances.native < required:
                raise InsufficientFunds(f"Native balance {balances.native} < {required} (amount + gas)")
            return

        if balances.token < amount:
            raise InsufficientFunds(f"Token balance {balances.token} < {amount}")
        if balances.token_allowance < amount:
            raise InsufficientFunds(
                f"Router allowance {balances.token_allowance} < {amount} (run approve)"
            )
        if balances.native < gas_reserve:
            raise InsufficientFunds(f"Native balance {balances.native} < gas reserve {gas_reserve}")

    def _build_request(self, decision: TradeDecision, estimate: SwapEstimate, min_out: Amount) -> SwapRequest:
        token_in, token_out, _, _ = self._route(decision.action)
        deadline = int(self._now().timestamp()) + self.config.gas.deadline_seconds
        return SwapRequest(
            token_in=token_in,
            token_out=token_out,
            fee=estimate.fee_tier,
            amount_in=decision.amount_in.raw,
            amount_out_minimum=min_out.raw,
            deadline=deadline,
            native_in=decision.action is Action.BUY,
            native_out=decision.action is Action.SELL,
        )

    async def _estimate_gas_limit(self, request: SwapRequest) -> int:
        estimate = await self._call(lambda: self.chain.estimate_swap_gas(request), "estimate_swap_gas")
        return estimate * (100 + self.config.gas.gas_limit_buffer_pct) // 100

    # =========================================================================
    # EXECUTION
    # =========================================================================

    async def execute(
        self,
        decision: TradeDecision,
        pause_check: Optional[Callable[[], Optional[str]]] = None,
    ) -> TradeResult:
        """
        Run one decision to a TradeResult.

        Returns FAILED with error_kind for every expected failure, PENDING when
        the transaction was broadcast but not yet confirmed, otherwise the
        terminal SUCCESS / REVERTED result.

        `pause_check` is asked right before broadcast; a non-empty reason
        cancels the trade (FAILED, no error_kind) with nothing sent.
        """
        if decision.is_hold or decision.amount_in is None:
            raise ValueError("Cannot execute a HOLD decision")

        trade_id = new_trade_id()
        initiated_at = self._now()
        gas_price = 0
        min_out: Optional[Amount] = None

        try:
            estimate = await self.estimate(decision.action, decision.amount_in)
            if estimate.amount_out.is_zero():
                raise InsufficientLiquidity(f"Pool returns no output for {decision.amount_in}")
            if estimate.price_impact_bps > decision.slippage_bps:
                raise InsufficientLiquidity(
                    f"Price impact {estimate.price_impact_bps}bps > "
                    f"{decision.urgency.name} tolerance {decision.slippage_bps}bps"
                )

            min_out = estimate.amount_out.scale(Decimal(10_000 - decision.slippage_bps) / Decimal(10_000))

            balances = await self.get_balances()
            self._check_funds(decision, balances)

            request = self._build_request(decision, estimate, min_out)
            gas_price = await self.resolve_gas_price(decision.urgency)
            gas_limit = await self._estimate_gas_limit(request)
            gas_reserve = self._native(gas_limit * gas_price)
            self._check_funds(decision, balances, gas_reserve)

            if self.dry_run:
                logger.info(
                    f"  [DRY RUN] Would {decision.action.value} {decision.amount_in} -> "
                    f"~{estimate.amount_out} (min {min_out}, impact {estimate.price_impact_bps}bps, "
                    f"gas {gas_price / GWEI:.2f} gwei)"
                )
                now = self._now()
                return TradeResult(
                    decision=decision,
                    status=TradeStatus.SUCCESS,
                    id=trade_id,
                    tx_hash=f"dry_run_{trade_id}",
                    gas_used=gas_limit,
                    gas_price=gas_price,
                    gas_cost_native=gas_reserve,
                    min_amount_out=min_out,
                    realized_amount_out=estimate.amount_out,
                    initiated_at=initiated_at,
                    executed_at=now,
                    confirmed_at=now,
                    dry_run=True,
                )

            signed = await self._call(
                lambda: self.chain.sign_swap(request, gas_price, gas_limit), "sign_swap"
            )
        except Exception as e:
            error = to_trade_error(e)
            logger.error(f"❌ {decision.action.value} {decision.amount_in} aborted ({error.kind.value}): {error}")
            return TradeResult(
                decision=decision,
                status=TradeStatus.FAILED,
                id=trade_id,
                gas_price=gas_price,
                min_amount_out=min_out,
                error_kind=error.kind,
                error_message=str(error),
                initiated_at=initiated_at,
                executed_at=self._now(),
            )

        pause_reason = pause_check() if pause_check is not None else None
        if pause_reason:
            logger.warning(f"🛑 {decision.action.value} {decision.amount_in} cancelled before broadcast: {pause_reason}")
            return TradeResult(
                decision=decision,
                status=TradeStatus.FAILED,
                id=trade_id,
                nonce=signed.nonce,
                gas_price=gas_price,
                min_amount_out=min_out,
                error_message=f"Cancelled before broadcast: {pause_reason}",
                initiated_at=initiated_at,
                executed_at=self._now(),
            )

        return await self._submit(decision, trade_id, initiated_at, signed, balances, gas_price, min_out)

    async def _submit(
        self,
        decision: TradeDecision,
        trade_id: str,
        initiated_at: datetime,
        signed: SignedTransaction,
        balances_before: WalletBalances,
        gas_price: int,
        min_out: Amount,
    ) -> TradeResult:
        expedited = decision.urgency is UrgencyTier.EMERGENCY and self.config.gas.expedite_emergency
        pending = TradeResult(
            decision=decision,
            status=TradeStatus.PENDING,
            id=trade_id,
            tx_hash=signed.tx_hash,
            nonce=signed.nonce,
            gas_price=gas_price,
            min_amount_out=min_out,
            initiated_at=initiated_at,
            executed_at=self._now(),
        )

        logger.info(
            f"📤 Submitting {decision.action.value} {decision.amount_in} "
            f"(nonce {signed.nonce}, {gas_price / GWEI:.2f} gwei{', expedited' if expedited else ''})"
        )

        # The broadcast keeps running if the timeout fires; its hash is already known
        send = asyncio.ensure_future(self.chain.send_swap(signed, expedited=expedited))
        try:
            await asyncio.wait_for(asyncio.shield(send), timeout=self.config.safety.rpc_timeout_seconds)
        except (asyncio.TimeoutError, BroadcastUncertain) as e:
            logger.warning(f"⏳ Broadcast of {signed.tx_hash} unconfirmed ({str(e) or 'timeout'}), tracking as pending")
            return pending
        except Exception as e:
            error = to_trade_error(e)
            logger.error(f"❌ Broadcast rejected ({error.kind.value}): {error}")
            return pending.resolved(
                TradeStatus.FAILED,
                error_kind=error.kind,
                error_message=str(error),
                confirmed_at=self._now(),
            )

        try:
            receipt = await self.chain.wait_for_receipt(
                signed.tx_hash, timeout=self.config.safety.receipt_timeout_seconds
            )
        except ReceiptTimeout:
            logger.warning(f"⏳ No receipt for {signed.tx_hash} yet, will resolve next cycle")
            return pending
        except Exception as e:
            logger.warning(f"⏳ Receipt lookup for {signed.tx_hash} failed ({e}), will resolve next cycle")
            return pending

        return await self._finalize(pending, receipt, balances_before)

    async def _finalize(
        self,
        pending: TradeResult,
        receipt: TxReceipt,
        balances_before: Optional[WalletBalances] = None,
    ) -> TradeResult:
        gas_cost = self._native(receipt.gas_used * receipt.effective_gas_price)
        common = dict(
            block_number=receipt.block_number,
            gas_used=receipt.gas_used,
            gas_price=receipt.effective_gas_price,
            gas_cost_native=gas_cost,
            confirmed_at=self._now(),
        )

        if not receipt.succeeded:
            reason = receipt.revert_reason or "Transaction reverted"
            kind = classify_message(receipt.revert_reason).kind
            logger.error(f"❌ {pending.tx_hash} REVERTED in block {receipt.block_number}: {reason}")
            return pending.resolved(TradeStatus.REVERTED, error_kind=kind, error_message=reason, **common)

        realized = None
        if balances_before is not None:
            try:
                balances_after = await self.get_balances()
                realized = self._realized_output(pending.decision, balances_before, balances_after, gas_cost)
            except TradeError as e:
                logger.warning(f"⚠️ Could not read post-trade balances for {pending.tx_hash}: {e}")

        logger.info(
            f"✅ {pending.decision.action.value} {pending.decision.amount_in} confirmed in block "
            f"{receipt.block_number} (received {realized or 'n/a'}, gas {gas_cost})"
        )
        return pending.resolved(TradeStatus.SUCCESS, realized_amount_out=realized, **common)

    def _realized_output(self, decision: TradeDecision, before: WalletBalances,
                         after: WalletBalances, gas_cost: Amount) -> Amount:
        if decision.action is Action.BUY:
            return (after.token - before.token).clamp_non_negative()
        # Native out: add back the gas the same transaction paid
        return (after.native - before.native + gas_cost).clamp_non_negative()

    async def resolve_pending(self, result: TradeResult) -> TradeResult:
        """
        Re-poll a PENDING trade.

        Returns the terminal copy once a receipt exists, FAILED when the
        wallet nonce moved past the trade without its receipt (dropped or
        replaced), or the same PENDING result otherwise.
        """
        if result.is_terminal or result.tx_hash is None:
            return result

        receipt = await self._call(lambda: self.chain.get_receipt(result.tx_hash), "get_receipt")
        if receipt is not None:
            return await self._finalize(result, receipt)

        if result.nonce is not None:
            confirmed_nonce = await self._call(self.chain.get_confirmed_nonce, "get_confirmed_nonce")
            if confirmed_nonce > result.nonce:
                # Re-check: the trade may have been mined between the two reads
                receipt = await self._call(lambda: self.chain.get_receipt(result.tx_hash), "get_receipt")
                if receipt is not None:
                    return await self._finalize(result, receipt)
                logger.error(f"❌ {result.tx_hash} dropped: nonce {result.nonce} used by another transaction")
                return result.resolved(
                    TradeStatus.FAILED,
                    error_kind=ErrorKind.NETWORK_ERROR,
                    error_message=f"Transaction dropped (nonce {result.nonce} consumed)",
                    confirmed_at=self._now(),
                )

        logger.info(f"⏳ {result.tx_hash} still pending")
        return result

    # =========================================================================
    # ADMIN
    # =========================================================================

    async def ensure_allowance(self, amount: Optional[Amount] = None) -> Optional[str]:
        """
        Approve the router for the token when the allowance is below `amount`
        (default: the per-trade token cap). Returns the approval hash, or None
        when nothing was needed.
        """
        market = self.config.market
        required = amount or Amount.from_decimal(
            self.config.limits.max_trade_token, market.token_decimals, market.token_symbol
        )
        balances = await self.get_balances()
        if balances.token_allowance >= required:
            logger.info(f"✅ Allowance {balances.token_allowance} covers {required}")
            return None

        if self.dry_run:
            logger.info(f"  [DRY RUN] Would approve router for unlimited {market.token_symbol}")
            return None

        gas_price = await self.resolve_gas_price(UrgencyTier.LOW)
        tx_hash = await self.chain.approve(MAX_UINT256, gas_price)
        logger.info(f"📤 Approval submitted: {tx_hash}")

        receipt = await self.chain.wait_for_receipt(tx_hash, timeout=self.config.safety.receipt_timeout_seconds)
        if not receipt.succeeded:
            raise NetworkError(f"Approval {tx_hash} reverted: {receipt.revert_reason}")
        logger.info(f"✅ Router approved for {market.token_symbol} in block {receipt.block_number}")
        return tx_hash
