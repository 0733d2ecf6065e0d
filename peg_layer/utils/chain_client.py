"""
Web3 Chain Client
V3 pool reads, quoter, SmartRouter swaps and receipts over JSON-RPC
"""
import asyncio
from datetime import datetime, timezone
from typing import Dict, List, Optional

import structlog
from eth_account import Account
from web3 import AsyncHTTPProvider, AsyncWeb3, Web3
from web3.exceptions import ContractLogicError, TimeExhausted, TransactionNotFound, Web3RPCError

from peg_layer.amounts import Amount
from peg_layer.errors import (
    BroadcastUncertain,
    GasEstimationFailed,
    NetworkError,
    ReceiptTimeout,
    classify_message,
)
from peg_layer.interfaces import (
    ChainClient,
    PoolState,
    SignedTransaction,
    SwapRequest,
    TxReceipt,
    WalletBalances,
)

log = structlog.get_logger()

# SmartRouter recipient placeholder: keep output in the router (for unwrap)
ADDRESS_THIS = "0x0000000000000000000000000000000000000002"
NATIVE_DECIMALS = 18


# Contract ABIs (minimal for our use case)
POOL_ABI = [
    {
        "inputs": [],
        "name": "slot0",
        "outputs": [
            {"name": "sqrtPriceX96", "type": "uint160"},
            {"name": "tick", "type": "int24"},
            {"name": "observationIndex", "type": "uint16"},
            {"name": "observationCardinality", "type": "uint16"},
            {"name": "observationCardinalityNext", "type": "uint16"},
            {"name": "feeProtocol", "type": "uint32"},
            {"name": "unlocked", "type": "bool"},
        ],
        "stateMutability": "view",
        "type": "function",
    },
    {"inputs": [], "name": "liquidity", "outputs": [{"name": "", "type": "uint128"}],
     "stateMutability": "view", "type": "function"},
    {"inputs": [], "name": "token0", "outputs": [{"name": "", "type": "address"}],
     "stateMutability": "view", "type": "function"},
    {"inputs": [], "name": "token1", "outputs": [{"name": "", "type": "address"}],
     "stateMutability": "view", "type": "function"},
    {"inputs": [], "name": "fee", "outputs": [{"name": "", "type": "uint24"}],
     "stateMutability": "view", "type": "function"},
    {
        "inputs": [{"name": "secondsAgos", "type": "uint32[]"}],
        "name": "observe",
        "outputs": [
            {"name": "tickCumulatives", "type": "int56[]"},
            {"name": "secondsPerLiquidityCumulativeX128s", "type": "uint160[]"},
        ],
        "stateMutability": "view",
        "type": "function",
    },
]

ERC20_ABI = [
    {"inputs": [], "name": "decimals", "outputs": [{"name": "", "type": "uint8"}],
     "stateMutability": "view", "type": "function"},
    {"inputs": [{"name": "account", "type": "address"}], "name": "balanceOf",
     "outputs": [{"name": "", "type": "uint256"}], "stateMutability": "view", "type": "function"},
    {"inputs": [{"name": "owner", "type": "address"}, {"name": "spender", "type": "address"}],
     "name": "allowance", "outputs": [{"name": "", "type": "uint256"}],
     "stateMutability": "view", "type": "function"},
    {"inputs": [{"name": "spender", "type": "address"}, {"name": "amount", "type": "uint256"}],
     "name": "approve", "outputs": [{"name": "", "type": "bool"}],
     "stateMutability": "nonpayable", "type": "function"},
]

QUOTER_ABI = [
    {
        "inputs": [{
            "components": [
                {"name": "tokenIn", "type": "address"},
                {"name": "tokenOut", "type": "address"},
                {"name": "amountIn", "type": "uint256"},
                {"name": "fee", "type": "uint24"},
                {"name": "sqrtPriceLimitX96", "type": "uint160"},
            ],
            "name": "params",
            "type": "tuple",
        }],
        "name": "quoteExactInputSingle",
        "outputs": [
            {"name": "amountOut", "type": "uint256"},
            {"name": "sqrtPriceX96After", "type": "uint160"},
            {"name": "initializedTicksCrossed", "type": "uint32"},
            {"name": "gasEstimate", "type": "uint256"},
        ],
        "stateMutability": "nonpayable",
        "type": "function",
    },
]

ROUTER_ABI = [
    {
        "inputs": [{
            "components": [
                {"name": "tokenIn", "type": "address"},
                {"name": "tokenOut", "type": "address"},
                {"name": "fee", "type": "uint24"},
                {"name": "recipient", "type": "address"},
                {"name": "amountIn", "type": "uint256"},
                {"name": "amountOutMinimum", "type": "uint256"},
                {"name": "sqrtPriceLimitX96", "type": "uint160"},
            ],
            "name": "params",
            "type": "tuple",
        }],
        "name": "exactInputSingle",
        "outputs": [{"name": "amountOut", "type": "uint256"}],
        "stateMutability": "payable",
        "type": "function",
    },
    {
        "inputs": [
            {"name": "deadline", "type": "uint256"},
            {"name": "data", "type": "bytes[]"},
        ],
        "name": "multicall",
        "outputs": [{"name": "", "type": "bytes[]"}],
        "stateMutability": "payable",
        "type": "function",
    },
    {"inputs": [], "name": "refundETH", "outputs": [], "stateMutability": "payable", "type": "function"},
    {
        "inputs": [
            {"name": "amountMinimum", "type": "uint256"},
            {"name": "recipient", "type": "address"},
        ],
        "name": "unwrapWETH9",
        "outputs": [],
        "stateMutability": "payable",
        "type": "function",
    },
]


class Web3ChainClient(ChainClient):
    """
    ChainClient over web3's async HTTP provider.

    Without a private key the client is read-only: signing and approvals
    raise, everything else works (dry runs, status).
    """

    def __init__(
        self,
        rpc_url: str,
        pool_address: str,
        token_address: str,
        wrapped_native_address: str,
        router_address: str,
        quoter_address: str,
        wallet_address: str = "",
        private_key: Optional[str] = None,
        chain_id: Optional[int] = None,
        expedited_rpc_url: Optional[str] = None,
        token_symbol: str = "MWT",
        native_symbol: str = "BNB",
        request_timeout: float = 15.0,
    ):
        self.w3 = AsyncWeb3(AsyncHTTPProvider(rpc_url, request_kwargs={"timeout": request_timeout}))
        self._expedited_w3 = (
            AsyncWeb3(AsyncHTTPProvider(expedited_rpc_url, request_kwargs={"timeout": request_timeout}))
            if expedited_rpc_url else None
        )

        self._account = Account.from_key(private_key) if private_key else None
        if self._account and wallet_address and \
                Web3.to_checksum_address(wallet_address) != self._account.address:
            raise ValueError("Wallet address does not match the private key")
        wallet = self._account.address if self._account else wallet_address
        if not wallet:
            raise ValueError("Either a wallet address or a private key is required")

        self.wallet_address = Web3.to_checksum_address(wallet)
        self.pool_address = Web3.to_checksum_address(pool_address)
        self.token_address = Web3.to_checksum_address(token_address)
        self.wrapped_native_address = Web3.to_checksum_address(wrapped_native_address)
        self.router_address = Web3.to_checksum_address(router_address)
        self.quoter_address = Web3.to_checksum_address(quoter_address)
        self.token_symbol = token_symbol
        self.native_symbol = native_symbol
        self._chain_id = chain_id

        self.pool = self.w3.eth.contract(address=self.pool_address, abi=POOL_ABI)
        self.token = self.w3.eth.contract(address=self.token_address, abi=ERC20_ABI)
        self.router = self.w3.eth.contract(address=self.router_address, abi=ROUTER_ABI)
        self.quoter = self.w3.eth.contract(address=self.quoter_address, abi=QUOTER_ABI)

        self._decimals: Dict[str, int] = {}
        self._pool_static: Optional[Dict] = None

        log.info(
            "chain_client_initialized",
            wallet=self.wallet_address,
            pool=self.pool_address,
            read_only=self._account is None,
            expedited=self._expedited_w3 is not None,
        )

    @classmethod
    def from_settings(cls, settings, market) -> "Web3ChainClient":
        return cls(
            rpc_url=settings.rpc_url,
            pool_address=settings.pool_address,
            token_address=settings.token_address,
            wrapped_native_address=settings.wrapped_native_address,
            router_address=settings.router_address,
            quoter_address=settings.quoter_address,
            wallet_address=settings.wallet_address,
            private_key=settings.private_key or None,
            chain_id=settings.chain_id,
            expedited_rpc_url=settings.expedited_rpc_url or None,
            token_symbol=market.token_symbol,
            native_symbol=market.native_symbol,
        )

    # =========================================================================
    # POOL
    # =========================================================================

    async def _decimals_of(self, address: str) -> int:
        if address not in self._decimals:
            erc20 = self.w3.eth.contract(address=address, abi=ERC20_ABI)
            self._decimals[address] = await erc20.functions.decimals().call()
        return self._decimals[address]

    async def _static_pool_info(self) -> Dict:
        """token0/token1/fee/decimals never change for a deployed pool."""
        if self._pool_static is None:
            token0 = await self.pool.functions.token0().call()
            token1 = await self.pool.functions.token1().call()
            fee = await self.pool.functions.fee().call()
            self._pool_static = {
                "token0": token0,
                "token1": token1,
                "fee": fee,
                "decimals0": await self._decimals_of(token0),
                "decimals1": await self._decimals_of(token1),
            }
            log.info("pool_loaded", **{k: str(v) for k, v in self._pool_static.items()})
        return self._pool_static

    async def get_pool_state(self) -> PoolState:
        info = await self._static_pool_info()
        block = await self.w3.eth.get_block("latest")
        number = block["number"]
        slot0 = await self.pool.functions.slot0().call(block_identifier=number)
        liquidity = await self.pool.functions.liquidity().call(block_identifier=number)
        return PoolState(
            sqrt_price_x96=slot0[0],
            tick=slot0[1],
            liquidity=liquidity,
            token0=info["token0"],
            token1=info["token1"],
            decimals0=info["decimals0"],
            decimals1=info["decimals1"],
            fee=info["fee"],
            block_number=number,
            block_timestamp=datetime.fromtimestamp(block["timestamp"], tz=timezone.utc),
        )

    async def get_twap_tick(self, window_seconds: int) -> int:
        tick_cumulatives, _ = await self.pool.functions.observe([window_seconds, 0]).call()
        delta = tick_cumulatives[1] - tick_cumulatives[0]
        # Floor division rounds toward negative infinity, like the pool's OracleLibrary
        return delta // window_seconds

    # =========================================================================
    # WALLET
    # =========================================================================

    async def get_balances(self) -> WalletBalances:
        native = await self.w3.eth.get_balance(self.wallet_address)
        token = await self.token.functions.balanceOf(self.wallet_address).call()
        allowance = await self.token.functions.allowance(self.wallet_address, self.router_address).call()
        decimals = await self._decimals_of(self.token_address)
        return WalletBalances(
            native=Amount(native, NATIVE_DECIMALS, self.native_symbol),
            token=Amount(token, decimals, self.token_symbol),
            token_allowance=Amount(min(allowance, 2 ** 255), decimals, self.token_symbol),
        )

    async def get_gas_price(self) -> int:
        return await self.w3.eth.gas_price

    async def get_confirmed_nonce(self) -> int:
        return await self.w3.eth.get_transaction_count(self.wallet_address, "latest")

    async def _get_chain_id(self) -> int:
        if self._chain_id is None:
            self._chain_id = await self.w3.eth.chain_id
        return self._chain_id

    # =========================================================================
    # SWAPS
    # =========================================================================

    async def quote_exact_input(self, token_in: str, token_out: str, fee: int, amount_in: int) -> int:
        params = (token_in, token_out, amount_in, fee, 0)
        result = await self.quoter.functions.quoteExactInputSingle(params).call()
        return result[0]

    def _multicall_args(self, request: SwapRequest):
        recipient = ADDRESS_THIS if request.native_out else self.wallet_address
        swap_params = (
            request.token_in,
            request.token_out,
            request.fee,
            recipient,
            request.amount_in,
            request.amount_out_minimum,
            0,
        )
        calls: List[bytes] = [self.router.encode_abi("exactInputSingle", args=[swap_params])]
        if request.native_out:
            calls.append(self.router.encode_abi(
                "unwrapWETH9", args=[request.amount_out_minimum, self.wallet_address]
            ))
        if request.native_in:
            calls.append(self.router.encode_abi("refundETH", args=[]))
        value = request.amount_in if request.native_in else 0
        return self.router.functions.multicall(request.deadline, calls), value

    async def estimate_swap_gas(self, request: SwapRequest) -> int:
        fn, value = self._multicall_args(request)
        try:
            return await fn.estimate_gas({"from": self.wallet_address, "value": value})
        except ContractLogicError as e:
            message = str(e)
            error_cls = classify_message(message)
            if error_cls is NetworkError:
                raise GasEstimationFailed(f"cannot estimate gas: {message}") from e
            raise error_cls(message) from e

    def _require_account(self):
        if self._account is None:
            raise RuntimeError("Chain client is read-only (no private key configured)")
        return self._account

    async def sign_swap(self, request: SwapRequest, gas_price: int, gas_limit: int) -> SignedTransaction:
        account = self._require_account()
        fn, value = self._multicall_args(request)
        nonce = await self.w3.eth.get_transaction_count(self.wallet_address, "pending")
        tx = await fn.build_transaction({
            "from": self.wallet_address,
            "value": value,
            "gas": gas_limit,
            "gasPrice": gas_price,
            "nonce": nonce,
            "chainId": await self._get_chain_id(),
        })
        signed = account.sign_transaction(tx)
        return SignedTransaction(
            tx_hash=Web3.to_hex(signed.hash),
            raw=bytes(signed.raw_transaction),
            nonce=nonce,
        )

    async def send_swap(self, signed: SignedTransaction, expedited: bool = False) -> str:
        w3 = self._expedited_w3 if expedited and self._expedited_w3 else self.w3
        try:
            tx_hash = await w3.eth.send_raw_transaction(signed.raw)
        except (Web3RPCError, ValueError):
            # The node answered and refused the transaction
            raise
        except (OSError, asyncio.TimeoutError) as e:
            log.warning("broadcast_uncertain", tx_hash=signed.tx_hash, error=str(e))
            raise BroadcastUncertain(f"Broadcast of {signed.tx_hash} interrupted: {e}") from e
        log.info("tx_broadcast", tx_hash=signed.tx_hash, nonce=signed.nonce, expedited=expedited)
        return Web3.to_hex(tx_hash)

    # =========================================================================
    # RECEIPTS
    # =========================================================================

    async def _revert_reason(self, tx_hash: str, block_number: int) -> Optional[str]:
        """Replay a reverted transaction to recover its reason string."""
        try:
            tx = await self.w3.eth.get_transaction(tx_hash)
            await self.w3.eth.call(
                {
                    "from": tx["from"],
                    "to": tx["to"],
                    "data": tx["input"],
                    "value": tx["value"],
                    "gas": tx["gas"],
                },
                block_identifier=block_number - 1,
            )
        except ContractLogicError as e:
            return str(e)
        except Exception as e:
            log.warning("revert_reason_unavailable", tx_hash=tx_hash, error=str(e))
        return None

    async def _to_receipt(self, tx_hash: str, raw) -> TxReceipt:
        status = raw["status"]
        reason = None
        if status != 1:
            reason = await self._revert_reason(tx_hash, raw["blockNumber"])
        return TxReceipt(
            tx_hash=tx_hash,
            status=status,
            block_number=raw["blockNumber"],
            gas_used=raw["gasUsed"],
            effective_gas_price=raw.get("effectiveGasPrice", 0),
            revert_reason=reason,
        )

    async def get_receipt(self, tx_hash: str) -> Optional[TxReceipt]:
        try:
            raw = await self.w3.eth.get_transaction_receipt(tx_hash)
        except TransactionNotFound:
            return None
        return await self._to_receipt(tx_hash, raw)

    async def wait_for_receipt(self, tx_hash: str, timeout: float) -> TxReceipt:
        try:
            raw = await self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=timeout, poll_latency=1.0)
        except TimeExhausted as e:
            raise ReceiptTimeout(f"No receipt for {tx_hash} after {timeout}s") from e
        return await self._to_receipt(tx_hash, raw)

    # =========================================================================
    # APPROVALS
    # =========================================================================

    async def approve(self, amount: int, gas_price: int) -> str:
        account = self._require_account()
        fn = self.token.functions.approve(self.router_address, amount)
        gas = await fn.estimate_gas({"from": self.wallet_address})
        tx = await fn.build_transaction({
            "from": self.wallet_address,
            "gas": gas * 120 // 100,
            "gasPrice": gas_price,
            "nonce": await self.w3.eth.get_transaction_count(self.wallet_address, "pending"),
            "chainId": await self._get_chain_id(),
        })
        signed = account.sign_transaction(tx)
        tx_hash = await self.w3.eth.send_raw_transaction(signed.raw_transaction)
        log.info("approval_broadcast", tx_hash=Web3.to_hex(tx_hash), spender=self.router_address)
        return Web3.to_hex(tx_hash)
