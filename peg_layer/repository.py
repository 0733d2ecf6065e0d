"""
CSV / JSON Repository

File-backed storage for a single bot instance:

- data/trades.csv         one row per saved TradeResult (a PENDING row is
                          followed by its terminal row, same id)
- data/price_samples.csv  one row per saved PriceSample
- data/bot_config.json    the current BotConfig snapshot

Every I/O failure surfaces as PersistenceError.
"""

import asyncio
import csv
import json
import logging
import os
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Dict, List, Optional

from config.bot_config import BotConfig, ConfigError
from peg_layer.amounts import Amount
from peg_layer.errors import PersistenceError
from peg_layer.interfaces import Repository
from peg_layer.models import Action, PriceSample, TradeDecision, TradeResult, TradeStatus, UrgencyTier

logger = logging.getLogger(__name__)


class CsvRepository(Repository):
    """Append-only CSV journal plus a JSON config document."""

    TRADES_FILE = "trades.csv"
    PRICES_FILE = "price_samples.csv"
    CONFIG_FILE = "bot_config.json"

    TRADE_COLUMNS = [
        "id", "status", "action", "urgency", "slippage_bps", "deviation_percent",
        "amount_in_symbol", "amount_in_raw", "amount_in_decimals",
        "amount_out_estimate", "min_amount_out", "realized_amount_out",
        "tx_hash", "nonce", "block_number", "gas_used", "gas_price", "gas_cost_native",
        "error_kind", "error_message", "initiated_at", "executed_at", "confirmed_at", "dry_run",
    ]
    PRICE_COLUMNS = [
        "observed_at", "price", "price_source", "price_usd", "price_benchmark", "price_sats",
        "native_usd", "tick", "sqrt_price_x96", "liquidity", "block_number", "is_stale",
    ]

    def __init__(self, data_dir: str = "data", count_dry_run: bool = False):
        self.data_dir = Path(data_dir)
        self.count_dry_run = count_dry_run
        self._io_lock = asyncio.Lock()
        try:
            self.data_dir.mkdir(parents=True, exist_ok=True)
            self._init_csv(self.trades_path, self.TRADE_COLUMNS)
            self._init_csv(self.prices_path, self.PRICE_COLUMNS)
        except OSError as e:
            raise PersistenceError(f"Cannot initialise data dir {self.data_dir}: {e}") from e

        logger.info(f"💾 CsvRepository at {self.data_dir.resolve()}")

    @property
    def trades_path(self) -> Path:
        return self.data_dir / self.TRADES_FILE

    @property
    def prices_path(self) -> Path:
        return self.data_dir / self.PRICES_FILE

    @property
    def config_path(self) -> Path:
        return self.data_dir / self.CONFIG_FILE

    @staticmethod
    def _init_csv(path: Path, columns: List[str]) -> None:
        """Create the CSV with headers if it doesn't exist."""
        if not path.exists():
            with open(path, "w", newline="") as f:
                csv.DictWriter(f, fieldnames=columns).writeheader()

    @staticmethod
    def _append(path: Path, columns: List[str], row: dict) -> None:
        with open(path, "a", newline="") as f:
            csv.DictWriter(f, fieldnames=columns, extrasaction="ignore").writerow(row)

    # =========================================================================
    # JOURNAL
    # =========================================================================

    async def save_trade(self, result: TradeResult) -> None:
        async with self._io_lock:
            try:
                self._append(self.trades_path, self.TRADE_COLUMNS, result.to_dict())
            except (OSError, csv.Error) as e:
                raise PersistenceError(f"Cannot write trade {result.id}: {e}") from e

    async def save_price_sample(self, sample: PriceSample) -> None:
        derived = sample.derived_prices
        benchmark = next(
            (v for k, v in derived.items() if k not in ("USD", "SATS")), None
        )
        native_rate = next(iter(sample.reference_rates.values()), None)
        row = {
            "observed_at": sample.observed_at.isoformat(),
            "price": str(sample.price),
            "price_source": sample.price_source.value,
            "price_usd": str(sample.price_usd),
            "price_benchmark": "" if benchmark is None else str(benchmark),
            "price_sats": str(derived.get("SATS", "")),
            "native_usd": "" if native_rate is None else str(native_rate.value),
            "tick": sample.pool_state.tick,
            "sqrt_price_x96": str(sample.pool_state.sqrt_price_x96),
            "liquidity": str(sample.pool_state.liquidity),
            "block_number": sample.pool_state.block_number,
            "is_stale": sample.is_stale,
        }
        async with self._io_lock:
            try:
                self._append(self.prices_path, self.PRICE_COLUMNS, row)
            except (OSError, csv.Error) as e:
                raise PersistenceError(f"Cannot write price sample: {e}") from e

    def _latest_trade_rows(self) -> Dict[str, dict]:
        """Last saved row per trade id."""
        rows: Dict[str, dict] = {}
        with open(self.trades_path, "r", newline="") as f:
            for row in csv.DictReader(f):
                rows[row["id"]] = row
        return rows

    async def _journal(self, *statuses: TradeStatus) -> List[dict]:
        """Latest rows whose status is one of `statuses`, dry runs filtered."""
        async with self._io_lock:
            try:
                rows = self._latest_trade_rows()
            except (OSError, csv.Error, KeyError) as e:
                raise PersistenceError(f"Cannot read trades: {e}") from e

        wanted = {s.value for s in statuses}
        return [
            row for row in rows.values()
            if row["status"] in wanted
            and row["amount_in_raw"]
            and (row["dry_run"] != "True" or self.count_dry_run)
        ]

    @staticmethod
    def _settled_at(row: dict) -> datetime:
        """Confirmation time, falling back to when the trade started."""
        return datetime.fromisoformat(row["confirmed_at"] or row["executed_at"] or row["initiated_at"])

    @staticmethod
    def _amount_in(row: dict) -> Amount:
        return Amount(int(row["amount_in_raw"]), int(row["amount_in_decimals"]), row["amount_in_symbol"])

    async def get_daily_volume(self, day: date) -> Dict[str, Amount]:
        """
        Inputs of SUCCESS trades settled on `day`, plus still-PENDING trades
        started that day (they may yet land).
        """
        volume: Dict[str, Amount] = {}
        for row in await self._journal(TradeStatus.SUCCESS, TradeStatus.PENDING):
            try:
                if row["status"] == TradeStatus.PENDING.value:
                    settled = datetime.fromisoformat(row["initiated_at"])
                else:
                    settled = self._settled_at(row)
                amount = self._amount_in(row)
            except (KeyError, ValueError) as e:
                logger.warning(f"💾 Skipping unreadable trade row {row.get('id')}: {e}")
                continue
            if settled.date() != day:
                continue
            current = volume.get(amount.symbol)
            volume[amount.symbol] = amount if current is None else current + amount
        return volume

    async def get_last_trade_at(self) -> Optional[datetime]:
        latest: Optional[datetime] = None
        for row in await self._journal(TradeStatus.SUCCESS):
            try:
                settled = self._settled_at(row)
            except (KeyError, ValueError) as e:
                logger.warning(f"💾 Skipping unreadable trade row {row.get('id')}: {e}")
                continue
            if latest is None or settled > latest:
                latest = settled
        return latest

    async def get_pending_trades(self) -> List[TradeResult]:
        pending = []
        for row in await self._journal(TradeStatus.PENDING):
            try:
                pending.append(self._pending_from_row(row))
            except (KeyError, ValueError) as e:
                logger.warning(f"💾 Skipping unreadable pending row {row.get('id')}: {e}")
        return sorted(pending, key=lambda t: t.initiated_at)

    def _pending_from_row(self, row: dict) -> TradeResult:
        decision = TradeDecision(
            action=Action(row["action"]),
            urgency=UrgencyTier[row["urgency"]],
            amount_in=self._amount_in(row),
            slippage_bps=int(row["slippage_bps"]),
            reason="Restored from trade journal",
            deviation_percent=Decimal(row["deviation_percent"]) if row["deviation_percent"] else None,
        )
        return TradeResult(
            decision=decision,
            status=TradeStatus.PENDING,
            id=row["id"],
            tx_hash=row["tx_hash"] or None,
            nonce=int(row["nonce"]) if row["nonce"] else None,
            gas_price=int(row["gas_price"] or 0),
            initiated_at=datetime.fromisoformat(row["initiated_at"]),
            executed_at=datetime.fromisoformat(row["executed_at"]) if row["executed_at"] else None,
            dry_run=row["dry_run"] == "True",
        )

    # =========================================================================
    # CONFIG
    # =========================================================================

    async def load_config(self) -> BotConfig:
        async with self._io_lock:
            return self._read_config()

    def _read_config(self) -> BotConfig:
        if not self.config_path.exists():
            return BotConfig()
        try:
            with open(self.config_path, "r") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            raise PersistenceError(f"Cannot read {self.config_path}: {e}") from e
        if not isinstance(data, dict):
            raise PersistenceError(f"{self.config_path} does not hold a JSON object")
        try:
            return BotConfig.from_dict(data)
        except ConfigError as e:
            raise PersistenceError(f"Stored config {self.config_path} is invalid: {e}") from e

    async def update_config(self, partial: dict) -> BotConfig:
        async with self._io_lock:
            new_config = self._read_config().updated(**partial)
            tmp_path = self.config_path.with_suffix(".json.tmp")
            try:
                with open(tmp_path, "w") as f:
                    json.dump(new_config.to_dict(), f, indent=2)
                os.replace(tmp_path, self.config_path)
            except OSError as e:
                raise PersistenceError(f"Cannot write {self.config_path}: {e}") from e
        return new_config
