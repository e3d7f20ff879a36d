# market_pulse/collector/snapshot_collector.py
import logging
import math
import time

from market_pulse.aggregator.ledger import SnapshotLedger, calculate_percent_change
from market_pulse.client.binance import BinanceClient
from market_pulse.client.models import Ticker24h
from market_pulse.storage.models import PriceSnapshot

logger = logging.getLogger(__name__)

HOUR_MS = 3600 * 1000


class SnapshotCollector:
    """把全市场 24h 行情转换成一批价格快照"""

    def __init__(
        self,
        client: BinanceClient,
        ledger: SnapshotLedger,
        granularity: str = "1m",
        symbols: list[str] | None = None,
        quote_asset: str = "USDT",
    ):
        self.client = client
        self.ledger = ledger
        self.granularity = granularity
        self.symbols = set(symbols) if symbols else None
        self.quote_asset = quote_asset

    def _wanted(self, ticker: Ticker24h) -> bool:
        if self.symbols is not None:
            return ticker.symbol in self.symbols
        return ticker.symbol.endswith(self.quote_asset)

    async def collect(self, now: int | None = None) -> list[PriceSnapshot]:
        if now is None:
            now = int(time.time() * 1000)
        tickers = await self.client.get_tickers_24h()

        batch = []
        for ticker in tickers:
            if not self._wanted(ticker):
                continue
            values = (
                ticker.last_price,
                ticker.quote_volume,
                ticker.price_change_percent,
                ticker.high_price,
            )
            if ticker.last_price <= 0 or not all(math.isfinite(v) for v in values):
                logger.warning(f"Skip ticker {ticker.symbol}: price={ticker.last_price}")
                continue

            change_1h = 0.0
            reference = await self.ledger.price_at(ticker.symbol, self.granularity, now - HOUR_MS)
            if reference is not None:
                change_1h = calculate_percent_change(reference.price, ticker.last_price)

            batch.append(
                PriceSnapshot(
                    id=None,
                    symbol=ticker.symbol,
                    price=ticker.last_price,
                    volume_24h=ticker.quote_volume,
                    price_change_1h=change_1h,
                    price_change_24h=ticker.price_change_percent,
                    high_24h=ticker.high_price,
                    granularity=self.granularity,
                    captured_at=now,
                )
            )

        logger.debug(f"Collected {len(batch)} snapshots from {len(tickers)} tickers")
        return batch
