# market_pulse/collector/oi_fetcher.py
import asyncio
import logging
from dataclasses import dataclass
from typing import Any

import ccxt.async_support as ccxt

from market_pulse.aggregator.ledger import calculate_percent_change
from market_pulse.storage.models import OpenInterestPoint

logger = logging.getLogger(__name__)

# 回看窗口 -> (历史粒度, 点数)
LOOKBACK_PERIODS: dict[str, tuple[str, int]] = {
    "1h": ("5m", 13),
    "4h": ("15m", 17),
    "24h": ("1h", 25),
}


def to_market_symbol(symbol: str, quote: str = "USDT") -> str:
    """BTCUSDT -> BTC/USDT:USDT"""
    if "/" in symbol or not symbol.endswith(quote):
        return symbol
    return f"{symbol[: -len(quote)]}/{quote}:{quote}"


@dataclass
class OpenInterestChange:
    symbol: str
    percent_change: float
    open_interest: float
    open_interest_value: float | None


class OpenInterestFetcher:
    def __init__(self, max_concurrency: int = 8, quote_asset: str = "USDT"):
        self.max_concurrency = max_concurrency
        self.quote_asset = quote_asset
        self.binance: ccxt.binanceusdm | None = None

    async def init(self) -> None:
        self.binance = ccxt.binanceusdm()

    async def close(self) -> None:
        if self.binance:
            await self.binance.close()
            self.binance = None

    def _parse(self, symbol: str, data: dict[str, Any]) -> OpenInterestPoint | None:
        amount = data.get("openInterestAmount")
        timestamp = data.get("timestamp")
        if amount is None or timestamp is None:
            logger.warning(f"Incomplete OI data for {symbol}: amount={amount}, ts={timestamp}")
            return None
        return OpenInterestPoint(
            symbol=symbol,
            open_interest=float(amount),
            open_interest_value=data.get("openInterestValue"),
            timestamp=int(timestamp),
        )

    async def fetch_history(self, symbol: str, period: str, limit: int) -> list[OpenInterestPoint]:
        """历史持仓量，按时间升序"""
        assert self.binance is not None
        rows: list[dict[str, Any]] = await self.binance.fetch_open_interest_history(
            to_market_symbol(symbol, self.quote_asset), period, limit=limit
        )
        points = [p for p in (self._parse(symbol, r) for r in rows) if p is not None]
        return sorted(points, key=lambda p: p.timestamp)

    async def _change(
        self, symbol: str, period: str, limit: int, sem: asyncio.Semaphore
    ) -> OpenInterestChange | None:
        async with sem:
            try:
                points = await self.fetch_history(symbol, period, limit)
            except Exception as e:
                logger.warning(f"Failed to fetch OI history for {symbol}: {e}")
                return None

        if len(points) < 2 or points[0].open_interest <= 0:
            return None
        first, last = points[0], points[-1]
        return OpenInterestChange(
            symbol=symbol,
            percent_change=calculate_percent_change(first.open_interest, last.open_interest),
            open_interest=last.open_interest,
            open_interest_value=last.open_interest_value,
        )

    async def fetch_changes(self, symbols: list[str], lookback: str) -> list[OpenInterestChange]:
        """并发获取回看窗口内的持仓量变化，单个币种失败跳过"""
        period, limit = LOOKBACK_PERIODS[lookback]
        sem = asyncio.Semaphore(self.max_concurrency)
        results = await asyncio.gather(
            *(self._change(s, period, limit, sem) for s in symbols),
            return_exceptions=True,
        )
        return [r for r in results if isinstance(r, OpenInterestChange)]
