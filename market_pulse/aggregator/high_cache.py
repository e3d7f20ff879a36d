# market_pulse/aggregator/high_cache.py
import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import TYPE_CHECKING

from market_pulse.dispatcher.scheduler import PeriodicTask
from market_pulse.locks import KeyedLock
from market_pulse.storage.database import Database
from market_pulse.storage.models import TIMEFRAME_WINDOW_MS, TIMEFRAMES, HistoricalHigh

if TYPE_CHECKING:
    from market_pulse.aggregator.ledger import SnapshotLedger
    from market_pulse.client.binance import BinanceClient

logger = logging.getLogger(__name__)


class SlidingWindowMax:
    """单调递减队列维护的滑动窗口最大值"""

    def __init__(self, window_ms: int):
        self.window_ms = window_ms
        self.candidates: deque[tuple[int, float]] = deque()

    def evict(self, now: int) -> None:
        cutoff = now - self.window_ms
        while self.candidates and self.candidates[0][0] < cutoff:
            self.candidates.popleft()

    def push(self, timestamp: int, price: float) -> None:
        # 队尾被新价格支配的候选永远不会再成为最大值
        while self.candidates and self.candidates[-1][1] <= price:
            self.candidates.pop()
        self.candidates.append((timestamp, price))

    def peek(self) -> tuple[int, float] | None:
        return self.candidates[0] if self.candidates else None

    def peek_at(self, now: int) -> tuple[int, float] | None:
        """只读查询：跳过已过期的队首，不修改队列"""
        cutoff = now - self.window_ms
        for candidate in self.candidates:
            if candidate[0] >= cutoff:
                return candidate
        return None

    def __len__(self) -> int:
        return len(self.candidates)


@dataclass
class ProximityEntry:
    symbol: str
    current_price: float
    high_price: float
    high_timestamp: int
    needed_gain_percent: float  # 回到高点还需上涨的百分比


class HistoricalHighCache:
    """多周期历史高点缓存"""

    def __init__(
        self,
        db: Database,
        ledger: "SnapshotLedger | None" = None,
        client: "BinanceClient | None" = None,
        timeframes: list[str] | tuple[str, ...] = TIMEFRAMES,
        granularity: str = "1m",
        backfill: bool = True,
        backfill_concurrency: int = 8,
        flush_seconds: int = 60,
        symbols: list[str] | None = None,
    ):
        unknown = [tf for tf in timeframes if tf not in TIMEFRAME_WINDOW_MS]
        if unknown:
            raise ValueError(f"Unknown timeframes: {unknown}")
        self.db = db
        self.ledger = ledger
        self.client = client
        self.timeframes = [tf for tf in TIMEFRAMES if tf in timeframes]
        self.granularity = granularity
        self.backfill = backfill
        self.backfill_concurrency = backfill_concurrency
        self.symbols = symbols
        self.is_initialized = False

        self._locks = KeyedLock()
        self._windows: dict[tuple[str, str], SlidingWindowMax] = {}
        self._all_time: dict[str, tuple[float, int]] = {}  # symbol -> (high, timestamp)
        self._last_updated: dict[str, int] = {}
        self._last_price: dict[str, float] = {}
        self._dirty: set[tuple[str, str]] = set()

        self._flush_task = PeriodicTask("high-cache-flush", flush_seconds, self.flush)
        self._rebuild_task: asyncio.Task[None] | None = None

    @property
    def _max_window_ms(self) -> int:
        windows = [TIMEFRAME_WINDOW_MS[tf] for tf in self.timeframes]
        return max((w for w in windows if w is not None), default=0)

    # ---- lifecycle ----

    def start(self) -> None:
        self._flush_task.start()

    def rebuild_in_background(self) -> asyncio.Task[None]:
        if self._rebuild_task is None or self._rebuild_task.done():
            self._rebuild_task = asyncio.create_task(self.initialize(), name="high-cache-rebuild")
        return self._rebuild_task

    async def stop(self) -> None:
        await self._flush_task.stop()
        if self._rebuild_task and not self._rebuild_task.done():
            self._rebuild_task.cancel()
            try:
                await self._rebuild_task
            except asyncio.CancelledError:
                pass
        self._rebuild_task = None
        await self.flush()

    # ---- rebuild ----

    async def initialize(self) -> None:
        """
        全量重建：持久化的 all_time 高点 + 账本保留历史 + K 线回填

        可重复执行，每个币种在自身锁内整体替换。
        """
        now = int(time.time() * 1000)
        started = time.time()

        persisted = {
            h.symbol: (h.high_value, h.high_timestamp)
            for h in await self.db.get_historical_highs("all_time")
        }
        symbols: set[str] = set(persisted)
        if self.ledger is not None:
            symbols |= set(await self.ledger.symbols())
        if self.client is not None and self.backfill:
            try:
                symbols |= set(await self.client.get_tradable_symbols())
            except Exception as e:
                logger.warning(f"Failed to list tradable symbols for backfill: {e}")
        if self.symbols:
            symbols &= set(self.symbols)

        semaphore = asyncio.Semaphore(self.backfill_concurrency)

        async def rebuild_symbol(symbol: str) -> None:
            async with semaphore:
                async with self._locks.hold(symbol):
                    points, all_time, last_price = await self._collect_points(
                        symbol, persisted.get(symbol), now
                    )
                    self._replay(symbol, points, all_time, last_price, now)

        ordered = sorted(symbols)
        results = await asyncio.gather(
            *(rebuild_symbol(s) for s in ordered), return_exceptions=True
        )
        failed = [s for s, r in zip(ordered, results) if isinstance(r, Exception)]
        for symbol, result in zip(ordered, results):
            if isinstance(result, Exception):
                logger.warning(f"Failed to rebuild highs for {symbol}: {result}")

        self.is_initialized = True
        self._dirty = {(s, tf) for s in self._tracked_symbols() for tf in self.timeframes}
        await self.flush()
        logger.info(
            f"Historical high cache rebuilt: {len(ordered) - len(failed)}/{len(ordered)} symbols, "
            f"{self.stats()['cache_size']} entries in {time.time() - started:.1f}s"
        )

    async def _collect_points(
        self,
        symbol: str,
        persisted: tuple[float, int] | None,
        now: int,
    ) -> tuple[list[tuple[int, float]], tuple[float, int] | None, float | None]:
        points: list[tuple[int, float]] = []
        all_time = persisted
        last_price = None
        since = now - self._max_window_ms

        if self.ledger is not None:
            for snap in await self.ledger.history(symbol, self.granularity, since):
                points.append((snap.captured_at, snap.price))
                last_price = snap.price

        if self.client is not None and self.backfill:
            try:
                hourly = await self.client.get_klines(symbol, "1h", limit=168)
                # K 线高点可能出现在开盘后任意时刻，按开盘时间计入窗口
                points.extend((k.open_time, k.high) for k in hourly)
                if all_time is None and "all_time" in self.timeframes:
                    daily = await self.client.get_klines(symbol, "1d", limit=1500)
                    for k in daily:
                        if all_time is None or k.high > all_time[0]:
                            all_time = (k.high, k.open_time)
            except Exception as e:
                # 回填失败不影响账本历史，下一次重建再补
                logger.warning(f"Kline backfill failed for {symbol}: {e}")

        points.sort(key=lambda p: p[0])
        return points, all_time, last_price

    def _replay(
        self,
        symbol: str,
        points: list[tuple[int, float]],
        all_time: tuple[float, int] | None,
        last_price: float | None,
        now: int,
    ) -> None:
        for tf in self.timeframes:
            window = TIMEFRAME_WINDOW_MS[tf]
            if window is None:
                continue
            w = SlidingWindowMax(window)
            for ts, price in points:
                w.evict(ts)
                w.push(ts, price)
            w.evict(now)
            self._windows[(symbol, tf)] = w

        for ts, price in points:
            if all_time is None or price > all_time[0]:
                all_time = (price, ts)
        if all_time is not None and "all_time" in self.timeframes:
            self._all_time[symbol] = all_time

        # K 线高点不是成交价，最新价只取自账本
        if last_price is not None:
            self._last_price[symbol] = last_price
        self._last_updated[symbol] = now

    # ---- live updates ----

    async def update(
        self, symbol: str, price: float, now: int | None = None
    ) -> dict[str, HistoricalHigh | None]:
        """
        将新价格并入各周期窗口

        Returns:
            {周期: 并入前的高点}，无高点时为 None
        """
        if now is None:
            now = int(time.time() * 1000)
        async with self._locks.hold(symbol):
            return self._apply(symbol, price, now)

    def _apply(self, symbol: str, price: float, now: int) -> dict[str, HistoricalHigh | None]:
        # 时间戳不回退，保证队列内时间有序
        now = max(now, self._last_updated.get(symbol, now))
        previous: dict[str, HistoricalHigh | None] = {}

        for tf in self.timeframes:
            window = TIMEFRAME_WINDOW_MS[tf]
            if window is None:
                current = self._all_time.get(symbol)
                previous[tf] = (
                    HistoricalHigh(symbol, tf, current[0], current[1], now) if current else None
                )
                if current is None or price > current[0]:
                    self._all_time[symbol] = (price, now)
                    self._dirty.add((symbol, tf))
                continue

            w = self._windows.get((symbol, tf))
            if w is None:
                w = SlidingWindowMax(window)
                self._windows[(symbol, tf)] = w
            w.evict(now)
            top = w.peek()
            previous[tf] = HistoricalHigh(symbol, tf, top[1], top[0], now) if top else None
            w.push(now, price)
            self._dirty.add((symbol, tf))

        self._last_price[symbol] = price
        self._last_updated[symbol] = now
        return previous

    def seed(
        self,
        symbol: str,
        timeframe: str,
        value: float,
        now: int | None = None,
    ) -> None:
        """直接设置某周期高点（回填 / 测试用）"""
        if timeframe not in self.timeframes:
            raise ValueError(f"Unknown timeframe: {timeframe}")
        if now is None:
            now = int(time.time() * 1000)
        window = TIMEFRAME_WINDOW_MS[timeframe]
        if window is None:
            self._all_time[symbol] = (value, now)
        else:
            w = SlidingWindowMax(window)
            w.push(now, value)
            self._windows[(symbol, timeframe)] = w
        self._last_updated[symbol] = max(now, self._last_updated.get(symbol, now))
        self._dirty.add((symbol, timeframe))

    # ---- queries ----

    def query(self, symbol: str, timeframe: str, now: int | None = None) -> HistoricalHigh | None:
        if now is None:
            now = int(time.time() * 1000)
        window = TIMEFRAME_WINDOW_MS.get(timeframe)
        if timeframe == "all_time":
            current = self._all_time.get(symbol)
            if current is None:
                return None
            return HistoricalHigh(symbol, timeframe, current[0], current[1], now)
        if window is None:
            return None

        w = self._windows.get((symbol, timeframe))
        if w is None:
            return None
        # 查询时钟可能领先于下一次 update，因此不能出队
        top = w.peek_at(now)
        if top is None:
            return None
        return HistoricalHigh(symbol, timeframe, top[1], top[0], now)

    def last_price(self, symbol: str) -> float | None:
        return self._last_price.get(symbol)

    def ranking_by_proximity(
        self, timeframe: str, limit: int = 20, now: int | None = None
    ) -> list[ProximityEntry]:
        """按距离高点的远近排序（需涨幅越小越靠前）"""
        results: list[ProximityEntry] = []
        for symbol, price in self._last_price.items():
            high = self.query(symbol, timeframe, now)
            if high is None or price <= 0:
                continue
            needed = 0.0 if price >= high.high_value else (high.high_value - price) / price * 100
            results.append(
                ProximityEntry(
                    symbol=symbol,
                    current_price=price,
                    high_price=high.high_value,
                    high_timestamp=high.high_timestamp,
                    needed_gain_percent=needed,
                )
            )
        results.sort(key=lambda r: (r.needed_gain_percent, r.symbol))
        return results[:limit]

    def _tracked_symbols(self) -> set[str]:
        symbols = set(self._all_time)
        symbols.update(symbol for symbol, _ in self._windows)
        return symbols

    def stats(self) -> dict[str, object]:
        now = int(time.time() * 1000)
        size = 0
        symbols: set[str] = set()
        for symbol in self._tracked_symbols():
            for tf in self.timeframes:
                if self.query(symbol, tf, now) is not None:
                    size += 1
                    symbols.add(symbol)
        return {
            "is_initialized": self.is_initialized,
            "cache_size": size,
            "symbol_count": len(symbols),
            "timeframes": list(self.timeframes),
        }

    async def flush(self) -> int:
        """持久化变更过的高点"""
        if not self._dirty:
            return 0
        now = int(time.time() * 1000)
        dirty, self._dirty = self._dirty, set()
        highs = []
        for symbol, tf in dirty:
            high = self.query(symbol, tf, now)
            if high is not None:
                highs.append(high)
        try:
            await self.db.upsert_historical_highs(highs)
        except Exception:
            self._dirty |= dirty
            raise
        return len(highs)
