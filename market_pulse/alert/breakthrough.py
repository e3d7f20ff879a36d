# market_pulse/alert/breakthrough.py
import logging
import time

from market_pulse.aggregator.high_cache import HistoricalHighCache
from market_pulse.storage.models import TIMEFRAMES, BreakthroughEvent

logger = logging.getLogger(__name__)


def calculate_break_percent(old_high: float, new_high: float) -> float:
    if old_high == 0:
        return 0.0
    return (new_high - old_high) / old_high * 100


class BreakthroughDetector:
    """历史高点突破检测"""

    def __init__(self, cache: HistoricalHighCache, min_break_percent: float = 0.0):
        self.cache = cache
        self.min_break_percent = min_break_percent
        self.total_events = 0
        self.events_by_timeframe: dict[str, int] = {tf: 0 for tf in TIMEFRAMES}

    async def check(
        self, symbol: str, current_price: float, now: int | None = None
    ) -> list[BreakthroughEvent]:
        """
        检测当前价格突破了哪些周期的高点

        由长到短评估，长周期突破不抑制短周期事件；缓存在同一锁内推进，
        同一价格重复检测不会再次触发。
        """
        if now is None:
            now = int(time.time() * 1000)
        previous = await self.cache.update(symbol, current_price, now)

        events: list[BreakthroughEvent] = []
        for tf in TIMEFRAMES:
            old = previous.get(tf)
            if old is None or current_price <= old.high_value:
                continue
            pct = calculate_break_percent(old.high_value, current_price)
            if pct < self.min_break_percent:
                continue
            events.append(
                BreakthroughEvent(
                    symbol=symbol,
                    timeframe=tf,
                    old_high=old.high_value,
                    new_high=current_price,
                    break_percent=pct,
                    detected_at=now,
                )
            )

        for event in events:
            self.total_events += 1
            self.events_by_timeframe[event.timeframe] += 1
        if events:
            logger.info(
                f"Breakthrough {symbol} @ {current_price}: "
                + ", ".join(f"{e.timeframe}+{e.break_percent:.2f}%" for e in events)
            )
        return events

    async def check_many(
        self, prices: dict[str, float], now: int | None = None
    ) -> list[BreakthroughEvent]:
        events: list[BreakthroughEvent] = []
        for symbol, price in prices.items():
            events.extend(await self.check(symbol, price, now))
        events.sort(key=lambda e: -e.break_percent)
        return events

    def stats(self) -> dict[str, object]:
        return {
            "total": self.total_events,
            "by_timeframe": dict(self.events_by_timeframe),
        }
