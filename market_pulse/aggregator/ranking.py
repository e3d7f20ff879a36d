# market_pulse/aggregator/ranking.py
import asyncio
import logging
import time

from market_pulse.aggregator.ledger import SnapshotLedger
from market_pulse.storage.models import RankingSnapshot

logger = logging.getLogger(__name__)


class RankingEngine:
    """单周期 / 多周期涨幅排行"""

    def __init__(
        self,
        ledger: SnapshotLedger,
        windows_minutes: dict[str, int],
        default_top_n: int = 10,
        granularity: str = "1m",
    ):
        self.ledger = ledger
        self.windows_minutes = dict(windows_minutes)
        self.default_top_n = default_top_n
        self.granularity = granularity

    @property
    def timeframes(self) -> list[str]:
        return list(self.windows_minutes)

    async def gainers(
        self, timeframe: str, limit: int | None = None, now: int | None = None
    ) -> RankingSnapshot:
        if timeframe not in self.windows_minutes:
            raise ValueError(f"Unsupported ranking timeframe: {timeframe}")
        return await self.ledger.gainers(
            timeframe,
            self.windows_minutes[timeframe],
            limit or self.default_top_n,
            granularity=self.granularity,
            now=now,
        )

    async def multi_timeframe_ranking(
        self,
        timeframes: list[str],
        limit: int | None = None,
        now: int | None = None,
    ) -> dict[str, RankingSnapshot]:
        """各周期并发计算，单个周期失败或为空不影响其他周期"""
        if now is None:
            now = int(time.time() * 1000)
        results = await asyncio.gather(
            *(self.gainers(tf, limit, now) for tf in timeframes),
            return_exceptions=True,
        )

        rankings: dict[str, RankingSnapshot] = {}
        for tf, result in zip(timeframes, results):
            if isinstance(result, BaseException):
                logger.warning(f"Ranking for {tf} failed: {result}")
                rankings[tf] = RankingSnapshot(timeframe=tf, generated_at=now, error=str(result))
            else:
                rankings[tf] = result
        return rankings
