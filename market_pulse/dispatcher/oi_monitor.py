# market_pulse/dispatcher/oi_monitor.py
import logging
import time
from typing import Any

from market_pulse.aggregator.ledger import SnapshotLedger
from market_pulse.alert.push_config import PushConfigStore
from market_pulse.collector.oi_fetcher import LOOKBACK_PERIODS, OpenInterestFetcher
from market_pulse.dispatcher.scheduler import PeriodicTask
from market_pulse.dispatcher.smart_push import SmartPushDispatcher
from market_pulse.storage.models import RankingEntry, RankingSnapshot

logger = logging.getLogger(__name__)


class OpenInterestMonitor:
    """
    持仓量变化榜触发

    每个回看窗口独立计时：取成交额最高的币种，按持仓量变化绝对值排出 Top-N，
    交给 dispatcher 与各 open_interest 触发配置比对。
    """

    def __init__(
        self,
        ledger: SnapshotLedger,
        fetcher: OpenInterestFetcher,
        store: PushConfigStore,
        dispatcher: SmartPushDispatcher,
        cadence_minutes: dict[str, int] | None = None,
        top_n: int = 10,
        universe_size: int = 50,
        granularity: str = "1m",
    ):
        self.ledger = ledger
        self.fetcher = fetcher
        self.store = store
        self.dispatcher = dispatcher
        self.cadence_minutes = cadence_minutes or {"1h": 3, "4h": 15, "24h": 30}
        self.top_n = top_n
        self.universe_size = universe_size
        self.granularity = granularity
        self._tasks: list[PeriodicTask] = []

    def start(self) -> None:
        if self._tasks:
            return
        for lookback, minutes in self.cadence_minutes.items():
            if lookback not in LOOKBACK_PERIODS:
                logger.warning(f"Unsupported OI lookback {lookback}, skipped")
                continue
            task = PeriodicTask(f"oi-trigger-{lookback}", minutes * 60, self._job(lookback))
            task.start()
            self._tasks.append(task)
        logger.info(f"Open interest monitor started with {len(self._tasks)} loops")

    async def stop(self) -> None:
        for task in self._tasks:
            await task.stop()
        self._tasks = []

    def _job(self, lookback: str) -> Any:
        async def job() -> None:
            await self.tick(lookback)

        return job

    async def universe(self) -> list[str]:
        """成交额最高的 universe_size 个币种"""
        latest = await self.ledger.latest_all(self.granularity)
        latest.sort(key=lambda s: s.volume_24h, reverse=True)
        return [s.symbol for s in latest[: self.universe_size]]

    async def rank(
        self, lookback: str, limit: int | None = None, now: int | None = None
    ) -> RankingSnapshot:
        if now is None:
            now = int(time.time() * 1000)
        limit = limit or self.top_n

        symbols = await self.universe()
        if not symbols:
            return RankingSnapshot(timeframe=lookback, generated_at=now, entries=[])

        changes = await self.fetcher.fetch_changes(symbols, lookback)
        changes.sort(key=lambda c: (-abs(c.percent_change), c.symbol))
        average = sum(c.percent_change for c in changes) / len(changes) if changes else 0.0

        entries = [
            RankingEntry(
                symbol=c.symbol,
                percent_change=c.percent_change,
                rank=i + 1,
                value=c.open_interest_value,
            )
            for i, c in enumerate(changes[:limit])
        ]
        return RankingSnapshot(
            timeframe=lookback,
            generated_at=now,
            entries=entries,
            average_change=average,
            qualifying=len(changes),
        )

    async def tick(self, lookback: str, now: int | None = None) -> int:
        configs = [
            c
            for c in await self.store.list_enabled("trigger")
            if c.params.kind == "trigger"
            and c.params.metric == "open_interest"
            and lookback in c.params.timeframes
        ]
        if not configs:
            logger.debug(f"No open interest trigger for {lookback}, skip fetch")
            return 0

        limit = max([self.top_n] + [c.params.top_n or 0 for c in configs])
        ranking = await self.rank(lookback, limit, now)
        return await self.dispatcher.process_trigger_ranking(configs, ranking, now)
