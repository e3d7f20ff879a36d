# market_pulse/dispatcher/funding_monitor.py
import logging
import time

from market_pulse.alert.push_config import FUNDING_TIMEFRAME, PushConfigStore
from market_pulse.client.binance import BinanceClient
from market_pulse.dispatcher.scheduler import PeriodicTask
from market_pulse.dispatcher.smart_push import SmartPushDispatcher
from market_pulse.storage.models import RankingEntry, RankingSnapshot

logger = logging.getLogger(__name__)


class FundingRateMonitor:
    """
    负资金费率榜触发

    按 8h 资金费率从低到高取负费率 Top-N，交给 dispatcher 与各 funding 触发配置比对。
    """

    def __init__(
        self,
        client: BinanceClient,
        store: PushConfigStore,
        dispatcher: SmartPushDispatcher,
        cadence_minutes: int = 10,
        top_n: int = 10,
        symbols: list[str] | None = None,
        quote_asset: str = "USDT",
    ):
        self.client = client
        self.store = store
        self.dispatcher = dispatcher
        self.cadence_minutes = cadence_minutes
        self.top_n = top_n
        self.symbols = set(symbols) if symbols else None
        self.quote_asset = quote_asset
        self._task: PeriodicTask | None = None

    def start(self) -> None:
        if self._task is not None:
            return
        self._task = PeriodicTask("funding-trigger", self.cadence_minutes * 60, self.tick)
        self._task.start()
        logger.info(f"Funding rate monitor started, every {self.cadence_minutes} min")

    async def stop(self) -> None:
        if self._task is not None:
            await self._task.stop()
            self._task = None

    def _accepts(self, symbol: str) -> bool:
        if self.symbols is not None:
            return symbol in self.symbols
        return symbol.endswith(self.quote_asset)

    async def rank(self, limit: int | None = None, now: int | None = None) -> RankingSnapshot:
        if now is None:
            now = int(time.time() * 1000)
        limit = limit or self.top_n

        rates = [
            r
            for r in await self.client.get_funding_rates()
            if r.funding_rate < 0 and self._accepts(r.symbol)
        ]
        rates.sort(key=lambda r: (r.funding_rate, r.symbol))
        average = sum(r.funding_rate for r in rates) / len(rates) * 100 if rates else 0.0

        entries = [
            RankingEntry(symbol=r.symbol, percent_change=r.funding_rate * 100, rank=i + 1)
            for i, r in enumerate(rates[:limit])
        ]
        return RankingSnapshot(
            timeframe=FUNDING_TIMEFRAME,
            generated_at=now,
            entries=entries,
            average_change=average,
            qualifying=len(rates),
        )

    async def tick(self, now: int | None = None) -> int:
        configs = [
            c
            for c in await self.store.list_enabled("trigger")
            if c.params.kind == "trigger" and c.params.metric == "funding"
        ]
        if not configs:
            logger.debug("No funding trigger enabled, skip fetch")
            return 0

        limit = max([self.top_n] + [c.params.top_n or 0 for c in configs])
        ranking = await self.rank(limit, now)
        return await self.dispatcher.process_trigger_ranking(configs, ranking, now)
