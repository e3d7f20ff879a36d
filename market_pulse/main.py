# market_pulse/main.py
import asyncio
import logging
import signal
import sys
import time
from pathlib import Path
from typing import Any

from market_pulse.aggregator.high_cache import HistoricalHighCache
from market_pulse.aggregator.ledger import SnapshotLedger
from market_pulse.aggregator.ranking import RankingEngine
from market_pulse.alert.breakthrough import BreakthroughDetector
from market_pulse.alert.push_config import PushConfigError, PushConfigStore
from market_pulse.client.binance import BinanceClient
from market_pulse.collector.oi_fetcher import OpenInterestFetcher
from market_pulse.collector.snapshot_collector import SnapshotCollector
from market_pulse.config import Config, load_config
from market_pulse.dispatcher.funding_monitor import FundingRateMonitor
from market_pulse.dispatcher.oi_monitor import OpenInterestMonitor
from market_pulse.dispatcher.scheduler import PeriodicTask
from market_pulse.dispatcher.smart_push import SmartPushDispatcher
from market_pulse.dispatcher.state import DispatchStateStore
from market_pulse.notifier.formatter import (
    format_gainers,
    format_highs,
    format_proximity,
    format_push_configs,
    format_status,
)
from market_pulse.notifier.telegram import TelegramNotifier
from market_pulse.storage.database import Database

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


class PulseMonitor:
    def __init__(self, config: Config):
        self.config = config
        granularity = config.collector.granularity
        symbols = config.symbols or None

        self.db = Database(config.database.path)
        self.notifier = TelegramNotifier(config.telegram.bot_token)
        self.binance_client = BinanceClient(quote_asset=config.collector.quote_asset)
        self.oi_fetcher = OpenInterestFetcher(
            max_concurrency=config.open_interest.max_concurrency,
            quote_asset=config.collector.quote_asset,
        )

        self.ledger = SnapshotLedger(
            self.db,
            retention_hours=config.ledger.retention_hours,
            safety_margin_hours=config.ledger.safety_margin_hours,
        )
        self.collector = SnapshotCollector(
            self.binance_client,
            self.ledger,
            granularity=granularity,
            symbols=symbols,
            quote_asset=config.collector.quote_asset,
        )
        self.high_cache = HistoricalHighCache(
            self.db,
            ledger=self.ledger,
            client=self.binance_client,
            timeframes=config.high_cache.timeframes,
            granularity=granularity,
            backfill=config.high_cache.backfill,
            backfill_concurrency=config.high_cache.backfill_concurrency,
            flush_seconds=config.high_cache.flush_seconds,
            symbols=symbols,
        )
        self.detector = BreakthroughDetector(self.high_cache)
        self.ranking = RankingEngine(
            self.ledger,
            config.ranking.windows_minutes,
            default_top_n=config.ranking.default_top_n,
            granularity=granularity,
        )
        self.dispatch_state = DispatchStateStore(self.db)
        self.push_store = PushConfigStore(
            self.db, ranking_timeframes=self.ranking.timeframes, state=self.dispatch_state
        )
        self.dispatcher = SmartPushDispatcher(
            self.push_store,
            self.ranking,
            self.dispatch_state,
            self.notifier,
            schedule_tick_seconds=config.push.schedule_tick_seconds,
            trigger_cadence_minutes=config.push.trigger_cadence_minutes,
            default_trigger_cadence_minutes=config.push.default_trigger_cadence_minutes,
            breakthrough_tick_seconds=config.push.breakthrough_tick_seconds,
            cooldown_minutes=config.push.cooldown_minutes,
            default_top_n=config.ranking.default_top_n,
        )
        self.oi_monitor = OpenInterestMonitor(
            self.ledger,
            self.oi_fetcher,
            self.push_store,
            self.dispatcher,
            cadence_minutes=config.open_interest.cadence_minutes,
            top_n=config.open_interest.top_n,
            universe_size=config.open_interest.universe_size,
            granularity=granularity,
        )
        self.funding_monitor = FundingRateMonitor(
            self.binance_client,
            self.push_store,
            self.dispatcher,
            cadence_minutes=config.funding.cadence_minutes,
            top_n=config.funding.top_n,
            symbols=symbols,
            quote_asset=config.collector.quote_asset,
        )

        self.tasks: list[PeriodicTask] = [
            PeriodicTask(
                "ingest", config.collector.interval_seconds, self.ingest, run_immediately=True
            ),
            PeriodicTask("ledger-cleanup", config.ledger.cleanup_minutes * 60, self.cleanup),
        ]
        self.running = False
        self.start_time = time.time()

    async def init(self) -> None:
        Path(self.config.database.path).parent.mkdir(parents=True, exist_ok=True)

        await self.db.init()
        await self.binance_client.init()
        if self.config.open_interest.enabled:
            await self.oi_fetcher.init()

        # Telegram 回调
        self.notifier.on_status = self._on_status
        self.notifier.on_gainers = self._on_gainers
        self.notifier.on_high = self._on_high
        self.notifier.on_pushes = self._on_pushes
        self.notifier.on_subscribe = self._on_subscribe
        self.notifier.on_toggle = self._on_toggle
        self.notifier.on_delete = self._on_delete

    # ---- 数据流 ----

    async def ingest(self) -> None:
        """采集 -> 写入账本 -> 突破检测 -> 推送队列"""
        now = int(time.time() * 1000)
        batch = await self.collector.collect(now)
        if not batch:
            logger.warning("No snapshots collected this tick")
            return

        await self.ledger.store(batch)
        events = await self.detector.check_many({s.symbol: s.price for s in batch}, now)
        if events:
            self.dispatcher.publish(events)
        logger.debug(f"Ingested {len(batch)} snapshots, {len(events)} breakthroughs")

    async def cleanup(self) -> None:
        deleted = await self.ledger.cleanup()
        removed = await self.db.cleanup_breakthrough_marks(
            int(time.time() * 1000) - self.config.push.cooldown_minutes * 60 * 1000
        )
        if deleted or removed:
            logger.info(f"Cleaned up {deleted} snapshots, {removed} breakthrough marks")

    # ---- Telegram 回调 ----

    async def _on_status(self) -> str:
        return format_status(
            {
                "uptime": time.time() - self.start_time,
                "cache": self.high_cache.stats(),
                "breakthroughs": self.detector.stats(),
                "pushes": await self.dispatcher.stats(),
            }
        )

    async def _on_gainers(self, timeframe: str | None) -> str:
        timeframe = timeframe or self.ranking.timeframes[0]
        if timeframe not in self.ranking.timeframes:
            return f"支持的周期: {', '.join(self.ranking.timeframes)}"
        return format_gainers(await self.ranking.gainers(timeframe))

    async def _on_high(self, symbol: str | None) -> str:
        if symbol is None:
            return format_proximity("24h", self.high_cache.ranking_by_proximity("24h", limit=10))
        highs = [
            high
            for tf in self.high_cache.timeframes
            if (high := self.high_cache.query(symbol, tf)) is not None
        ]
        return format_highs(symbol, highs, self.high_cache.last_price(symbol))

    async def _on_pushes(self, user_id: str) -> str:
        return format_push_configs(await self.push_store.list_by_user(user_id))

    async def _on_subscribe(self, user_id: str, kind: str, params: dict[str, Any]) -> str:
        try:
            cfg = await self.push_store.create(user_id, kind, params)
        except PushConfigError as e:
            return f"❌ 参数错误: {e}"
        return f"✅ 已添加推送 #{cfg.id} ({cfg.kind})"

    async def _on_toggle(self, user_id: str, config_id: int, enabled: bool) -> str:
        cfg = await self.push_store.get(config_id)
        if cfg is None or cfg.user_id != user_id:
            return f"未找到配置 #{config_id}"
        await self.push_store.set_enabled(config_id, enabled)
        return f"✅ 配置 #{config_id} 已{'启用' if enabled else '停用'}"

    async def _on_delete(self, user_id: str, config_id: int) -> str:
        cfg = await self.push_store.get(config_id)
        if cfg is None or cfg.user_id != user_id:
            return f"未找到配置 #{config_id}"
        await self.push_store.delete(config_id)
        return f"🗑 配置 #{config_id} 已删除"

    # ---- 生命周期 ----

    async def run(self) -> None:
        await self.init()
        self.running = True

        # 高点缓存在后台重建，期间采集照常进行
        self.high_cache.rebuild_in_background()
        self.high_cache.start()
        for task in self.tasks:
            task.start()
        self.dispatcher.start()
        if self.config.open_interest.enabled:
            self.oi_monitor.start()
        if self.config.funding.enabled:
            self.funding_monitor.start()

        await self.notifier.start_polling()

        logger.info("Market Pulse started")

        # 等待退出信号
        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop_event.set)

        await stop_event.wait()

        self.running = False
        await self.notifier.stop_polling()
        await self.oi_monitor.stop()
        await self.funding_monitor.stop()
        await self.dispatcher.stop()
        for task in self.tasks:
            await task.stop()
        await self.high_cache.stop()
        await self.oi_fetcher.close()
        await self.binance_client.close()
        await self.db.close()

        logger.info("Market Pulse stopped")


async def main(config_path: str = "config.yaml") -> None:
    config = load_config(Path(config_path))
    monitor = PulseMonitor(config)
    await monitor.run()


def run() -> None:
    asyncio.run(main(sys.argv[1] if len(sys.argv) > 1 else "config.yaml"))


if __name__ == "__main__":
    run()
