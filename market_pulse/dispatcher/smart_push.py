# market_pulse/dispatcher/smart_push.py
import asyncio
import logging
import time
from typing import Any, Protocol

from market_pulse.aggregator.ranking import RankingEngine
from market_pulse.alert.push_config import PUSH_KINDS, PushConfigStore, UserPushConfig
from market_pulse.alert.trigger import evaluate_price_trigger, evaluate_rank_trigger
from market_pulse.dispatcher.scheduler import PeriodicTask
from market_pulse.dispatcher.state import DispatchStateStore
from market_pulse.notifier.formatter import (
    format_breakthrough_alert,
    format_funding_alert,
    format_oi_alert,
    format_schedule_digest,
    format_trigger_alert,
)
from market_pulse.storage.models import (
    BreakthroughEvent,
    BreakthroughMark,
    RankingSnapshot,
)

logger = logging.getLogger(__name__)


class Deliverer(Protocol):
    async def deliver(
        self, user_id: str, message: str, options: dict[str, Any] | None = None
    ) -> bool: ...


class SmartPushDispatcher:
    """定时 / 触发 / 突破三类推送，各自独立计时"""

    def __init__(
        self,
        store: PushConfigStore,
        ranking: RankingEngine,
        state: DispatchStateStore,
        deliverer: Deliverer,
        schedule_tick_seconds: float = 60,
        trigger_cadence_minutes: dict[str, int] | None = None,
        default_trigger_cadence_minutes: int = 5,
        breakthrough_tick_seconds: float = 10,
        cooldown_minutes: int = 60,
        default_top_n: int = 10,
        queue_size: int = 10000,
    ):
        self.store = store
        self.ranking = ranking
        self.state = state
        self.deliverer = deliverer
        self.schedule_tick_seconds = schedule_tick_seconds
        self.trigger_cadence_minutes = trigger_cadence_minutes or {"1h": 3, "4h": 15, "24h": 30}
        self.default_trigger_cadence_minutes = default_trigger_cadence_minutes
        self.breakthrough_tick_seconds = breakthrough_tick_seconds
        self.cooldown_minutes = cooldown_minutes
        self.default_top_n = default_top_n

        self.total_pushes = 0
        self.pushes_by_kind: dict[str, int] = {kind: 0 for kind in PUSH_KINDS}
        self.dropped_events = 0
        self._events: asyncio.Queue[BreakthroughEvent] = asyncio.Queue(maxsize=queue_size)
        self._tasks: list[PeriodicTask] = []

    # ---- lifecycle ----

    def start(self) -> None:
        if self._tasks:
            return
        self._tasks.append(
            PeriodicTask("push-schedule", self.schedule_tick_seconds, self.schedule_tick)
        )
        for tf in self.ranking.timeframes:
            minutes = self.trigger_cadence_minutes.get(tf, self.default_trigger_cadence_minutes)
            self._tasks.append(
                PeriodicTask(f"push-trigger-{tf}", minutes * 60, self._trigger_job(tf))
            )
        self._tasks.append(
            PeriodicTask(
                "push-breakthrough", self.breakthrough_tick_seconds, self.breakthrough_tick
            )
        )
        for task in self._tasks:
            task.start()
        logger.info(f"Smart push dispatcher started with {len(self._tasks)} loops")

    async def stop(self) -> None:
        for task in self._tasks:
            await task.stop()
        self._tasks = []
        logger.info("Smart push dispatcher stopped")

    def _trigger_job(self, timeframe: str) -> Any:
        async def job() -> None:
            await self.trigger_tick(timeframe)

        return job

    # ---- delivery ----

    async def _deliver(self, user_id: str, message: str, kind: str) -> bool:
        """投递失败在同一 tick 内重试一次，仍失败则记录并丢弃"""
        for attempt in (1, 2):
            try:
                if await self.deliverer.deliver(user_id, message, {"kind": kind}):
                    self.total_pushes += 1
                    self.pushes_by_kind[kind] += 1
                    return True
                logger.warning(f"Delivery of {kind} push to {user_id} failed (attempt {attempt})")
            except Exception as e:
                logger.warning(
                    f"Delivery of {kind} push to {user_id} raised (attempt {attempt}): {e}"
                )
        logger.error(f"Dropped {kind} push for {user_id} after retry")
        return False

    # ---- schedule ----

    async def schedule_tick(self, now: int | None = None) -> int:
        if now is None:
            now = int(time.time() * 1000)
        sent = 0
        rankings_memo: dict[tuple[str, ...], dict[str, RankingSnapshot]] = {}

        for cfg in await self.store.list_enabled("schedule"):
            params = cfg.params
            assert params.kind == "schedule"
            try:
                async with self.state.locked(cfg.user_id, cfg.id):
                    state = await self.state.get(cfg.user_id, cfg.id)
                    interval_ms = params.interval_minutes * 60 * 1000
                    if state.last_sent_at is not None and now - state.last_sent_at < interval_ms:
                        continue

                    key = tuple(params.timeframes)
                    if key not in rankings_memo:
                        rankings_memo[key] = await self.ranking.multi_timeframe_ranking(
                            params.timeframes, now=now
                        )
                    message = format_schedule_digest(rankings_memo[key])
                    if not await self._deliver(cfg.user_id, message, "schedule"):
                        continue

                    state.last_sent_at = now
                    await self.state.commit(state)
                    sent += 1
            except Exception as e:
                logger.error(f"Schedule push failed for config {cfg.id}: {e}")
        return sent

    # ---- trigger ----

    async def trigger_tick(self, timeframe: str, now: int | None = None) -> int:
        if now is None:
            now = int(time.time() * 1000)
        configs = [
            c
            for c in await self.store.list_enabled("trigger")
            if c.params.kind == "trigger"
            and c.params.metric == "price"
            and timeframe in c.params.timeframes
        ]
        if not configs:
            return 0

        top_n = max(self._top_n(c) for c in configs)
        ranking = await self.ranking.gainers(timeframe, top_n, now=now)
        return await self.process_trigger_ranking(configs, ranking, now)

    def _top_n(self, cfg: UserPushConfig) -> int:
        params = cfg.params
        assert params.kind == "trigger"
        return params.top_n or self.default_top_n

    async def process_trigger_ranking(
        self,
        configs: list[UserPushConfig],
        ranking: RankingSnapshot,
        now: int | None = None,
    ) -> int:
        """
        对比每个配置上次保存的 Top-N 并决定是否推送

        排行为空或出错时不更新基线；否则无论是否推送都刷新保存的 Top-N。
        """
        if now is None:
            now = int(time.time() * 1000)
        if ranking.status != "ok":
            logger.debug(f"Skip trigger evaluation for {ranking.timeframe}: {ranking.status}")
            return 0

        tf = ranking.timeframe
        sent = 0
        for cfg in configs:
            params = cfg.params
            assert params.kind == "trigger"
            entries = ranking.entries[: self._top_n(cfg)]
            view = RankingSnapshot(
                timeframe=tf,
                generated_at=ranking.generated_at,
                entries=entries,
                average_change=ranking.average_change,
                qualifying=ranking.qualifying,
            )
            try:
                async with self.state.locked(cfg.user_id, cfg.id):
                    state = await self.state.get(cfg.user_id, cfg.id)
                    previous_top = state.last_top.get(tf)

                    if params.metric in ("open_interest", "funding"):
                        decision = evaluate_rank_trigger(
                            entries,
                            previous_top,
                            params.conditions.new_entry,
                            params.conditions.min_rank_shift,
                        )
                        if params.metric == "funding":
                            message = format_funding_alert(view, decision)
                        else:
                            message = format_oi_alert(view, decision)
                    else:
                        decision = evaluate_price_trigger(
                            entries,
                            previous_top,
                            state.above.get(tf, []),
                            params.conditions.new_entry,
                            params.conditions.min_price_change,
                        )
                        message = format_trigger_alert(view, decision)

                    if decision.fired and await self._deliver(cfg.user_id, message, "trigger"):
                        state.last_sent_at = now
                        sent += 1

                    state.last_top[tf] = [e.symbol for e in entries]
                    state.above[tf] = decision.above
                    await self.state.commit(state)
            except Exception as e:
                logger.error(f"Trigger push failed for config {cfg.id} ({tf}): {e}")
        return sent

    # ---- breakthrough ----

    def publish(self, events: list[BreakthroughEvent]) -> None:
        for event in events:
            try:
                self._events.put_nowait(event)
            except asyncio.QueueFull:
                self.dropped_events += 1
                logger.warning(f"Breakthrough queue full, dropped {event.symbol} {event.timeframe}")

    def _drain(self) -> list[BreakthroughEvent]:
        events = []
        while not self._events.empty():
            events.append(self._events.get_nowait())
        return events

    async def breakthrough_tick(self, now: int | None = None) -> int:
        if now is None:
            now = int(time.time() * 1000)
        events = self._drain()
        if not events:
            return 0

        since = now - self.cooldown_minutes * 60 * 1000
        sent = 0
        for cfg in await self.store.list_enabled("breakthrough"):
            params = cfg.params
            assert params.kind == "breakthrough"
            relevant = [e for e in events if e.timeframe in params.timeframes]
            if not relevant:
                continue
            try:
                async with self.state.locked(cfg.user_id, cfg.id):
                    notified = await self.state.notified_buckets(cfg.id, since)
                    for event in relevant:
                        crossed = [t for t in params.thresholds if event.break_percent >= t]
                        fresh = [
                            t for t in crossed if (event.symbol, event.timeframe, t) not in notified
                        ]
                        if not fresh:
                            continue

                        message = format_breakthrough_alert(event, max(fresh))
                        if not await self._deliver(cfg.user_id, message, "breakthrough"):
                            continue

                        await self.state.record_buckets(
                            [
                                BreakthroughMark(cfg.id, event.symbol, event.timeframe, t, now)
                                for t in fresh
                            ]
                        )
                        notified.update((event.symbol, event.timeframe, t) for t in fresh)
                        sent += 1
            except Exception as e:
                logger.error(f"Breakthrough push failed for config {cfg.id}: {e}")
        return sent

    # ---- stats ----

    async def stats(self) -> dict[str, Any]:
        return {
            "total": self.total_pushes,
            "by_kind": dict(self.pushes_by_kind),
            "enabled_configs": await self.store.count_enabled(),
            "pending_events": self._events.qsize(),
            "dropped_events": self.dropped_events,
        }
