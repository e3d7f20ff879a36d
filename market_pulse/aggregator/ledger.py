# market_pulse/aggregator/ledger.py
import logging
import math
import time

from market_pulse.locks import KeyedLock
from market_pulse.storage.database import Database
from market_pulse.storage.models import PriceSnapshot, RankingEntry, RankingSnapshot

logger = logging.getLogger(__name__)

_NUMERIC_FIELDS = ("price", "volume_24h", "price_change_1h", "price_change_24h", "high_24h")


class SnapshotDataError(ValueError):
    """快照数据不合法（非有限数值 / 时间乱序）"""


def calculate_percent_change(earliest: float, latest: float) -> float:
    if earliest == 0:
        return 0.0
    return (latest - earliest) / earliest * 100


class SnapshotLedger:
    """只追加的价格快照账本，提供窗口涨幅排行"""

    def __init__(
        self,
        db: Database,
        retention_hours: int = 168,
        safety_margin_hours: int = 1,
    ):
        self.db = db
        self.retention_hours = retention_hours
        self.safety_margin_hours = safety_margin_hours
        self._locks = KeyedLock()
        self._last_seen: dict[tuple[str, str], int] = {}

    @property
    def retention_ms(self) -> int:
        return (self.retention_hours + self.safety_margin_hours) * 3600 * 1000

    async def _last_captured_at(self, symbol: str, granularity: str) -> int | None:
        key = (symbol, granularity)
        if key not in self._last_seen:
            latest = await self.db.get_latest_snapshot(symbol, granularity)
            if latest is None:
                return None
            self._last_seen[key] = latest.captured_at
        return self._last_seen[key]

    async def store(self, batch: list[PriceSnapshot]) -> int:
        """
        校验并原子写入一批快照

        Raises:
            SnapshotDataError: 任一记录数值非有限或时间戳不递增，整批不写入
        """
        if not batch:
            return 0

        for snap in batch:
            for name in _NUMERIC_FIELDS:
                value = getattr(snap, name)
                if not isinstance(value, (int, float)) or not math.isfinite(value):
                    raise SnapshotDataError(f"{snap.symbol}: {name}={value!r} is not finite")

        # 顺序校验与写入在同一把币种锁内完成
        async with self._locks.hold_many({s.symbol for s in batch}):
            pending: dict[tuple[str, str], int] = {}
            for snap in batch:
                key = (snap.symbol, snap.granularity)
                previous = pending.get(key)
                if previous is None:
                    previous = await self._last_captured_at(*key)
                if previous is not None and snap.captured_at <= previous:
                    raise SnapshotDataError(
                        f"{snap.symbol}/{snap.granularity}: captured_at {snap.captured_at} "
                        f"not after {previous}"
                    )
                pending[key] = snap.captured_at

            count = await self.db.insert_price_snapshots(batch)
            self._last_seen.update(pending)
        return count

    async def latest(self, symbol: str, granularity: str) -> PriceSnapshot | None:
        return await self.db.get_latest_snapshot(symbol, granularity)

    async def price_at(self, symbol: str, granularity: str, at: int) -> PriceSnapshot | None:
        return await self.db.get_snapshot_at(symbol, granularity, at)

    async def latest_all(self, granularity: str) -> list[PriceSnapshot]:
        return await self.db.get_latest_snapshots(granularity)

    async def history(self, symbol: str, granularity: str, since: int) -> list[PriceSnapshot]:
        return await self.db.get_snapshot_history(symbol, granularity, since)

    async def symbols(self) -> list[str]:
        return await self.db.get_snapshot_symbols()

    async def gainers(
        self,
        timeframe: str,
        window_minutes: int,
        limit: int,
        granularity: str = "1m",
        now: int | None = None,
    ) -> RankingSnapshot:
        """
        窗口涨幅排行

        窗口内至少 2 条快照的币种参与排名，涨幅 = (最新 - 最早) / 最早 * 100，
        按涨幅降序、币种名升序排列。

        Returns:
            RankingSnapshot，entries 至多 limit 条，average_change 为全部参与币种的均值
        """
        if now is None:
            now = int(time.time() * 1000)
        start = now - window_minutes * 60 * 1000

        symbols = await self.db.get_snapshot_symbols()
        async with self._locks.hold_many(symbols):
            rows = await self.db.get_snapshots_between(granularity, start, now)

        # rows 已按 symbol, captured_at 排序
        first: dict[str, PriceSnapshot] = {}
        last: dict[str, PriceSnapshot] = {}
        counts: dict[str, int] = {}
        for snap in rows:
            first.setdefault(snap.symbol, snap)
            last[snap.symbol] = snap
            counts[snap.symbol] = counts.get(snap.symbol, 0) + 1

        changes: list[tuple[str, float, float]] = []
        for symbol, count in counts.items():
            if count < 2 or first[symbol].price <= 0:
                continue
            pct = calculate_percent_change(first[symbol].price, last[symbol].price)
            changes.append((symbol, pct, last[symbol].price))

        changes.sort(key=lambda c: (-c[1], c[0]))
        average = sum(c[1] for c in changes) / len(changes) if changes else 0.0

        entries = [
            RankingEntry(symbol=symbol, percent_change=pct, rank=i + 1, value=price)
            for i, (symbol, pct, price) in enumerate(changes[:limit])
        ]
        return RankingSnapshot(
            timeframe=timeframe,
            generated_at=now,
            entries=entries,
            average_change=average,
            qualifying=len(changes),
        )

    async def cleanup(self, now: int | None = None) -> int:
        """按币种逐个清理过期快照，与同币种的排行读取互斥"""
        if now is None:
            now = int(time.time() * 1000)
        cutoff = now - self.retention_ms
        total = 0
        for symbol in await self.db.get_snapshot_symbols():
            async with self._locks.hold(symbol):
                deleted = await self.db.delete_snapshots_before(symbol, cutoff)
            total += deleted
        if total > 0:
            logger.info(f"Ledger cleanup removed {total} snapshots older than {cutoff}")
        return total
