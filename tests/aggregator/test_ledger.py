# tests/aggregator/test_ledger.py
import asyncio
import math
import time
from unittest.mock import patch

import pytest

from market_pulse.aggregator.ledger import (
    SnapshotDataError,
    SnapshotLedger,
    calculate_percent_change,
)
from market_pulse.storage.database import Database
from market_pulse.storage.models import PriceSnapshot

MINUTE = 60_000


@pytest.fixture
async def db(tmp_path):
    db_path = tmp_path / "test.db"
    database = Database(str(db_path))
    await database.init()
    yield database
    await database.close()


def snap(symbol: str, price: float, captured_at: int, **kwargs) -> PriceSnapshot:
    fields = {
        "volume_24h": 1_000_000.0,
        "price_change_1h": 0.0,
        "price_change_24h": 0.0,
        "high_24h": price,
        "granularity": "1m",
    }
    fields.update(kwargs)
    return PriceSnapshot(id=None, symbol=symbol, price=price, captured_at=captured_at, **fields)


def test_calculate_percent_change():
    assert calculate_percent_change(100.0, 110.0) == pytest.approx(10.0)
    assert calculate_percent_change(100.0, 90.0) == pytest.approx(-10.0)
    assert calculate_percent_change(0.0, 10.0) == 0.0


async def test_gainers_basic(db: Database):
    """BTC 65000 -> 66000 一小时内涨 1.54%"""
    ledger = SnapshotLedger(db)
    now = int(time.time() * 1000)
    await ledger.store([snap("BTCUSDT", 65000.0, now - 30 * MINUTE)])
    await ledger.store([snap("BTCUSDT", 66000.0, now - MINUTE)])

    ranking = await ledger.gainers("1h", 60, 10, now=now)

    assert ranking.status == "ok"
    assert ranking.entries[0].symbol == "BTCUSDT"
    assert ranking.entries[0].percent_change == pytest.approx(1.538, abs=0.01)
    assert ranking.entries[0].rank == 1
    assert ranking.entries[0].value == 66000.0


async def test_gainers_ordering_and_average(db: Database):
    ledger = SnapshotLedger(db)
    now = int(time.time() * 1000)
    await ledger.store(
        [
            snap("AAAUSDT", 10.0, now - 50 * MINUTE),
            snap("BBBUSDT", 10.0, now - 50 * MINUTE),
            snap("CCCUSDT", 10.0, now - 50 * MINUTE),
            snap("DDDUSDT", 10.0, now - 50 * MINUTE),
        ]
    )
    await ledger.store(
        [
            snap("AAAUSDT", 11.0, now - MINUTE),
            snap("BBBUSDT", 12.0, now - MINUTE),
            snap("CCCUSDT", 11.0, now - MINUTE),
            snap("DDDUSDT", 9.0, now - MINUTE),
        ]
    )

    ranking = await ledger.gainers("1h", 60, 3, now=now)

    # 涨幅相同按币种名排序
    assert ranking.symbols == ["BBBUSDT", "AAAUSDT", "CCCUSDT"]
    assert [e.rank for e in ranking.entries] == [1, 2, 3]
    changes = [e.percent_change for e in ranking.entries]
    assert changes == sorted(changes, reverse=True)
    # 平均值包含未进入 Top-N 的币种
    assert ranking.qualifying == 4
    assert ranking.average_change == pytest.approx((20 + 10 + 10 - 10) / 4)


async def test_gainers_requires_two_snapshots(db: Database):
    ledger = SnapshotLedger(db)
    now = int(time.time() * 1000)
    await ledger.store([snap("BTCUSDT", 100.0, now - 10 * MINUTE)])
    # 窗口之外的数据不参与
    await ledger.store([snap("ETHUSDT", 10.0, now - 120 * MINUTE)])
    await ledger.store([snap("ETHUSDT", 11.0, now - MINUTE)])

    ranking = await ledger.gainers("1h", 60, 10, now=now)

    assert ranking.entries == []
    assert ranking.status == "empty"
    assert ranking.average_change == 0.0


async def test_store_rejects_non_finite(db: Database):
    ledger = SnapshotLedger(db)
    now = int(time.time() * 1000)

    with pytest.raises(SnapshotDataError):
        await ledger.store(
            [
                snap("BTCUSDT", 100.0, now),
                snap("ETHUSDT", math.nan, now),
            ]
        )
    with pytest.raises(SnapshotDataError):
        await ledger.store([snap("BTCUSDT", 100.0, now, volume_24h=math.inf)])

    # 整批不写入
    assert await ledger.latest("BTCUSDT", "1m") is None


async def test_store_rejects_out_of_order(db: Database):
    ledger = SnapshotLedger(db)
    now = int(time.time() * 1000)
    await ledger.store([snap("BTCUSDT", 100.0, now)])

    with pytest.raises(SnapshotDataError):
        await ledger.store([snap("BTCUSDT", 101.0, now - MINUTE)])
    with pytest.raises(SnapshotDataError):
        await ledger.store([snap("BTCUSDT", 101.0, now)])
    with pytest.raises(SnapshotDataError):
        await ledger.store(
            [snap("ETHUSDT", 10.0, now + MINUTE), snap("ETHUSDT", 11.0, now + MINUTE)]
        )

    # 不同粒度互不影响
    await ledger.store([snap("BTCUSDT", 101.0, now - MINUTE, granularity="5m")])
    history = await ledger.history("BTCUSDT", "1m", 0)
    assert [s.price for s in history] == [100.0]


async def test_store_checks_persisted_order(db: Database):
    now = int(time.time() * 1000)
    await SnapshotLedger(db).store([snap("BTCUSDT", 100.0, now)])

    # 新实例没有内存记录，从库里读取最新时间
    ledger = SnapshotLedger(db)
    with pytest.raises(SnapshotDataError):
        await ledger.store([snap("BTCUSDT", 100.0, now - MINUTE)])


async def test_price_at_and_latest(db: Database):
    ledger = SnapshotLedger(db)
    now = int(time.time() * 1000)
    await ledger.store([snap("BTCUSDT", 100.0, now - 60 * MINUTE)])
    await ledger.store([snap("BTCUSDT", 105.0, now)])

    latest = await ledger.latest("BTCUSDT", "1m")
    assert latest is not None and latest.price == 105.0
    before = await ledger.price_at("BTCUSDT", "1m", now - 30 * MINUTE)
    assert before is not None and before.price == 100.0
    assert [s.symbol for s in await ledger.latest_all("1m")] == ["BTCUSDT"]
    assert await ledger.symbols() == ["BTCUSDT"]


async def test_cleanup_respects_retention(db: Database):
    ledger = SnapshotLedger(db, retention_hours=2, safety_margin_hours=1)
    now = int(time.time() * 1000)
    await ledger.store([snap("BTCUSDT", 100.0, now - 4 * 60 * MINUTE)])
    await ledger.store([snap("BTCUSDT", 101.0, now - 2 * 60 * MINUTE)])
    await ledger.store([snap("BTCUSDT", 102.0, now)])

    deleted = await ledger.cleanup(now=now)

    assert deleted == 1
    history = await ledger.history("BTCUSDT", "1m", 0)
    assert [s.price for s in history] == [101.0, 102.0]


async def test_concurrent_store_keeps_order(db: Database):
    """同一币种并发写入时，顺序校验与写入不会交错"""
    ledger = SnapshotLedger(db)
    now = int(time.time() * 1000)
    await ledger.store([snap("BTCUSDT", 100.0, now - 10 * MINUTE)])

    results = await asyncio.gather(
        ledger.store([snap("BTCUSDT", 102.0, now)]),
        ledger.store([snap("BTCUSDT", 101.0, now - 5 * MINUTE)]),
        return_exceptions=True,
    )

    assert results[0] == 1
    assert isinstance(results[1], SnapshotDataError)
    history = await ledger.history("BTCUSDT", "1m", 0)
    assert [s.price for s in history] == [100.0, 102.0]


async def test_cleanup_and_gainers_serialized_per_symbol(db: Database):
    ledger = SnapshotLedger(db, retention_hours=1, safety_margin_hours=0)
    now = int(time.time() * 1000)
    await ledger.store([snap("BTCUSDT", 90.0, now - 3 * 60 * MINUTE)])
    await ledger.store([snap("BTCUSDT", 100.0, now - 30 * MINUTE)])
    await ledger.store([snap("BTCUSDT", 110.0, now - MINUTE)])

    active: set[str] = set()
    overlaps: list[str] = []
    original_delete = db.delete_snapshots_before
    original_between = db.get_snapshots_between

    def tracked(name, func):
        async def wrapper(*args, **kwargs):
            if active:
                overlaps.append(name)
            active.add(name)
            try:
                await asyncio.sleep(0.05)
                return await func(*args, **kwargs)
            finally:
                active.discard(name)

        return wrapper

    with (
        patch.object(db, "delete_snapshots_before", tracked("cleanup", original_delete)),
        patch.object(db, "get_snapshots_between", tracked("gainers", original_between)),
    ):
        deleted, ranking = await asyncio.gather(
            ledger.cleanup(now=now), ledger.gainers("1h", 60, 10, now=now)
        )

    assert overlaps == []
    assert deleted == 1
    assert ranking.entries[0].percent_change == pytest.approx(10.0)
