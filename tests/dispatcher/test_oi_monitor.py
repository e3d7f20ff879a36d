# tests/dispatcher/test_oi_monitor.py
import time
from unittest.mock import AsyncMock, MagicMock

import pytest

from market_pulse.alert.push_config import PushConfigStore
from market_pulse.collector.oi_fetcher import OpenInterestChange
from market_pulse.dispatcher.oi_monitor import OpenInterestMonitor
from market_pulse.dispatcher.smart_push import SmartPushDispatcher
from market_pulse.dispatcher.state import DispatchStateStore
from market_pulse.storage.database import Database
from market_pulse.storage.models import PriceSnapshot


@pytest.fixture
async def db(tmp_path):
    db_path = tmp_path / "test.db"
    database = Database(str(db_path))
    await database.init()
    yield database
    await database.close()


def snapshot(symbol: str, volume: float) -> PriceSnapshot:
    return PriceSnapshot(
        id=None,
        symbol=symbol,
        price=1.0,
        volume_24h=volume,
        price_change_1h=0.0,
        price_change_24h=0.0,
        high_24h=1.0,
        granularity="1m",
        captured_at=int(time.time() * 1000),
    )


def change(symbol: str, pct: float) -> OpenInterestChange:
    return OpenInterestChange(
        symbol=symbol, percent_change=pct, open_interest=1000.0, open_interest_value=5e6
    )


@pytest.fixture
def ledger():
    mock = MagicMock()
    mock.latest_all = AsyncMock(
        return_value=[snapshot("AUSDT", 10.0), snapshot("BUSDT", 300.0), snapshot("CUSDT", 20.0)]
    )
    return mock


@pytest.fixture
def fetcher():
    mock = MagicMock()
    mock.fetch_changes = AsyncMock(
        return_value=[change("AUSDT", 2.0), change("BUSDT", -8.0), change("CUSDT", 5.0)]
    )
    return mock


@pytest.fixture
def deliverer():
    mock = MagicMock()
    mock.deliver = AsyncMock(return_value=True)
    return mock


@pytest.fixture
def store(db: Database) -> PushConfigStore:
    return PushConfigStore(db)


@pytest.fixture
def monitor(db, ledger, fetcher, store, deliverer) -> OpenInterestMonitor:
    ranking = MagicMock()
    ranking.timeframes = ["1h", "4h", "24h"]
    dispatcher = SmartPushDispatcher(store, ranking, DispatchStateStore(db), deliverer)
    return OpenInterestMonitor(ledger, fetcher, store, dispatcher, universe_size=2)


async def test_universe_by_volume(monitor):
    assert await monitor.universe() == ["BUSDT", "CUSDT"]


async def test_rank_by_absolute_change(monitor, fetcher):
    ranking = await monitor.rank("1h")

    assert ranking.symbols == ["BUSDT", "CUSDT", "AUSDT"]
    assert ranking.entries[0].percent_change == -8.0
    assert ranking.entries[0].value == 5e6
    fetcher.fetch_changes.assert_called_once_with(["BUSDT", "CUSDT"], "1h")


async def test_rank_empty_universe(monitor, ledger, fetcher):
    ledger.latest_all = AsyncMock(return_value=[])

    ranking = await monitor.rank("4h")

    assert ranking.status == "empty"
    fetcher.fetch_changes.assert_not_called()


async def test_tick_without_configs_skips_fetch(monitor, fetcher):
    assert await monitor.tick("1h") == 0
    fetcher.fetch_changes.assert_not_called()


async def test_tick_fires_on_new_entry_and_rank_shift(monitor, store, fetcher, deliverer):
    await store.create(
        "u1",
        "trigger",
        {"timeframes": ["1h"], "metric": "open_interest", "conditions": {"min_rank_shift": 1}},
    )
    await store.create("u2", "trigger", {"timeframes": ["1h"], "metric": "price"})

    # 首次只建立基线
    assert await monitor.tick("1h") == 0

    fetcher.fetch_changes.return_value = [
        change("AUSDT", 12.0),
        change("BUSDT", -8.0),
        change("CUSDT", 5.0),
    ]
    assert await monitor.tick("1h") == 1
    assert deliverer.deliver.call_args.args[0] == "u1"
    assert "持仓量" in deliverer.deliver.call_args.args[1]

    fetcher.fetch_changes.return_value = [change("DUSDT", 20.0)]
    assert await monitor.tick("1h") == 1

    assert await monitor.tick("1h") == 0


async def test_start_and_stop(monitor):
    monitor.cadence_minutes = {"1h": 3, "7d": 60}
    monitor.start()
    assert len(monitor._tasks) == 1

    await monitor.stop()
    assert monitor._tasks == []
