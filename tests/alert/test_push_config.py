# tests/alert/test_push_config.py
import pytest

from market_pulse.alert.push_config import (
    BreakthroughParams,
    PushConfigError,
    PushConfigNotFound,
    PushConfigStore,
    ScheduleParams,
    TriggerParams,
)
from market_pulse.dispatcher.state import DispatchStateStore
from market_pulse.storage.database import Database


@pytest.fixture
async def db(tmp_path):
    db_path = tmp_path / "test.db"
    database = Database(str(db_path))
    await database.init()
    yield database
    await database.close()


@pytest.fixture
def store(db: Database) -> PushConfigStore:
    return PushConfigStore(db)


async def test_create_and_list_by_user(store: PushConfigStore):
    enabled = await store.create(
        "u1", "schedule", {"interval_minutes": 30, "timeframes": ["1h"]}
    )
    disabled = await store.create(
        "u1", "schedule", {"interval_minutes": 60, "timeframes": ["4h"], "is_enabled": False}
    )

    configs = await store.list_by_user("u1")
    assert [c.id for c in configs] == [enabled.id, disabled.id]
    assert isinstance(configs[0].params, ScheduleParams)
    assert configs[0].params.interval_minutes == 30

    eligible = await store.list_enabled("schedule")
    assert [c.id for c in eligible] == [enabled.id]
    assert await store.count_enabled() == {"schedule": 1, "trigger": 0, "breakthrough": 0}


async def test_trigger_defaults(store: PushConfigStore):
    cfg = await store.create("u1", "trigger", {"timeframes": ["1h", "4h"]})

    assert isinstance(cfg.params, TriggerParams)
    assert cfg.params.metric == "price"
    assert cfg.params.conditions.new_entry is True
    assert cfg.params.conditions.min_price_change == 0.0
    assert cfg.params.top_n is None


async def test_breakthrough_defaults_to_all_timeframes(store: PushConfigStore):
    cfg = await store.create("u1", "breakthrough", {"thresholds": [1, 3, 5]})

    assert isinstance(cfg.params, BreakthroughParams)
    assert cfg.params.thresholds == [1.0, 3.0, 5.0]
    assert set(cfg.params.timeframes) == {"all_time", "7d", "24h", "4h", "1h"}


@pytest.mark.parametrize(
    "kind,params",
    [
        ("schedule", {"interval_minutes": 0, "timeframes": ["1h"]}),
        ("schedule", {"interval_minutes": 30, "timeframes": []}),
        ("schedule", {"interval_minutes": 30, "timeframes": ["1h", "1h"]}),
        ("schedule", {"interval_minutes": 30, "timeframes": ["7d"]}),
        ("trigger", {"timeframes": ["1h"], "conditions": {"min_price_change": -1}}),
        ("trigger", {"timeframes": ["1h"], "metric": "volume"}),
        ("trigger", {"timeframes": ["1h"], "metric": "funding"}),
        ("trigger", {"timeframes": ["8h"], "metric": "price"}),
        ("breakthrough", {"thresholds": [3, 1]}),
        ("breakthrough", {"thresholds": [1, 1]}),
        ("breakthrough", {"thresholds": []}),
        ("breakthrough", {"thresholds": [1], "timeframes": ["2h"]}),
        ("alarm", {"timeframes": ["1h"]}),
    ],
)
async def test_invalid_params_rejected(store: PushConfigStore, kind, params):
    with pytest.raises(PushConfigError):
        await store.create("u1", kind, params)
    assert await store.list_by_user("u1") == []


async def test_update_merge_patch(store: PushConfigStore):
    cfg = await store.create(
        "u1",
        "trigger",
        {"timeframes": ["1h"], "conditions": {"new_entry": True, "min_price_change": 5}},
    )

    updated = await store.update(cfg.id, {"conditions": {"min_price_change": 8}})

    assert isinstance(updated.params, TriggerParams)
    assert updated.params.conditions.min_price_change == 8
    # 未指定的字段保持原值
    assert updated.params.conditions.new_entry is True
    assert updated.params.timeframes == ["1h"]
    assert updated.updated_at >= cfg.updated_at


async def test_update_validation(store: PushConfigStore):
    cfg = await store.create("u1", "schedule", {"interval_minutes": 30, "timeframes": ["1h"]})

    with pytest.raises(PushConfigError):
        await store.update(cfg.id, {"kind": "trigger"})
    with pytest.raises(PushConfigError):
        await store.update(cfg.id, {"interval_minutes": -5})
    with pytest.raises(PushConfigNotFound):
        await store.update(9999, {"interval_minutes": 10})

    unchanged = await store.get(cfg.id)
    assert unchanged is not None
    assert isinstance(unchanged.params, ScheduleParams)
    assert unchanged.params.interval_minutes == 30


async def test_set_enabled_and_delete(store: PushConfigStore):
    cfg = await store.create("u1", "breakthrough", {"thresholds": [1]})

    disabled = await store.set_enabled(cfg.id, False)
    assert disabled.is_enabled is False
    assert await store.list_enabled("breakthrough") == []

    await store.set_enabled(cfg.id, True)
    assert len(await store.list_enabled("breakthrough")) == 1

    assert await store.delete(cfg.id) is True
    assert await store.get(cfg.id) is None


async def test_funding_trigger_uses_settlement_timeframe(store: PushConfigStore):
    cfg = await store.create("u1", "trigger", {"timeframes": ["8h"], "metric": "funding"})

    assert isinstance(cfg.params, TriggerParams)
    assert cfg.params.metric == "funding"
    assert cfg.params.timeframes == ["8h"]


async def test_delete_forgets_dispatch_state(db: Database):
    state = DispatchStateStore(db)
    store = PushConfigStore(db, state=state)
    cfg = await store.create("u1", "trigger", {"timeframes": ["1h"]})

    current = await state.get("u1", cfg.id)
    current.last_top["1h"] = ["BTCUSDT"]
    await state.commit(current)

    assert await store.delete(cfg.id) is True
    assert await store.delete(cfg.id) is False

    # 同一编号的新状态从空白开始
    fresh = await state.get("u1", cfg.id)
    assert fresh.last_top == {}
