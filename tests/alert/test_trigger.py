# tests/alert/test_trigger.py
from market_pulse.alert.trigger import (
    RankChange,
    compare_rankings,
    evaluate_price_trigger,
    evaluate_rank_trigger,
)
from market_pulse.storage.models import RankingEntry


def entries(*items: tuple[str, float]) -> list[RankingEntry]:
    return [
        RankingEntry(symbol=s, percent_change=pct, rank=i + 1)
        for i, (s, pct) in enumerate(items)
    ]


def test_compare_rankings():
    changes = compare_rankings(["A", "B", "C", "D"], ["B", "A", "D", "E"])

    by_symbol = {c.symbol: c for c in changes}
    assert by_symbol["A"].change == RankChange.UP
    assert by_symbol["A"].change_value == 1
    assert by_symbol["B"].change == RankChange.DOWN
    assert by_symbol["C"].change == RankChange.NEW
    assert by_symbol["C"].previous_position is None
    assert by_symbol["D"].change == RankChange.DOWN
    assert by_symbol["D"].change_value == 1


def test_price_trigger_first_tick_is_baseline():
    decision = evaluate_price_trigger(
        entries(("BTCUSDT", 3.0)), None, [], new_entry=True, min_price_change=0
    )
    assert not decision.fired


def test_price_trigger_new_entry():
    decision = evaluate_price_trigger(
        entries(("BTCUSDT", 3.0), ("SOLUSDT", 2.0)),
        ["BTCUSDT", "ETHUSDT"],
        [],
        new_entry=True,
        min_price_change=0,
    )
    assert decision.fired
    assert decision.new_entries == ["SOLUSDT"]


def test_price_trigger_new_entry_disabled():
    decision = evaluate_price_trigger(
        entries(("SOLUSDT", 2.0)), ["BTCUSDT"], [], new_entry=False, min_price_change=0
    )
    assert not decision.fired


def test_price_trigger_threshold_crossing():
    top = entries(("BTCUSDT", 6.0), ("ETHUSDT", 4.0))

    first = evaluate_price_trigger(top, ["BTCUSDT", "ETHUSDT"], [], False, 5.0)
    assert first.movers == ["BTCUSDT"]
    assert first.above == ["BTCUSDT"]

    # 已超过阈值的不重复触发
    second = evaluate_price_trigger(top, ["BTCUSDT", "ETHUSDT"], first.above, False, 5.0)
    assert not second.fired
    assert second.above == ["BTCUSDT"]


def test_price_trigger_threshold_applies_on_first_tick():
    decision = evaluate_price_trigger(entries(("BTCUSDT", 6.0)), None, [], True, 5.0)
    assert decision.movers == ["BTCUSDT"]
    assert decision.new_entries == []


def test_rank_trigger_shift():
    previous = ["A", "B", "C", "D", "E", "F"]
    current = entries(("F", 9.0), ("A", 8.0), ("B", 7.0), ("C", 6.0), ("D", 5.0), ("E", 4.0))

    decision = evaluate_rank_trigger(current, previous, new_entry=True, min_rank_shift=3)

    assert decision.new_entries == []
    assert [c.symbol for c in decision.rank_shifts] == ["F"]
    assert decision.rank_shifts[0].change_value == 5


def test_rank_trigger_new_entry_and_baseline():
    current = entries(("X", 9.0), ("A", 8.0))

    assert not evaluate_rank_trigger(current, None, True, 3).fired

    decision = evaluate_rank_trigger(current, ["A", "B"], True, 3)
    assert decision.new_entries == ["X"]
