# market_pulse/alert/trigger.py
from dataclasses import dataclass, field
from enum import Enum

from market_pulse.storage.models import RankingEntry


class RankChange(Enum):
    NEW = "new"
    UP = "up"
    DOWN = "down"
    SAME = "same"


@dataclass
class RankingChange:
    symbol: str
    current_position: int
    previous_position: int | None
    change: RankChange
    change_value: int = 0  # 名次变化幅度


@dataclass
class TriggerDecision:
    new_entries: list[str] = field(default_factory=list)
    movers: list[str] = field(default_factory=list)  # 新越过涨幅阈值的币种
    rank_shifts: list[RankingChange] = field(default_factory=list)
    above: list[str] = field(default_factory=list)  # 当前超过阈值的币种，供下次对比

    @property
    def fired(self) -> bool:
        return bool(self.new_entries or self.movers or self.rank_shifts)


def compare_rankings(current: list[str], previous: list[str]) -> list[RankingChange]:
    """对比两次 Top-N（按名次排列的币种列表）"""
    previous_positions = {symbol: i + 1 for i, symbol in enumerate(previous)}
    changes: list[RankingChange] = []
    for i, symbol in enumerate(current):
        position = i + 1
        prev = previous_positions.get(symbol)
        if prev is None:
            changes.append(RankingChange(symbol, position, None, RankChange.NEW))
        elif prev > position:
            changes.append(RankingChange(symbol, position, prev, RankChange.UP, prev - position))
        elif prev < position:
            changes.append(RankingChange(symbol, position, prev, RankChange.DOWN, position - prev))
        else:
            changes.append(RankingChange(symbol, position, prev, RankChange.SAME))
    return changes


def evaluate_price_trigger(
    entries: list[RankingEntry],
    previous_top: list[str] | None,
    previous_above: list[str],
    new_entry: bool,
    min_price_change: float,
) -> TriggerDecision:
    """
    涨幅榜触发判断

    Args:
        entries: 当前 Top-N
        previous_top: 上次保存的 Top-N，None 表示首次（只建立基线）
        previous_above: 上次已超过涨幅阈值的币种
        new_entry: 新进榜是否触发
        min_price_change: 涨幅阈值，0 表示不启用
    """
    decision = TriggerDecision()
    current = [e.symbol for e in entries]

    if new_entry and previous_top is not None:
        changes = compare_rankings(current, previous_top)
        decision.new_entries = [c.symbol for c in changes if c.change == RankChange.NEW]

    if min_price_change > 0:
        decision.above = [e.symbol for e in entries if e.percent_change > min_price_change]
        already = set(previous_above)
        decision.movers = [s for s in decision.above if s not in already]

    return decision


def evaluate_rank_trigger(
    entries: list[RankingEntry],
    previous_top: list[str] | None,
    new_entry: bool,
    min_rank_shift: int,
) -> TriggerDecision:
    """持仓榜触发判断：新进 Top-N 或名次变动超过 min_rank_shift"""
    decision = TriggerDecision()
    if previous_top is None:
        return decision

    changes = compare_rankings([e.symbol for e in entries], previous_top)
    if new_entry:
        decision.new_entries = [c.symbol for c in changes if c.change == RankChange.NEW]
    decision.rank_shifts = [
        c
        for c in changes
        if c.change in (RankChange.UP, RankChange.DOWN) and c.change_value > min_rank_shift
    ]
    return decision
