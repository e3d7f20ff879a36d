# market_pulse/storage/models.py
from dataclasses import dataclass, field
from typing import Any

# 由长到短，突破检测按此顺序评估
TIMEFRAMES = ("all_time", "7d", "24h", "4h", "1h")

TIMEFRAME_WINDOW_MS: dict[str, int | None] = {
    "1h": 3600 * 1000,
    "4h": 4 * 3600 * 1000,
    "24h": 24 * 3600 * 1000,
    "7d": 7 * 24 * 3600 * 1000,
    "all_time": None,
}


@dataclass(frozen=True)
class PriceSnapshot:
    id: int | None
    symbol: str
    price: float
    volume_24h: float
    price_change_1h: float
    price_change_24h: float
    high_24h: float
    granularity: str  # 采样粒度 1m / 5m / ...
    captured_at: int  # ms


@dataclass
class HistoricalHigh:
    symbol: str
    timeframe: str  # 1h / 4h / 24h / 7d / all_time
    high_value: float
    high_timestamp: int  # 极值出现时间 (ms)
    last_updated: int  # 最近一次评估时间 (ms)


@dataclass(frozen=True)
class BreakthroughEvent:
    symbol: str
    timeframe: str
    old_high: float
    new_high: float
    break_percent: float
    detected_at: int


@dataclass
class RankingEntry:
    symbol: str
    percent_change: float
    rank: int
    value: float | None = None  # 最新价格或持仓价值


@dataclass
class RankingSnapshot:
    timeframe: str
    generated_at: int
    entries: list[RankingEntry] = field(default_factory=list)
    average_change: float = 0.0
    qualifying: int = 0
    error: str | None = None

    @property
    def status(self) -> str:
        if self.error is not None:
            return "error"
        return "ok" if self.entries else "empty"

    @property
    def symbols(self) -> list[str]:
        return [e.symbol for e in self.entries]


@dataclass
class PushConfigRecord:
    id: int | None
    user_id: str
    kind: str  # schedule / trigger / breakthrough
    params: dict[str, Any]
    is_enabled: bool
    created_at: int
    updated_at: int


@dataclass
class PushDispatchState:
    user_id: str
    config_id: int
    last_sent_at: int | None = None
    last_top: dict[str, list[str]] = field(default_factory=dict)  # {timeframe: [symbol, ...]}
    above: dict[str, list[str]] = field(default_factory=dict)  # {timeframe: 超过阈值的币种}


@dataclass(frozen=True)
class BreakthroughMark:
    config_id: int
    symbol: str
    timeframe: str
    threshold: float
    notified_at: int


@dataclass(frozen=True)
class OpenInterestPoint:
    symbol: str
    open_interest: float  # 合约张数
    open_interest_value: float | None  # USD 价值
    timestamp: int
