# market_pulse/config.py
from pathlib import Path

import yaml
from pydantic import BaseModel


class TelegramConfig(BaseModel):
    bot_token: str


class DatabaseConfig(BaseModel):
    path: str = "data/pulse.db"


class CollectorConfig(BaseModel):
    interval_seconds: int = 60
    granularity: str = "1m"
    quote_asset: str = "USDT"


class LedgerConfig(BaseModel):
    retention_hours: int = 168  # 最长窗口 7d
    safety_margin_hours: int = 1
    cleanup_minutes: int = 60


class RankingConfig(BaseModel):
    windows_minutes: dict[str, int] = {"1h": 60, "4h": 240, "24h": 1440}
    default_top_n: int = 10


class HighCacheConfig(BaseModel):
    timeframes: list[str] = ["1h", "4h", "24h", "7d", "all_time"]
    flush_seconds: int = 60
    backfill: bool = True
    backfill_concurrency: int = 8


class PushConfig(BaseModel):
    schedule_tick_seconds: int = 60
    trigger_cadence_minutes: dict[str, int] = {"1h": 3, "4h": 15, "24h": 30}
    default_trigger_cadence_minutes: int = 5
    breakthrough_tick_seconds: int = 10
    cooldown_minutes: int = 60


class OpenInterestConfig(BaseModel):
    enabled: bool = True
    cadence_minutes: dict[str, int] = {"1h": 3, "4h": 15, "24h": 30}
    top_n: int = 10
    universe_size: int = 50
    max_concurrency: int = 8


class FundingConfig(BaseModel):
    enabled: bool = True
    cadence_minutes: int = 10
    top_n: int = 10


class Config(BaseModel):
    symbols: list[str] = []
    telegram: TelegramConfig
    database: DatabaseConfig = DatabaseConfig()
    collector: CollectorConfig = CollectorConfig()
    ledger: LedgerConfig = LedgerConfig()
    ranking: RankingConfig = RankingConfig()
    high_cache: HighCacheConfig = HighCacheConfig()
    push: PushConfig = PushConfig()
    open_interest: OpenInterestConfig = OpenInterestConfig()
    funding: FundingConfig = FundingConfig()


def load_config(path: Path) -> Config:
    with open(path) as f:
        data = yaml.safe_load(f)
    return Config(**data)
