# market_pulse/alert/push_config.py
import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Annotated, Any, Literal

from pydantic import BaseModel, Field, TypeAdapter, ValidationError, field_validator

from market_pulse.storage.database import Database
from market_pulse.storage.models import TIMEFRAMES, PushConfigRecord

if TYPE_CHECKING:
    from market_pulse.dispatcher.state import DispatchStateStore

logger = logging.getLogger(__name__)

PUSH_KINDS = ("schedule", "trigger", "breakthrough")

# 资金费率按 8h 结算周期统计
FUNDING_TIMEFRAME = "8h"


class PushConfigError(ValueError):
    """推送配置参数不合法"""


class PushConfigNotFound(LookupError):
    pass


def _unique(values: list[str]) -> list[str]:
    if len(set(values)) != len(values):
        raise ValueError("timeframes must not repeat")
    return values


class ScheduleParams(BaseModel):
    kind: Literal["schedule"] = "schedule"
    interval_minutes: int = Field(gt=0)
    timeframes: list[str] = Field(min_length=1)
    is_enabled: bool = True

    check_timeframes = field_validator("timeframes")(_unique)


class TriggerConditions(BaseModel):
    new_entry: bool = True
    min_price_change: float = Field(default=0.0, ge=0)  # 0 表示不启用涨幅条件
    min_rank_shift: int = Field(default=3, ge=1)  # 持仓排名变动阈值


class TriggerParams(BaseModel):
    kind: Literal["trigger"] = "trigger"
    conditions: TriggerConditions = TriggerConditions()
    timeframes: list[str] = Field(min_length=1)
    metric: Literal["price", "open_interest", "funding"] = "price"
    top_n: int | None = Field(default=None, gt=0)
    is_enabled: bool = True

    check_timeframes = field_validator("timeframes")(_unique)


class BreakthroughParams(BaseModel):
    kind: Literal["breakthrough"] = "breakthrough"
    thresholds: list[float] = Field(min_length=1)
    timeframes: list[str] = Field(default_factory=lambda: list(TIMEFRAMES), min_length=1)
    is_enabled: bool = True

    check_timeframes = field_validator("timeframes")(_unique)

    @field_validator("thresholds")
    @classmethod
    def check_thresholds(cls, values: list[float]) -> list[float]:
        if any(v < 0 for v in values):
            raise ValueError("thresholds must be >= 0")
        if any(b <= a for a, b in zip(values, values[1:])):
            raise ValueError("thresholds must be strictly ascending")
        return values


PushParams = Annotated[
    ScheduleParams | TriggerParams | BreakthroughParams,
    Field(discriminator="kind"),
]
_params_adapter: TypeAdapter[ScheduleParams | TriggerParams | BreakthroughParams] = TypeAdapter(
    PushParams
)


@dataclass
class UserPushConfig:
    id: int
    user_id: str
    kind: str
    params: ScheduleParams | TriggerParams | BreakthroughParams
    created_at: int
    updated_at: int

    @property
    def is_enabled(self) -> bool:
        return self.params.is_enabled


def _merge_patch(base: dict[str, Any], patch: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in patch.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge_patch(merged[key], value)
        else:
            merged[key] = value
    return merged


class PushConfigStore:
    """用户推送配置（schedule / trigger / breakthrough）"""

    def __init__(
        self,
        db: Database,
        ranking_timeframes: list[str] | None = None,
        state: "DispatchStateStore | None" = None,
    ):
        self.db = db
        self.ranking_timeframes = ranking_timeframes or ["1h", "4h", "24h"]
        self.state = state

    def validate(
        self, kind: str, params: dict[str, Any]
    ) -> ScheduleParams | TriggerParams | BreakthroughParams:
        if kind not in PUSH_KINDS:
            raise PushConfigError(f"Unknown push kind: {kind}")
        if params.get("kind", kind) != kind:
            raise PushConfigError(f"params kind {params.get('kind')!r} does not match {kind!r}")
        try:
            parsed = _params_adapter.validate_python({**params, "kind": kind})
        except ValidationError as e:
            raise PushConfigError(str(e)) from e

        if isinstance(parsed, BreakthroughParams):
            allowed: list[str] | tuple[str, ...] = TIMEFRAMES
        elif isinstance(parsed, TriggerParams) and parsed.metric == "funding":
            allowed = [FUNDING_TIMEFRAME]
        else:
            allowed = self.ranking_timeframes
        unknown = [tf for tf in parsed.timeframes if tf not in allowed]
        if unknown:
            raise PushConfigError(f"Unsupported timeframes for {kind}: {unknown}")
        return parsed

    @staticmethod
    def _from_record(record: PushConfigRecord) -> UserPushConfig:
        params = _params_adapter.validate_python({**record.params, "kind": record.kind})
        return UserPushConfig(
            id=record.id or 0,
            user_id=record.user_id,
            kind=record.kind,
            params=params,
            created_at=record.created_at,
            updated_at=record.updated_at,
        )

    async def create(self, user_id: str, kind: str, params: dict[str, Any]) -> UserPushConfig:
        parsed = self.validate(kind, params)
        now = int(time.time() * 1000)
        record = PushConfigRecord(
            id=None,
            user_id=user_id,
            kind=kind,
            params=parsed.model_dump(),
            is_enabled=parsed.is_enabled,
            created_at=now,
            updated_at=now,
        )
        record.id = await self.db.insert_push_config(record)
        logger.info(f"Push config {record.id} created: user={user_id} kind={kind}")
        return self._from_record(record)

    async def get(self, config_id: int) -> UserPushConfig | None:
        record = await self.db.get_push_config(config_id)
        return self._from_record(record) if record else None

    async def list_by_user(self, user_id: str) -> list[UserPushConfig]:
        records = await self.db.get_push_configs_by_user(user_id)
        return [self._from_record(r) for r in records]

    async def list_enabled(self, kind: str) -> list[UserPushConfig]:
        records = await self.db.get_push_configs(kind, enabled_only=True)
        return [self._from_record(r) for r in records]

    async def count_enabled(self) -> dict[str, int]:
        counts = await self.db.count_enabled_push_configs()
        return {kind: counts.get(kind, 0) for kind in PUSH_KINDS}

    async def update(self, config_id: int, partial: dict[str, Any]) -> UserPushConfig:
        """merge-patch 更新，未指定字段保持不变"""
        record = await self.db.get_push_config(config_id)
        if record is None:
            raise PushConfigNotFound(f"Push config {config_id} not found")
        if "kind" in partial and partial["kind"] != record.kind:
            raise PushConfigError("kind cannot be changed")

        merged = _merge_patch(record.params, partial)
        parsed = self.validate(record.kind, merged)
        record.params = parsed.model_dump()
        record.is_enabled = parsed.is_enabled
        record.updated_at = int(time.time() * 1000)
        await self.db.update_push_config(record)
        return self._from_record(record)

    async def set_enabled(self, config_id: int, enabled: bool) -> UserPushConfig:
        return await self.update(config_id, {"is_enabled": enabled})

    async def delete(self, config_id: int) -> bool:
        """删除配置及其推送状态"""
        record = await self.db.get_push_config(config_id)
        if record is None:
            return False
        deleted = await self.db.delete_push_config(config_id)
        if self.state is not None:
            self.state.forget(record.user_id, config_id)
        logger.info(f"Push config {config_id} deleted: user={record.user_id}")
        return deleted
