# market_pulse/dispatcher/state.py
import copy
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from market_pulse.locks import KeyedLock
from market_pulse.storage.database import Database
from market_pulse.storage.models import BreakthroughMark, PushDispatchState


class DispatchStateStore:
    """
    推送去重状态

    先写库，写库成功后才更新内存副本；同一 (user, config) 的读改写需持有 locked()。
    """

    def __init__(self, db: Database):
        self.db = db
        self._locks = KeyedLock()
        self._cache: dict[tuple[str, int], PushDispatchState] = {}

    @asynccontextmanager
    async def locked(self, user_id: str, config_id: int) -> AsyncIterator[None]:
        async with self._locks.hold((user_id, config_id)):
            yield

    async def get(self, user_id: str, config_id: int) -> PushDispatchState:
        """返回状态副本，修改后需 commit()"""
        key = (user_id, config_id)
        state = self._cache.get(key)
        if state is None:
            state = await self.db.get_dispatch_state(user_id, config_id)
            if state is None:
                state = PushDispatchState(user_id=user_id, config_id=config_id)
            self._cache[key] = state
        return copy.deepcopy(state)

    async def commit(self, state: PushDispatchState) -> None:
        await self.db.upsert_dispatch_state(state)
        self._cache[(state.user_id, state.config_id)] = copy.deepcopy(state)

    async def notified_buckets(
        self, config_id: int, since: int
    ) -> set[tuple[str, str, float]]:
        marks = await self.db.get_breakthrough_marks(config_id, since)
        return {(m.symbol, m.timeframe, m.threshold) for m in marks}

    async def record_buckets(self, marks: list[BreakthroughMark]) -> None:
        if marks:
            await self.db.insert_breakthrough_marks(marks)

    def forget(self, user_id: str, config_id: int) -> None:
        self._cache.pop((user_id, config_id), None)
