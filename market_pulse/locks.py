# market_pulse/locks.py
import asyncio
from collections.abc import AsyncIterator, Hashable, Iterable
from contextlib import AsyncExitStack, asynccontextmanager


class KeyedLock:
    """按 key 分配的 asyncio.Lock，同一 key 串行，不同 key 互不阻塞"""

    def __init__(self) -> None:
        self._locks: dict[Hashable, asyncio.Lock] = {}

    def get(self, key: Hashable) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    @asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncIterator[None]:
        async with self.get(key):
            yield

    @asynccontextmanager
    async def hold_many(self, keys: Iterable[Hashable]) -> AsyncIterator[None]:
        # 固定顺序加锁，避免相互等待
        async with AsyncExitStack() as stack:
            for key in sorted(set(keys), key=repr):
                await stack.enter_async_context(self.get(key))
            yield

    def __len__(self) -> int:
        return len(self._locks)
