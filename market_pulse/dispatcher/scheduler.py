# market_pulse/dispatcher/scheduler.py
import asyncio
import logging
from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)


class PeriodicTask:
    """
    固定周期任务

    计时器独立于 tick 运行：上一个 tick 未结束时，本次到期的 tick 直接跳过（不排队）。
    stop() 取消计时器和进行中的 tick，并等待两者结束。
    """

    def __init__(
        self,
        name: str,
        interval_seconds: float,
        func: Callable[[], Awaitable[object]],
        run_immediately: bool = False,
    ):
        self.name = name
        self.interval_seconds = interval_seconds
        self.func = func
        self.run_immediately = run_immediately
        self.tick_count = 0
        self.skipped_count = 0
        self.error_count = 0
        self._stop_event = asyncio.Event()
        self._timer: asyncio.Task[None] | None = None
        self._in_flight: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._timer is not None and not self._timer.done()

    @property
    def busy(self) -> bool:
        return self._in_flight is not None and not self._in_flight.done()

    def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        self._timer = asyncio.create_task(self._run(), name=f"timer:{self.name}")
        logger.info(f"{self.name} scheduled every {self.interval_seconds}s")

    async def stop(self) -> None:
        self._stop_event.set()
        for task in (self._timer, self._in_flight):
            if task and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._timer = None
        self._in_flight = None

    async def _run(self) -> None:
        if self.run_immediately:
            self._fire()
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_seconds)
            except TimeoutError:
                pass
            if self._stop_event.is_set():
                break
            self._fire()

    def _fire(self) -> None:
        if self.busy:
            self.skipped_count += 1
            logger.debug(f"{self.name} tick skipped: previous tick still running")
            return
        self._in_flight = asyncio.create_task(self._tick(), name=f"tick:{self.name}")

    async def _tick(self) -> None:
        if self._stop_event.is_set():
            return
        self.tick_count += 1
        try:
            await self.func()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.error_count += 1
            logger.error(f"{self.name} tick failed: {e}")
