"""请求节流锁。

同一时刻只允许一个持有者；持有者释放时先等待一段带抖动的冷却时间
（duration * [0.85, 1.15]），再放行下一个请求。冷却可以被取消事件打断。
"""

import asyncio
import random
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable, Optional

DEFAULT_DELAY = 5.0
JITTER_MIN = 0.85
JITTER_MAX = 1.15

Release = Callable[[], Awaitable[None]]


class RateLimiter:
    def __init__(self, delay: Optional[float] = None):
        if not delay or delay <= 0:
            delay = DEFAULT_DELAY
        self.delay = delay
        self._lock = asyncio.Lock()

    @property
    def locked(self) -> bool:
        return self._lock.locked()

    async def acquire(
        self,
        cancel: Optional[asyncio.Event] = None,
        duration: Optional[float] = None,
    ) -> Release:
        """获取锁，返回 release 协程函数。release 只能调用一次。"""

        await self._lock.acquire()
        base = self.delay if duration is None else duration
        cooldown = base * random.uniform(JITTER_MIN, JITTER_MAX)
        released = False

        async def release() -> None:
            nonlocal released
            if released:
                return
            released = True
            try:
                await _sleep_unless_cancelled(cooldown, cancel)
            finally:
                self._lock.release()

        return release

    @asynccontextmanager
    async def hold(
        self,
        cancel: Optional[asyncio.Event] = None,
        duration: Optional[float] = None,
    ) -> AsyncIterator[None]:
        release = await self.acquire(cancel, duration)
        try:
            yield
        finally:
            await release()


async def _sleep_unless_cancelled(seconds: float, cancel: Optional[asyncio.Event]) -> None:
    if seconds <= 0:
        return
    if cancel is None:
        await asyncio.sleep(seconds)
        return
    if cancel.is_set():
        return
    try:
        await asyncio.wait_for(cancel.wait(), timeout=seconds)
    except asyncio.TimeoutError:
        pass


async def sleep_or_cancel(seconds: float, cancel: Optional[asyncio.Event]) -> bool:
    """等待 seconds 秒；若期间取消事件被触发则提前返回 False。"""

    await _sleep_unless_cancelled(seconds, cancel)
    return not (cancel is not None and cancel.is_set())
