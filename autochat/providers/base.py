"""ChatStream 抽象。

上层 AgentLoop 不直接依赖具体后端的 HTTP / WebSocket 细节，而是依赖这个
双工契约：

- write(prompt): 发送一条 prompt，并同步完成一次完整的后端往返
  （节流等待、请求、记忆更新）；回复暂存在一个 Future（回复句柄）中。
- read(): 按 FIFO 顺序等待最早一个回复句柄完成并返回回复。
- close(): 触发取消事件并释放底层连接；之后 read/write 立即抛 ChatClosedError。

写和读分开，是为了让日志、退出检测等装饰器可以分别包在两个方向上
（见 providers/wrappers.py），而不需要后端感知它们。
"""

import asyncio
from abc import ABC, abstractmethod
from collections import deque
from typing import Deque, Optional

from autochat.domain.exceptions import ChatClosedError


class ChatStream(ABC):
    """双工对话流协议。"""

    name: str = "chat"

    @abstractmethod
    async def write(self, prompt: str) -> int:
        ...

    @abstractmethod
    async def read(self) -> str:
        ...

    @abstractmethod
    async def close(self) -> None:
        ...

    async def ask(self, prompt: str) -> str:
        """一次完整的写-读往返。"""

        await self.write(prompt)
        return await self.read()

    async def __aenter__(self) -> "ChatStream":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()


class BaseChatStream(ChatStream):
    """具体后端的公共实现：关闭状态、父级取消事件联动、回复句柄队列。

    子类只需实现 _exchange(prompt) -> reply，以及按需覆盖 _release()。
    """

    def __init__(self, cancel: Optional[asyncio.Event] = None):
        self._parent_cancel = cancel
        self.closed = asyncio.Event()
        self._handles: Deque["asyncio.Future[str]"] = deque()
        self._staged = asyncio.Event()
        self._last: Optional["asyncio.Future[str]"] = None
        self._watcher: Optional[asyncio.Task] = None

    @property
    def is_closed(self) -> bool:
        if self._parent_cancel is not None and self._parent_cancel.is_set():
            return True
        return self.closed.is_set()

    def _ensure_open(self) -> None:
        if self.is_closed:
            raise ChatClosedError(f"{self.name}: chat closed")
        if self._parent_cancel is not None and self._watcher is None:
            self._watcher = asyncio.get_running_loop().create_task(self._watch_parent())

    async def _watch_parent(self) -> None:
        assert self._parent_cancel is not None
        await self._parent_cancel.wait()
        await self.close()

    @abstractmethod
    async def _exchange(self, prompt: str) -> str:
        ...

    def reply_handle(self) -> Optional["asyncio.Future[str]"]:
        """最近一次 write 的回复句柄。"""

        return self._last

    async def write(self, prompt: str) -> int:
        self._ensure_open()
        handle: "asyncio.Future[str]" = asyncio.get_running_loop().create_future()
        self._last = handle
        exchange = asyncio.ensure_future(self._exchange(prompt))
        closer = asyncio.ensure_future(self.closed.wait())
        try:
            await asyncio.wait({exchange, closer}, return_when=asyncio.FIRST_COMPLETED)
        except BaseException:
            exchange.cancel()
            handle.cancel()
            raise
        finally:
            closer.cancel()
        if not exchange.done():
            # 关闭先于交换完成：取消交换并等待它清理完毕
            exchange.cancel()
            handle.cancel()
            await asyncio.gather(exchange, return_exceptions=True)
            raise ChatClosedError(f"{self.name}: chat closed")
        try:
            reply = exchange.result()
        except BaseException:
            handle.cancel()
            raise
        handle.set_result(reply)
        self._handles.append(handle)
        self._staged.set()
        return len(prompt)

    async def read(self) -> str:
        self._ensure_open()
        while not self._handles:
            self._staged.clear()
            staged = asyncio.ensure_future(self._staged.wait())
            closer = asyncio.ensure_future(self.closed.wait())
            try:
                await asyncio.wait({staged, closer}, return_when=asyncio.FIRST_COMPLETED)
            finally:
                staged.cancel()
                closer.cancel()
            if self.closed.is_set():
                raise ChatClosedError(f"{self.name}: chat closed")
        handle = self._handles.popleft()
        if handle.cancelled():
            raise ChatClosedError(f"{self.name}: chat closed")
        return await handle

    async def _release(self) -> None:
        """释放底层传输（子类覆盖）。"""

    async def close(self) -> None:
        if self.closed.is_set():
            return
        self.closed.set()
        while self._handles:
            self._handles.popleft().cancel()
        watcher, self._watcher = self._watcher, None
        if watcher is not None and watcher is not asyncio.current_task():
            watcher.cancel()
        await self._release()
