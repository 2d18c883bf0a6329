"""ChatStream 装饰器。

- TranscriptLogger: 记录每条 prompt / 回复到日志与 log_<时间戳>.txt。
- ExitDetector: 回复中出现退出短语时，read 抛出 ExitRequested。
- NotAvailable: 占位流，未配置辅助后端时使用。

装饰器可以任意嵌套，被包装的后端不感知它们的存在。
"""

import logging
from pathlib import Path
from typing import Optional

from autochat.domain.exceptions import ExitRequested
from autochat.infrastructure.logging.logger import logger
from autochat.infrastructure.storage.files import TranscriptFile
from autochat.providers.base import ChatStream

DEFAULT_EXIT_PHRASE = "exit-igogpt"
NOT_AVAILABLE_REPLY = "sorry, not available"

READ_MARKER = ">>>>>>>>>>>>>>>>>>>>"
WRITE_MARKER = "<<<<<<<<<<<<<<<<<<<<"


class ChatStreamWrapper(ChatStream):
    def __init__(self, inner: ChatStream):
        self.inner = inner
        self.name = inner.name

    async def write(self, prompt: str) -> int:
        return await self.inner.write(prompt)

    async def read(self) -> str:
        return await self.inner.read()

    async def close(self) -> None:
        await self.inner.close()


class TranscriptLogger(ChatStreamWrapper):
    def __init__(self, inner: ChatStream, log_dir: Optional[str | Path] = None):
        super().__init__(inner)
        self._file = TranscriptFile(log_dir)

    @property
    def path(self) -> Optional[Path]:
        return self._file.path

    async def write(self, prompt: str) -> int:
        n = await self.inner.write(prompt)
        logger.log(logging.INFO, WRITE_MARKER + "\n" + prompt)
        self._file.append(WRITE_MARKER, prompt)
        return n

    async def read(self) -> str:
        reply = await self.inner.read()
        logger.log(logging.INFO, READ_MARKER + "\n" + reply)
        self._file.append(READ_MARKER, reply)
        return reply

    async def close(self) -> None:
        try:
            await self.inner.close()
        finally:
            self._file.close()


class ExitDetector(ChatStreamWrapper):
    def __init__(self, inner: ChatStream, phrase: str = DEFAULT_EXIT_PHRASE):
        super().__init__(inner)
        self.phrase = phrase.lower()

    async def read(self) -> str:
        reply = await self.inner.read()
        if self.phrase and self.phrase in reply.lower():
            raise ExitRequested(f"{self.name}: exit condition detected")
        return reply


class NotAvailable(ChatStream):
    name = "not-available"

    async def write(self, prompt: str) -> int:
        return len(prompt)

    async def read(self) -> str:
        return NOT_AVAILABLE_REPLY

    async def close(self) -> None:
        return None
