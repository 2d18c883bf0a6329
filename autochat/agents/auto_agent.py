"""自动执行循环。

send prompt → read reply → 解析命令 → 执行 → 结果序列化为下一条 prompt。

终止条件：
- 步数达到上限（0 表示不限制）；
- 停止事件被触发（外部取消，或模型执行了 exit 命令）；
- ChatStream 抛出不可恢复的异常（关闭、协议错误、超出预算等）。

命令解析失败不会终止循环：错误信息作为下一条 prompt 反馈给模型，
让它有机会自我修正。
"""

import asyncio
import json
import logging
import time
from typing import Any, Dict, Optional
from uuid import uuid4

from autochat.infrastructure.logging.logger import log_event
from autochat.providers.base import ChatStream
from autochat.tools.executor import CommandExecutor


class AutoAgent:
    def __init__(
        self,
        chat: ChatStream,
        executor: CommandExecutor,
        steps: int = 0,
        stop: Optional[asyncio.Event] = None,
    ):
        self._chat = chat
        self._executor = executor
        self.steps = steps
        self.stop = stop or asyncio.Event()

    async def run(self, prompt: str) -> int:
        """运行循环，返回实际执行的步数。"""

        start_time = time.time()
        log_ctx: Dict[str, Any] = {"trace_id": f"tr-{uuid4().hex}", "chat": self._chat.name}
        log_event(logging.INFO, "starting auto mode", log_ctx, max_steps=self.steps)

        send = prompt
        count = 0
        while True:
            if self.stop.is_set():
                log_event(logging.INFO, "Stop requested", log_ctx, step=count)
                break
            if self.steps > 0 and count >= self.steps:
                log_event(logging.INFO, "Reached max steps", log_ctx, step=count)
                break
            count += 1

            await self._chat.write(send)
            reply = await self._chat.read()

            results = await self._executor.run(reply)
            log_event(
                logging.INFO,
                "Completed agent step",
                log_ctx,
                step=count,
                results=len(results),
                commands=[next(iter(r), "") for r in results],
            )
            send = json.dumps(results, indent=2, ensure_ascii=False, default=str)

        log_event(
            logging.INFO,
            "auto mode finished",
            log_ctx,
            steps=count,
            elapsed_seconds=round(time.time() - start_time, 2),
        )
        return count
