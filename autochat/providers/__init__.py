"""对话后端集成层。

该包下的模块负责：
- 定义 ChatStream 抽象与装饰器 (base、wrappers)。
- 维护后端地址与协议常量 (registry)。
- 提供各后端的具体实现 (openai_client、bing_client / bing_conn)。
"""

import asyncio
from typing import Optional, Tuple

from autochat.config.settings import Settings, settings
from autochat.domain.exceptions import ValidationError
from autochat.domain.models import Role
from autochat.domain.session import Session
from autochat.infrastructure.storage.session_store import YamlSessionStore
from autochat.memory import FixedMemory
from autochat.providers.base import ChatStream
from autochat.providers.bing_client import BingClient
from autochat.providers.openai_client import OpenAIClient


def load_session(cfg: Optional[Settings] = None) -> Tuple[Session, YamlSessionStore]:
    """读取实时后端的会话凭据文件。"""

    cfg = cfg or settings
    store = YamlSessionStore(cfg.bing_session_file or None)
    return store.load(), store


class ChatFactory:
    """按配置创建对话。同一个工厂创建的对话共享一个后端客户端（以及它的节流锁）。"""

    def __init__(self, cfg: Optional[Settings] = None, cancel: Optional[asyncio.Event] = None):
        self.cfg = cfg or settings
        self.cancel = cancel
        self._openai: Optional[OpenAIClient] = None
        self._bing: Optional[BingClient] = None

    @property
    def ai(self) -> str:
        return self.cfg.ai.lower()

    def openai_client(self) -> OpenAIClient:
        if self._openai is None:
            self._openai = OpenAIClient(
                self.cfg.openai_key,
                wait=self.cfg.openai_wait,
                max_tokens=self.cfg.openai_max_tokens,
                base_url=self.cfg.openai_base_url,
                http_timeout=self.cfg.http_timeout,
                proxy=self.cfg.proxy,
            )
        return self._openai

    def bing_client(self) -> BingClient:
        if self._bing is None:
            session, store = load_session(self.cfg)
            self._bing = BingClient(
                session,
                store,
                wait=self.cfg.bing_wait,
                proxy=self.cfg.proxy,
                http_timeout=self.cfg.http_timeout,
            )
        return self._bing

    async def open(self, role: Role = "user", keep_first: int = 0, ai: Optional[str] = None) -> ChatStream:
        """打开一个新对话。

        Args:
            role: OpenAI 后端中 prompt 使用的角色（auto 模式用 "system"）。
            keep_first: 记忆裁剪时始终保留的前几条消息。
            ai: 指定后端，默认取配置中的 ai。
        """

        name = (ai or self.ai).lower()
        if name == "openai":
            memory = FixedMemory(keep_first, self.cfg.openai_max_tokens)
            return self.openai_client().chat(self.cfg.model, role, memory, cancel=self.cancel)
        if name == "bing":
            return await self.bing_client().chat(self.cancel)
        raise ValidationError(code="INVALID_AI", message=f"invalid ai: {name}")

    async def aclose(self) -> None:
        if self._bing is not None:
            await self._bing.aclose()
            self._bing = None
