"""OpenAI 兼容接口适配器。

本模块负责：

1. 把每次 write 的 prompt 追加到对话记忆，并由记忆决定本次重放的上下文。
2. 在节流锁内调用 /chat/completions，处理网络/限流/API 异常。
3. 把回复追加回记忆，并暂存给 read。

限流（429）时等待 retry_wait 秒后重试；等待过程可被取消事件打断。
"""

import logging
from typing import Any, Dict, List, Optional

import httpx

from autochat.domain.exceptions import ApiError, ChatClosedError, NetworkError, RateLimitError, ValidationError
from autochat.domain.models import Message, Role
from autochat.infrastructure.logging.logger import logger
from autochat.infrastructure.ratelimit import RateLimiter, sleep_or_cancel
from autochat.memory.base import Memory
from autochat.providers.base import BaseChatStream
from autochat.providers.registry import OPENAI_CONFIG


class OpenAIClient:
    """OpenAI 客户端：持有密钥、节流锁和 HTTP 配置，可创建多个对话。"""

    name = "openai"

    def __init__(
        self,
        api_key: Optional[str],
        wait: Optional[float] = None,
        max_tokens: int = 0,
        base_url: Optional[str] = None,
        http_timeout: float = 300.0,
        proxy: Optional[str] = None,
    ):
        self._api_key = api_key
        self.rate_limit = RateLimiter(wait)
        self.max_tokens = max_tokens
        self.base_url = (base_url or OPENAI_CONFIG.base_url).rstrip("/")
        self.http_timeout = http_timeout
        self.proxy = proxy
        self.retry_wait = OPENAI_CONFIG.retry_wait

    def chat(self, model: str, role: Role, memory: Memory, cancel=None) -> "OpenAIChat":
        return OpenAIChat(self, model=model, role=role, memory=memory, cancel=cancel)

    async def complete(self, model: str, messages: List[Message]) -> Dict[str, Any]:
        """执行一次非流式 chat completion 调用，返回原始 JSON。"""

        if not self._api_key:
            raise ValidationError(code="MISSING_API_KEY", message="AUTOCHAT_OPENAI_KEY not set")
        payload: Dict[str, Any] = {
            "model": model,
            "messages": [{"role": m.role, "content": m.content} for m in messages],
        }
        if self.max_tokens:
            payload["max_tokens"] = self.max_tokens
        kwargs: Dict[str, Any] = {"timeout": self.http_timeout, "trust_env": False}
        if self.proxy:
            kwargs["proxy"] = self.proxy
        try:
            async with httpx.AsyncClient(**kwargs) as client:
                resp = await client.post(
                    f"{self.base_url}{OPENAI_CONFIG.endpoints['chat']}",
                    json=payload,
                    headers={
                        "Authorization": f"Bearer {self._api_key}",
                        "Content-Type": "application/json",
                    },
                )
        except httpx.RequestError as e:
            raise NetworkError(code="NETWORK_ERROR", message=str(e))
        if resp.status_code == 429:
            raise RateLimitError(code="RATE_LIMIT", message="openai rate limit", http_status=429)
        if resp.status_code >= 400:
            raise ApiError(code="API_ERROR", message=resp.text, http_status=resp.status_code)
        return resp.json()


class OpenAIChat(BaseChatStream):
    name = "openai"

    def __init__(self, client: OpenAIClient, model: str, role: Role, memory: Memory, cancel=None):
        super().__init__(cancel)
        self._client = client
        self.model = model
        self.role = role
        self.memory = memory

    async def _exchange(self, prompt: str) -> str:
        self.memory.add(Message(role=self.role, content=prompt))
        context = self.memory.summarize()

        async with self._client.rate_limit.hold(self.closed):
            data = await self._complete_with_retry(context)

        choices = data.get("choices") or []
        if not choices:
            raise ApiError(code="NO_CHOICES", message="openai: no choices")
        reply = ((choices[0].get("message") or {}).get("content")) or ""
        usage = data.get("usage") or {}
        logger.log(
            logging.INFO,
            "openai: request tokens",
            extra={"extra": {"total_tokens": usage.get("total_tokens", 0), "messages": len(context)}},
        )

        self.memory.add(Message(role="assistant", content=reply))
        return reply + "\n"

    async def _complete_with_retry(self, context: List[Message]) -> Dict[str, Any]:
        while True:
            try:
                return await self._client.complete(self.model, context)
            except RateLimitError:
                logger.warning("openai: too many requests, waiting for %s seconds...", self._client.retry_wait)
                if not await sleep_or_cancel(self._client.retry_wait, self.closed):
                    raise ChatClosedError("openai: chat closed while waiting for rate limit")
