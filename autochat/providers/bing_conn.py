"""实时 socket 后端的单条连接。

帧格式：JSON 对象 + 分隔字节 0x1e（不是长度前缀）。json.dumps 会把控制字符
转义成 \\u001e，所以分隔字节不会未经转义地出现在负载中。

一条连接上同时只允许一次交换：write 先进入节流锁，再持有交换锁，
发送 chat 帧后等待 StreamAggregator 观察到终止帧，才把完整回答交给 read。
"""

import asyncio
import json
import logging
import secrets
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from autochat.domain.exceptions import (
    ApiError,
    ChatClosedError,
    ProtocolError,
    RateLimitError,
    ValidationError,
)
from autochat.infrastructure.logging.logger import logger
from autochat.infrastructure.ratelimit import RateLimiter
from autochat.providers.base import BaseChatStream
from autochat.providers.registry import BING_CONFIG

DELIMITER = "\x1e"
HANDSHAKE = json.dumps({"protocol": "json", "version": 1}) + DELIMITER

STYLE_BALANCED = "galileo"

OPTIONS_SETS = [
    "nlu_direct_response_filter",
    "deepleo",
    "disable_emoji_spoken_text",
    "responsible_ai_policy_235",
    "enablemm",
    STYLE_BALANCED,
    "dtappid",
    "cricinfo",
    "cricinfov2",
    "dv3sugg",
]
SLICE_IDS = ["222dtappid", "225cricinfo", "224locals0"]

# 帧类型
FRAME_UPDATE = 1
FRAME_FINAL = 2
FRAME_COMPLETION = 3


@dataclass
class Conversation:
    """会话创建接口返回的标识。"""

    conversation_id: str
    client_id: str
    conversation_signature: str


def encode_frame(payload: Dict[str, Any]) -> str:
    return json.dumps(payload, ensure_ascii=False) + DELIMITER


def split_frames(raw: str | bytes) -> List[Dict[str, Any]]:
    """把一条 socket 消息按分隔字节拆成多个 JSON 帧。空帧忽略，坏帧抛 ProtocolError。"""

    if isinstance(raw, bytes):
        raw = raw.decode("utf-8")
    frames: List[Dict[str, Any]] = []
    for part in raw.split(DELIMITER):
        if not part.strip():
            continue
        try:
            frame = json.loads(part)
        except json.JSONDecodeError as e:
            raise ProtocolError(code="BAD_FRAME", message=f"bing: couldn't decode frame ({part[:200]}): {e}")
        if not isinstance(frame, dict):
            raise ProtocolError(code="BAD_FRAME", message=f"bing: unexpected frame shape: {part[:200]}")
        frames.append(frame)
    return frames


def _is_answer(message: Dict[str, Any]) -> bool:
    return message.get("author", "bot") == "bot" and not message.get("messageType")


class StreamAggregator:
    """累积一次交换中的流式增量，直到看到终止帧。

    - type 1: 增量更新，arguments[0].messages[0].text 是目前为止的完整回答；
    - type 2: 最终条目，item.messages 中最后一条 bot 回答即为答案；
    - type 3: 调用完成；
    - 其他类型（如 type 6 心跳）忽略。

    带 invocationId 的 type 2 / type 3 帧只认本次调用的编号，
    上一次调用迟到的终止帧不会结束本次交换。
    """

    def __init__(self, invocation_id: Optional[str] = None) -> None:
        self.invocation_id = invocation_id
        self.answer = ""
        self.frames = 0
        self.final = False
        self.done: "asyncio.Future[str]" = asyncio.get_running_loop().create_future()

    def _foreign(self, frame: Dict[str, Any]) -> bool:
        if self.invocation_id is None or "invocationId" not in frame:
            return False
        return str(frame["invocationId"]) != self.invocation_id

    def feed(self, frame: Dict[str, Any]) -> bool:
        if self.done.done():
            return True
        kind = frame.get("type")
        if kind in (FRAME_FINAL, FRAME_COMPLETION) and self._foreign(frame):
            logger.log(
                logging.DEBUG,
                "bing: ignoring frame of another invocation",
                extra={"extra": {"type": kind, "invocation_id": frame.get("invocationId")}},
            )
            return False
        self.frames += 1
        if kind == FRAME_UPDATE:
            for arg in frame.get("arguments") or []:
                for message in arg.get("messages") or []:
                    if _is_answer(message) and message.get("text"):
                        self.answer = message["text"]
        elif kind == FRAME_FINAL:
            item = frame.get("item") or {}
            result = item.get("result") or {}
            value = result.get("value")
            if value and value != "Success":
                text = result.get("message") or value
                if value == "Throttled":
                    self.fail(RateLimitError(code="RATE_LIMIT", message=f"bing: {text}", http_status=429))
                else:
                    self.fail(ApiError(code="API_ERROR", message=f"bing: {value}: {text}"))
                return True
            answers = [m for m in item.get("messages") or [] if _is_answer(m) and m.get("text")]
            if answers:
                self.answer = answers[-1]["text"]
            self._finish()
        elif kind == FRAME_COMPLETION:
            self._finish()
        return self.done.done()

    def fail(self, error: BaseException) -> None:
        if not self.done.done():
            self.done.set_exception(error)

    def _finish(self) -> None:
        self.final = True
        if not self.done.done():
            self.done.set_result(self.answer)


class BingConnection(BaseChatStream):
    name = "bing"

    def __init__(
        self,
        ws: Any,
        conversation: Conversation,
        rate_limit: RateLimiter,
        cancel: Optional[asyncio.Event] = None,
        max_message_chars: int = BING_CONFIG.max_message_chars,
    ):
        super().__init__(cancel)
        self._ws = ws
        self.conversation = conversation
        self._rate_limit = rate_limit
        self.max_message_chars = max_message_chars
        self.invocation_id = 0
        self._exchange_lock = asyncio.Lock()
        self._current: Optional[StreamAggregator] = None
        self._listener: Optional[asyncio.Task] = None
        self._broken: Optional[ProtocolError] = None

    def start(self) -> None:
        """启动后台监听任务（握手完成之后调用）。"""

        if self._listener is None:
            self._listener = asyncio.get_running_loop().create_task(self._listen())

    async def _listen(self) -> None:
        try:
            async for raw in self._ws:
                for frame in split_frames(raw):
                    current = self._current
                    if current is not None:
                        current.feed(frame)
            error = ProtocolError(code="SOCKET_CLOSED", message="bing: websocket closed by server")
        except asyncio.CancelledError:
            raise
        except ProtocolError as e:
            error = e
        except Exception as e:
            error = ProtocolError(code="SOCKET_ERROR", message=f"bing: websocket read failed: {e}")
        self._broken = error
        if self._current is not None:
            self._current.fail(error)
        if not self.closed.is_set():
            logger.log(logging.ERROR, str(error))

    def build_request(self, message: str) -> Dict[str, Any]:
        """生成 chat 帧，并递增 invocation 计数。"""

        conv = self.conversation
        request = {
            "invocationId": str(self.invocation_id),
            "target": "chat",
            "type": 4,
            "arguments": [
                {
                    "source": "cib",
                    "optionsSets": list(OPTIONS_SETS),
                    "sliceIds": list(SLICE_IDS),
                    "traceId": secrets.token_hex(16),
                    "isStartOfSession": self.invocation_id == 0,
                    "message": {
                        "author": "user",
                        "inputMethod": "Keyboard",
                        "text": message,
                        "messageType": "Chat",
                    },
                    "conversationSignature": conv.conversation_signature,
                    "participant": {"id": conv.client_id},
                    "conversationId": conv.conversation_id,
                }
            ],
        }
        self.invocation_id += 1
        return request

    async def _exchange(self, prompt: str) -> str:
        if self.max_message_chars and len(prompt) > self.max_message_chars:
            raise ValidationError(
                code="MESSAGE_TOO_LONG",
                message=f"bing: message very long, max: {self.max_message_chars}",
            )
        async with self._rate_limit.hold(self.closed):
            async with self._exchange_lock:
                if self._broken is not None:
                    raise self._broken
                request = self.build_request(prompt)
                aggregator = StreamAggregator(request["invocationId"])
                self._current = aggregator
                try:
                    try:
                        await self._ws.send(encode_frame(request))
                    except Exception as e:
                        raise ProtocolError(code="SOCKET_ERROR", message=f"bing: couldn't write websocket message: {e}")
                    return await self._wait(aggregator)
                finally:
                    self._current = None

    async def _wait(self, aggregator: StreamAggregator) -> str:
        closer = asyncio.ensure_future(self.closed.wait())
        try:
            await asyncio.wait({aggregator.done, closer}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            closer.cancel()
        if aggregator.done.done() and not aggregator.done.cancelled():
            return aggregator.done.result()
        raise ChatClosedError("bing: chat closed")

    async def _release(self) -> None:
        if self._current is not None:
            self._current.done.cancel()
        listener, self._listener = self._listener, None
        if listener is not None:
            listener.cancel()
            try:
                await listener
            except asyncio.CancelledError:
                pass
        try:
            await self._ws.close()
        except Exception as e:
            raise ProtocolError(code="SOCKET_ERROR", message=f"bing: couldn't close websocket: {e}")
