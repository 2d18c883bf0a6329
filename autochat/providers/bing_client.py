"""实时 socket 后端客户端。

连接状态：Created → Bootstrapped → Connected → Exchanging ⟲ → Closed。

1. Bootstrap：带完整浏览器请求头（按固定顺序）请求会话创建接口，
   得到 conversationId / clientId / conversationSignature；成功后立即把
   最新 cookie 写回 Session 文件（服务端每次请求都会轮换 cookie）。
2. Connect：打开 WebSocket，发送握手帧并等待一条确认帧。
3. 之后的交换由 BingConnection 负责。
"""

import asyncio
import json
import logging
import uuid
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx
import websockets

from autochat.domain.exceptions import ApiError, NetworkError, ProtocolError
from autochat.domain.session import Session
from autochat.infrastructure.logging.logger import logger
from autochat.infrastructure.ratelimit import RateLimiter
from autochat.infrastructure.storage.session_store import YamlSessionStore
from autochat.providers.bing_conn import HANDSHAKE, BingConnection, Conversation, split_frames
from autochat.providers.registry import BING_CONFIG

HANDSHAKE_TIMEOUT = 30.0


def parse_cookie_header(cookie: str) -> Dict[str, str]:
    pairs: Dict[str, str] = {}
    for part in (cookie or "").split(";"):
        if "=" not in part:
            continue
        name, value = part.split("=", 1)
        name = name.strip()
        if name:
            pairs[name] = value.strip()
    return pairs


def parse_conversation(status_code: int, body: str) -> Conversation:
    """校验会话创建接口的响应，返回会话标识。"""

    if status_code != 200:
        raise ApiError(
            code="API_ERROR",
            message=f"bing: invalid status code: {status_code} ({body[:500]})",
            http_status=status_code,
        )
    try:
        data = json.loads(body)
    except json.JSONDecodeError as e:
        raise ProtocolError(code="BAD_BOOTSTRAP", message=f"bing: couldn't unmarshal response ({body[:500]}): {e}")
    result = data.get("result") if isinstance(data, dict) else None
    if not isinstance(result, dict) or result.get("value") != "Success":
        raise ProtocolError(code="BAD_BOOTSTRAP", message=f"bing: invalid conversation result: {body[:500]}")
    return Conversation(
        conversation_id=data.get("conversationId") or "",
        client_id=data.get("clientId") or "",
        conversation_signature=data.get("conversationSignature") or "",
    )


class BingClient:
    name = "bing"

    def __init__(
        self,
        session: Session,
        session_store: Optional[YamlSessionStore] = None,
        wait: Optional[float] = None,
        proxy: Optional[str] = None,
        http_timeout: float = 300.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        ws_connect: Optional[Callable[..., Any]] = None,
    ):
        self.session = session
        self._store = session_store or YamlSessionStore(None)
        self.rate_limit = RateLimiter(wait)
        self.proxy = proxy
        self._transport = transport
        self._ws_connect = ws_connect or websockets.connect

        kwargs: Dict[str, Any] = {
            "timeout": http_timeout,
            "trust_env": False,
            "follow_redirects": True,
        }
        if transport is not None:
            kwargs["transport"] = transport
        elif proxy:
            kwargs["proxy"] = proxy
        self._http = httpx.AsyncClient(**kwargs)
        # 去掉 httpx 默认请求头，请求头完全按 request_headers() 的顺序发送
        for key in list(self._http.headers.keys()):
            del self._http.headers[key]
        for name, value in parse_cookie_header(session.cookie).items():
            self._http.cookies.set(name, value, domain=".bing.com")

    async def aclose(self) -> None:
        await self._http.aclose()

    def cookie_header(self) -> str:
        return "; ".join(f"{c.name}={c.value}" for c in self._http.cookies.jar)

    def request_headers(self) -> List[Tuple[str, str]]:
        """会话创建请求的浏览器请求头，顺序即发送顺序。"""

        s = self.session
        headers = [
            ("accept", "application/json"),
            ("accept-encoding", "gzip, deflate, br"),
            ("accept-language", s.language or "en-US,en;q=0.9"),
            ("referer", "https://www.bing.com/search?q=Bing+AI&showconv=1&FORM=hpcodx"),
            ("sec-ch-ua", '"Chromium";v="112", "Microsoft Edge";v="112", "Not:A-Brand";v="99"'),
            ("sec-ch-ua-arch", '"x86"'),
            ("sec-ch-ua-bitness", '"64"'),
            ("sec-ch-ua-full-version", '"112.0.1722.39"'),
            (
                "sec-ch-ua-full-version-list",
                '"Chromium";v="112.0.5615.49", "Microsoft Edge";v="112.0.1722.39", "Not:A-Brand";v="99.0.0.0"',
            ),
            ("sec-ch-ua-mobile", "?0"),
            ("sec-ch-ua-model", '""'),
            ("sec-ch-ua-platform", '"Windows"'),
            ("sec-ch-ua-platform-version", '"10.0.0"'),
            ("sec-fetch-dest", "empty"),
            ("sec-fetch-mode", "cors"),
            ("sec-fetch-site", "same-origin"),
            ("sec-ms-gec", s.sec_ms_gec),
            ("sec-ms-gec-version", s.sec_ms_gec_version),
            ("user-agent", s.user_agent),
            ("x-client-data", s.x_client_data),
            ("x-ms-client-request-id", str(uuid.uuid4())),
            ("x-ms-useragent", s.x_ms_user_agent),
        ]
        return [(k, v) for k, v in headers if v]

    def ws_headers(self) -> List[Tuple[str, str]]:
        headers = [
            ("Pragma", "no-cache"),
            ("Cache-Control", "no-cache"),
            ("Cookie", self.cookie_header()),
            ("User-Agent", self.session.user_agent),
            ("Origin", "https://www.bing.com"),
            ("Accept-Language", self.session.language),
        ]
        return [(k, v) for k, v in headers if v]

    async def create_conversation(self, cancel: Optional[asyncio.Event] = None) -> Conversation:
        async with self.rate_limit.hold(cancel):
            try:
                resp = await self._http.get(BING_CONFIG.endpoints["create"], headers=self.request_headers())
            except httpx.RequestError as e:
                raise NetworkError(code="NETWORK_ERROR", message=f"bing: couldn't do request: {e}")
        conversation = parse_conversation(resp.status_code, resp.text)

        # 服务端每次请求都会轮换 cookie，立即写回
        self.session.cookie = self.cookie_header()
        await self._store.save(self.session)
        logger.log(
            logging.INFO,
            "bing: conversation created",
            extra={"extra": {"conversation_id": conversation.conversation_id}},
        )
        return conversation

    async def connect(self) -> Any:
        kwargs: Dict[str, Any] = {
            "additional_headers": self.ws_headers(),
            "ping_interval": None,
            "max_size": 10 * 1024 * 1024,
            "open_timeout": HANDSHAKE_TIMEOUT,
        }
        if self.proxy:
            kwargs["proxy"] = self.proxy
        try:
            ws = await self._ws_connect(BING_CONFIG.endpoints["chathub"], **kwargs)
        except Exception as e:
            raise ProtocolError(code="SOCKET_ERROR", message=f"bing: couldn't dial websocket: {e}")

        try:
            await ws.send(HANDSHAKE)
            ack = await asyncio.wait_for(ws.recv(), timeout=HANDSHAKE_TIMEOUT)
            split_frames(ack)
        except ProtocolError:
            await ws.close()
            raise
        except Exception as e:
            await ws.close()
            raise ProtocolError(code="BAD_HANDSHAKE", message=f"bing: couldn't complete handshake: {e}")
        return ws

    async def chat(self, cancel: Optional[asyncio.Event] = None) -> BingConnection:
        """创建一个新的对话连接（Bootstrapped → Connected）。"""

        conversation = await self.create_conversation(cancel)
        ws = await self.connect()
        conn = BingConnection(ws, conversation, self.rate_limit, cancel=cancel)
        conn.start()
        return conn
