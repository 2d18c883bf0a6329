import asyncio
import json

import httpx
import pytest

from autochat.domain.exceptions import (
    ApiError,
    ChatClosedError,
    ProtocolError,
    RateLimitError,
    ValidationError,
)
from autochat.domain.session import Session
from autochat.infrastructure.ratelimit import RateLimiter
from autochat.infrastructure.storage.session_store import YamlSessionStore
from autochat.providers.bing_client import BingClient, parse_conversation
from autochat.providers.bing_conn import (
    DELIMITER,
    HANDSHAKE,
    BingConnection,
    Conversation,
    StreamAggregator,
    encode_frame,
    split_frames,
)


class FakeWebSocket:
    """内存中的 websocket：send 时调用 responder 生成服务端消息。"""

    def __init__(self, responder=None):
        self.sent = []
        self.closed = False
        self._incoming: asyncio.Queue = asyncio.Queue()
        self._responder = responder

    def push(self, message):
        self._incoming.put_nowait(message)

    async def send(self, data):
        self.sent.append(data)
        if self._responder is not None:
            for message in self._responder(data):
                self.push(message)

    async def recv(self):
        message = await self._incoming.get()
        if message is None:
            raise ConnectionError("closed")
        return message

    def __aiter__(self):
        return self

    async def __anext__(self):
        message = await self._incoming.get()
        if message is None:
            raise StopAsyncIteration
        return message

    async def close(self):
        self.closed = True
        self.push(None)


def _update(text):
    return encode_frame({"type": 1, "target": "update", "arguments": [{"messages": [{"author": "bot", "text": text}]}]})


def _final(text, value="Success", invocation="0"):
    return encode_frame(
        {
            "type": 2,
            "invocationId": invocation,
            "item": {
                "messages": [
                    {"author": "user", "text": "question"},
                    {"author": "bot", "text": text},
                ],
                "result": {"value": value, "message": value},
            },
        }
    )


def echo_responder(data):
    frame = split_frames(data)[0]
    if "arguments" not in frame:
        # 握手帧
        return []
    text = frame["arguments"][0]["message"]["text"]
    return [
        _update("echo"),
        encode_frame({"type": 6}),
        _update(f"echo: {text}") + encode_frame({"type": 6}),
        _final(f"echo: {text}", invocation=frame["invocationId"]) + encode_frame({"type": 3, "invocationId": frame["invocationId"]}),
    ]


def _conversation():
    return Conversation(conversation_id="conv-1", client_id="client-1", conversation_signature="sig-1")


def _connection(ws, **kwargs):
    conn = BingConnection(ws, _conversation(), RateLimiter(0.01), **kwargs)
    conn.start()
    return conn


def test_encode_frame_escapes_delimiter():
    raw = encode_frame({"text": "a\x1eb"})
    assert raw.count(DELIMITER) == 1
    assert raw.endswith(DELIMITER)
    assert split_frames(raw) == [{"text": "a\x1eb"}]


def test_split_frames_rejects_bad_json():
    with pytest.raises(ProtocolError):
        split_frames("{oops" + DELIMITER)


@pytest.mark.asyncio
async def test_aggregator_releases_only_on_terminal_frame():
    agg = StreamAggregator()
    assert agg.feed(split_frames(_update("par"))[0]) is False
    assert agg.feed({"type": 6}) is False
    assert agg.feed({"type": 99}) is False
    assert not agg.done.done()
    assert agg.feed(split_frames(_update("partial"))[0]) is False
    assert agg.feed({"type": 3}) is True
    assert await agg.done == "partial"


@pytest.mark.asyncio
async def test_aggregator_final_item_wins():
    agg = StreamAggregator()
    agg.feed(split_frames(_update("draft"))[0])
    agg.feed(split_frames(_final("final answer"))[0])
    assert agg.final
    assert await agg.done == "final answer"


@pytest.mark.asyncio
async def test_aggregator_throttled_is_rate_limit():
    agg = StreamAggregator()
    agg.feed(split_frames(_final("", value="Throttled"))[0])
    with pytest.raises(RateLimitError):
        await agg.done

    agg = StreamAggregator()
    agg.feed(split_frames(_final("", value="CaptchaChallenge"))[0])
    with pytest.raises(ApiError):
        await agg.done


@pytest.mark.asyncio
async def test_aggregator_ignores_terminal_frames_of_other_invocations():
    agg = StreamAggregator("1")
    agg.feed(split_frames(_update("draft"))[0])
    assert agg.feed({"type": 3, "invocationId": "0"}) is False
    assert agg.feed(split_frames(_final("stale", invocation="0"))[0]) is False
    assert not agg.done.done()
    assert agg.feed(split_frames(_final("fresh", invocation="1"))[0]) is True
    assert await agg.done == "fresh"


@pytest.mark.asyncio
async def test_late_completion_of_previous_invocation_does_not_end_next_exchange():
    def responder(data):
        frame = split_frames(data)[0]
        invocation = frame["invocationId"]
        text = frame["arguments"][0]["message"]["text"]
        frames = []
        if invocation == "1":
            # 上一次调用迟到的完成帧
            frames.append(encode_frame({"type": 3, "invocationId": "0"}))
        frames.append(_update(f"ans {text}"))
        frames.append(_final(f"ans {text}", invocation=invocation) + encode_frame({"type": 3, "invocationId": invocation}))
        return frames

    ws = FakeWebSocket(responder)
    conn = _connection(ws)
    try:
        assert await conn.ask("a") == "ans a"
        assert await conn.ask("b") == "ans b"
    finally:
        await conn.close()


@pytest.mark.asyncio
async def test_concurrent_writes_run_one_exchange_at_a_time():
    ws = FakeWebSocket(lambda data: [_update("thinking")])
    conn = _connection(ws)
    sent_before_answer = []

    async def answer():
        for invocation, text in (("0", "ans a"), ("1", "ans b")):
            while len(ws.sent) <= int(invocation):
                await asyncio.sleep(0.01)
            await asyncio.sleep(0.05)
            # 本次回答释放之前，下一条 chat 帧不应发出
            sent_before_answer.append(len(ws.sent))
            ws.push(_final(text, invocation=invocation) + encode_frame({"type": 3, "invocationId": invocation}))

    try:
        await asyncio.wait_for(asyncio.gather(conn.write("a"), conn.write("b"), answer()), timeout=2)
        assert await conn.read() == "ans a"
        assert await conn.read() == "ans b"
    finally:
        await conn.close()

    assert sent_before_answer == [1, 2]
    frames = [split_frames(raw)[0] for raw in ws.sent]
    assert [f["arguments"][0]["message"]["text"] for f in frames] == ["a", "b"]
    assert [f["invocationId"] for f in frames] == ["0", "1"]


@pytest.mark.asyncio
async def test_connection_exchange_and_invocation_ids():
    ws = FakeWebSocket(echo_responder)
    conn = _connection(ws)
    try:
        assert await conn.write("hello") == 5
        assert await conn.read() == "echo: hello"
        assert await conn.ask("again") == "echo: again"
    finally:
        await conn.close()

    frames = [split_frames(raw)[0] for raw in ws.sent]
    assert [f["invocationId"] for f in frames] == ["0", "1"]
    first = frames[0]["arguments"][0]
    assert first["isStartOfSession"] is True
    assert frames[1]["arguments"][0]["isStartOfSession"] is False
    assert first["conversationId"] == "conv-1"
    assert first["conversationSignature"] == "sig-1"
    assert first["participant"] == {"id": "client-1"}
    assert first["message"]["text"] == "hello"
    assert len(first["traceId"]) == 32
    assert frames[0]["target"] == "chat"
    assert frames[0]["type"] == 4
    assert ws.closed


@pytest.mark.asyncio
async def test_connection_rejects_long_message_before_network():
    ws = FakeWebSocket(echo_responder)
    conn = _connection(ws)
    try:
        with pytest.raises(ValidationError) as exc:
            await conn.write("x" * 2001)
        assert "max: 2000" in exc.value.message
        assert ws.sent == []
        assert conn.invocation_id == 0
    finally:
        await conn.close()


@pytest.mark.asyncio
async def test_connection_throttled_surfaces_rate_limit():
    ws = FakeWebSocket(lambda data: [_final("", value="Throttled")])
    conn = _connection(ws)
    try:
        with pytest.raises(RateLimitError):
            await conn.write("hi")
    finally:
        await conn.close()


@pytest.mark.asyncio
async def test_connection_socket_closed_mid_exchange_is_protocol_error():
    ws = FakeWebSocket(lambda data: [_update("partial"), None])
    conn = _connection(ws)
    try:
        with pytest.raises(ProtocolError):
            await conn.write("hi")
        # 连接已损坏，后续交换直接失败
        with pytest.raises(ProtocolError):
            await conn.write("again")
    finally:
        await conn.close()


@pytest.mark.asyncio
async def test_close_fails_pending_read_and_later_calls():
    ws = FakeWebSocket(echo_responder)
    conn = _connection(ws)
    reader = asyncio.ensure_future(conn.read())
    await asyncio.sleep(0.01)
    await conn.close()
    with pytest.raises(ChatClosedError):
        await reader
    with pytest.raises(ChatClosedError):
        await conn.write("hi")


@pytest.mark.asyncio
async def test_parent_cancel_closes_connection():
    cancel = asyncio.Event()
    ws = FakeWebSocket()
    conn = _connection(ws, cancel=cancel)
    writer = asyncio.ensure_future(conn.write("never answered"))
    await asyncio.sleep(0.05)
    cancel.set()
    with pytest.raises(ChatClosedError):
        await asyncio.wait_for(writer, timeout=1)
    assert ws.closed


def test_parse_conversation_validation():
    body = json.dumps(
        {
            "conversationId": "c",
            "clientId": "id",
            "conversationSignature": "s",
            "result": {"value": "Success", "message": None},
        }
    )
    conv = parse_conversation(200, body)
    assert conv == Conversation("c", "id", "s")

    with pytest.raises(ApiError) as exc:
        parse_conversation(403, "forbidden")
    assert exc.value.http_status == 403
    with pytest.raises(ProtocolError):
        parse_conversation(200, "<html>")
    with pytest.raises(ProtocolError):
        parse_conversation(200, json.dumps({"result": {"value": "UnauthorizedRequest"}}))


def _session():
    return Session(
        user_agent="Mozilla/5.0 test",
        language="en-US",
        cookie="_U=abc; MUID=old",
        sec_ms_gec="gec",
        sec_ms_gec_version="1-112",
        x_client_data="data",
        x_ms_user_agent="azsdk",
    )


@pytest.mark.asyncio
async def test_bootstrap_sends_ordered_headers_and_saves_cookie(tmp_path):
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["request"] = request
        body = {
            "conversationId": "conv-9",
            "clientId": "client-9",
            "conversationSignature": "sig-9",
            "result": {"value": "Success"},
        }
        return httpx.Response(200, json=body, headers={"set-cookie": "MUID=new; Domain=.bing.com; Path=/"})

    store = YamlSessionStore(tmp_path / "bing-session.yaml")
    client = BingClient(_session(), store, wait=0.01, transport=httpx.MockTransport(handler))
    try:
        conv = await client.create_conversation()
    finally:
        await client.aclose()

    assert conv.conversation_id == "conv-9"
    request = seen["request"]
    expected = [k for k, _ in client.request_headers()]
    sent = [k for k in request.headers.keys() if k not in ("host", "cookie")]
    assert sent == expected
    assert "_U=abc" in request.headers["cookie"]

    saved = store.load()
    assert "MUID=new" in saved.cookie
    assert "_U=abc" in saved.cookie
    assert saved.user_agent == "Mozilla/5.0 test"


@pytest.mark.asyncio
async def test_bootstrap_failure_does_not_touch_session(tmp_path):
    store = YamlSessionStore(tmp_path / "bing-session.yaml")
    transport = httpx.MockTransport(lambda request: httpx.Response(200, json={"result": {"value": "Forbidden"}}))
    client = BingClient(_session(), store, wait=0.01, transport=transport)
    try:
        with pytest.raises(ProtocolError):
            await client.create_conversation()
    finally:
        await client.aclose()
    assert not store.path.exists()


@pytest.mark.asyncio
async def test_chat_performs_handshake_before_chat_frames(tmp_path):
    ws = FakeWebSocket(echo_responder)
    captured = {}

    async def fake_connect(url, **kwargs):
        captured["url"] = url
        captured["headers"] = dict(kwargs["additional_headers"])
        ws.push("{}" + DELIMITER)
        return ws

    def handler(request):
        return httpx.Response(
            200,
            json={"conversationId": "c", "clientId": "id", "conversationSignature": "s", "result": {"value": "Success"}},
        )

    client = BingClient(
        _session(),
        YamlSessionStore(tmp_path / "s.yaml"),
        wait=0.01,
        transport=httpx.MockTransport(handler),
        ws_connect=fake_connect,
    )
    conn = await client.chat()
    try:
        assert ws.sent == [HANDSHAKE]
        assert await conn.ask("ping") == "echo: ping"
    finally:
        await conn.close()
        await client.aclose()
    assert captured["url"].startswith("wss://")
    assert captured["headers"]["Origin"] == "https://www.bing.com"
    assert "_U=abc" in captured["headers"]["Cookie"]


@pytest.mark.asyncio
async def test_handshake_without_ack_is_protocol_error():
    ws = FakeWebSocket()

    async def fake_connect(url, **kwargs):
        ws.push(None)
        return ws

    client = BingClient(_session(), wait=0.01, ws_connect=fake_connect)
    try:
        with pytest.raises(ProtocolError):
            await client.connect()
    finally:
        await client.aclose()
    assert ws.closed
