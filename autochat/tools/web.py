"""网页搜索与抓取。

- GoogleSearch: Google Custom Search JSON API，返回 [{title, link}]。
- fetch_text: 抓取网页并转成压缩后的纯文本（最多 1000 字符）。
"""

import html
import re
from typing import Any, Dict, List, Optional

import httpx

from autochat.domain.exceptions import ApiError, NetworkError, ValidationError

GOOGLE_API_URL = "https://www.googleapis.com/customsearch/v1"
FETCH_TIMEOUT = 30.0
MAX_TEXT_CHARS = 1000


def _client_kwargs(timeout: float, proxy: Optional[str]) -> Dict[str, Any]:
    kwargs: Dict[str, Any] = {"timeout": timeout, "trust_env": False, "follow_redirects": True}
    if proxy:
        kwargs["proxy"] = proxy
    return kwargs


class GoogleSearch:
    def __init__(self, key: Optional[str], cx: Optional[str], proxy: Optional[str] = None, timeout: float = FETCH_TIMEOUT):
        self.key = key
        self.cx = cx
        self.proxy = proxy
        self.timeout = timeout

    async def search(self, query: str) -> List[Dict[str, str]]:
        if not self.key or not self.cx:
            raise ValidationError(code="MISSING_GOOGLE_KEY", message="google: key and cx are required")
        try:
            async with httpx.AsyncClient(**_client_kwargs(self.timeout, self.proxy)) as client:
                resp = await client.get(GOOGLE_API_URL, params={"key": self.key, "cx": self.cx, "q": query})
        except httpx.RequestError as e:
            raise NetworkError(code="NETWORK_ERROR", message=f"google: error making HTTP request: {e}")
        if resp.status_code >= 400:
            raise ApiError(code="API_ERROR", message=f"google: {resp.text[:500]}", http_status=resp.status_code)
        try:
            data = resp.json()
        except ValueError as e:
            raise ApiError(code="API_ERROR", message=f"google: error unmarshaling JSON response: {e}")
        return [
            {"title": item.get("title", ""), "link": item.get("link", "")}
            for item in data.get("items") or []
        ]


def html_to_text(raw: str) -> str:
    """去掉 script/style 与标签，解码实体并压缩空白。"""

    text = re.sub(r"<script[^>]*>.*?</script>", " ", raw, flags=re.DOTALL | re.IGNORECASE)
    text = re.sub(r"<style[^>]*>.*?</style>", " ", text, flags=re.DOTALL | re.IGNORECASE)
    text = re.sub(r"<[^>]+>", " ", text)
    text = html.unescape(text)
    return re.sub(r"\s+", " ", text).strip()


async def fetch_text(url: str, proxy: Optional[str] = None, timeout: float = FETCH_TIMEOUT) -> str:
    if not url.startswith("http"):
        url = "https://" + url
    try:
        async with httpx.AsyncClient(**_client_kwargs(timeout, proxy)) as client:
            resp = await client.get(url)
    except httpx.RequestError as e:
        raise NetworkError(code="NETWORK_ERROR", message=f"web: couldn't get response: {e}")
    text = html_to_text(resp.text)
    return text[:MAX_TEXT_CHARS]
