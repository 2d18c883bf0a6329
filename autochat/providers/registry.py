"""后端配置。

集中维护各后端的地址与协议常量，上层只通过名称（"openai"、"bing"）选择后端，
具体 URL / 限制由这里统一配置，便于后续切换或升级。
"""

from dataclasses import dataclass, field
from typing import Dict


@dataclass
class ProviderConfig:
    """某个后端的整体配置。"""

    name: str
    base_url: str
    endpoints: Dict[str, str] = field(default_factory=dict)
    # 单条消息的字符上限，0 表示不限制
    max_message_chars: int = 0
    # 被限流后的等待时间（秒）
    retry_wait: float = 30.0


OPENAI_CONFIG = ProviderConfig(
    name="openai",
    base_url="https://api.openai.com/v1",
    endpoints={"chat": "/chat/completions"},
)

BING_CONFIG = ProviderConfig(
    name="bing",
    base_url="https://www.bing.com",
    endpoints={
        "create": "https://www.bing.com/turing/conversation/create",
        "chathub": "wss://sydney.bing.com/sydney/ChatHub",
    },
    max_message_chars=2000,
)

