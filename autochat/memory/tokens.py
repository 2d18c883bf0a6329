from dataclasses import dataclass
from typing import Protocol, Sequence, runtime_checkable

from autochat.domain.models import Message


@runtime_checkable
class TokenCounter(Protocol):
    def count_messages(self, messages: Sequence[Message]) -> int:
        ...


@dataclass
class TiktokenCounter(TokenCounter):
    """
    估算一组消息的 token 数：
    - 每条消息内容后追加换行后整体编码；
    - 每条消息额外加 tokens_per_message（近似 role/协议开销）。
    结果只依赖内容，随内容增长单调不减。
    """
    encoding_name: str = "cl100k_base"
    tokens_per_message: int = 8

    def __post_init__(self) -> None:
        import tiktoken
        self._enc = tiktoken.get_encoding(self.encoding_name)

    def count_text(self, text: str) -> int:
        return len(self._enc.encode(text or "", disallowed_special=()))

    def count_messages(self, messages: Sequence[Message]) -> int:
        text = "".join((m.content or "") + "\n" for m in messages)
        return self.count_text(text) + len(messages) * self.tokens_per_message
