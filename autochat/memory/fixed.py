from typing import List, Optional

from autochat.domain.exceptions import PromptTooLongError
from autochat.domain.models import Message
from autochat.memory.base import Memory
from autochat.memory.tokens import TiktokenCounter, TokenCounter

# 留给回复的 token
RESPONSE_RESERVE = 1000


class FixedMemory(Memory):
    """
    - 前 keep_first 条永远保留（通常是 system prompt）
    - 其余从最旧的开始丢弃，直到 tokens + RESPONSE_RESERVE <= max_tokens
    - max_tokens <= 0 表示不裁剪
    """

    def __init__(self, keep_first: int, max_tokens: int, counter: Optional[TokenCounter] = None):
        self.keep_first = keep_first
        self.max_tokens = max_tokens
        self._counter = counter
        self._messages: List[Message] = []

    @property
    def counter(self) -> TokenCounter:
        if self._counter is None:
            self._counter = TiktokenCounter()
        return self._counter

    @property
    def messages(self) -> List[Message]:
        return list(self._messages)

    def add(self, message: Message) -> None:
        self._messages.append(message)

    def summarize(self) -> List[Message]:
        keep = max(self.keep_first, 0)
        first = self._messages[:keep]
        rest = self._messages[keep:]

        if self.max_tokens > 0:
            while True:
                tokens = self.counter.count_messages(first + rest)
                if tokens + RESPONSE_RESERVE <= self.max_tokens:
                    break
                if len(rest) <= 1:
                    raise PromptTooLongError(tokens)
                rest = rest[1:]
        return first + rest
