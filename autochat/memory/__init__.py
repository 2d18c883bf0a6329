"""对话记忆：决定每次请求重放哪些上下文。

- base: Memory 协议（add / summarize）。
- tokens: 基于 tiktoken 的 token 估算。
- fixed: 保留前 N 条 + 最长可容纳后缀的滑动窗口实现。
"""

from autochat.memory.base import Memory
from autochat.memory.fixed import RESPONSE_RESERVE, FixedMemory
from autochat.memory.tokens import TiktokenCounter, TokenCounter

__all__ = ["Memory", "FixedMemory", "RESPONSE_RESERVE", "TiktokenCounter", "TokenCounter"]
