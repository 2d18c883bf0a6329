from typing import List, Protocol, runtime_checkable

from autochat.domain.models import Message


@runtime_checkable
class Memory(Protocol):
    """对话记忆协议。

    - add: 追加一条消息，历史只增不减。
    - summarize: 返回本次请求应发送的消息视图（可能比历史短）。
    """

    def add(self, message: Message) -> None:
        ...

    def summarize(self) -> List[Message]:
        ...
