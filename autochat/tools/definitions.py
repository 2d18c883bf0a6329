"""命令数据结构定义。

模型回复中的命令形如 ``[{"name": arg_or_args}, ...]``，解析后得到
CommandRequest 列表，由 CommandExecutor 分发给注册的 Command 执行。
"""

import json
from dataclasses import dataclass, field
from typing import List, Optional, Protocol, runtime_checkable

from autochat.domain.models import Value


@dataclass
class CommandRequest:
    """模型发起的一次命令请求。"""

    name: str
    args: List[Value] = field(default_factory=list)


@runtime_checkable
class Command(Protocol):
    """命令处理器：返回 None 表示“没有需要回报的结果”。"""

    name: str

    async def run(self, args: List[Value]) -> Optional[Value]:
        ...


def arg_text(args: List[Value], index: int) -> Optional[str]:
    """按位置读取参数并转成文本；参数不存在时返回 None。

    字符串原样返回，其余值用 JSON 表示（None 视为空字符串）。
    """

    if index >= len(args):
        return None
    value = args[index]
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=False)
