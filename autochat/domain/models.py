"""统一的对话数据模型。

- Message: 一条对话消息（system/user/assistant），创建后不可变。
- Value: 命令参数的取值类型（JSON 兼容的 tagged variant）。

所有后端（OpenAI 兼容接口、实时 socket 后端）只依赖这些模型，
并负责在各自的 wire 格式与这些模型之间做转换。
"""

from dataclasses import dataclass
from typing import Dict, List, Literal, Union


# 消息角色（与 OpenAI chat completions 的 role 字段对应）
Role = Literal["system", "user", "assistant"]

# 命令参数：字符串、数字、布尔、null，或它们组成的数组/对象
Value = Union[str, int, float, bool, None, List["Value"], Dict[str, "Value"]]


@dataclass(frozen=True)
class Message:
    """一条对话消息。顺序由所属的 Memory 决定。"""

    role: Role
    content: str
