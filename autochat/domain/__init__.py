"""领域层模型与协议。

包含：
- models: 统一的 Message 模型与命令参数 Value 类型。
- session: 实时后端的会话凭据。
- exceptions: 业务异常类型定义。
"""
