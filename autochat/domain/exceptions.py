"""统一业务异常模型。

所有跨模块抛出的业务级错误都继承自 BusinessError，
便于 AgentLoop / CLI 层统一捕获并决定：继续循环、反馈给模型，还是终止。

分类：
- 瞬时后端错误：RateLimitError（由后端实现负责退避重试）。
- 协议错误：ProtocolError（握手/帧结构/socket 失败，对连接是致命的）。
- 解析错误：ParseError（模型输出格式不对，本地恢复，作为下一轮 prompt 反馈）。
- 预算错误：PromptTooLongError（上下文超出 max_tokens，本次交换失败）。
"""


class BusinessError(Exception):
    """业务异常基类。

    Attributes:
        code: 机器可读错误码（如 "PROMPT_TOO_LONG"）。
        message: 可读错误信息。
        http_status: 映射到 HTTP 时可用的状态码，默认 400。
        extra: 其他补充字段（例如 tokens、provider 等）。
    """

    def __init__(self, code: str, message: str, http_status: int = 400, **extra):
        self.code = code
        self.message = message
        self.http_status = http_status
        self.extra = extra
        super().__init__(message)


class NetworkError(BusinessError):
    """网络层错误，例如连接失败、超时等。"""


class ApiError(BusinessError):
    """后端返回非 2xx 或业务结果不是 Success 时抛出。"""


class RateLimitError(BusinessError):
    """后端限流错误（429 / Throttled）。"""


class ValidationError(BusinessError):
    """参数或配置校验失败（本地拒绝，不发出网络请求）。"""


class ProtocolError(BusinessError):
    """实时协议错误：握手失败、socket 断开、帧结构异常。"""


class ParseError(BusinessError):
    """无法从模型输出中解析出命令。"""


class PromptTooLongError(BusinessError):
    """单条消息本身已超出 token 预算，不能再截断。"""

    def __init__(self, tokens: int):
        super().__init__(
            code="PROMPT_TOO_LONG",
            message=f"prompt too long ({tokens} tokens)",
            tokens=tokens,
        )
        self.tokens = tokens


class ChatClosedError(BusinessError):
    """ChatStream 已关闭或其取消事件已触发。"""

    def __init__(self, message: str = "chat stream closed"):
        super().__init__(code="CHAT_CLOSED", message=message)


class ExitRequested(BusinessError):
    """检测到退出短语，对话应当结束。"""

    def __init__(self, message: str = "exit condition detected"):
        super().__init__(code="EXIT_REQUESTED", message=message)
