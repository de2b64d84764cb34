"""统一业务异常模型。

所有跨模块抛出的业务级错误都应该继承自 BusinessError，
便于在 API 层统一捕获并映射为 HTTP 状态码或 SSE error 事件。
"""


class BusinessError(Exception):
    """业务异常基类。

    Attributes:
        code: 机器可读错误码（如 "STORE_READ_ERROR"）。
        message: 用户可读错误信息。
        http_status: 映射到 HTTP 时可用的状态码，默认 400。
        extra: 其他补充字段（例如 trace_id、provider 等）。
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
    """第三方 API 返回非 2xx/429 错误时抛出。"""


class RateLimitError(BusinessError):
    """Provider 限流错误，由调用方决定是否重试。"""


class ValidationError(BusinessError):
    """参数或配置校验失败。"""


class ConversationNotFoundError(BusinessError):
    """会话 ID 不存在。存储层绝不会隐式创建会话。"""

    def __init__(self, conversation_id: str, **extra):
        super().__init__(
            code="CONVERSATION_NOT_FOUND",
            message=f"Conversation {conversation_id} does not exist.",
            http_status=404,
            conversation_id=conversation_id,
            **extra,
        )
        self.conversation_id = conversation_id


class ProviderStreamError(BusinessError):
    """模型流式响应中断或数据无法解析。"""

    def __init__(self, message: str, code: str = "PROVIDER_STREAM_ERROR", **extra):
        super().__init__(code=code, message=message, http_status=502, **extra)


class ToolExecutionError(BusinessError):
    """工具内部执行失败（网络、参数、缺少配置）。

    该异常只会在工具边界内部出现，ToolRegistry.dispatch 会把它转换成
    {"error": message} 结果，不会传播到编排循环之外。
    """

    def __init__(self, message: str, code: str = "TOOL_EXECUTION_ERROR", **extra):
        super().__init__(code=code, message=message, http_status=500, **extra)
