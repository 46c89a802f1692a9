"""统一业务异常模型。

所有跨模块抛出的业务级错误都继承自 BusinessError，
StreamSession 会把其中的配置/网络/HTTP 错误折叠成一次 "failed" 事件，
其余的（如 SessionBusyError）直接抛给调用方（UI 层）处理。
"""


class BusinessError(Exception):
    """业务异常基类。

    Attributes:
        code: 机器可读错误码（如 "API_ERROR"）。
        message: 用户可读错误信息，会原样展示在提示条中。
        http_status: 映射到 HTTP 时可用的状态码，默认 400。
        extra: 其他补充字段（例如 conversation_id、session_id 等）。
    """

    def __init__(self, code: str, message: str, http_status: int = 400, **extra):
        self.code = code
        self.message = message
        self.http_status = http_status
        self.extra = extra
        super().__init__(message)


class ConfigurationError(BusinessError):
    """缺少 API key / endpoint / deployment，请求不会发出。"""


class TransportError(BusinessError):
    """网络层错误：DNS、连接、TLS、读取中断等。"""


class HttpError(BusinessError):
    """服务端返回非 2xx 状态码。http_status 即响应状态码。"""

    @property
    def status(self) -> int:
        return self.http_status


class ValidationError(BusinessError):
    """用户输入校验失败，例如发送空消息。"""


class SessionBusyError(BusinessError):
    """同一会话已有未结束的流式请求。"""


class NotFoundError(BusinessError):
    """会话不存在。"""
