"""统一业务异常模型。

所有跨模块抛出的业务级错误都应该继承自 BusinessError，
便于在控制器或 UI 层做统一捕获与用户提示。

解析噪声（无法解析的流帧）与用户取消不属于异常：
前者在解码边界被丢弃，后者是正常的终止状态。
"""


class BusinessError(Exception):
    """业务异常基类。

    Attributes:
        code: 机器可读错误码（如 "NETWORK_ERROR"）。
        message: 用户可读错误信息。
        http_status: 映射到 HTTP 时可用的状态码，默认 400。
        extra: 其他补充字段（例如 conversation_id）。
    """

    def __init__(self, code: str, message: str, http_status: int = 400, **extra):
        self.code = code
        self.message = message
        self.http_status = http_status
        self.extra = extra
        super().__init__(message)


class ConnectivityError(BusinessError):
    """网络层错误，例如连接失败、超时、流中断等，没有后端提供的文本。"""


class BackendError(BusinessError):
    """后端显式返回 error 字段或非 2xx 状态时抛出，message 为后端原文。"""


class ConversationCreationError(BusinessError):
    """会话创建失败：请求失败、非 2xx 状态或响应缺少 conversation_id。"""


class ValidationError(BusinessError):
    """参数校验失败，例如附件缺少文件名。"""
