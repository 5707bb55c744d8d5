"""统一业务异常模型。

所有跨模块抛出的业务级错误都应该继承自 BusinessError，
便于在 API 层或 UI 层做统一捕获与用户提示。

注意：一次交互（exchange）过程中的网络/协议/上游错误不会以异常形式
抛给调用方，而是由 ChatSession 分类后记录在 session.error 中；
这里的异常只用于调用方误用与组件内部的协议违例。
"""


class BusinessError(Exception):
    """业务异常基类。

    Attributes:
        code: 机器可读错误码（如 "STORE_READ_ERROR"）。
        message: 用户可读错误信息。
        http_status: 映射到 HTTP 时可用的状态码，默认 400。
        extra: 其他补充字段（例如 trace_id、message_id 等）。
    """

    def __init__(self, code: str, message: str, http_status: int = 400, **extra):
        self.code = code
        self.message = message
        self.http_status = http_status
        self.extra = extra
        super().__init__(message)


class InvalidInputError(BusinessError):
    """调用方误用：空输入、会话忙碌时再次提交、非法模型 ID 等。

    总是在调用点同步抛出，不会自动重试。
    """

    def __init__(self, message: str, code: str = "INVALID_INPUT", **extra):
        super().__init__(code=code, message=message, http_status=400, **extra)


class AssemblyError(BusinessError):
    """消息组装时发现协议违例，例如 tool-result 找不到对应的工具调用。"""

    def __init__(self, message: str, code: str = "ASSEMBLY_ERROR", **extra):
        super().__init__(code=code, message=message, http_status=502, **extra)


class ProtocolError(BusinessError):
    """字节流无法解码为协议事件。"""

    def __init__(self, message: str, code: str = "PROTOCOL_ERROR", **extra):
        super().__init__(code=code, message=message, http_status=502, **extra)
