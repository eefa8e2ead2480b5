"""统一业务异常模型。

所有跨模块抛出的业务级错误都应该继承自 BusinessError，
便于在服务层或 UI 层做统一捕获与用户提示。
"""


class BusinessError(Exception):
    """业务异常基类。

    Attributes:
        code: 机器可读错误码（如 "INVALID_STATE"）。
        message: 用户可读错误信息。
        http_status: 映射到 HTTP 时可用的状态码，默认 400。
        extra: 其他补充字段（例如 conversation_id、task_id 等）。
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
    """服务端返回非 2xx 或业务 code 不为 "0" 时抛出。"""


class AuthExpiredError(ApiError):
    """登录态失效（HTTP 401 或提示“未登录”）。"""


class ValidationError(BusinessError):
    """参数或配置校验失败。"""


class InvalidState(BusinessError):
    """对当前会话/消息状态不合法的修改请求。"""


class AlreadyStreaming(InvalidState):
    """同一会话已登记了一个进行中的流式任务。"""


class ConcurrentStreamRejected(BusinessError):
    """会话仍有回复在生成时再次提交问题，新提交被拒绝。"""


class ChannelTerminatedUnexpectedly(BusinessError):
    """流式通道在完成事件之前关闭（断网、服务端错误、空闲超时）。"""


class CancellationRequestFailed(BusinessError):
    """停止任务请求失败；本地状态已是 cancelled，只记录日志。"""


class FeedbackSyncFailed(BusinessError):
    """反馈提交失败，本地投票已回滚。"""
