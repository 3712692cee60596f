"""统一业务异常模型。

所有跨模块抛出的业务级错误都应该继承自 BusinessError，
便于在服务层或 UI 层做统一捕获与用户提示。

错误分类：
- TransportError: 非 2xx 状态码、响应没有 body、网络失败。对当前 turn 致命，
  由 SendOrchestrator 转成一条合成的 agent 错误消息。
- ParseError: 事件载荷或历史记录格式错误。流式场景下不致命，只记录日志。
- StorageError: 本地持久化读写失败。总是在适配器内部吞掉并记录日志。
- ValidationError: 调用参数或状态前置条件不满足。
"""


class BusinessError(Exception):
    """业务异常基类。

    Attributes:
        code: 机器可读错误码（如 "STORE_READ_ERROR"）。
        message: 用户可读错误信息。
        http_status: 映射到 HTTP 时可用的状态码，默认 400。
        extra: 其他补充字段（例如 thread_id、url 等）。
    """

    def __init__(self, code: str, message: str, http_status: int = 400, **extra):
        self.code = code
        self.message = message
        self.http_status = http_status
        self.extra = extra
        super().__init__(message)


class TransportError(BusinessError):
    """传输层错误：HTTP 非成功状态、缺少响应 body、网络失败等。"""


class ParseError(BusinessError):
    """事件载荷或历史数据无法解析。"""


class StorageError(BusinessError):
    """本地持久化读写失败。"""


class ValidationError(BusinessError):
    """参数或状态前置条件校验失败。"""
