# backend/core/errors.py


class KeyUsageError(Exception):
    """所有业务错误的基类"""


class TransportError(KeyUsageError):
    """网络/连接失败，不重试，作为单个Key的错误记录返回"""


class RemoteStatusError(KeyUsageError):
    """远程接口返回非 2xx 状态"""

    def __init__(self, status_code: int):
        self.status_code = status_code
        super().__init__(f"HTTP {status_code}")


class DecodeError(KeyUsageError):
    """响应体无法解析，只影响当前Key"""


class QueueFullError(KeyUsageError):
    """任务队列在等待时间内仍然是满的"""

    def __init__(self, message: str = "task queue full"):
        super().__init__(message)


class ProcessingTimeout(KeyUsageError):
    """批次截止时间到了，结果还没回来"""

    def __init__(self, message: str = "Processing timeout"):
        super().__init__(message)


class StorageError(KeyUsageError):
    """持久化存储不可用，整个操作失败"""


class KeyNotFoundError(KeyUsageError):
    pass


class DuplicateKeyError(KeyUsageError):
    pass


class PoolStateError(RuntimeError):
    """Worker 池被错误使用（重复 stop、stop 之后再提交等），属于编程错误"""
