"""
错误分类
调度核心的统一异常体系，每类错误带有分类（kind）、是否可重试以及对应的 HTTP 状态码
"""

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """错误分类"""
    INTERNAL = "internal"
    VALIDATION = "validation"       # 任务规格非法，不重试
    NOT_FOUND = "not_found"         # Agent/Task 不存在，通常是并发 resync 造成的瞬时状态
    CONFLICT = "conflict"           # 容量竞争或乐观锁写冲突
    NO_CAPACITY = "no_capacity"     # 当前没有可行的 Agent
    UNAVAILABLE = "unavailable"     # 外部依赖不可达
    TIMEOUT = "timeout"             # 任务执行超时
    CANCELLED = "cancelled"         # 任务被取消


_HTTP_STATUS = {
    ErrorKind.VALIDATION: 400,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.CONFLICT: 409,
    ErrorKind.NO_CAPACITY: 503,
    ErrorKind.UNAVAILABLE: 503,
    ErrorKind.TIMEOUT: 408,
    ErrorKind.CANCELLED: 408,
}


class SchedulerError(Exception):
    """
    调度核心异常基类

    Args:
        message: 描述文本
        op: 出错的操作名，如 "ledger.reserve"
        cause: 原始异常
    """

    kind: ErrorKind = ErrorKind.INTERNAL
    retryable: bool = False

    def __init__(
        self,
        message: str = "",
        *,
        op: Optional[str] = None,
        cause: Optional[BaseException] = None
    ):
        self.message = message
        self.op = op
        self.cause = cause
        super().__init__(str(self))

    def __str__(self) -> str:
        text = f"[{self.kind.value}]"
        if self.op:
            text += f" {self.op}:"
        if self.message:
            text += f" {self.message}"
        if self.cause is not None:
            text += f": {self.cause}"
        return text

    @property
    def http_status(self) -> int:
        return _HTTP_STATUS.get(self.kind, 500)


class ValidationError(SchedulerError):
    kind = ErrorKind.VALIDATION


class NotFoundError(SchedulerError):
    kind = ErrorKind.NOT_FOUND
    retryable = True


class ConflictError(SchedulerError):
    kind = ErrorKind.CONFLICT
    retryable = True


class NoCapacityError(SchedulerError):
    kind = ErrorKind.NO_CAPACITY
    retryable = True


class FetchError(SchedulerError):
    """外部协作方（Agent 源、任务存储、执行底座）不可达"""
    kind = ErrorKind.UNAVAILABLE
    retryable = True


class TaskTimeoutError(SchedulerError):
    kind = ErrorKind.TIMEOUT


class CancelledTaskError(SchedulerError):
    kind = ErrorKind.CANCELLED
