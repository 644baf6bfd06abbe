"""
执行底座模型
定义交给执行底座的执行请求以及底座上报的执行状态
"""

from enum import Enum
from typing import Optional, Dict, List

from pydantic import BaseModel, Field

from .resource import ResourceSet

PROGRESS_ANNOTATION = "agentsched.io/progress"


class ExecutionPhase(str, Enum):
    """执行底座原生状态映射后的统一阶段"""
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class ExecutionRequest(BaseModel):
    """
    执行请求

    重试策略与超时被翻译为底座的 backoff_limit / active_deadline_seconds，
    底座在 backoff_limit 次重启后仍失败才上报 failed
    """

    task_key: str
    target_agent: str
    image_ref: str
    command: List[str] = Field(default_factory=list)
    args: List[str] = Field(default_factory=list)
    env: Dict[str, str] = Field(default_factory=dict)
    resources: ResourceSet = Field(default_factory=ResourceSet)
    labels: Dict[str, str] = Field(default_factory=dict)
    backoff_limit: int = Field(default=0, ge=0)
    backoff_seconds: float = Field(default=10.0, ge=0)
    active_deadline_seconds: Optional[float] = None


class ExecutionStatus(BaseModel):
    """执行底座上报的状态"""
    phase: ExecutionPhase = ExecutionPhase.PENDING
    progress: Optional[int] = Field(default=None, description="进度，缺省时从 annotations 提取")
    annotations: Dict[str, str] = Field(default_factory=dict)
    exit_code: Optional[int] = None
    output: Optional[str] = None
    artifact: Optional[str] = None
    message: str = ""
    failed_attempts: int = Field(default=0, ge=0, description="已失败的尝试次数")
    resources_used: Optional[ResourceSet] = None


def progress_from_annotations(annotations: Dict[str, str], key: str = PROGRESS_ANNOTATION) -> int:
    """从注解中提取进度百分比，无法解析时返回 0"""
    raw = annotations.get(key)
    if raw is None:
        return 0
    try:
        value = int(float(raw.strip().rstrip("%")))
    except (ValueError, OverflowError):
        # 非数字、nan、inf 都按 0 处理
        return 0
    return max(0, min(100, value))


def effective_progress(status: ExecutionStatus) -> int:
    if status.progress is not None:
        return max(0, min(100, status.progress))
    return progress_from_annotations(status.annotations)
