"""
任务模型
定义任务规格、任务状态以及生命周期阶段
"""

from enum import Enum
from datetime import datetime, timezone
from typing import Optional, Dict, List

from pydantic import BaseModel, Field

from agentsched.errors import ValidationError
from .resource import ResourceRequirements, ResourceSet


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TaskPhase(str, Enum):
    """任务阶段"""
    PENDING = "Pending"         # 等待依赖与调度
    SCHEDULED = "Scheduled"     # 已预留资源，已交给执行底座
    RUNNING = "Running"         # 执行中
    COMPLETED = "Completed"     # 成功完成
    FAILED = "Failed"           # 执行失败
    CANCELLED = "Cancelled"     # 已取消

    @property
    def is_terminal(self) -> bool:
        """终止阶段一旦到达不可再变"""
        return self in (TaskPhase.COMPLETED, TaskPhase.FAILED, TaskPhase.CANCELLED)


class RetryPolicy(BaseModel):
    """失败重试策略"""
    limit: int = Field(default=0, description="执行底座最多重启失败尝试的次数")
    backoff_seconds: float = Field(default=10.0, ge=0, description="重启间隔（秒）")


class Dependency(BaseModel):
    """对另一个任务的依赖"""
    task_id: str = Field(..., description="被依赖任务，name 或 namespace/name")
    required_phase: TaskPhase = Field(
        default=TaskPhase.COMPLETED,
        description="被依赖任务需要达到的阶段"
    )


class TaskResult(BaseModel):
    """任务执行结果"""
    exit_code: int = 0
    output: Optional[str] = Field(default=None, description="输出引用")
    artifact: Optional[str] = Field(default=None, description="产物引用")


class TaskCondition(BaseModel):
    """状态条件记录"""
    type: str
    status: str = Field(..., description="True / False / Unknown")
    reason: str = ""
    message: str = ""
    last_transition_time: datetime = Field(default_factory=utcnow)


class TaskSpec(BaseModel):
    """
    任务规格

    由外部提交，核心只读取不修改
    """

    description: Optional[str] = None

    # =========================================================================
    # 执行配置
    # =========================================================================
    image_ref: str = Field(default="", description="镜像或可执行体引用")
    command: List[str] = Field(default_factory=list)
    args: List[str] = Field(default_factory=list)
    env: Dict[str, str] = Field(default_factory=dict)

    # =========================================================================
    # 资源与策略
    # =========================================================================
    resources: ResourceRequirements = Field(default_factory=ResourceRequirements)
    priority: int = Field(default=0, description="优先级（数值越大优先级越高）")
    timeout_seconds: Optional[float] = Field(default=3600, description="超时时间（秒），None 表示不限制")
    retry_policy: RetryPolicy = Field(default_factory=RetryPolicy)

    # =========================================================================
    # 依赖与标签
    # =========================================================================
    dependencies: List[Dependency] = Field(default_factory=list)
    labels: Dict[str, str] = Field(default_factory=dict)

    def validate_spec(self, task_key: Optional[str] = None) -> None:
        """
        校验任务规格

        Raises:
            ValidationError: 规格非法，任务直接失败，不再重试
        """
        if not self.image_ref.strip():
            raise ValidationError("imageRef is required", op="spec.validate")
        if self.retry_policy.limit < 0:
            raise ValidationError(
                f"retryPolicy.limit must be non-negative, got {self.retry_policy.limit}",
                op="spec.validate"
            )
        if self.timeout_seconds is not None and self.timeout_seconds <= 0:
            raise ValidationError(
                f"timeout must be positive, got {self.timeout_seconds}",
                op="spec.validate"
            )
        over = self.resources.requests_over_limits()
        if over:
            raise ValidationError(
                f"requests exceed limits for: {', '.join(over)}",
                op="spec.validate"
            )
        if task_key:
            namespace, _ = split_key(task_key)
            for dep in self.dependencies:
                dep_namespace, dep_name = split_key(dep.task_id, namespace)
                if f"{dep_namespace}/{dep_name}" == task_key:
                    raise ValidationError(f"task depends on itself: {dep.task_id}", op="spec.validate")


class TaskStatus(BaseModel):
    """任务状态，由生命周期驱动器维护"""

    phase: TaskPhase = Field(default=TaskPhase.PENDING)
    message: str = Field(default="", description="最近一次的可读原因")
    progress: int = Field(default=0, ge=0, le=100, description="执行进度 (0-100)")

    # =========================================================================
    # 时间戳
    # =========================================================================
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None

    # =========================================================================
    # 调度与执行
    # =========================================================================
    assigned_agent: Optional[str] = Field(default=None, description="调度到的 Agent")
    reserved: ResourceSet = Field(default_factory=ResourceSet, description="在 Agent 上预留的资源")
    execution_handle: Optional[str] = Field(default=None, description="执行底座返回的句柄")
    attempts: int = Field(default=0, ge=0, description="执行底座上报的失败尝试次数")
    resources_used: ResourceSet = Field(default_factory=ResourceSet)
    result: Optional[TaskResult] = None
    conditions: List[TaskCondition] = Field(default_factory=list)

    def set_condition(self, type_: str, status: str, reason: str = "", message: str = "") -> None:
        """写入条件；仅在 status 变化时刷新 last_transition_time"""
        for cond in self.conditions:
            if cond.type == type_:
                if cond.status != status:
                    cond.status = status
                    cond.last_transition_time = utcnow()
                cond.reason = reason
                cond.message = message
                return
        self.conditions.append(
            TaskCondition(type=type_, status=status, reason=reason, message=message)
        )

    def get_condition(self, type_: str) -> Optional[TaskCondition]:
        for cond in self.conditions:
            if cond.type == type_:
                return cond
        return None


class Task(BaseModel):
    """
    任务

    由 namespace/name 唯一标识。任务不会被核心删除，删除和回收由外部负责。
    """

    namespace: str = Field(default="default")
    name: str = Field(..., min_length=1)
    spec: TaskSpec = Field(default_factory=TaskSpec)
    status: TaskStatus = Field(default_factory=TaskStatus)

    resource_version: int = Field(default=0, ge=0, description="乐观锁版本号，由任务存储维护")
    cancel_requested: bool = Field(default=False, description="外部取消请求")
    cancel_reason: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}"

    @property
    def is_finished(self) -> bool:
        return self.status.phase.is_terminal

    @property
    def duration_seconds(self) -> Optional[float]:
        """执行耗时（秒）"""
        if self.status.start_time and self.status.end_time:
            return (self.status.end_time - self.status.start_time).total_seconds()
        return None


def split_key(key: str, default_namespace: str = "default") -> tuple:
    """将 'namespace/name' 或 'name' 拆分为 (namespace, name)"""
    if "/" in key:
        namespace, name = key.split("/", 1)
        return namespace, name
    return default_namespace, key


def dependency_key(task: Task, dep: Dependency) -> str:
    """依赖未写 namespace 时使用当前任务的 namespace"""
    namespace, name = split_key(dep.task_id, task.namespace)
    return f"{namespace}/{name}"


class ScheduleResult(BaseModel):
    """一次成功调度的结果，不持久化"""
    target_agent: str
