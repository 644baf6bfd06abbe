"""
数据模型包
"""

from .resource import ResourceQuantity, ResourceSet, ResourceRequirements, CPU, MEMORY, GPU
from .agent import AgentObservation, AgentPage, AgentCapacityRecord, AgentSnapshot
from .task import (
    Task, TaskSpec, TaskStatus, TaskPhase, TaskResult, TaskCondition,
    RetryPolicy, Dependency, ScheduleResult,
)
from .execution import ExecutionPhase, ExecutionRequest, ExecutionStatus

__all__ = [
    "ResourceQuantity", "ResourceSet", "ResourceRequirements", "CPU", "MEMORY", "GPU",
    "AgentObservation", "AgentPage", "AgentCapacityRecord", "AgentSnapshot",
    "Task", "TaskSpec", "TaskStatus", "TaskPhase", "TaskResult", "TaskCondition",
    "RetryPolicy", "Dependency", "ScheduleResult",
    "ExecutionPhase", "ExecutionRequest", "ExecutionStatus",
]
