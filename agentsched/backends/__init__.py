"""
外部协作方模块

Agent 源、任务存储、执行底座的接口与实现
"""

from .base import AgentSource, AgentRegistry, TaskStore, ExecutionSubstrate
from .memory import InMemoryAgentSource, InMemoryTaskStore, InMemoryExecutionSubstrate

__all__ = [
    "AgentSource",
    "AgentRegistry",
    "TaskStore",
    "ExecutionSubstrate",
    "InMemoryAgentSource",
    "InMemoryTaskStore",
    "InMemoryExecutionSubstrate",
]
