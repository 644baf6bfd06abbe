"""
外部协作方接口

调度核心只依赖这些接口：Agent 源、任务存储、执行底座。
实现方需把底层库的异常翻译为 agentsched.errors 中的错误类型。
"""

from abc import ABC, abstractmethod
from typing import List, Optional

from agentsched.models import AgentObservation, AgentPage, ExecutionRequest, ExecutionStatus, Task, TaskPhase


class AgentSource(ABC):
    """权威 Agent 列表，由资源账本的 resync 读取"""

    @abstractmethod
    async def list(self, limit: int, continue_token: Optional[str] = None) -> AgentPage:
        """
        分页列出 Agent

        Args:
            limit: 单页最大条数
            continue_token: 上一页返回的游标

        Raises:
            FetchError: Agent 源不可达
        """


class AgentRegistry(AgentSource):
    """可由 Agent 主动注册和上报心跳的 Agent 源"""

    @abstractmethod
    async def upsert(self, agent: AgentObservation) -> AgentObservation:
        """注册或更新 Agent，并刷新心跳时间"""

    @abstractmethod
    async def heartbeat(self, name: str) -> AgentObservation:
        """
        刷新心跳

        Raises:
            NotFoundError: Agent 未注册
        """

    @abstractmethod
    async def remove(self, name: str) -> bool:
        """移除 Agent，返回是否存在"""


class TaskStore(ABC):
    """任务存储"""

    @abstractmethod
    async def get(self, key: str) -> Task:
        """
        读取任务

        Raises:
            NotFoundError: 任务不存在
            FetchError: 存储不可达
        """

    async def get_phase(self, key: str) -> TaskPhase:
        """读取任务当前阶段"""
        task = await self.get(key)
        return task.status.phase

    @abstractmethod
    async def create(self, task: Task) -> Task:
        """
        新建任务

        Raises:
            ConflictError: 同名任务已存在
        """

    @abstractmethod
    async def put(self, task: Task) -> Task:
        """
        写回任务（乐观锁）

        task.resource_version 必须与存储中的版本一致，成功后版本号加一

        Raises:
            ConflictError: 版本不一致，可重试
            NotFoundError: 任务不存在
        """

    @abstractmethod
    async def list_keys(self) -> List[str]:
        """列出所有任务 key"""


class ExecutionSubstrate(ABC):
    """执行底座：实际运行任务并上报运行状态"""

    @abstractmethod
    async def submit(self, request: ExecutionRequest) -> str:
        """
        提交执行，返回句柄

        同一个 task_key 重复提交应返回已有句柄
        """

    @abstractmethod
    async def poll_status(self, handle: str) -> ExecutionStatus:
        """查询执行状态"""

    async def cancel(self, handle: str) -> None:
        """终止执行（尽力而为），默认不做任何事"""
        return None
