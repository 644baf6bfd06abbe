"""
内存实现的外部协作方
用于本地开发模式和测试
"""

import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional
from uuid import uuid4

from agentsched.errors import ConflictError, FetchError, NotFoundError
from agentsched.models import (
    AgentObservation, AgentPage, ExecutionPhase, ExecutionRequest, ExecutionStatus, Task,
)
from .base import AgentRegistry, ExecutionSubstrate, TaskStore

logger = logging.getLogger(__name__)


class InMemoryAgentSource(AgentRegistry):
    """内存 Agent 源，按名称排序分页"""

    def __init__(self, agents: Optional[List[AgentObservation]] = None):
        self._agents: Dict[str, AgentObservation] = {}
        self.fail_with: Optional[Exception] = None
        self.list_calls = 0
        for agent in agents or []:
            self._agents[agent.name] = agent.model_copy(deep=True)

    async def upsert(self, agent: AgentObservation) -> AgentObservation:
        """注册或更新 Agent，并刷新心跳时间"""
        stored = agent.model_copy(update={"last_heartbeat": datetime.now(timezone.utc)}, deep=True)
        self._agents[agent.name] = stored
        return stored.model_copy(deep=True)

    async def heartbeat(self, name: str) -> AgentObservation:
        agent = self._agents.get(name)
        if agent is None:
            raise NotFoundError(f"agent {name} not registered", op="agents.heartbeat")
        return await self.upsert(agent)

    async def remove(self, name: str) -> bool:
        """移除 Agent"""
        return self._agents.pop(name, None) is not None

    async def list(self, limit: int, continue_token: Optional[str] = None) -> AgentPage:
        self.list_calls += 1
        if self.fail_with is not None:
            raise FetchError("agent source unavailable", op="agents.list", cause=self.fail_with)

        names = sorted(self._agents)
        start = int(continue_token) if continue_token else 0
        chunk = names[start:start + limit]
        next_start = start + len(chunk)
        return AgentPage(
            items=[self._agents[n].model_copy(deep=True) for n in chunk],
            continue_token=str(next_start) if next_start < len(names) else None,
        )


class InMemoryTaskStore(TaskStore):
    """内存任务存储，带乐观锁"""

    def __init__(self):
        self._tasks: Dict[str, Task] = {}
        self.put_count = 0

    async def get(self, key: str) -> Task:
        task = self._tasks.get(key)
        if task is None:
            raise NotFoundError(f"task {key} not found", op="tasks.get")
        return task.model_copy(deep=True)

    async def create(self, task: Task) -> Task:
        if task.key in self._tasks:
            raise ConflictError(f"task {task.key} already exists", op="tasks.create")
        stored = task.model_copy(deep=True)
        stored.resource_version = 1
        self._tasks[task.key] = stored
        return stored.model_copy(deep=True)

    async def put(self, task: Task) -> Task:
        current = self._tasks.get(task.key)
        if current is None:
            raise NotFoundError(f"task {task.key} not found", op="tasks.put")
        if current.resource_version != task.resource_version:
            raise ConflictError(
                f"task {task.key} modified concurrently "
                f"(have {task.resource_version}, stored {current.resource_version})",
                op="tasks.put"
            )
        stored = task.model_copy(deep=True)
        stored.resource_version = current.resource_version + 1
        self._tasks[task.key] = stored
        self.put_count += 1
        return stored.model_copy(deep=True)

    async def list_keys(self) -> List[str]:
        return sorted(self._tasks)


class InMemoryExecutionSubstrate(ExecutionSubstrate):
    """
    内存执行底座

    只记录提交的请求，执行状态由调用方通过 report() 推进
    """

    def __init__(self):
        self.requests: Dict[str, ExecutionRequest] = {}
        self._handles: Dict[str, str] = {}
        self._statuses: Dict[str, ExecutionStatus] = {}
        self.cancelled: List[str] = []
        self.fail_submit: Optional[Exception] = None

    async def submit(self, request: ExecutionRequest) -> str:
        if self.fail_submit is not None:
            raise FetchError("substrate unavailable", op="substrate.submit", cause=self.fail_submit)

        existing = self._handles.get(request.task_key)
        if existing:
            return existing

        handle = f"exec-{uuid4().hex[:12]}"
        self._handles[request.task_key] = handle
        self.requests[handle] = request
        self._statuses[handle] = ExecutionStatus(phase=ExecutionPhase.PENDING, message="waiting for agent")
        logger.debug(f"Execution submitted: {request.task_key} -> {handle} on {request.target_agent}")
        return handle

    async def poll_status(self, handle: str) -> ExecutionStatus:
        status = self._statuses.get(handle)
        if status is None:
            raise NotFoundError(f"execution {handle} not found", op="substrate.poll")
        return status.model_copy(deep=True)

    async def cancel(self, handle: str) -> None:
        if handle in self._statuses:
            self.cancelled.append(handle)

    def handle_for(self, task_key: str) -> Optional[str]:
        return self._handles.get(task_key)

    def report(self, task_key: str, status: ExecutionStatus) -> None:
        """推进某个任务的执行状态"""
        handle = self._handles.get(task_key)
        if handle is None:
            raise NotFoundError(f"no execution for task {task_key}", op="substrate.report")
        self._statuses[handle] = status
