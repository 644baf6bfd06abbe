"""
基于 Redis 的任务存储与 Agent 源

数据结构设计:
- {prefix}:tasks:{namespace}/{name}   Hash    任务（data / version / phase）
- {prefix}:tasks:index                Set     所有任务 key
- {prefix}:agents                     Hash    name -> Agent 观测 JSON（含心跳时间）
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from redis.exceptions import RedisError, WatchError

from agentsched.errors import ConflictError, FetchError, NotFoundError
from agentsched.models import AgentObservation, AgentPage, Task, TaskPhase
from .base import AgentRegistry, TaskStore
from .redis_client import RedisClient

logger = logging.getLogger(__name__)


@asynccontextmanager
async def _redis_errors(op: str):
    """把 redis 异常翻译为调度核心的错误类型"""
    try:
        yield
    except WatchError as e:
        raise ConflictError("concurrent modification", op=op, cause=e) from e
    except RedisError as e:
        raise FetchError("redis unavailable", op=op, cause=e) from e


async def _connect(redis_client: RedisClient):
    async with _redis_errors("redis.connect"):
        return await redis_client.get_client()


class RedisTaskStore(TaskStore):
    """
    Redis 任务存储

    写入使用 WATCH/MULTI 实现乐观锁，version 字段即 resource_version
    """

    def __init__(self, redis_client: RedisClient, prefix: str = "agentsched"):
        self._redis_client = redis_client
        self._prefix = prefix
        self._index_key = f"{prefix}:tasks:index"

    def _task_key(self, key: str) -> str:
        return f"{self._prefix}:tasks:{key}"

    @staticmethod
    def _serialize(task: Task) -> Dict[str, str]:
        return {
            "data": task.model_dump_json(),
            "version": str(task.resource_version),
            "phase": task.status.phase.value,
        }

    @staticmethod
    def _deserialize(data: Dict[str, str]) -> Task:
        task = Task.model_validate_json(data["data"])
        task.resource_version = int(data["version"])
        return task

    async def get(self, key: str) -> Task:
        redis = await _connect(self._redis_client)
        async with _redis_errors("tasks.get"):
            data = await redis.hgetall(self._task_key(key))
        if not data:
            raise NotFoundError(f"task {key} not found", op="tasks.get")
        return self._deserialize(data)

    async def get_phase(self, key: str) -> TaskPhase:
        redis = await _connect(self._redis_client)
        async with _redis_errors("tasks.get_phase"):
            phase = await redis.hget(self._task_key(key), "phase")
        if phase is None:
            raise NotFoundError(f"task {key} not found", op="tasks.get_phase")
        return TaskPhase(phase)

    async def create(self, task: Task) -> Task:
        redis = await _connect(self._redis_client)
        stored = task.model_copy(deep=True)
        stored.resource_version = 1
        redis_key = self._task_key(task.key)

        async with _redis_errors("tasks.create"):
            async with redis.pipeline(transaction=True) as pipe:
                await pipe.watch(redis_key)
                if await pipe.exists(redis_key):
                    raise ConflictError(f"task {task.key} already exists", op="tasks.create")
                pipe.multi()
                pipe.hset(redis_key, mapping=self._serialize(stored))
                pipe.sadd(self._index_key, task.key)
                await pipe.execute()

        logger.debug(f"Task stored: {task.key}")
        return stored

    async def put(self, task: Task) -> Task:
        redis = await _connect(self._redis_client)
        redis_key = self._task_key(task.key)
        stored = task.model_copy(deep=True)
        stored.resource_version = task.resource_version + 1

        async with _redis_errors("tasks.put"):
            async with redis.pipeline(transaction=True) as pipe:
                await pipe.watch(redis_key)
                version = await pipe.hget(redis_key, "version")
                if version is None:
                    raise NotFoundError(f"task {task.key} not found", op="tasks.put")
                if int(version) != task.resource_version:
                    raise ConflictError(
                        f"task {task.key} modified concurrently "
                        f"(have {task.resource_version}, stored {version})",
                        op="tasks.put"
                    )
                pipe.multi()
                pipe.hset(redis_key, mapping=self._serialize(stored))
                await pipe.execute()

        return stored

    async def list_keys(self) -> List[str]:
        redis = await _connect(self._redis_client)
        async with _redis_errors("tasks.list"):
            keys = await redis.smembers(self._index_key)
        return sorted(keys)


class RedisAgentSource(AgentRegistry):
    """
    Redis Agent 源

    Agent 通过 upsert/heartbeat 上报，心跳超时的 Agent 在列出时视为未就绪
    """

    def __init__(
        self,
        redis_client: RedisClient,
        prefix: str = "agentsched",
        heartbeat_timeout: Optional[float] = 30
    ):
        self._redis_client = redis_client
        self._agents_key = f"{prefix}:agents"
        self._heartbeat_timeout = heartbeat_timeout

    def _is_stale(self, obs: AgentObservation, now: datetime) -> bool:
        if not self._heartbeat_timeout or obs.last_heartbeat is None:
            return False
        return now - obs.last_heartbeat > timedelta(seconds=self._heartbeat_timeout)

    async def list(self, limit: int, continue_token: Optional[str] = None) -> AgentPage:
        redis = await _connect(self._redis_client)
        cursor = int(continue_token) if continue_token else 0
        async with _redis_errors("agents.list"):
            next_cursor, entries = await redis.hscan(self._agents_key, cursor=cursor, count=limit)

        now = datetime.now(timezone.utc)
        items = []
        for name in sorted(entries):
            obs = AgentObservation.model_validate_json(entries[name])
            if obs.ready and self._is_stale(obs, now):
                logger.debug(f"Agent {name} heartbeat stale, treating as not ready")
                obs = obs.model_copy(update={"ready": False})
            items.append(obs)

        return AgentPage(
            items=items,
            continue_token=str(next_cursor) if int(next_cursor) != 0 else None,
        )

    async def upsert(self, agent: AgentObservation) -> AgentObservation:
        """注册或更新 Agent，并刷新心跳时间"""
        redis = await _connect(self._redis_client)
        stored = agent.model_copy(update={"last_heartbeat": datetime.now(timezone.utc)})
        async with _redis_errors("agents.upsert"):
            await redis.hset(self._agents_key, agent.name, stored.model_dump_json())
        return stored

    async def heartbeat(self, name: str) -> AgentObservation:
        """
        刷新 Agent 心跳

        Raises:
            NotFoundError: Agent 未注册
        """
        redis = await _connect(self._redis_client)
        async with _redis_errors("agents.heartbeat"):
            raw = await redis.hget(self._agents_key, name)
        if raw is None:
            raise NotFoundError(f"agent {name} not registered", op="agents.heartbeat")
        return await self.upsert(AgentObservation.model_validate_json(raw))

    async def remove(self, name: str) -> bool:
        """移除 Agent"""
        redis = await _connect(self._redis_client)
        async with _redis_errors("agents.remove"):
            return bool(await redis.hdel(self._agents_key, name))
