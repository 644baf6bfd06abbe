"""
控制面
组装资源账本、同步器、调度器、依赖解析器和生命周期驱动器，并为每个任务运行一个工作协程
"""

import asyncio
import logging
from typing import Awaitable, Callable, Dict, List, Optional

from agentsched.backends import AgentSource, ExecutionSubstrate, TaskStore
from agentsched.backends.memory import InMemoryAgentSource, InMemoryExecutionSubstrate, InMemoryTaskStore
from agentsched.config import ConfigLoader, Settings, get_config, get_settings
from agentsched.models import AgentObservation, Task
from agentsched.scheduler import (
    DependencyResolver, LedgerSyncer, ResourceLedger, Scheduler, TaskLifecycleDriver,
)
from agentsched.scheduler.scoring import ScorerSpec

logger = logging.getLogger(__name__)


class ControlPlane:
    """
    控制面

    生命周期由宿主进程持有：start() 启动账本同步并恢复未终止任务，stop() 停止所有工作协程
    """

    def __init__(
        self,
        ledger: ResourceLedger,
        agent_source: AgentSource,
        store: TaskStore,
        substrate: ExecutionSubstrate,
        settings: Optional[Settings] = None,
        scorer: Optional[ScorerSpec] = None
    ):
        self.settings = settings or get_settings()
        self.ledger = ledger
        self.agent_source = agent_source
        self.store = store
        self.substrate = substrate

        self.scheduler = Scheduler(ledger, scorer or self.settings.default_scorer)
        self.resolver = DependencyResolver(store)
        self.driver = TaskLifecycleDriver(
            store=store,
            resolver=self.resolver,
            scheduler=self.scheduler,
            ledger=ledger,
            substrate=substrate,
            settings=self.settings
        )
        self.syncer = LedgerSyncer(ledger, interval=self.settings.resync_interval)

        self._workers: Dict[str, asyncio.Task] = {}
        self._closers: List[Callable[[], Awaitable[None]]] = []
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def tracked(self) -> List[str]:
        """正在运行工作协程的任务"""
        return sorted(self._workers)

    def add_closer(self, closer: Callable[[], Awaitable[None]]) -> None:
        """注册 stop() 时需要关闭的资源"""
        self._closers.append(closer)

    # =========================================================================
    # 启动 / 停止
    # =========================================================================

    async def start(self, resume: bool = True) -> None:
        """
        启动控制面

        Args:
            resume: 是否为任务存储中所有未终止的任务恢复工作协程
        """
        if self._running:
            logger.warning("ControlPlane already running")
            return
        self._running = True
        await self.syncer.start()

        if resume:
            resumed = 0
            for key in await self.store.list_keys():
                task = await self.store.get(key)
                if not task.is_finished:
                    self.track(key)
                    resumed += 1
            if resumed:
                logger.info(f"Resumed {resumed} unfinished tasks")

        logger.info("ControlPlane started")

    async def stop(self) -> None:
        """停止所有工作协程和账本同步"""
        self._running = False
        workers = list(self._workers.values())
        for worker in workers:
            worker.cancel()
        if workers:
            await asyncio.gather(*workers, return_exceptions=True)
        self._workers.clear()

        await self.syncer.stop()
        for closer in self._closers:
            try:
                await closer()
            except Exception as e:
                logger.error(f"Error closing resource: {e}")
        logger.info("ControlPlane stopped")

    # =========================================================================
    # 任务
    # =========================================================================

    def track(self, key: str) -> asyncio.Task:
        """为任务启动工作协程（已有则复用）"""
        existing = self._workers.get(key)
        if existing is not None and not existing.done():
            return existing
        worker = asyncio.create_task(self._work(key), name=f"task-worker:{key}")
        self._workers[key] = worker
        return worker

    async def _work(self, key: str) -> None:
        try:
            phase = await self.driver.run(key)
            logger.info(f"Task worker finished: {key} ({phase.value if phase else 'gone'})")
        finally:
            if self._workers.get(key) is asyncio.current_task():
                del self._workers[key]

    async def submit(self, task: Task) -> Task:
        """提交任务并开始调和"""
        stored = await self.driver.submit(task)
        self.track(stored.key)
        return stored

    async def cancel(self, key: str, reason: str = "") -> Task:
        """取消任务；终止后工作协程随之退出"""
        task = await self.driver.cancel(key, reason)
        worker = self._workers.get(key)
        if task.is_finished and worker is not None:
            worker.cancel()
        return task

    async def get_stats(self) -> Dict:
        return {
            "running": self._running,
            "syncer_running": self.syncer.is_running,
            "tracked_tasks": len(self._workers),
            "ledger": await self.ledger.get_cluster_stats(),
        }


def build_control_plane(
    settings: Optional[Settings] = None,
    config: Optional[ConfigLoader] = None
) -> ControlPlane:
    """
    根据配置构建控制面

    backend=memory 时 Agent 源由 YAML 中的 agents 列表初始化；
    配置了 substrate_url 时使用 HTTP 执行底座，否则使用内存执行底座
    """
    settings = settings or get_settings()
    config = config or get_config()
    closers: List[Callable[[], Awaitable[None]]] = []

    if settings.backend == "redis":
        from agentsched.backends.redis_client import RedisClient
        from agentsched.backends.redis_store import RedisAgentSource, RedisTaskStore

        redis_client = RedisClient(settings.redis_url)
        store: TaskStore = RedisTaskStore(redis_client, prefix=settings.redis_prefix)
        agent_source: AgentSource = RedisAgentSource(
            redis_client,
            prefix=settings.redis_prefix,
            heartbeat_timeout=settings.heartbeat_timeout
        )
        closers.append(redis_client.disconnect)
    elif settings.backend == "memory":
        store = InMemoryTaskStore()
        agent_source = InMemoryAgentSource([
            AgentObservation.model_validate({"ready": True, **agent})
            for agent in config.get_static_agents()
        ])
    else:
        raise ValueError(f"Unknown backend '{settings.backend}', expected 'memory' or 'redis'")

    if settings.substrate_url:
        from agentsched.backends.http_substrate import HttpExecutionSubstrate

        substrate: ExecutionSubstrate = HttpExecutionSubstrate(
            settings.substrate_url,
            timeout=settings.substrate_timeout
        )
        closers.append(substrate.close)
    else:
        substrate = InMemoryExecutionSubstrate()

    ledger = ResourceLedger(
        agent_source,
        page_size=settings.agent_page_size,
        strict_release=settings.strict_release
    )
    plane = ControlPlane(
        ledger=ledger,
        agent_source=agent_source,
        store=store,
        substrate=substrate,
        settings=settings,
        scorer=config.get_scorer(settings.default_scorer)
    )
    for closer in closers:
        plane.add_closer(closer)

    logger.info(
        f"ControlPlane built: backend={settings.backend}, "
        f"substrate={'http' if settings.substrate_url else 'memory'}"
    )
    return plane
