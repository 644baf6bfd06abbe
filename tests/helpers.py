"""
测试辅助：构造 Agent、任务以及一套组装好的内存调度核心
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Dict, List, Optional

from agentsched.backends.memory import InMemoryAgentSource, InMemoryExecutionSubstrate, InMemoryTaskStore
from agentsched.config import Settings
from agentsched.models import (
    AgentObservation, Dependency, ResourceRequirements, RetryPolicy, Task, TaskPhase, TaskSpec,
)
from agentsched.scheduler import DependencyResolver, ResourceLedger, Scheduler, TaskLifecycleDriver


def make_agent(name: str, ready: bool = True, labels: Optional[Dict[str, str]] = None, **allocatable) -> AgentObservation:
    """make_agent("a1", cpu="1000m", memory="512Mi")"""
    return AgentObservation(name=name, ready=ready, allocatable=allocatable, labels=labels or {})


def make_task(
    name: str,
    namespace: str = "default",
    image_ref: str = "registry.local/job:1",
    limits: Optional[Dict[str, str]] = None,
    requests: Optional[Dict[str, str]] = None,
    depends_on: Optional[List[str]] = None,
    retry_limit: int = 0,
    timeout_seconds: Optional[float] = 3600,
    priority: int = 0,
) -> Task:
    return Task(
        namespace=namespace,
        name=name,
        spec=TaskSpec(
            image_ref=image_ref,
            resources=ResourceRequirements(limits=limits or {}, requests=requests or {}),
            dependencies=[Dependency(task_id=d, required_phase=TaskPhase.COMPLETED) for d in depends_on or []],
            retry_policy=RetryPolicy(limit=retry_limit, backoff_seconds=1),
            timeout_seconds=timeout_seconds,
            priority=priority,
        ),
    )


class ManualClock:
    """可手动推进的时钟"""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class Harness:
    """组装好的一套内存调度核心，必须在事件循环内构造"""

    def __init__(
        self,
        settings: Settings,
        agents: Optional[List[AgentObservation]] = None,
        clock=None,
        strict_release: bool = False,
    ):
        self.source = InMemoryAgentSource(agents or [])
        self.store = InMemoryTaskStore()
        self.substrate = InMemoryExecutionSubstrate()
        self.ledger = ResourceLedger(self.source, page_size=2, strict_release=strict_release)
        self.scheduler = Scheduler(self.ledger)
        self.resolver = DependencyResolver(self.store)
        kwargs = {"clock": clock} if clock is not None else {}
        self.driver = TaskLifecycleDriver(
            store=self.store,
            resolver=self.resolver,
            scheduler=self.scheduler,
            ledger=self.ledger,
            substrate=self.substrate,
            settings=settings,
            **kwargs,
        )

    async def reserved_on(self, agent: str) -> Dict[str, str]:
        snapshot = await self.ledger.get_snapshot(agent)
        return snapshot.reserved.to_dict()
