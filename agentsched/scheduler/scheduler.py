"""
调度器
为任务挑选目标 Agent 并在账本上提交预留
"""

import logging
from typing import List, Optional

from agentsched.errors import NoCapacityError
from agentsched.models import AgentSnapshot, ScheduleResult, Task
from agentsched.scheduler.resource_ledger import ResourceLedger
from agentsched.scheduler.scoring import ScorerSpec, ScoreFunc, create_scorer, first_fit

logger = logging.getLogger(__name__)


class Scheduler:
    """
    调度器

    流程：可行性过滤 -> 打分排序 -> 在排名第一的 Agent 上预留。
    预留冲突直接抛给调用方，不在本层重试下一个候选。
    """

    def __init__(self, ledger: ResourceLedger, scorer: Optional[ScorerSpec] = None):
        self._ledger = ledger
        self._scorer: ScoreFunc = create_scorer(scorer) if scorer is not None else first_fit

    def rank(self, task: Task, candidates: List[AgentSnapshot], scorer: Optional[ScoreFunc] = None) -> List[AgentSnapshot]:
        """按分数降序、名称升序排序候选"""
        score = scorer or self._scorer
        return sorted(candidates, key=lambda agent: (-score(task, agent), agent.name))

    async def schedule(self, task: Task, scorer: Optional[ScorerSpec] = None) -> ScheduleResult:
        """
        调度一个任务

        Args:
            task: 任务
            scorer: 本次调度使用的打分函数，缺省使用构造时的策略

        Raises:
            NoCapacityError: 没有可行 Agent
            ConflictError: 过滤与预留之间容量被并发占用
            NotFoundError: 候选 Agent 在预留前被 resync 移除
        """
        requirement = task.spec.resources.reservation_amount()
        candidates = await self._ledger.list_feasible(requirement)
        if not candidates:
            raise NoCapacityError(
                f"no schedulable agents for {requirement.to_dict()}",
                op="scheduler.schedule"
            )

        ranked = self.rank(task, candidates, create_scorer(scorer) if scorer is not None else None)
        best = ranked[0]

        await self._ledger.reserve(best.name, requirement)

        logger.info(f"Task scheduled: {task.key} -> {best.name}")
        return ScheduleResult(target_agent=best.name)
