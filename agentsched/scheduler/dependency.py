"""
依赖解析器
"""

import logging
from agentsched.backends.base import TaskStore
from agentsched.errors import FetchError, SchedulerError
from agentsched.models import Dependency, Task, TaskPhase
from agentsched.models.task import dependency_key

logger = logging.getLogger(__name__)


class DependencyResolver:
    """按声明顺序检查任务依赖是否已达到要求的阶段"""

    def __init__(self, task_store: TaskStore):
        self._task_store = task_store

    async def _fetch_phase(self, task: Task, dep: Dependency) -> TaskPhase:
        key = dependency_key(task, dep)
        try:
            return await self._task_store.get_phase(key)
        except SchedulerError:
            raise
        except Exception as e:
            raise FetchError(f"failed to fetch dependency {key}", op="dependency.check", cause=e) from e

    async def check_dependencies(self, task: Task) -> bool:
        """
        检查依赖

        Returns:
            全部依赖满足返回 True；遇到第一个不满足的依赖即返回 False

        Raises:
            FetchError: 读取被依赖任务失败
            NotFoundError: 被依赖任务不存在
        """
        for dep in task.spec.dependencies:
            phase = await self._fetch_phase(task, dep)
            if phase != dep.required_phase:
                logger.debug(
                    f"Dependency not ready: {task.key} -> {dep.task_id} "
                    f"({phase.value} != {dep.required_phase.value})"
                )
                return False
        return True

