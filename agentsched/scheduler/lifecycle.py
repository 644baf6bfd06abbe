"""
任务生命周期驱动器
负责任务从 Pending 到终止阶段的状态推进、资源预留的持有与释放
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, Optional, Tuple

from agentsched.backends.base import ExecutionSubstrate, TaskStore
from agentsched.config import Settings, get_settings
from agentsched.errors import (
    CancelledTaskError, ConflictError, FetchError, NoCapacityError, NotFoundError, SchedulerError,
    TaskTimeoutError, ValidationError,
)
from agentsched.models import (
    ExecutionPhase, ExecutionRequest, ExecutionStatus, ResourceSet, Task, TaskPhase, TaskResult, TaskStatus,
)
from agentsched.models.execution import effective_progress
from agentsched.models.task import utcnow
from agentsched.scheduler.dependency import DependencyResolver
from agentsched.scheduler.resource_ledger import ResourceLedger
from agentsched.scheduler.scheduler import Scheduler

logger = logging.getLogger(__name__)

# 写入取消请求时的乐观锁重试次数
CANCEL_WRITE_ATTEMPTS = 5


@dataclass(frozen=True)
class ReconcileResult:
    """
    一次调和的结果

    requeue_after 为 None 表示无需再调和（已终止或任务已不存在）
    """
    phase: Optional[TaskPhase]
    requeue_after: Optional[float]


def _describe(error: SchedulerError) -> str:
    return f"{type(error).__name__}: {error.message or error}"


class TaskLifecycleDriver:
    """
    任务生命周期驱动器

    职责：
    1. 校验任务规格、检查依赖
    2. 通过调度器预留资源并交付执行底座
    3. 根据执行底座上报的状态推进任务阶段
    4. 处理超时与外部取消
    5. 任务终止、被取消或调和被中断时释放持有的预留

    它是唯一决定"终止失败"还是"退避重试"的组件。
    """

    def __init__(
        self,
        store: TaskStore,
        resolver: DependencyResolver,
        scheduler: Scheduler,
        ledger: ResourceLedger,
        substrate: ExecutionSubstrate,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow
    ):
        self._store = store
        self._resolver = resolver
        self._scheduler = scheduler
        self._ledger = ledger
        self._substrate = substrate
        self._clock = clock

        settings = settings or get_settings()
        self._dependency_backoff = settings.dependency_backoff
        self._no_capacity_backoff = settings.no_capacity_backoff
        self._status_poll_interval = settings.status_poll_interval
        self._transient_backoff = settings.transient_backoff
        self._conflict_backoff = settings.conflict_backoff

        # 驱动器持有的预留：task_key -> (agent, amount)
        self._reservations: Dict[str, Tuple[str, ResourceSet]] = {}

    # =========================================================================
    # 任务提交 / 取消
    # =========================================================================

    async def submit(self, task: Task) -> Task:
        """
        提交任务，以 Pending 状态写入任务存储

        Raises:
            ConflictError: 同名任务已存在
        """
        task.status = TaskStatus(phase=TaskPhase.PENDING, message="submitted")
        task.cancel_requested = False
        task.cancel_reason = None
        stored = await self._store.create(task)
        logger.info(f"Task submitted: {stored.key} (priority={stored.spec.priority})")
        return stored

    async def cancel(self, key: str, reason: str = "") -> Task:
        """
        请求取消任务并立即调和一次

        Raises:
            NotFoundError: 任务不存在
            ConflictError: 多次写入取消请求均遇到并发修改
        """
        for _ in range(CANCEL_WRITE_ATTEMPTS):
            task = await self._store.get(key)
            if task.is_finished or task.cancel_requested:
                break
            task.cancel_requested = True
            task.cancel_reason = reason or "cancelled by user"
            try:
                await self._store.put(task)
                logger.info(f"Cancellation requested: {key} ({task.cancel_reason})")
                break
            except ConflictError:
                continue
        else:
            raise ConflictError(f"could not record cancellation for {key}", op="lifecycle.cancel")

        await self.reconcile(key)
        return await self._store.get(key)

    # =========================================================================
    # 调和
    # =========================================================================

    async def reconcile(self, key: str) -> ReconcileResult:
        """
        对单个任务执行一次调和

        Returns:
            调和结果，requeue_after 指示多久后再次调和
        """
        try:
            task = await self._store.get(key)
        except NotFoundError:
            logger.info(f"Task {key} no longer exists")
            await self._release_held(key)
            return ReconcileResult(phase=None, requeue_after=None)
        except FetchError as e:
            logger.warning(f"Failed to load task {key}: {e}")
            return ReconcileResult(phase=None, requeue_after=self._transient_backoff)

        if task.is_finished:
            await self._release_held(key)
            return ReconcileResult(phase=task.status.phase, requeue_after=None)

        before = task.status.model_copy(deep=True)
        held_before = self._reservations.get(key)

        try:
            if task.cancel_requested:
                await self._reconcile_cancelled(task)
                requeue_after = None
            elif task.status.phase == TaskPhase.PENDING:
                requeue_after = await self._reconcile_pending(task)
            else:
                requeue_after = await self._reconcile_active(task)
        except Exception:
            if self._reserved_since(key, held_before):
                await self._release_held(key)
            raise

        if task.status != before:
            try:
                task = await self._store.put(task)
            except (ConflictError, FetchError) as e:
                # 本轮的预留和提交都没能落盘，撤销后重来
                if self._reserved_since(key, held_before):
                    await self._release_held(key)
                handle = task.status.execution_handle
                if handle and handle != before.execution_handle:
                    await self._cancel_execution(handle)
                backoff = self._conflict_backoff if isinstance(e, ConflictError) else self._transient_backoff
                logger.info(f"Status write for {key} failed, requeue in {backoff}s: {e}")
                return ReconcileResult(phase=before.phase, requeue_after=backoff)

            logger.debug(f"Task {key} status: {before.phase.value} -> {task.status.phase.value}")

        if task.status.phase.is_terminal:
            await self._release_held(key)
            return ReconcileResult(phase=task.status.phase, requeue_after=None)
        return ReconcileResult(phase=task.status.phase, requeue_after=requeue_after)

    async def _reconcile_pending(self, task: Task) -> Optional[float]:
        status = task.status

        try:
            task.spec.validate_spec(task.key)
        except ValidationError as e:
            self._finish(task, TaskPhase.FAILED, _describe(e), reason="InvalidSpec")
            logger.warning(f"Task {task.key} rejected: {e}")
            return None

        try:
            ready = await self._resolver.check_dependencies(task)
        except NotFoundError as e:
            status.message = _describe(e)
            status.set_condition("DependenciesReady", "False", "DependencyNotFound", e.message)
            return self._dependency_backoff
        except FetchError as e:
            status.message = _describe(e)
            return self._transient_backoff

        if not ready:
            status.message = "waiting for dependencies"
            status.set_condition("DependenciesReady", "False", "Waiting", "waiting for dependencies")
            return self._dependency_backoff
        if task.spec.dependencies:
            status.set_condition("DependenciesReady", "True", "Satisfied")

        if task.key in self._reservations:
            # 存储中仍是 Pending，之前的预留从未生效
            logger.warning(f"Task {task.key} is Pending but holds a reservation, releasing it")
            await self._release_held(task.key)

        try:
            result = await self._scheduler.schedule(task)
        except NoCapacityError as e:
            status.message = _describe(e)
            status.set_condition("Scheduled", "False", "NoCapacity", e.message)
            return self._no_capacity_backoff
        except (ConflictError, NotFoundError) as e:
            # 过滤和预留之间被抢占或 Agent 被 resync 移除，稍后重新调度
            status.message = _describe(e)
            return self._conflict_backoff

        amount = task.spec.resources.reservation_amount()
        self._reservations[task.key] = (result.target_agent, amount)

        status.phase = TaskPhase.SCHEDULED
        status.assigned_agent = result.target_agent
        status.reserved = amount
        status.start_time = self._clock()
        status.end_time = None
        status.message = f"scheduled to {result.target_agent}"
        status.set_condition("Scheduled", "True", "Reserved", f"reserved on {result.target_agent}")

        return await self._handoff(task)

    async def _reconcile_active(self, task: Task) -> Optional[float]:
        status = task.status

        # 超时从调度时刻算起，交付一直失败的任务同样会超时
        if self._timed_out(task):
            if status.execution_handle:
                await self._cancel_execution(status.execution_handle)
            timeout = TaskTimeoutError(
                f"task exceeded timeout of {task.spec.timeout_seconds}s",
                op="lifecycle.reconcile"
            )
            self._finish(task, TaskPhase.FAILED, _describe(timeout), reason="Timeout")
            logger.warning(f"Task timed out: {task.key}")
            return None

        if task.key not in self._reservations and status.assigned_agent:
            await self._adopt_reservation(task)

        if not status.execution_handle:
            if not await self._agent_present(status.assigned_agent):
                self._return_to_pending(task)
                return 0.0
            return await self._handoff(task)

        try:
            observed = await self._substrate.poll_status(status.execution_handle)
        except NotFoundError as e:
            # 执行底座丢失了这次执行，重新交付
            status.execution_handle = None
            status.message = f"{_describe(e)}, resubmitting"
            return self._transient_backoff
        except SchedulerError as e:
            status.message = _describe(e)
            return self._transient_backoff

        return self._apply_execution_status(task, observed)

    async def _reconcile_cancelled(self, task: Task) -> None:
        if task.status.execution_handle:
            await self._cancel_execution(task.status.execution_handle)
        cancelled = CancelledTaskError(task.cancel_reason or "cancelled by user", op="lifecycle.cancel")
        self._finish(task, TaskPhase.CANCELLED, _describe(cancelled), reason="Cancelled")
        logger.info(f"Task cancelled: {task.key}")

    # =========================================================================
    # 执行底座交互
    # =========================================================================

    def _build_request(self, task: Task) -> ExecutionRequest:
        spec = task.spec
        return ExecutionRequest(
            task_key=task.key,
            target_agent=task.status.assigned_agent,
            image_ref=spec.image_ref,
            command=list(spec.command),
            args=list(spec.args),
            env=dict(spec.env),
            resources=task.status.reserved,
            labels=dict(spec.labels),
            backoff_limit=spec.retry_policy.limit,
            backoff_seconds=spec.retry_policy.backoff_seconds,
            active_deadline_seconds=spec.timeout_seconds,
        )

    async def _handoff(self, task: Task) -> Optional[float]:
        status = task.status
        try:
            handle = await self._substrate.submit(self._build_request(task))
        except ValidationError as e:
            self._finish(task, TaskPhase.FAILED, _describe(e), reason="Rejected")
            logger.warning(f"Execution of {task.key} rejected: {e}")
            return None
        except SchedulerError as e:
            status.message = f"{_describe(e)} (handoff to {status.assigned_agent} will be retried)"
            logger.warning(f"Handoff of {task.key} failed: {e}")
            return self._transient_backoff

        status.execution_handle = handle
        status.message = f"handed off to {status.assigned_agent}"
        logger.info(f"Task handed off: {task.key} -> {status.assigned_agent} ({handle})")
        return self._status_poll_interval

    def _apply_execution_status(self, task: Task, observed: ExecutionStatus) -> Optional[float]:
        status = task.status
        status.attempts = observed.failed_attempts
        if observed.resources_used is not None:
            status.resources_used = observed.resources_used

        if observed.phase == ExecutionPhase.PENDING:
            status.message = observed.message or "waiting for execution to start"
            return self._status_poll_interval

        if observed.phase == ExecutionPhase.RUNNING:
            status.phase = TaskPhase.RUNNING
            status.progress = effective_progress(observed)
            status.message = observed.message or "running"
            status.set_condition("Running", "True", "Started")
            return self._status_poll_interval

        result = TaskResult(
            exit_code=observed.exit_code if observed.exit_code is not None else 0,
            output=observed.output,
            artifact=observed.artifact,
        )
        if observed.phase == ExecutionPhase.SUCCEEDED:
            status.result = result
            status.progress = 100
            self._finish(task, TaskPhase.COMPLETED, observed.message or "completed", reason="Succeeded")
            duration = task.duration_seconds
            if duration is not None:
                logger.info(f"Task completed: {task.key} ({duration:.1f}s)")
            else:
                logger.info(f"Task completed: {task.key}")
            return None

        if observed.exit_code is not None:
            status.result = result
        remaining = max(0, task.spec.retry_policy.limit - observed.failed_attempts)
        self._finish(
            task,
            TaskPhase.FAILED,
            f"ExecutionFailed: {observed.message or 'execution failed'} (retries remaining: {remaining})",
            reason="ExecutionFailed"
        )
        logger.error(f"Task failed: {task.key} - {status.message}")
        return None

    async def _cancel_execution(self, handle: str) -> None:
        """尽力终止执行，失败只记录日志"""
        try:
            await self._substrate.cancel(handle)
        except SchedulerError as e:
            logger.warning(f"Failed to cancel execution {handle}: {e}")

    # =========================================================================
    # 预留管理
    # =========================================================================

    def held_reservation(self, key: str) -> Optional[Tuple[str, ResourceSet]]:
        """驱动器为该任务持有的预留"""
        return self._reservations.get(key)

    async def _adopt_reservation(self, task: Task) -> None:
        """
        接管已调度但本驱动器未持有预留的任务（例如进程重启后账本被重建），
        尽力在原 Agent 上重新预留
        """
        agent = task.status.assigned_agent
        amount = task.status.reserved
        if amount.is_zero:
            amount = task.spec.resources.reservation_amount()
        try:
            await self._ledger.reserve(agent, amount)
        except SchedulerError as e:
            logger.warning(f"Could not re-reserve {amount.to_dict()} on {agent} for {task.key}: {e}")
            return
        self._reservations[task.key] = (agent, amount)
        logger.info(f"Reservation adopted: {task.key} on {agent}")

    def _reserved_since(self, key: str, held_before: Optional[Tuple[str, ResourceSet]]) -> bool:
        """本轮调和是否新做了预留"""
        held = self._reservations.get(key)
        return held is not None and held is not held_before

    async def _release_held(self, key: str) -> None:
        held = self._reservations.pop(key, None)
        if held is None:
            return
        agent, amount = held
        try:
            await self._ledger.release(agent, amount)
        except NotFoundError:
            logger.debug(f"Agent {agent} already gone, nothing to release for {key}")
        except ConflictError as e:
            logger.warning(f"Release for {key} on {agent} rejected: {e}")
        else:
            logger.debug(f"Reservation released: {key} on {agent}")

    async def _agent_present(self, agent: Optional[str]) -> bool:
        if not agent:
            return False
        try:
            await self._ledger.get_snapshot(agent)
        except NotFoundError:
            return False
        return True

    def _return_to_pending(self, task: Task) -> None:
        status = task.status
        agent = status.assigned_agent
        # Agent 已不在账本中，对应预留随之消失
        self._reservations.pop(task.key, None)
        status.phase = TaskPhase.PENDING
        status.assigned_agent = None
        status.reserved = ResourceSet()
        status.start_time = None
        status.message = f"agent {agent} disappeared before handoff, rescheduling"
        status.set_condition("Scheduled", "False", "AgentLost", status.message)
        logger.warning(f"Task {task.key} returned to Pending: agent {agent} gone")

    # =========================================================================
    # 辅助
    # =========================================================================

    def _timed_out(self, task: Task) -> bool:
        timeout = task.spec.timeout_seconds
        start = task.status.start_time
        if timeout is None or start is None:
            return False
        return (self._clock() - start).total_seconds() > timeout

    def _finish(self, task: Task, phase: TaskPhase, message: str, reason: str) -> None:
        status = task.status
        status.phase = phase
        status.message = message
        status.end_time = self._clock()
        status.reserved = ResourceSet()
        status.set_condition(phase.value, "True", reason, message)

    # =========================================================================
    # 工作循环
    # =========================================================================

    async def run(self, key: str, deadline: Optional[float] = None) -> Optional[TaskPhase]:
        """
        单个任务的工作循环：调和、按 requeue_after 休眠、直到任务终止

        Args:
            key: 任务 key
            deadline: 事件循环时间（loop.time()）上的绝对截止时间

        Returns:
            任务的终止阶段；任务已不存在时返回 None

        Raises:
            asyncio.CancelledError: 被取消，已释放持有的预留
            asyncio.TimeoutError: 到达截止时间，已释放持有的预留
        """
        try:
            if deadline is None:
                return await self._run_loop(key)
            remaining = max(0.0, deadline - asyncio.get_running_loop().time())
            return await asyncio.wait_for(self._run_loop(key), timeout=remaining)
        except (asyncio.CancelledError, asyncio.TimeoutError):
            await self._release_held(key)
            raise

    async def _run_loop(self, key: str) -> Optional[TaskPhase]:
        while True:
            try:
                result = await self.reconcile(key)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Error reconciling {key}: {e}")
                result = ReconcileResult(phase=None, requeue_after=self._transient_backoff)

            if result.requeue_after is None:
                return result.phase
            await asyncio.sleep(result.requeue_after)
