"""
资源账本
负责追踪每个 Agent 的可分配资源与已预留资源
"""

import asyncio
import logging
from typing import Dict, List, Optional, Mapping
from datetime import datetime, timezone

from agentsched.backends.base import AgentSource
from agentsched.errors import ConflictError, FetchError, NotFoundError
from agentsched.models import AgentCapacityRecord, AgentObservation, AgentSnapshot, ResourceSet
from agentsched.scheduler.locks import RWLock

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 512


class ResourceLedger:
    """
    资源账本

    职责：
    1. 维护进程内唯一的 Agent 容量表（allocatable / reserved）
    2. 提供可行性查询与原子的预留/释放
    3. 定期或按需从外部 Agent 源重建容量表，保留已有预留

    不变式：任意 Agent 任意资源类型 reserved <= allocatable。
    整张表由一把读写锁保护：查询持读锁，预留/释放/表替换持写锁。
    """

    def __init__(
        self,
        agent_source: Optional[AgentSource] = None,
        page_size: int = DEFAULT_PAGE_SIZE,
        strict_release: bool = False
    ):
        self._agent_source = agent_source
        self._page_size = page_size
        self._strict_release = strict_release
        self._table: Dict[str, AgentCapacityRecord] = {}
        self._lock = RWLock()
        self._resync_requested = asyncio.Event()
        self._last_resync: Optional[datetime] = None

    # =========================================================================
    # 查询
    # =========================================================================

    async def list_feasible(self, requirement: Mapping) -> List[AgentSnapshot]:
        """
        返回剩余资源满足需求的所有 Agent

        Args:
            requirement: 资源需求，仅检查其中出现的资源类型

        Returns:
            Agent 快照列表，不保证顺序；没有满足条件的 Agent 时返回空列表
        """
        async with self._lock.read_lock():
            return [
                AgentSnapshot.from_record(name, record)
                for name, record in self._table.items()
                if record.available.fits(requirement)
            ]

    async def get_snapshot(self, agent: str) -> AgentSnapshot:
        """获取单个 Agent 的快照"""
        async with self._lock.read_lock():
            record = self._table.get(agent)
            if record is None:
                raise NotFoundError(f"agent {agent} not found in ledger", op="ledger.get")
            return AgentSnapshot.from_record(agent, record)

    async def list_snapshots(self) -> List[AgentSnapshot]:
        """获取所有 Agent 的快照（按名称排序）"""
        async with self._lock.read_lock():
            return [AgentSnapshot.from_record(name, self._table[name]) for name in sorted(self._table)]

    # =========================================================================
    # 预留 / 释放
    # =========================================================================

    async def reserve(self, agent: str, amount: Mapping) -> None:
        """
        预留资源

        全部资源类型都满足 reserved + amount <= allocatable 时才生效，否则账本不变

        Raises:
            NotFoundError: Agent 不在账本中（可能被并发 resync 移除）
            ConflictError: 容量不足
        """
        amount = amount if isinstance(amount, ResourceSet) else ResourceSet(amount)
        async with self._lock.write_lock():
            record = self._table.get(agent)
            if record is None:
                raise NotFoundError(f"agent {agent} not found in ledger", op="ledger.reserve")

            new_reserved = record.reserved + amount
            over = new_reserved.exceeding_kinds(record.allocatable)
            if over:
                raise ConflictError(
                    f"agent {agent} capacity exceeded for {', '.join(over)}",
                    op="ledger.reserve"
                )
            record.reserved = new_reserved

        self.request_resync()
        logger.debug(f"Resources reserved on {agent}: {amount.to_dict()}")

    async def release(self, agent: str, amount: Mapping) -> None:
        """
        释放资源

        逐项扣减并在 0 处截断。释放量超过已预留量时记录告警；
        strict_release 模式下改为抛出 ConflictError 且账本不变。

        Raises:
            NotFoundError: Agent 不在账本中，调用方应容忍
            ConflictError: strict_release 模式下的超额释放
        """
        amount = amount if isinstance(amount, ResourceSet) else ResourceSet(amount)
        async with self._lock.write_lock():
            record = self._table.get(agent)
            if record is None:
                raise NotFoundError(f"agent {agent} not found in ledger", op="ledger.release")

            over = amount.exceeding_kinds(record.reserved)
            if over:
                if self._strict_release:
                    raise ConflictError(
                        f"release on {agent} exceeds reservation for {', '.join(over)}",
                        op="ledger.release"
                    )
                logger.warning(
                    f"Release on {agent} exceeds reservation for {', '.join(over)}, clamping to zero"
                )
            record.reserved = record.reserved - amount

        logger.debug(f"Resources released on {agent}: {amount.to_dict()}")

    # =========================================================================
    # 同步
    # =========================================================================

    def request_resync(self) -> None:
        """请求尽快 resync；多次请求在同步循环醒来前合并为一次"""
        self._resync_requested.set()

    async def wait_for_resync_request(self) -> None:
        """等待 resync 请求并消费它"""
        await self._resync_requested.wait()
        self._resync_requested.clear()

    async def resync(self, source: Optional[AgentSource] = None) -> int:
        """
        从外部 Agent 源重建容量表

        拉取过程不持锁；只有最后的表替换在写锁内完成。
        已存在的 Agent 保留 reserved，新 Agent 从 0 开始，消失或未就绪的 Agent 被移除。

        Returns:
            新表中的 Agent 数量

        Raises:
            FetchError: Agent 源不可达，原表保持不变
        """
        source = source or self._agent_source
        if source is None:
            raise FetchError("no agent source configured", op="ledger.resync")

        observations = await self._fetch_all(source)

        now = datetime.now(timezone.utc)
        fresh: Dict[str, AgentCapacityRecord] = {}
        for obs in observations:
            if not obs.ready:
                continue
            fresh[obs.name] = AgentCapacityRecord(
                allocatable=obs.allocatable,
                last_seen=now,
                labels=dict(obs.labels),
            )

        async with self._lock.write_lock():
            # 在锁内复制 reserved，拉取期间发生的预留/释放不会丢失
            for name, record in fresh.items():
                old = self._table.get(name)
                if old is None:
                    continue
                reserved = old.reserved
                shrunk = reserved.exceeding_kinds(record.allocatable)
                if shrunk:
                    logger.warning(
                        f"Agent {name} capacity shrank below reservations for {', '.join(shrunk)}, "
                        f"clamping reservation"
                    )
                    reserved = reserved.clamp_to(record.allocatable)
                record.reserved = reserved

            dropped = set(self._table) - set(fresh)
            self._table = fresh
            self._last_resync = now

        if dropped:
            logger.info(f"Agents dropped from ledger: {', '.join(sorted(dropped))}")
        logger.debug(f"Ledger resynced: {len(fresh)} agents")
        return len(fresh)

    async def _fetch_all(self, source: AgentSource) -> List[AgentObservation]:
        items: List[AgentObservation] = []
        token: Optional[str] = None
        while True:
            try:
                page = await source.list(limit=self._page_size, continue_token=token)
            except FetchError:
                raise
            except Exception as e:
                raise FetchError("failed to list agents", op="ledger.resync", cause=e) from e
            items.extend(page.items)
            token = page.continue_token
            if not token:
                return items

    @property
    def last_resync(self) -> Optional[datetime]:
        return self._last_resync

    # =========================================================================
    # 统计信息
    # =========================================================================

    async def get_cluster_stats(self) -> Dict:
        """获取集群资源统计"""
        async with self._lock.read_lock():
            count = len(self._table)
            total = ResourceSet()
            reserved = ResourceSet()
            for record in self._table.values():
                total = total + record.allocatable
                reserved = reserved + record.reserved

        return {
            "total_agents": count,
            "allocatable": total.to_dict(),
            "reserved": reserved.to_dict(),
            "available": (total - reserved).to_dict(),
            "last_resync": self._last_resync.isoformat() if self._last_resync else None,
        }
