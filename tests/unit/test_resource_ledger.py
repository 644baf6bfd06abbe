"""
资源账本单元测试

测试：
1. 可行性查询、预留以及容量不足时的冲突
2. 并发预留不会超额分配
3. 超额释放在 0 处截断；严格模式拒绝
4. resync 保留预留、移除消失或未就绪的 Agent、容量缩小时截断
5. 拉取失败时保留原表
6. 预留触发的 resync 请求会被合并
"""

from __future__ import annotations

import asyncio

import pytest

from agentsched.errors import ConflictError, FetchError, NotFoundError
from agentsched.models import ResourceSet
from agentsched.backends.memory import InMemoryAgentSource
from agentsched.scheduler import ResourceLedger

from tests.helpers import make_agent


async def _ledger(*agents, **kwargs) -> ResourceLedger:
    ledger = ResourceLedger(InMemoryAgentSource(list(agents)), page_size=2, **kwargs)
    await ledger.resync()
    return ledger


def _assert_invariant(snapshots):
    for snapshot in snapshots:
        for kind in snapshot.reserved:
            assert snapshot.reserved.quantity(kind) <= snapshot.allocatable.quantity(kind)
            assert snapshot.reserved.quantity(kind).milli_value >= 0


def test_list_feasible_and_reserve():
    """a1 满足需求，预留后 reserved 等于需求量"""
    async def scenario():
        ledger = await _ledger(make_agent("a1", cpu="1000m", memory="512Mi"))
        requirement = ResourceSet(cpu="500m", memory="128Mi")

        feasible = await ledger.list_feasible(requirement)
        assert [s.name for s in feasible] == ["a1"]

        await ledger.reserve("a1", requirement)
        snapshot = await ledger.get_snapshot("a1")
        assert snapshot.reserved == {"cpu": "500m", "memory": "128Mi"}
        assert snapshot.available == {"cpu": "500m", "memory": "384Mi"}

    asyncio.run(scenario())


def test_second_reservation_exceeding_capacity():
    """500m + 600m 超过 1000m，a1 不再可行，直接预留冲突"""
    async def scenario():
        ledger = await _ledger(make_agent("a1", cpu="1000m", memory="512Mi"))
        await ledger.reserve("a1", {"cpu": "500m", "memory": "128Mi"})

        second = ResourceSet(cpu="600m", memory="128Mi")
        assert await ledger.list_feasible(second) == []

        with pytest.raises(ConflictError):
            await ledger.reserve("a1", second)
        snapshot = await ledger.get_snapshot("a1")
        assert snapshot.reserved == {"cpu": "500m", "memory": "128Mi"}

    asyncio.run(scenario())


def test_reserve_is_all_or_nothing():
    """测试任一资源类型不足时整个预留不生效"""
    async def scenario():
        ledger = await _ledger(make_agent("a1", cpu="2", memory="1Gi"))
        with pytest.raises(ConflictError):
            await ledger.reserve("a1", {"cpu": "1", "memory": "2Gi"})
        assert (await ledger.get_snapshot("a1")).reserved.is_zero

    asyncio.run(scenario())


def test_reserve_kind_not_offered_conflicts():
    async def scenario():
        ledger = await _ledger(make_agent("a1", cpu="2"))
        with pytest.raises(ConflictError):
            await ledger.reserve("a1", {"gpu": "1"})

    asyncio.run(scenario())


def test_unknown_agent_not_found():
    async def scenario():
        ledger = await _ledger(make_agent("a1", cpu="1"))
        with pytest.raises(NotFoundError):
            await ledger.reserve("ghost", {"cpu": "1"})
        with pytest.raises(NotFoundError):
            await ledger.release("ghost", {"cpu": "1"})
        with pytest.raises(NotFoundError):
            await ledger.get_snapshot("ghost")

    asyncio.run(scenario())


def test_concurrent_reservations_never_exceed_allocatable():
    """测试并发预留：恰好能放下的那部分成功，其余 ConflictError"""
    async def scenario():
        ledger = await _ledger(make_agent("a1", cpu="1000m"))
        await ledger.reserve("a1", {"cpu": "100m"})

        results = await asyncio.gather(
            *[ledger.reserve("a1", {"cpu": "200m"}) for _ in range(10)],
            return_exceptions=True,
        )
        succeeded = [r for r in results if r is None]
        conflicts = [r for r in results if isinstance(r, ConflictError)]

        assert len(succeeded) == 4
        assert len(conflicts) == 6
        snapshot = await ledger.get_snapshot("a1")
        assert snapshot.reserved == {"cpu": "900m"}
        _assert_invariant([snapshot])

    asyncio.run(scenario())


def test_release_clamps_at_zero():
    """测试超额释放截断为 0，不会为负"""
    async def scenario():
        ledger = await _ledger(make_agent("a1", cpu="1", memory="1Gi"))
        await ledger.reserve("a1", {"cpu": "300m"})

        await ledger.release("a1", {"cpu": "500m", "memory": "1Mi"})
        snapshot = await ledger.get_snapshot("a1")
        assert snapshot.reserved.is_zero

        # 重复释放同一份预留
        await ledger.release("a1", {"cpu": "300m"})
        assert (await ledger.get_snapshot("a1")).reserved.is_zero

    asyncio.run(scenario())


def test_strict_release_rejects_over_release():
    async def scenario():
        ledger = await _ledger(make_agent("a1", cpu="1"), strict_release=True)
        await ledger.reserve("a1", {"cpu": "300m"})

        with pytest.raises(ConflictError):
            await ledger.release("a1", {"cpu": "500m"})
        assert (await ledger.get_snapshot("a1")).reserved == {"cpu": "300m"}

        await ledger.release("a1", {"cpu": "300m"})
        assert (await ledger.get_snapshot("a1")).reserved.is_zero

    asyncio.run(scenario())


def test_resync_conserves_reservations():
    """测试 resync 前后都存在的 Agent 保留 reserved"""
    async def scenario():
        source = InMemoryAgentSource([
            make_agent("a1", cpu="2"),
            make_agent("a2", cpu="2"),
            make_agent("a3", cpu="2"),
        ])
        ledger = ResourceLedger(source, page_size=2)
        assert await ledger.resync() == 3
        await ledger.reserve("a2", {"cpu": "1500m"})

        await ledger.resync()
        assert (await ledger.get_snapshot("a2")).reserved == {"cpu": "1500m"}
        assert (await ledger.get_snapshot("a1")).reserved.is_zero

    asyncio.run(scenario())


def test_resync_pages_through_source():
    async def scenario():
        source = InMemoryAgentSource([make_agent(f"a{i}", cpu="1") for i in range(5)])
        ledger = ResourceLedger(source, page_size=2)
        assert await ledger.resync() == 5
        assert source.list_calls == 3

    asyncio.run(scenario())


def test_resync_drops_missing_and_not_ready_agents():
    """测试消失的和未就绪的 Agent 被移出账本，新 Agent 从 0 开始"""
    async def scenario():
        source = InMemoryAgentSource([make_agent("a1", cpu="1"), make_agent("a2", cpu="1")])
        ledger = ResourceLedger(source)
        await ledger.resync()
        await ledger.reserve("a1", {"cpu": "500m"})

        await source.remove("a2")
        await source.upsert(make_agent("a1", ready=False, cpu="1"))
        await source.upsert(make_agent("a3", cpu="4"))
        await ledger.resync()

        names = [s.name for s in await ledger.list_snapshots()]
        assert names == ["a3"]
        assert (await ledger.get_snapshot("a3")).reserved.is_zero

    asyncio.run(scenario())


def test_resync_clamps_reservation_when_capacity_shrinks():
    async def scenario():
        source = InMemoryAgentSource([make_agent("a1", cpu="4", memory="1Gi")])
        ledger = ResourceLedger(source)
        await ledger.resync()
        await ledger.reserve("a1", {"cpu": "3", "memory": "512Mi"})

        await source.upsert(make_agent("a1", cpu="2", memory="1Gi"))
        await ledger.resync()

        snapshot = await ledger.get_snapshot("a1")
        assert snapshot.reserved == {"cpu": "2", "memory": "512Mi"}
        _assert_invariant([snapshot])

    asyncio.run(scenario())


def test_resync_failure_keeps_old_table():
    """测试 Agent 源不可达时抛 FetchError 且账本不变"""
    async def scenario():
        source = InMemoryAgentSource([make_agent("a1", cpu="1")])
        ledger = ResourceLedger(source)
        await ledger.resync()
        await ledger.reserve("a1", {"cpu": "250m"})

        source.fail_with = ConnectionError("boom")
        with pytest.raises(FetchError):
            await ledger.resync()

        snapshot = await ledger.get_snapshot("a1")
        assert snapshot.reserved == {"cpu": "250m"}

    asyncio.run(scenario())


def test_resync_wraps_unexpected_source_errors():
    class BrokenSource(InMemoryAgentSource):
        async def list(self, limit, continue_token=None):
            raise RuntimeError("socket closed")

    async def scenario():
        ledger = ResourceLedger(BrokenSource())
        with pytest.raises(FetchError) as exc_info:
            await ledger.resync()
        assert isinstance(exc_info.value.cause, RuntimeError)

    asyncio.run(scenario())


def test_resync_without_source_is_fetch_error():
    async def scenario():
        with pytest.raises(FetchError):
            await ResourceLedger().resync()

    asyncio.run(scenario())


def test_snapshots_do_not_alias_ledger_state():
    async def scenario():
        ledger = await _ledger(make_agent("a1", cpu="1"))
        before = await ledger.get_snapshot("a1")
        await ledger.reserve("a1", {"cpu": "400m"})
        assert before.reserved.is_zero

    asyncio.run(scenario())


def test_reserve_signals_resync_once():
    """测试多次预留只产生一个被合并的 resync 请求"""
    async def scenario():
        ledger = await _ledger(make_agent("a1", cpu="1"))
        await ledger.reserve("a1", {"cpu": "100m"})
        await ledger.reserve("a1", {"cpu": "100m"})

        await asyncio.wait_for(ledger.wait_for_resync_request(), timeout=1)
        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(ledger.wait_for_resync_request(), timeout=0.05)

    asyncio.run(scenario())


def test_cluster_stats():
    async def scenario():
        ledger = await _ledger(make_agent("a1", cpu="2", memory="1Gi"), make_agent("a2", cpu="1"))
        await ledger.reserve("a1", {"cpu": "500m"})

        stats = await ledger.get_cluster_stats()
        assert stats["total_agents"] == 2
        assert stats["allocatable"] == {"cpu": "3", "memory": "1Gi"}
        assert stats["reserved"] == {"cpu": "500m"}
        assert stats["available"] == {"cpu": "2500m", "memory": "1Gi"}
        assert stats["last_resync"] is not None

    asyncio.run(scenario())
