"""
账本同步器单元测试
"""

from __future__ import annotations

import asyncio

from agentsched.backends.memory import InMemoryAgentSource
from agentsched.scheduler import LedgerSyncer, ResourceLedger

from tests.helpers import make_agent


async def _wait_until(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        assert loop.time() < deadline, "condition not reached in time"
        await asyncio.sleep(0.01)


def test_initial_sync_on_start():
    """测试启动时立即同步一次"""
    async def scenario():
        source = InMemoryAgentSource([make_agent("a1", cpu="1")])
        ledger = ResourceLedger(source)
        syncer = LedgerSyncer(ledger, interval=60)

        await syncer.start()
        await _wait_until(lambda: syncer.sync_count >= 1)
        assert [s.name for s in await ledger.list_snapshots()] == ["a1"]
        await syncer.stop()
        assert not syncer.is_running

    asyncio.run(scenario())


def test_periodic_sync_picks_up_new_agents():
    async def scenario():
        source = InMemoryAgentSource([make_agent("a1", cpu="1")])
        ledger = ResourceLedger(source)
        syncer = LedgerSyncer(ledger, interval=0.02)

        await syncer.start()
        await _wait_until(lambda: syncer.sync_count >= 1)
        await source.upsert(make_agent("a2", cpu="1"))
        await _wait_until(lambda: syncer.sync_count >= 3)
        await syncer.stop()

        assert [s.name for s in await ledger.list_snapshots()] == ["a1", "a2"]

    asyncio.run(scenario())


def test_reserve_triggers_eager_sync():
    """测试预留发出的 resync 请求让同步提前发生"""
    async def scenario():
        source = InMemoryAgentSource([make_agent("a1", cpu="1")])
        ledger = ResourceLedger(source)
        syncer = LedgerSyncer(ledger, interval=60)

        await syncer.start()
        await _wait_until(lambda: syncer.sync_count >= 1)
        await ledger.reserve("a1", {"cpu": "100m"})
        await _wait_until(lambda: syncer.sync_count >= 2)
        await syncer.stop()

        assert (await ledger.get_snapshot("a1")).reserved == {"cpu": "100m"}

    asyncio.run(scenario())


def test_sync_errors_do_not_stop_loop():
    """测试同步失败只记录日志，循环继续"""
    async def scenario():
        source = InMemoryAgentSource([make_agent("a1", cpu="1")])
        source.fail_with = ConnectionError("down")
        ledger = ResourceLedger(source)
        syncer = LedgerSyncer(ledger, interval=0.02)

        await syncer.start()
        await _wait_until(lambda: source.list_calls >= 2)
        assert syncer.is_running
        assert syncer.sync_count == 0

        source.fail_with = None
        await _wait_until(lambda: syncer.sync_count >= 1)
        await syncer.stop()

    asyncio.run(scenario())


def test_start_twice_is_noop():
    async def scenario():
        syncer = LedgerSyncer(ResourceLedger(InMemoryAgentSource()), interval=60)
        await syncer.start()
        first = syncer._task
        await syncer.start()
        assert syncer._task is first
        await syncer.stop()

    asyncio.run(scenario())
