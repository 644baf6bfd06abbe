"""
控制面单元测试

测试：
1. 按配置构建内存控制面
2. 提交任务后由工作协程推进到完成并释放预留
3. 取消任务后工作协程退出
4. 重启后恢复未终止任务
"""

from __future__ import annotations

import asyncio

import pytest

from agentsched.config import ConfigLoader
from agentsched.controller import ControlPlane, build_control_plane
from agentsched.models import ExecutionPhase, ExecutionStatus, TaskPhase
from agentsched.scheduler.scoring import least_allocated

from tests.helpers import make_task

CONFIG = """
scheduler:
  scorer: least_allocated
agents:
  - name: local-1
    allocatable:
      cpu: "2"
      memory: 4Gi
  - name: local-2
    allocatable:
      cpu: "1"
      memory: 2Gi
"""


@pytest.fixture
def config(tmp_path) -> ConfigLoader:
    path = tmp_path / "config.yml"
    path.write_text(CONFIG, encoding="utf-8")
    return ConfigLoader(str(path))


async def wait_for(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not await predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


def phase_is(plane: ControlPlane, key: str, phase: TaskPhase):
    async def check() -> bool:
        return await plane.store.get_phase(key) == phase
    return check


def test_build_memory_control_plane(settings, config):
    async def scenario():
        plane = build_control_plane(settings, config)
        assert plane.scheduler._scorer is least_allocated

        await plane.ledger.resync()
        names = [s.name for s in await plane.ledger.list_snapshots()]
        assert names == ["local-1", "local-2"]

    asyncio.run(scenario())


def test_unknown_backend_rejected(settings, config):
    settings.backend = "etcd"
    with pytest.raises(ValueError):
        build_control_plane(settings, config)


def test_submit_runs_to_completion(settings, config):
    async def scenario():
        plane = build_control_plane(settings, config)
        await plane.start()
        try:
            task = await plane.submit(make_task("job", limits={"cpu": "1", "memory": "1Gi"}))
            assert plane.tracked == ["default/job"]

            await wait_for(phase_is(plane, task.key, TaskPhase.SCHEDULED))
            stored = await plane.store.get(task.key)
            # least_allocated 选择剩余最多的 local-1
            assert stored.status.assigned_agent == "local-1"
            assert (await plane.ledger.get_snapshot("local-1")).reserved == {"cpu": "1", "memory": "1Gi"}

            plane.substrate.report(task.key, ExecutionStatus(phase=ExecutionPhase.SUCCEEDED, exit_code=0))
            await wait_for(phase_is(plane, task.key, TaskPhase.COMPLETED))

            async def worker_gone() -> bool:
                return plane.tracked == []
            await wait_for(worker_gone)
            assert (await plane.ledger.get_snapshot("local-1")).reserved.is_zero

            stats = await plane.get_stats()
            assert stats["running"] is True
            assert stats["tracked_tasks"] == 0
        finally:
            await plane.stop()
        assert plane.is_running is False

    asyncio.run(scenario())


def test_cancel_stops_worker(settings, config):
    async def scenario():
        plane = build_control_plane(settings, config)
        await plane.start()
        try:
            task = await plane.submit(make_task("job", limits={"cpu": "500m"}))
            await wait_for(phase_is(plane, task.key, TaskPhase.SCHEDULED))

            cancelled = await plane.cancel(task.key, reason="no longer needed")
            assert cancelled.cancel_requested is True
            await wait_for(phase_is(plane, task.key, TaskPhase.CANCELLED))

            async def worker_gone() -> bool:
                return plane.tracked == []
            await wait_for(worker_gone)
            assert (await plane.ledger.get_snapshot("local-1")).reserved.is_zero
            assert plane.substrate.cancelled
        finally:
            await plane.stop()

    asyncio.run(scenario())


def test_start_resumes_unfinished_tasks(settings, config):
    async def scenario():
        plane = build_control_plane(settings, config)
        await plane.store.create(make_task("waiting"))
        done = await plane.store.create(make_task("done"))
        done.status.phase = TaskPhase.COMPLETED
        await plane.store.put(done)

        await plane.start()
        try:
            assert plane.tracked == ["default/waiting"]
        finally:
            await plane.stop()
        assert plane.tracked == []

    asyncio.run(scenario())


def test_stop_runs_closers(settings, config):
    closed = []

    async def closer():
        closed.append(True)

    async def scenario():
        plane = build_control_plane(settings, config)
        plane.add_closer(closer)
        await plane.start()
        await plane.stop()

    asyncio.run(scenario())
    assert closed == [True]
