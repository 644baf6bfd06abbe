"""
Shared pytest fixtures.
"""

from __future__ import annotations

import logging

import pytest

from agentsched.config import Settings

from tests.helpers import Harness

logging.basicConfig(level=logging.INFO, format="[%(levelname)s] %(message)s", force=True)
logging.getLogger("agentsched").setLevel(logging.DEBUG)


@pytest.fixture
def settings() -> Settings:
    """不读取 .env 的测试配置，退避时间缩短"""
    return Settings(
        _env_file=None,
        dependency_backoff=0.01,
        no_capacity_backoff=0.01,
        status_poll_interval=0.01,
        transient_backoff=0.01,
        conflict_backoff=0.01,
        resync_interval=0.05,
    )


@pytest.fixture
def harness_factory(settings):
    """返回构造 Harness 的工厂；在 asyncio.run 的协程内调用"""

    def factory(agents=None, clock=None, strict_release=False) -> Harness:
        return Harness(settings, agents=agents, clock=clock, strict_release=strict_release)

    return factory
