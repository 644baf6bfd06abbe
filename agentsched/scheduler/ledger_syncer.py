"""
账本同步器
定期以及在预留后按需从 Agent 源重建资源账本
"""

import asyncio
import logging
from typing import Optional

from agentsched.scheduler.resource_ledger import ResourceLedger

logger = logging.getLogger(__name__)


class LedgerSyncer:
    """
    账本同步器

    职责：
    1. 启动时立即同步一次
    2. 每个 tick（默认 30 秒）同步一次
    3. 账本发出 resync 请求时提前同步，多次请求合并为一次
    """

    def __init__(self, ledger: ResourceLedger, interval: float = 30.0):
        self._ledger = ledger
        self._interval = interval
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self.sync_count = 0

        logger.info(f"LedgerSyncer initialized: interval={self._interval}s")

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """在后台启动同步循环"""
        if self._running:
            logger.warning("LedgerSyncer already running")
            return
        self._running = True
        self._task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        """停止同步循环"""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("LedgerSyncer stopped")

    async def _loop(self) -> None:
        logger.info("LedgerSyncer started")
        await self._sync_once()

        while self._running:
            try:
                await asyncio.wait_for(self._ledger.wait_for_resync_request(), timeout=self._interval)
            except asyncio.TimeoutError:
                pass
            except asyncio.CancelledError:
                break
            await self._sync_once()

    async def _sync_once(self) -> None:
        try:
            count = await self._ledger.resync()
            self.sync_count += 1
            logger.debug(f"Ledger sync #{self.sync_count}: {count} agents")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Ledger sync failed: {e}")
