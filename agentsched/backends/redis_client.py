"""
Redis 连接
任务存储与 Agent 源共用一个连接池，由控制面在 stop() 时关闭
"""

import logging
from typing import Optional

import redis.asyncio as redis
from redis.asyncio import Redis

from agentsched.config import get_settings

logger = logging.getLogger(__name__)


class RedisClient:
    """
    惰性建立的 Redis 连接

    第一次 get_client() 时建立连接池并 PING 一次；连接失败的异常原样抛出，
    由调用方翻译为 FetchError
    """

    def __init__(
        self,
        url: Optional[str] = None,
        client: Optional[Redis] = None,
        max_connections: int = 20
    ):
        """
        Args:
            url: Redis URL，缺省取 Settings.redis_url
            client: 已建立的客户端，传入时不再自行连接
            max_connections: 连接池大小
        """
        self._url = url or get_settings().redis_url
        self._max_connections = max_connections
        self._client: Optional[Redis] = client

    @property
    def is_connected(self) -> bool:
        return self._client is not None

    async def get_client(self) -> Redis:
        if self._client is not None:
            return self._client

        client = redis.from_url(
            self._url,
            encoding="utf-8",
            decode_responses=True,
            max_connections=self._max_connections
        )
        try:
            await client.ping()
        except Exception:
            await client.aclose()
            raise
        self._client = client
        logger.info(f"Redis connected: {self._url.rsplit('@', 1)[-1]}")
        return client

    async def disconnect(self) -> None:
        if self._client is None:
            return
        client, self._client = self._client, None
        await client.aclose()
        logger.info("Redis connection pool closed")

    async def ping(self) -> bool:
        """连接可用时返回 True，失败只记录日志"""
        try:
            return bool(await (await self.get_client()).ping())
        except Exception as e:
            logger.error(f"Redis ping failed: {e}")
            return False
