"""
HTTP 执行底座客户端
通过 REST 接口把执行请求交给远端执行服务，并轮询执行状态
"""

import logging
from typing import Any, Optional

import httpx
from pydantic import ValidationError as PydanticValidationError

from agentsched.errors import ConflictError, FetchError, NotFoundError, ValidationError
from agentsched.models import ExecutionRequest, ExecutionStatus
from .base import ExecutionSubstrate

logger = logging.getLogger(__name__)


class HttpExecutionSubstrate(ExecutionSubstrate):
    """
    HTTP 执行底座

    接口约定:
        POST   /executions            提交，返回 {"handle": "..."}
        GET    /executions/{handle}   查询，返回 ExecutionStatus
        DELETE /executions/{handle}   终止
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport
        self._http_client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """获取 HTTP 客户端"""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                base_url=self._base_url,
                timeout=self._timeout,
                transport=self._transport
            )
        return self._http_client

    async def close(self) -> None:
        """关闭客户端"""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None

    async def _request(self, method: str, path: str, op: str, **kwargs: Any) -> httpx.Response:
        client = await self._get_client()
        try:
            response = await client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise FetchError(f"{method} {path} failed", op=op, cause=e) from e

        if response.status_code == 404:
            raise NotFoundError(f"{path} not found", op=op)
        if response.status_code in (400, 422):
            raise ValidationError(f"rejected: {response.text}", op=op)
        if response.status_code == 409:
            raise ConflictError(f"conflict: {response.text}", op=op)
        if response.is_error:
            raise FetchError(f"{method} {path} returned {response.status_code}", op=op)
        return response

    async def submit(self, request: ExecutionRequest) -> str:
        response = await self._request(
            "POST", "/executions", "substrate.submit",
            json=request.model_dump(mode="json")
        )
        try:
            handle = response.json().get("handle")
        except (ValueError, AttributeError) as e:
            raise FetchError("malformed submit response", op="substrate.submit", cause=e) from e
        if not handle:
            raise FetchError("substrate response has no handle", op="substrate.submit")
        logger.debug(f"Execution submitted: {request.task_key} -> {handle}")
        return handle

    async def poll_status(self, handle: str) -> ExecutionStatus:
        response = await self._request("GET", f"/executions/{handle}", "substrate.poll")
        try:
            return ExecutionStatus.model_validate(response.json())
        except (ValueError, PydanticValidationError) as e:
            raise FetchError(f"malformed status for {handle}", op="substrate.poll", cause=e) from e

    async def cancel(self, handle: str) -> None:
        try:
            await self._request("DELETE", f"/executions/{handle}", "substrate.cancel")
        except NotFoundError:
            logger.debug(f"Execution {handle} already gone")
