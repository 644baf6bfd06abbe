"""
Agent 管理 API
"""

import logging
from datetime import datetime
from typing import Dict, List, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, status
from pydantic import BaseModel, Field

from agentsched.api.deps import get_agent_registry, get_control_plane
from agentsched.backends import AgentRegistry
from agentsched.controller import ControlPlane
from agentsched.models import AgentObservation, AgentSnapshot, ResourceSet

router = APIRouter()
logger = logging.getLogger(__name__)


# =========================================================================
# 请求/响应模型
# =========================================================================

class AgentRegister(BaseModel):
    """Agent 注册/更新请求"""
    ready: bool = Field(default=True, description="是否就绪")
    allocatable: ResourceSet = Field(..., description="可分配资源")
    labels: Dict[str, str] = Field(default_factory=dict, description="标签")

    model_config = {
        "json_schema_extra": {
            "example": {
                "ready": True,
                "allocatable": {"cpu": "4", "memory": "16Gi", "nvidia.com/gpu": "1"},
                "labels": {"zone": "gpu-cluster"}
            }
        }
    }


class AgentResponse(BaseModel):
    """账本中的 Agent"""
    name: str
    allocatable: ResourceSet
    reserved: ResourceSet
    available: ResourceSet
    labels: Dict[str, str]
    last_seen: datetime

    @classmethod
    def from_snapshot(cls, snapshot: AgentSnapshot) -> "AgentResponse":
        return cls(
            name=snapshot.name,
            allocatable=snapshot.allocatable,
            reserved=snapshot.reserved,
            available=snapshot.available,
            labels=dict(snapshot.labels),
            last_seen=snapshot.last_seen
        )


class AgentListResponse(BaseModel):
    """Agent 列表响应"""
    total: int
    items: List[AgentResponse]


class ClusterStatsResponse(BaseModel):
    """集群统计响应"""
    total_agents: int
    allocatable: Dict[str, str]
    reserved: Dict[str, str]
    available: Dict[str, str]
    last_resync: Optional[str]


class ResyncResponse(BaseModel):
    """resync 结果"""
    agents: int


# =========================================================================
# 账本查询
# =========================================================================

@router.get("", response_model=AgentListResponse)
async def list_agents(
    plane: ControlPlane = Depends(get_control_plane)
) -> AgentListResponse:
    """列出账本中的所有 Agent"""
    snapshots = await plane.ledger.list_snapshots()
    return AgentListResponse(
        total=len(snapshots),
        items=[AgentResponse.from_snapshot(s) for s in snapshots]
    )


@router.get("/stats", response_model=ClusterStatsResponse)
async def get_cluster_stats(
    plane: ControlPlane = Depends(get_control_plane)
) -> ClusterStatsResponse:
    """获取集群资源统计"""
    return ClusterStatsResponse(**await plane.ledger.get_cluster_stats())


@router.post("/feasible", response_model=AgentListResponse)
async def list_feasible_agents(
    requirement: ResourceSet = Body(..., description="资源需求，如 {\"cpu\": \"500m\"}"),
    plane: ControlPlane = Depends(get_control_plane)
) -> AgentListResponse:
    """查询剩余资源满足需求的 Agent"""
    snapshots = sorted(await plane.ledger.list_feasible(requirement), key=lambda s: s.name)
    return AgentListResponse(
        total=len(snapshots),
        items=[AgentResponse.from_snapshot(s) for s in snapshots]
    )


@router.post("/resync", response_model=ResyncResponse)
async def resync_agents(
    plane: ControlPlane = Depends(get_control_plane)
) -> ResyncResponse:
    """立即从 Agent 源重建账本"""
    return ResyncResponse(agents=await plane.ledger.resync())


@router.get("/{name}", response_model=AgentResponse)
async def get_agent(
    name: str,
    plane: ControlPlane = Depends(get_control_plane)
) -> AgentResponse:
    """获取单个 Agent"""
    return AgentResponse.from_snapshot(await plane.ledger.get_snapshot(name))


# =========================================================================
# 注册与心跳
# =========================================================================

@router.put("/{name}", response_model=AgentObservation)
async def register_agent(
    name: str,
    request: AgentRegister,
    plane: ControlPlane = Depends(get_control_plane),
    registry: AgentRegistry = Depends(get_agent_registry)
) -> AgentObservation:
    """
    注册或更新 Agent

    写入 Agent 源后请求一次 resync，账本随后生效
    """
    stored = await registry.upsert(AgentObservation(
        name=name,
        ready=request.ready,
        allocatable=request.allocatable,
        labels=request.labels
    ))
    plane.ledger.request_resync()
    logger.info(f"Agent registered: {name} (ready={request.ready})")
    return stored


@router.post("/{name}/heartbeat", response_model=AgentObservation)
async def agent_heartbeat(
    name: str,
    registry: AgentRegistry = Depends(get_agent_registry)
) -> AgentObservation:
    """Agent 心跳"""
    return await registry.heartbeat(name)


@router.delete("/{name}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_agent(
    name: str,
    plane: ControlPlane = Depends(get_control_plane),
    registry: AgentRegistry = Depends(get_agent_registry)
) -> None:
    """移除 Agent"""
    if not await registry.remove(name):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Agent {name} not found"
        )
    plane.ledger.request_resync()
    logger.info(f"Agent removed: {name}")
