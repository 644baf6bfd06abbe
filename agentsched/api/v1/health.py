"""
健康检查 API
"""

from datetime import datetime, timezone
from typing import Dict, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from agentsched import __version__
from agentsched.api.deps import get_control_plane
from agentsched.controller import ControlPlane

router = APIRouter()


class HealthResponse(BaseModel):
    """健康检查响应"""
    status: str
    timestamp: datetime
    version: str = __version__


class DetailedHealthResponse(HealthResponse):
    """详细健康检查响应"""
    control_plane_running: bool
    syncer_running: bool
    tracked_tasks: int
    total_agents: int
    last_resync: Optional[str]
    allocatable: Dict[str, str]
    reserved: Dict[str, str]


@router.get("", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """基础健康检查"""
    return HealthResponse(
        status="healthy",
        timestamp=datetime.now(timezone.utc)
    )


@router.get("/detailed", response_model=DetailedHealthResponse)
async def detailed_health_check(
    plane: ControlPlane = Depends(get_control_plane)
) -> DetailedHealthResponse:
    """详细健康检查"""
    stats = await plane.get_stats()
    ledger_stats = stats["ledger"]

    return DetailedHealthResponse(
        status="healthy" if stats["running"] else "degraded",
        timestamp=datetime.now(timezone.utc),
        control_plane_running=stats["running"],
        syncer_running=stats["syncer_running"],
        tracked_tasks=stats["tracked_tasks"],
        total_agents=ledger_stats["total_agents"],
        last_resync=ledger_stats["last_resync"],
        allocatable=ledger_stats["allocatable"],
        reserved=ledger_stats["reserved"]
    )
