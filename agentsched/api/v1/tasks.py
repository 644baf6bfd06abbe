"""
任务管理 API
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field

from agentsched.api.deps import get_control_plane
from agentsched.controller import ControlPlane
from agentsched.models import Task, TaskPhase, TaskSpec

router = APIRouter()
logger = logging.getLogger(__name__)


# =========================================================================
# 请求/响应模型
# =========================================================================

class TaskCreate(BaseModel):
    """创建任务请求"""
    namespace: str = Field(default="default", min_length=1)
    name: str = Field(..., min_length=1, pattern=r"^[^/]+$", description="任务名称，namespace 内唯一")
    spec: TaskSpec

    model_config = {
        "json_schema_extra": {
            "example": {
                "namespace": "default",
                "name": "train-step-1",
                "spec": {
                    "image_ref": "registry.local/trainer:1.2",
                    "command": ["python", "train.py"],
                    "resources": {"limits": {"cpu": "500m", "memory": "128Mi"}},
                    "priority": 10,
                    "timeout_seconds": 600,
                    "retry_policy": {"limit": 2, "backoff_seconds": 10},
                    "dependencies": [{"task_id": "prepare-data", "required_phase": "Completed"}]
                }
            }
        }
    }


class TaskCancel(BaseModel):
    """取消任务请求"""
    reason: str = Field(default="", description="取消原因")


class TaskListResponse(BaseModel):
    """任务列表响应"""
    total: int
    items: List[Task]


# =========================================================================
# API 端点
# =========================================================================

@router.post("", response_model=Task, status_code=status.HTTP_201_CREATED)
async def create_task(
    request: TaskCreate,
    plane: ControlPlane = Depends(get_control_plane)
) -> Task:
    """
    提交任务

    任务以 Pending 状态写入，规格校验、依赖检查和调度由生命周期驱动器完成
    """
    task = Task(namespace=request.namespace, name=request.name, spec=request.spec)
    stored = await plane.submit(task)
    logger.info(f"Task created via API: {stored.key}")
    return stored


@router.get("", response_model=TaskListResponse)
async def list_tasks(
    namespace: Optional[str] = Query(None, description="按 namespace 过滤"),
    phase: Optional[TaskPhase] = Query(None, description="按阶段过滤"),
    limit: int = Query(100, ge=1, le=1000),
    plane: ControlPlane = Depends(get_control_plane)
) -> TaskListResponse:
    """列出任务"""
    items = []
    for key in await plane.store.list_keys():
        if namespace and not key.startswith(f"{namespace}/"):
            continue
        task = await plane.store.get(key)
        if phase and task.status.phase != phase:
            continue
        items.append(task)

    return TaskListResponse(total=len(items), items=items[:limit])


@router.get("/{namespace}/{name}", response_model=Task)
async def get_task(
    namespace: str,
    name: str,
    plane: ControlPlane = Depends(get_control_plane)
) -> Task:
    """获取任务详情"""
    return await plane.store.get(f"{namespace}/{name}")


@router.post("/{namespace}/{name}/cancel", response_model=Task)
async def cancel_task(
    namespace: str,
    name: str,
    request: Optional[TaskCancel] = None,
    plane: ControlPlane = Depends(get_control_plane)
) -> Task:
    """取消任务；已终止的任务原样返回"""
    reason = request.reason if request else ""
    return await plane.cancel(f"{namespace}/{name}", reason)
