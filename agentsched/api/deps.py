"""
API 依赖注入
"""

from fastapi import HTTPException, Request, status

from agentsched.backends import AgentRegistry
from agentsched.controller import ControlPlane


def get_control_plane(request: Request) -> ControlPlane:
    """获取应用生命周期内创建的控制面"""
    plane = getattr(request.app.state, "control_plane", None)
    if plane is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Control plane not started"
        )
    return plane


def get_agent_registry(request: Request) -> AgentRegistry:
    """获取支持注册/心跳的 Agent 源"""
    source = get_control_plane(request).agent_source
    if not isinstance(source, AgentRegistry):
        raise HTTPException(
            status_code=status.HTTP_501_NOT_IMPLEMENTED,
            detail="Agent source does not accept registrations"
        )
    return source
