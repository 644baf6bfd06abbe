"""
agentsched - Agent 任务调度控制面

FastAPI 应用入口
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from agentsched import __version__
from agentsched.config import get_settings
from agentsched.api.v1 import api_router
from agentsched.controller import ControlPlane, build_control_plane
from agentsched.errors import SchedulerError

# 配置日志
logging.basicConfig(
    level=get_settings().log_level.upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用生命周期管理"""
    # 启动时
    logger.info("Starting agentsched...")

    plane: Optional[ControlPlane] = getattr(app.state, "control_plane", None)
    if plane is None:
        plane = build_control_plane()
        app.state.control_plane = plane
    await plane.start()

    logger.info("agentsched started successfully")

    yield

    # 关闭时
    logger.info("Shutting down agentsched...")
    await plane.stop()
    logger.info("agentsched shut down complete")


async def scheduler_error_handler(request: Request, exc: SchedulerError) -> JSONResponse:
    """将调度核心异常映射为 HTTP 响应"""
    if exc.http_status >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    return JSONResponse(
        status_code=exc.http_status,
        content={"detail": str(exc), "kind": exc.kind.value, "retryable": exc.retryable}
    )


def create_app(control_plane: Optional[ControlPlane] = None) -> FastAPI:
    """
    创建 FastAPI 应用

    Args:
        control_plane: 预先构建的控制面（测试时注入），缺省时按配置构建
    """
    app = FastAPI(
        title="agentsched",
        description="Agent 任务调度与资源账本",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan
    )
    if control_plane is not None:
        app.state.control_plane = control_plane

    # CORS 中间件
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(SchedulerError, scheduler_error_handler)

    # 注册路由
    app.include_router(api_router, prefix="/api/v1")

    @app.get("/")
    async def root():
        """根路径"""
        return {
            "name": "agentsched",
            "version": __version__,
            "docs": "/docs"
        }

    return app


# 创建应用实例
app = create_app()
