#!/usr/bin/env python3
"""
开发模式启动脚本
使用方法: python run.py
"""
import uvicorn

from agentsched.config import get_settings

if __name__ == "__main__":
    settings = get_settings()
    uvicorn.run(
        "agentsched.main:app",
        host=settings.server_host,
        port=settings.server_port,
        reload=settings.debug
    )
