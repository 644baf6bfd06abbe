"""
配置

Settings 从环境变量与 .env 读取运行参数；ConfigLoader 读取 YAML（静态 Agent 列表、打分策略）
"""

import os
import re
from pathlib import Path
from typing import Any, Dict, List, Optional
from functools import lru_cache

import yaml
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field


class Settings(BaseSettings):
    """应用配置"""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore", populate_by_name=True)

    # 应用
    app_name: str = "agentsched"
    app_env: str = Field(default="development", alias="APP_ENV")
    debug: bool = Field(default=False, alias="APP_DEBUG")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # 服务器
    server_host: str = Field(default="0.0.0.0", alias="SERVER_HOST")
    server_port: int = Field(default=8000, alias="SERVER_PORT")

    # 外部协作方：memory（本地开发）或 redis
    backend: str = Field(default="memory", alias="AGENTSCHED_BACKEND")
    substrate_url: Optional[str] = Field(default=None, alias="SUBSTRATE_URL")
    substrate_timeout: float = Field(default=30.0, alias="SUBSTRATE_TIMEOUT")

    # Redis
    redis_host: str = Field(default="localhost", alias="REDIS_HOST")
    redis_port: int = Field(default=6379, alias="REDIS_PORT")
    redis_password: str = Field(default="", alias="REDIS_PASSWORD")
    redis_db: int = Field(default=0, alias="REDIS_DB")
    redis_prefix: str = Field(default="agentsched", alias="REDIS_PREFIX")

    # 资源账本
    resync_interval: float = Field(default=30.0, alias="RESYNC_INTERVAL")
    agent_page_size: int = Field(default=512, alias="AGENT_PAGE_SIZE")
    strict_release: bool = Field(default=False, alias="STRICT_RELEASE")
    heartbeat_timeout: int = Field(default=30, alias="HEARTBEAT_TIMEOUT")

    # 调度器
    default_scorer: str = Field(default="first_fit", alias="DEFAULT_SCORER")

    # 生命周期驱动器的重入间隔（秒）
    dependency_backoff: float = 10.0
    no_capacity_backoff: float = 20.0
    status_poll_interval: float = 10.0
    transient_backoff: float = 5.0
    conflict_backoff: float = 2.0

    @property
    def redis_url(self) -> str:
        """Redis 连接 URL"""
        if self.redis_password:
            return f"redis://:{self.redis_password}@{self.redis_host}:{self.redis_port}/{self.redis_db}"
        return f"redis://{self.redis_host}:{self.redis_port}/{self.redis_db}"


# ${VAR} 或 ${VAR:default}
_ENV_PLACEHOLDER = re.compile(r"\$\{(?P<name>[^}:]+)(?::(?P<default>[^}]*))?\}")

DEFAULT_CONFIG_PATH = Path(__file__).resolve().parent.parent / "config" / "config.yml"


def _expand(text: str) -> Any:
    """展开字符串中的环境变量占位符，并把整串的布尔值、整数转换为对应类型"""
    expanded = _ENV_PLACEHOLDER.sub(
        lambda m: os.environ.get(m.group("name"), m.group("default") or ""),
        text
    )
    lowered = expanded.lower()
    if lowered in ("true", "false"):
        return lowered == "true"
    if expanded.isdigit():
        return int(expanded)
    return expanded


class ConfigLoader:
    """
    YAML 配置加载器

    路径优先级：构造参数 > AGENTSCHED_CONFIG_PATH > 仓库内 config/config.yml。
    文件不存在时所有查询返回默认值。
    """

    def __init__(self, config_path: Optional[str] = None):
        self._config_path = Path(
            config_path or os.environ.get("AGENTSCHED_CONFIG_PATH") or DEFAULT_CONFIG_PATH
        )
        self._config: Dict[str, Any] = self._read()

    @property
    def path(self) -> Path:
        return self._config_path

    def _read(self) -> Dict[str, Any]:
        if not self._config_path.is_file():
            return {}
        raw = yaml.safe_load(self._config_path.read_text(encoding="utf-8")) or {}
        return self._substitute(raw)

    def _substitute(self, node: Any) -> Any:
        if isinstance(node, str):
            return _expand(node)
        if isinstance(node, dict):
            return {key: self._substitute(value) for key, value in node.items()}
        if isinstance(node, list):
            return [self._substitute(item) for item in node]
        return node

    def get(self, key: str, default: Any = None) -> Any:
        """按点号路径取配置项，如 get("scheduler.scorer")"""
        node: Any = self._config
        for part in key.split("."):
            if not isinstance(node, dict) or part not in node:
                return default
            node = node[part]
        return node

    def get_static_agents(self) -> List[Dict[str, Any]]:
        """静态 Agent 列表，用于内存 Agent 源"""
        agents = self.get("agents", [])
        return [a for a in agents if isinstance(a, dict) and a.get("name")]

    def get_scorer(self, default: str) -> str:
        """调度打分策略名称"""
        return str(self.get("scheduler.scorer", default))


@lru_cache()
def get_settings() -> Settings:
    return Settings()


@lru_cache()
def get_config() -> ConfigLoader:
    return ConfigLoader()
