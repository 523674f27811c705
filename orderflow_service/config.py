"""
采集服务进程级配置模块
支持从环境变量 / .env 读取配置，自动检测 Docker 容器环境并启用服务发现

热更新的采集参数（周期、开关、fs/fid 等）见 runtime_config.py
"""

import os
from functools import lru_cache
from typing import List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _is_docker() -> bool:
    """检测当前是否运行在 Docker 容器内"""
    return (
        os.path.exists("/.dockerenv")
        or os.environ.get("DOCKER_CONTAINER", "").lower() in ("1", "true", "yes")
    )


def _default_mongo_host() -> str:
    """Docker 环境使用服务名 'mongodb'，本地使用 'localhost'"""
    return "mongodb" if _is_docker() else "localhost"


def _default_redis_host() -> str:
    """Docker 环境使用服务名 'redis'，本地使用 'localhost'"""
    return "redis" if _is_docker() else "localhost"


class CollectorSettings(BaseSettings):
    """采集服务配置"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── 基础配置 ──────────────────────────────────────────
    HOST: str = Field(default="127.0.0.1")
    PORT: int = Field(default=8000)
    DEBUG: bool = Field(default=False)
    ALLOWED_ORIGINS: List[str] = Field(
        default_factory=lambda: ["*"]
    )

    # ── MongoDB 配置（支持服务发现） ───────────────────────
    MONGODB_HOST: str = Field(default_factory=_default_mongo_host)
    MONGODB_PORT: int = Field(default=27017)
    MONGODB_USERNAME: str = Field(default="")
    MONGODB_PASSWORD: str = Field(default="")
    MONGODB_DATABASE: str = Field(default="orderflow")
    MONGODB_AUTH_SOURCE: str = Field(default="admin")
    MONGO_MAX_CONNECTIONS: int = Field(default=10)
    MONGO_CONNECT_TIMEOUT_MS: int = Field(default=30000)
    MONGO_SERVER_SELECTION_TIMEOUT_MS: int = Field(default=5000)
    # 快照落库使用多文档事务（需要副本集部署）
    MONGO_TRANSACTIONS: bool = Field(default=False)

    @property
    def MONGO_URI(self) -> str:
        if self.MONGODB_USERNAME and self.MONGODB_PASSWORD:
            return (
                f"mongodb://{self.MONGODB_USERNAME}:{self.MONGODB_PASSWORD}"
                f"@{self.MONGODB_HOST}:{self.MONGODB_PORT}"
                f"/{self.MONGODB_DATABASE}?authSource={self.MONGODB_AUTH_SOURCE}"
            )
        return f"mongodb://{self.MONGODB_HOST}:{self.MONGODB_PORT}/{self.MONGODB_DATABASE}"

    # ── Redis 配置（可选，仅用于 /api/realtime 响应缓存） ──
    REDIS_HOST: str = Field(default_factory=_default_redis_host)
    REDIS_PORT: int = Field(default=6379)
    REDIS_PASSWORD: str = Field(default="")
    REDIS_DB: int = Field(default=0)
    REDIS_ENABLED: bool = Field(default=True)
    REDIS_MAX_CONNECTIONS: int = Field(default=20)

    @property
    def REDIS_URL(self) -> str:
        if self.REDIS_PASSWORD:
            return f"redis://:{self.REDIS_PASSWORD}@{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"
        return f"redis://{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"

    # ── 上游数据源 ─────────────────────────────────────────
    UPSTREAM_TIMEOUT: float = Field(default=20.0)   # 单次请求超时（秒）
    UPSTREAM_MAX_ATTEMPTS: int = Field(default=5)
    UPSTREAM_BACKOFF_BASE_MS: int = Field(default=200)

    # ── 采集调度 ──────────────────────────────────────────
    RUNTIME_CONFIG_PATH: str = Field(default="configs/config.yaml")
    SCHEDULER_TICK_SECONDS: float = Field(default=1.0)
    REALTIME_CACHE_TTL: int = Field(default=10)      # /api/realtime 缓存 TTL（秒）

    # ── 日志配置 ──────────────────────────────────────────
    LOG_LEVEL: str = Field(default="INFO")
    TZ: str = Field(default="Asia/Shanghai")


@lru_cache
def get_settings() -> CollectorSettings:
    """获取全局配置（单例）"""
    return CollectorSettings()


settings = get_settings()
