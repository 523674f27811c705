"""
数据库连接管理

  - MongoDB：唯一的持久化存储；连接失败抛出 StorageError，由调用方终止启动
  - Redis  ：可选的 /api/realtime 响应缓存；连接失败只告警，服务照常运行
"""

import logging
import time
from typing import Any, Dict, Optional

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo.errors import PyMongoError
from redis.asyncio import ConnectionPool, Redis
from redis.exceptions import RedisError

from orderflow_service.config import settings
from orderflow_service.exceptions import StorageError

logger = logging.getLogger(__name__)

_mongo_client: Optional[AsyncIOMotorClient] = None
_mongo_db: Optional[AsyncIOMotorDatabase] = None
_redis_client: Optional[Redis] = None


async def connect_mongodb() -> AsyncIOMotorDatabase:
    """连接 MongoDB 并返回采集库；不可用时抛出 StorageError"""
    global _mongo_client, _mongo_db
    client = AsyncIOMotorClient(
        settings.MONGO_URI,
        maxPoolSize=settings.MONGO_MAX_CONNECTIONS,
        serverSelectionTimeoutMS=settings.MONGO_SERVER_SELECTION_TIMEOUT_MS,
        connectTimeoutMS=settings.MONGO_CONNECT_TIMEOUT_MS,
        tz_aware=True,
    )
    try:
        hello = await client.admin.command("hello")
    except PyMongoError as exc:
        client.close()
        raise StorageError(f"MongoDB {settings.MONGODB_HOST}:{settings.MONGODB_PORT} 不可用: {exc}") from exc

    if settings.MONGO_TRANSACTIONS and not hello.get("setName"):
        client.close()
        raise StorageError("MONGO_TRANSACTIONS 需要副本集部署，当前为单机 MongoDB")

    _mongo_client = client
    _mongo_db = client[settings.MONGODB_DATABASE]
    logger.info(
        f"✅ MongoDB 已连接: {settings.MONGODB_HOST}:{settings.MONGODB_PORT}/{settings.MONGODB_DATABASE}"
        f"{' (replica set ' + hello['setName'] + ')' if hello.get('setName') else ''}"
    )
    return _mongo_db


async def connect_redis() -> Optional[Redis]:
    """连接 Redis；未启用或失败时返回 None"""
    global _redis_client
    if not settings.REDIS_ENABLED:
        logger.info("Redis 未启用，/api/realtime 不使用缓存")
        return None
    pool = ConnectionPool.from_url(
        settings.REDIS_URL,
        max_connections=settings.REDIS_MAX_CONNECTIONS,
        decode_responses=True,
        socket_connect_timeout=5,
        socket_timeout=10,
    )
    client = Redis(connection_pool=pool)
    try:
        await client.ping()
    except (RedisError, OSError) as exc:
        logger.warning(f"⚠️ Redis 连接失败，/api/realtime 不使用缓存: {exc}")
        await client.aclose()
        await pool.disconnect()
        return None
    _redis_client = client
    logger.info(f"✅ Redis 已连接: {settings.REDIS_HOST}:{settings.REDIS_PORT}")
    return client


async def close_connections() -> None:
    global _mongo_client, _mongo_db, _redis_client
    if _mongo_client is not None:
        _mongo_client.close()
        _mongo_client = None
        _mongo_db = None
        logger.info("MongoDB 连接已关闭")
    if _redis_client is not None:
        # 连接池由客户端持有，aclose 时一并释放
        await _redis_client.aclose(close_connection_pool=True)
        _redis_client = None
        logger.info("Redis 连接已关闭")


def get_redis() -> Optional[Redis]:
    return _redis_client


async def _timed(ping) -> Dict[str, Any]:
    start = time.perf_counter()
    try:
        await ping()
    except Exception as exc:
        return {"status": "unhealthy", "error": str(exc)}
    return {"status": "healthy", "latency_ms": round((time.perf_counter() - start) * 1000, 1)}


async def check_health() -> Dict[str, Dict[str, Any]]:
    """MongoDB / Redis 连通性与 ping 延迟"""
    result: Dict[str, Dict[str, Any]] = {}
    if _mongo_client is None:
        result["mongodb"] = {"status": "disconnected"}
    else:
        result["mongodb"] = await _timed(lambda: _mongo_client.admin.command("ping"))
        result["mongodb"]["database"] = settings.MONGODB_DATABASE

    if _redis_client is not None:
        result["redis"] = await _timed(_redis_client.ping)
    else:
        result["redis"] = {"status": "disconnected" if settings.REDIS_ENABLED else "disabled"}
    return result
