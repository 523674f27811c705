"""
Layer 4 – 响应缓存层
/api/realtime 的短 TTL Redis 缓存；Redis 不可用时直接透传（不缓存）
"""

import hashlib
import json
import logging
from typing import Any, Optional

from orderflow_service.config import settings
from orderflow_service.db import get_redis

logger = logging.getLogger(__name__)

_NAMESPACE = "orderflow"


def _make_key(namespace: str, *parts: str) -> str:
    """生成规范化缓存键"""
    raw = ":".join([_NAMESPACE, namespace] + list(parts))
    if len(raw) > 200:
        raw = f"{_NAMESPACE}:{namespace}:" + hashlib.md5(raw.encode()).hexdigest()
    return raw


class ResponseCache:
    """Redis 响应缓存，读写失败只记录 debug 日志"""

    async def get(self, namespace: str, *parts: str) -> Optional[Any]:
        redis = get_redis()
        if redis is None:
            return None
        key = _make_key(namespace, *parts)
        try:
            raw = await redis.get(key)
        except Exception as exc:
            logger.debug(f"Redis 读取失败: {exc}")
            return None
        if not raw:
            return None
        logger.debug(f"缓存命中: {key}")
        return json.loads(raw)

    async def set(self, value: Any, namespace: str, *parts: str, ttl: Optional[int] = None) -> bool:
        redis = get_redis()
        if redis is None:
            return False
        key = _make_key(namespace, *parts)
        try:
            await redis.setex(
                key,
                ttl or settings.REALTIME_CACHE_TTL,
                json.dumps(value, ensure_ascii=False, default=str),
            )
        except Exception as exc:
            logger.debug(f"Redis 写入失败: {exc}")
            return False
        return True

    async def delete(self, namespace: str, *parts: str) -> None:
        redis = get_redis()
        if redis is None:
            return
        try:
            await redis.delete(_make_key(namespace, *parts))
        except Exception as exc:
            logger.debug(f"Redis 删除失败: {exc}")


# ── 模块级别单例 ──────────────────────────────────────────
_cache: Optional[ResponseCache] = None


def get_response_cache() -> ResponseCache:
    global _cache
    if _cache is None:
        _cache = ResponseCache()
    return _cache
