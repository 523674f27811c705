"""
Layer 1 – 请求层
对上游公开行情接口发起 GET 请求：指数退避重试 + 错误分级

错误分级：
  - 网络异常、HTTP 429/502/503/504、200 但 JSON 解析失败  → 重试
  - 其他非 200 状态码                                    → 立即失败
重试耗尽且每次都是连接级错误时，可交给可选的备用请求策略处理。
取消通过 asyncio 任务取消传递：进行中的请求与退避等待都会立即中断。
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Protocol

import httpx

from orderflow_service.config import settings
from orderflow_service.exceptions import TerminalUpstreamError, TransientUpstreamError

logger = logging.getLogger(__name__)

USER_AGENT = "Mozilla/5.0 (compatible; OrderFlowCollector/1.0)"
RETRYABLE_STATUS = frozenset({429, 502, 503, 504})

# 实时接口与列表 / 分页接口使用不同的退避倍数
REALTIME_BACKOFF = 3.0
LIST_BACKOFF = 2.0


class AlternateFetchStrategy(Protocol):
    """备用请求策略（如系统自带的 HTTP 栈），主请求全部连接失败时使用"""

    async def fetch(self, url: str, params: Mapping[str, Any]) -> Dict[str, Any]:
        ...


def _never(url: str) -> bool:
    return False


class FetchClient:
    """带重试的 JSON GET 客户端"""

    def __init__(
        self,
        *,
        timeout: Optional[float] = None,
        max_attempts: Optional[int] = None,
        backoff_base_ms: Optional[int] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        fallback: Optional[AlternateFetchStrategy] = None,
        fallback_when: Callable[[str], bool] = _never,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self._max_attempts = settings.UPSTREAM_MAX_ATTEMPTS if max_attempts is None else max_attempts
        if self._max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self._max_attempts}")
        base_ms = settings.UPSTREAM_BACKOFF_BASE_MS if backoff_base_ms is None else backoff_base_ms
        self._backoff_base = base_ms / 1000.0
        self._fallback = fallback
        self._fallback_when = fallback_when
        self._sleep = sleep
        # 上游在连接复用下表现不稳定：每个请求独立连接并显式 Connection: close
        self._client = httpx.AsyncClient(
            timeout=timeout or settings.UPSTREAM_TIMEOUT,
            headers={
                "User-Agent": USER_AGENT,
                "Accept": "application/json,text/plain,*/*",
                "Connection": "close",
            },
            limits=httpx.Limits(max_keepalive_connections=0),
            transport=transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()
        return False

    async def fetch(
        self,
        url: str,
        params: Optional[Mapping[str, Any]] = None,
        *,
        backoff_factor: float = REALTIME_BACKOFF,
    ) -> Dict[str, Any]:
        """请求并解析 JSON 对象；失败时抛出 TerminalUpstreamError / TransientUpstreamError"""
        last_exc: Optional[BaseException] = None
        connection_errors_only = True
        delay = self._backoff_base

        for attempt in range(self._max_attempts):
            if attempt > 0:
                await self._sleep(delay)
                delay *= backoff_factor

            try:
                response = await self._client.get(url, params=params)
            except httpx.TransportError as exc:
                last_exc = exc
                logger.debug(f"请求失败 attempt={attempt + 1}/{self._max_attempts} url={url}: {exc!r}")
                continue

            connection_errors_only = False
            status = response.status_code
            if status != 200:
                body = response.text[:1024]
                if status in RETRYABLE_STATUS:
                    last_exc = TransientUpstreamError(f"http {status}: {body}")
                    logger.debug(f"可重试状态码 {status} attempt={attempt + 1} url={url}")
                    continue
                raise TerminalUpstreamError(status, body)

            try:
                payload = response.json()
            except ValueError as exc:
                last_exc = exc
                logger.debug(f"JSON 解析失败 attempt={attempt + 1} url={url}: {exc}")
                continue
            if not isinstance(payload, dict):
                last_exc = ValueError(f"expected JSON object, got {type(payload).__name__}")
                continue
            return payload

        if connection_errors_only and self._fallback is not None and self._fallback_when(url):
            logger.info(f"主请求全部连接失败，改用备用请求策略: {url}")
            try:
                return await self._fallback.fetch(url, dict(params or {}))
            except Exception as exc:
                logger.warning(f"备用请求策略失败: {exc}")

        raise TransientUpstreamError(
            f"{url}: {self._max_attempts} attempts failed: {last_exc!r}"
        ) from last_exc
