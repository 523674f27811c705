"""采集服务异常类型"""

from typing import Optional


class UpstreamError(RuntimeError):
    """上游数据源请求失败（基类）"""


class TransientUpstreamError(UpstreamError):
    """可重试的上游错误：网络异常、429/502/503/504、200 但 JSON 解析失败

    在 FetchClient 内部重试；重试耗尽后向调用方抛出。
    """


class TerminalUpstreamError(UpstreamError):
    """不可重试的 HTTP 状态码，立即返回"""

    def __init__(self, status_code: int, body: str = ""):
        self.status_code = status_code
        self.body = body
        super().__init__(f"http {status_code}: {body}")


class PayloadError(UpstreamError):
    """响应体可解析，但 rc / success 标志表示失败"""

    def __init__(self, message: str, rc: Optional[int] = None):
        self.rc = rc
        super().__init__(message)


class AggregationError(UpstreamError):
    """全市场分页求和中任一分页失败，整体结果作废"""


class StorageError(RuntimeError):
    """持久化层写入 / 删除 / 建索引失败"""


class ConfigError(ValueError):
    """运行时配置校验失败"""


__all__ = [
    "UpstreamError",
    "TransientUpstreamError",
    "TerminalUpstreamError",
    "PayloadError",
    "AggregationError",
    "StorageError",
    "ConfigError",
]
