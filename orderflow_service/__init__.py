"""
A 股资金流向采集服务
定时轮询东方财富公开行情接口，内存保存最新快照并定期落库 MongoDB

架构分层：
  请求层     (Fetch)        → 带退避重试的 HTTP GET
  数据获取层 (Acquisition)  → 北向资金、个股资金流、排行榜、板块、全市场汇总
  快照层     (Snapshot)     → 每类别最新值，供 API 读取与定期落库
  缓存层     (Cache)        → /api/realtime 的 Redis 短时缓存
"""

__version__ = "1.0.0"
