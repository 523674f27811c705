"""
采集数据流分层
  Layer 1 – Fetch        : HTTP 请求、重试与错误分级
  Layer 2 – Acquisition  : 东方财富接口适配（单次 / 翻页 / 并发求和）
  Layer 3 – Snapshot     : 内存快照（每类别最新值）
  Layer 4 – Cache        : API 响应缓存（Redis）
"""
