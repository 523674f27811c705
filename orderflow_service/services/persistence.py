"""
持久化与数据保留服务

  - 落库循环：每 persist.interval_seconds（每轮重新读取配置）取一次快照写入 MongoDB
  - 清理循环：每分钟检查一次，到达 cleanup.run_at（Asia/Shanghai）且当天未执行时清理过期数据
  - 启动预热：用最近一次落库的实时数据填充内存快照
"""

import asyncio
import logging
from datetime import datetime, time
from typing import Callable, Dict, Optional

from orderflow_service.db.repository import FlowRepository
from orderflow_service.layers.snapshot import SnapshotStore
from orderflow_service.runtime_config import RuntimeConfigManager
from orderflow_service.services.scheduler import utc_now
from orderflow_service.session import CN_TZ

logger = logging.getLogger(__name__)

RETENTION_CHECK_SECONDS = 60


async def _sleep_or_stop(stop: asyncio.Event, seconds: float) -> None:
    try:
        await asyncio.wait_for(stop.wait(), timeout=seconds)
    except asyncio.TimeoutError:
        pass


async def flush_once(
    store: SnapshotStore,
    repo: FlowRepository,
    now: Optional[datetime] = None,
) -> int:
    """取一次快照并落库；空快照不写入，返回写入的文档数"""
    snap = store.snapshot(now or utc_now())
    if snap.is_empty():
        logger.debug("快照为空，跳过落库")
        return 0
    written = await repo.flush_snapshot(snap)
    logger.info(f"💾 快照落库完成 as_of={snap.as_of.isoformat()} docs={written}")
    return written


async def run_flush_loop(
    store: SnapshotStore,
    repo: FlowRepository,
    config: RuntimeConfigManager,
    stop: asyncio.Event,
) -> None:
    logger.info("落库循环启动")
    while not stop.is_set():
        interval = config.get().persist.interval_seconds
        await _sleep_or_stop(stop, interval)
        if stop.is_set():
            break
        try:
            await flush_once(store, repo)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error(f"❌ 快照落库失败（下一轮重试）: {exc}")
    logger.info("落库循环已停止")


class RetentionJob:
    """每日一次的过期数据清理；当天已执行（无论成败）则不再执行"""

    def __init__(
        self,
        repo: FlowRepository,
        config: RuntimeConfigManager,
        *,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._repo = repo
        self._config = config
        self._clock = clock
        self.last_run_day: Optional[str] = None

    def should_run(self, now: datetime) -> bool:
        cfg = self._config.get()
        if not cfg.cleanup.enabled:
            return False
        local = now.astimezone(CN_TZ)
        if local.strftime("%Y-%m-%d") == self.last_run_day:
            return False
        hh, mm = (int(p) for p in cfg.cleanup.run_at.split(":"))
        return local.time() >= time(hh, mm)

    async def check(self, now: Optional[datetime] = None) -> Optional[Dict[str, int]]:
        """到点则执行清理，返回各集合删除数量；未执行返回 None"""
        now = now or self._clock()
        if not self.should_run(now):
            return None
        self.last_run_day = now.astimezone(CN_TZ).strftime("%Y-%m-%d")
        retention = self._config.get().retention_days
        try:
            deleted = await self._repo.cleanup_old_data(now, retention)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error(f"❌ 过期数据清理失败（明日重试）: {exc}")
            return None
        logger.info(f"🧹 过期数据清理完成 retention={retention}d deleted={deleted}")
        return deleted

    async def run(self, stop: asyncio.Event) -> None:
        logger.info("清理循环启动")
        while not stop.is_set():
            await self.check()
            await _sleep_or_stop(stop, RETENTION_CHECK_SECONDS)
        logger.info("清理循环已停止")


async def seed_store_from_db(store: SnapshotStore, repo: FlowRepository) -> int:
    """用最近一次落库的实时快照预热内存快照，返回恢复的类别数"""
    latest = await repo.load_latest_rt_snapshot()
    if latest is None:
        logger.info("数据库中没有实时快照，跳过预热")
        return 0
    ts, values = latest
    for key, value in values.items():
        store.set_category(ts, key, value)
    logger.info(f"✅ 内存快照已预热 as_of={ts.isoformat()} categories={len(values)}")
    return len(values)
