"""
采集调度服务

固定 tick 驱动：每个 tick 重新读取运行时配置，得到当前启用的类别及其周期；
每个到期类别作为独立任务运行，成功则写入快照，失败只记录日志；
慢类别不会阻塞其他类别，同一类别上一次未结束时不会重复启动。
无论成败都记录本次尝试时间，失败的类别等下一个周期再试（不做 tick 级重试）。
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

from orderflow_service.config import settings
from orderflow_service.layers.acquisition import EastmoneySource
from orderflow_service.layers.snapshot import SnapshotStore
from orderflow_service.models.observations import (
    AGGREGATE,
    BOARD,
    FUNDFLOW,
    NORTHBOUND,
    TOPLIST,
    CategoryKey,
)
from orderflow_service.runtime_config import BoardConfig, RuntimeConfig, RuntimeConfigManager
from orderflow_service.session import is_cn_trading_time
from orderflow_service.symbols import to_secids

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(tz=timezone.utc)


@dataclass(frozen=True)
class Category:
    """一个采集类别：键、周期、是否受交易时段限制、采集函数"""

    key: CategoryKey
    interval_seconds: float
    gated: bool
    collect: Callable[[], Awaitable[Any]]


def build_categories(cfg: RuntimeConfig, source: EastmoneySource) -> List[Category]:
    """根据当前配置生成启用的类别列表"""
    rt = cfg.realtime.interval_seconds
    cats = [
        Category(CategoryKey(NORTHBOUND, "hk2cn"), rt, True, source.northbound),
    ]

    if cfg.watchlist:
        watchlist = list(cfg.watchlist)

        async def fundflow():
            return await source.fundflow_realtime(to_secids(watchlist))

        cats.append(Category(CategoryKey(FUNDFLOW, "watchlist"), rt, True, fundflow))

    top = cfg.toplist

    async def toplist():
        return await source.top_list(top.fs, top.fid, top.size)

    cats.append(Category(CategoryKey(TOPLIST, top.fid), rt, True, toplist))

    for board_type, board in (("industry", cfg.industry), ("concept", cfg.concept)):
        if board.enabled:
            cats.append(_board_category(source, board_type, board))

    agg = cfg.market_agg
    if agg.enabled:
        async def allstocks_sum():
            return await source.all_stocks_sum(agg.fs, agg.fid, agg.concurrency)

        cats.append(Category(
            CategoryKey(AGGREGATE, f"allstocks_sum:{agg.fid}"),
            agg.interval_seconds, True, allstocks_sum,
        ))
    return cats


def _board_category(source: EastmoneySource, board_type: str, board: BoardConfig) -> Category:
    if board.collect_all:
        async def collect():
            return await source.board_list_all(board.fs, board.fid)
    else:
        async def collect():
            return await source.board_top(board.fs, board.fid, board.top_size)

    return Category(
        CategoryKey(BOARD, f"{board_type}:{board.fid}"),
        board.interval_seconds, True, collect,
    )


class CollectionScheduler:
    """按类别周期驱动数据源适配器，并把结果写入快照"""

    def __init__(
        self,
        source: EastmoneySource,
        store: SnapshotStore,
        config: RuntimeConfigManager,
        *,
        clock: Clock = utc_now,
        tick_seconds: Optional[float] = None,
    ):
        self._source = source
        self._store = store
        self._config = config
        self._clock = clock
        self._tick = tick_seconds if tick_seconds is not None else settings.SCHEDULER_TICK_SECONDS
        self._last_attempt: Dict[CategoryKey, datetime] = {}
        self._inflight: Dict[CategoryKey, asyncio.Task] = {}

    @property
    def last_attempts(self) -> Dict[CategoryKey, datetime]:
        return dict(self._last_attempt)

    @property
    def in_flight(self) -> List[CategoryKey]:
        return list(self._inflight)

    def due(self, now: datetime, cfg: RuntimeConfig) -> List[Category]:
        """本 tick 应执行的类别"""
        gate = cfg.realtime.only_during_trading_hours and not is_cn_trading_time(now)
        out = []
        for cat in build_categories(cfg, self._source):
            if gate and cat.gated:
                continue
            last = self._last_attempt.get(cat.key)
            if last is not None and (now - last).total_seconds() < cat.interval_seconds:
                continue
            out.append(cat)
        return out

    def launch(self, now: Optional[datetime] = None) -> Dict[CategoryKey, "asyncio.Task[None]"]:
        """为到期类别各启动一个任务并立即返回；上一次仍在进行的类别本 tick 跳过"""
        now = now or self._clock()
        started: Dict[CategoryKey, asyncio.Task] = {}
        for cat in self.due(now, self._config.get()):
            if cat.key in self._inflight:
                logger.debug(f"上次采集未结束，跳过 category={cat.key}")
                continue
            self._last_attempt[cat.key] = now
            task = asyncio.create_task(self._run_category(cat, now), name=f"collect:{cat.key}")
            self._inflight[cat.key] = task
            task.add_done_callback(lambda t, key=cat.key: self._forget(key, t))
            started[cat.key] = task
        return started

    def _forget(self, key: CategoryKey, task: "asyncio.Task[None]") -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]

    async def run_tick(self, now: Optional[datetime] = None) -> List[CategoryKey]:
        """启动本 tick 的类别并等待它们结束，返回本次尝试的类别键"""
        started = self.launch(now)
        if started:
            await asyncio.gather(*started.values())
        return list(started)

    async def cancel_inflight(self) -> None:
        tasks = list(self._inflight.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    async def _run_category(self, cat: Category, now: datetime) -> None:
        try:
            value = await cat.collect()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning(f"⚠️ 采集失败 category={cat.key} at={now.isoformat()}: {exc}")
            return
        self._store.set_category(now, cat.key, value)
        logger.debug(f"采集成功 category={cat.key} at={now.isoformat()}")

    async def run(self, stop: asyncio.Event) -> None:
        """循环启动到期类别，直到 stop 被设置；退出时取消仍在进行的采集"""
        logger.info(f"采集调度启动 tick={self._tick}s")
        try:
            while not stop.is_set():
                try:
                    self.launch()
                except Exception as exc:
                    logger.error(f"❌ 调度 tick 异常: {exc}", exc_info=True)
                try:
                    await asyncio.wait_for(stop.wait(), timeout=self._tick)
                except asyncio.TimeoutError:
                    pass
        finally:
            await self.cancel_inflight()
        logger.info("采集调度已停止")
