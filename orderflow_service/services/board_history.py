"""
板块日度资金流历史

board_daily 除了由落库循环按交易日写入排行值外，也可以从上游的板块日度资金流序列补齐：
  - 单板块查询：库内不足 limit 条（或显式 refresh）时拉取序列写库后再读
  - 批量回填：翻页拿到全部板块后逐个拉取，单个板块失败只记录并继续
序列写入的 value 为主力净额。
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List

from orderflow_service.db.repository import FlowRepository
from orderflow_service.exceptions import StorageError, UpstreamError
from orderflow_service.layers.acquisition import EastmoneySource

logger = logging.getLogger(__name__)

# 批量回填时两次板块请求之间的间隔（秒），避免触发上游限流
BACKFILL_PAUSE = 0.12


@dataclass
class BackfillReport:
    board_type: str
    fid: str
    total: int = 0
    ok: List[str] = field(default_factory=list)
    failures: List[str] = field(default_factory=list)


class BoardHistoryService:
    def __init__(self, source: EastmoneySource, repo: FlowRepository):
        self._source = source
        self._repo = repo

    async def board_daily(
        self, board_type: str, fid: str, code: str, limit: int = 120, refresh: bool = False
    ) -> Dict[str, Any]:
        points, name = await self._repo.query_board_daily_by_code(board_type, fid, code, limit)
        out: Dict[str, Any] = {"board": code, "board_type": board_type, "fid": fid}
        if refresh or len(points) < limit:
            try:
                await self._fetch_and_store(board_type, fid, code, limit)
            except (UpstreamError, StorageError) as exc:
                logger.warning(f"⚠️ 板块日度序列拉取失败 board={code}: {exc}")
                out["error"] = str(exc)
            else:
                points, name = await self._repo.query_board_daily_by_code(board_type, fid, code, limit)
        out.update(name=name, points=points)
        return out

    async def _fetch_and_store(self, board_type: str, fid: str, code: str, limit: int, name: str = "") -> int:
        rows = await self._source.board_fundflow_daily_series(code, limit)
        if name:
            rows = [r if r.name else r.model_copy(update={"name": name}) for r in rows]
        return await self._repo.upsert_board_daily_series(board_type, fid, rows)

    async def backfill(
        self, board_type: str, fs: str, fid: str, limit: int = 120, pause: float = BACKFILL_PAUSE
    ) -> BackfillReport:
        """拉取 fs 下全部板块的日度序列写入 board_daily"""
        report = BackfillReport(board_type=board_type, fid=fid)
        items = await self._source.board_list_all(fs, fid)
        report.total = len(items)
        logger.info(f"📥 板块日度回填开始 type={board_type} fid={fid} boards={report.total}")

        for item in items:
            if not item.code:
                report.failures.append("empty board code")
                continue
            try:
                await self._fetch_and_store(board_type, fid, item.code, limit, name=item.name)
                report.ok.append(item.code)
            except (UpstreamError, StorageError) as exc:
                logger.warning(f"⚠️ 板块 {item.code} 回填失败: {exc}")
                report.failures.append(f"{item.code}: {exc}")
            if pause:
                await asyncio.sleep(pause)

        logger.info(
            f"板块日度回填完成 type={board_type} ok={len(report.ok)} failures={len(report.failures)}"
        )
        return report
