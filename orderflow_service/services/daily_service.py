"""
日度数据采集服务

收盘后一次性采集：北向资金日度数据，自选股的日度资金流与融资融券明细。
单只股票的任一步失败（代码映射、请求、写库）只记录日志并跳过，不影响其他股票。
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional

from orderflow_service.db.repository import FlowRepository
from orderflow_service.layers.acquisition import EastmoneySource
from orderflow_service.runtime_config import RuntimeConfigManager
from orderflow_service.services.scheduler import utc_now
from orderflow_service.session import cn_trade_date
from orderflow_service.symbols import code_only, to_secid

logger = logging.getLogger(__name__)


@dataclass
class DailyReport:
    trade_date: str
    northbound: bool = False
    fundflow: List[str] = field(default_factory=list)
    margin: List[str] = field(default_factory=list)
    failures: List[str] = field(default_factory=list)


class DailyCollector:
    def __init__(self, source: EastmoneySource, repo: FlowRepository, config: RuntimeConfigManager):
        self._source = source
        self._repo = repo
        self._config = config

    async def run(self, trade_date: Optional[str] = None) -> DailyReport:
        """采集 trade_date（默认今天，Asia/Shanghai）的日度数据"""
        trade_date = trade_date or cn_trade_date(utc_now())
        report = DailyReport(trade_date=trade_date)
        logger.info(f"📅 日度采集开始 trade_date={trade_date}")

        try:
            nb = await self._source.northbound()
            await self._repo.upsert_northbound_daily(trade_date, nb)
            report.northbound = True
        except Exception as exc:
            logger.warning(f"⚠️ 北向资金日度采集失败: {exc}")
            report.failures.append(f"northbound: {exc}")

        for symbol in self._config.get().watchlist:
            await self._collect_symbol(symbol, report)

        logger.info(
            f"日度采集完成 trade_date={trade_date} northbound={report.northbound} "
            f"fundflow={len(report.fundflow)} margin={len(report.margin)} failures={len(report.failures)}"
        )
        return report

    async def _collect_symbol(self, symbol: str, report: DailyReport) -> None:
        try:
            secid = to_secid(symbol)
            code = code_only(symbol)
        except ValueError as exc:
            logger.warning(f"⚠️ 无效代码 {symbol}: {exc}")
            report.failures.append(f"{symbol}: {exc}")
            return

        try:
            row = await self._source.fundflow_daily_latest(secid)
            await self._repo.upsert_fundflow_daily(row)
            report.fundflow.append(symbol)
        except Exception as exc:
            logger.warning(f"⚠️ 资金流日度采集失败 {symbol}: {exc}")
            report.failures.append(f"fundflow {symbol}: {exc}")

        try:
            margin = await self._source.margin_latest(code)
            await self._repo.upsert_margin_daily(margin)
            report.margin.append(symbol)
        except Exception as exc:
            logger.warning(f"⚠️ 融资融券采集失败 {symbol}: {exc}")
            report.failures.append(f"margin {symbol}: {exc}")
