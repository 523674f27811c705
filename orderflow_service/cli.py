"""
命令行入口

    orderflow-collector serve                   启动 HTTP 服务与后台采集循环
    orderflow-collector daily [--date D]        执行一次日度采集
    orderflow-collector board-daily [--type T]  回填板块日度资金流序列
    orderflow-collector init-db                 创建 MongoDB 索引
"""

import argparse
import asyncio
import logging
from typing import List, Optional

from orderflow_service.config import settings
from orderflow_service.db import close_connections, connect_mongodb
from orderflow_service.db.repository import FlowRepository
from orderflow_service.exceptions import StorageError, UpstreamError
from orderflow_service.layers.acquisition import EastmoneySource
from orderflow_service.layers.fetch import FetchClient
from orderflow_service.runtime_config import RuntimeConfigManager
from orderflow_service.services.board_history import BoardHistoryService
from orderflow_service.services.daily_service import DailyCollector

logger = logging.getLogger("orderflow_service.cli")


def _setup_logging() -> None:
    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


async def _open_repository() -> FlowRepository:
    try:
        db = await connect_mongodb()
    except StorageError as exc:
        raise SystemExit(str(exc)) from exc
    repo = FlowRepository(db, transactional=settings.MONGO_TRANSACTIONS)
    await repo.ensure_indexes()
    return repo


async def _run_daily(trade_date: Optional[str], config_path: str) -> int:
    repo = await _open_repository()
    try:
        config = RuntimeConfigManager.from_file(config_path)
        async with FetchClient() as client:
            report = await DailyCollector(EastmoneySource(client), repo, config).run(trade_date)
    finally:
        await close_connections()
    for failure in report.failures:
        logger.warning(f"失败: {failure}")
    return 0 if report.northbound or report.fundflow or report.margin else 1


async def _run_board_daily(board_type: str, limit: int, config_path: str) -> int:
    repo = await _open_repository()
    try:
        cfg = RuntimeConfigManager.from_file(config_path).get()
        board = cfg.concept if board_type == "concept" else cfg.industry
        async with FetchClient() as client:
            service = BoardHistoryService(EastmoneySource(client), repo)
            report = await service.backfill(board_type, board.fs, board.fid, limit)
    except UpstreamError as exc:
        logger.error(f"❌ 板块列表拉取失败: {exc}")
        return 1
    finally:
        await close_connections()
    for failure in report.failures:
        logger.warning(f"失败: {failure}")
    return 0 if report.ok else 1


async def _run_init_db() -> int:
    await _open_repository()
    await close_connections()
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(prog="orderflow-collector", description="A 股资金流向采集服务")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("serve", help="启动 HTTP 服务与后台采集循环")

    daily_parser = subparsers.add_parser("daily", help="执行一次日度采集")
    daily_parser.add_argument("--date", help="交易日 YYYY-MM-DD（默认今天）")
    daily_parser.add_argument(
        "--config", default=settings.RUNTIME_CONFIG_PATH, help="运行时配置 YAML 路径"
    )

    board_parser = subparsers.add_parser("board-daily", help="回填板块日度资金流序列")
    board_parser.add_argument("--type", dest="board_type", choices=["industry", "concept"], default="industry")
    board_parser.add_argument("--limit", type=int, default=120, help="每个板块拉取的交易日数")
    board_parser.add_argument(
        "--config", default=settings.RUNTIME_CONFIG_PATH, help="运行时配置 YAML 路径"
    )

    subparsers.add_parser("init-db", help="创建 MongoDB 索引")

    args = parser.parse_args(argv)
    _setup_logging()

    if args.command == "serve":
        from orderflow_service.main import serve
        serve()
        return 0
    if args.command == "daily":
        return asyncio.run(_run_daily(args.date, args.config))
    if args.command == "board-daily":
        return asyncio.run(_run_board_daily(args.board_type, args.limit, args.config))
    if args.command == "init-db":
        return asyncio.run(_run_init_db())
    parser.error(f"unknown command: {args.command}")
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
