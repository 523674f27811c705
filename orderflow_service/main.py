"""
A 股资金流向采集服务
FastAPI 应用程序入口：启动时拉起采集 / 落库 / 清理三个后台循环

启动方式:
    uvicorn orderflow_service.main:app --host 127.0.0.1 --port 8000
    python -m orderflow_service.main
    orderflow-collector serve
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from orderflow_service import __version__
from orderflow_service.config import settings
from orderflow_service.db import close_connections, connect_mongodb, connect_redis
from orderflow_service.db.repository import FlowRepository
from orderflow_service.layers.acquisition import EastmoneySource
from orderflow_service.layers.fetch import FetchClient
from orderflow_service.layers.snapshot import SnapshotStore
from orderflow_service.models.response import ApiResponse
from orderflow_service.routers import health, history, realtime, trends
from orderflow_service.runtime_config import RuntimeConfigManager
from orderflow_service.services.persistence import (
    RetentionJob,
    flush_once,
    run_flush_loop,
    seed_store_from_db,
)
from orderflow_service.services.scheduler import CollectionScheduler

# ── 日志配置 ──────────────────────────────────────────────
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


# ── 生命周期管理 ──────────────────────────────────────────
@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用启动/关闭生命周期钩子"""
    logger.info("=" * 60)
    logger.info(f"🚀 OrderFlow Collector v{__version__} 启动中")
    logger.info(f"   MongoDB   : {settings.MONGODB_HOST}:{settings.MONGODB_PORT}")
    logger.info(f"   Redis     : {settings.REDIS_HOST}:{settings.REDIS_PORT}")
    logger.info(f"   Config    : {settings.RUNTIME_CONFIG_PATH}")
    logger.info("=" * 60)

    # MongoDB 不可用时 StorageError 直接终止启动；Redis 可缺省
    db = await connect_mongodb()
    try:
        await connect_redis()
        repo = FlowRepository(db, transactional=settings.MONGO_TRANSACTIONS)
        await repo.ensure_indexes()
        config_manager = RuntimeConfigManager.from_file(settings.RUNTIME_CONFIG_PATH)
    except Exception:
        # 启动中途失败：已建立的连接随之关闭
        await close_connections()
        raise

    store = SnapshotStore()
    try:
        await seed_store_from_db(store, repo)
    except Exception as exc:
        logger.warning(f"⚠️ 快照预热失败，从空快照开始: {exc}")

    client = FetchClient()
    source = EastmoneySource(client)
    scheduler = CollectionScheduler(source, store, config_manager)
    retention = RetentionJob(repo, config_manager)

    app.state.store = store
    app.state.source = source
    app.state.repository = repo
    app.state.config_manager = config_manager

    stop = asyncio.Event()
    tasks = [
        asyncio.create_task(scheduler.run(stop), name="collect"),
        asyncio.create_task(run_flush_loop(store, repo, config_manager, stop), name="flush"),
        asyncio.create_task(retention.run(stop), name="retention"),
    ]
    logger.info("✅ 后台循环已启动: collect / flush / retention")

    yield

    logger.info("🔄 采集服务正在关闭...")
    stop.set()
    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)
    try:
        await flush_once(store, repo)
    except Exception as exc:
        logger.warning(f"⚠️ 关闭前落库失败: {exc}")
    await client.close()
    await close_connections()
    logger.info("✅ 采集服务已关闭")


# ── 应用实例 ──────────────────────────────────────────────
app = FastAPI(
    title="OrderFlow Collector",
    description=(
        "A 股资金流向采集服务：\n"
        "- 🧭 北向资金 / 个股资金流 / 排行榜 / 行业与概念板块 / 全市场汇总\n"
        "- 🧠 内存快照，定期落库 MongoDB，按保留天数自动清理\n"
        "- ⚙️ 运行时配置热更新\n\n"
        "**分层架构**\n"
        "```\n"
        "Fetch Layer        ← 带退避重试的 HTTP 请求\n"
        "Acquisition Layer  ← 东方财富接口适配\n"
        "Snapshot Layer     ← 每类别最新值\n"
        "Cache Layer        ← /api/realtime Redis 缓存\n"
        "```"
    ),
    version=__version__,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

# ── CORS 中间件 ───────────────────────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ── 请求计时中间件 ─────────────────────────────────────────
@app.middleware("http")
async def add_process_time(request: Request, call_next):
    start = time.time()
    response = await call_next(request)
    response.headers["X-Process-Time"] = f"{(time.time() - start) * 1000:.1f}ms"
    return response


# ── 全局异常处理 ──────────────────────────────────────────
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"未处理的异常: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content=ApiResponse.fail(error="内部服务错误", message=str(exc)).to_content(),
    )


# ── 注册路由 ──────────────────────────────────────────────
app.include_router(health.router)
app.include_router(realtime.router)
app.include_router(history.router)
app.include_router(trends.router)


# ── 根路由 ───────────────────────────────────────────────
@app.get("/", include_in_schema=False)
async def root():
    return {
        "service": "OrderFlow Collector",
        "version": __version__,
        "docs": "/docs",
        "health": "/health",
    }


def serve() -> None:
    uvicorn.run(
        "orderflow_service.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        log_level=settings.LOG_LEVEL.lower(),
    )


# ── 直接运行入口 ──────────────────────────────────────────
if __name__ == "__main__":
    serve()
