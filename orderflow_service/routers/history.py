"""
历史数据路由（读取 MongoDB）
GET /api/history/market_agg    - 全市场汇总序列
GET /api/history/board_sum     - 板块合计序列
GET /api/history/board_latest  - 最近一次落库的板块榜单
GET /api/history/board_daily   - 单个板块日度资金流序列（库内不足时从上游补齐）
"""

from typing import Optional

from fastapi import APIRouter, HTTPException, Query, Request, status
from fastapi.encoders import jsonable_encoder

from orderflow_service.db.repository import FlowRepository
from orderflow_service.exceptions import StorageError
from orderflow_service.models.response import ApiResponse
from orderflow_service.services.board_history import BoardHistoryService

router = APIRouter(prefix="/api/history", tags=["历史数据"])


def _repo(request: Request) -> FlowRepository:
    repo: Optional[FlowRepository] = getattr(request.app.state, "repository", None)
    if repo is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="storage not available",
        )
    return repo


@router.get("/market_agg", response_model=ApiResponse)
async def market_agg_history(
    request: Request,
    source: str = Query(default="allstocks_sum"),
    fid: str = Query(default="f62"),
    grain: str = Query(default="rt", pattern="^(rt|daily)$", description="rt 实时 / daily 日度"),
    limit: int = Query(default=200, ge=1, le=5000),
):
    repo = _repo(request)
    try:
        if grain == "daily":
            series = await repo.query_market_agg_daily(source, fid, limit)
        else:
            series = await repo.query_market_agg_rt(source, fid, limit)
    except StorageError as exc:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))
    return ApiResponse.ok(data={
        "source": source, "fid": fid, "grain": grain, "count": len(series), "series": series,
    })


@router.get("/board_sum", response_model=ApiResponse)
async def board_sum_history(
    request: Request,
    board_type: str = Query(default="industry", pattern="^(industry|concept)$"),
    fid: str = Query(default="f62"),
    grain: str = Query(default="rt", pattern="^(rt|daily)$", description="rt 实时 / daily 日度"),
    limit: int = Query(default=200, ge=1, le=5000),
):
    """同一时间点全部板块 value 之和"""
    repo = _repo(request)
    try:
        if grain == "daily":
            series = await repo.query_board_sum_daily(board_type, fid, limit)
        else:
            series = await repo.query_board_sum_rt(board_type, fid, limit)
    except StorageError as exc:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))
    return ApiResponse.ok(data={
        "board_type": board_type, "fid": fid, "grain": grain, "count": len(series), "series": series,
    })


@router.get("/board_latest", response_model=ApiResponse)
async def board_latest(
    request: Request,
    board_type: str = Query(default="industry", pattern="^(industry|concept)$"),
    fid: str = Query(default="f62"),
    limit: int = Query(default=50, ge=1, le=500),
):
    ts, items = await _repo(request).query_board_rt_latest(board_type, fid, limit)
    return ApiResponse.ok(data={
        "board_type": board_type, "fid": fid, "ts_utc": ts, "items": jsonable_encoder(items),
    })


@router.get("/board_daily", response_model=ApiResponse)
async def board_daily(
    request: Request,
    board: str = Query(..., min_length=1, description="板块代码，如 BK0475"),
    board_type: str = Query(default="industry", pattern="^(industry|concept)$"),
    fid: Optional[str] = Query(default=None, description="默认取该类板块配置的 fid"),
    limit: int = Query(default=120, ge=1, le=2000),
    refresh: bool = Query(default=False),
):
    repo = _repo(request)
    source = getattr(request.app.state, "source", None)
    if source is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="source not available")
    if fid is None:
        cfg = request.app.state.config_manager.get()
        fid = (cfg.concept if board_type == "concept" else cfg.industry).fid
    try:
        data = await BoardHistoryService(source, repo).board_daily(board_type, fid, board, limit, refresh)
    except StorageError as exc:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))
    return ApiResponse.ok(data=data)
