"""
当日分时走势路由（直接请求上游，Redis 短缓存）
GET /api/trend/stock?code=600519
GET /api/trend/secid?secid=1.000001
GET /api/trend/board?board=BK0475
"""

from datetime import datetime, timezone
from typing import Awaitable, Callable, List

from fastapi import APIRouter, HTTPException, Query, Request, status
from fastapi.encoders import jsonable_encoder

from orderflow_service.exceptions import UpstreamError
from orderflow_service.layers.acquisition import EastmoneySource
from orderflow_service.layers.cache import get_response_cache
from orderflow_service.models.observations import TrendPoint
from orderflow_service.models.response import ApiResponse
from orderflow_service.symbols import to_secid

router = APIRouter(prefix="/api/trend", tags=["分时走势"])


def _source(request: Request) -> EastmoneySource:
    source = getattr(request.app.state, "source", None)
    if source is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="source not available")
    return source


async def _cached_points(kind: str, ident: str, load: Callable[[], Awaitable[List[TrendPoint]]]):
    cache = get_response_cache()
    cached = await cache.get("trend", kind, ident)
    if cached is not None:
        return cached, True
    try:
        points = await load()
    except UpstreamError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc))
    data = {
        "points": jsonable_encoder(points),
        "ts_utc": datetime.now(tz=timezone.utc).isoformat(),
    }
    await cache.set(data, "trend", kind, ident)
    return data, False


@router.get("/stock", response_model=ApiResponse)
async def stock_trend(request: Request, code: str = Query(..., min_length=1, description="如 600519 / 600519.SH")):
    try:
        secid = to_secid(code)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    source = _source(request)
    data, cached = await _cached_points("secid", secid, lambda: source.stock_trends(secid))
    return ApiResponse.ok(data={"code": code, "secid": secid, **data}, message="cached" if cached else "success")


@router.get("/secid", response_model=ApiResponse)
async def secid_trend(request: Request, secid: str = Query(..., pattern=r"^\d+\.[0-9A-Za-z]+$")):
    source = _source(request)
    data, cached = await _cached_points("secid", secid, lambda: source.stock_trends(secid))
    return ApiResponse.ok(data={"secid": secid, **data}, message="cached" if cached else "success")


@router.get("/board", response_model=ApiResponse)
async def board_trend(request: Request, board: str = Query(..., pattern=r"^BK\d+$")):
    source = _source(request)
    data, cached = await _cached_points("board", board, lambda: source.board_trends(board))
    return ApiResponse.ok(data={"board": board, **data}, message="cached" if cached else "success")
