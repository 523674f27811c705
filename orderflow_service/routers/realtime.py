"""
实时快照与运行时配置路由
GET  /api/realtime   - 当前内存快照（Redis 缓存 10 秒）
GET  /api/config     - 当前运行时配置
POST /api/config     - 局部更新运行时配置（嵌套字典合并）
"""

from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import APIRouter, Body, HTTPException, Request, status
from fastapi.encoders import jsonable_encoder

from orderflow_service.exceptions import ConfigError
from orderflow_service.layers.cache import get_response_cache
from orderflow_service.layers.snapshot import Snapshot, SnapshotStore
from orderflow_service.models.observations import AGGREGATE, BOARD, FUNDFLOW, NORTHBOUND, TOPLIST
from orderflow_service.models.response import ApiResponse
from orderflow_service.runtime_config import RuntimeConfigManager

router = APIRouter(prefix="/api", tags=["实时数据"])


def _store(request: Request) -> SnapshotStore:
    return request.app.state.store


def _config(request: Request) -> RuntimeConfigManager:
    return request.app.state.config_manager


def snapshot_payload(snap: Snapshot) -> Dict[str, Any]:
    """快照 → 按类别分组的 JSON 结构"""
    nb = snap.by_kind(NORTHBOUND)
    ff = snap.by_kind(FUNDFLOW)
    payload = {
        "as_of": snap.as_of,
        "last_write": snap.last_write,
        "northbound": next(iter(nb.values()), None),
        "fundflow": ff.get("watchlist", []),
        "toplist": snap.by_kind(TOPLIST),
        "boards": snap.by_kind(BOARD),
        "aggregates": snap.by_kind(AGGREGATE),
        "updated_at": {str(k): e.updated_at for k, e in snap.entries.items()},
    }
    return jsonable_encoder(payload)


@router.get("/realtime", response_model=ApiResponse)
async def get_realtime(request: Request):
    """当前内存快照"""
    cache = get_response_cache()
    cached = await cache.get("realtime")
    if cached is not None:
        return ApiResponse.ok(data=cached, message="cached")

    snap = _store(request).snapshot(datetime.now(tz=timezone.utc))
    data = snapshot_payload(snap)
    await cache.set(data, "realtime")
    return ApiResponse.ok(data=data)


@router.get("/config", response_model=ApiResponse)
async def get_config(request: Request):
    return ApiResponse.ok(data=_config(request).get().model_dump())


@router.post("/config", response_model=ApiResponse)
async def patch_config(request: Request, patch: Dict[str, Any] = Body(...)):
    """局部更新，例：{"market_agg": {"enabled": true}}"""
    try:
        cfg = _config(request).update(patch)
    except ConfigError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    await get_response_cache().delete("realtime")
    return ApiResponse.ok(data=cfg.model_dump(), message="配置已更新")
