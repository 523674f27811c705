"""健康检查路由"""

import time

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from orderflow_service import __version__
from orderflow_service.db import check_health

router = APIRouter(tags=["健康检查"])


@router.get("/health")
async def health(request: Request):
    """服务健康检查（含数据库连接与快照状态）"""
    db_health = await check_health()
    store = getattr(request.app.state, "store", None)
    last_write = store.last_write if store is not None else None
    return {
        "success": True,
        "data": {
            "status": "ok",
            "version": __version__,
            "timestamp": int(time.time()),
            "service": "OrderFlow Collector",
            "databases": db_health,
            "snapshot": {
                "categories": [str(k) for k in store.keys()] if store is not None else [],
                "last_write": last_write.isoformat() if last_write else None,
            },
        },
        "message": "服务运行正常",
    }


@router.get("/healthz")
async def healthz():
    """Kubernetes 存活检查"""
    return {"status": "ok"}


@router.get("/readyz")
async def readyz(request: Request):
    """Kubernetes 就绪检查：存储与快照均已就绪"""
    ready = (
        getattr(request.app.state, "repository", None) is not None
        and getattr(request.app.state, "store", None) is not None
    )
    if not ready:
        return JSONResponse(status_code=503, content={"ready": False})
    return {"ready": True}
