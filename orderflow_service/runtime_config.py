"""
运行时配置（可热更新）

采集周期、各类别开关、fs / fid 选择器、并发度、保留天数等参数，
从 YAML 读取并由 RuntimeConfigManager 持有；调度器每个 tick 都重新读取，
通过 /api/config 修改后无需重启即可生效。
"""

import copy
import logging
import os
import re
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from orderflow_service.exceptions import ConfigError

logger = logging.getLogger(__name__)

# 沪深京 A 股全市场
ALL_A_SHARES_FS = "m:0+t:6,m:0+t:13,m:0+t:80,m:1+t:2,m:1+t:23"
INDUSTRY_FS = "m:90+t:2"
CONCEPT_FS = "m:90+t:3"

_RUN_AT_RE = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")


def _clamp(value: int, lo: int, hi: int) -> int:
    return max(lo, min(hi, value))


class RealtimeConfig(BaseModel):
    interval_seconds: int = Field(default=10, gt=0)
    only_during_trading_hours: bool = True


class PersistConfig(BaseModel):
    interval_seconds: int = Field(default=60, gt=0)


class CleanupConfig(BaseModel):
    enabled: bool = True
    run_at: str = "03:10"   # Asia/Shanghai HH:MM

    @field_validator("run_at")
    @classmethod
    def _check_run_at(cls, v: str) -> str:
        if not _RUN_AT_RE.match(v or ""):
            raise ValueError(f"run_at must be HH:MM, got {v!r}")
        return v


class ToplistConfig(BaseModel):
    size: int = 20
    fs: str = ALL_A_SHARES_FS
    fid: str = "f62"

    @field_validator("size")
    @classmethod
    def _clamp_size(cls, v: int) -> int:
        return _clamp(v, 1, 100) if v > 0 else 20


class BoardConfig(BaseModel):
    enabled: bool = True
    interval_seconds: int = Field(default=10, gt=0)
    fs: str = INDUSTRY_FS
    fid: str = "f62"
    # True 时翻页拉取全部板块，否则只取第一页前 top_size 条
    collect_all: bool = False
    top_size: int = 100

    @field_validator("fs")
    @classmethod
    def _default_fs(cls, v: str) -> str:
        return v.strip() or cls.model_fields["fs"].default

    @field_validator("top_size")
    @classmethod
    def _clamp_top(cls, v: int) -> int:
        return _clamp(v, 1, 100) if v > 0 else 100


class ConceptBoardConfig(BoardConfig):
    fs: str = CONCEPT_FS


class MarketAggConfig(BaseModel):
    # 全市场分页求和请求量大，默认关闭
    enabled: bool = False
    interval_seconds: int = Field(default=60, gt=0)
    fs: str = ALL_A_SHARES_FS
    fid: str = "f62"
    concurrency: int = 4

    @field_validator("concurrency")
    @classmethod
    def _clamp_concurrency(cls, v: int) -> int:
        return _clamp(v, 1, 10)


class RuntimeConfig(BaseModel):
    """采集运行时配置"""

    retention_days: int = Field(default=30, ge=1)
    watchlist: List[str] = Field(default_factory=list)

    realtime: RealtimeConfig = Field(default_factory=RealtimeConfig)
    persist: PersistConfig = Field(default_factory=PersistConfig)
    cleanup: CleanupConfig = Field(default_factory=CleanupConfig)
    toplist: ToplistConfig = Field(default_factory=ToplistConfig)
    industry: BoardConfig = Field(default_factory=BoardConfig)
    concept: ConceptBoardConfig = Field(default_factory=ConceptBoardConfig)
    market_agg: MarketAggConfig = Field(default_factory=MarketAggConfig)


def _deep_merge(base: Dict[str, Any], patch: Dict[str, Any]) -> Dict[str, Any]:
    out = copy.deepcopy(base)
    for key, value in patch.items():
        if isinstance(value, dict) and isinstance(out.get(key), dict):
            out[key] = _deep_merge(out[key], value)
        else:
            out[key] = value
    return out


def parse_config(raw: Optional[Dict[str, Any]]) -> RuntimeConfig:
    """校验并补全默认值；失败抛出 ConfigError"""
    try:
        return RuntimeConfig.model_validate(raw or {})
    except ValidationError as exc:
        raise ConfigError(str(exc)) from exc


def load_config(path: str) -> RuntimeConfig:
    """从 YAML 文件读取运行时配置"""
    with open(path, "r", encoding="utf-8") as fh:
        raw = yaml.safe_load(fh)
    if raw is not None and not isinstance(raw, dict):
        raise ConfigError(f"config root must be a mapping: {path}")
    return parse_config(raw)


class RuntimeConfigManager:
    """持有当前运行时配置，支持线程安全的读取与局部更新"""

    def __init__(self, cfg: Optional[RuntimeConfig] = None, path: Optional[str] = None):
        self._lock = threading.Lock()
        self._cfg = cfg or RuntimeConfig()
        self._path = path

    @classmethod
    def from_file(cls, path: str) -> "RuntimeConfigManager":
        """读取 YAML；文件不存在时使用默认配置（首次 update 时写回）"""
        if not os.path.exists(path):
            logger.warning(f"⚠️ 运行时配置文件不存在，使用默认配置: {path}")
            return cls(RuntimeConfig(), path=path)
        return cls(load_config(path), path=path)

    def get(self) -> RuntimeConfig:
        """返回当前配置的独立副本"""
        with self._lock:
            return self._cfg.model_copy(deep=True)

    def update(self, patch: Dict[str, Any]) -> RuntimeConfig:
        """
        局部更新（嵌套字典按键合并），校验通过后整体替换

        例：{"industry": {"interval_seconds": 30}, "watchlist": ["600519.SH"]}
        """
        with self._lock:
            merged = _deep_merge(self._cfg.model_dump(), patch or {})
            cfg = parse_config(merged)
            if self._path:
                self._save(cfg)
            self._cfg = cfg
            logger.info(f"运行时配置已更新: {sorted(patch or {})}")
            return cfg.model_copy(deep=True)

    def _save(self, cfg: RuntimeConfig) -> None:
        path = Path(self._path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w", encoding="utf-8") as fh:
            yaml.safe_dump(cfg.model_dump(), fh, allow_unicode=True, sort_keys=False)
