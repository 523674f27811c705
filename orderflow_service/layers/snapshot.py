"""
Layer 3 – 内存快照层
按类别保存最近一次成功采集的观测值，供 API 读取与持久化循环定期落库

写入由调度器完成，读取方拿到的是深拷贝，无法通过返回值修改内部状态。
"""

import copy
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from orderflow_service.models.observations import CategoryKey


@dataclass
class SnapshotEntry:
    updated_at: datetime
    value: Any


@dataclass
class Snapshot:
    """某一时刻全部类别的独立副本"""

    as_of: datetime
    last_write: Optional[datetime]
    entries: Dict[CategoryKey, SnapshotEntry] = field(default_factory=dict)

    def get(self, key: CategoryKey) -> Any:
        entry = self.entries.get(key)
        return entry.value if entry else None

    def by_kind(self, kind: str) -> Dict[str, Any]:
        """{discriminator: value}"""
        return {k.discriminator: e.value for k, e in self.entries.items() if k.kind == kind}

    def is_empty(self) -> bool:
        return not self.entries


class SnapshotStore:
    """线程安全的“每类别最新值”缓存；不做淘汰，类别集合由配置决定"""

    def __init__(self):
        self._lock = threading.Lock()
        self._entries: Dict[CategoryKey, SnapshotEntry] = {}
        self._last_write: Optional[datetime] = None

    def set_category(self, ts: datetime, key: CategoryKey, value: Any) -> None:
        """整体替换某一类别的值（先拷贝再加锁替换，读方不会看到半写状态）"""
        entry = SnapshotEntry(updated_at=ts, value=copy.deepcopy(value))
        with self._lock:
            self._entries[key] = entry
            if self._last_write is None or ts > self._last_write:
                self._last_write = ts

    def snapshot(self, as_of: datetime) -> Snapshot:
        with self._lock:
            entries = copy.deepcopy(self._entries)
            last_write = self._last_write
        return Snapshot(as_of=as_of, last_write=last_write, entries=entries)

    def get(self, key: CategoryKey) -> Any:
        with self._lock:
            entry = self._entries.get(key)
            return copy.deepcopy(entry.value) if entry else None

    def keys(self) -> List[CategoryKey]:
        with self._lock:
            return list(self._entries)

    @property
    def last_write(self) -> Optional[datetime]:
        with self._lock:
            return self._last_write

    def is_empty(self) -> bool:
        with self._lock:
            return not self._entries
