#!/usr/bin/env python3
"""
资源缓存存储 (Resource Cache Store)

(router_id, resource_kind) -> 最近一次成功同步的记录集合 + 同步元数据。

- 读取 (get) 只访问内存中的不可变条目，从不阻塞、从不访问网络
- 写入 (replace / mark_stale) 只由 Sync Engine 调用：先在一个 sqlite 事务中
  整行写入，再替换内存中的引用（整体交换，不做逐字段修改）
- 进程重启后从 sqlite 重新加载，所有条目标记为 stale，直到下一次同步成功
"""
import json
import logging
import sqlite3
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, replace as dataclass_replace
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

logger = logging.getLogger(__name__)

CACHE_SCHEMA = """
CREATE TABLE IF NOT EXISTS resource_cache (
    router_id TEXT NOT NULL,
    resource_kind TEXT NOT NULL,
    records TEXT NOT NULL DEFAULT '[]',
    generation INTEGER NOT NULL DEFAULT 0,
    synced_at REAL,
    stale INTEGER NOT NULL DEFAULT 1,
    last_error TEXT,
    updated_at REAL NOT NULL,
    PRIMARY KEY (router_id, resource_kind)
);
"""


@dataclass(frozen=True)
class ResourceCacheEntry:
    """一个缓存条目（不可变，整体替换）"""
    router_id: str
    resource_kind: str
    records: Tuple[Dict[str, str], ...] = ()
    generation: int = 0
    synced_at: Optional[float] = None
    stale: bool = True
    last_error: Optional[str] = None

    @property
    def count(self) -> int:
        return len(self.records)

    def to_dict(self) -> Dict:
        """API 输出格式（记录为副本）"""
        return {
            "serverId": self.router_id,
            "resource": self.resource_kind,
            "data": [dict(r) for r in self.records],
            "stale": self.stale,
            "syncedAt": self.synced_at,
            "generation": self.generation,
            "lastError": self.last_error,
        }


CacheKey = Tuple[str, str]


class ResourceCacheStore:
    """资源缓存（内存 + sqlite 持久化）

    Args:
        db_path: sqlite 文件路径；None 表示仅内存（测试用）
    """

    def __init__(self, db_path: Optional[str] = None):
        self.db_path = str(db_path) if db_path else None
        self._entries: Dict[CacheKey, ResourceCacheEntry] = {}
        self._write_lock = threading.Lock()
        if self.db_path:
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
            self._init_schema()
            self._rehydrate()

    @contextmanager
    def _get_conn(self):
        """获取数据库连接（上下文管理器）"""
        conn = sqlite3.connect(self.db_path, timeout=10)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    def _init_schema(self) -> None:
        with self._get_conn() as conn:
            conn.executescript(CACHE_SCHEMA)
            conn.commit()

    def _rehydrate(self) -> None:
        """启动时加载所有条目，并全部标记为 stale"""
        with self._get_conn() as conn:
            rows = conn.execute("""
                SELECT router_id, resource_kind, records, generation, synced_at, last_error
                FROM resource_cache
            """).fetchall()
            conn.execute("UPDATE resource_cache SET stale = 1")
            conn.commit()

        for row in rows:
            try:
                records = json.loads(row["records"])
            except json.JSONDecodeError as e:
                logger.warning(f"Discarding corrupt cache row {row['router_id']}/{row['resource_kind']}: {e}")
                continue
            key = (row["router_id"], row["resource_kind"])
            self._entries[key] = ResourceCacheEntry(
                router_id=row["router_id"],
                resource_kind=row["resource_kind"],
                records=tuple(dict(r) for r in records),
                generation=row["generation"],
                synced_at=row["synced_at"],
                stale=True,
                last_error=row["last_error"],
            )
        logger.info(f"Loaded {len(self._entries)} cache entries from {self.db_path} (all stale)")

    # ============ 读取 ============

    def get(self, router_id: str, resource_kind: str) -> ResourceCacheEntry:
        """返回最近的条目（可能是 stale）；从未同步过则返回空的 stale 条目"""
        entry = self._entries.get((router_id, resource_kind))
        if entry is None:
            return ResourceCacheEntry(router_id=router_id, resource_kind=resource_kind)
        return entry

    def entries(self, router_id: Optional[str] = None) -> List[ResourceCacheEntry]:
        return [
            e for e in list(self._entries.values())
            if router_id is None or e.router_id == router_id
        ]

    def __len__(self) -> int:
        return len(self._entries)

    # ============ 写入（仅 Sync Engine） ============

    def replace(
        self,
        router_id: str,
        resource_kind: str,
        records: Iterable[Mapping[str, str]],
        synced_at: Optional[float] = None,
    ) -> ResourceCacheEntry:
        """整体替换条目：generation + 1，stale = False"""
        frozen = tuple(dict(r) for r in records)
        with self._write_lock:
            previous = self.get(router_id, resource_kind)
            entry = ResourceCacheEntry(
                router_id=router_id,
                resource_kind=resource_kind,
                records=frozen,
                generation=previous.generation + 1,
                synced_at=synced_at if synced_at is not None else time.time(),
                stale=False,
                last_error=None,
            )
            self._persist(entry)
            self._entries[(router_id, resource_kind)] = entry
        return entry

    def mark_stale(self, router_id: str, resource_kind: str, error: Optional[str] = None) -> ResourceCacheEntry:
        """同步失败：保留原记录，只设置 stale 标志"""
        with self._write_lock:
            previous = self.get(router_id, resource_kind)
            entry = dataclass_replace(
                previous,
                generation=previous.generation + 1,
                stale=True,
                last_error=error,
            )
            self._persist(entry)
            self._entries[(router_id, resource_kind)] = entry
        return entry

    def clear(self, router_id: Optional[str] = None, resource_kind: Optional[str] = None) -> int:
        """显式清除缓存，返回删除的条目数"""
        with self._write_lock:
            keys = [
                key for key in self._entries
                if (router_id is None or key[0] == router_id)
                and (resource_kind is None or key[1] == resource_kind)
            ]
            if self.db_path:
                with self._get_conn() as conn:
                    conn.executemany(
                        "DELETE FROM resource_cache WHERE router_id = ? AND resource_kind = ?",
                        keys,
                    )
                    conn.commit()
            for key in keys:
                del self._entries[key]
        if keys:
            logger.info(f"Cleared {len(keys)} cache entries")
        return len(keys)

    def _persist(self, entry: ResourceCacheEntry) -> None:
        if not self.db_path:
            return
        with self._get_conn() as conn:
            conn.execute("""
                INSERT OR REPLACE INTO resource_cache
                    (router_id, resource_kind, records, generation, synced_at, stale, last_error, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                entry.router_id,
                entry.resource_kind,
                json.dumps(list(entry.records), ensure_ascii=False),
                entry.generation,
                entry.synced_at,
                1 if entry.stale else 0,
                entry.last_error,
                time.time(),
            ))
            conn.commit()
