"""
MongoDB 持久化仓储

实时集合以 (ts_utc, 类别键, 次级键) 唯一，日度集合以 (trade_date, 类别键, 次级键) 唯一。
所有写入均为 $set upsert（每个集合一次有序 bulk_write）：同一快照重复落库不会产生重复文档（后写覆盖）。
ts_utc 使用定宽 UTC 字符串，字典序即时间序，便于范围删除与排序。
"""

import logging
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, UpdateOne
from pymongo.errors import PyMongoError

from orderflow_service.exceptions import StorageError
from orderflow_service.layers.snapshot import Snapshot
from orderflow_service.models.observations import (
    AGGREGATE,
    BOARD,
    FUNDFLOW,
    NORTHBOUND,
    TOPLIST,
    AggregateValue,
    BoardFundflowDaily,
    CategoryKey,
    FundflowDaily,
    FundflowRow,
    MarginDaily,
    NorthboundFlow,
    NorthboundLeg,
    RankedItem,
)
from orderflow_service.session import CN_TZ, cn_trade_date, is_cn_trading_day

logger = logging.getLogger(__name__)

NORTHBOUND_KEY = CategoryKey(NORTHBOUND, "hk2cn")
FUNDFLOW_KEY = CategoryKey(FUNDFLOW, "watchlist")

# ── 集合与唯一键 ──────────────────────────────────────────
RT_COLLECTIONS: Dict[str, Tuple[str, ...]] = {
    "northbound_rt": ("ts_utc",),
    "fundflow_rt": ("ts_utc", "code"),
    "toplist_rt": ("ts_utc", "fid", "rank"),
    "board_rt": ("ts_utc", "board_type", "fid", "code"),
    "market_agg_rt": ("ts_utc", "source", "fid"),
}
DAILY_COLLECTIONS: Dict[str, Tuple[str, ...]] = {
    "northbound_daily": ("trade_date",),
    "fundflow_daily": ("trade_date", "secid"),
    "board_daily": ("trade_date", "board_type", "fid", "code"),
    "market_agg_daily": ("trade_date", "source", "fid"),
    "margin_daily": ("trade_date", "code"),
}
COLLECTION_KEYS = {**RT_COLLECTIONS, **DAILY_COLLECTIONS}

DocsByCollection = Dict[str, List[Dict[str, Any]]]


def format_ts(moment: datetime) -> str:
    """定宽 UTC 时间戳：YYYY-MM-DDTHH:MM:SS.nnnnnnnnnZ"""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    moment = moment.astimezone(timezone.utc)
    return moment.strftime("%Y-%m-%dT%H:%M:%S.") + f"{moment.microsecond * 1000:09d}Z"


def parse_ts(raw: str) -> datetime:
    return datetime.fromisoformat(raw[:26] + "+00:00")


def split_pair(discriminator: str) -> Tuple[str, str]:
    """'industry:f62' → ('industry', 'f62')"""
    head, sep, tail = discriminator.partition(":")
    if not sep:
        raise ValueError(f"expected '<name>:<fid>', got {discriminator!r}")
    return head, tail


# ── 文档构造 ──────────────────────────────────────────────

def _northbound_doc(nb: NorthboundFlow) -> Dict[str, Any]:
    doc: Dict[str, Any] = {"nb_trade_date": nb.trade_date}
    for side, leg in (("sh", nb.sh), ("sz", nb.sz)):
        for name, value in leg.model_dump().items():
            doc[f"{side}_{name}"] = value
    return doc


def _northbound_from_doc(doc: Dict[str, Any]) -> NorthboundFlow:
    legs = {}
    for side in ("sh", "sz"):
        legs[side] = NorthboundLeg(**{
            name: doc.get(f"{side}_{name}", 0) for name in NorthboundLeg.model_fields
        })
    return NorthboundFlow(trade_date=doc.get("nb_trade_date", ""), **legs)


def _ranked_docs(base: Dict[str, Any], rows: Iterable[RankedItem]) -> List[Dict[str, Any]]:
    return [{**base, **row.model_dump()} for row in rows]


def _ranked_from_doc(doc: Dict[str, Any]) -> RankedItem:
    return RankedItem(**{k: doc[k] for k in RankedItem.model_fields if k in doc})


# 每个类别的实时文档：(ts_utc, key, value) → {集合: [文档]}
def _northbound_rt(stamp: str, key: CategoryKey, nb: NorthboundFlow) -> DocsByCollection:
    return {"northbound_rt": [{"ts_utc": stamp, **_northbound_doc(nb)}]}


def _fundflow_rt(stamp: str, key: CategoryKey, rows: List[FundflowRow]) -> DocsByCollection:
    return {"fundflow_rt": [{"ts_utc": stamp, **r.model_dump()} for r in rows if r.code]}


def _toplist_rt(stamp: str, key: CategoryKey, rows: List[RankedItem]) -> DocsByCollection:
    return {"toplist_rt": _ranked_docs({"ts_utc": stamp, "fid": key.discriminator}, rows)}


def _board(field: str, stamp: str, key: CategoryKey, rows: List[RankedItem]) -> List[Dict[str, Any]]:
    board_type, fid = split_pair(key.discriminator)
    base = {field: stamp, "board_type": board_type, "fid": fid}
    return _ranked_docs(base, [r for r in rows if r.code])


def _aggregate(field: str, stamp: str, key: CategoryKey, agg: AggregateValue) -> List[Dict[str, Any]]:
    source, fid = split_pair(key.discriminator)
    return [{field: stamp, "source": source, "fid": fid, **agg.model_dump()}]


_RT_DOCS: Dict[str, Callable[..., DocsByCollection]] = {
    NORTHBOUND: _northbound_rt,
    FUNDFLOW: _fundflow_rt,
    TOPLIST: _toplist_rt,
    BOARD: lambda stamp, key, rows: {"board_rt": _board("ts_utc", stamp, key, rows)},
    AGGREGATE: lambda stamp, key, agg: {"market_agg_rt": _aggregate("ts_utc", stamp, key, agg)},
}
# 板块与汇总值另有日度行（同一交易日后写覆盖）
_DAILY_DOCS: Dict[str, Callable[..., DocsByCollection]] = {
    BOARD: lambda day, key, rows: {"board_daily": _board("trade_date", day, key, rows)},
    AGGREGATE: lambda day, key, agg: {"market_agg_daily": _aggregate("trade_date", day, key, agg)},
}


class FlowRepository:
    """采集数据仓储（单写者；一次快照落库按集合批量写入，可选包在一个事务中）"""

    def __init__(self, db: AsyncIOMotorDatabase, *, transactional: bool = False):
        self._db = db
        # 多文档事务需要副本集；单机部署依赖 upsert 幂等，失败后整批重写
        self._transactional = transactional

    # ── 初始化 ────────────────────────────────────────────

    async def ensure_indexes(self) -> None:
        """创建唯一复合索引；失败视为启动失败"""
        try:
            for name, keys in COLLECTION_KEYS.items():
                await self._db[name].create_index(
                    [(k, ASCENDING) for k in keys], unique=True, name="uniq_" + "_".join(keys)
                )
        except PyMongoError as exc:
            raise StorageError(f"create indexes: {exc}") from exc
        logger.info(f"✅ 索引就绪: {len(COLLECTION_KEYS)} 个集合")

    # ── 写入 ──────────────────────────────────────────────

    async def _write(self, docs_by_collection: Dict[str, List[Dict[str, Any]]], session=None) -> int:
        """每个集合一次有序 bulk_write（$set upsert）；任一失败立即中止并抛出 StorageError"""
        written = 0
        for name, docs in docs_by_collection.items():
            if not docs:
                continue
            keys = COLLECTION_KEYS[name]
            ops = [UpdateOne({k: doc[k] for k in keys}, {"$set": doc}, upsert=True) for doc in docs]
            try:
                await self._db[name].bulk_write(ops, ordered=True, session=session)
            except PyMongoError as exc:
                raise StorageError(f"upsert {name}: {exc}") from exc
            written += len(ops)
        return written

    async def upsert_northbound_daily(self, trade_date: str, nb: NorthboundFlow) -> int:
        return await self._write({"northbound_daily": [{"trade_date": trade_date, **_northbound_doc(nb)}]})

    async def upsert_fundflow_daily(self, row: FundflowDaily) -> int:
        return await self._write({"fundflow_daily": [row.model_dump()]})

    async def upsert_margin_daily(self, row: MarginDaily) -> int:
        return await self._write({"margin_daily": [row.model_dump()]})

    async def upsert_board_daily_series(self, board_type: str, fid: str, rows: Iterable[BoardFundflowDaily]) -> int:
        """板块日度资金流序列写入 board_daily（value 取主力净额）"""
        docs = [
            {
                "trade_date": r.trade_date, "board_type": board_type, "fid": fid,
                "code": r.code, "name": r.name, "price": 0.0, "pct": 0.0, "value": r.net_main,
            }
            for r in rows if r.code and r.trade_date
        ]
        return await self._write({"board_daily": docs})

    async def flush_snapshot(self, snap: Snapshot) -> int:
        """
        将快照全部类别写入实时集合（键为 snap.as_of），
        板块与汇总值同时写入其采集时刻所在交易日的日度集合（周末采集的值不写日度）
        """
        stamp = format_ts(snap.as_of)
        docs: Dict[str, List[Dict[str, Any]]] = defaultdict(list)

        for key, entry in snap.entries.items():
            build = _RT_DOCS.get(key.kind)
            if build is None:
                logger.warning(f"未知类别，跳过落库: {key}")
                continue
            for name, rows in build(stamp, key, entry.value).items():
                docs[name].extend(rows)
            daily = _DAILY_DOCS.get(key.kind)
            if daily is not None and is_cn_trading_day(entry.updated_at):
                trade_date = cn_trade_date(entry.updated_at)
                for name, rows in daily(trade_date, key, entry.value).items():
                    docs[name].extend(rows)

        if not self._transactional:
            return await self._write(docs)
        try:
            async with await self._db.client.start_session() as session:
                async with session.start_transaction():
                    return await self._write(docs, session=session)
        except PyMongoError as exc:
            raise StorageError(f"flush transaction: {exc}") from exc

    # ── 清理 ──────────────────────────────────────────────

    async def cleanup_old_data(self, now_utc: datetime, retention_days: int) -> Dict[str, int]:
        """删除早于 retention_days 的实时（按 ts_utc）与日度（按 trade_date）数据"""
        if retention_days < 1:
            raise ValueError("retention_days must be >= 1")
        if now_utc.tzinfo is None:
            now_utc = now_utc.replace(tzinfo=timezone.utc)
        ts_cutoff = format_ts(now_utc - timedelta(days=retention_days))
        date_cutoff = (now_utc.astimezone(CN_TZ) - timedelta(days=retention_days)).strftime("%Y-%m-%d")

        deleted: Dict[str, int] = {}
        try:
            for name in RT_COLLECTIONS:
                res = await self._db[name].delete_many({"ts_utc": {"$lt": ts_cutoff}})
                deleted[name] = res.deleted_count
            for name in DAILY_COLLECTIONS:
                res = await self._db[name].delete_many({"trade_date": {"$lt": date_cutoff}})
                deleted[name] = res.deleted_count
        except PyMongoError as exc:
            raise StorageError(f"cleanup: {exc}") from exc
        return deleted

    # ── 查询（结果统一按时间升序返回） ────────────────────

    async def _latest_desc(self, name: str, query: Dict[str, Any], order_field: str, limit: int) -> List[Dict[str, Any]]:
        cursor = self._db[name].find(
            query, {"_id": 0}, sort=[(order_field, -1)], limit=limit
        )
        rows = await cursor.to_list(length=None)
        rows.reverse()
        return rows

    async def query_market_agg_rt(self, source: str, fid: str, limit: int = 200) -> List[Dict[str, Any]]:
        rows = await self._latest_desc("market_agg_rt", {"source": source, "fid": fid}, "ts_utc", limit)
        return [{"ts_utc": r["ts_utc"], "value": r.get("value", 0.0)} for r in rows]

    async def query_market_agg_daily(self, source: str, fid: str, limit: int = 200) -> List[Dict[str, Any]]:
        rows = await self._latest_desc("market_agg_daily", {"source": source, "fid": fid}, "trade_date", limit)
        return [{"trade_date": r["trade_date"], "value": r.get("value", 0.0)} for r in rows]

    async def _board_sum(self, name: str, order_field: str, board_type: str, fid: str, limit: int) -> List[Dict[str, Any]]:
        pipeline = [
            {"$match": {"board_type": board_type, "fid": fid}},
            {"$group": {"_id": f"${order_field}", "value": {"$sum": "$value"}}},
            {"$sort": {"_id": -1}},
            {"$limit": limit},
        ]
        rows = await self._db[name].aggregate(pipeline).to_list(length=None)
        rows.reverse()
        return [{order_field: r["_id"], "value": r["value"]} for r in rows]

    async def query_board_sum_rt(self, board_type: str, fid: str, limit: int = 200) -> List[Dict[str, Any]]:
        return await self._board_sum("board_rt", "ts_utc", board_type, fid, limit)

    async def query_board_sum_daily(self, board_type: str, fid: str, limit: int = 200) -> List[Dict[str, Any]]:
        return await self._board_sum("board_daily", "trade_date", board_type, fid, limit)

    async def query_board_daily_by_code(
        self, board_type: str, fid: str, code: str, limit: int = 120
    ) -> Tuple[List[Dict[str, Any]], str]:
        """单个板块的日度序列（升序）及板块名称"""
        rows = await self._latest_desc(
            "board_daily", {"board_type": board_type, "fid": fid, "code": code}, "trade_date", limit
        )
        name = next((r["name"] for r in reversed(rows) if r.get("name")), "")
        return [{"trade_date": r["trade_date"], "value": r.get("value", 0.0)} for r in rows], name

    async def query_board_rt_latest(self, board_type: str, fid: str, limit: int = 50) -> Tuple[str, List[RankedItem]]:
        """最近一次落库的板块列表，按 value 降序重新编号"""
        coll = self._db["board_rt"]
        latest = await coll.find_one(
            {"board_type": board_type, "fid": fid}, {"ts_utc": 1}, sort=[("ts_utc", -1)]
        )
        if not latest:
            return "", []
        ts = latest["ts_utc"]
        docs = await coll.find(
            {"board_type": board_type, "fid": fid, "ts_utc": ts}, {"_id": 0},
            sort=[("value", -1)], limit=limit,
        ).to_list(length=None)
        items = []
        for rank, doc in enumerate(docs, start=1):
            item = _ranked_from_doc(doc)
            items.append(item.model_copy(update={"rank": rank}))
        return ts, items

    async def latest_rt_timestamp(self) -> Optional[str]:
        latest: Optional[str] = None
        for name in RT_COLLECTIONS:
            doc = await self._db[name].find_one({}, {"ts_utc": 1}, sort=[("ts_utc", -1)])
            if doc and (latest is None or doc["ts_utc"] > latest):
                latest = doc["ts_utc"]
        return latest

    async def load_latest_rt_snapshot(self) -> Optional[Tuple[datetime, Dict[CategoryKey, Any]]]:
        """读取最近一次落库的实时快照（用于启动时预热内存快照）"""
        ts = await self.latest_rt_timestamp()
        if ts is None:
            return None
        out: Dict[CategoryKey, Any] = {}

        nb = await self._db["northbound_rt"].find_one({"ts_utc": ts}, {"_id": 0})
        if nb:
            out[NORTHBOUND_KEY] = _northbound_from_doc(nb)

        ff = await self._db["fundflow_rt"].find({"ts_utc": ts}, {"_id": 0}).to_list(length=None)
        if ff:
            out[FUNDFLOW_KEY] = [
                FundflowRow(**{k: d[k] for k in FundflowRow.model_fields if k in d}) for d in ff
            ]

        top = await self._db["toplist_rt"].find(
            {"ts_utc": ts}, {"_id": 0}, sort=[("fid", 1), ("rank", 1)]
        ).to_list(length=None)
        for doc in top:
            out.setdefault(CategoryKey(TOPLIST, doc["fid"]), []).append(_ranked_from_doc(doc))

        boards = await self._db["board_rt"].find(
            {"ts_utc": ts}, {"_id": 0}, sort=[("board_type", 1), ("fid", 1), ("rank", 1)]
        ).to_list(length=None)
        for doc in boards:
            key = CategoryKey(BOARD, f"{doc['board_type']}:{doc['fid']}")
            out.setdefault(key, []).append(_ranked_from_doc(doc))

        aggs = await self._db["market_agg_rt"].find({"ts_utc": ts}, {"_id": 0}).to_list(length=None)
        for doc in aggs:
            key = CategoryKey(AGGREGATE, f"{doc['source']}:{doc['fid']}")
            out[key] = AggregateValue(value=doc.get("value", 0.0), total=doc.get("total", 0))

        return parse_ts(ts), out
