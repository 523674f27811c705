"""
持久化层单元测试（mongomock-motor，不需要真实 MongoDB）

覆盖范围：
  - 定宽时间戳
  - 快照落库幂等、空快照、日度行按采集日写入
  - 数据保留边界（实时按 ts_utc，日度按 trade_date）
  - 历史查询（升序、板块合计、最新榜单）
  - 启动预热、清理任务的每日一次保护
  - 日度采集的部分失败语义
  - 板块日度资金流序列写入、按代码查询与批量回填
"""

import asyncio
import os
import sys
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from mongomock_motor import AsyncMongoMockClient

ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from orderflow_service.db.repository import FlowRepository, format_ts, parse_ts  # noqa: E402
from orderflow_service.exceptions import PayloadError, StorageError  # noqa: E402
from orderflow_service.layers.snapshot import SnapshotStore  # noqa: E402
from orderflow_service.models.observations import (  # noqa: E402
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
from orderflow_service.runtime_config import RuntimeConfigManager  # noqa: E402

T0 = datetime(2026, 2, 2, 2, 0, tzinfo=timezone.utc)


def _run(coro):
    return asyncio.run(coro)


def _repo():
    db = AsyncMongoMockClient()["orderflow_test"]
    return FlowRepository(db), db


def _filled_store(ts=T0) -> SnapshotStore:
    store = SnapshotStore()
    store.set_category(ts, CategoryKey("northbound", "hk2cn"), NorthboundFlow(
        trade_date="2026-02-02",
        sh=NorthboundLeg(day_net_amt_in=1.5, update_time=1),
        sz=NorthboundLeg(day_net_amt_in=-0.5),
    ))
    store.set_category(ts, CategoryKey("fundflow", "watchlist"), [
        FundflowRow(code="600519", name="贵州茅台", net_main=100.0),
        FundflowRow(code="000001", name="平安银行", net_main=-20.0),
    ])
    store.set_category(ts, CategoryKey("toplist", "f62"), [
        RankedItem(rank=1, code="600519", value=9.0),
        RankedItem(rank=2, code="000001", value=8.0),
    ])
    store.set_category(ts, CategoryKey("board", "industry:f62"), [
        RankedItem(rank=1, code="BK0475", name="银行", value=30.0),
        RankedItem(rank=2, code="BK0477", name="酿酒", value=12.0),
    ])
    store.set_category(ts, CategoryKey("aggregate", "allstocks_sum:f62"), AggregateValue(value=123.0, total=5300))
    return store


async def _count(db, name):
    return await db[name].count_documents({})


# ─────────────────────────────────────────────────────────
# 1. 时间戳编码
# ─────────────────────────────────────────────────────────

class TestTimestamp:
    def test_fixed_width(self):
        ts = datetime(2026, 2, 2, 2, 0, 0, 123456, tzinfo=timezone.utc)
        assert format_ts(ts) == "2026-02-02T02:00:00.123456000Z"
        assert format_ts(T0) == "2026-02-02T02:00:00.000000000Z"

    def test_naive_is_utc_and_aware_converted(self):
        from orderflow_service.session import CN_TZ
        assert format_ts(datetime(2026, 2, 2, 2, 0)) == format_ts(T0)
        assert format_ts(datetime(2026, 2, 2, 10, 0, tzinfo=CN_TZ)) == format_ts(T0)

    def test_lexical_order_matches_time(self):
        a = format_ts(T0)
        b = format_ts(T0 + timedelta(microseconds=1))
        c = format_ts(T0 + timedelta(seconds=1))
        assert a < b < c
        assert parse_ts(b) == T0 + timedelta(microseconds=1)


# ─────────────────────────────────────────────────────────
# 2. 快照落库
# ─────────────────────────────────────────────────────────

class TestFlushSnapshot:
    def test_flush_writes_all_collections(self):
        repo, db = _repo()

        async def go():
            await repo.ensure_indexes()
            written = await repo.flush_snapshot(_filled_store().snapshot(T0))
            counts = {name: await _count(db, name) for name in (
                "northbound_rt", "fundflow_rt", "toplist_rt", "board_rt",
                "board_daily", "market_agg_rt", "market_agg_daily",
            )}
            return written, counts

        written, counts = _run(go())
        assert counts == {
            "northbound_rt": 1, "fundflow_rt": 2, "toplist_rt": 2, "board_rt": 2,
            "board_daily": 2, "market_agg_rt": 1, "market_agg_daily": 1,
        }
        assert written == sum(counts.values())

    def test_flush_idempotent(self):
        repo, db = _repo()

        async def go():
            await repo.ensure_indexes()
            snap = _filled_store().snapshot(T0)
            await repo.flush_snapshot(snap)
            await repo.flush_snapshot(snap)
            return await _count(db, "board_rt"), await _count(db, "market_agg_daily")

        assert _run(go()) == (2, 1)

    def test_daily_rows_last_write_wins(self):
        repo, db = _repo()

        async def go():
            await repo.flush_snapshot(_filled_store().snapshot(T0))
            store = _filled_store(T0 + timedelta(minutes=1))
            store.set_category(T0, CategoryKey("aggregate", "allstocks_sum:f62"), AggregateValue(value=456.0))
            await repo.flush_snapshot(store.snapshot(T0 + timedelta(minutes=1)))
            docs = await db["market_agg_daily"].find({}, {"_id": 0}).to_list(length=None)
            return docs, await _count(db, "market_agg_rt")

        docs, rt_count = _run(go())
        assert len(docs) == 1
        assert docs[0]["trade_date"] == "2026-02-02"
        assert docs[0]["value"] == 456.0
        assert rt_count == 2

    def test_empty_snapshot_writes_nothing(self):
        from orderflow_service.services.persistence import flush_once
        repo, db = _repo()

        async def go():
            written = await flush_once(SnapshotStore(), repo, T0)
            return written, await _count(db, "northbound_rt")

        assert _run(go()) == (0, 0)

    def test_transactional_flush_passes_session(self):
        """事务模式：全部批量写入在同一个 session 的事务内执行"""
        session = MagicMock()
        session.__aenter__ = AsyncMock(return_value=session)
        session.__aexit__ = AsyncMock(return_value=False)
        txn = MagicMock()
        txn.__aenter__ = AsyncMock(return_value=txn)
        txn.__aexit__ = AsyncMock(return_value=False)
        session.start_transaction = MagicMock(return_value=txn)

        coll = MagicMock()
        coll.bulk_write = AsyncMock()
        db = MagicMock()
        db.__getitem__ = MagicMock(return_value=coll)
        db.client.start_session = AsyncMock(return_value=session)

        repo = FlowRepository(db, transactional=True)
        written = _run(repo.flush_snapshot(_filled_store().snapshot(T0)))
        assert written == 11
        session.start_transaction.assert_called_once()
        # 每个集合一次 bulk_write：northbound / fundflow / toplist / board 实时与日度 / 汇总实时与日度
        assert coll.bulk_write.await_count == 7
        assert sum(len(c.args[0]) for c in coll.bulk_write.await_args_list) == 11
        assert all(c.kwargs["session"] is session for c in coll.bulk_write.await_args_list)
        assert all(c.kwargs["ordered"] is True for c in coll.bulk_write.await_args_list)

    def test_daily_rows_keyed_by_collection_day(self):
        """日度行按采集时刻的交易日写入：周五采集的值在周末落库不会生成周末日度行"""
        repo, db = _repo()
        friday = datetime(2026, 2, 6, 2, 0, tzinfo=timezone.utc)
        store = SnapshotStore()
        store.set_category(friday, CategoryKey("board", "industry:f62"), [
            RankedItem(rank=1, code="BK0475", value=30.0),
        ])
        store.set_category(friday, CategoryKey("aggregate", "allstocks_sum:f62"), AggregateValue(value=1.0))

        async def go():
            for days in (0, 1, 2):
                await repo.flush_snapshot(store.snapshot(friday + timedelta(days=days)))
            board = await db["board_daily"].find({}, {"_id": 0}).to_list(length=None)
            agg = await db["market_agg_daily"].find({}, {"_id": 0}).to_list(length=None)
            return board, agg, await _count(db, "board_rt")

        board, agg, rt_count = _run(go())
        assert [d["trade_date"] for d in board] == ["2026-02-06"]
        assert [d["trade_date"] for d in agg] == ["2026-02-06"]
        assert rt_count == 3

    def test_weekend_collection_writes_no_daily_rows(self):
        repo, db = _repo()
        saturday = datetime(2026, 2, 7, 2, 0, tzinfo=timezone.utc)
        store = SnapshotStore()
        store.set_category(saturday, CategoryKey("board", "concept:f62"), [
            RankedItem(rank=1, code="BK1000", value=3.0),
        ])

        async def go():
            written = await repo.flush_snapshot(store.snapshot(saturday))
            return written, await _count(db, "board_rt"), await _count(db, "board_daily")

        assert _run(go()) == (1, 1, 0)

    def test_write_failure_raises_storage_error(self):
        from pymongo.errors import PyMongoError
        coll = MagicMock()
        coll.bulk_write = AsyncMock(side_effect=PyMongoError("down"))
        db = MagicMock()
        db.__getitem__ = MagicMock(return_value=coll)
        with pytest.raises(StorageError):
            _run(FlowRepository(db).flush_snapshot(_filled_store().snapshot(T0)))

    def test_unique_indexes(self):
        repo, db = _repo()

        async def go():
            await repo.ensure_indexes()
            return await db["board_rt"].index_information()

        info = _run(go())
        assert "uniq_ts_utc_board_type_fid_code" in info
        assert info["uniq_ts_utc_board_type_fid_code"].get("unique") is True


# ─────────────────────────────────────────────────────────
# 3. 数据保留
# ─────────────────────────────────────────────────────────

class TestRetention:
    NOW = datetime(2026, 3, 5, 12, 0, tzinfo=timezone.utc)

    def test_boundary(self):
        repo, db = _repo()
        cutoff = self.NOW - timedelta(days=30)

        async def go():
            base = {"source": "allstocks_sum", "fid": "f62", "value": 1.0, "total": 1}
            await db["market_agg_rt"].insert_many([
                {**base, "ts_utc": format_ts(cutoff - timedelta(microseconds=1))},
                {**base, "ts_utc": format_ts(cutoff)},
                {**base, "ts_utc": format_ts(cutoff + timedelta(seconds=1))},
            ])
            await db["market_agg_daily"].insert_many([
                {**base, "trade_date": "2026-02-02"},
                {**base, "trade_date": "2026-02-03"},
            ])
            deleted = await repo.cleanup_old_data(self.NOW, 30)
            rt = await db["market_agg_rt"].find({}, {"_id": 0}).to_list(length=None)
            daily = await db["market_agg_daily"].find({}, {"_id": 0}).to_list(length=None)
            return deleted, rt, daily

        deleted, rt, daily = _run(go())
        assert deleted["market_agg_rt"] == 1
        assert sorted(r["ts_utc"] for r in rt) == [
            format_ts(cutoff), format_ts(cutoff + timedelta(seconds=1)),
        ]
        assert deleted["market_agg_daily"] == 1
        assert [d["trade_date"] for d in daily] == ["2026-02-03"]

    def test_invalid_retention(self):
        repo, _ = _repo()
        with pytest.raises(ValueError):
            _run(repo.cleanup_old_data(self.NOW, 0))

    def _job(self, repo, **patch_cfg):
        from orderflow_service.services.persistence import RetentionJob
        mgr = RuntimeConfigManager()
        if patch_cfg:
            mgr.update(patch_cfg)
        return RetentionJob(repo, mgr)

    def test_runs_once_per_day_after_run_at(self):
        repo = MagicMock()
        repo.cleanup_old_data = AsyncMock(return_value={"board_rt": 3})
        job = self._job(repo)
        # 03:00 北京时间 = 前一日 19:00 UTC，尚未到 03:10
        before = datetime(2026, 3, 4, 19, 0, tzinfo=timezone.utc)
        assert _run(job.check(before)) is None
        after = before + timedelta(minutes=15)
        assert _run(job.check(after)) == {"board_rt": 3}
        assert job.last_run_day == "2026-03-05"
        assert _run(job.check(after + timedelta(hours=2))) is None
        assert repo.cleanup_old_data.await_count == 1
        # 次日再次执行
        _run(job.check(after + timedelta(days=1)))
        assert repo.cleanup_old_data.await_count == 2

    def test_guard_recorded_on_failure(self):
        repo = MagicMock()
        repo.cleanup_old_data = AsyncMock(side_effect=StorageError("boom"))
        job = self._job(repo)
        now = datetime(2026, 3, 5, 4, 0, tzinfo=timezone.utc)
        assert _run(job.check(now)) is None
        assert job.last_run_day == "2026-03-05"
        _run(job.check(now + timedelta(minutes=1)))
        assert repo.cleanup_old_data.await_count == 1

    def test_disabled(self):
        repo = MagicMock()
        repo.cleanup_old_data = AsyncMock()
        job = self._job(repo, cleanup={"enabled": False})
        assert _run(job.check(datetime(2026, 3, 5, 4, 0, tzinfo=timezone.utc))) is None
        repo.cleanup_old_data.assert_not_awaited()


# ─────────────────────────────────────────────────────────
# 4. 历史查询与预热
# ─────────────────────────────────────────────────────────

class TestQueries:
    def test_market_agg_series_ascending(self):
        repo, _ = _repo()

        async def go():
            key = CategoryKey("aggregate", "allstocks_sum:f62")
            for i in range(3):
                ts = T0 + timedelta(minutes=i)
                store = SnapshotStore()
                store.set_category(ts, key, AggregateValue(value=float(i)))
                await repo.flush_snapshot(store.snapshot(ts))
            return await repo.query_market_agg_rt("allstocks_sum", "f62", limit=2)

        series = _run(go())
        assert [p["value"] for p in series] == [1.0, 2.0]
        assert series[0]["ts_utc"] < series[1]["ts_utc"]

    def test_board_sum_rt_and_daily(self):
        repo, _ = _repo()

        async def go():
            await repo.flush_snapshot(_filled_store().snapshot(T0))
            await repo.flush_snapshot(_filled_store().snapshot(T0 + timedelta(minutes=1)))
            rt = await repo.query_board_sum_rt("industry", "f62")
            daily = await repo.query_board_sum_daily("industry", "f62")
            return rt, daily

        rt, daily = _run(go())
        assert [p["value"] for p in rt] == [42.0, 42.0]
        assert rt[0]["ts_utc"] == format_ts(T0)
        assert daily == [{"trade_date": "2026-02-02", "value": 42.0}]

    def test_board_rt_latest(self):
        repo, _ = _repo()

        async def go():
            await repo.flush_snapshot(_filled_store().snapshot(T0))
            later = T0 + timedelta(minutes=1)
            store = SnapshotStore()
            store.set_category(later, CategoryKey("board", "industry:f62"), [
                RankedItem(rank=1, code="BK0477", value=5.0),
                RankedItem(rank=2, code="BK0475", value=50.0),
            ])
            await repo.flush_snapshot(store.snapshot(later))
            return await repo.query_board_rt_latest("industry", "f62")

        ts, items = _run(go())
        assert ts == format_ts(T0 + timedelta(minutes=1))
        assert [(it.rank, it.code) for it in items] == [(1, "BK0475"), (2, "BK0477")]

    def test_board_rt_latest_empty(self):
        repo, _ = _repo()
        assert _run(repo.query_board_rt_latest("concept", "f62")) == ("", [])

    def test_seed_store_from_db(self):
        from orderflow_service.services.persistence import seed_store_from_db
        repo, _ = _repo()
        original = _filled_store()

        async def go():
            await repo.flush_snapshot(original.snapshot(T0))
            store = SnapshotStore()
            restored = await seed_store_from_db(store, repo)
            return store, restored

        store, restored = _run(go())
        assert restored == 5
        assert set(store.keys()) == set(original.keys())
        assert store.last_write == T0
        for key in (CategoryKey("northbound", "hk2cn"), CategoryKey("toplist", "f62"),
                    CategoryKey("board", "industry:f62"), CategoryKey("aggregate", "allstocks_sum:f62")):
            assert store.get(key) == original.get(key)
        codes = {r.code for r in store.get(CategoryKey("fundflow", "watchlist"))}
        assert codes == {"600519", "000001"}

    def test_seed_empty_db(self):
        from orderflow_service.services.persistence import seed_store_from_db
        repo, _ = _repo()
        store = SnapshotStore()
        assert _run(seed_store_from_db(store, repo)) == 0
        assert store.is_empty()


# ─────────────────────────────────────────────────────────
# 5. 日度采集
# ─────────────────────────────────────────────────────────

class FakeDailySource:
    def __init__(self, fail_fundflow=()):
        self.fail_fundflow = set(fail_fundflow)

    async def northbound(self):
        return NorthboundFlow(trade_date="2026-02-02", sh=NorthboundLeg(day_net_amt_in=3.0))

    async def fundflow_daily_latest(self, secid):
        if secid in self.fail_fundflow:
            raise PayloadError(f"empty klines for {secid}")
        return FundflowDaily(trade_date="2026-02-02", secid=secid, code=secid.split(".")[1], net_main=1.0)

    async def margin_latest(self, code):
        return MarginDaily(trade_date="2026-02-02", code=code, rzye=10.0)


class TestDailyCollector:
    def test_partial_failures_skipped(self):
        from orderflow_service.services.daily_service import DailyCollector
        repo, db = _repo()
        mgr = RuntimeConfigManager()
        mgr.update({"watchlist": ["600519.SH", "abc", "000001"]})
        collector = DailyCollector(FakeDailySource(fail_fundflow={"0.000001"}), repo, mgr)

        async def go():
            report = await collector.run("2026-02-02")
            counts = {name: await _count(db, name) for name in (
                "northbound_daily", "fundflow_daily", "margin_daily",
            )}
            nb = await db["northbound_daily"].find_one({}, {"_id": 0})
            return report, counts, nb

        report, counts, nb = _run(go())
        assert report.northbound is True
        assert report.fundflow == ["600519.SH"]
        assert report.margin == ["600519.SH", "000001"]
        assert len(report.failures) == 2
        assert counts == {"northbound_daily": 1, "fundflow_daily": 1, "margin_daily": 2}
        assert nb["trade_date"] == "2026-02-02"
        assert nb["sh_day_net_amt_in"] == 3.0

    def test_northbound_failure_does_not_stop_symbols(self):
        from orderflow_service.services.daily_service import DailyCollector
        repo, db = _repo()
        mgr = RuntimeConfigManager()
        mgr.update({"watchlist": ["600519"]})
        source = FakeDailySource()
        source.northbound = AsyncMock(side_effect=PayloadError("rc=102"))

        report = _run(DailyCollector(source, repo, mgr).run("2026-02-02"))
        assert report.northbound is False
        assert report.fundflow == ["600519"]
        assert report.margin == ["600519"]


# ─────────────────────────────────────────────────────────
# 6. 板块日度资金流历史
# ─────────────────────────────────────────────────────────

def _series(code="BK0475", name="银行", days=("2026-02-02", "2026-02-03")):
    return [
        BoardFundflowDaily(trade_date=d, code=code, name=name, net_main=float(i + 1))
        for i, d in enumerate(days)
    ]


class TestBoardDailySeries:
    def test_upsert_and_query_by_code(self):
        repo, db = _repo()

        async def go():
            await repo.ensure_indexes()
            await repo.upsert_board_daily_series("industry", "f62", _series())
            # 重复写入覆盖同一交易日
            await repo.upsert_board_daily_series("industry", "f62", _series(days=("2026-02-03",)))
            points, name = await repo.query_board_daily_by_code("industry", "f62", "BK0475", limit=10)
            return points, name, await _count(db, "board_daily")

        points, name, count = _run(go())
        assert count == 2
        assert name == "银行"
        assert points == [
            {"trade_date": "2026-02-02", "value": 1.0},
            {"trade_date": "2026-02-03", "value": 1.0},
        ]

    def test_series_feeds_board_sum_daily(self):
        repo, _ = _repo()

        async def go():
            await repo.upsert_board_daily_series("industry", "f62", _series())
            await repo.upsert_board_daily_series("industry", "f62", _series(code="BK0477", name="酿酒"))
            return await repo.query_board_sum_daily("industry", "f62")

        assert _run(go()) == [
            {"trade_date": "2026-02-02", "value": 2.0},
            {"trade_date": "2026-02-03", "value": 4.0},
        ]


class FakeBoardSource:
    def __init__(self, fail=()):
        self.fail = set(fail)
        self.series_calls = []

    async def board_list_all(self, fs, fid):
        return [
            RankedItem(rank=1, code="BK0475", name="银行"),
            RankedItem(rank=2, code="BK0477", name="酿酒"),
            RankedItem(rank=3, code="BK0478", name="有色"),
        ]

    async def board_fundflow_daily_series(self, code, limit=200):
        self.series_calls.append((code, limit))
        if code in self.fail:
            raise PayloadError(f"empty klines for {code}")
        return _series(code=code, name="")


class TestBoardHistoryService:
    def test_fetches_when_db_short(self):
        from orderflow_service.services.board_history import BoardHistoryService
        repo, _ = _repo()
        source = FakeBoardSource()

        data = _run(BoardHistoryService(source, repo).board_daily("industry", "f62", "BK0475", limit=2))
        assert source.series_calls == [("BK0475", 2)]
        assert [p["trade_date"] for p in data["points"]] == ["2026-02-02", "2026-02-03"]
        assert "error" not in data

    def test_served_from_db_when_complete(self):
        from orderflow_service.services.board_history import BoardHistoryService
        repo, _ = _repo()
        source = FakeBoardSource()

        async def go():
            await repo.upsert_board_daily_series("industry", "f62", _series())
            return await BoardHistoryService(source, repo).board_daily("industry", "f62", "BK0475", limit=2)

        data = _run(go())
        assert source.series_calls == []
        assert data["name"] == "银行"

    def test_upstream_failure_reported(self):
        from orderflow_service.services.board_history import BoardHistoryService
        repo, _ = _repo()
        data = _run(BoardHistoryService(FakeBoardSource(fail={"BK0475"}), repo).board_daily(
            "industry", "f62", "BK0475", refresh=True,
        ))
        assert data["points"] == []
        assert "BK0475" in data["error"]

    def test_backfill_skips_failed_boards(self):
        from orderflow_service.services.board_history import BoardHistoryService
        repo, db = _repo()
        source = FakeBoardSource(fail={"BK0477"})

        async def go():
            report = await BoardHistoryService(source, repo).backfill("industry", "m:90+t:2", "f62", limit=2, pause=0)
            docs = await db["board_daily"].find({"code": "BK0478"}, {"_id": 0}).to_list(length=None)
            return report, docs, await _count(db, "board_daily")

        report, docs, count = _run(go())
        assert report.total == 3
        assert report.ok == ["BK0475", "BK0478"]
        assert len(report.failures) == 1 and report.failures[0].startswith("BK0477")
        assert count == 4
        # 序列本身不带名称时使用板块列表里的名称
        assert {d["name"] for d in docs} == {"有色"}
