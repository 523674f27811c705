"""
Layer 2 – 数据获取层
基于 FetchClient 封装东方财富 push2 / datacenter 接口，输出类型化的观测值

  - 单次请求：北向资金、个股资金流、排行榜首页、日度资金流、融资融券、板块日度资金流
  - 分时走势：主域名失败时换域名（板块）或改用 1 分钟 K 线（个股 / 指数）
  - 顺序翻页：板块完整列表
  - 限并发翻页求和：全市场某字段合计
"""

import asyncio
import logging
import math
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

from orderflow_service.exceptions import AggregationError, PayloadError, UpstreamError
from orderflow_service.layers.fetch import LIST_BACKOFF, FetchClient
from orderflow_service.models.observations import (
    AggregateValue,
    BoardFundflowDaily,
    FundflowDaily,
    FundflowRow,
    MarginDaily,
    NorthboundFlow,
    NorthboundLeg,
    RankedItem,
    TrendPoint,
)
from orderflow_service.session import cn_trade_date

logger = logging.getLogger(__name__)

PUSH2 = "https://push2.eastmoney.com"
PUSH2HIS = "https://push2his.eastmoney.com"
DATACENTER = "https://datacenter-web.eastmoney.com"

KAMT_URL = f"{PUSH2}/api/qt/kamt/get"
ULIST_URL = f"{PUSH2}/api/qt/ulist.np/get"
CLIST_URL = f"{PUSH2}/api/qt/clist/get"
FFLOW_KLINE_URL = f"{PUSH2}/api/qt/stock/fflow/kline/get"
MARGIN_URL = f"{DATACENTER}/api/data/v1/get"
TRENDS_PATH = "/api/qt/stock/trends2/get"
KLINE_1M_URL = f"{PUSH2HIS}/api/qt/stock/kline/get"

# clist 接口单页最多返回 100 行，与 pz 无关
PAGE_SIZE = 100
MAX_CONCURRENCY = 10


def extract_number(row: Dict[str, Any], field: str) -> float:
    """按字段名取数值；兼容 float / int / 数字字符串，'-'、空值、非有限值记为 0"""
    val = row.get(field)
    if val is None or isinstance(val, bool):
        return 0.0
    if isinstance(val, (int, float)):
        f = float(val)
    elif isinstance(val, str):
        s = val.strip()
        if not s or s in ("-", "--"):
            return 0.0
        try:
            f = float(s)
        except ValueError:
            return 0.0
    else:
        return 0.0
    return f if math.isfinite(f) else 0.0


def _diff_rows(data: Dict[str, Any]) -> List[Dict[str, Any]]:
    """data.diff 可能是数组，也可能是 {"0": {...}, "1": {...}}"""
    diff = data.get("diff") or []
    if isinstance(diff, dict):
        diff = [diff[k] for k in sorted(diff, key=lambda x: int(x) if str(x).isdigit() else 0)]
    return [row for row in diff if isinstance(row, dict)]


def _split_kline(line: str, min_parts: int) -> List[str]:
    """'date,v1,v2,...' 按位置拆分"""
    parts = line.split(",")
    if len(parts) < min_parts:
        raise PayloadError(f"unexpected kline format: {line!r}")
    return parts


def _trend_points(lines: Sequence[Any], price_index: int, day: Optional[str] = None) -> List[TrendPoint]:
    """'时间,v1,v2,...' 按位置取价格；格式不符或价格无法解析的行跳过"""
    out = []
    for line in lines:
        parts = str(line).split(",")
        if len(parts) <= price_index:
            continue
        if day is not None and not parts[0].startswith(day):
            continue
        try:
            price = float(parts[price_index])
        except ValueError:
            continue
        out.append(TrendPoint(ts=parts[0], price=price))
    return out


def _require_data(payload: Dict[str, Any], what: str) -> Dict[str, Any]:
    rc = payload.get("rc")
    data = payload.get("data")
    if rc != 0 or not isinstance(data, dict):
        raise PayloadError(f"{what}: unexpected response rc={rc}", rc=rc if isinstance(rc, int) else None)
    return data


class EastmoneySource:
    """东方财富数据源适配器"""

    def __init__(self, client: FetchClient):
        self._client = client

    # ── 北向资金 ──────────────────────────────────────────

    async def northbound(self) -> NorthboundFlow:
        """沪股通 / 深股通当日实时净流入"""
        payload = await self._client.fetch(KAMT_URL, {
            "fields1": "f1,f3",
            "fields2": "f51,f52,f53,f54,f55,f56,f57,f58,f59,f60,f61,f62,f63,f64,f65,f66,f67,f68",
        })
        data = _require_data(payload, "northbound")
        sh = data.get("hk2sh") or {}
        sz = data.get("hk2sz") or {}
        return NorthboundFlow(
            trade_date=str(sh.get("date2") or ""),
            sh=self._northbound_leg(sh),
            sz=self._northbound_leg(sz),
        )

    @staticmethod
    def _northbound_leg(raw: Dict[str, Any]) -> NorthboundLeg:
        return NorthboundLeg(
            day_net_amt_in=extract_number(raw, "dayNetAmtIn"),
            net_buy_amt=extract_number(raw, "netBuyAmt"),
            buy_amt=extract_number(raw, "buyAmt"),
            sell_amt=extract_number(raw, "sellAmt"),
            update_time=int(extract_number(raw, "updateTime")),
        )

    # ── 个股资金流 ────────────────────────────────────────

    async def fundflow_realtime(self, secids: Sequence[str]) -> List[FundflowRow]:
        """自选股当日资金流（f62 主力 / f66 超大 / f72 大 / f78 中 / f84 小）"""
        if not secids:
            return []
        payload = await self._client.fetch(ULIST_URL, {
            "fltt": "2",
            "secids": ",".join(secids),
            "fields": "f12,f14,f62,f66,f72,f78,f84",
        })
        data = _require_data(payload, "fundflow")
        return [
            FundflowRow(
                code=str(row.get("f12") or ""),
                name=str(row.get("f14") or ""),
                net_main=extract_number(row, "f62"),
                net_xl=extract_number(row, "f66"),
                net_l=extract_number(row, "f72"),
                net_m=extract_number(row, "f78"),
                net_s=extract_number(row, "f84"),
            )
            for row in _diff_rows(data)
        ]

    async def fundflow_daily_latest(self, secid: str) -> FundflowDaily:
        """个股最近一个交易日的资金流（盘中为当日部分数据）"""
        payload = await self._client.fetch(FFLOW_KLINE_URL, {
            "secid": secid,
            "klt": "101",
            "lmt": "1",
            "fields1": "f1,f2,f3,f7",
            "fields2": "f51,f52,f53,f54,f55,f56",
        })
        data = _require_data(payload, "fundflow daily")
        klines = data.get("klines") or []
        if not klines:
            raise PayloadError(f"fundflow daily: empty klines for {secid}")
        # date,main,small,medium,large,xl
        parts = _split_kline(str(klines[-1]), 6)
        nums = [extract_number({"v": p}, "v") for p in parts[1:6]]
        return FundflowDaily(
            trade_date=parts[0],
            secid=secid,
            code=str(data.get("code") or ""),
            name=str(data.get("name") or ""),
            net_main=nums[0],
            net_s=nums[1],
            net_m=nums[2],
            net_l=nums[3],
            net_xl=nums[4],
        )

    async def board_fundflow_daily_series(self, board_code: str, limit: int = 200) -> List[BoardFundflowDaily]:
        """板块日度资金流序列（secid = 90.BKxxxx），按日期升序"""
        if not board_code:
            raise ValueError("board_code is required")
        payload = await self._client.fetch(FFLOW_KLINE_URL, {
            "secid": f"90.{board_code}",
            "klt": "101",
            "lmt": str(limit if limit > 0 else 200),
            "fields1": "f1,f2,f3,f7",
            "fields2": "f51,f52,f53,f54,f55,f56",
        })
        data = _require_data(payload, "board fundflow daily")
        klines = data.get("klines") or []
        if not klines:
            raise PayloadError(f"board fundflow daily: empty klines for {board_code}")
        code = str(data.get("code") or board_code)
        name = str(data.get("name") or "")
        out = []
        for line in klines:
            parts = str(line).split(",")
            if len(parts) < 6:
                continue
            nums = [extract_number({"v": p}, "v") for p in parts[1:6]]
            out.append(BoardFundflowDaily(
                trade_date=parts[0], code=code, name=name,
                net_main=nums[0], net_s=nums[1], net_m=nums[2], net_l=nums[3], net_xl=nums[4],
            ))
        return out

    # ── 分时走势 ──────────────────────────────────────────

    async def _trends(self, base: str, secid: str) -> List[TrendPoint]:
        payload = await self._client.fetch(base + TRENDS_PATH, {
            "secid": secid,
            "ndays": "1",
            "iscr": "0",
            "iscca": "0",
            "fields1": "f1,f2,f3,f4,f5,f6,f7,f8,f9,f10,f11",
            "fields2": "f51,f52,f53,f54,f55,f56,f57,f58",
        })
        data = _require_data(payload, "trends")
        # 时间,价格,均价,...
        return _trend_points(data.get("trends") or [], 1)

    async def _trends_via_kline_1m(self, secid: str, day: str) -> List[TrendPoint]:
        payload = await self._client.fetch(KLINE_1M_URL, {
            "secid": secid,
            "klt": "1",
            "fqt": "1",
            "beg": "0",
            "end": "20500101",
            "fields1": "f1,f2,f3,f4,f5",
            "fields2": "f51,f52,f53,f54,f55,f56,f57,f58,f59,f60,f61",
        })
        data = _require_data(payload, "kline 1m")
        # 时间,开,收,高,低,...；只保留当日，取收盘价
        return _trend_points(data.get("klines") or [], 2, day=day)

    async def stock_trends(self, secid: str, *, today: Optional[str] = None) -> List[TrendPoint]:
        """个股 / 指数当日分时；trends2 失败时改用当日 1 分钟 K 线收盘价"""
        if not secid:
            raise ValueError("secid is required")
        try:
            return await self._trends(PUSH2, secid)
        except UpstreamError as exc:
            day = today or cn_trade_date(datetime.now(tz=timezone.utc))
            try:
                alt = await self._trends_via_kline_1m(secid, day)
            except UpstreamError as alt_exc:
                logger.debug(f"1 分钟 K 线兜底失败 secid={secid}: {alt_exc}")
                raise exc
            if not alt:
                raise exc
            logger.debug(f"trends2 失败，使用 1 分钟 K 线 secid={secid}: {exc}")
            return alt

    async def board_trends(self, board_code: str) -> List[TrendPoint]:
        """板块当日分时（secid = 90.BKxxxx）；push2his 失败时改用 push2"""
        if not board_code:
            raise ValueError("board_code is required")
        secid = f"90.{board_code}"
        try:
            return await self._trends(PUSH2HIS, secid)
        except UpstreamError as exc:
            logger.debug(f"push2his 分时失败，改用 push2 board={board_code}: {exc}")
        return await self._trends(PUSH2, secid)

    # ── 融资融券 ──────────────────────────────────────────

    async def margin_latest(self, code: str) -> MarginDaily:
        """按代码取最新一条融资融券明细"""
        payload = await self._client.fetch(MARGIN_URL, {
            "reportName": "RPTA_WEB_RZRQ_GGMX",
            "columns": "ALL",
            "filter": f'(SCODE="{code}")',
            "pageNumber": "1",
            "pageSize": "1",
            "sortColumns": "DATE",
            "sortTypes": "-1",
        })
        result = payload.get("result") or {}
        rows = result.get("data") or []
        if not payload.get("success") or not rows:
            raise PayloadError(f"no margin data for code={code}: {payload.get('message', '')}")
        r = rows[0]
        return MarginDaily(
            trade_date=str(r.get("DATE") or "")[:10],
            code=str(r.get("SCODE") or code),
            name=str(r.get("SECNAME") or ""),
            market=str(r.get("TRADE_MARKET") or ""),
            **{k.lower(): extract_number(r, k) for k in (
                "RZYE", "RZMRE", "RZCHE", "RZJME", "RQYE", "RQMCL", "RQCHL", "RQJMG", "RZRQYE",
            )},
        )

    # ── 排行榜 / 板块（clist） ────────────────────────────

    async def clist_page(self, fs: str, fid: str, pn: int, pz: int) -> Tuple[int, List[RankedItem]]:
        """单页 clist；fid 为动态字段名，按名称从每行取值"""
        payload = await self._client.fetch(CLIST_URL, {
            "pn": str(pn),
            "pz": str(pz),
            "po": "1",
            "np": "1",
            "fltt": "2",
            "invt": "2",
            "fid": fid,
            "fs": fs,
            "fields": f"f12,f14,f2,f3,{fid}",
        }, backoff_factor=LIST_BACKOFF)
        data = _require_data(payload, "clist")
        items = [
            RankedItem(
                rank=(pn - 1) * pz + i + 1,
                code=str(row.get("f12") or ""),
                name=str(row.get("f14") or ""),
                price=extract_number(row, "f2"),
                pct=extract_number(row, "f3"),
                value=extract_number(row, fid),
            )
            for i, row in enumerate(_diff_rows(data))
        ]
        total = int(extract_number(data, "total"))
        return total, items

    async def top_list(self, fs: str, fid: str, size: int) -> List[RankedItem]:
        """排行榜首页前 size 条（size 限制在 1-100）"""
        size = max(1, min(PAGE_SIZE, size))
        _, items = await self.clist_page(fs, fid, 1, size)
        return items

    async def board_top(self, fs: str, fid: str, top_size: int) -> List[RankedItem]:
        """板块榜单首页（不翻页）"""
        return await self.top_list(fs, fid, top_size)

    async def board_list_all(self, fs: str, fid: str) -> List[RankedItem]:
        """顺序翻页拉取全部板块，按页序拼接；任一页失败则整体失败"""
        total, first = await self.clist_page(fs, fid, 1, PAGE_SIZE)
        out = list(first)
        if total <= len(out):
            return out
        pages = math.ceil(total / PAGE_SIZE)
        for pn in range(2, pages + 1):
            _, items = await self.clist_page(fs, fid, pn, PAGE_SIZE)
            out.extend(items)
        return out

    # ── 全市场汇总 ────────────────────────────────────────

    async def all_stocks_sum(self, fs: str, fid: str, concurrency: int = 4) -> AggregateValue:
        """
        全市场 fid 字段合计

        首页之后的分页并发拉取，最多 concurrency（1-10）个请求同时在途。
        任一分页失败则整体失败（丢弃部分和）；返回前总会等待所有分页任务结束。
        """
        concurrency = max(1, min(MAX_CONCURRENCY, concurrency))
        total, first = await self.clist_page(fs, fid, 1, PAGE_SIZE)
        first_sum = sum(it.value for it in first)
        if total <= len(first):
            return AggregateValue(value=first_sum, total=total)

        pages = math.ceil(total / PAGE_SIZE)
        sem = asyncio.Semaphore(concurrency)
        failed = asyncio.Event()

        async def page_sum(pn: int) -> Optional[float]:
            async with sem:
                if failed.is_set():
                    return None
                try:
                    _, items = await self.clist_page(fs, fid, pn, PAGE_SIZE)
                except Exception:
                    failed.set()
                    raise
                return sum(it.value for it in items)

        tasks = [asyncio.ensure_future(page_sum(pn)) for pn in range(2, pages + 1)]
        try:
            results = await asyncio.gather(*tasks, return_exceptions=True)
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

        errors = [r for r in results if isinstance(r, BaseException)]
        if errors:
            raise AggregationError(
                f"allstocks {fid}: {len(errors)}/{len(tasks)} page(s) failed: {errors[0]!r}"
            ) from errors[0]

        value = first_sum + sum(r for r in results if r is not None)
        logger.debug(f"全市场汇总 fid={fid} total={total} pages={pages} value={value}")
        return AggregateValue(value=value, total=total)
