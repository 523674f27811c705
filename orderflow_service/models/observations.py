"""
采集数据模型

CategoryKey 标识一个数据序列；其余模型为各类别单次采集的观测值。
"""

from typing import NamedTuple

from pydantic import BaseModel

# ── 类别 ──────────────────────────────────────────────────
NORTHBOUND = "northbound"
FUNDFLOW = "fundflow"
TOPLIST = "toplist"
BOARD = "board"
AGGREGATE = "aggregate"


class CategoryKey(NamedTuple):
    """(kind, discriminator)，如 ("board", "industry:f62")"""

    kind: str
    discriminator: str

    def __str__(self) -> str:
        return f"{self.kind}/{self.discriminator}"


# ── 观测值 ────────────────────────────────────────────────

class NorthboundLeg(BaseModel):
    day_net_amt_in: float = 0.0
    net_buy_amt: float = 0.0
    buy_amt: float = 0.0
    sell_amt: float = 0.0
    update_time: int = 0


class NorthboundFlow(BaseModel):
    """北向资金：沪股通 / 深股通两条腿"""

    trade_date: str = ""
    sh: NorthboundLeg = NorthboundLeg()
    sz: NorthboundLeg = NorthboundLeg()


class FundflowRow(BaseModel):
    """个股当日资金流向（主力 / 超大 / 大 / 中 / 小单净额）"""

    code: str
    name: str = ""
    net_main: float = 0.0
    net_xl: float = 0.0
    net_l: float = 0.0
    net_m: float = 0.0
    net_s: float = 0.0


class FundflowDaily(BaseModel):
    trade_date: str
    secid: str
    code: str = ""
    name: str = ""
    net_main: float = 0.0
    net_xl: float = 0.0
    net_l: float = 0.0
    net_m: float = 0.0
    net_s: float = 0.0


class MarginDaily(BaseModel):
    """融资融券日度明细"""

    trade_date: str
    code: str
    name: str = ""
    market: str = ""
    rzye: float = 0.0
    rzmre: float = 0.0
    rzche: float = 0.0
    rzjme: float = 0.0
    rqye: float = 0.0
    rqmcl: float = 0.0
    rqchl: float = 0.0
    rqjmg: float = 0.0
    rzrqye: float = 0.0


class RankedItem(BaseModel):
    rank: int
    code: str
    name: str = ""
    price: float = 0.0
    pct: float = 0.0
    value: float = 0.0


class AggregateValue(BaseModel):
    """全市场汇总值；total 为参与求和的行数"""

    value: float
    total: int = 0


class BoardFundflowDaily(BaseModel):
    """板块日度资金流（主力 / 超大 / 大 / 中 / 小单净额）"""

    trade_date: str
    code: str
    name: str = ""
    net_main: float = 0.0
    net_xl: float = 0.0
    net_l: float = 0.0
    net_m: float = 0.0
    net_s: float = 0.0


class TrendPoint(BaseModel):
    ts: str
    price: float
