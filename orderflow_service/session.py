"""
A 股交易时段判断

只按工作日 + 连续竞价时段（09:30-11:30, 13:00-15:00，Asia/Shanghai）判断，
不考虑法定节假日。
"""

from datetime import datetime, time
from zoneinfo import ZoneInfo

CN_TZ = ZoneInfo("Asia/Shanghai")

_SESSIONS = (
    (time(9, 30), time(11, 30)),
    (time(13, 0), time(15, 0)),
)


def is_cn_trading_day(moment: datetime) -> bool:
    """Asia/Shanghai 本地日期是否为工作日"""
    if moment.tzinfo is not None:
        moment = moment.astimezone(CN_TZ)
    return moment.weekday() < 5


def is_cn_trading_time(moment: datetime) -> bool:
    """判断给定时刻是否处于 A 股连续竞价时段（两端均包含）"""
    if moment.tzinfo is not None:
        moment = moment.astimezone(CN_TZ)
    if not is_cn_trading_day(moment):
        return False
    hm = time(moment.hour, moment.minute)
    return any(start <= hm <= end for start, end in _SESSIONS)


def cn_trade_date(moment: datetime) -> str:
    """返回 Asia/Shanghai 本地日期 YYYY-MM-DD"""
    if moment.tzinfo is not None:
        moment = moment.astimezone(CN_TZ)
    return moment.strftime("%Y-%m-%d")
