"""
证券代码 → 东方财富 secid 映射

secid 形如 ``<market>.<code>``：
  - 1.xxxxxx  上交所（6 / 5 / 900 开头）
  - 0.xxxxxx  深交所；北交所在 push2 行情接口中同样使用 0.*
纯函数，无网络依赖。
"""

from typing import Iterable, List

_SH_PREFIXES = ("6", "5", "900")
_BJ_PREFIXES = ("92", "8", "4")

SHANGHAI = "1"
SHENZHEN = "0"
BEIJING = "0"


def code_only(symbol: str) -> str:
    """'600519.SH' → '600519'；纯代码原样返回"""
    sym = (symbol or "").strip()
    if not sym:
        raise ValueError("empty symbol")
    parts = sym.split(".")
    if len(parts) > 2 or not parts[0]:
        raise ValueError(f"invalid symbol: {symbol!r}")
    return parts[0]


def market_of_code(code: str) -> str:
    """根据 6 位代码推断所属交易所：SH / SZ / BJ"""
    if len(code) != 6 or not code.isdigit():
        raise ValueError(f"invalid A-share code: {code!r}")
    if code.startswith(_SH_PREFIXES):
        return "SH"
    if code.startswith(_BJ_PREFIXES):
        return "BJ"
    return "SZ"


def to_secid(symbol: str) -> str:
    """
    映射为东方财富 secid

    接受 '600519' / '600519.SH' / '000001.SZ' / '920152.BJ'。
    显式后缀优先于代码前缀推断。
    """
    sym = (symbol or "").strip()
    code = code_only(sym)
    if "." in sym:
        suffix = sym.split(".")[1].upper()
        if suffix not in ("SH", "SZ", "BJ"):
            raise ValueError(f"unknown market suffix: {suffix!r}")
        if not code.isdigit():
            raise ValueError(f"invalid A-share code: {code!r}")
    else:
        suffix = market_of_code(code)

    if suffix == "SH":
        return f"{SHANGHAI}.{code}"
    if suffix == "BJ":
        return f"{BEIJING}.{code}"
    return f"{SHENZHEN}.{code}"


def to_secids(symbols: Iterable[str]) -> List[str]:
    """批量映射；任一代码非法则整体失败"""
    return [to_secid(s) for s in symbols]
