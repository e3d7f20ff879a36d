"""Binance API 数据模型"""

from dataclasses import dataclass


@dataclass
class Ticker24h:
    """24 小时行情统计"""

    symbol: str
    last_price: float
    price_change_percent: float
    high_price: float
    low_price: float
    volume: float
    quote_volume: float
    close_time: int


@dataclass
class Kline:
    """K 线数据"""

    open_time: int
    open: float
    high: float
    low: float
    close: float
    volume: float
    close_time: int


@dataclass
class FundingRate:
    """资金费率数据"""

    symbol: str
    funding_rate: float
    funding_time: int
