"""Binance USDⓈ-M Futures REST 客户端"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any

import aiohttp

from market_pulse.client.models import FundingRate, Kline, Ticker24h

logger = logging.getLogger(__name__)


class BinanceAPIError(Exception):
    """Binance API 错误"""

    def __init__(self, code: int, message: str):
        self.code = code
        self.message = message
        super().__init__(message)


@dataclass
class BinanceClient:
    """Binance Futures API 客户端"""

    base_url: str = "https://fapi.binance.com"
    quote_asset: str = "USDT"
    timeout_seconds: float = 10
    _session: aiohttp.ClientSession | None = field(default=None, repr=False)

    async def _request(
        self,
        method: str,
        endpoint: str,
        params: dict[str, Any] | None = None,
    ) -> Any:
        """发送 HTTP 请求"""
        if self._session is None:
            raise RuntimeError("Session not initialized. Call init() or use 'async with'.")

        url = f"{self.base_url}{endpoint}"

        if method == "GET":
            response = await self._session.get(url, params=params)
        else:
            response = await self._session.post(url, data=params)

        if response.status != 200:
            error_text = await response.text()
            try:
                error_data = json.loads(error_text)
            except json.JSONDecodeError:
                raise BinanceAPIError(-1, error_text)
            raise BinanceAPIError(error_data.get("code", -1), error_data.get("msg", error_text))

        return await response.json()

    async def init(self) -> None:
        if self._session is None:
            timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
            self._session = aiohttp.ClientSession(timeout=timeout)

    async def close(self) -> None:
        if self._session:
            await self._session.close()
            self._session = None

    async def __aenter__(self) -> "BinanceClient":
        await self.init()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    async def get_tickers_24h(self) -> list[Ticker24h]:
        """全市场 24h 行情，无法解析的记录跳过"""
        data = await self._request("GET", "/fapi/v1/ticker/24hr")
        tickers = []
        for d in data:
            try:
                tickers.append(
                    Ticker24h(
                        symbol=d["symbol"],
                        last_price=float(d["lastPrice"]),
                        price_change_percent=float(d["priceChangePercent"]),
                        high_price=float(d["highPrice"]),
                        low_price=float(d["lowPrice"]),
                        volume=float(d["volume"]),
                        quote_volume=float(d["quoteVolume"]),
                        close_time=int(d["closeTime"]),
                    )
                )
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skip malformed ticker {d.get('symbol', '?')}: {e}")
        return tickers

    async def get_klines(
        self,
        symbol: str,
        interval: str,
        limit: int = 500,
    ) -> list[Kline]:
        """获取 K 线数据"""
        data = await self._request(
            "GET",
            "/fapi/v1/klines",
            {"symbol": symbol, "interval": interval, "limit": limit},
        )
        return [
            Kline(
                open_time=int(k[0]),
                open=float(k[1]),
                high=float(k[2]),
                low=float(k[3]),
                close=float(k[4]),
                volume=float(k[5]),
                close_time=int(k[6]),
            )
            for k in data
        ]

    async def get_funding_rates(self) -> list[FundingRate]:
        """全市场当前资金费率"""
        data = await self._request("GET", "/fapi/v1/premiumIndex")
        return [
            FundingRate(
                symbol=d["symbol"],
                funding_rate=float(d["lastFundingRate"]),
                funding_time=int(d["nextFundingTime"]),
            )
            for d in data
            if d.get("lastFundingRate") not in (None, "")
        ]

    async def get_tradable_symbols(self) -> list[str]:
        """可交易的永续合约（按计价币种过滤）"""
        data = await self._request("GET", "/fapi/v1/exchangeInfo")
        return [
            s["symbol"]
            for s in data.get("symbols", [])
            if s.get("status") == "TRADING"
            and s.get("contractType") == "PERPETUAL"
            and s.get("quoteAsset") == self.quote_asset
        ]
