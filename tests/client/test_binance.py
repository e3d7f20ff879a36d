import pytest
from unittest.mock import AsyncMock, MagicMock

from market_pulse.client.binance import BinanceClient, BinanceAPIError


def mock_session_with(data, status=200):
    mock_response = MagicMock()
    mock_response.status = status
    mock_response.json = AsyncMock(return_value=data)

    mock_session = MagicMock()
    mock_session.get = AsyncMock(return_value=mock_response)
    return mock_session


def test_binance_client_init():
    client = BinanceClient()
    assert client.base_url == "https://fapi.binance.com"
    assert client.quote_asset == "USDT"


def test_binance_client_custom_url():
    client = BinanceClient(base_url="https://custom.api.com")
    assert client.base_url == "https://custom.api.com"


async def test_request_requires_session():
    client = BinanceClient()
    with pytest.raises(RuntimeError):
        await client._request("GET", "/fapi/v1/ping")


async def test_request_get():
    client = BinanceClient()
    client._session = mock_session_with({"symbol": "BTCUSDT"})

    result = await client._request("GET", "/fapi/v1/ticker/price", {"symbol": "BTCUSDT"})
    assert result == {"symbol": "BTCUSDT"}
    client._session.get.assert_called_once()


async def test_request_handles_error():
    client = BinanceClient()

    mock_response = MagicMock()
    mock_response.status = 400
    mock_response.text = AsyncMock(return_value='{"code": -1121, "msg": "Invalid symbol"}')

    mock_session = MagicMock()
    mock_session.get = AsyncMock(return_value=mock_response)
    client._session = mock_session

    with pytest.raises(BinanceAPIError, match="Invalid symbol") as exc_info:
        await client._request("GET", "/fapi/v1/ticker/price", {"symbol": "INVALID"})
    assert exc_info.value.code == -1121


async def test_request_handles_non_json_error():
    client = BinanceClient()

    mock_response = MagicMock()
    mock_response.status = 502
    mock_response.text = AsyncMock(return_value="Bad Gateway")

    mock_session = MagicMock()
    mock_session.get = AsyncMock(return_value=mock_response)
    client._session = mock_session

    with pytest.raises(BinanceAPIError) as exc_info:
        await client._request("GET", "/fapi/v1/ticker/24hr")
    assert exc_info.value.code == -1


async def test_get_tickers_24h_skips_malformed():
    from market_pulse.client.models import Ticker24h

    client = BinanceClient()
    client._session = mock_session_with(
        [
            {
                "symbol": "BTCUSDT",
                "lastPrice": "66000.0",
                "priceChangePercent": "1.5",
                "highPrice": "67000.0",
                "lowPrice": "64000.0",
                "volume": "1000.0",
                "quoteVolume": "66000000.0",
                "closeTime": 1704067200000,
            },
            {"symbol": "BROKENUSDT", "lastPrice": "abc"},
        ]
    )

    tickers = await client.get_tickers_24h()
    assert len(tickers) == 1
    assert isinstance(tickers[0], Ticker24h)
    assert tickers[0].last_price == 66000.0
    assert tickers[0].quote_volume == 66000000.0


async def test_get_klines():
    from market_pulse.client.models import Kline

    client = BinanceClient()
    client._session = mock_session_with(
        [[1704067200000, "42000.0", "42500.0", "41800.0", "42300.0", "1000.0", 1704070799999]]
    )

    klines = await client.get_klines("BTCUSDT", "1h", limit=1)
    assert len(klines) == 1
    assert isinstance(klines[0], Kline)
    assert klines[0].high == 42500.0
    assert klines[0].close_time == 1704070799999


async def test_get_funding_rates():
    client = BinanceClient()
    client._session = mock_session_with(
        [
            {"symbol": "BTCUSDT", "lastFundingRate": "0.0001", "nextFundingTime": 1704096000000},
            {"symbol": "DELISTEDUSDT", "lastFundingRate": "", "nextFundingTime": 0},
        ]
    )

    rates = await client.get_funding_rates()
    assert [r.symbol for r in rates] == ["BTCUSDT"]
    assert rates[0].funding_rate == 0.0001


async def test_get_tradable_symbols():
    client = BinanceClient()
    client._session = mock_session_with(
        {
            "symbols": [
                {
                    "symbol": "BTCUSDT",
                    "status": "TRADING",
                    "contractType": "PERPETUAL",
                    "quoteAsset": "USDT",
                },
                {
                    "symbol": "BTCUSDT_240628",
                    "status": "TRADING",
                    "contractType": "CURRENT_QUARTER",
                    "quoteAsset": "USDT",
                },
                {
                    "symbol": "OLDUSDT",
                    "status": "SETTLING",
                    "contractType": "PERPETUAL",
                    "quoteAsset": "USDT",
                },
                {
                    "symbol": "ETHUSDC",
                    "status": "TRADING",
                    "contractType": "PERPETUAL",
                    "quoteAsset": "USDC",
                },
            ]
        }
    )

    assert await client.get_tradable_symbols() == ["BTCUSDT"]


async def test_context_manager_closes_session():
    async with BinanceClient() as client:
        assert client._session is not None
    assert client._session is None
