from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, List, Optional, Tuple
import time

import requests
import backoff

from cost_basis_tracker.clients.price import PriceClient
from cost_basis_tracker.config import CoinGeckoSettings
from cost_basis_tracker.exceptions import PriceNotAvailableError

# CoinGecko addresses coins by id, not ticker
COIN_IDS: Dict[str, str] = {
    "BTC": "bitcoin",
    "ETH": "ethereum",
    "SOL": "solana",
    "ADA": "cardano",
    "DOT": "polkadot",
    "TAO": "bittensor",
    "XRP": "ripple",
    "LTC": "litecoin",
    "DOGE": "dogecoin",
    "AVAX": "avalanche-2",
    "MATIC": "matic-network",
    "ATOM": "cosmos",
    "LINK": "chainlink",
    "INJ": "injective-protocol",
    "KSM": "kusama",
    "USDT": "tether",
    "USDC": "usd-coin",
    "DAI": "dai",
}

MIN_SECONDS_BETWEEN_CALLS = 2.5


class CoinGeckoPriceClient(PriceClient):
    """Client for CoinGecko historical and spot prices."""

    granularity = "hour"

    def __init__(self, settings: Optional[CoinGeckoSettings] = None, session: Optional[requests.Session] = None):
        self.config = settings or CoinGeckoSettings()
        self.base_url = self.config.base_url.rstrip("/")
        self.headers = {"Accept": "application/json"}
        if self.config.api_key:
            self.headers["x-cg-demo-api-key"] = self.config.api_key
        self.session = session or requests.Session()
        self._last_call_time = None

    @property
    def name(self):
        return "CoinGecko API"

    def _coin_id(self, symbol: str) -> str:
        coin_id = COIN_IDS.get(symbol.upper())
        if not coin_id:
            raise PriceNotAvailableError(f"CoinGecko coin id unknown for {symbol}")
        return coin_id

    @backoff.on_exception(
        backoff.expo,
        requests.exceptions.HTTPError,
        max_tries=4,
        giveup=lambda e: e.response is None or e.response.status_code != 429,
        factor=6,
        on_backoff=lambda details: print(
            f"  Warning: CoinGecko rate limited (attempt {details['tries']}), retrying in {details['wait']:.1f}s..."
        )
    )
    def _get(self, path: str, params: dict) -> dict:
        if self._last_call_time and time.time() - self._last_call_time < MIN_SECONDS_BETWEEN_CALLS:
            time.sleep(MIN_SECONDS_BETWEEN_CALLS)  # Free tier allows ~30 req/min
        response = self.session.get(f"{self.base_url}{path}", headers=self.headers, params=params)
        self._last_call_time = time.time()
        response.raise_for_status()
        return response.json()

    def get_prices_in_range(self, symbol: str, start_time: int, end_time: int) -> List[Tuple[int, Decimal]]:
        """
        Fetch USD prices between two unix timestamps.

        CoinGecko picks the resolution from the range length: 5 minutely
        within a day, hourly up to 90 days, daily beyond.
        """
        try:
            data = self._get(
                f"/coins/{self._coin_id(symbol)}/market_chart/range",
                {"vs_currency": "usd", "from": start_time, "to": end_time},
            )
            return [(int(point[0] / 1000), Decimal(str(point[1]))) for point in data["prices"]]
        except requests.RequestException as e:
            raise PriceNotAvailableError(f"CoinGecko API error: {e}")
        except (KeyError, TypeError, ValueError, IndexError) as e:
            raise PriceNotAvailableError(f"Unexpected response format: {e}")

    def get_price_at_timestamp(self, symbol: str, timestamp: int) -> Decimal:
        """
        Get the USD price closest to a timestamp.

        Searches a ±1 hour window and picks the closest point.

        Raises:
            PriceNotAvailableError: If no price exists within the window
        """
        buffer = 3600
        prices = self.get_prices_in_range(symbol, timestamp - buffer, timestamp + buffer)
        if not prices:
            raise PriceNotAvailableError(
                f"No price data available for {symbol} within ±1 hour of "
                f"{datetime.fromtimestamp(timestamp, tz=timezone.utc)}"
            )
        _, price = min(prices, key=lambda p: abs(p[0] - timestamp))
        return price

    def get_current_price(self, symbol: str) -> Decimal:
        coin_id = self._coin_id(symbol)
        try:
            data = self._get("/simple/price", {"ids": coin_id, "vs_currencies": "usd"})
            return Decimal(str(data[coin_id]["usd"]))
        except requests.RequestException as e:
            raise PriceNotAvailableError(f"CoinGecko API error: {e}")
        except (KeyError, TypeError, ValueError) as e:
            raise PriceNotAvailableError(f"Unexpected response format: {e}")
