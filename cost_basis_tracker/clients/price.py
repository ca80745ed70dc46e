from abc import ABC, abstractmethod
from decimal import Decimal
from typing import List, Optional, Tuple


class PriceClient(ABC):
    """Abstract interface for cryptocurrency price clients."""

    # Resolution of historical prices, e.g. 'hour' or 'day'
    granularity: Optional[str] = None

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the name of the client for logging purposes."""
        pass

    @abstractmethod
    def get_price_at_timestamp(self, symbol: str, timestamp: int) -> Decimal:
        """
        Get the price of a cryptocurrency at a specific timestamp.

        Args:
            symbol: The cryptocurrency symbol (e.g., 'BTC')
            timestamp: Unix timestamp

        Returns:
            Decimal: Price in USD

        Raises:
            PriceNotAvailableError: If price cannot be retrieved
        """
        pass

    @abstractmethod
    def get_current_price(self, symbol: str) -> Decimal:
        """
        Get the current price of a cryptocurrency.

        Args:
            symbol: The cryptocurrency symbol

        Returns:
            Decimal: Current price in USD

        Raises:
            PriceNotAvailableError: If price cannot be retrieved
        """
        pass

    @abstractmethod
    def get_prices_in_range(self, symbol: str, start_time: int, end_time: int) -> List[Tuple[int, Decimal]]:
        """
        Get prices for a symbol within a time range.

        Args:
            symbol: The cryptocurrency symbol
            start_time: Unix start timestamp (inclusive)
            end_time: Unix end timestamp (inclusive)

        Returns:
            List of (unix timestamp, USD price) tuples in ascending time order

        Raises:
            PriceNotAvailableError: If price cannot be retrieved
        """
        pass
