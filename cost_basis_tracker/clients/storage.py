"""
Storage interfaces consumed by the trackers.
All stores implement these so the ledger backend can be swapped.
"""

from abc import ABC, abstractmethod
from typing import List, Optional

from cost_basis_tracker.models import (
    AcquisitionLot,
    LinkStatus,
    LotDisposal,
    LotTransfer,
    Transaction,
    TransactionLink,
)


class TransactionQueries(ABC):
    """Read and update normalized transactions."""

    @abstractmethod
    def get_transactions(self, source: Optional[str] = None) -> List[Transaction]:
        """
        Load transactions, optionally only those imported from one source.

        Args:
            source: Source name such as 'kraken' or 'bitcoin'

        Returns:
            Transactions ordered by timestamp, then id
        """
        pass

    @abstractmethod
    def get_transactions_needing_prices(self) -> List[Transaction]:
        """Transactions with at least one non-fiat movement or fee lacking a price."""
        pass

    @abstractmethod
    def update_movement_prices(self, tx: Transaction) -> None:
        """
        Persist the movement and fee prices of a transaction.

        Raises:
            KeyError: If the transaction does not exist
        """
        pass


class TransactionLinkQueries(ABC):
    """Read and persist transaction links."""

    @abstractmethod
    def get_links(self, status: Optional[LinkStatus] = None) -> List[TransactionLink]:
        pass

    @abstractmethod
    def save_links(self, links: List[TransactionLink]) -> int:
        """
        Insert or replace links by id.

        Returns:
            int: Number of links written
        """
        pass


class LotQueries(ABC):
    """Persist the output of one cost basis calculation."""

    @abstractmethod
    def save_calculation(self, calculation_id: str, lots: List[AcquisitionLot],
                         disposals: List[LotDisposal], transfers: List[LotTransfer]) -> None:
        """
        Store lots, disposals and lot transfers under a calculation id.

        A calculation is written as a whole; it never merges with earlier runs.
        """
        pass
