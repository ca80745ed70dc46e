import json
import os
import tempfile
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from cost_basis_tracker.assets import is_fiat
from cost_basis_tracker.clients.storage import LotQueries, TransactionLinkQueries, TransactionQueries
from cost_basis_tracker.models import (
    AcquisitionLot,
    LinkStatus,
    LotDisposal,
    LotTransfer,
    Transaction,
    TransactionLink,
)


class JsonLedgerStore(TransactionQueries, TransactionLinkQueries, LotQueries):
    """
    Ledger kept in a single JSON file.

    Layout::

        {
          "transactions": [...],
          "links": [...],
          "calculations": {"<calculation id>": {"lots": [...], "disposals": [...], "transfers": [...]}}
        }

    Decimals are stored as strings. Every write rewrites the file atomically.
    """

    def __init__(self, path: str):
        self.path = path
        self._transactions: Dict[int, Transaction] = {}
        self._links: Dict[str, TransactionLink] = {}
        self._calculations: Dict[str, Dict[str, Any]] = {}
        self._load()

    def _load(self):
        if not os.path.exists(self.path):
            return
        with open(self.path, "r", encoding="utf-8") as f:
            data = json.load(f)
        for raw in data.get("transactions", []):
            tx = Transaction.from_dict(raw)
            self._transactions[tx.id] = tx
        for raw in data.get("links", []):
            link = TransactionLink.from_dict(raw)
            self._links[link.id] = link
        self._calculations = dict(data.get("calculations", {}))

    def _write(self):
        data = {
            "transactions": [tx.to_dict() for tx in self._ordered_transactions()],
            "links": [link.to_dict() for link in self._links.values()],
            "calculations": self._calculations,
        }
        directory = os.path.dirname(os.path.abspath(self.path))
        fd, tmp_path = tempfile.mkstemp(dir=directory, suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
            os.replace(tmp_path, self.path)
        except OSError:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise

    def _ordered_transactions(self) -> List[Transaction]:
        return sorted(self._transactions.values(), key=lambda tx: (tx.timestamp, tx.id))

    # -------------------------------------------------------------------------
    # Transactions
    # -------------------------------------------------------------------------

    def add_transactions(self, txs: List[Transaction]) -> int:
        """Insert or replace transactions by id."""
        for tx in txs:
            self._transactions[tx.id] = tx
        self._write()
        return len(txs)

    def get_transactions(self, source: Optional[str] = None) -> List[Transaction]:
        txs = self._ordered_transactions()
        if source:
            txs = [tx for tx in txs if tx.source.lower() == source.lower()]
        return txs

    def get_transactions_needing_prices(self) -> List[Transaction]:
        def needs_price(tx: Transaction) -> bool:
            for movement in tx.inflows + tx.outflows + tx.fees:
                if movement.price_at_tx_time is None and not is_fiat(movement.asset_symbol):
                    return True
            return False

        return [tx for tx in self._ordered_transactions() if needs_price(tx)]

    def update_movement_prices(self, tx: Transaction) -> None:
        existing = self._transactions[tx.id]
        self._transactions[tx.id] = replace(existing, inflows=tx.inflows, outflows=tx.outflows, fees=tx.fees)
        self._write()

    # -------------------------------------------------------------------------
    # Links
    # -------------------------------------------------------------------------

    def get_links(self, status: Optional[LinkStatus] = None) -> List[TransactionLink]:
        links = list(self._links.values())
        if status is not None:
            links = [link for link in links if link.status == status]
        return links

    def save_links(self, links: List[TransactionLink]) -> int:
        for link in links:
            self._links[link.id] = link
        self._write()
        return len(links)

    # -------------------------------------------------------------------------
    # Calculations
    # -------------------------------------------------------------------------

    def save_calculation(self, calculation_id: str, lots: List[AcquisitionLot],
                         disposals: List[LotDisposal], transfers: List[LotTransfer]) -> None:
        if calculation_id in self._calculations:
            raise ValueError(f"Calculation {calculation_id} already exists")
        self._calculations[calculation_id] = {
            "created_at": datetime.now(timezone.utc).isoformat(),
            "lots": [lot.to_dict() for lot in lots],
            "disposals": [d.to_dict() for d in disposals],
            "transfers": [t.to_dict() for t in transfers],
        }
        self._write()

    def get_calculation(self, calculation_id: str) -> Optional[Dict[str, Any]]:
        """Raw stored records of a calculation, or None."""
        return self._calculations.get(calculation_id)
