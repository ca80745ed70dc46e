from typing import List, Optional

from cost_basis_tracker.clients.price import PriceClient
from cost_basis_tracker.clients.storage import TransactionLinkQueries, TransactionQueries
from cost_basis_tracker.lots.lot_utils import find_transactions_without_prices
from cost_basis_tracker.models import LinkStatus, Transaction
from cost_basis_tracker.pricing.inference import (
    apply_provider_prices,
    enrich_fee_prices_from_movements,
    infer_multi_pass,
    propagate_prices_across_links,
)
from cost_basis_tracker.trackers.base_tracker import BaseTracker


class PriceTracker(BaseTracker):
    """
    Prices every movement it can and writes the prices back to the ledger.

    Order of work:
    1. Trade inference (execution prices, ratio derivation, swap recalculation)
    2. Propagation across confirmed links, then trade inference again so
       swaps downstream of a transfer can use the propagated price
    3. Optional market prices for whatever is still unpriced
    4. Fee prices from same-asset movements
    """

    def __init__(self, transaction_queries: TransactionQueries, link_queries: TransactionLinkQueries,
                 price_client: Optional[PriceClient] = None):
        self.price_client = price_client
        super().__init__(transaction_queries, link_queries)

    def _initialize(self):
        print("Initializing price tracker:")
        if self.price_client is not None:
            print(f"  Price provider: {self.price_client.name}")
        else:
            print("  Price provider: none (inference only)")

    def run(self) -> List[Transaction]:
        """
        Run price enrichment over the whole ledger.

        Each changed transaction is persisted on its own; a failed write is
        reported and counted without stopping the rest.

        Returns:
            Transactions whose prices were updated
        """
        self._banner("Enriching Prices")

        original = self._timed_call("transactions", self.transaction_queries.get_transactions)
        if not original:
            print("ℹ️  No transactions to price")
            return []
        links = self._timed_call("confirmed links", self.link_queries.get_links, LinkStatus.CONFIRMED)

        inferred = infer_multi_pass(original)
        print(f"  Trade inference priced {len(inferred.modified_ids)} transactions")

        propagated = propagate_prices_across_links(links, inferred.transactions)
        print(f"  Link propagation priced {len(propagated.modified_ids)} transactions")
        txs = infer_multi_pass(propagated.transactions).transactions

        if self.price_client is not None:
            txs = self._timed_call(
                f"{self.price_client.name} prices", apply_provider_prices, txs, self.price_client
            ).transactions

        txs = enrich_fee_prices_from_movements(txs)

        before = {tx.id: tx for tx in original}
        changed = [tx for tx in txs if tx != before[tx.id]]

        updated: List[Transaction] = []
        failures = 0
        for tx in changed:
            try:
                self._persist(self.transaction_queries.update_movement_prices, tx)
                updated.append(tx)
            except (KeyError, OSError) as e:
                failures += 1
                print(f"  Warning: could not save prices for tx {tx.id}: {e}")

        if updated:
            print(f"\n✓ Updated prices on {len(updated)} transactions")
        else:
            print("ℹ️  No new prices found")
        if failures:
            print(f"  Warning: {failures} transactions failed to save")

        unpriced = find_transactions_without_prices(txs)
        if unpriced:
            ids = ", ".join(str(tx.id) for tx in unpriced)
            print(f"  Warning: {len(unpriced)} transactions still have unpriced movements: {ids}")

        return updated
