from typing import Optional

from cost_basis_tracker.config import MatchingSettings
from cost_basis_tracker.decimal_utils import HUNDRED, format_pct
from cost_basis_tracker.linking.linker import LinkingResult, TransactionLinker
from cost_basis_tracker.trackers.base_tracker import BaseTracker


class LinkingTracker(BaseTracker):
    """Links withdrawals to deposits across every imported source and stores the new links."""

    def _initialize(self):
        self.config = MatchingSettings()
        self.linker = TransactionLinker(self.config)

        print("Initializing linking tracker:")
        print(f"  Timing window: {self.config.max_timing_window_hours}h")
        print(f"  Min confidence: {self.config.min_confidence_score}")
        print(f"  Auto-confirm at: {self.config.auto_confirm_threshold}")

    def run(self) -> Optional[LinkingResult]:
        """
        Find transfer links and save the ones not already in the ledger.

        Links already stored for the same source, target and asset are kept
        as they are, so reviewed links survive a rerun.

        Returns:
            The linking result, or None when linking failed
        """
        self._banner("Linking Transactions")

        txs = self._timed_call("transactions", self.transaction_queries.get_transactions)
        if not txs:
            print("ℹ️  No transactions to link")
            return None

        linking = self.linker.link_transactions(txs)
        if linking.is_err:
            self._log(f"Linking failed: {linking.error}")
            return None
        result = linking.value

        for match, reason in result.rejected_matches:
            print(f"  Warning: rejected match {match.source.id} → {match.target.id} "
                  f"({match.source.asset_symbol}): {reason}")

        existing = {
            (link.source_transaction_id, link.target_transaction_id, link.asset_symbol)
            for link in self.link_queries.get_links()
        }
        new_links = [
            link for link in result.links
            if (link.source_transaction_id, link.target_transaction_id, link.asset_symbol) not in existing
        ]

        for link in new_links:
            print(f"  ✓ {link.status.value}: tx {link.source_transaction_id} → tx {link.target_transaction_id} "
                  f"{link.asset_symbol} (confidence {format_pct(link.confidence_score * HUNDRED)}%)")

        if new_links:
            saved = self._persist(self.link_queries.save_links, new_links)
            print(f"\n✓ Saved {saved} new links "
                  f"({len(result.confirmed_links)} confirmed, {len(result.suggested_links)} suggested this run)")
        else:
            print("ℹ️  No new links found")

        print(f"  Sources: {result.total_source_transactions} "
              f"(unmatched {result.unmatched_source_count}), "
              f"targets: {result.total_target_transactions} "
              f"(unmatched {result.unmatched_target_count})")
        return result
