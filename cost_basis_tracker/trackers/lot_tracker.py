import uuid
from typing import Optional, Union

from cost_basis_tracker.clients.storage import LotQueries, TransactionLinkQueries, TransactionQueries
from cost_basis_tracker.config import JurisdictionSettings, TrackerSettings, VarianceToleranceSettings
from cost_basis_tracker.decimal_utils import ZERO
from cost_basis_tracker.exceptions import StrategyNotImplementedError
from cost_basis_tracker.lots.matcher import LotMatcher, LotMatchResult
from cost_basis_tracker.lots.strategies import get_strategy
from cost_basis_tracker.models import CostBasisMethod, GainType, LinkStatus
from cost_basis_tracker.trackers.base_tracker import BaseTracker


class LotTracker(BaseTracker):
    """Runs a cost basis calculation over the ledger and stores it under a fresh calculation id."""

    def __init__(self, transaction_queries: TransactionQueries, link_queries: TransactionLinkQueries,
                 lot_queries: LotQueries):
        self.lot_queries = lot_queries
        super().__init__(transaction_queries, link_queries)

    def _initialize(self):
        self.config = TrackerSettings()
        self.jurisdiction = JurisdictionSettings()
        self.variance_tolerance = VarianceToleranceSettings().override()
        self.matcher = LotMatcher()

        print("Initializing lot tracker:")
        print(f"  Method: {self.config.cost_basis_method.value}")
        print(f"  Same-asset transfer fees: {self.jurisdiction.same_asset_transfer_fee_policy.value}")
        if self.variance_tolerance is not None:
            print(f"  Variance tolerance override: warn {self.variance_tolerance.warn}%, "
                  f"error {self.variance_tolerance.error}%")

    def run(self, method: Optional[Union[CostBasisMethod, str]] = None) -> Optional[LotMatchResult]:
        """
        Calculate lots, disposals and transfers for every transaction in the ledger.

        Args:
            method: Overrides the configured cost basis method

        Returns:
            The match result, or None when the calculation failed and nothing was saved
        """
        self._banner("Calculating Cost Basis")

        try:
            strategy = get_strategy(method or self.config.cost_basis_method)
        except (StrategyNotImplementedError, ValueError) as e:
            self._log(f"Cost basis calculation failed: {e}")
            return None

        txs = self._timed_call("transactions", self.transaction_queries.get_transactions)
        links = self._timed_call("confirmed links", self.link_queries.get_links, LinkStatus.CONFIRMED)
        if not txs:
            print("ℹ️  No transactions to process")
            return None

        calculation_id = str(uuid.uuid4())
        matched = self.matcher.match(
            txs,
            links,
            calculation_id,
            strategy,
            self.jurisdiction.same_asset_transfer_fee_policy,
            self.variance_tolerance,
        )
        if matched.is_err:
            self._log(f"Cost basis calculation failed ({type(matched.error).__name__}): {matched.error}")
            return None
        result = matched.value

        for warning in result.warnings:
            print(f"  Warning: {warning.describe()}")

        for asset in result.asset_results:
            gain = sum((d.gain_loss for d in asset.disposals), ZERO)
            long_term = sum(1 for d in asset.disposals if d.gain_type == GainType.LONG_TERM)
            open_quantity = sum((lot.remaining_quantity for lot in asset.lots), ZERO)
            print(f"  {asset.asset_symbol}: {len(asset.lots)} lots, {len(asset.disposals)} disposals "
                  f"({long_term} long-term), {len(asset.lot_transfers)} transfers, "
                  f"gain/loss ${gain:.2f}, open {open_quantity:.8f}")

        self._persist(
            self.lot_queries.save_calculation,
            calculation_id,
            result.lots,
            result.disposals,
            result.lot_transfers,
        )
        print(f"\n✓ Saved calculation {calculation_id}: {result.total_lots_created} lots, "
              f"{result.total_disposals_processed} disposals, {result.total_transfers_processed} transfers")
        return result
