import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, List, Optional, Set, Tuple

from cost_basis_tracker.assets import is_fiat
from cost_basis_tracker.decimal_utils import ZERO
from cost_basis_tracker.exceptions import MissingPriceError
from cost_basis_tracker.linking.candidates import (
    aggregate_movements_by_transaction,
    build_outflow_adjustments,
    group_transactions_by_blockchain_hash,
)
from cost_basis_tracker.lots.fees import calculate_fees_in_fiat
from cost_basis_tracker.lots.lot_utils import (
    apply_lot_updates,
    create_acquisition_lot,
    find_transactions_without_prices,
    sort_with_logical_ordering,
)
from cost_basis_tracker.lots.strategies import CostBasisStrategy
from cost_basis_tracker.lots.transfers import process_transfer_source, process_transfer_target
from cost_basis_tracker.models import (
    AcquisitionLot,
    AssetMovement,
    CostBasisMethod,
    DisposalRequest,
    FeePolicy,
    LinkStatus,
    LotDisposal,
    LotTransfer,
    ProcessingWarning,
    Transaction,
    TransactionLink,
    VarianceTolerance,
    WarningType,
)
from cost_basis_tracker.result import Result


@dataclass
class NetProceeds:
    proceeds_per_unit: Decimal
    total_fee_amount: Decimal


@dataclass
class AssetLotMatchResult:
    asset_symbol: str
    lots: List[AcquisitionLot] = field(default_factory=list)
    disposals: List[LotDisposal] = field(default_factory=list)
    lot_transfers: List[LotTransfer] = field(default_factory=list)


@dataclass
class LotMatchResult:
    asset_results: List[AssetLotMatchResult] = field(default_factory=list)
    total_lots_created: int = 0
    total_disposals_processed: int = 0
    total_transfers_processed: int = 0
    warnings: List[ProcessingWarning] = field(default_factory=list)

    @property
    def lots(self) -> List[AcquisitionLot]:
        return [lot for r in self.asset_results for lot in r.lots]

    @property
    def disposals(self) -> List[LotDisposal]:
        return [d for r in self.asset_results for d in r.disposals]

    @property
    def lot_transfers(self) -> List[LotTransfer]:
        return [t for r in self.asset_results for t in r.lot_transfers]


def build_acquisition_lot_from_inflow(tx: Transaction, inflow: AssetMovement, calculation_id: str,
                                      method: CostBasisMethod) -> Result:
    """
    Create a lot for a plain acquisition; every fee of the transaction raises its cost.

    Returns:
        Result.ok(AcquisitionLot), or Result.err(MissingPriceError)
    """
    if inflow.price_at_tx_time is None:
        return Result.err(MissingPriceError(
            f"Inflow {inflow.asset_symbol} in tx {tx.id} missing price. Run price enrichment first."
        ))

    fee_result = calculate_fees_in_fiat(tx, inflow, True)
    if fee_result.is_err:
        return fee_result

    total_cost = inflow.gross_amount * inflow.price_at_tx_time.price.amount + fee_result.value
    return Result.ok(create_acquisition_lot(
        lot_id=str(uuid.uuid4()),
        calculation_id=calculation_id,
        acquisition_transaction_id=tx.id,
        asset_id=inflow.asset_id,
        asset_symbol=inflow.asset_symbol,
        quantity=inflow.gross_amount,
        cost_basis_per_unit=total_cost / inflow.gross_amount,
        method=method,
        acquisition_date=tx.timestamp,
    ))


def calculate_net_proceeds(tx: Transaction, outflow: AssetMovement, quantity: Optional[Decimal] = None) -> Result:
    """
    Proceeds per unit of a disposal after on-chain fees.

    quantity replaces the outflow amount when a UTXO cluster spent more than
    this row records.

    Returns:
        Result.ok(NetProceeds), or Result.err(MissingPriceError)
    """
    if outflow.price_at_tx_time is None:
        return Result.err(MissingPriceError(
            f"Outflow {outflow.asset_symbol} in tx {tx.id} missing price. Run price enrichment first."
        ))

    fee_result = calculate_fees_in_fiat(tx, outflow, False)
    if fee_result.is_err:
        return fee_result

    quantity = outflow.gross_amount if quantity is None else quantity
    gross_proceeds = quantity * outflow.price_at_tx_time.price.amount
    return Result.ok(NetProceeds(
        proceeds_per_unit=(gross_proceeds - fee_result.value) / quantity,
        total_fee_amount=fee_result.value,
    ))


@dataclass
class ClusterMovements:
    """
    How UTXO cluster rows are handled by the lot matcher.

    member_outflows: non-representative outflows, folded into the representative
    change_inflows: inflows back to other addresses of the cluster
    spent_amounts: what the whole cluster spent, keyed by its representative
    """
    member_outflows: Set[Tuple[int, str]] = field(default_factory=set)
    change_inflows: Set[Tuple[int, str]] = field(default_factory=set)
    spent_amounts: Dict[Tuple[int, str], Decimal] = field(default_factory=dict)


def _cluster_movements(txs: List[Transaction]) -> ClusterMovements:
    """
    Movements that stay inside a UTXO cluster, and what the cluster spent.

    The spent amount is the external amount plus the shared on-chain fee.
    """
    _, groupings = build_outflow_adjustments(txs)
    movements = ClusterMovements()

    for cluster in group_transactions_by_blockchain_hash(txs):
        aggregate = aggregate_movements_by_transaction(cluster)
        representatives: Dict[str, int] = {}
        for tx in cluster:
            for symbol, representative in groupings.get(tx.id, {}).items():
                representatives[symbol] = representative
                if representative != tx.id:
                    movements.member_outflows.add((tx.id, symbol))

        for symbol, representative in representatives.items():
            spent = ZERO
            for tx in cluster:
                spent += aggregate.outflow_amounts_by_tx.get(tx.id, {}).get(symbol, ZERO)
                if tx.id == representative:
                    continue
                change = aggregate.inflow_amounts_by_tx.get(tx.id, {}).get(symbol, ZERO)
                if change > ZERO:
                    spent -= change
                    movements.change_inflows.add((tx.id, symbol))
            movements.spent_amounts[(representative, symbol)] = spent
    return movements


class LotMatcher:
    """
    Builds lots, disposals and lot transfers from a priced transaction set.

    Transactions are processed in dependency order so each transfer's source
    leg runs before its target leg.
    """

    def match(self, transactions: List[Transaction], links: List[TransactionLink], calculation_id: str,
              strategy: CostBasisStrategy, fee_policy: FeePolicy,
              variance_tolerance: Optional[VarianceTolerance] = None) -> Result:
        """
        Run a full cost basis calculation.

        Args:
            transactions: Priced transactions
            links: Transaction links; only confirmed links are used
            calculation_id: Id stamped on every created record
            strategy: Lot selection method
            fee_policy: Treatment of fees paid in a transferred asset
            variance_tolerance: Overrides per-source transfer tolerances

        Returns:
            Result.ok(LotMatchResult), or Result.err with the first hard failure
        """
        unpriced = find_transactions_without_prices(transactions)
        if unpriced:
            ids = ", ".join(str(tx.id) for tx in unpriced)
            return Result.err(MissingPriceError(
                f"Cannot calculate cost basis: {len(unpriced)} transactions have unpriced movements "
                f"(tx ids: {ids}). Run price enrichment first."
            ))

        confirmed = [link for link in links if link.status == LinkStatus.CONFIRMED]
        ordered_result = sort_with_logical_ordering(transactions, confirmed)
        if ordered_result.is_err:
            return ordered_result

        tx_by_id = {tx.id: tx for tx in transactions}
        outflow_links: Dict[Tuple[int, str], List[TransactionLink]] = {}
        inflow_links: Dict[Tuple[int, str], TransactionLink] = {}
        for link in confirmed:
            outflow_links.setdefault((link.source_transaction_id, link.asset_symbol), []).append(link)
            inflow_links[(link.target_transaction_id, link.asset_symbol)] = link
        clusters = _cluster_movements(transactions)

        method = strategy.method
        lots: Dict[str, List[AcquisitionLot]] = {}
        disposals: Dict[str, List[LotDisposal]] = {}
        transfers: Dict[str, List[LotTransfer]] = {}
        transfers_by_link: Dict[str, List[LotTransfer]] = {}
        result = LotMatchResult()

        for tx in ordered_result.value:
            linked_inflow_used: Set[Tuple[int, str]] = set()
            cluster_spends_used: Set[Tuple[int, str]] = set()

            for inflow in tx.inflows:
                symbol = inflow.asset_symbol
                if is_fiat(symbol) or inflow.gross_amount <= ZERO:
                    continue
                key = (tx.id, symbol)
                link = inflow_links.get(key)

                if link is not None and key not in linked_inflow_used:
                    linked_inflow_used.add(key)
                    source_tx = tx_by_id.get(link.source_transaction_id)
                    if source_tx is not None:
                        target_result = process_transfer_target(
                            tx, inflow, link, source_tx, transfers_by_link.get(link.id, []),
                            calculation_id, method, variance_tolerance,
                        )
                        if target_result.is_err:
                            return target_result
                        lots.setdefault(symbol, []).append(target_result.value.lot)
                        result.total_lots_created += 1
                        result.warnings.extend(target_result.value.warnings)
                        continue
                    # Source leg is outside this calculation; treat as a plain acquisition
                    result.warnings.append(ProcessingWarning(type=WarningType.NO_TRANSFERS, data={
                        "link_id": link.id,
                        "target_tx_id": tx.id,
                        "source_tx_id": link.source_transaction_id,
                    }))
                elif key in clusters.change_inflows:
                    continue

                lot_result = build_acquisition_lot_from_inflow(tx, inflow, calculation_id, method)
                if lot_result.is_err:
                    return lot_result
                lots.setdefault(symbol, []).append(lot_result.value)
                result.total_lots_created += 1

            for outflow in tx.outflows:
                symbol = outflow.asset_symbol
                if is_fiat(symbol) or outflow.gross_amount <= ZERO:
                    continue
                key = (tx.id, symbol)
                asset_lots = lots.get(symbol, [])
                links_for_outflow = [
                    link for link in outflow_links.get(key, []) if link.target_transaction_id in tx_by_id
                ]

                if links_for_outflow:
                    for link in links_for_outflow:
                        if len(links_for_outflow) > 1:
                            # One output per linked deposit
                            effective_amount = link.target_amount
                        elif link.source_amount != outflow.effective_amount:
                            effective_amount = link.source_amount
                        else:
                            effective_amount = None
                        source_result = process_transfer_source(
                            tx, outflow, link, asset_lots, strategy, calculation_id, fee_policy,
                            variance_tolerance, effective_amount,
                        )
                        if source_result.is_err:
                            return source_result
                        value = source_result.value
                        asset_lots = value.updated_lots
                        disposals.setdefault(symbol, []).extend(value.disposals)
                        transfers.setdefault(symbol, []).extend(value.transfers)
                        transfers_by_link.setdefault(link.id, []).extend(value.transfers)
                        result.total_disposals_processed += len(value.disposals)
                        result.total_transfers_processed += len(value.transfers)
                        result.warnings.extend(value.warnings)
                    lots[symbol] = asset_lots
                    continue

                if key in clusters.member_outflows or key in cluster_spends_used:
                    continue

                quantity = outflow.gross_amount
                if key in clusters.spent_amounts:
                    # Representative disposes of the whole cluster spend once
                    quantity = clusters.spent_amounts[key]
                    cluster_spends_used.add(key)

                proceeds_result = calculate_net_proceeds(tx, outflow, quantity)
                if proceeds_result.is_err:
                    return proceeds_result
                open_lots = [lot for lot in asset_lots if lot.remaining_quantity > ZERO]
                match_result = strategy.match_disposal(
                    DisposalRequest(
                        transaction_id=tx.id,
                        asset_symbol=symbol,
                        quantity=quantity,
                        date=tx.timestamp,
                        proceeds_per_unit=proceeds_result.value.proceeds_per_unit,
                    ),
                    open_lots,
                )
                if match_result.is_err:
                    return match_result

                updates: Dict[str, Decimal] = {}
                for lot_disposal in match_result.value:
                    updates[lot_disposal.lot_id] = updates.get(lot_disposal.lot_id, ZERO) + lot_disposal.quantity_disposed
                lots[symbol] = apply_lot_updates(asset_lots, updates)
                disposals.setdefault(symbol, []).extend(match_result.value)
                result.total_disposals_processed += len(match_result.value)

        for symbol in sorted(set(lots) | set(disposals) | set(transfers)):
            result.asset_results.append(AssetLotMatchResult(
                asset_symbol=symbol,
                lots=lots.get(symbol, []),
                disposals=disposals.get(symbol, []),
                lot_transfers=transfers.get(symbol, []),
            ))

        return Result.ok(result)
