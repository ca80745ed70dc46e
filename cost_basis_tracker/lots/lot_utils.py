import heapq
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, List, Optional, Set, Tuple

from cost_basis_tracker.assets import is_fiat
from cost_basis_tracker.decimal_utils import HUNDRED, ZERO, decimal_to_str, format_pct
from cost_basis_tracker.exceptions import TransferOrderError, TransferVarianceError
from cost_basis_tracker.models import (
    AcquisitionLot,
    AssetMovement,
    CostBasisMethod,
    FeePolicy,
    LotStatus,
    LotTransfer,
    PriceAtTxTime,
    Transaction,
    TransactionLink,
    VarianceTolerance,
)
from cost_basis_tracker.result import Result

# Observed spread between recorded withdrawal and deposit amounts per platform, in percent
VARIANCE_TOLERANCES: Dict[str, VarianceTolerance] = {
    "binance": VarianceTolerance(warn=Decimal("1.5"), error=Decimal("5")),
    "kucoin": VarianceTolerance(warn=Decimal("1.5"), error=Decimal("5")),
    "coinbase": VarianceTolerance(warn=Decimal("1"), error=Decimal("3")),
    "kraken": VarianceTolerance(warn=Decimal("0.5"), error=Decimal("2")),
}
DEFAULT_VARIANCE_TOLERANCE = VarianceTolerance(warn=Decimal("1"), error=Decimal("3"))


@dataclass
class CryptoFee:
    """Fees paid in the asset being moved."""
    amount: Decimal
    fee_type: str  # 'network+platform', 'network', 'platform' or 'none'
    price_at_tx_time: Optional[PriceAtTxTime] = None


@dataclass
class VarianceCheck:
    variance_pct: Decimal
    tolerance: VarianceTolerance


@dataclass
class InheritedCostBasis:
    total_cost_basis: Decimal
    transferred_quantity: Decimal
    crypto_fee_usd_added: Decimal


# -----------------------------------------------------------------------------
# Lots
# -----------------------------------------------------------------------------

def lot_status_for(remaining_quantity: Decimal, quantity: Decimal) -> LotStatus:
    if remaining_quantity <= ZERO:
        return LotStatus.FULLY_DISPOSED
    if remaining_quantity < quantity:
        return LotStatus.PARTIALLY_DISPOSED
    return LotStatus.OPEN


def create_acquisition_lot(lot_id: str, calculation_id: str, acquisition_transaction_id: int, asset_id: str,
                           asset_symbol: str, quantity: Decimal, cost_basis_per_unit: Decimal,
                           method: CostBasisMethod, acquisition_date: datetime,
                           now: Optional[datetime] = None) -> AcquisitionLot:
    """Create a fresh, fully open lot."""
    now = now or datetime.now(timezone.utc)
    return AcquisitionLot(
        id=lot_id,
        calculation_id=calculation_id,
        acquisition_transaction_id=acquisition_transaction_id,
        asset_id=asset_id,
        asset_symbol=asset_symbol,
        quantity=quantity,
        cost_basis_per_unit=cost_basis_per_unit,
        total_cost_basis=quantity * cost_basis_per_unit,
        acquisition_date=acquisition_date,
        method=method,
        remaining_quantity=quantity,
        status=LotStatus.OPEN,
        created_at=now,
        updated_at=now,
    )


def apply_lot_updates(lots: List[AcquisitionLot], quantities_to_subtract: Dict[str, Decimal],
                      now: Optional[datetime] = None) -> List[AcquisitionLot]:
    """
    Decrement lots in one batch and return a new list.

    Raises:
        ValueError: If a lot would go negative or an update names an unknown lot
    """
    known = {lot.id for lot in lots}
    unknown = set(quantities_to_subtract) - known
    if unknown:
        raise ValueError(f"Lot updates reference unknown lots: {sorted(unknown)}")

    now = now or datetime.now(timezone.utc)
    updated = []
    for lot in lots:
        subtract = quantities_to_subtract.get(lot.id)
        if subtract is None:
            updated.append(lot)
            continue
        remaining = lot.remaining_quantity - subtract
        if remaining < ZERO:
            raise ValueError(
                f"Lot {lot.id} would go negative: remaining {decimal_to_str(lot.remaining_quantity)}, "
                f"subtracting {decimal_to_str(subtract)}"
            )
        updated.append(replace(
            lot,
            remaining_quantity=remaining,
            status=lot_status_for(remaining, lot.quantity),
            updated_at=now,
        ))
    return updated


def calculate_holding_period_days(acquisition_date: datetime, disposal_date: datetime) -> int:
    """Whole days elapsed between acquisition and disposal."""
    return (disposal_date - acquisition_date).days


# -----------------------------------------------------------------------------
# Transfer variance
# -----------------------------------------------------------------------------

def get_variance_tolerance(source: str, override: Optional[VarianceTolerance] = None) -> VarianceTolerance:
    if override is not None:
        return override
    return VARIANCE_TOLERANCES.get(source.lower(), DEFAULT_VARIANCE_TOLERANCE)


def validate_transfer_variance(actual: Decimal, expected: Decimal, source: str, tx_id: int, asset_symbol: str,
                               override: Optional[VarianceTolerance] = None) -> Result:
    """
    Compare a transferred amount with the amount recorded on the other side.

    Returns:
        Result.ok(VarianceCheck), or Result.err(TransferVarianceError) above the
        error tolerance. Exceeding the warn tolerance is left to the caller.
    """
    tolerance = get_variance_tolerance(source, override)
    variance_pct = ZERO if actual == ZERO else abs(actual - expected) / actual * HUNDRED

    if variance_pct > tolerance.error:
        return Result.err(TransferVarianceError(
            f"Transfer amount mismatch at tx {tx_id}: {format_pct(variance_pct)}% variance for "
            f"{asset_symbol} (actual {decimal_to_str(actual)}, expected {decimal_to_str(expected)}). "
            f"Exceeds {source} error threshold ({decimal_to_str(tolerance.error)}%)."
        ))

    return Result.ok(VarianceCheck(variance_pct=variance_pct, tolerance=tolerance))


# -----------------------------------------------------------------------------
# Transfer cost basis
# -----------------------------------------------------------------------------

def calculate_transfer_disposal_amount(outflow: AssetMovement, crypto_fee: CryptoFee,
                                       fee_policy: FeePolicy) -> Decimal:
    """Quantity removed from source lots for the transfer itself."""
    if fee_policy == FeePolicy.ADD_TO_BASIS:
        return outflow.gross_amount
    return outflow.gross_amount - crypto_fee.amount


def build_transfer_metadata(crypto_fee: CryptoFee, fee_policy: FeePolicy, quantity_disposed: Decimal,
                            total_disposal_quantity: Decimal) -> Optional[Dict[str, Decimal]]:
    """Share of the fee's USD value carried by one transfer slice, under add-to-basis only."""
    if fee_policy != FeePolicy.ADD_TO_BASIS:
        return None
    if crypto_fee.amount <= ZERO or crypto_fee.price_at_tx_time is None:
        return None
    if total_disposal_quantity <= ZERO:
        return None

    fee_value = crypto_fee.amount * crypto_fee.price_at_tx_time.price.amount
    return {"crypto_fee_usd_value": quantity_disposed / total_disposal_quantity * fee_value}


def calculate_inherited_cost_basis(transfers: List[LotTransfer]) -> InheritedCostBasis:
    total = ZERO
    quantity = ZERO
    fees = ZERO
    for transfer in transfers:
        total += transfer.quantity_transferred * transfer.cost_basis_per_unit
        quantity += transfer.quantity_transferred
        fee_value = transfer.crypto_fee_usd_value
        if fee_value is not None:
            total += fee_value
            fees += fee_value
    return InheritedCostBasis(total_cost_basis=total, transferred_quantity=quantity, crypto_fee_usd_added=fees)


def calculate_target_cost_basis(inherited_cost_basis: Decimal, fiat_fees: list,
                                received_quantity: Decimal) -> Decimal:
    """
    Unit cost of the lot created at a transfer target.

    Fiat fees without a price are left out.
    """
    fee_total = sum(
        (fee.amount * fee.price_at_tx_time.price.amount for fee in fiat_fees if fee.price_at_tx_time is not None),
        ZERO,
    )
    return (inherited_cost_basis + fee_total) / received_quantity


# -----------------------------------------------------------------------------
# Transaction ordering
# -----------------------------------------------------------------------------

def build_dependency_graph(txs: List[Transaction],
                           links: List[TransactionLink]) -> Tuple[Dict[int, Set[int]], Dict[int, int]]:
    """
    Edges from each link's source transaction to its target.

    Links touching transactions outside the set, self links and duplicate
    edges are ignored.

    Returns:
        Tuple of (adjacency map, in-degree map)
    """
    ids = {tx.id for tx in txs}
    edges: Dict[int, Set[int]] = {tx_id: set() for tx_id in ids}
    in_degree: Dict[int, int] = {tx_id: 0 for tx_id in ids}

    for link in links:
        source_id = link.source_transaction_id
        target_id = link.target_transaction_id
        if source_id not in ids or target_id not in ids or source_id == target_id:
            continue
        if target_id in edges[source_id]:
            continue
        edges[source_id].add(target_id)
        in_degree[target_id] += 1

    return edges, in_degree


def sort_with_logical_ordering(txs: List[Transaction], links: List[TransactionLink]) -> Result:
    """
    Order transactions chronologically while keeping every link source before its target.

    Ties are broken by timestamp, then id.

    Returns:
        Result.ok(List[Transaction]), or Result.err(TransferOrderError) on a cycle
    """
    by_id = {tx.id: tx for tx in txs}
    edges, in_degree = build_dependency_graph(txs, links)

    ready = [(tx.timestamp, tx.id) for tx in txs if in_degree[tx.id] == 0]
    heapq.heapify(ready)

    ordered: List[Transaction] = []
    while ready:
        _, tx_id = heapq.heappop(ready)
        ordered.append(by_id[tx_id])
        for target_id in edges[tx_id]:
            in_degree[target_id] -= 1
            if in_degree[target_id] == 0:
                heapq.heappush(ready, (by_id[target_id].timestamp, target_id))

    if len(ordered) < len(by_id):
        unresolved = sorted(tx_id for tx_id, degree in in_degree.items() if degree > 0)
        return Result.err(TransferOrderError(
            f"Transaction dependency cycle detected. Unresolved transactions: {unresolved}"
        ))

    return Result.ok(ordered)


def group_transactions_by_asset(txs: List[Transaction]) -> Dict[str, List[Transaction]]:
    """Transactions touching each non-fiat asset symbol (a transaction may appear under several)."""
    groups: Dict[str, List[Transaction]] = {}
    for tx in txs:
        symbols = []
        for movement in tx.inflows + tx.outflows:
            if is_fiat(movement.asset_symbol) or movement.asset_symbol in symbols:
                continue
            symbols.append(movement.asset_symbol)
        for symbol in symbols:
            groups.setdefault(symbol, []).append(tx)
    return groups


def find_transactions_without_prices(txs: List[Transaction]) -> List[Transaction]:
    """Transactions with a non-fiat inflow or outflow lacking a price."""
    return [
        tx for tx in txs
        if any(m.price_at_tx_time is None and not is_fiat(m.asset_symbol) for m in tx.inflows + tx.outflows)
    ]
