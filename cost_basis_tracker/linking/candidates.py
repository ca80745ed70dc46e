from collections import OrderedDict
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, List, Optional, Set, Tuple, Union

from cost_basis_tracker.decimal_utils import ZERO
from cost_basis_tracker.models import (
    Direction,
    FeeSettlement,
    SourceType,
    Transaction,
    TransactionCandidate,
)

# tx id -> asset symbol -> amount
AmountsByTx = Dict[int, Dict[str, Decimal]]
# tx id -> asset symbol -> representative tx id carrying the cluster's external outflow
OutflowGroupings = Dict[int, Dict[str, int]]


@dataclass
class MovementAggregate:
    inflow_amounts_by_tx: AmountsByTx = field(default_factory=dict)
    outflow_amounts_by_tx: AmountsByTx = field(default_factory=dict)
    asset_symbols: Set[str] = field(default_factory=set)


@dataclass
class OutflowAdjustment:
    tx_id: int
    adjusted_amount: Decimal
    multiple_outflows: bool
    member_ids: List[int]


@dataclass
class OutflowAdjustmentSkip:
    reason: str  # 'no-adjustment' or 'non-positive'


def aggregate_movements_by_transaction(txs: List[Transaction]) -> MovementAggregate:
    """
    Sum inflow and outflow amounts per transaction and asset.

    Net amounts are used when the importer supplied them, otherwise gross.
    """
    aggregate = MovementAggregate()

    for tx in txs:
        inflows: Dict[str, Decimal] = {}
        outflows: Dict[str, Decimal] = {}

        for movement in tx.inflows:
            inflows[movement.asset_symbol] = inflows.get(movement.asset_symbol, ZERO) + movement.effective_amount
            aggregate.asset_symbols.add(movement.asset_symbol)

        for movement in tx.outflows:
            outflows[movement.asset_symbol] = outflows.get(movement.asset_symbol, ZERO) + movement.effective_amount
            aggregate.asset_symbols.add(movement.asset_symbol)

        if inflows:
            aggregate.inflow_amounts_by_tx[tx.id] = inflows
        if outflows:
            aggregate.outflow_amounts_by_tx[tx.id] = outflows

    return aggregate


def _unnetted_on_chain_fee(tx: Transaction, asset_symbol: str) -> Decimal:
    """On-chain fee in the asset, unless the outflow amounts are already net of it."""
    outflows = [m for m in tx.outflows if m.asset_symbol == asset_symbol]
    if any(m.net_amount is not None for m in outflows):
        return ZERO
    return sum(
        (f.amount for f in tx.fees if f.asset_symbol == asset_symbol and f.settlement == FeeSettlement.ON_CHAIN),
        ZERO,
    )


def calculate_outflow_adjustment(
    asset_symbol: str,
    group: List[Transaction],
    inflows_by_tx: AmountsByTx,
    outflows_by_tx: AmountsByTx,
) -> Union[OutflowAdjustment, OutflowAdjustmentSkip]:
    """
    Compute the true external amount leaving a UTXO cluster for one asset.

    A cluster is a set of per-address rows sharing one blockchain hash. The
    external amount is the sum of outflows, minus change flowing back to other
    addresses in the cluster, minus the shared on-chain fee counted once. The
    outflow row with the smallest id represents the cluster.

    Only valid when the importer emits one row per address; change recorded
    inside the same row is invisible here.

    Args:
        asset_symbol: Asset to adjust
        group: Transactions sharing the blockchain hash
        inflows_by_tx: Aggregated inflow amounts
        outflows_by_tx: Aggregated outflow amounts

    Returns:
        OutflowAdjustment, or OutflowAdjustmentSkip with the reason
    """
    outflow_members = [
        tx for tx in group if outflows_by_tx.get(tx.id, {}).get(asset_symbol, ZERO) > ZERO
    ]
    if not outflow_members:
        return OutflowAdjustmentSkip(reason="no-adjustment")

    representative = min(outflow_members, key=lambda tx: tx.id)

    total_outflows = sum((outflows_by_tx[tx.id][asset_symbol] for tx in outflow_members), ZERO)

    internal_inflows = ZERO
    for tx in group:
        if tx.id == representative.id:
            continue
        amount = inflows_by_tx.get(tx.id, {}).get(asset_symbol, ZERO)
        if amount > ZERO:
            internal_inflows += amount

    # Every per-address row repeats the same transaction fee
    fee = max((_unnetted_on_chain_fee(tx, asset_symbol) for tx in outflow_members), default=ZERO)

    if len(outflow_members) == 1 and internal_inflows == ZERO and fee == ZERO:
        return OutflowAdjustmentSkip(reason="no-adjustment")

    adjusted = total_outflows - internal_inflows - fee
    if adjusted <= ZERO:
        return OutflowAdjustmentSkip(reason="non-positive")

    return OutflowAdjustment(
        tx_id=representative.id,
        adjusted_amount=adjusted,
        multiple_outflows=len(outflow_members) > 1,
        member_ids=sorted(tx.id for tx in outflow_members),
    )


def group_transactions_by_blockchain_hash(txs: List[Transaction]) -> List[List[Transaction]]:
    """Cluster blockchain transactions by (chain, hash), keeping clusters with 2+ rows."""
    groups: "OrderedDict[Tuple[str, str], List[Transaction]]" = OrderedDict()
    for tx in txs:
        if tx.source_type != SourceType.BLOCKCHAIN or not tx.blockchain:
            continue
        if not tx.blockchain.transaction_hash:
            continue
        key = (tx.blockchain.name.lower(), tx.blockchain.transaction_hash)
        groups.setdefault(key, []).append(tx)
    return [members for members in groups.values() if len(members) >= 2]


def build_outflow_adjustments(txs: List[Transaction]) -> Tuple[AmountsByTx, OutflowGroupings]:
    """
    Run the outflow adjustment over every hash cluster and asset.

    Returns:
        Tuple of (amount overrides for representatives, groupings mapping every
        outflow member to its representative)
    """
    amount_overrides: AmountsByTx = {}
    groupings: OutflowGroupings = {}

    for group in group_transactions_by_blockchain_hash(txs):
        aggregate = aggregate_movements_by_transaction(group)
        for asset_symbol in sorted(aggregate.asset_symbols):
            adjustment = calculate_outflow_adjustment(
                asset_symbol,
                group,
                aggregate.inflow_amounts_by_tx,
                aggregate.outflow_amounts_by_tx,
            )
            if isinstance(adjustment, OutflowAdjustmentSkip):
                continue
            amount_overrides.setdefault(adjustment.tx_id, {})[asset_symbol] = adjustment.adjusted_amount
            for member_id in adjustment.member_ids:
                groupings.setdefault(member_id, {})[asset_symbol] = adjustment.tx_id

    return amount_overrides, groupings


def _candidate(tx: Transaction, asset_id: str, asset_symbol: str, amount: Decimal,
               direction: Direction) -> TransactionCandidate:
    return TransactionCandidate(
        id=tx.id,
        external_id=tx.external_id,
        source_name=tx.source,
        source_type=tx.source_type,
        timestamp=tx.timestamp,
        asset_id=asset_id,
        asset_symbol=asset_symbol,
        amount=amount,
        direction=direction,
        from_address=tx.from_address,
        to_address=tx.to_address,
        blockchain_transaction_hash=tx.blockchain.transaction_hash if tx.blockchain else None,
    )


def convert_to_candidates(
    txs: List[Transaction],
    amount_overrides: Optional[AmountsByTx] = None,
    outflow_groupings: Optional[OutflowGroupings] = None,
) -> List[TransactionCandidate]:
    """
    Flatten transactions into one candidate per inflow and per qualifying outflow.

    Non-representative members of an outflow grouping emit no outflow
    candidate for that asset; their amount is folded into the representative.
    A representative emits one candidate per overridden asset.
    """
    amount_overrides = amount_overrides or {}
    outflow_groupings = outflow_groupings or {}
    candidates: List[TransactionCandidate] = []

    for tx in txs:
        for inflow in tx.inflows:
            candidates.append(_candidate(tx, inflow.asset_id, inflow.asset_symbol,
                                         inflow.effective_amount, Direction.IN))

        overrides = amount_overrides.get(tx.id, {})
        groupings = outflow_groupings.get(tx.id, {})
        overridden: Set[str] = set()
        for outflow in tx.outflows:
            representative = groupings.get(outflow.asset_symbol)
            if representative is not None and representative != tx.id:
                continue
            amount = outflow.effective_amount
            if outflow.asset_symbol in overrides:
                # The override covers every outflow of the asset in this row
                if outflow.asset_symbol in overridden:
                    continue
                overridden.add(outflow.asset_symbol)
                amount = overrides[outflow.asset_symbol]
            candidates.append(_candidate(tx, outflow.asset_id, outflow.asset_symbol, amount, Direction.OUT))

    return candidates


def separate_sources_and_targets(
    candidates: List[TransactionCandidate],
) -> Tuple[List[TransactionCandidate], List[TransactionCandidate]]:
    sources = [c for c in candidates if c.direction == Direction.OUT]
    targets = [c for c in candidates if c.direction == Direction.IN]
    return sources, targets
