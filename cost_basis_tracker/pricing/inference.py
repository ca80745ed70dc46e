"""
Multi-pass price inference over normalized transactions.

Every pass takes transactions and returns new transactions; inputs are never
mutated and transactions a pass does not touch come back as the same objects.
Passes:

- Pass 0: prices from fiat trades, then identity prices on fiat movements
- Pass 1: inflow price derived from a priced outflow via the trade ratio
- Pass 2: crypto/crypto inflow prices recomputed from the disposal side
- Link propagation: prices copied across confirmed transfer links
- Fee enrichment: fees take the price of a same-asset movement
- Provider prices: remaining crypto movements priced from a PriceClient
"""
from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional, Set, Tuple

from cost_basis_tracker.assets import USD, is_fiat, is_fiat_or_stablecoin
from cost_basis_tracker.clients.price import PriceClient
from cost_basis_tracker.decimal_utils import ONE, ZERO
from cost_basis_tracker.exceptions import PriceNotAvailableError
from cost_basis_tracker.models import (
    AssetMovement,
    FeeMovement,
    LinkStatus,
    Price,
    PriceAtTxTime,
    PriceSource,
    Transaction,
    TransactionLink,
)

PRICE_SOURCE_PRIORITY: Dict[PriceSource, int] = {
    PriceSource.FIAT_EXECUTION_TENTATIVE: 0,
    PriceSource.PROVIDER: 1,
    PriceSource.DERIVED_HISTORY: 1,
    PriceSource.MANUAL: 1,
    PriceSource.DERIVED_RATIO: 2,
    PriceSource.LINK_PROPAGATED: 2,
    PriceSource.EXCHANGE_EXECUTION: 3,
}

EXACT_GRANULARITY = "exact"
LINK_AMOUNT_TOLERANCE = Decimal("0.1")


@dataclass
class InferenceResult:
    transactions: List[Transaction]
    modified_ids: Set[int] = field(default_factory=set)


def price_priority(source: PriceSource) -> int:
    return PRICE_SOURCE_PRIORITY.get(source, 0)


def enrich_movements_with_prices(movements: List[AssetMovement],
                                 prices: Dict[str, PriceAtTxTime]) -> List[AssetMovement]:
    """
    Apply prices keyed by asset symbol to movements.

    An existing price is replaced only when the new one has equal or higher
    priority. Returns the original list when nothing changed.
    """
    changed = False
    enriched = []
    for movement in movements:
        new_price = prices.get(movement.asset_symbol)
        existing = movement.price_at_tx_time
        if new_price is not None and (
            existing is None or price_priority(new_price.source) >= price_priority(existing.source)
        ):
            enriched.append(replace(movement, price_at_tx_time=new_price))
            changed = True
        else:
            enriched.append(movement)
    return enriched if changed else movements


def _fiat_source(symbol: str) -> PriceSource:
    # Non-USD fiat is expected to be normalized to USD by a later FX step
    return PriceSource.EXCHANGE_EXECUTION if symbol.upper() == USD else PriceSource.FIAT_EXECUTION_TENTATIVE


def _identity_price(symbol: str, timestamp: datetime) -> PriceAtTxTime:
    return PriceAtTxTime(
        price=Price(amount=ONE, currency=symbol.upper()),
        source=_fiat_source(symbol),
        fetched_at=timestamp,
        granularity=EXACT_GRANULARITY,
    )


def _simple_trade(inflows: List[AssetMovement],
                  outflows: List[AssetMovement]) -> Optional[Tuple[AssetMovement, AssetMovement]]:
    """The (inflow, outflow) pair of an unambiguous trade, or None."""
    if len(inflows) != 1 or len(outflows) != 1:
        return None
    inflow, outflow = inflows[0], outflows[0]
    if inflow.asset_symbol == outflow.asset_symbol:
        return None
    if inflow.gross_amount <= ZERO or outflow.gross_amount <= ZERO:
        return None
    return inflow, outflow


def _with_movements(tx: Transaction, inflows: List[AssetMovement], outflows: List[AssetMovement]) -> Transaction:
    if inflows is tx.inflows and outflows is tx.outflows:
        return tx
    return replace(tx, inflows=inflows, outflows=outflows)


# -----------------------------------------------------------------------------
# Pass 0 - exchange execution
# -----------------------------------------------------------------------------

def _trade_prices(tx: Transaction) -> Dict[str, PriceAtTxTime]:
    trade = _simple_trade(tx.inflows, tx.outflows)
    if not trade:
        return {}
    inflow, outflow = trade
    inflow_fiat = is_fiat(inflow.asset_symbol)
    outflow_fiat = is_fiat(outflow.asset_symbol)
    if inflow_fiat == outflow_fiat:
        return {}

    fiat, crypto = (inflow, outflow) if inflow_fiat else (outflow, inflow)
    currency = fiat.asset_symbol.upper()
    return {
        crypto.asset_symbol: PriceAtTxTime(
            price=Price(amount=fiat.gross_amount / crypto.gross_amount, currency=currency),
            source=_fiat_source(currency),
            fetched_at=tx.timestamp,
            granularity=EXACT_GRANULARITY,
        ),
        fiat.asset_symbol: _identity_price(fiat.asset_symbol, tx.timestamp),
    }


def apply_exchange_execution_prices(txs: List[Transaction]) -> List[Transaction]:
    """Price fiat trades from their execution ratio and stamp identity prices on fiat."""
    result = []
    for tx in txs:
        inflows, outflows = tx.inflows, tx.outflows

        trade_prices = _trade_prices(tx)
        if trade_prices:
            inflows = enrich_movements_with_prices(inflows, trade_prices)
            outflows = enrich_movements_with_prices(outflows, trade_prices)

        identity = {
            m.asset_symbol: _identity_price(m.asset_symbol, tx.timestamp)
            for m in inflows + outflows
            if m.price_at_tx_time is None and is_fiat(m.asset_symbol)
        }
        if identity:
            inflows = enrich_movements_with_prices(inflows, identity)
            outflows = enrich_movements_with_prices(outflows, identity)

        result.append(_with_movements(tx, inflows, outflows))
    return result


# -----------------------------------------------------------------------------
# Pass 1 and 2 - trade ratios
# -----------------------------------------------------------------------------

def _ratio_price(inflow: AssetMovement, outflow: AssetMovement, timestamp: datetime) -> PriceAtTxTime:
    outflow_price = outflow.price_at_tx_time
    ratio = outflow.gross_amount / inflow.gross_amount
    return PriceAtTxTime(
        price=Price(amount=outflow_price.price.amount * ratio, currency=outflow_price.price.currency),
        source=PriceSource.DERIVED_RATIO,
        fetched_at=timestamp,
        granularity=outflow_price.granularity,
    )


def derive_inflow_prices_from_outflows(txs: List[Transaction]) -> InferenceResult:
    """Derive a missing inflow price from the priced outflow of a simple trade."""
    result = []
    modified: Set[int] = set()
    for tx in txs:
        trade = _simple_trade(tx.inflows, tx.outflows)
        if not trade:
            result.append(tx)
            continue
        inflow, outflow = trade
        if inflow.price_at_tx_time is not None or outflow.price_at_tx_time is None:
            result.append(tx)
            continue

        price = _ratio_price(inflow, outflow, tx.timestamp)
        inflows = enrich_movements_with_prices(tx.inflows, {inflow.asset_symbol: price})
        result.append(_with_movements(tx, inflows, tx.outflows))
        modified.add(tx.id)
    return InferenceResult(transactions=result, modified_ids=modified)


def recalculate_crypto_swap_ratios(txs: List[Transaction]) -> InferenceResult:
    """
    Re-derive the acquisition price of crypto/crypto swaps from the disposal side.

    The disposal price is fair market value, so the acquired asset's cost basis
    follows the execution ratio rather than a separate market quote.
    """
    result = []
    modified: Set[int] = set()
    for tx in txs:
        trade = _simple_trade(tx.inflows, tx.outflows)
        if not trade:
            result.append(tx)
            continue
        inflow, outflow = trade
        if inflow.price_at_tx_time is None or outflow.price_at_tx_time is None:
            result.append(tx)
            continue
        if is_fiat_or_stablecoin(inflow.asset_symbol) or is_fiat_or_stablecoin(outflow.asset_symbol):
            result.append(tx)
            continue

        price = _ratio_price(inflow, outflow, tx.timestamp)
        inflows = enrich_movements_with_prices(tx.inflows, {inflow.asset_symbol: price})
        result.append(_with_movements(tx, inflows, tx.outflows))
        modified.add(tx.id)
    return InferenceResult(transactions=result, modified_ids=modified)


def infer_multi_pass(txs: List[Transaction]) -> InferenceResult:
    """
    Run passes 0, 1 and 2 in order.

    Args:
        txs: Transactions, ideally in chronological order

    Returns:
        InferenceResult whose modified_ids come from passes 1 and 2
    """
    pass0 = apply_exchange_execution_prices(txs)
    pass1 = derive_inflow_prices_from_outflows(pass0)
    pass2 = recalculate_crypto_swap_ratios(pass1.transactions)
    return InferenceResult(
        transactions=pass2.transactions,
        modified_ids=pass1.modified_ids | pass2.modified_ids,
    )


# -----------------------------------------------------------------------------
# Link propagation
# -----------------------------------------------------------------------------

def propagate_prices_across_links(links: List[TransactionLink], txs: List[Transaction]) -> InferenceResult:
    """
    Copy outflow prices from each confirmed link's source to its target inflows.

    A target inflow qualifies when it has the same asset and its gross amount
    is within 10% of the source outflow. Each source movement prices at most
    one target movement.
    """
    by_id = {tx.id: tx for tx in txs}
    updated: Dict[int, Transaction] = {}

    for link in links:
        if link.status != LinkStatus.CONFIRMED:
            continue
        source_tx = updated.get(link.source_transaction_id, by_id.get(link.source_transaction_id))
        target_tx = updated.get(link.target_transaction_id, by_id.get(link.target_transaction_id))
        if source_tx is None or target_tx is None:
            continue

        prices: Dict[str, PriceAtTxTime] = {}
        for source_movement in source_tx.outflows:
            if source_movement.price_at_tx_time is None:
                continue
            for target_movement in target_tx.inflows:
                if target_movement.asset_symbol != source_movement.asset_symbol:
                    continue
                tolerance = source_movement.gross_amount * LINK_AMOUNT_TOLERANCE
                if abs(source_movement.gross_amount - target_movement.gross_amount) <= tolerance:
                    prices[target_movement.asset_symbol] = replace(
                        source_movement.price_at_tx_time, source=PriceSource.LINK_PROPAGATED
                    )
                    break

        if prices:
            inflows = enrich_movements_with_prices(target_tx.inflows, prices)
            updated[target_tx.id] = _with_movements(target_tx, inflows, target_tx.outflows)

    return InferenceResult(
        transactions=[updated.get(tx.id, tx) for tx in txs],
        modified_ids=set(updated),
    )


# -----------------------------------------------------------------------------
# Fees
# -----------------------------------------------------------------------------

def enrich_fee_prices_from_movements(txs: List[Transaction]) -> List[Transaction]:
    """Give unpriced fees the price of a same-asset movement, or an identity price for fiat."""
    result = []
    for tx in txs:
        if not tx.fees:
            result.append(tx)
            continue

        prices_by_asset: Dict[str, PriceAtTxTime] = {}
        for movement in tx.inflows + tx.outflows:
            if movement.price_at_tx_time is not None:
                prices_by_asset.setdefault(movement.asset_symbol, movement.price_at_tx_time)

        changed = False
        fees: List[FeeMovement] = []
        for fee in tx.fees:
            if fee.price_at_tx_time is not None:
                fees.append(fee)
                continue
            price = prices_by_asset.get(fee.asset_symbol)
            if price is None and is_fiat(fee.asset_symbol):
                price = _identity_price(fee.asset_symbol, tx.timestamp)
            if price is None:
                fees.append(fee)
                continue
            fees.append(replace(fee, price_at_tx_time=price))
            changed = True

        result.append(replace(tx, fees=fees) if changed else tx)
    return result


# -----------------------------------------------------------------------------
# Provider prices
# -----------------------------------------------------------------------------

def _fill_unpriced(movements: List[AssetMovement], prices: Dict[str, PriceAtTxTime]) -> List[AssetMovement]:
    # Only fills gaps, unlike enrich_movements_with_prices
    return [
        replace(m, price_at_tx_time=prices[m.asset_symbol])
        if m.price_at_tx_time is None and m.asset_symbol in prices else m
        for m in movements
    ]


def apply_provider_prices(txs: List[Transaction], price_client: PriceClient) -> InferenceResult:
    """
    Fill still-unpriced crypto movements from a market price provider.

    Movements the provider cannot price are left unpriced. Lookups are cached
    per (symbol, timestamp) for the duration of the call.
    """
    cache: Dict[Tuple[str, int], Optional[Decimal]] = {}

    def lookup(symbol: str, timestamp: datetime) -> Optional[PriceAtTxTime]:
        key = (symbol.upper(), int(timestamp.timestamp()))
        if key not in cache:
            try:
                cache[key] = price_client.get_price_at_timestamp(key[0], key[1])
            except PriceNotAvailableError:
                cache[key] = None
        amount = cache[key]
        if amount is None:
            return None
        return PriceAtTxTime(
            price=Price(amount=amount, currency=USD),
            source=PriceSource.PROVIDER,
            fetched_at=timestamp,
            granularity=price_client.granularity,
        )

    result = []
    modified: Set[int] = set()
    for tx in txs:
        prices: Dict[str, PriceAtTxTime] = {}
        for movement in tx.inflows + tx.outflows:
            if movement.price_at_tx_time is not None or is_fiat(movement.asset_symbol):
                continue
            if movement.asset_symbol in prices:
                continue
            price = lookup(movement.asset_symbol, tx.timestamp)
            if price is not None:
                prices[movement.asset_symbol] = price

        if not prices:
            result.append(tx)
            continue

        result.append(replace(
            tx,
            inflows=_fill_unpriced(tx.inflows, prices),
            outflows=_fill_unpriced(tx.outflows, prices),
        ))
        modified.add(tx.id)

    return InferenceResult(transactions=result, modified_ids=modified)
