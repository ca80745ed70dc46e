from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from cost_basis_tracker.assets import is_fiat
from cost_basis_tracker.decimal_utils import HUNDRED, ZERO, decimal_to_str, format_pct
from cost_basis_tracker.exceptions import FeeValidationError, MissingPriceError
from cost_basis_tracker.lots.lot_utils import CryptoFee, get_variance_tolerance
from cost_basis_tracker.models import (
    AssetMovement,
    FeeMovement,
    FeeScope,
    FeeSettlement,
    PriceAtTxTime,
    Transaction,
    VarianceTolerance,
)
from cost_basis_tracker.result import Result


@dataclass
class FiatFee:
    """A fiat-denominated fee on one side of a transfer."""
    asset_symbol: str
    amount: Decimal
    tx_id: int
    date: datetime
    price_at_tx_time: Optional[PriceAtTxTime] = None


def extract_crypto_fee(tx: Transaction, asset_symbol: str) -> CryptoFee:
    """Total fees paid in an asset, with the combined fee type and the first known price."""
    total = ZERO
    has_network = False
    has_platform = False
    price: Optional[PriceAtTxTime] = None

    for fee in tx.fees:
        if fee.asset_symbol != asset_symbol:
            continue
        total += fee.amount
        if fee.scope == FeeScope.NETWORK:
            has_network = True
        elif fee.scope == FeeScope.PLATFORM:
            has_platform = True
        if price is None:
            price = fee.price_at_tx_time

    if has_network and has_platform:
        fee_type = "network+platform"
    elif has_network:
        fee_type = "network"
    elif has_platform:
        fee_type = "platform"
    else:
        fee_type = "none"

    return CryptoFee(amount=total, fee_type=fee_type, price_at_tx_time=price)


def extract_on_chain_fees(tx: Transaction, asset_symbol: str) -> Decimal:
    """Fees in the asset that were deducted on chain; only these reduce the net amount."""
    return sum(
        (f.amount for f in tx.fees if f.asset_symbol == asset_symbol and f.settlement == FeeSettlement.ON_CHAIN),
        ZERO,
    )


def validate_outflow_fees(outflow: AssetMovement, tx: Transaction, source: str, tx_id: int,
                          override: Optional[VarianceTolerance] = None) -> Result:
    """
    Check that an outflow's net amount equals gross minus declared on-chain fees.

    Outflows without a net amount are not checked.

    Returns:
        Result.ok(None), or Result.err(FeeValidationError) when the gap points
        at an undeclared fee beyond the source's error tolerance
    """
    if outflow.net_amount is None:
        return Result.ok(None)

    on_chain_fees = extract_on_chain_fees(tx, outflow.asset_symbol)
    expected_net = outflow.gross_amount - on_chain_fees
    variance = abs(expected_net - outflow.net_amount)
    variance_pct = ZERO if expected_net == ZERO else variance / expected_net * HUNDRED

    tolerance = get_variance_tolerance(source, override)
    if variance_pct > tolerance.error:
        symbol = outflow.asset_symbol
        return Result.err(FeeValidationError(
            f"Outflow fee validation failed at tx {tx_id}: Detected hidden fee. "
            f"grossAmount={decimal_to_str(outflow.gross_amount)} {symbol}, "
            f"declared on-chain fees={decimal_to_str(on_chain_fees)} {symbol}, "
            f"expected netAmount={decimal_to_str(expected_net)} {symbol}, "
            f"actual netAmount={decimal_to_str(outflow.net_amount)} {symbol}, "
            f"hidden fee={decimal_to_str(variance)} {symbol} ({format_pct(variance_pct)}%). "
            f"Exceeds error threshold ({decimal_to_str(tolerance.error)}%). "
            "Review exchange fee policies and ensure all fees are declared."
        ))

    return Result.ok(None)


def collect_fiat_fees(source_tx: Transaction, target_tx: Transaction) -> List[FiatFee]:
    fees = []
    for tx in (source_tx, target_tx):
        for fee in tx.fees:
            if is_fiat(fee.asset_symbol):
                fees.append(FiatFee(
                    asset_symbol=fee.asset_symbol,
                    amount=fee.amount,
                    tx_id=tx.id,
                    date=tx.timestamp,
                    price_at_tx_time=fee.price_at_tx_time,
                ))
    return fees


def _total_fee_value(fees: List[FeeMovement], movement: AssetMovement, tx_id: int) -> Result:
    total = ZERO
    for fee in fees:
        if fee.price_at_tx_time is not None:
            total += fee.amount * fee.price_at_tx_time.price.amount
            continue

        if is_fiat(fee.asset_symbol) and movement.price_at_tx_time is not None:
            price_currency = movement.price_at_tx_time.price.currency
            if fee.asset_symbol.upper() == price_currency.upper():
                total += fee.amount
                continue
            return Result.err(MissingPriceError(
                f"Fee in {fee.asset_symbol} cannot be converted to {price_currency} without exchange rate. "
                f"Transaction: {tx_id}, Fee amount: {decimal_to_str(fee.amount)}"
            ))

        return Result.err(MissingPriceError(
            f"Fee in {fee.asset_symbol} missing price. Cost basis calculation requires all crypto fees "
            f"to be priced. Transaction: {tx_id}, Fee amount: {decimal_to_str(fee.amount)}"
        ))
    return Result.ok(total)


def _movement_value(movement: AssetMovement, is_inflow: bool) -> Decimal:
    if movement.price_at_tx_time is None:
        return ZERO
    # Acquisitions are valued at gross, disposals at what actually left
    amount = movement.gross_amount if is_inflow else movement.effective_amount
    return amount * movement.price_at_tx_time.price.amount


def calculate_fees_in_fiat(tx: Transaction, movement: AssetMovement, is_inflow: bool) -> Result:
    """
    Fiat value of the fees attributable to one movement.

    Acquisitions carry every fee, since fees raise what was paid. Disposals
    carry only on-chain fees, which reduce proceeds; balance-settled platform
    fees do not. Fees are split across the transaction's non-fiat movements
    by value, or equally when every movement is worth zero.

    Args:
        tx: Transaction containing the movement
        movement: Movement to allocate fees to
        is_inflow: True for an acquisition, False for a disposal

    Returns:
        Result.ok(Decimal), or Result.err(MissingPriceError) if a fee cannot be valued
    """
    fees = tx.fees if is_inflow else [f for f in tx.fees if f.settlement == FeeSettlement.ON_CHAIN]
    if not fees:
        return Result.ok(ZERO)

    # The movement itself records a fee
    if any(f.asset_symbol == movement.asset_symbol and f.amount == movement.gross_amount for f in fees):
        return Result.ok(ZERO)

    total_result = _total_fee_value(fees, movement, tx.id)
    if total_result.is_err:
        return total_result
    total_fee_value = total_result.value

    non_fiat = [(m, True) for m in tx.inflows if not is_fiat(m.asset_symbol)]
    non_fiat += [(m, False) for m in tx.outflows if not is_fiat(m.asset_symbol)]
    total_value = sum((_movement_value(m, inflow) for m, inflow in non_fiat), ZERO)

    if total_value != ZERO:
        return Result.ok(total_fee_value * _movement_value(movement, is_inflow) / total_value)

    in_non_fiat = any(
        m.asset_symbol == movement.asset_symbol and m.gross_amount == movement.gross_amount for m, _ in non_fiat
    )
    if not in_non_fiat:
        return Result.ok(ZERO)

    return Result.ok(total_fee_value / len(non_fiat))
