"""
Two-sided bookkeeping for confirmed transfer links.

The source leg removes the transferred quantity from the sender's lots and
records a LotTransfer per lot slice. The target leg turns those transfers
into a new lot at the receiver that inherits their cost basis.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, List, Optional

from cost_basis_tracker.decimal_utils import ZERO
from cost_basis_tracker.exceptions import LotNotFoundError, TransferOrderError, TransferVarianceError
from cost_basis_tracker.lots.fees import collect_fiat_fees, extract_crypto_fee, validate_outflow_fees
from cost_basis_tracker.lots.lot_utils import (
    CryptoFee,
    apply_lot_updates,
    build_transfer_metadata,
    calculate_inherited_cost_basis,
    calculate_target_cost_basis,
    calculate_transfer_disposal_amount,
    create_acquisition_lot,
    validate_transfer_variance,
)
from cost_basis_tracker.lots.strategies import CostBasisStrategy
from cost_basis_tracker.models import (
    AcquisitionLot,
    AssetMovement,
    CostBasisMethod,
    DisposalRequest,
    FeePolicy,
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
class TransferSourceResult:
    # Fee disposals only; the transferred slices are recorded as transfers
    disposals: List[LotDisposal] = field(default_factory=list)
    transfers: List[LotTransfer] = field(default_factory=list)
    updated_lots: List[AcquisitionLot] = field(default_factory=list)
    warnings: List[ProcessingWarning] = field(default_factory=list)


@dataclass
class TransferTargetResult:
    lot: AcquisitionLot
    warnings: List[ProcessingWarning] = field(default_factory=list)


def _add(updates: Dict[str, Decimal], lot_id: str, quantity: Decimal):
    updates[lot_id] = updates.get(lot_id, ZERO) + quantity


def process_transfer_source(tx: Transaction, outflow: AssetMovement, link: TransactionLink,
                            lots: List[AcquisitionLot], strategy: CostBasisStrategy, calculation_id: str,
                            fee_policy: FeePolicy, variance_tolerance: Optional[VarianceTolerance] = None,
                            effective_amount: Optional[Decimal] = None) -> Result:
    """
    Move lot quantity out of the source side of a transfer.

    Args:
        tx: Source transaction
        outflow: The linked outflow movement
        link: Confirmed link to the target transaction
        lots: All lots of the calculation so far
        strategy: Lot selection method
        calculation_id: Id of the running calculation
        fee_policy: disposal sells the fee at its own price; add-to-basis
            carries the fee's value into the target lot
        variance_tolerance: Overrides the per-source tolerance
        effective_amount: External amount of a UTXO outflow after removing
            internal change. The fee is already netted out of it.

    Returns:
        Result.ok(TransferSourceResult), or Result.err with a typed error
    """
    warnings: List[ProcessingWarning] = []
    is_partial_outflow = effective_amount is not None

    if is_partial_outflow:
        crypto_fee = CryptoFee(amount=ZERO, fee_type="none")
    else:
        crypto_fee = extract_crypto_fee(tx, outflow.asset_symbol)
        fee_check = validate_outflow_fees(outflow, tx, tx.source, tx.id, variance_tolerance)
        if fee_check.is_err:
            return fee_check

    if effective_amount is not None:
        net_transfer_amount = effective_amount
    else:
        net_transfer_amount = outflow.effective_amount

    variance_result = validate_transfer_variance(
        net_transfer_amount, link.target_amount, tx.source, tx.id, outflow.asset_symbol, variance_tolerance
    )
    if variance_result.is_err:
        return variance_result
    variance = variance_result.value
    if variance.variance_pct > variance.tolerance.warn:
        warnings.append(ProcessingWarning(type=WarningType.VARIANCE, data={
            "asset_symbol": outflow.asset_symbol,
            "variance_pct": variance.variance_pct,
            "net_transfer_amount": net_transfer_amount,
            "link_target_amount": link.target_amount,
        }))

    open_lots = [lot for lot in lots if lot.asset_symbol == outflow.asset_symbol and lot.remaining_quantity > ZERO]

    if is_partial_outflow:
        disposal_quantity = effective_amount
    else:
        disposal_quantity = calculate_transfer_disposal_amount(outflow, crypto_fee, fee_policy)

    slices_result = strategy.match_disposal(
        DisposalRequest(
            transaction_id=tx.id,
            asset_symbol=outflow.asset_symbol,
            quantity=disposal_quantity,
            date=tx.timestamp,
            proceeds_per_unit=ZERO,
        ),
        open_lots,
    )
    if slices_result.is_err:
        return slices_result

    carry_fee = crypto_fee.amount > ZERO and fee_policy == FeePolicy.ADD_TO_BASIS
    if carry_fee and crypto_fee.price_at_tx_time is None:
        warnings.append(ProcessingWarning(type=WarningType.MISSING_PRICE, data={
            "asset_symbol": outflow.asset_symbol,
            "fee_amount": crypto_fee.amount,
            "link_id": link.id,
        }))

    lot_ids = {lot.id for lot in lots}
    now = datetime.now(timezone.utc)
    updates: Dict[str, Decimal] = {}
    transfers: List[LotTransfer] = []

    for lot_slice in slices_result.value:
        if lot_slice.lot_id not in lot_ids:
            return Result.err(LotNotFoundError(f"Lot {lot_slice.lot_id} not found"))
        metadata = None
        if carry_fee:
            metadata = build_transfer_metadata(
                crypto_fee, fee_policy, lot_slice.quantity_disposed, disposal_quantity
            )
        transfers.append(LotTransfer(
            id=str(uuid.uuid4()),
            calculation_id=calculation_id,
            source_lot_id=lot_slice.lot_id,
            link_id=link.id,
            quantity_transferred=lot_slice.quantity_disposed * (net_transfer_amount / disposal_quantity),
            cost_basis_per_unit=lot_slice.cost_basis_per_unit,
            source_transaction_id=tx.id,
            target_transaction_id=link.target_transaction_id,
            transfer_date=tx.timestamp,
            metadata=metadata,
            created_at=now,
        ))
        _add(updates, lot_slice.lot_id, lot_slice.quantity_disposed)

    disposals: List[LotDisposal] = []
    if crypto_fee.amount > ZERO and fee_policy == FeePolicy.DISPOSAL:
        # The fee is sold for nothing out of whatever the transfer left behind
        lots_after_transfer = [
            lot for lot in apply_lot_updates(open_lots, updates, now) if lot.remaining_quantity > ZERO
        ]
        fee_result = strategy.match_disposal(
            DisposalRequest(
                transaction_id=tx.id,
                asset_symbol=outflow.asset_symbol,
                quantity=crypto_fee.amount,
                date=tx.timestamp,
                proceeds_per_unit=ZERO,
            ),
            lots_after_transfer,
        )
        if fee_result.is_err:
            return fee_result
        for fee_slice in fee_result.value:
            _add(updates, fee_slice.lot_id, fee_slice.quantity_disposed)
            disposals.append(fee_slice)

    return Result.ok(TransferSourceResult(
        disposals=disposals,
        transfers=transfers,
        updated_lots=apply_lot_updates(lots, updates, now),
        warnings=warnings,
    ))


def process_transfer_target(tx: Transaction, inflow: AssetMovement, link: TransactionLink,
                            source_tx: Transaction, transfers_for_link: List[LotTransfer], calculation_id: str,
                            method: CostBasisMethod,
                            variance_tolerance: Optional[VarianceTolerance] = None) -> Result:
    """
    Create the receiving lot of a transfer from the lot transfers of its link.

    The lot inherits the transferred cost basis, plus any fee value carried
    in transfer metadata and any priced fiat fees on either side.

    Returns:
        Result.ok(TransferTargetResult), or Result.err(TransferOrderError) when
        the source leg has not been processed yet
    """
    if not transfers_for_link:
        return Result.err(TransferOrderError(
            f"No lot transfers found for link {link.id} (target tx {tx.id}). "
            f"Source transaction {link.source_transaction_id} should have been processed first."
        ))

    warnings: List[ProcessingWarning] = []
    inherited = calculate_inherited_cost_basis(transfers_for_link)
    received_quantity = inflow.gross_amount
    if received_quantity <= ZERO:
        return Result.err(TransferVarianceError(
            f"Received quantity must be positive for link {link.id} (target tx {tx.id})"
        ))

    variance_result = validate_transfer_variance(
        inherited.transferred_quantity, received_quantity, tx.source, tx.id, inflow.asset_symbol, variance_tolerance
    )
    if variance_result.is_err:
        return variance_result
    variance = variance_result.value
    if variance.variance_pct > variance.tolerance.warn:
        warnings.append(ProcessingWarning(type=WarningType.VARIANCE, data={
            "link_id": link.id,
            "target_tx_id": tx.id,
            "variance_pct": variance.variance_pct,
            "transferred": inherited.transferred_quantity,
            "received": received_quantity,
        }))

    fiat_fees = collect_fiat_fees(source_tx, tx)
    for fee in fiat_fees:
        if fee.price_at_tx_time is None:
            warnings.append(ProcessingWarning(type=WarningType.MISSING_PRICE, data={
                "tx_id": fee.tx_id,
                "link_id": link.id,
                "fee_asset_symbol": fee.asset_symbol,
                "fee_amount": fee.amount,
                "date": fee.date.isoformat(),
            }))

    lot = create_acquisition_lot(
        lot_id=str(uuid.uuid4()),
        calculation_id=calculation_id,
        acquisition_transaction_id=tx.id,
        asset_id=inflow.asset_id,
        asset_symbol=inflow.asset_symbol,
        quantity=received_quantity,
        cost_basis_per_unit=calculate_target_cost_basis(inherited.total_cost_basis, fiat_fees, received_quantity),
        method=method,
        acquisition_date=tx.timestamp,
    )
    return Result.ok(TransferTargetResult(lot=lot, warnings=warnings))
