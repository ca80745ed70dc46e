"""
Cost basis strategies: which open lots a disposal consumes.

Strategies never mutate the lots they are given; they return the disposal
slices and leave quantity updates to the caller.
"""

import uuid
from abc import ABC, abstractmethod
from typing import Dict, List, Type, Union

from cost_basis_tracker.decimal_utils import DUST_TOLERANCE, ZERO, decimal_to_str
from cost_basis_tracker.exceptions import InsufficientLotsError, StrategyNotImplementedError
from cost_basis_tracker.lots.lot_utils import calculate_holding_period_days
from cost_basis_tracker.models import AcquisitionLot, CostBasisMethod, DisposalRequest, LotDisposal
from cost_basis_tracker.result import Result


def _lot_disposal(disposal: DisposalRequest, lot: AcquisitionLot, quantity, cost_basis_per_unit) -> LotDisposal:
    total_proceeds = quantity * disposal.proceeds_per_unit
    total_cost_basis = quantity * cost_basis_per_unit
    return LotDisposal(
        id=str(uuid.uuid4()),
        lot_id=lot.id,
        disposal_transaction_id=disposal.transaction_id,
        quantity_disposed=quantity,
        proceeds_per_unit=disposal.proceeds_per_unit,
        total_proceeds=total_proceeds,
        cost_basis_per_unit=cost_basis_per_unit,
        total_cost_basis=total_cost_basis,
        gain_loss=total_proceeds - total_cost_basis,
        disposal_date=disposal.date,
        holding_period_days=calculate_holding_period_days(lot.acquisition_date, disposal.date),
    )


def _insufficient(disposal: DisposalRequest, unmatched) -> InsufficientLotsError:
    return InsufficientLotsError(
        f"Insufficient acquisition lots for disposal. Asset: {disposal.asset_symbol}, "
        f"Disposal quantity: {decimal_to_str(disposal.quantity)}, "
        f"Unmatched quantity: {decimal_to_str(unmatched)}. "
        "This usually means an acquisition is missing from the imported history."
    )


def match_disposal_to_sorted_lots(disposal: DisposalRequest, sorted_lots: List[AcquisitionLot]) -> Result:
    """
    Consume lots in the given order until the disposal quantity is covered.

    Lots with nothing remaining are skipped. A shortfall at or below dust
    tolerance is accepted.

    Returns:
        Result.ok(List[LotDisposal]), or Result.err(InsufficientLotsError)
    """
    remaining = disposal.quantity
    disposals: List[LotDisposal] = []

    for lot in sorted_lots:
        if remaining <= ZERO:
            break
        if lot.remaining_quantity <= ZERO:
            continue
        quantity = min(lot.remaining_quantity, remaining)
        disposals.append(_lot_disposal(disposal, lot, quantity, lot.cost_basis_per_unit))
        remaining -= quantity

    if remaining > DUST_TOLERANCE:
        return Result.err(_insufficient(disposal, remaining))

    return Result.ok(disposals)


class CostBasisStrategy(ABC):
    """Interface for lot selection methods."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Method name recorded on lots for provenance."""
        pass

    @property
    def method(self) -> CostBasisMethod:
        return CostBasisMethod(self.name)

    @abstractmethod
    def match_disposal(self, disposal: DisposalRequest, open_lots: List[AcquisitionLot]) -> Result:
        """
        Select lot slices covering a disposal.

        Args:
            disposal: What is being disposed, when, and at what unit proceeds
            open_lots: Lots of the disposed asset

        Returns:
            Result.ok(List[LotDisposal]), or Result.err with a typed error
        """
        pass


class FifoStrategy(CostBasisStrategy):
    """First in, first out: oldest lots first."""

    @property
    def name(self) -> str:
        return CostBasisMethod.FIFO.value

    def match_disposal(self, disposal: DisposalRequest, open_lots: List[AcquisitionLot]) -> Result:
        ordered = sorted(open_lots, key=lambda lot: (lot.acquisition_date, lot.id))
        return match_disposal_to_sorted_lots(disposal, ordered)


class LifoStrategy(CostBasisStrategy):
    """Last in, first out: newest lots first."""

    @property
    def name(self) -> str:
        return CostBasisMethod.LIFO.value

    def match_disposal(self, disposal: DisposalRequest, open_lots: List[AcquisitionLot]) -> Result:
        # Newest first, id ascending within the same date
        by_id = sorted(open_lots, key=lambda lot: lot.id)
        ordered = sorted(by_id, key=lambda lot: lot.acquisition_date, reverse=True)
        return match_disposal_to_sorted_lots(disposal, ordered)


class AverageCostStrategy(CostBasisStrategy):
    """
    Pooled average cost.

    Every open lot is valued at the pool's weighted average unit cost, and
    the disposal is spread over the lots in proportion to what each has
    remaining. Per-lot slices keep holding periods and remaining quantities
    accurate while the cost basis reflects the pool.
    """

    @property
    def name(self) -> str:
        return CostBasisMethod.AVERAGE_COST.value

    def match_disposal(self, disposal: DisposalRequest, open_lots: List[AcquisitionLot]) -> Result:
        if disposal.quantity <= ZERO:
            return Result.ok([])

        lots = sorted(
            (lot for lot in open_lots if lot.remaining_quantity > ZERO),
            key=lambda lot: (lot.acquisition_date, lot.id),
        )
        pool_quantity = sum((lot.remaining_quantity for lot in lots), ZERO)

        shortfall = disposal.quantity - pool_quantity
        if shortfall > DUST_TOLERANCE:
            return Result.err(_insufficient(disposal, shortfall))
        if pool_quantity == ZERO:
            return Result.ok([])

        pool_cost = sum((lot.remaining_quantity * lot.cost_basis_per_unit for lot in lots), ZERO)
        average_cost = pool_cost / pool_quantity
        to_dispose = min(disposal.quantity, pool_quantity)

        disposals: List[LotDisposal] = []
        allocated = ZERO
        for index, lot in enumerate(lots):
            if index == len(lots) - 1:
                # Last lot absorbs rounding from the pro-rata split
                quantity = to_dispose - allocated
            else:
                quantity = to_dispose * lot.remaining_quantity / pool_quantity
            quantity = min(quantity, lot.remaining_quantity)
            if quantity <= ZERO:
                continue
            disposals.append(_lot_disposal(disposal, lot, quantity, average_cost))
            allocated += quantity

        return Result.ok(disposals)


class SpecificIdStrategy(CostBasisStrategy):
    """Specific identification. Not supported: lot selection needs user input."""

    @property
    def name(self) -> str:
        return CostBasisMethod.SPECIFIC_ID.value

    def match_disposal(self, disposal: DisposalRequest, open_lots: List[AcquisitionLot]) -> Result:
        return Result.err(StrategyNotImplementedError(
            "Specific identification is not implemented. Choose fifo, lifo or average-cost."
        ))


STRATEGIES: Dict[CostBasisMethod, Type[CostBasisStrategy]] = {
    CostBasisMethod.FIFO: FifoStrategy,
    CostBasisMethod.LIFO: LifoStrategy,
    CostBasisMethod.AVERAGE_COST: AverageCostStrategy,
}


def get_strategy(method: Union[CostBasisMethod, str]) -> CostBasisStrategy:
    """
    Build the strategy for a cost basis method.

    Raises:
        StrategyNotImplementedError: For specific-id
        ValueError: For an unknown method name
    """
    if isinstance(method, str):
        method = CostBasisMethod(method.lower())
    if method == CostBasisMethod.SPECIFIC_ID:
        raise StrategyNotImplementedError(
            "Specific identification is not implemented. Choose fifo, lifo or average-cost."
        )
    return STRATEGIES[method]()
