"""
Builders for transactions, links and lots used across tests.

Amounts may be passed as strings or ints; they are converted to Decimal.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import List, Optional

import pytest

from cost_basis_tracker.decimal_utils import to_decimal
from cost_basis_tracker.lots.lot_utils import create_acquisition_lot
from cost_basis_tracker.models import (
    AcquisitionLot,
    AssetMovement,
    BlockchainInfo,
    CostBasisMethod,
    FeeMovement,
    FeeScope,
    FeeSettlement,
    LinkStatus,
    LinkType,
    MatchCriteria,
    Price,
    PriceAtTxTime,
    PriceSource,
    SourceType,
    Transaction,
    TransactionLink,
)

TEST_TIME = datetime(2024, 1, 15, 10, 0, 0, tzinfo=timezone.utc)


def at(hours: float = 0, days: float = 0) -> datetime:
    """A timestamp offset from TEST_TIME."""
    return TEST_TIME + timedelta(hours=hours, days=days)


def usd(amount, source: PriceSource = PriceSource.EXCHANGE_EXECUTION,
        when: Optional[datetime] = None) -> PriceAtTxTime:
    return PriceAtTxTime(
        price=Price(amount=to_decimal(amount), currency="USD"),
        source=source,
        fetched_at=when or TEST_TIME,
        granularity="exact",
    )


def movement(symbol: str, amount, price=None, net=None, asset_id: Optional[str] = None) -> AssetMovement:
    """Build a movement; price may be a number (USD, exchange-execution) or a PriceAtTxTime."""
    if price is not None and not isinstance(price, PriceAtTxTime):
        price = usd(price)
    return AssetMovement(
        asset_id=asset_id or f"test:{symbol.lower()}",
        asset_symbol=symbol,
        gross_amount=to_decimal(amount),
        net_amount=to_decimal(net) if net is not None else None,
        price_at_tx_time=price,
    )


def fee(symbol: str, amount, price=None, scope: FeeScope = FeeScope.NETWORK,
        settlement: FeeSettlement = FeeSettlement.ON_CHAIN) -> FeeMovement:
    if price is not None and not isinstance(price, PriceAtTxTime):
        price = usd(price)
    return FeeMovement(
        asset_id=f"test:{symbol.lower()}",
        asset_symbol=symbol,
        amount=to_decimal(amount),
        scope=scope,
        settlement=settlement,
        price_at_tx_time=price,
    )


def make_tx(tx_id: int, source: str = "kraken", source_type: SourceType = SourceType.EXCHANGE,
            timestamp: Optional[datetime] = None, inflows: Optional[List[AssetMovement]] = None,
            outflows: Optional[List[AssetMovement]] = None, fees: Optional[List[FeeMovement]] = None,
            from_address: Optional[str] = None, to_address: Optional[str] = None,
            tx_hash: Optional[str] = None, chain: Optional[str] = None) -> Transaction:
    blockchain = None
    if tx_hash is not None:
        blockchain = BlockchainInfo(name=chain or source, transaction_hash=tx_hash)
    return Transaction(
        id=tx_id,
        external_id=f"{source}-{tx_id}",
        source=source,
        source_type=source_type,
        timestamp=timestamp or TEST_TIME,
        inflows=inflows or [],
        outflows=outflows or [],
        fees=fees or [],
        from_address=from_address,
        to_address=to_address,
        blockchain=blockchain,
    )


def make_link(link_id: str, source_tx_id: int, target_tx_id: int, symbol: str, source_amount, target_amount,
              status: LinkStatus = LinkStatus.CONFIRMED,
              link_type: LinkType = LinkType.EXCHANGE_TO_BLOCKCHAIN) -> TransactionLink:
    return TransactionLink(
        id=link_id,
        source_transaction_id=source_tx_id,
        target_transaction_id=target_tx_id,
        asset_symbol=symbol,
        source_asset_id=f"test:{symbol.lower()}",
        target_asset_id=f"test:{symbol.lower()}",
        source_amount=to_decimal(source_amount),
        target_amount=to_decimal(target_amount),
        link_type=link_type,
        confidence_score=Decimal("1"),
        match_criteria=MatchCriteria(
            asset_match=True,
            amount_similarity=Decimal("1"),
            timing_valid=True,
            timing_hours=0.5,
        ),
        status=status,
        created_at=TEST_TIME,
        updated_at=TEST_TIME,
    )


def make_lot(lot_id: str, symbol: str, quantity, cost_basis_per_unit, acquired: datetime,
             remaining=None, tx_id: int = 1, method: CostBasisMethod = CostBasisMethod.FIFO) -> AcquisitionLot:
    lot = create_acquisition_lot(
        lot_id=lot_id,
        calculation_id="calc-test",
        acquisition_transaction_id=tx_id,
        asset_id=f"test:{symbol.lower()}",
        asset_symbol=symbol,
        quantity=to_decimal(quantity),
        cost_basis_per_unit=to_decimal(cost_basis_per_unit),
        method=method,
        acquisition_date=acquired,
        now=TEST_TIME,
    )
    if remaining is not None:
        lot.remaining_quantity = to_decimal(remaining)
    return lot


@pytest.fixture
def btc_transfer_transactions() -> List[Transaction]:
    """
    Buy 1 BTC on Kraken, withdraw it to a wallet with a 0.0005 BTC network fee.

    1: buy 1 BTC for 50000 USD
    2: withdraw 1 BTC gross / 0.9995 net at 60000
    3: deposit 0.9995 BTC on chain
    """
    return [
        make_tx(
            1,
            timestamp=at(days=-30),
            inflows=[movement("BTC", "1", price=50000)],
            outflows=[movement("USD", "50000", price=1)],
        ),
        make_tx(
            2,
            timestamp=at(),
            outflows=[movement("BTC", "1", price=60000, net="0.9995")],
            fees=[fee("BTC", "0.0005", price=60000)],
            to_address="bc1qtestwallet",
        ),
        make_tx(
            3,
            source="bitcoin",
            source_type=SourceType.BLOCKCHAIN,
            timestamp=at(hours=0.5),
            inflows=[movement("BTC", "0.9995", price=60000)],
            from_address="bc1qtestwallet",
            tx_hash="a1b2c3",
        ),
    ]
