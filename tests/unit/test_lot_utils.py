"""
Unit tests for lot helpers: status, batched updates, variance checks,
transfer cost basis helpers and dependency ordering.
"""
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from cost_basis_tracker.exceptions import TransferOrderError, TransferVarianceError
from cost_basis_tracker.lots.fees import FiatFee
from cost_basis_tracker.lots.lot_utils import (
    CryptoFee,
    DEFAULT_VARIANCE_TOLERANCE,
    apply_lot_updates,
    build_dependency_graph,
    build_transfer_metadata,
    calculate_holding_period_days,
    calculate_inherited_cost_basis,
    calculate_target_cost_basis,
    calculate_transfer_disposal_amount,
    find_transactions_without_prices,
    get_variance_tolerance,
    group_transactions_by_asset,
    lot_status_for,
    sort_with_logical_ordering,
    validate_transfer_variance,
)
from cost_basis_tracker.models import FeePolicy, LotStatus, LotTransfer, VarianceTolerance
from tests.fixtures.mock_data import TEST_TIME, at, make_link, make_lot, make_tx, movement, usd


@pytest.mark.parametrize("remaining,expected", [
    ("1", LotStatus.OPEN),
    ("0.4", LotStatus.PARTIALLY_DISPOSED),
    ("0", LotStatus.FULLY_DISPOSED),
])
def test_lot_status(remaining, expected):
    assert lot_status_for(Decimal(remaining), Decimal("1")) == expected


def test_apply_lot_updates_returns_new_lots():
    lots = [make_lot("A", "BTC", "1", "30000", TEST_TIME), make_lot("B", "BTC", "2", "35000", TEST_TIME)]

    updated = apply_lot_updates(lots, {"A": Decimal("1"), "B": Decimal("0.5")})

    assert [lot.remaining_quantity for lot in updated] == [Decimal("0"), Decimal("1.5")]
    assert [lot.status for lot in updated] == [LotStatus.FULLY_DISPOSED, LotStatus.PARTIALLY_DISPOSED]
    assert lots[0].remaining_quantity == Decimal("1")


def test_apply_lot_updates_rejects_negative_and_unknown():
    lots = [make_lot("A", "BTC", "1", "30000", TEST_TIME)]
    with pytest.raises(ValueError, match="would go negative"):
        apply_lot_updates(lots, {"A": Decimal("1.1")})
    with pytest.raises(ValueError, match="unknown lots"):
        apply_lot_updates(lots, {"Z": Decimal("1")})


def test_holding_period_counts_whole_days():
    start = datetime(2024, 1, 1, 12, tzinfo=timezone.utc)
    assert calculate_holding_period_days(start, datetime(2024, 1, 3, 11, tzinfo=timezone.utc)) == 1


# Tests for variance

def test_tolerance_lookup_and_override():
    assert get_variance_tolerance("Kraken").error == Decimal("2")
    assert get_variance_tolerance("unknown-exchange") == DEFAULT_VARIANCE_TOLERANCE
    override = VarianceTolerance(warn=Decimal("5"), error=Decimal("10"))
    assert get_variance_tolerance("kraken", override) is override


def test_variance_within_error_is_ok():
    result = validate_transfer_variance(Decimal("1"), Decimal("0.985"), "kraken", 7, "BTC")
    assert result.is_ok
    assert result.value.variance_pct == Decimal("1.5")


def test_variance_beyond_error_fails():
    result = validate_transfer_variance(Decimal("1"), Decimal("0.95"), "kraken", 7, "BTC")

    assert isinstance(result.error, TransferVarianceError)
    assert "Transfer amount mismatch at tx 7: 5.00% variance" in str(result.error)


def test_variance_is_zero_when_nothing_transferred():
    assert validate_transfer_variance(Decimal("0"), Decimal("1"), "kraken", 7, "BTC").value.variance_pct == 0


# Tests for transfer cost basis helpers

@pytest.mark.parametrize("policy,expected", [
    (FeePolicy.DISPOSAL, Decimal("0.999")),
    (FeePolicy.ADD_TO_BASIS, Decimal("1")),
])
def test_transfer_disposal_amount(policy, expected):
    outflow = movement("BTC", "1")
    crypto_fee = CryptoFee(amount=Decimal("0.001"), fee_type="network")
    assert calculate_transfer_disposal_amount(outflow, crypto_fee, policy) == expected


def test_transfer_metadata_only_under_add_to_basis():
    crypto_fee = CryptoFee(amount=Decimal("0.001"), fee_type="network", price_at_tx_time=usd(60000))

    assert build_transfer_metadata(crypto_fee, FeePolicy.DISPOSAL, Decimal("1"), Decimal("1")) is None
    assert build_transfer_metadata(crypto_fee, FeePolicy.ADD_TO_BASIS, Decimal("0.25"), Decimal("1")) == {
        "crypto_fee_usd_value": Decimal("15"),
    }
    unpriced = CryptoFee(amount=Decimal("0.001"), fee_type="network")
    assert build_transfer_metadata(unpriced, FeePolicy.ADD_TO_BASIS, Decimal("1"), Decimal("1")) is None


def _transfer(quantity: str, cost: str, fee_value=None) -> LotTransfer:
    return LotTransfer(
        id=f"t-{quantity}",
        calculation_id="calc-test",
        source_lot_id="A",
        link_id="link-1",
        quantity_transferred=Decimal(quantity),
        cost_basis_per_unit=Decimal(cost),
        source_transaction_id=1,
        target_transaction_id=2,
        transfer_date=TEST_TIME,
        created_at=TEST_TIME,
        metadata={"crypto_fee_usd_value": Decimal(fee_value)} if fee_value else None,
    )


def test_inherited_cost_basis_sums_transfers_and_fee_values():
    inherited = calculate_inherited_cost_basis([
        _transfer("0.5", "30000", fee_value="20"),
        _transfer("0.5", "40000", fee_value="20"),
    ])

    assert inherited.total_cost_basis == Decimal("35040")
    assert inherited.transferred_quantity == Decimal("1")
    assert inherited.crypto_fee_usd_added == Decimal("40")


def test_target_cost_basis_adds_priced_fiat_fees():
    fees = [
        FiatFee(asset_symbol="USD", amount=Decimal("10"), tx_id=1, date=TEST_TIME, price_at_tx_time=usd(1)),
        FiatFee(asset_symbol="EUR", amount=Decimal("5"), tx_id=2, date=TEST_TIME),
    ]
    assert calculate_target_cost_basis(Decimal("50000"), fees, Decimal("1")) == Decimal("50010")


# Tests for ordering

def test_link_source_is_ordered_before_earlier_target():
    # The deposit is stamped before the withdrawal (clock skew between platforms)
    withdrawal = make_tx(1, timestamp=at(hours=1))
    deposit = make_tx(2, timestamp=at())
    other = make_tx(3, timestamp=at(hours=-1))
    link = make_link("link-1", 1, 2, "BTC", "1", "1")

    result = sort_with_logical_ordering([deposit, withdrawal, other], [link])

    assert [tx.id for tx in result.value] == [3, 1, 2]


def test_ordering_breaks_ties_by_id():
    txs = [make_tx(5), make_tx(2), make_tx(9)]
    assert [tx.id for tx in sort_with_logical_ordering(txs, []).value] == [2, 5, 9]


def test_dependency_cycle_is_an_error():
    txs = [make_tx(1), make_tx(2)]
    links = [make_link("a", 1, 2, "BTC", "1", "1"), make_link("b", 2, 1, "BTC", "1", "1")]

    result = sort_with_logical_ordering(txs, links)

    assert isinstance(result.error, TransferOrderError)
    assert "Transaction dependency cycle detected" in str(result.error)


def test_dependency_graph_ignores_outside_self_and_duplicate_links():
    txs = [make_tx(1), make_tx(2)]
    links = [
        make_link("a", 1, 2, "BTC", "1", "1"),
        make_link("b", 1, 2, "BTC", "1", "1"),
        make_link("c", 1, 1, "BTC", "1", "1"),
        make_link("d", 1, 99, "BTC", "1", "1"),
    ]

    edges, in_degree = build_dependency_graph(txs, links)

    assert edges == {1: {2}, 2: set()}
    assert in_degree == {1: 0, 2: 1}


def test_group_by_asset_and_find_unpriced():
    txs = [
        make_tx(1, inflows=[movement("BTC", "1", price=50000)], outflows=[movement("USD", "50000")]),
        make_tx(2, inflows=[movement("ETH", "1")], outflows=[movement("BTC", "0.05", price=60000)]),
    ]

    groups = group_transactions_by_asset(txs)

    assert {symbol: [tx.id for tx in group] for symbol, group in groups.items()} == {"BTC": [1, 2], "ETH": [2]}
    assert [tx.id for tx in find_transactions_without_prices(txs)] == [2]
