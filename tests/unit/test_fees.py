"""
Unit tests for fee extraction, outflow fee validation and fee valuation.
"""
from decimal import Decimal

import pytest

from cost_basis_tracker.exceptions import FeeValidationError, MissingPriceError
from cost_basis_tracker.lots.fees import (
    calculate_fees_in_fiat,
    collect_fiat_fees,
    extract_crypto_fee,
    extract_on_chain_fees,
    validate_outflow_fees,
)
from cost_basis_tracker.lots.matcher import build_acquisition_lot_from_inflow, calculate_net_proceeds
from cost_basis_tracker.models import CostBasisMethod, FeeScope, FeeSettlement
from tests.fixtures.mock_data import fee, make_tx, movement


@pytest.mark.parametrize("fees,expected_type,expected_amount", [
    ([], "none", "0"),
    ([fee("BTC", "0.0005")], "network", "0.0005"),
    ([fee("BTC", "0.0002", scope=FeeScope.PLATFORM)], "platform", "0.0002"),
    ([fee("BTC", "0.0005"), fee("BTC", "0.0001", scope=FeeScope.PLATFORM)], "network+platform", "0.0006"),
    ([fee("ETH", "0.01")], "none", "0"),
])
def test_extract_crypto_fee(fees, expected_type, expected_amount):
    tx = make_tx(1, outflows=[movement("BTC", "1")], fees=fees)

    crypto_fee = extract_crypto_fee(tx, "BTC")

    assert crypto_fee.fee_type == expected_type
    assert crypto_fee.amount == Decimal(expected_amount)


def test_extract_crypto_fee_takes_first_price():
    tx = make_tx(1, fees=[fee("BTC", "0.0001"), fee("BTC", "0.0002", price=60000)])
    assert extract_crypto_fee(tx, "BTC").price_at_tx_time.price.amount == Decimal("60000")


def test_only_on_chain_fees_count_against_net():
    tx = make_tx(1, fees=[
        fee("BTC", "0.0005"),
        fee("BTC", "0.0003", scope=FeeScope.PLATFORM, settlement=FeeSettlement.BALANCE),
    ])
    assert extract_on_chain_fees(tx, "BTC") == Decimal("0.0005")


# Tests for validate_outflow_fees

def test_declared_fee_explains_net_amount():
    outflow = movement("BTC", "1", net="0.9995")
    tx = make_tx(1, outflows=[outflow], fees=[fee("BTC", "0.0005")])
    assert validate_outflow_fees(outflow, tx, "kraken", 1).is_ok


def test_outflow_without_net_is_not_checked():
    outflow = movement("BTC", "1")
    tx = make_tx(1, outflows=[outflow])
    assert validate_outflow_fees(outflow, tx, "kraken", 1).is_ok


def test_hidden_fee_is_reported():
    outflow = movement("BTC", "1", net="0.95")
    tx = make_tx(4, outflows=[outflow])

    result = validate_outflow_fees(outflow, tx, "kraken", 4)

    assert isinstance(result.error, FeeValidationError)
    message = str(result.error)
    assert "Detected hidden fee" in message
    assert "hidden fee=0.05 BTC (5.00%)" in message
    assert "Exceeds error threshold (2%)" in message


def test_small_gap_is_within_tolerance():
    outflow = movement("BTC", "1", net="0.99")
    tx = make_tx(1, outflows=[outflow])
    assert validate_outflow_fees(outflow, tx, "binance", 1).is_ok


# Tests for fee valuation

def test_on_chain_fee_reduces_disposal_proceeds():
    outflow = movement("ETH", "1", price=3500)
    tx = make_tx(1, outflows=[outflow], fees=[fee("ETH", "0.002", price=3500)])

    assert calculate_fees_in_fiat(tx, outflow, False).value == Decimal("7")
    proceeds = calculate_net_proceeds(tx, outflow).value
    assert proceeds.proceeds_per_unit == Decimal("3493")
    assert proceeds.total_fee_amount == Decimal("7")


def test_balance_settled_platform_fee_does_not_reduce_proceeds():
    outflow = movement("ETH", "1", price=3500)
    tx = make_tx(1, outflows=[outflow], fees=[
        fee("ETH", "0.002", price=3500, scope=FeeScope.PLATFORM, settlement=FeeSettlement.BALANCE),
    ])

    assert calculate_fees_in_fiat(tx, outflow, False).value == Decimal("0")
    assert calculate_net_proceeds(tx, outflow).value.proceeds_per_unit == Decimal("3500")


def test_fiat_fee_in_price_currency_raises_acquisition_cost():
    inflow = movement("BTC", "1", price=50000)
    tx = make_tx(1, inflows=[inflow], outflows=[movement("USD", "50000")], fees=[fee("USD", "10")])

    assert calculate_fees_in_fiat(tx, inflow, True).value == Decimal("10")
    lot = build_acquisition_lot_from_inflow(tx, inflow, "calc-test", CostBasisMethod.FIFO).value
    assert lot.cost_basis_per_unit == Decimal("50010")
    assert lot.total_cost_basis == Decimal("50010")


def test_fees_split_across_swap_legs_by_value():
    inflow = movement("BTC", "0.1", price=50000)
    outflow = movement("ETH", "2", price=2500)
    tx = make_tx(1, inflows=[inflow], outflows=[outflow], fees=[fee("USD", "10", price=1)])

    assert calculate_fees_in_fiat(tx, inflow, True).value == Decimal("5")


def test_unpriced_crypto_fee_is_an_error():
    outflow = movement("ETH", "1", price=3500)
    tx = make_tx(3, outflows=[outflow], fees=[fee("ETH", "0.002")])

    result = calculate_fees_in_fiat(tx, outflow, False)

    assert isinstance(result.error, MissingPriceError)
    assert "Fee in ETH missing price" in str(result.error)


def test_fiat_fee_in_other_currency_needs_a_rate():
    inflow = movement("BTC", "1", price=50000)
    tx = make_tx(1, inflows=[inflow], fees=[fee("EUR", "10")])

    result = calculate_fees_in_fiat(tx, inflow, True)

    assert isinstance(result.error, MissingPriceError)
    assert "cannot be converted to USD" in str(result.error)


def test_unpriced_inflow_cannot_become_a_lot():
    inflow = movement("BTC", "1")
    tx = make_tx(1, inflows=[inflow])

    result = build_acquisition_lot_from_inflow(tx, inflow, "calc-test", CostBasisMethod.FIFO)

    assert isinstance(result.error, MissingPriceError)


def test_collect_fiat_fees_from_both_sides():
    source = make_tx(1, fees=[fee("USD", "2", price=1), fee("BTC", "0.0005")])
    target = make_tx(2, fees=[fee("EUR", "1")])

    fiat_fees = collect_fiat_fees(source, target)

    assert [(f.asset_symbol, f.tx_id) for f in fiat_fees] == [("USD", 1), ("EUR", 2)]
