"""Shared test fixtures for cost basis tracker tests."""
# Mock client fixtures
from .mock_clients import InMemoryLedger, MockPriceClient, mock_price_client, in_memory_ledger

# Builders and scenario fixtures
from .mock_data import (
    TEST_TIME,
    at,
    usd,
    movement,
    fee,
    make_tx,
    make_link,
    make_lot,
    btc_transfer_transactions,
)

# Mock config fixtures and constants
from .mock_config import (
    mock_matching_settings,
    mock_tracker_settings,
    mock_coingecko_settings,
    mock_all_settings,
    # Test constants
    TEST_MAX_TIMING_WINDOW_HOURS,
    TEST_MIN_AMOUNT_SIMILARITY,
    TEST_MIN_CONFIDENCE_SCORE,
    TEST_AUTO_CONFIRM_THRESHOLD,
    TEST_COST_BASIS_METHOD,
    TEST_FEE_POLICY,
    TEST_LEDGER_PATH,
    TEST_COINGECKO_API_KEY,
    TEST_COINGECKO_BASE_URL,
)

__all__ = [
    # Fixtures
    'mock_price_client',
    'in_memory_ledger',
    'btc_transfer_transactions',
    'mock_matching_settings',
    'mock_tracker_settings',
    'mock_coingecko_settings',
    'mock_all_settings',
    # Test doubles and builders
    'InMemoryLedger',
    'MockPriceClient',
    'TEST_TIME',
    'at',
    'usd',
    'movement',
    'fee',
    'make_tx',
    'make_link',
    'make_lot',
    # Constants
    'TEST_MAX_TIMING_WINDOW_HOURS',
    'TEST_MIN_AMOUNT_SIMILARITY',
    'TEST_MIN_CONFIDENCE_SCORE',
    'TEST_AUTO_CONFIRM_THRESHOLD',
    'TEST_COST_BASIS_METHOD',
    'TEST_FEE_POLICY',
    'TEST_LEDGER_PATH',
    'TEST_COINGECKO_API_KEY',
    'TEST_COINGECKO_BASE_URL',
]
