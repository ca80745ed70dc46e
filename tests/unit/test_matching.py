"""
Unit tests for transfer match scoring.

Covers amount similarity, timing, address and hash checks, the confidence
formula and potential match discovery for a single source.
"""
import math
from datetime import datetime
from decimal import Decimal
from typing import Optional

import pytest

from cost_basis_tracker.linking.matching import (
    calculate_amount_similarity,
    calculate_confidence_score,
    calculate_time_difference_hours,
    check_address_match,
    check_transaction_hash_match,
    determine_link_type,
    find_potential_matches,
    is_timing_valid,
    normalize_transaction_hash,
    should_auto_confirm,
)
from cost_basis_tracker.models import Direction, LinkType, MatchCriteria, SourceType, TransactionCandidate
from tests.fixtures.mock_data import at


def candidate(tx_id: int, direction: Direction, amount: str, timestamp: datetime,
              source_type: SourceType = SourceType.EXCHANGE, symbol: str = "BTC",
              from_address: Optional[str] = None, to_address: Optional[str] = None,
              tx_hash: Optional[str] = None) -> TransactionCandidate:
    source_name = "kraken" if source_type == SourceType.EXCHANGE else "bitcoin"
    return TransactionCandidate(
        id=tx_id,
        external_id=f"{source_name}-{tx_id}",
        source_name=source_name,
        source_type=source_type,
        timestamp=timestamp,
        asset_id=f"test:{symbol.lower()}",
        asset_symbol=symbol,
        amount=Decimal(amount),
        direction=direction,
        from_address=from_address,
        to_address=to_address,
        blockchain_transaction_hash=tx_hash,
    )


# Tests for calculate_amount_similarity

@pytest.mark.parametrize("source,target,expected", [
    ("1.5", "1.5", Decimal("1")),
    ("1.0", "0.95", Decimal("0.95")),
    ("1.0", "1.0005", Decimal("0.99")),  # rounding above source
    ("1.0", "1.15", Decimal("0")),       # well above source
    ("0", "1", Decimal("0")),
    ("1", "0", Decimal("0")),
])
def test_amount_similarity(source, target, expected):
    assert calculate_amount_similarity(Decimal(source), Decimal(target)) == expected


def test_amount_similarity_decreases_as_target_shrinks():
    source = Decimal("1")
    scores = [calculate_amount_similarity(source, Decimal(t)) for t in ("1", "0.99", "0.9", "0.5")]
    assert scores == sorted(scores, reverse=True)


# Tests for timing

def test_time_difference_in_hours():
    assert calculate_time_difference_hours(at(), at(hours=2)) == pytest.approx(2)


def test_time_difference_is_infinite_when_target_precedes_source():
    assert calculate_time_difference_hours(at(hours=1), at()) == math.inf


@pytest.mark.parametrize("target_offset,expected", [
    (0, True),
    (48, True),
    (48.5, False),
    (-1, False),
])
def test_timing_window(mock_matching_settings, target_offset, expected):
    assert is_timing_valid(at(), at(hours=target_offset), mock_matching_settings) is expected


# Tests for link types, addresses and hashes

@pytest.mark.parametrize("source_type,target_type,expected", [
    (SourceType.EXCHANGE, SourceType.BLOCKCHAIN, LinkType.EXCHANGE_TO_BLOCKCHAIN),
    (SourceType.BLOCKCHAIN, SourceType.BLOCKCHAIN, LinkType.BLOCKCHAIN_TO_BLOCKCHAIN),
    (SourceType.EXCHANGE, SourceType.EXCHANGE, LinkType.EXCHANGE_TO_EXCHANGE),
    (SourceType.BLOCKCHAIN, SourceType.EXCHANGE, LinkType.EXCHANGE_TO_BLOCKCHAIN),
])
def test_determine_link_type(source_type, target_type, expected):
    assert determine_link_type(source_type, target_type) == expected


@pytest.mark.parametrize("to_address,from_address,expected", [
    ("bc1qABC", "bc1qabc", True),
    ("bc1qabc", "bc1qother", False),
    (None, "bc1qabc", None),
    ("bc1qabc", None, None),
])
def test_check_address_match(to_address, from_address, expected):
    source = candidate(1, Direction.OUT, "1", at(), to_address=to_address)
    target = candidate(2, Direction.IN, "1", at(), SourceType.BLOCKCHAIN, from_address=from_address)
    assert check_address_match(source, target) is expected


def test_normalize_transaction_hash_strips_log_index():
    assert normalize_transaction_hash("0xabc-12") == "0xabc"
    assert normalize_transaction_hash("0xabc") == "0xabc"


@pytest.mark.parametrize("source_hash,target_hash,expected", [
    ("0xABC", "0xabc", True),          # hex hashes compare case-insensitively
    ("0xabc-3", "0xabc", True),        # index stripped when only one side has it
    ("0xabc-1", "0xabc-2", False),     # both indexed: must match exactly
    ("AbC123", "abc123", False),       # non-hex encodings are case-sensitive
    ("abc123", "abc123", True),
    (None, "abc123", None),
])
def test_check_transaction_hash_match(source_hash, target_hash, expected):
    source = candidate(1, Direction.OUT, "1", at(), tx_hash=source_hash)
    target = candidate(2, Direction.IN, "1", at(), SourceType.BLOCKCHAIN, tx_hash=target_hash)
    assert check_transaction_hash_match(source, target) is expected


# Tests for calculate_confidence_score

def test_confidence_is_zero_when_assets_differ():
    criteria = MatchCriteria(asset_match=False, amount_similarity=Decimal("1"), timing_valid=True, timing_hours=1)
    assert calculate_confidence_score(criteria) == Decimal("0")


def test_confidence_is_zero_when_addresses_differ():
    criteria = MatchCriteria(
        asset_match=True, amount_similarity=Decimal("1"), timing_valid=True, timing_hours=1, address_match=False
    )
    assert calculate_confidence_score(criteria) == Decimal("0")


def test_confidence_weights_without_bonus():
    # 0.3 asset + 0.5 * 0.4 amount + 0.2 timing
    criteria = MatchCriteria(asset_match=True, amount_similarity=Decimal("0.5"), timing_valid=True, timing_hours=5)
    assert calculate_confidence_score(criteria) == Decimal("0.7")


def test_confidence_close_timing_bonus():
    close = MatchCriteria(asset_match=True, amount_similarity=Decimal("0.9"), timing_valid=True, timing_hours=0.5)
    far = MatchCriteria(asset_match=True, amount_similarity=Decimal("0.9"), timing_valid=True, timing_hours=5)
    assert calculate_confidence_score(close) - calculate_confidence_score(far) == Decimal("0.05")


def test_confidence_is_capped_at_one():
    criteria = MatchCriteria(
        asset_match=True, amount_similarity=Decimal("1"), timing_valid=True, timing_hours=0.5, address_match=True
    )
    assert calculate_confidence_score(criteria) == Decimal("1")


# Tests for find_potential_matches

def test_exact_trade_match_is_auto_confirmed(mock_matching_settings):
    source = candidate(1, Direction.OUT, "1.0", at(), to_address="bc1qwallet")
    target = candidate(2, Direction.IN, "0.999", at(hours=5 / 60), SourceType.BLOCKCHAIN,
                       from_address="bc1qwallet")

    matches = find_potential_matches(source, [target], mock_matching_settings)

    assert len(matches) == 1
    match = matches[0]
    assert match.match_criteria.amount_similarity == Decimal("0.999")
    assert match.match_criteria.timing_valid is True
    assert match.match_criteria.timing_hours == pytest.approx(0.0833, abs=0.001)
    assert match.confidence_score >= Decimal("0.95")
    assert match.link_type == LinkType.EXCHANGE_TO_BLOCKCHAIN
    assert should_auto_confirm(match, mock_matching_settings)


def test_skips_other_assets_and_low_similarity(mock_matching_settings):
    source = candidate(1, Direction.OUT, "1.0", at())
    targets = [
        candidate(2, Direction.IN, "0.99", at(hours=1), SourceType.BLOCKCHAIN, symbol="ETH"),
        candidate(3, Direction.IN, "0.3", at(hours=1), SourceType.BLOCKCHAIN),
        candidate(4, Direction.IN, "0.99", at(hours=1), SourceType.BLOCKCHAIN),
    ]

    matches = find_potential_matches(source, targets, mock_matching_settings)

    assert [m.target.id for m in matches] == [4]


def test_skips_targets_outside_timing_window(mock_matching_settings):
    source = candidate(1, Direction.OUT, "1.0", at())
    targets = [
        candidate(2, Direction.IN, "1.0", at(hours=-1), SourceType.BLOCKCHAIN),
        candidate(3, Direction.IN, "1.0", at(hours=72), SourceType.BLOCKCHAIN),
    ]
    assert find_potential_matches(source, targets, mock_matching_settings) == []


def test_hash_match_scores_full_confidence(mock_matching_settings):
    source = candidate(1, Direction.OUT, "1.0", at(), tx_hash="0xfeed")
    target = candidate(2, Direction.IN, "0.5", at(hours=2), SourceType.BLOCKCHAIN, tx_hash="0xFEED")

    matches = find_potential_matches(source, [target], mock_matching_settings)

    assert len(matches) == 1
    assert matches[0].confidence_score == Decimal("1")
    assert matches[0].is_hash_match


def test_hash_matches_exceeding_source_fall_back_to_scoring(mock_matching_settings):
    source = candidate(1, Direction.OUT, "1.0", at(), tx_hash="0xfeed")
    targets = [
        candidate(2, Direction.IN, "0.6", at(hours=1), SourceType.BLOCKCHAIN, tx_hash="0xfeed"),
        candidate(3, Direction.IN, "0.6", at(hours=1), SourceType.BLOCKCHAIN, tx_hash="0xfeed"),
    ]

    # 0.6 similarity is below the minimum, so nothing survives heuristic scoring
    assert find_potential_matches(source, targets, mock_matching_settings) == []


def test_blockchain_pairs_never_hash_match(mock_matching_settings):
    source = candidate(1, Direction.OUT, "1.0", at(), SourceType.BLOCKCHAIN, tx_hash="abc")
    target = candidate(2, Direction.IN, "1.0", at(hours=2), SourceType.BLOCKCHAIN, tx_hash="abc")

    matches = find_potential_matches(source, [target], mock_matching_settings)

    assert len(matches) == 1
    assert not matches[0].is_hash_match
    assert matches[0].link_type == LinkType.BLOCKCHAIN_TO_BLOCKCHAIN


def test_matches_sorted_by_confidence(mock_matching_settings):
    source = candidate(1, Direction.OUT, "1.0", at())
    targets = [
        candidate(2, Direction.IN, "0.96", at(hours=3), SourceType.BLOCKCHAIN),
        candidate(3, Direction.IN, "1.0", at(hours=0.5), SourceType.BLOCKCHAIN),
    ]

    matches = find_potential_matches(source, targets, mock_matching_settings)

    assert [m.target.id for m in matches] == [3, 2]
