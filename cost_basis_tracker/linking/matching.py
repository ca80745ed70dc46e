import math
import re
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from cost_basis_tracker.config import MatchingSettings
from cost_basis_tracker.decimal_utils import ONE, ZERO, quantize_confidence
from cost_basis_tracker.models import (
    Direction,
    LinkType,
    MatchCriteria,
    PotentialMatch,
    SourceType,
    TransactionCandidate,
)

# Target may exceed source by this fraction and still count as a rounding difference
ROUNDING_TOLERANCE = Decimal("0.001")
ROUNDING_SIMILARITY = Decimal("0.99")

ASSET_WEIGHT = Decimal("0.3")
AMOUNT_WEIGHT = Decimal("0.4")
TIMING_WEIGHT = Decimal("0.2")
CLOSE_TIMING_BONUS = Decimal("0.05")
ADDRESS_WEIGHT = Decimal("0.1")

_LOG_INDEX_SUFFIX = re.compile(r"-\d+$")


def calculate_amount_similarity(source_amount: Decimal, target_amount: Decimal) -> Decimal:
    """
    Score how closely a received amount matches a sent amount (0 to 1).

    The target is expected to be at most the source (fees come off in
    transit). A target above the source by 0.1% or less is treated as
    rounding and scores 0.99; anything larger scores 0.
    """
    if source_amount == ZERO or target_amount == ZERO:
        return ZERO

    if target_amount > source_amount:
        pct_diff = abs((target_amount - source_amount) / source_amount)
        if pct_diff <= ROUNDING_TOLERANCE:
            return ROUNDING_SIMILARITY
        return ZERO

    return min(max(target_amount / source_amount, ZERO), ONE)


def calculate_time_difference_hours(source_time: datetime, target_time: datetime) -> float:
    """Hours from source to target, or infinity when the source comes after the target."""
    if source_time > target_time:
        return math.inf
    return (target_time - source_time).total_seconds() / 3600


def is_timing_valid(source_time: datetime, target_time: datetime, config: MatchingSettings) -> bool:
    hours = calculate_time_difference_hours(source_time, target_time)
    return 0 <= hours <= config.max_timing_window_hours


def determine_link_type(source_type: SourceType, target_type: SourceType) -> LinkType:
    if source_type == SourceType.EXCHANGE and target_type == SourceType.BLOCKCHAIN:
        return LinkType.EXCHANGE_TO_BLOCKCHAIN
    if source_type == SourceType.BLOCKCHAIN and target_type == SourceType.BLOCKCHAIN:
        return LinkType.BLOCKCHAIN_TO_BLOCKCHAIN
    if source_type == SourceType.EXCHANGE and target_type == SourceType.EXCHANGE:
        return LinkType.EXCHANGE_TO_EXCHANGE
    # blockchain -> exchange has no dedicated type
    return LinkType.EXCHANGE_TO_BLOCKCHAIN


def check_address_match(source: TransactionCandidate, target: TransactionCandidate) -> Optional[bool]:
    """Compare the source's destination with the target's sender, or None if either is unknown."""
    if source.to_address and target.from_address:
        return source.to_address.lower() == target.from_address.lower()
    return None


def normalize_transaction_hash(tx_hash: str) -> str:
    """Strip a trailing ``-<logIndex>`` suffix some providers append."""
    return _LOG_INDEX_SUFFIX.sub("", tx_hash)


def check_transaction_hash_match(source: TransactionCandidate, target: TransactionCandidate) -> Optional[bool]:
    """
    Compare blockchain hashes of two candidates.

    The log index suffix is stripped only when exactly one side has it; when
    both sides carry one they must match exactly so batched transfers stay
    distinct. Comparison is case-insensitive only for 0x-prefixed hex hashes.

    Returns:
        True/False, or None when either hash is missing
    """
    source_hash = source.blockchain_transaction_hash
    target_hash = target.blockchain_transaction_hash
    if not source_hash or not target_hash:
        return None

    source_has_index = bool(_LOG_INDEX_SUFFIX.search(source_hash))
    target_has_index = bool(_LOG_INDEX_SUFFIX.search(target_hash))

    if source_has_index != target_has_index:
        source_hash = normalize_transaction_hash(source_hash)
        target_hash = normalize_transaction_hash(target_hash)

    # Base58 and similar encodings are case-sensitive
    if source_hash.startswith("0x") or target_hash.startswith("0x"):
        return source_hash.lower() == target_hash.lower()
    return source_hash == target_hash


def calculate_confidence_score(criteria: MatchCriteria) -> Decimal:
    if not criteria.asset_match:
        return ZERO

    score = ASSET_WEIGHT + criteria.amount_similarity * AMOUNT_WEIGHT

    if criteria.timing_valid:
        score += TIMING_WEIGHT
        if criteria.timing_hours <= 1:
            score += CLOSE_TIMING_BONUS

    if criteria.address_match is True:
        score += ADDRESS_WEIGHT
    elif criteria.address_match is False:
        return ZERO

    score = min(max(score, ZERO), ONE)
    return quantize_confidence(score)


def build_match_criteria(source: TransactionCandidate, target: TransactionCandidate,
                         config: MatchingSettings) -> MatchCriteria:
    return MatchCriteria(
        asset_match=source.asset_symbol == target.asset_symbol,
        amount_similarity=calculate_amount_similarity(source.amount, target.amount),
        timing_valid=is_timing_valid(source.timestamp, target.timestamp, config),
        timing_hours=calculate_time_difference_hours(source.timestamp, target.timestamp),
        address_match=check_address_match(source, target),
    )


def _is_blockchain_pair(source: TransactionCandidate, target: TransactionCandidate) -> bool:
    return source.source_type == SourceType.BLOCKCHAIN and target.source_type == SourceType.BLOCKCHAIN


def _hash_match(source: TransactionCandidate, target: TransactionCandidate,
                config: MatchingSettings) -> PotentialMatch:
    return PotentialMatch(
        source=source,
        target=target,
        confidence_score=ONE,
        match_criteria=MatchCriteria(
            asset_match=True,
            amount_similarity=ONE,
            timing_valid=is_timing_valid(source.timestamp, target.timestamp, config),
            timing_hours=calculate_time_difference_hours(source.timestamp, target.timestamp),
            address_match=None,
            hash_match=True,
        ),
        link_type=determine_link_type(source.source_type, target.source_type),
    )


def find_potential_matches(source: TransactionCandidate, targets: List[TransactionCandidate],
                           config: MatchingSettings) -> List[PotentialMatch]:
    """
    Find every acceptable target for one outflow candidate.

    A shared blockchain hash is a perfect match, except between two
    blockchain rows. When several targets share the hash, their total must
    not exceed the source, otherwise they are scored heuristically.

    Args:
        source: Outflow candidate
        targets: Inflow candidates to compare against
        config: Matching thresholds

    Returns:
        Matches sorted by confidence, highest first
    """
    matches: List[PotentialMatch] = []

    for target in targets:
        if source.id == target.id:
            continue
        if source.asset_symbol != target.asset_symbol:
            continue
        if source.direction != Direction.OUT or target.direction != Direction.IN:
            continue

        if check_transaction_hash_match(source, target) is True and not _is_blockchain_pair(source, target):
            same_hash = [
                t for t in targets
                if t.id != source.id
                and t.asset_symbol == source.asset_symbol
                and t.direction == Direction.IN
                and not _is_blockchain_pair(source, t)
                and check_transaction_hash_match(source, t) is True
            ]
            total = sum((t.amount for t in same_hash), ZERO)
            if len(same_hash) <= 1 or total <= source.amount:
                matches.append(_hash_match(source, target, config))
                continue

        criteria = build_match_criteria(source, target, config)
        if not criteria.timing_valid:
            continue
        if criteria.amount_similarity < config.min_amount_similarity:
            continue

        confidence = calculate_confidence_score(criteria)
        if confidence < config.min_confidence_score:
            continue

        matches.append(PotentialMatch(
            source=source,
            target=target,
            confidence_score=confidence,
            match_criteria=criteria,
            link_type=determine_link_type(source.source_type, target.source_type),
        ))

    matches.sort(key=lambda m: m.confidence_score, reverse=True)
    return matches


def should_auto_confirm(match: PotentialMatch, config: MatchingSettings) -> bool:
    return match.confidence_score >= config.auto_confirm_threshold
