import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, List, Optional, Set, Tuple

from cost_basis_tracker.config import MatchingSettings
from cost_basis_tracker.decimal_utils import HUNDRED, ZERO, decimal_to_str, format_pct
from cost_basis_tracker.exceptions import LinkValidationError
from cost_basis_tracker.linking.matching import should_auto_confirm
from cost_basis_tracker.models import LinkStatus, PotentialMatch, TransactionLink
from cost_basis_tracker.result import Result

MAX_LINK_VARIANCE_PCT = Decimal("10")
# Per-address UTXO rows can under-report the source side of a hash-matched pair
HASH_MATCH_EXCESS_PCT = Decimal("1")


def deduplicate_and_confirm(matches: List[PotentialMatch],
                            config: MatchingSettings) -> Tuple[List[PotentialMatch], List[PotentialMatch]]:
    """
    Reduce all potential matches to a consistent assignment.

    Matches are taken greedily by confidence, hash matches first on ties.
    A target is used at most once. A source may back several hash matches
    (one on-chain transaction funding several deposits) but only one
    non-hash match, and never both kinds.

    Returns:
        Tuple of (confirmed, suggested) matches
    """
    ordered = sorted(matches, key=lambda m: (-m.confidence_score, 0 if m.is_hash_match else 1))

    used_sources: Set[int] = set()
    used_sources_non_hash: Set[int] = set()
    used_targets: Set[int] = set()
    accepted: List[PotentialMatch] = []

    for match in ordered:
        source_id = match.source.id
        target_id = match.target.id
        is_hash = match.is_hash_match

        if target_id in used_targets:
            continue
        if not is_hash and source_id in used_sources:
            continue
        if is_hash and source_id in used_sources_non_hash:
            continue

        accepted.append(match)
        used_targets.add(target_id)
        used_sources.add(source_id)
        if not is_hash:
            used_sources_non_hash.add(source_id)

    confirmed = [m for m in accepted if should_auto_confirm(m, config)]
    suggested = [m for m in accepted if not should_auto_confirm(m, config)]
    return confirmed, suggested


def validate_link_amounts(source_amount: Decimal, target_amount: Decimal) -> Result:
    """
    Reject links whose amounts cannot describe a real transfer.

    Returns:
        Result.ok(None), or Result.err(LinkValidationError)
    """
    if source_amount <= ZERO:
        return Result.err(LinkValidationError(
            f"Source amount must be positive, got {decimal_to_str(source_amount)}. "
            "This may indicate missing movement data or legacy records without amount fields."
        ))

    if target_amount <= ZERO:
        return Result.err(LinkValidationError(
            f"Target amount must be positive, got {decimal_to_str(target_amount)}. "
            "This indicates invalid transaction data."
        ))

    if target_amount > source_amount:
        return Result.err(LinkValidationError(
            f"Target amount ({decimal_to_str(target_amount)}) exceeds source amount "
            f"({decimal_to_str(source_amount)}). This link will be rejected. If this is an airdrop "
            "or bonus, create a separate transaction for the additional funds received."
        ))

    variance_pct = (source_amount - target_amount) / source_amount * HUNDRED
    if variance_pct > MAX_LINK_VARIANCE_PCT:
        return Result.err(LinkValidationError(
            f"Variance ({format_pct(variance_pct)}%) exceeds 10% threshold. "
            f"Source: {decimal_to_str(source_amount)}, Target: {decimal_to_str(target_amount)}. "
            "Verify amounts are correct or adjust link."
        ))

    return Result.ok(None)


def validate_link_amounts_for_match(match: PotentialMatch) -> Result:
    """Like validate_link_amounts, but hash matches may exceed the source by up to 1%."""
    source_amount = match.source.amount
    target_amount = match.target.amount

    if match.is_hash_match and source_amount > ZERO and target_amount > source_amount:
        excess_pct = (target_amount - source_amount) / source_amount * HUNDRED
        if excess_pct <= HASH_MATCH_EXCESS_PCT:
            return Result.ok(None)

    return validate_link_amounts(source_amount, target_amount)


def calculate_variance_metadata(source_amount: Decimal, target_amount: Decimal) -> Dict[str, str]:
    variance = source_amount - target_amount
    variance_pct = ZERO if source_amount == ZERO else variance / source_amount * HUNDRED
    return {
        "variance": decimal_to_str(variance),
        "variance_pct": format_pct(variance_pct),
        "implied_fee": decimal_to_str(variance),
    }


def create_transaction_link(match: PotentialMatch, status: LinkStatus, link_id: Optional[str] = None,
                            now: Optional[datetime] = None) -> Result:
    """
    Build a TransactionLink from an accepted match.

    Args:
        match: Accepted match
        status: SUGGESTED or CONFIRMED; confirmed links are reviewed by 'auto'
        link_id: Link id, a new UUID4 when omitted
        now: Creation timestamp, current UTC time when omitted

    Returns:
        Result.ok(TransactionLink), or Result.err(LinkValidationError)
    """
    validation = validate_link_amounts_for_match(match)
    if validation.is_err:
        return validation

    now = now or datetime.now(timezone.utc)
    confirmed = status == LinkStatus.CONFIRMED

    return Result.ok(TransactionLink(
        id=link_id or str(uuid.uuid4()),
        source_transaction_id=match.source.id,
        target_transaction_id=match.target.id,
        asset_symbol=match.source.asset_symbol,
        source_asset_id=match.source.asset_id,
        target_asset_id=match.target.asset_id,
        source_amount=match.source.amount,
        target_amount=match.target.amount,
        link_type=match.link_type,
        confidence_score=match.confidence_score,
        match_criteria=match.match_criteria,
        status=status,
        reviewed_by="auto" if confirmed else None,
        reviewed_at=now if confirmed else None,
        metadata=calculate_variance_metadata(match.source.amount, match.target.amount),
        created_at=now,
        updated_at=now,
    ))
