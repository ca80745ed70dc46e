from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional, Tuple

from cost_basis_tracker.config import MatchingSettings
from cost_basis_tracker.exceptions import LinkValidationError
from cost_basis_tracker.linking.candidates import (
    build_outflow_adjustments,
    convert_to_candidates,
    separate_sources_and_targets,
)
from cost_basis_tracker.linking.matching import find_potential_matches
from cost_basis_tracker.linking.resolver import create_transaction_link, deduplicate_and_confirm
from cost_basis_tracker.models import LinkStatus, PotentialMatch, Transaction, TransactionLink
from cost_basis_tracker.result import Result


@dataclass
class LinkingResult:
    confirmed_links: List[TransactionLink] = field(default_factory=list)
    suggested_links: List[TransactionLink] = field(default_factory=list)
    # Accepted matches whose amounts failed link validation, with the reason
    rejected_matches: List[Tuple[PotentialMatch, str]] = field(default_factory=list)
    total_source_transactions: int = 0
    total_target_transactions: int = 0
    matched_transaction_count: int = 0
    unmatched_source_count: int = 0
    unmatched_target_count: int = 0

    @property
    def links(self) -> List[TransactionLink]:
        return self.confirmed_links + self.suggested_links


class TransactionLinker:
    """Finds withdrawal/deposit pairs across platforms and turns them into links."""

    def __init__(self, config: Optional[MatchingSettings] = None):
        self.config = config or MatchingSettings()

    def link_transactions(self, txs: List[Transaction], now: Optional[datetime] = None) -> Result:
        """
        Run candidate building, matching and resolution over a transaction set.

        Args:
            txs: Transactions from every source
            now: Timestamp stamped on created links

        Returns:
            Result.ok(LinkingResult), or Result.err(LinkValidationError) when
            the input cannot be processed
        """
        now = now or datetime.now(timezone.utc)

        try:
            amount_overrides, outflow_groupings = build_outflow_adjustments(txs)
            candidates = convert_to_candidates(txs, amount_overrides, outflow_groupings)
            sources, targets = separate_sources_and_targets(candidates)

            matches: List[PotentialMatch] = []
            for source in sources:
                matches.extend(find_potential_matches(source, targets, self.config))

            confirmed, suggested = deduplicate_and_confirm(matches, self.config)
        except (ValueError, ArithmeticError) as e:
            return Result.err(LinkValidationError(f"Transaction linking failed: {e}"))

        result = LinkingResult()
        for status, accepted in ((LinkStatus.CONFIRMED, confirmed), (LinkStatus.SUGGESTED, suggested)):
            for match in accepted:
                link_result = create_transaction_link(match, status, now=now)
                if link_result.is_err:
                    result.rejected_matches.append((match, str(link_result.error)))
                    continue
                if status == LinkStatus.CONFIRMED:
                    result.confirmed_links.append(link_result.value)
                else:
                    result.suggested_links.append(link_result.value)

        source_ids = {c.id for c in sources}
        target_ids = {c.id for c in targets}
        matched_sources = {link.source_transaction_id for link in result.links}
        matched_targets = {link.target_transaction_id for link in result.links}

        result.total_source_transactions = len(source_ids)
        result.total_target_transactions = len(target_ids)
        result.matched_transaction_count = len(matched_sources) + len(matched_targets)
        result.unmatched_source_count = len(source_ids - matched_sources)
        result.unmatched_target_count = len(target_ids - matched_targets)

        return Result.ok(result)
