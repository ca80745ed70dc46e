from decimal import Decimal
from typing import Optional
from pydantic import Field
from pydantic_settings import BaseSettings

from cost_basis_tracker.models import CostBasisMethod, FeePolicy, VarianceTolerance


class MatchingSettings(BaseSettings):
    """Thresholds used when scoring and confirming cross-platform transfer matches."""

    max_timing_window_hours: float = Field(
        48,
        alias="MATCH_MAX_TIMING_WINDOW_HOURS",
        gt=0,
        description="Maximum hours between a withdrawal and its deposit"
    )
    min_amount_similarity: Decimal = Field(
        Decimal("0.95"),
        alias="MATCH_MIN_AMOUNT_SIMILARITY",
        ge=0,
        le=1,
        description="Minimum target/source amount similarity for heuristic matches"
    )
    min_confidence_score: Decimal = Field(
        Decimal("0.7"),
        alias="MATCH_MIN_CONFIDENCE_SCORE",
        ge=0,
        le=1,
        description="Minimum confidence for a match to be kept at all"
    )
    auto_confirm_threshold: Decimal = Field(
        Decimal("0.95"),
        alias="MATCH_AUTO_CONFIRM_THRESHOLD",
        ge=0,
        le=1,
        description="Confidence at or above which a link is confirmed without review"
    )


class JurisdictionSettings(BaseSettings):
    """Tax jurisdiction rules that change how transfer fees are treated."""

    # disposal: the fee is disposed of for zero proceeds. add-to-basis: fee value rolls into the target lot.
    same_asset_transfer_fee_policy: FeePolicy = Field(
        FeePolicy.DISPOSAL,
        alias="SAME_ASSET_TRANSFER_FEE_POLICY",
        description="Treatment of fees paid in the transferred asset: disposal or add-to-basis"
    )


class VarianceToleranceSettings(BaseSettings):
    """Optional global override of the per-exchange transfer variance tolerances."""

    warn_pct: Optional[Decimal] = Field(None, alias="VARIANCE_WARN_PCT", description="Warn above this variance %")
    error_pct: Optional[Decimal] = Field(None, alias="VARIANCE_ERROR_PCT", description="Fail above this variance %")

    def override(self) -> Optional[VarianceTolerance]:
        if self.warn_pct is None or self.error_pct is None:
            return None
        return VarianceTolerance(warn=self.warn_pct, error=self.error_pct)


class TrackerSettings(BaseSettings):
    """Core tracker configuration."""

    cost_basis_method: CostBasisMethod = Field(
        CostBasisMethod.FIFO,
        alias="COST_BASIS_METHOD",
        description="Lot consumption strategy: fifo, lifo or average-cost"
    )
    ledger_path: str = Field("ledger.json", alias="LEDGER_PATH", description="Path to the JSON ledger file")


class CoinGeckoSettings(BaseSettings):
    """CoinGecko API configuration for historical prices."""

    api_key: Optional[str] = Field(None, alias="COINGECKO_API_KEY", description="CoinGecko demo/pro API key")
    base_url: str = Field(
        "https://api.coingecko.com/api/v3",
        alias="COINGECKO_BASE_URL",
        description="CoinGecko API base URL"
    )
